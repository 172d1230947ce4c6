"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
limit-order agent, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_ADDRESS_HEX_LENGTH = 42


def _validate_address(v: str) -> str:
    if not v.startswith("0x") or len(v) != _ADDRESS_HEX_LENGTH:
        raise ValueError(f"Invalid contract address: {v}")
    try:
        int(v[2:], 16)
    except ValueError as e:
        raise ValueError(f"Invalid contract address: {v}") from e
    return v


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings.

    Redis is optional: when unset the market-data cache stays in-process
    and events are only delivered to local subscribers.
    """

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v

    @property
    def enabled(self) -> bool:
        return self.url is not None


class ChainSettings(BaseSettings):
    """Monad RPC settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="https://rpc.monad.xyz",
        alias="CHAIN_RPC_URL",
        description="Primary RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback RPC endpoint",
    )
    chain_id: int = Field(
        default=143,
        alias="CHAIN_ID",
        ge=1,
        description="Chain ID embedded in signed transactions (Monad=143)",
    )
    max_requests_per_second: float = Field(
        default=25,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=1000,
        description="Client-side rate limit for RPC reads",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class ContractSettings(BaseSettings):
    """Venue contract addresses."""

    model_config = SettingsConfigDict(env_prefix="CONTRACT_", extra="ignore")

    lens: str = Field(
        default="0x7e78A8DE94f21804F7a17F4E8BF9EC2c872187ea",
        alias="CONTRACT_LENS",
        description="Price lens contract (getAmountOut/isGraduated/isLocked/getProgress)",
    )
    bonding_curve_router: str = Field(
        default="0x6F6B8F1a20703309951a5127c45B49b1CD981A22",
        alias="CONTRACT_BONDING_CURVE_ROUTER",
        description="Bonding-curve router",
    )
    dex_router: str = Field(
        default="0x0B79d71AE99528D1dB24A4148b5f4F865cc2b137",
        alias="CONTRACT_DEX_ROUTER",
        description="DEX router used after graduation",
    )
    multicall3: str = Field(
        default="0xcA11bde05977b3631167028862bE2a173976CA11",
        alias="CONTRACT_MULTICALL3",
        description="Multicall3 aggregator",
    )

    @field_validator("lens", "bonding_curve_router", "dex_router", "multicall3")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _validate_address(v)


class MonitorSettings(BaseSettings):
    """Monitoring loop and execution settings."""

    model_config = SettingsConfigDict(env_prefix="MONITOR_", extra="ignore")

    interval_seconds: float = Field(
        default=5.0,
        alias="MONITOR_INTERVAL_SECONDS",
        gt=0,
        le=3600,
        description="Delay between monitoring ticks",
    )
    tx_deadline_seconds: int = Field(
        default=300,
        alias="MONITOR_TX_DEADLINE_SECONDS",
        ge=10,
        le=3600,
        description="Grace window embedded as the swap deadline",
    )
    receipt_timeout_seconds: float = Field(
        default=60.0,
        alias="MONITOR_RECEIPT_TIMEOUT_SECONDS",
        gt=0,
        le=600,
        description="How long to wait for a transaction receipt",
    )
    gas_limit_multiplier: float = Field(
        default=1.2,
        alias="MONITOR_GAS_LIMIT_MULTIPLIER",
        ge=1.0,
        le=5.0,
        description="Headroom applied to estimated gas",
    )
    risk_check_timeout_seconds: float = Field(
        default=10.0,
        alias="MONITOR_RISK_CHECK_TIMEOUT_SECONDS",
        gt=0,
        le=120,
        description="Upper bound on the advisory risk check before failing open",
    )


class MarketDataSettings(BaseSettings):
    """External market aggregator settings."""

    model_config = SettingsConfigDict(env_prefix="MARKET_DATA_", extra="ignore")

    api_url: str = Field(
        default="https://api.nad.fun",
        alias="MARKET_DATA_API_URL",
        description="Aggregator base URL",
    )
    cache_ttl_seconds: float = Field(
        default=10.0,
        alias="MARKET_DATA_CACHE_TTL_SECONDS",
        ge=0,
        le=3600,
        description="TTL for per-token market summaries",
    )
    max_pages: int = Field(
        default=5,
        alias="MARKET_DATA_MAX_PAGES",
        ge=1,
        le=100,
        description="Maximum aggregator pages scanned on a cache miss",
    )
    request_timeout_seconds: float = Field(
        default=5.0,
        alias="MARKET_DATA_REQUEST_TIMEOUT_SECONDS",
        gt=0,
        le=120,
        description="HTTP timeout per aggregator page",
    )

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("MARKET_DATA_API_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class AdvisorySettings(BaseSettings):
    """AI explanation / risk-check provider settings."""

    model_config = SettingsConfigDict(env_prefix="ADVISORY_", extra="ignore")

    preferred: Literal["auto", "groq", "claude", "openai", "gemini"] = Field(
        default="auto",
        alias="ADVISORY_PREFERRED",
        description="Preferred provider; 'auto' rotates across configured providers",
    )
    groq_api_key: SecretStr | None = Field(default=None, alias="ADVISORY_GROQ_API_KEY")
    anthropic_api_key: SecretStr | None = Field(default=None, alias="ADVISORY_ANTHROPIC_API_KEY")
    openai_api_key: SecretStr | None = Field(default=None, alias="ADVISORY_OPENAI_API_KEY")
    gemini_api_key: SecretStr | None = Field(default=None, alias="ADVISORY_GEMINI_API_KEY")
    block_confidence: float = Field(
        default=0.7,
        alias="ADVISORY_BLOCK_CONFIDENCE",
        ge=0.0,
        le=1.0,
        description="A risk-check veto blocks execution only above this confidence",
    )
    timeout_seconds: float = Field(
        default=10.0,
        alias="ADVISORY_TIMEOUT_SECONDS",
        gt=0,
        le=120,
        description="HTTP timeout per provider call",
    )

    @property
    def enabled(self) -> bool:
        return any(
            key is not None
            for key in (self.groq_api_key, self.anthropic_api_key, self.openai_api_key, self.gemini_api_key)
        )


class CustodySettings(BaseSettings):
    """Agent wallet custody settings."""

    model_config = SettingsConfigDict(env_prefix="CUSTODY_", extra="ignore")

    encryption_key: SecretStr | None = Field(
        default=None,
        alias="CUSTODY_ENCRYPTION_KEY",
        description="Passphrase used to derive the agent-key encryption key",
    )

    @property
    def enabled(self) -> bool:
        return self.encryption_key is not None


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from limit_order_agent.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.monitor.interval_seconds)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested configuration groups
    #
    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    contracts: ContractSettings = Field(
        default_factory=lambda: ContractSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    monitor: MonitorSettings = Field(
        default_factory=lambda: MonitorSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    market_data: MarketDataSettings = Field(
        default_factory=lambda: MarketDataSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    advisory: AdvisorySettings = Field(
        default_factory=lambda: AdvisorySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    custody: CustodySettings = Field(
        default_factory=lambda: CustodySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Never sign: every triggered order is handed back as an unsigned transaction",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": self.chain.rpc_url,
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
                "chain_id": str(self.chain.chain_id),
            },
            "contracts": {
                "lens": self.contracts.lens,
                "bonding_curve_router": self.contracts.bonding_curve_router,
                "dex_router": self.contracts.dex_router,
                "multicall3": self.contracts.multicall3,
            },
            "monitor": {
                "interval_seconds": str(self.monitor.interval_seconds),
                "tx_deadline_seconds": str(self.monitor.tx_deadline_seconds),
                "receipt_timeout_seconds": str(self.monitor.receipt_timeout_seconds),
            },
            "market_data": {
                "api_url": self.market_data.api_url,
                "cache_ttl_seconds": str(self.market_data.cache_ttl_seconds),
                "max_pages": str(self.market_data.max_pages),
            },
            "advisory": {
                "preferred": self.advisory.preferred,
                "groq_api_key": "(set)" if self.advisory.groq_api_key else "(not set)",
                "anthropic_api_key": "(set)" if self.advisory.anthropic_api_key else "(not set)",
                "openai_api_key": "(set)" if self.advisory.openai_api_key else "(not set)",
                "gemini_api_key": "(set)" if self.advisory.gemini_api_key else "(not set)",
            },
            "custody_encryption_key": "(set)" if self.custody.enabled else "(not set)",
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    def validate_requirements(self, *, command: Literal["run", "create-account", "init-db"]) -> None:
        """Validate command-specific requirements.

        Signing needs the custody key; refusing to start is preferable to
        discovering it on the first triggered order.
        """
        if command == "create-account" and not self.custody.enabled:
            raise ValueError("CUSTODY_ENCRYPTION_KEY is required to provision agent accounts")
        if command == "run" and not self.dry_run and not self.custody.enabled:
            raise ValueError("CUSTODY_ENCRYPTION_KEY is required to run without DRY_RUN")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
