"""Data models for the monitor module."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

UNKNOWN_NAME = "Unknown"
UNKNOWN_SYMBOL = "???"


class Direction(str, Enum):
    """Trade side of an order."""

    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(str, Enum):
    """Persisted order lifecycle states."""

    ACTIVE = "ACTIVE"
    TRIGGERED = "TRIGGERED"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (
            OrderStatus.EXECUTED,
            OrderStatus.CANCELLED,
            OrderStatus.EXPIRED,
            OrderStatus.FAILED,
        )


class TriggerType(str, Enum):
    """Trigger condition families.

    The unit of ``trigger_value`` is fixed per type:

    - PRICE_*: wad price (native wei per whole token)
    - PROGRESS_*: bonding-curve progress in bps
    - MCAP_BELOW / MCAP_ABOVE: market cap in native wei
    - MCAP_*_USD: market cap in whole USD (requires aggregator data)
    - TRAILING_STOP, TAKE_PROFIT, STOP_LOSS, PRICE_DROP_PCT: bps
    - DCA_INTERVAL: interval in milliseconds
    - POST_GRADUATION: ignored
    """

    PRICE_BELOW = "PRICE_BELOW"
    PRICE_ABOVE = "PRICE_ABOVE"
    PROGRESS_BELOW = "PROGRESS_BELOW"
    PROGRESS_ABOVE = "PROGRESS_ABOVE"
    POST_GRADUATION = "POST_GRADUATION"
    MCAP_BELOW = "MCAP_BELOW"
    MCAP_ABOVE = "MCAP_ABOVE"
    MCAP_BELOW_USD = "MCAP_BELOW_USD"
    MCAP_ABOVE_USD = "MCAP_ABOVE_USD"
    TRAILING_STOP = "TRAILING_STOP"
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    DCA_INTERVAL = "DCA_INTERVAL"
    PRICE_DROP_PCT = "PRICE_DROP_PCT"


# BUY triggers that remain meaningful once a token has left the bonding curve.
GRADUATION_EXEMPT_TRIGGERS = frozenset(
    {
        TriggerType.POST_GRADUATION.value,
        TriggerType.MCAP_BELOW.value,
        TriggerType.DCA_INTERVAL.value,
        TriggerType.PRICE_DROP_PCT.value,
    }
)


def _decimal_or_none(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _int_or_none(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class MarketSummary:
    """Supplementary per-token market data from the aggregator.

    Attributes:
        token: Lowercased token address.
        market_type: Venue reported by the aggregator (e.g. "CURVE", "DEX").
        price_native: Token price in native currency.
        price_usd: Token price in USD.
        volume: Traded volume (aggregator units).
        holder_count: Number of holders.
        ath_price_usd: All-time-high price in USD.
        native_price_usd: USD price of the native currency.
    """

    token: str
    market_type: str | None = None
    price_native: Decimal | None = None
    price_usd: Decimal | None = None
    volume: Decimal | None = None
    holder_count: int | None = None
    ath_price_usd: Decimal | None = None
    native_price_usd: Decimal | None = None

    @classmethod
    def from_api(cls, market_info: dict[str, Any]) -> MarketSummary:
        return cls(
            token=str(market_info.get("token_id", "")).lower(),
            market_type=market_info.get("market_type"),
            price_native=_decimal_or_none(market_info.get("price_native") or market_info.get("price")),
            price_usd=_decimal_or_none(market_info.get("price_usd")),
            volume=_decimal_or_none(market_info.get("volume")),
            holder_count=_int_or_none(market_info.get("holder_count")),
            ath_price_usd=_decimal_or_none(market_info.get("ath_price_usd")),
            native_price_usd=_decimal_or_none(market_info.get("native_price")),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "token": self.token,
            "market_type": self.market_type,
            "price_native": str(self.price_native) if self.price_native is not None else None,
            "price_usd": str(self.price_usd) if self.price_usd is not None else None,
            "volume": str(self.volume) if self.volume is not None else None,
            "holder_count": self.holder_count,
            "ath_price_usd": str(self.ath_price_usd) if self.ath_price_usd is not None else None,
            "native_price_usd": str(self.native_price_usd) if self.native_price_usd is not None else None,
        }


@dataclass(frozen=True)
class TokenChainState:
    """Immutable per-tick snapshot of a token's venue state.

    Individual fields fall back to neutral defaults when their read fails;
    ``failed_fields`` names those reads so a degraded snapshot can be told
    apart from a healthy one.

    Attributes:
        token: Lowercased token address.
        name: Token name, or ``"Unknown"`` when unreadable.
        symbol: Token symbol, or ``"???"`` when unreadable.
        is_graduated: Whether the token moved to the DEX venue.
        is_locked: Whether trading is locked on the bonding curve.
        progress: Bonding-curve progress in bps (0..10000).
        total_supply: Raw token total supply.
        buy_router: Router returned by the lens for a 1-unit buy probe.
        buy_amount_out: Tokens received for 1 native unit.
        sell_router: Router returned by the lens for a 1-unit sell probe.
        sell_amount_out: Native wei received for 1 token.
        market: Aggregator summary, if available.
        failed_fields: Names of reads that fell back to defaults.
        fetched_at: When the snapshot was assembled.
    """

    token: str
    name: str
    symbol: str
    is_graduated: bool
    is_locked: bool
    progress: int
    total_supply: int
    buy_router: str
    buy_amount_out: int
    sell_router: str
    sell_amount_out: int
    market: MarketSummary | None = None
    failed_fields: frozenset[str] = frozenset()
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_degraded(self) -> bool:
        """True if any field fell back to its default."""
        return bool(self.failed_fields)

    @property
    def looks_unavailable(self) -> bool:
        """True if the snapshot carries no usable venue data at all."""
        return self.name == UNKNOWN_NAME and self.progress == 0 and self.buy_amount_out == 0


@dataclass(frozen=True)
class FreshQuote:
    """Execution-time quote for the real trade size. Never cached."""

    router: str
    amount_out: int
    timestamp: datetime


@dataclass(frozen=True)
class EvalResult:
    """Outcome of evaluating one order against one snapshot.

    ``abort`` is a per-cycle safety veto and is distinct from "not
    triggered": the caller logs it and leaves the order active.
    """

    triggered: bool
    reason: str
    abort: bool = False
    abort_reason: str | None = None
