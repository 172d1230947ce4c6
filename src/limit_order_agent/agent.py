"""Agent wiring.

:class:`Agent` builds every component from :class:`Settings`, exposes the
:class:`OrderService` for front ends, and owns the lifecycle of the
monitor scheduler and its network resources.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

from limit_order_agent.advisory.fallback import ProviderChain
from limit_order_agent.advisory.risk_check import RiskChecker
from limit_order_agent.chain.client import ChainClient
from limit_order_agent.config import Settings, get_settings
from limit_order_agent.custody.keystore import KeyCipher
from limit_order_agent.custody.wallets import WalletCustody
from limit_order_agent.events import EventBus
from limit_order_agent.execution.router_selector import RouterSelector
from limit_order_agent.execution.tx_builder import TransactionBuilder
from limit_order_agent.execution.tx_executor import TransactionExecutor
from limit_order_agent.monitor.market_data import (
    InMemoryMarketDataCache,
    MarketDataCache,
    MarketDataClient,
    RedisMarketDataCache,
)
from limit_order_agent.monitor.quote_fetcher import QuoteFetcher
from limit_order_agent.monitor.scheduler import MonitorScheduler, SchedulerState
from limit_order_agent.monitor.state_fetcher import StateFetcher
from limit_order_agent.service import OrderService
from limit_order_agent.storage.database import DatabaseManager

if TYPE_CHECKING:
    from limit_order_agent.monitor.scheduler import SchedulerStats

logger = logging.getLogger(__name__)


class Agent:
    """The synthetic limit-order agent.

    Example:
        ```python
        from limit_order_agent.agent import Agent

        agent = Agent()
        await agent.run()  # until SIGINT/SIGTERM
        ```
    """

    def __init__(self, settings: Settings | None = None, *, dry_run: bool | None = None) -> None:
        """Initialize the agent.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: Resolve no signers, so triggered orders are only
                reported. Overrides settings.dry_run.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        s = self._settings
        self.redis: Redis | None = Redis.from_url(s.redis.url) if s.redis.url else None
        self.db = DatabaseManager(s.database.url)
        self.chain = ChainClient(
            s.chain.rpc_url,
            fallback_rpc_url=s.chain.fallback_rpc_url,
            multicall3_address=s.contracts.multicall3,
            max_requests_per_second=s.chain.max_requests_per_second,
        )

        cache: MarketDataCache
        if self.redis is not None:
            cache = RedisMarketDataCache(self.redis, ttl_seconds=s.market_data.cache_ttl_seconds)
        else:
            cache = InMemoryMarketDataCache(ttl_seconds=s.market_data.cache_ttl_seconds)
        self.market_data = MarketDataClient(
            cache=cache,
            api_url=s.market_data.api_url,
            max_pages=s.market_data.max_pages,
            timeout_seconds=s.market_data.request_timeout_seconds,
        )

        self.state_fetcher = StateFetcher(
            self.chain,
            lens_address=s.contracts.lens,
            default_router=s.contracts.bonding_curve_router,
            market_data=self.market_data,
        )
        self.quote_fetcher = QuoteFetcher(self.chain, lens_address=s.contracts.lens)
        self.router_selector = RouterSelector(
            dex_router=s.contracts.dex_router,
            bonding_curve_router=s.contracts.bonding_curve_router,
        )
        self.tx_builder = TransactionBuilder(
            bonding_curve_router=s.contracts.bonding_curve_router,
            dex_router=s.contracts.dex_router,
            chain_id=s.chain.chain_id,
            deadline_seconds=s.monitor.tx_deadline_seconds,
        )
        self.executor = TransactionExecutor(
            self.chain,
            chain_id=s.chain.chain_id,
            receipt_timeout_seconds=s.monitor.receipt_timeout_seconds,
            gas_limit_multiplier=s.monitor.gas_limit_multiplier,
        )

        cipher = (
            KeyCipher(s.custody.encryption_key.get_secret_value()) if s.custody.encryption_key is not None else None
        )
        self.custody = WalletCustody(self.db, cipher, dry_run=self._dry_run)

        self.advisory = ProviderChain.from_settings(s.advisory)
        self.risk_checker = RiskChecker(self.advisory, block_confidence=s.advisory.block_confidence)
        self.events = EventBus(redis=self.redis)

        self.scheduler = MonitorScheduler(
            self.db,
            self.state_fetcher,
            self.quote_fetcher,
            self.router_selector,
            self.tx_builder,
            self.executor,
            self.custody,
            self.events,
            advisory=self.advisory,
            risk_checker=self.risk_checker,
            interval_seconds=s.monitor.interval_seconds,
            risk_check_timeout_seconds=s.monitor.risk_check_timeout_seconds,
        )
        self.service = OrderService(
            self.db,
            self.events,
            state_fetcher=self.state_fetcher,
            quote_fetcher=self.quote_fetcher,
            custody=self.custody,
        )

        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> SchedulerState:
        return self.scheduler.state

    @property
    def stats(self) -> SchedulerStats:
        return self.scheduler.stats

    async def start(self) -> None:
        """Check connectivity and start the monitor loop."""
        logger.info("Starting agent with settings: %s", self._settings.redacted_summary())
        if self._dry_run:
            logger.warning("DRY_RUN enabled: triggered orders will not be signed")
        if not self.advisory.enabled:
            logger.info("No advisory providers configured; explanations and risk checks disabled")
        else:
            logger.info("Advisory providers: %s", ", ".join(self.advisory.provider_names))

        if not await self.chain.health_check():
            logger.warning("Chain RPC health check failed; continuing, reads will be retried")

        self._stop_event = asyncio.Event()
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.advisory.aclose()
        await self.market_data.aclose()
        await self.chain.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        await self.db.dispose_async()
        logger.info("Agent stopped")

    def request_stop(self) -> None:
        logger.info("Shutdown signal received")
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> None:
        """Start and block until SIGINT/SIGTERM."""
        await self.start()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop)
        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self.stop()

    async def __aenter__(self) -> Agent:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
