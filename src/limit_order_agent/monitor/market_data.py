"""External market aggregator client with a TTL cache.

The aggregator only exposes a paginated market-cap ranking, so a lookup
for one token scans pages until the token shows up. Every token seen on
the scanned pages is cached, which lets the rest of a tick's batch hit the
cache instead of paginating again.

Any aggregator failure means "no market data" for the tick. Nothing in
this module raises to its callers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp
from redis.asyncio import Redis

from limit_order_agent.monitor.models import MarketSummary

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.nad.fun"
DEFAULT_CACHE_TTL_SECONDS = 10.0
DEFAULT_MAX_PAGES = 5
DEFAULT_REQUEST_TIMEOUT_SECONDS = 5.0
MARKET_CAP_PATH = "/order/market_cap"

REDIS_KEY_PREFIX = "limit_orders:market:"
_NOT_FOUND = "null"


class MarketDataError(Exception):
    """Raised internally when an aggregator page cannot be fetched."""


@dataclass(frozen=True)
class CacheLookup:
    """Result of a cache read.

    ``hit`` is True for both cached summaries and cached "not listed"
    answers (``summary`` is None in the latter case).
    """

    hit: bool
    summary: MarketSummary | None = None


MISS = CacheLookup(hit=False)


class MarketDataCache(Protocol):
    async def get(self, token: str) -> CacheLookup: ...

    async def set_many(self, entries: Mapping[str, MarketSummary | None]) -> None: ...


class InMemoryMarketDataCache:
    """Process-local TTL cache keyed by lowercased token address.

    Reads and writes are not locked; concurrent refreshes simply overwrite
    each other with equivalent payloads.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[MarketSummary | None, float]] = {}

    async def get(self, token: str) -> CacheLookup:
        key = token.lower()
        entry = self._entries.get(key)
        if entry is None:
            return MISS
        summary, stored_at = entry
        if self._clock() - stored_at >= self._ttl:
            del self._entries[key]
            return MISS
        return CacheLookup(hit=True, summary=summary)

    async def set_many(self, entries: Mapping[str, MarketSummary | None]) -> None:
        now = self._clock()
        for token, summary in entries.items():
            self._entries[token.lower()] = (summary, now)

    def clear(self) -> None:
        self._entries.clear()


class RedisMarketDataCache:
    """Redis-backed cache shared across agent processes.

    Redis errors degrade to cache misses; the aggregator is the source of
    truth and the cache is only an optimization.
    """

    def __init__(self, redis: Redis, *, ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS) -> None:
        self._redis = redis
        self._ttl_ms = max(1, int(ttl_seconds * 1000))

    def _key(self, token: str) -> str:
        return f"{REDIS_KEY_PREFIX}{token.lower()}"

    async def get(self, token: str) -> CacheLookup:
        try:
            raw = await self._redis.get(self._key(token))
        except Exception as e:
            logger.warning("Market cache get failed: %s", e)
            return MISS
        if raw is None:
            return MISS
        text = raw.decode() if isinstance(raw, bytes) else str(raw)
        if text == _NOT_FOUND:
            return CacheLookup(hit=True, summary=None)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Discarding malformed market cache entry for %s", token)
            return MISS
        return CacheLookup(hit=True, summary=_summary_from_cached(payload))

    async def set_many(self, entries: Mapping[str, MarketSummary | None]) -> None:
        if not entries:
            return
        try:
            async with self._redis.pipeline(transaction=False) as pipe:
                for token, summary in entries.items():
                    value = _NOT_FOUND if summary is None else json.dumps(summary.to_dict())
                    pipe.set(self._key(token), value, px=self._ttl_ms)
                await pipe.execute()
        except Exception as e:
            logger.warning("Market cache set failed: %s", e)


def _summary_from_cached(payload: dict[str, Any]) -> MarketSummary:
    return MarketSummary.from_api(
        {
            "token_id": payload.get("token"),
            "market_type": payload.get("market_type"),
            "price_native": payload.get("price_native"),
            "price_usd": payload.get("price_usd"),
            "volume": payload.get("volume"),
            "holder_count": payload.get("holder_count"),
            "ath_price_usd": payload.get("ath_price_usd"),
            "native_price": payload.get("native_price_usd"),
        }
    )


class MarketDataClient:
    """Paginated aggregator lookups behind an injected cache.

    Example:
        ```python
        client = MarketDataClient(cache=InMemoryMarketDataCache())
        summary = await client.get_market("0x...")
        await client.aclose()
        ```
    """

    def __init__(
        self,
        *,
        cache: MarketDataCache,
        api_url: str = DEFAULT_API_URL,
        max_pages: int = DEFAULT_MAX_PAGES,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._cache = cache
        self._api_url = api_url.rstrip("/")
        self._max_pages = max_pages
        self._timeout = timeout_seconds
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout))
            self._owns_session = True
        return self._session

    async def _fetch_page(self, page: int) -> list[MarketSummary]:
        session = await self._get_session()
        url = f"{self._api_url}{MARKET_CAP_PATH}"
        try:
            async with session.get(url, params={"page": str(page)}) as resp:
                if resp.status != 200:
                    raise MarketDataError(f"Aggregator returned HTTP {resp.status} for page {page}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise MarketDataError(f"Aggregator page {page} failed: {e}") from e

        if not isinstance(data, dict):
            raise MarketDataError(f"Unexpected aggregator payload on page {page}")
        summaries: list[MarketSummary] = []
        for entry in data.get("tokens") or []:
            info = entry.get("market_info") if isinstance(entry, dict) else None
            if isinstance(info, dict) and info.get("token_id"):
                summaries.append(MarketSummary.from_api(info))
        return summaries

    async def get_market(self, token: str) -> MarketSummary | None:
        """Look up a token's market summary.

        Returns:
            The summary, or None when the token is not listed within the
            scanned pages or the aggregator is unavailable.
        """
        key = token.lower()
        cached = await self._cache.get(key)
        if cached.hit:
            return cached.summary

        seen: dict[str, MarketSummary | None] = {}
        try:
            for page in range(1, self._max_pages + 1):
                summaries = await self._fetch_page(page)
                if not summaries:
                    break
                for summary in summaries:
                    seen[summary.token] = summary
                if key in seen:
                    break
        except MarketDataError as e:
            logger.warning("Market data unavailable for %s: %s", key, e)
            # Keep whatever the earlier pages returned.
            if seen:
                await self._cache.set_many(seen)
            return seen.get(key)

        found = seen.get(key)
        if found is None:
            seen[key] = None
        await self._cache.set_many(seen)
        return found

    async def aclose(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
