"""Monad RPC client with rate limiting, retries and failover.

This module provides the chain client used by the fetchers and the
executor:
- Rate limiting to respect provider limits
- Retry logic with exponential backoff for reads
- Failover to secondary RPC URL
- Multicall3 batching of raw contract calls
- Single-attempt broadcast and bounded receipt waits for writes
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from aiohttp import ClientError
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted, Web3Exception
from web3.providers import AsyncHTTPProvider

from limit_order_agent.chain.abi import (
    ERC20_ALLOWANCE,
    ERC20_BALANCE_OF,
    MULTICALL3_AGGREGATE3,
    FunctionSpec,
    checksum,
)

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.5
DEFAULT_RECEIPT_POLL_SECONDS = 1.0
DEFAULT_MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

T = TypeVar("T")

_RETRYABLE_ERRORS = (Web3Exception, ClientError, TimeoutError)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails."""


class ReceiptTimeoutError(ChainClientError):
    """Raised when no receipt was observed within the timeout."""

    def __init__(self, tx_hash: str, timeout: float) -> None:
        super().__init__(f"No receipt for {tx_hash} after {timeout:.0f}s")
        self.tx_hash = tx_hash
        self.timeout = timeout


@dataclass(frozen=True)
class CallResult:
    """Outcome of one call inside a Multicall3 batch."""

    success: bool
    return_data: bytes


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ChainClient:
    """Async Monad client for contract reads and transaction submission.

    Reads are retried with exponential backoff and fail over to the
    secondary RPC. Broadcasts are never retried: a send is not idempotent
    and a second attempt could race the first into the mempool.

    Example:
        ```python
        client = ChainClient(
            rpc_url="https://rpc.monad.xyz",
            fallback_rpc_url="https://monad.publicnode.com",
        )

        balance = await client.get_token_balance(token, holder)
        results = await client.aggregate3([(token, ERC20_NAME.encode())])
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        multicall3_address: str = DEFAULT_MULTICALL3_ADDRESS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            multicall3_address: Multicall3 deployment used for batched reads.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._multicall3 = checksum(multicall3_address)
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3: AsyncWeb3[AsyncHTTPProvider] = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = AsyncWeb3(AsyncHTTPProvider(fallback_rpc_url))

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _attempt(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        endpoint: str,
        op: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
    ) -> tuple[bool, T | None, Exception | None]:
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                return True, await op(w3), None
            except _RETRYABLE_ERRORS as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    endpoint,
                    label,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff
        return False, None, last_error

    async def _execute_with_retry(
        self,
        label: str,
        op: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
    ) -> T:
        """Execute a read with retry and failover logic.

        Args:
            label: Name used in log lines and errors.
            op: Coroutine factory receiving the web3 instance to use.

        Returns:
            Result of ``op``.

        Raises:
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None

        if self._should_try_primary():
            ok, result, last_error = await self._attempt(self._w3, label, "Primary", op)
            if ok:
                self._primary_healthy = True
                return result  # type: ignore[return-value]
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback is not None:
            ok, result, error = await self._attempt(self._w3_fallback, label, "Fallback", op)
            if ok:
                logger.info("Fallback RPC succeeded for %s", label)
                return result  # type: ignore[return-value]
            last_error = error

        raise RPCError(f"RPC call {label} failed after all retries: {last_error}")

    @property
    def _active_w3(self) -> AsyncWeb3[AsyncHTTPProvider]:
        if self._primary_healthy or self._w3_fallback is None:
            return self._w3
        return self._w3_fallback

    async def call(self, to: str, data: bytes) -> bytes:
        """Execute an ``eth_call`` and return the raw return data."""
        tx = {"to": checksum(to), "data": data}

        async def op(w3: AsyncWeb3[AsyncHTTPProvider]) -> bytes:
            return bytes(await w3.eth.call(tx))  # type: ignore[arg-type]

        return await self._execute_with_retry("eth_call", op)

    async def call_function(self, to: str, spec: FunctionSpec, *args: Any) -> tuple[Any, ...]:
        """Encode, call and decode a single contract function."""
        raw = await self.call(to, spec.encode(*args))
        return spec.decode_output(raw)

    async def aggregate3(self, calls: Sequence[tuple[str, bytes]]) -> list[CallResult]:
        """Batch raw calls through Multicall3 with per-call failure allowed.

        Args:
            calls: ``(target, calldata)`` pairs.

        Returns:
            One :class:`CallResult` per call, in order.

        Raises:
            RPCError: If the aggregate call itself fails.
        """
        if not calls:
            return []
        payload = [(checksum(target), True, data) for target, data in calls]
        (results,) = await self.call_function(self._multicall3, MULTICALL3_AGGREGATE3, payload)
        return [CallResult(success=bool(ok), return_data=bytes(data)) for ok, data in results]

    async def get_token_balance(self, token: str, holder: str) -> int:
        (balance,) = await self.call_function(token, ERC20_BALANCE_OF, checksum(holder))
        return int(balance)

    async def get_allowance(self, token: str, owner: str, spender: str) -> int:
        (allowance,) = await self.call_function(token, ERC20_ALLOWANCE, checksum(owner), checksum(spender))
        return int(allowance)

    async def get_native_balance(self, address: str) -> int:
        account = checksum(address)

        async def op(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
            return int(await w3.eth.get_balance(account))

        return await self._execute_with_retry("get_balance", op)

    async def get_transaction_count(self, address: str) -> int:
        """Next nonce for ``address``, including pending transactions."""
        account = checksum(address)

        async def op(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
            return int(await w3.eth.get_transaction_count(account, "pending"))

        return await self._execute_with_retry("get_transaction_count", op)

    async def get_gas_price(self) -> int:
        async def op(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
            return int(await w3.eth.gas_price)

        return await self._execute_with_retry("gas_price", op)

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        async def op(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
            return int(await w3.eth.estimate_gas(tx))  # type: ignore[arg-type]

        return await self._execute_with_retry("estimate_gas", op)

    async def send_raw_transaction(self, raw_tx: bytes) -> str:
        """Broadcast a signed transaction once.

        Returns:
            The transaction hash as 0x-prefixed hex.

        Raises:
            RPCError: If the node rejects the transaction or is unreachable.
        """
        await self._rate_limiter.acquire()
        try:
            tx_hash = await self._active_w3.eth.send_raw_transaction(raw_tx)
        except _RETRYABLE_ERRORS as e:
            raise RPCError(f"Broadcast failed: {e}") from e
        return AsyncWeb3.to_hex(tx_hash)

    async def wait_for_receipt(
        self,
        tx_hash: str,
        *,
        timeout: float,
        poll_latency: float = DEFAULT_RECEIPT_POLL_SECONDS,
    ) -> dict[str, Any]:
        """Wait for a transaction receipt.

        Raises:
            ReceiptTimeoutError: If no receipt appears within ``timeout``.
            RPCError: If polling fails.
        """
        try:
            receipt = await self._active_w3.eth.wait_for_transaction_receipt(
                tx_hash,  # type: ignore[arg-type]
                timeout=timeout,
                poll_latency=poll_latency,
            )
        except TimeExhausted as e:
            raise ReceiptTimeoutError(tx_hash, timeout) from e
        except _RETRYABLE_ERRORS as e:
            raise RPCError(f"Receipt polling failed for {tx_hash}: {e}") from e
        return dict(receipt)

    async def health_check(self) -> bool:
        """Check if the client can connect to the RPC.

        Returns:
            True if healthy, False otherwise.
        """

        async def op(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
            return int(await w3.eth.block_number)

        try:
            await self._execute_with_retry("block_number", op)
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
