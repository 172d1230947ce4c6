"""Per-token venue state snapshots.

One Multicall3 round trip reads the token metadata and the lens state;
the aggregator summary is fetched in parallel. Individual reads that fail
fall back to neutral defaults so a partially broken token still yields a
snapshot; only a failure of the whole batch is treated as an error.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from limit_order_agent.chain.abi import (
    ERC20_NAME,
    ERC20_SYMBOL,
    ERC20_TOTAL_SUPPLY,
    LENS_GET_AMOUNT_OUT,
    LENS_GET_PROGRESS,
    LENS_IS_GRADUATED,
    LENS_IS_LOCKED,
    ABIDecodeError,
    FunctionSpec,
    checksum,
)
from limit_order_agent.chain.client import CallResult, ChainClientError
from limit_order_agent.monitor.models import UNKNOWN_NAME, UNKNOWN_SYMBOL, TokenChainState
from limit_order_agent.pricing import PROBE_AMOUNT

if TYPE_CHECKING:
    from limit_order_agent.chain.client import ChainClient
    from limit_order_agent.monitor.market_data import MarketDataClient
    from limit_order_agent.monitor.models import MarketSummary

logger = logging.getLogger(__name__)


class StateFetchError(Exception):
    """Raised when no snapshot at all could be assembled for a token."""


def _decode(spec: FunctionSpec, result: CallResult) -> tuple[Any, ...] | None:
    if not result.success:
        return None
    try:
        return spec.decode_output(result.return_data)
    except ABIDecodeError:
        return None


class StateFetcher:
    """Builds :class:`TokenChainState` snapshots.

    Args:
        client: Chain client used for the Multicall3 batch.
        lens_address: Price lens contract.
        default_router: Router reported when a probe quote is unreadable.
        market_data: Optional aggregator client; without it snapshots carry
            no market summary.
    """

    def __init__(
        self,
        client: ChainClient,
        *,
        lens_address: str,
        default_router: str,
        market_data: MarketDataClient | None = None,
    ) -> None:
        self._client = client
        self._lens = checksum(lens_address)
        self._default_router = default_router
        self._market_data = market_data

    def _calls(self, token: str) -> list[tuple[str, bytes]]:
        return [
            (token, ERC20_NAME.encode()),
            (token, ERC20_SYMBOL.encode()),
            (self._lens, LENS_IS_GRADUATED.encode(token)),
            (self._lens, LENS_IS_LOCKED.encode(token)),
            (self._lens, LENS_GET_PROGRESS.encode(token)),
            (self._lens, LENS_GET_AMOUNT_OUT.encode(token, PROBE_AMOUNT, True)),
            (self._lens, LENS_GET_AMOUNT_OUT.encode(token, PROBE_AMOUNT, False)),
            (token, ERC20_TOTAL_SUPPLY.encode()),
        ]

    async def _market(self, token: str) -> MarketSummary | None:
        if self._market_data is None:
            return None
        return await self._market_data.get_market(token)

    async def fetch_token_state(self, token: str) -> TokenChainState:
        """Snapshot one token.

        Raises:
            StateFetchError: If the batched read itself failed.
        """
        address = checksum(token)
        try:
            results, market = await asyncio.gather(
                self._client.aggregate3(self._calls(address)),
                self._market(token),
            )
        except ChainClientError as e:
            raise StateFetchError(f"State read failed for {token}: {e}") from e

        if len(results) != 8:
            raise StateFetchError(f"Expected 8 multicall results for {token}, got {len(results)}")

        failed: set[str] = set()

        def read(name: str, spec: FunctionSpec, result: CallResult) -> tuple[Any, ...] | None:
            decoded = _decode(spec, result)
            if decoded is None:
                failed.add(name)
            return decoded

        name = read("name", ERC20_NAME, results[0])
        symbol = read("symbol", ERC20_SYMBOL, results[1])
        graduated = read("is_graduated", LENS_IS_GRADUATED, results[2])
        locked = read("is_locked", LENS_IS_LOCKED, results[3])
        progress = read("progress", LENS_GET_PROGRESS, results[4])
        buy = read("buy_quote", LENS_GET_AMOUNT_OUT, results[5])
        sell = read("sell_quote", LENS_GET_AMOUNT_OUT, results[6])
        supply = read("total_supply", ERC20_TOTAL_SUPPLY, results[7])

        if failed:
            logger.warning("Degraded state for %s: %s fell back to defaults", token, ", ".join(sorted(failed)))

        return TokenChainState(
            token=token.lower(),
            name=name[0] if name else UNKNOWN_NAME,
            symbol=symbol[0] if symbol else UNKNOWN_SYMBOL,
            is_graduated=bool(graduated[0]) if graduated else False,
            is_locked=bool(locked[0]) if locked else False,
            progress=int(progress[0]) if progress else 0,
            total_supply=int(supply[0]) if supply else 0,
            buy_router=str(buy[0]) if buy else self._default_router,
            buy_amount_out=int(buy[1]) if buy else 0,
            sell_router=str(sell[0]) if sell else self._default_router,
            sell_amount_out=int(sell[1]) if sell else 0,
            market=market,
            failed_fields=frozenset(failed),
            fetched_at=datetime.now(UTC),
        )

    async def fetch_batch_token_states(self, tokens: Iterable[str]) -> dict[str, TokenChainState]:
        """Snapshot many tokens concurrently.

        Tokens are deduplicated case-insensitively. A token whose fetch
        fails is logged and left out of the result; the rest of the batch
        is unaffected.

        Returns:
            Mapping of lowercased token address to snapshot.
        """
        unique = list(dict.fromkeys(t.lower() for t in tokens))
        if not unique:
            return {}

        outcomes = await asyncio.gather(
            *(self.fetch_token_state(token) for token in unique),
            return_exceptions=True,
        )

        states: dict[str, TokenChainState] = {}
        for token, outcome in zip(unique, outcomes, strict=True):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error("Failed to fetch state for %s: %s", token, outcome)
                continue
            states[token] = outcome
        return states
