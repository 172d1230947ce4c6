"""Tests for per-token state snapshots."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from eth_abi import encode

from limit_order_agent.chain.client import CallResult, RPCError
from limit_order_agent.monitor.models import UNKNOWN_NAME, UNKNOWN_SYMBOL, MarketSummary
from limit_order_agent.monitor.state_fetcher import StateFetcher, StateFetchError

WAD = 10**18
TOKEN = "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"
OTHER_TOKEN = "0x" + "1" * 40
LENS = "0x7e78a8de94f21804f7a17f4e8bf9ec2c872187ea"
ROUTER = "0x6f6b8f1a20703309951a5127c45b49b1cd981a22"


def _ok(types: list[str], values: list) -> CallResult:
    return CallResult(success=True, return_data=encode(types, values))


FAILED = CallResult(success=False, return_data=b"")


def healthy_results() -> list[CallResult]:
    return [
        _ok(["string"], ["Test Token"]),
        _ok(["string"], ["TEST"]),
        _ok(["bool"], [False]),
        _ok(["bool"], [True]),
        _ok(["uint256"], [4200]),
        _ok(["address", "uint256"], [ROUTER, 1000 * WAD]),
        _ok(["address", "uint256"], [ROUTER, WAD // 1000]),
        _ok(["uint256"], [10**9 * WAD]),
    ]


@pytest.fixture
def mock_client() -> AsyncMock:
    client = AsyncMock()
    client.aggregate3 = AsyncMock(return_value=healthy_results())
    return client


@pytest.fixture
def fetcher(mock_client: AsyncMock) -> StateFetcher:
    return StateFetcher(mock_client, lens_address=LENS, default_router=ROUTER)


class TestFetchTokenState:
    @pytest.mark.asyncio
    async def test_healthy_snapshot(self, fetcher: StateFetcher, mock_client: AsyncMock) -> None:
        state = await fetcher.fetch_token_state(TOKEN)

        assert state.token == TOKEN
        assert state.name == "Test Token"
        assert state.symbol == "TEST"
        assert state.is_graduated is False
        assert state.is_locked is True
        assert state.progress == 4200
        assert state.buy_amount_out == 1000 * WAD
        assert state.sell_amount_out == WAD // 1000
        assert state.total_supply == 10**9 * WAD
        assert state.buy_router.lower() == ROUTER
        assert state.failed_fields == frozenset()
        assert state.market is None

        # One batched round trip with eight calls.
        mock_client.aggregate3.assert_awaited_once()
        assert len(mock_client.aggregate3.await_args.args[0]) == 8

    @pytest.mark.asyncio
    async def test_failed_fields_fall_back_to_defaults(self, fetcher: StateFetcher, mock_client: AsyncMock) -> None:
        results = healthy_results()
        results[0] = FAILED
        results[1] = CallResult(success=True, return_data=b"\x01")  # undecodable
        results[5] = FAILED
        mock_client.aggregate3.return_value = results

        state = await fetcher.fetch_token_state(TOKEN)

        assert state.name == UNKNOWN_NAME
        assert state.symbol == UNKNOWN_SYMBOL
        assert state.buy_amount_out == 0
        assert state.buy_router == ROUTER
        assert state.progress == 4200
        assert state.failed_fields == frozenset({"name", "symbol", "buy_quote"})
        assert state.is_degraded is True
        assert state.looks_unavailable is False

    @pytest.mark.asyncio
    async def test_everything_failed_looks_unavailable(self, fetcher: StateFetcher, mock_client: AsyncMock) -> None:
        mock_client.aggregate3.return_value = [FAILED] * 8

        state = await fetcher.fetch_token_state(TOKEN)

        assert state.looks_unavailable is True
        assert state.is_graduated is False
        assert state.total_supply == 0

    @pytest.mark.asyncio
    async def test_batch_failure_raises(self, fetcher: StateFetcher, mock_client: AsyncMock) -> None:
        mock_client.aggregate3.side_effect = RPCError("down")
        with pytest.raises(StateFetchError):
            await fetcher.fetch_token_state(TOKEN)

    @pytest.mark.asyncio
    async def test_market_summary_attached(self, mock_client: AsyncMock) -> None:
        market_data = AsyncMock()
        summary = MarketSummary(token=TOKEN, holder_count=12)
        market_data.get_market = AsyncMock(return_value=summary)
        fetcher = StateFetcher(mock_client, lens_address=LENS, default_router=ROUTER, market_data=market_data)

        state = await fetcher.fetch_token_state(TOKEN)

        assert state.market == summary
        market_data.get_market.assert_awaited_once_with(TOKEN)


class TestFetchBatch:
    @pytest.mark.asyncio
    async def test_deduplicates_case_insensitively(self, fetcher: StateFetcher, mock_client: AsyncMock) -> None:
        states = await fetcher.fetch_batch_token_states([TOKEN, TOKEN.upper().replace("0X", "0x")])

        assert list(states) == [TOKEN]
        assert mock_client.aggregate3.await_count == 1

    @pytest.mark.asyncio
    async def test_isolates_per_token_failures(self, fetcher: StateFetcher, mock_client: AsyncMock) -> None:
        def aggregate3(calls):
            if calls[0][0].lower() == OTHER_TOKEN:
                raise RPCError("down")
            return healthy_results()

        mock_client.aggregate3.side_effect = aggregate3

        states = await fetcher.fetch_batch_token_states([OTHER_TOKEN, TOKEN])

        assert set(states) == {TOKEN}

    @pytest.mark.asyncio
    async def test_empty_batch(self, fetcher: StateFetcher, mock_client: AsyncMock) -> None:
        assert await fetcher.fetch_batch_token_states([]) == {}
        mock_client.aggregate3.assert_not_called()
