"""Tests for the order service."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from limit_order_agent.events import EventBus, EventType
from limit_order_agent.monitor.models import Direction, OrderStatus, TriggerType
from limit_order_agent.service import CreateOrderRequest, OrderService, build_orderbook
from limit_order_agent.storage.repos import (
    ExecutionLogDTO,
    ExecutionLogRepository,
    InvalidTransitionError,
    LogAction,
    OrderNotFoundError,
    OrderRepository,
)

WALLET = "0x1234567890abcdef1234567890abcdef12345678"
OTHER_WALLET = "0x" + "9" * 40
TOKEN = "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"
TX_HASH = "0x" + "ab" * 32


def payload(**overrides) -> dict:
    body = {
        "walletAddress": WALLET,
        "tokenAddress": TOKEN,
        "direction": "BUY",
        "triggerType": "PRICE_BELOW",
        "triggerValue": str(2 * 10**15),
        "inputAmount": str(10**18),
        "expiresAt": (datetime.now(UTC) + timedelta(days=1)).isoformat(),
    }
    body.update(overrides)
    return body


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def state_fetcher(state_factory) -> AsyncMock:
    fetcher = AsyncMock()
    fetcher.fetch_token_state = AsyncMock(return_value=state_factory())
    return fetcher


@pytest.fixture
def service(db, events, state_fetcher) -> OrderService:
    return OrderService(db, events, state_fetcher=state_fetcher)


class TestCreateOrderRequest:
    def test_accepts_camel_case(self) -> None:
        request = CreateOrderRequest.model_validate(payload())
        assert request.direction == Direction.BUY
        assert request.trigger_type == TriggerType.PRICE_BELOW
        assert request.max_slippage_bps == 100
        assert request.expires_at.tzinfo is not None

    def test_naive_expiry_is_utc(self) -> None:
        naive = (datetime.now(UTC) + timedelta(days=1)).replace(tzinfo=None)
        request = CreateOrderRequest.model_validate(payload(expiresAt=naive.isoformat()))
        assert request.expires_at.tzinfo == UTC

    @pytest.mark.parametrize(
        "overrides",
        [
            {"walletAddress": "0x123"},
            {"tokenAddress": "not-an-address"},
            {"direction": "HOLD"},
            {"triggerType": "MOON"},
            {"triggerValue": "1.5"},
            {"inputAmount": "0"},
            {"inputAmount": "-1"},
            {"maxSlippageBps": 0},
            {"maxSlippageBps": 5001},
            {"expiresAt": "2020-01-01T00:00:00+00:00"},
            {"triggerType": "STOP_LOSS", "triggerValue": "10001"},
            {"triggerType": "TRAILING_STOP", "triggerValue": "20000"},
        ],
    )
    def test_rejects_invalid_payloads(self, overrides: dict) -> None:
        with pytest.raises(ValidationError):
            CreateOrderRequest.model_validate(payload(**overrides))

    def test_take_profit_may_exceed_100_percent(self) -> None:
        request = CreateOrderRequest.model_validate(payload(triggerType="TAKE_PROFIT", triggerValue="30000"))
        assert request.trigger_value == "30000"


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_creates_active_order(self, service: OrderService, state_fetcher: AsyncMock) -> None:
        order = await service.create_order(CreateOrderRequest.model_validate(payload()))

        assert order.status == OrderStatus.ACTIVE
        assert order.input_amount == 10**18
        assert order.reference_price is None
        state_fetcher.fetch_token_state.assert_not_called()

    @pytest.mark.asyncio
    async def test_seeds_reference_price(self, service: OrderService) -> None:
        order = await service.create_order(
            CreateOrderRequest.model_validate(payload(direction="SELL", triggerType="STOP_LOSS", triggerValue="2000"))
        )
        assert order.reference_price == 10**15
        assert order.peak_price is None

    @pytest.mark.asyncio
    async def test_seeds_peak_price(self, service: OrderService) -> None:
        order = await service.create_order(
            CreateOrderRequest.model_validate(payload(direction="SELL", triggerType="TRAILING_STOP", triggerValue="1000"))
        )
        assert order.peak_price == 10**15

    @pytest.mark.asyncio
    async def test_explicit_reference_wins(self, service: OrderService, state_fetcher: AsyncMock) -> None:
        order = await service.create_order(
            CreateOrderRequest.model_validate(
                payload(triggerType="TAKE_PROFIT", triggerValue="15000", referencePrice="42")
            )
        )
        assert order.reference_price == 42
        state_fetcher.fetch_token_state.assert_not_called()

    @pytest.mark.asyncio
    async def test_unavailable_token_is_not_seeded(
        self, service: OrderService, state_fetcher: AsyncMock, state_factory
    ) -> None:
        state_fetcher.fetch_token_state.return_value = state_factory(name="Unknown", progress=0, buy_amount_out=0)

        order = await service.create_order(
            CreateOrderRequest.model_validate(payload(triggerType="PRICE_DROP_PCT", triggerValue="500"))
        )

        assert order.reference_price is None


class TestOrderLifecycle:
    @pytest.mark.asyncio
    async def test_list_orders(self, service: OrderService) -> None:
        first = await service.create_order(CreateOrderRequest.model_validate(payload()))
        await service.create_order(CreateOrderRequest.model_validate(payload(walletAddress=OTHER_WALLET)))

        orders = await service.list_orders(WALLET.upper().replace("0X", "0x"))
        assert [o.id for o in orders] == [first.id]
        assert await service.list_orders(WALLET, status=OrderStatus.CANCELLED) == []

    @pytest.mark.asyncio
    async def test_cancel(self, service: OrderService) -> None:
        order = await service.create_order(CreateOrderRequest.model_validate(payload()))

        cancelled = await service.cancel_order(order.id, wallet_address=WALLET)

        assert cancelled.status == OrderStatus.CANCELLED
        with pytest.raises(InvalidTransitionError):
            await service.cancel_order(order.id)

    @pytest.mark.asyncio
    async def test_cancel_other_wallet_is_not_found(self, service: OrderService) -> None:
        order = await service.create_order(CreateOrderRequest.model_validate(payload()))

        with pytest.raises(OrderNotFoundError):
            await service.cancel_order(order.id, wallet_address=OTHER_WALLET)
        assert (await service.get_order(order.id)).status == OrderStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_confirm_marks_executed(self, db, service: OrderService, events: EventBus) -> None:
        order = await service.create_order(CreateOrderRequest.model_validate(payload()))
        async with db.get_async_session() as session:
            await OrderRepository(session).transition(order.id, OrderStatus.TRIGGERED)
        sub = events.subscribe(WALLET)

        confirmed = await service.confirm_order(order.id, TX_HASH)

        assert confirmed.status == OrderStatus.EXECUTED
        assert confirmed.tx_hash == TX_HASH
        event = await sub.get()
        assert event.type == EventType.EXECUTED
        assert event.payload["recurring"] is False
        logs = await service.get_execution_logs(order.id)
        assert logs[0].action == LogAction.USER_SIGNED

    @pytest.mark.asyncio
    async def test_confirm_rearms_recurring_order(self, db, service: OrderService) -> None:
        order = await service.create_order(
            CreateOrderRequest.model_validate(payload(triggerType="DCA_INTERVAL", triggerValue="3600"))
        )
        async with db.get_async_session() as session:
            await OrderRepository(session).transition(order.id, OrderStatus.TRIGGERED)

        confirmed = await service.confirm_order(order.id, TX_HASH)

        assert confirmed.status == OrderStatus.ACTIVE
        assert confirmed.last_executed_at is not None

    @pytest.mark.asyncio
    async def test_confirm_requires_triggered(self, service: OrderService) -> None:
        order = await service.create_order(CreateOrderRequest.model_validate(payload()))
        with pytest.raises(InvalidTransitionError):
            await service.confirm_order(order.id, TX_HASH)

    @pytest.mark.asyncio
    async def test_confirm_rejects_bad_hash(self, service: OrderService) -> None:
        order = await service.create_order(CreateOrderRequest.model_validate(payload()))
        with pytest.raises(ValidationError):
            await service.confirm_order(order.id, "0x1234")

    @pytest.mark.asyncio
    async def test_confirm_unknown_order(self, service: OrderService) -> None:
        with pytest.raises(OrderNotFoundError):
            await service.confirm_order("missing", TX_HASH)

    @pytest.mark.asyncio
    async def test_execution_logs_limit(self, db, service: OrderService) -> None:
        async with db.get_async_session() as session:
            repo = ExecutionLogRepository(session)
            for reason in ("a", "b", "c"):
                await repo.append(ExecutionLogDTO(order_id="o1", action=LogAction.CHECK, reason=reason))

        assert [entry.reason for entry in await service.get_execution_logs("o1", limit=2)] == ["c", "b"]


class TestOrderbook:
    def test_sorts_sides(self, order_factory) -> None:
        orders = [
            order_factory(id="b1", direction=Direction.BUY, trigger_value="100"),
            order_factory(id="b2", direction=Direction.BUY, trigger_value="300"),
            order_factory(id="b3", direction=Direction.BUY, trigger_value="n/a"),
            order_factory(id="b4", direction=Direction.BUY, trigger_value="200"),
            order_factory(id="s1", direction=Direction.SELL, trigger_value="500"),
            order_factory(id="s2", direction=Direction.SELL, trigger_value="50"),
        ]

        book = build_orderbook(TOKEN.upper().replace("0X", "0x"), orders)

        assert [o.id for o in book.buy_orders] == ["b2", "b4", "b1", "b3"]
        assert [o.id for o in book.sell_orders] == ["s2", "s1"]
        body = book.to_dict()
        assert body["token_address"] == TOKEN
        assert body["total_buy_orders"] == 4
        assert body["total_sell_orders"] == 2

    @pytest.mark.asyncio
    async def test_get_orderbook_excludes_closed(self, service: OrderService) -> None:
        kept = await service.create_order(CreateOrderRequest.model_validate(payload()))
        gone = await service.create_order(CreateOrderRequest.model_validate(payload()))
        await service.cancel_order(gone.id)

        book = await service.get_orderbook(TOKEN)

        assert [o.id for o in book.buy_orders] == [kept.id]
        assert book.sell_orders == []


class TestReadThroughs:
    @pytest.mark.asyncio
    async def test_quote_requires_positive_amount(self, db, events) -> None:
        service = OrderService(db, events, quote_fetcher=AsyncMock())
        with pytest.raises(ValueError):
            await service.get_quote(TOKEN, 0, is_buy=True)

    @pytest.mark.asyncio
    async def test_missing_collaborators(self, db, events) -> None:
        service = OrderService(db, events)
        with pytest.raises(RuntimeError):
            await service.get_quote(TOKEN, 1, is_buy=True)
        with pytest.raises(RuntimeError):
            await service.get_token_state(TOKEN)
        with pytest.raises(RuntimeError):
            await service.create_account(WALLET)

    @pytest.mark.asyncio
    async def test_account_settings_without_account(self, service: OrderService) -> None:
        assert await service.get_account(WALLET) is None
        assert await service.update_account_settings(WALLET, auto_execute=False) is None
