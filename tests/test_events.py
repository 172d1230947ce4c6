"""Tests for order event fan-out."""

from __future__ import annotations

import json
import logging
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from limit_order_agent.events import EventBus, EventType, OrderEvent

WALLET = "0xAbCdEf0000000000000000000000000000000001"


def make_event(order_id: str = "order-1", wallet: str = WALLET, **payload) -> OrderEvent:
    return OrderEvent(type=EventType.TRIGGERED, order_id=order_id, wallet_address=wallet, payload=payload)


class TestEventBus:
    @pytest.mark.asyncio
    async def test_delivers_to_wallet_subscribers(self) -> None:
        bus = EventBus()
        mine = bus.subscribe(WALLET.lower())
        other = bus.subscribe("0x" + "9" * 40)

        await bus.publish(make_event(price="0.001"))

        event = await mine.get()
        assert event.order_id == "order-1"
        assert event.payload == {"price": "0.001"}
        assert other.queue.empty()

    @pytest.mark.asyncio
    async def test_drops_oldest_when_full(self) -> None:
        bus = EventBus(queue_size=2)
        sub = bus.subscribe(WALLET)

        for i in range(3):
            await bus.publish(make_event(order_id=f"order-{i}"))

        assert sub.dropped == 1
        assert [(await sub.get()).order_id, (await sub.get()).order_id] == ["order-1", "order-2"]

    def test_context_manager_unsubscribes(self) -> None:
        bus = EventBus()
        with bus.subscribe(WALLET) as sub:
            assert bus.subscriber_count(WALLET) == 1
            assert sub.wallet_address == WALLET.lower()
        assert bus.subscriber_count(WALLET) == 0

    @pytest.mark.asyncio
    async def test_publishes_to_redis(self) -> None:
        redis = AsyncMock()
        bus = EventBus(redis=redis)

        await bus.publish(make_event(tx_hash="0x01"))

        channel, body = redis.publish.await_args.args
        assert channel == f"limit_orders:events:{WALLET.lower()}"
        decoded = json.loads(body)
        assert decoded["type"] == "order:triggered"
        assert decoded["order_id"] == "order-1"
        assert decoded["tx_hash"] == "0x01"

    @pytest.mark.asyncio
    async def test_redis_errors_are_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        redis = AsyncMock()
        redis.publish = AsyncMock(side_effect=RedisConnectionError("down"))
        bus = EventBus(redis=redis)
        sub = bus.subscribe(WALLET)

        with caplog.at_level(logging.WARNING, logger="limit_order_agent.events"):
            await bus.publish(make_event())

        assert "Failed to publish" in caplog.text
        assert not sub.queue.empty()
