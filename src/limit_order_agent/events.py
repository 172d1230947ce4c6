"""Order event fan-out.

Events are delivered to in-process subscribers through bounded per-wallet
queues and, when Redis is configured, published as JSON on
``limit_orders:events:<wallet>`` so other processes (a web dashboard, for
example) can stream them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100
REDIS_CHANNEL_PREFIX = "limit_orders:events:"


class EventType(str, Enum):
    TRIGGERED = "order:triggered"
    EXECUTED = "order:executed"
    FAILED = "order:failed"
    EXPIRED = "order:expired"
    ABORTED = "order:aborted"


@dataclass(frozen=True)
class OrderEvent:
    """A single order lifecycle event, addressed to the owner wallet."""

    type: EventType
    order_id: str
    wallet_address: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "order_id": self.order_id,
            "wallet_address": self.wallet_address,
            "timestamp": self.timestamp.isoformat(),
            **self.payload,
        }


class Subscription:
    """Async iterator over one subscriber's events.

    The queue is bounded; when a slow consumer falls behind, the oldest
    event is dropped to make room.
    """

    def __init__(self, bus: EventBus, wallet_address: str, maxsize: int) -> None:
        self._bus = bus
        self.wallet_address = wallet_address
        self.queue: asyncio.Queue[OrderEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: OrderEvent) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(event)

    async def get(self) -> OrderEvent:
        return await self.queue.get()

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[OrderEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[OrderEvent]:
        while True:
            yield await self.queue.get()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class EventBus:
    """Per-wallet publish/subscribe for order events.

    Example:
        ```python
        bus = EventBus(redis=redis)
        with bus.subscribe("0xabc...") as sub:
            async for event in sub:
                print(event.type, event.order_id)
        ```
    """

    def __init__(self, *, redis: Redis | None = None, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._redis = redis
        self._queue_size = queue_size
        self._subscribers: dict[str, set[Subscription]] = {}

    def subscribe(self, wallet_address: str) -> Subscription:
        key = wallet_address.lower()
        sub = Subscription(self, key, self._queue_size)
        self._subscribers.setdefault(key, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.wallet_address)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.wallet_address]

    def subscriber_count(self, wallet_address: str) -> int:
        return len(self._subscribers.get(wallet_address.lower(), ()))

    async def publish(self, event: OrderEvent) -> None:
        """Deliver ``event`` to local subscribers and Redis.

        Redis errors are logged; event delivery never fails an order step.
        """
        wallet = event.wallet_address.lower()
        for sub in list(self._subscribers.get(wallet, ())):
            sub.offer(event)

        if self._redis is None:
            return
        try:
            await self._redis.publish(f"{REDIS_CHANNEL_PREFIX}{wallet}", json.dumps(event.to_dict()))
        except RedisError as e:
            logger.warning("Failed to publish %s for order %s to Redis: %s", event.type.value, event.order_id, e)
