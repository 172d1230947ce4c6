"""Order service: the API surface for order intake and read models.

Everything a dashboard or chat front end needs goes through
:class:`OrderService`: creating, listing, cancelling and confirming
orders, the per-token orderbook view, execution logs, event
subscriptions and read-through token state and quotes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from limit_order_agent.events import EventType, OrderEvent
from limit_order_agent.monitor.models import Direction, OrderStatus, TriggerType
from limit_order_agent.pricing import current_price
from limit_order_agent.storage.repos import (
    AccountRepository,
    AgentAccountDTO,
    ExecutionLogDTO,
    ExecutionLogRepository,
    LogAction,
    NewOrder,
    OrderDTO,
    OrderNotFoundError,
    OrderRepository,
)

if TYPE_CHECKING:
    from limit_order_agent.custody.wallets import WalletCustody
    from limit_order_agent.events import EventBus, Subscription
    from limit_order_agent.monitor.models import FreshQuote, TokenChainState
    from limit_order_agent.monitor.quote_fetcher import QuoteFetcher
    from limit_order_agent.monitor.state_fetcher import StateFetcher
    from limit_order_agent.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"
UINT_PATTERN = r"^\d+$"
TX_HASH_PATTERN = r"^0x[0-9a-fA-F]{64}$"
DEFAULT_MAX_SLIPPAGE_BPS = 100
MAX_ORDER_SLIPPAGE_BPS = 5000

REFERENCE_PRICE_TRIGGERS = frozenset(
    {TriggerType.TAKE_PROFIT, TriggerType.STOP_LOSS, TriggerType.PRICE_DROP_PCT}
)


class CreateOrderRequest(BaseModel):
    """Validated order intake payload.

    Accepts camelCase keys (``tokenAddress``) as sent by web clients, or
    snake_case field names.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    wallet_address: str = Field(pattern=ADDRESS_PATTERN)
    token_address: str = Field(pattern=ADDRESS_PATTERN)
    direction: Direction
    trigger_type: TriggerType
    trigger_value: str = Field(pattern=UINT_PATTERN)
    input_amount: str = Field(pattern=UINT_PATTERN)
    expires_at: datetime
    max_slippage_bps: int = Field(default=DEFAULT_MAX_SLIPPAGE_BPS, ge=1, le=MAX_ORDER_SLIPPAGE_BPS)
    reference_price: str | None = Field(default=None, pattern=UINT_PATTERN)
    peak_price: str | None = Field(default=None, pattern=UINT_PATTERN)

    @field_validator("input_amount")
    @classmethod
    def validate_input_amount(cls, v: str) -> str:
        if int(v) == 0:
            raise ValueError("inputAmount must be a positive integer in base units")
        return v

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            v = v.replace(tzinfo=UTC)
        if v <= datetime.now(UTC):
            raise ValueError("expiresAt must be in the future")
        return v

    @model_validator(mode="after")
    def validate_bps_trigger(self) -> CreateOrderRequest:
        bps_types = {TriggerType.TRAILING_STOP, TriggerType.STOP_LOSS, TriggerType.PRICE_DROP_PCT}
        if self.trigger_type in bps_types and int(self.trigger_value) > 10_000:
            raise ValueError(f"{self.trigger_type.value} triggerValue must be at most 10000 bps")
        return self


class ConfirmOrderRequest(BaseModel):
    tx_hash: str = Field(pattern=TX_HASH_PATTERN, alias="txHash")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


@dataclass
class OrderBookView:
    """Open orders for one token, split by side.

    BUY orders are sorted by trigger value descending and SELL orders
    ascending. Non-numeric trigger values sort after the numeric ones in
    their original order.
    """

    token_address: str
    buy_orders: list[OrderDTO] = field(default_factory=list)
    sell_orders: list[OrderDTO] = field(default_factory=list)

    @property
    def total_buy_orders(self) -> int:
        return len(self.buy_orders)

    @property
    def total_sell_orders(self) -> int:
        return len(self.sell_orders)

    @staticmethod
    def _entry(order: OrderDTO) -> dict[str, Any]:
        return {
            "id": order.id,
            "trigger_type": order.trigger_type,
            "trigger_value": order.trigger_value,
            "input_amount": str(order.input_amount),
            "max_slippage_bps": order.max_slippage_bps,
            "status": order.status.value,
            "created_at": order.created_at.isoformat() if order.created_at else None,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_address": self.token_address,
            "buy_orders": [self._entry(o) for o in self.buy_orders],
            "sell_orders": [self._entry(o) for o in self.sell_orders],
            "total_buy_orders": self.total_buy_orders,
            "total_sell_orders": self.total_sell_orders,
        }


def _trigger_sort_key(descending: bool):
    def key(order: OrderDTO) -> tuple[int, int]:
        try:
            value = int(order.trigger_value)
        except ValueError:
            return (1, 0)
        return (0, -value if descending else value)

    return key


def build_orderbook(token_address: str, orders: list[OrderDTO]) -> OrderBookView:
    buys = [o for o in orders if o.direction == Direction.BUY]
    sells = [o for o in orders if o.direction == Direction.SELL]
    return OrderBookView(
        token_address=token_address.lower(),
        buy_orders=sorted(buys, key=_trigger_sort_key(descending=True)),
        sell_orders=sorted(sells, key=_trigger_sort_key(descending=False)),
    )


class OrderService:
    """Order intake and read models.

    Args:
        db: Database manager.
        events: Event bus, for subscriptions and confirmation events.
        state_fetcher: Token snapshots; also seeds reference and peak
            prices for orders created without them.
        quote_fetcher: Read-through quotes.
        custody: Agent wallet custody, for account management.

    Example:
        ```python
        service = OrderService(db, events, state_fetcher=fetcher)
        order = await service.create_order(
            CreateOrderRequest.model_validate(payload)
        )
        book = await service.get_orderbook(order.token_address)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        events: EventBus,
        *,
        state_fetcher: StateFetcher | None = None,
        quote_fetcher: QuoteFetcher | None = None,
        custody: WalletCustody | None = None,
    ) -> None:
        self._db = db
        self._events = events
        self._state_fetcher = state_fetcher
        self._quote_fetcher = quote_fetcher
        self._custody = custody

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def _seed_prices(self, request: CreateOrderRequest) -> tuple[int | None, int | None]:
        reference = int(request.reference_price) if request.reference_price is not None else None
        peak = int(request.peak_price) if request.peak_price is not None else None

        needs_reference = reference is None and request.trigger_type in REFERENCE_PRICE_TRIGGERS
        needs_peak = peak is None and request.trigger_type == TriggerType.TRAILING_STOP
        if not (needs_reference or needs_peak) or self._state_fetcher is None:
            return reference, peak

        state = await self._state_fetcher.fetch_token_state(request.token_address)
        if state.looks_unavailable:
            logger.warning("Token %s state unavailable, creating order without seeded prices", request.token_address)
            return reference, peak

        price = current_price(request.direction, state)
        if price > 0:
            if needs_reference:
                reference = price
            if needs_peak:
                peak = price
        return reference, peak

    async def create_order(self, request: CreateOrderRequest) -> OrderDTO:
        """Persist a new ACTIVE order.

        Reference-price triggers (TAKE_PROFIT, STOP_LOSS, PRICE_DROP_PCT)
        and TRAILING_STOP take their reference or peak from the current
        price when the request does not supply one.
        """
        reference, peak = await self._seed_prices(request)
        async with self._db.get_async_session() as session:
            return await OrderRepository(session).create(
                NewOrder(
                    wallet_address=request.wallet_address,
                    token_address=request.token_address,
                    direction=request.direction,
                    input_amount=int(request.input_amount),
                    trigger_type=request.trigger_type.value,
                    trigger_value=request.trigger_value,
                    max_slippage_bps=request.max_slippage_bps,
                    expires_at=request.expires_at,
                    reference_price=reference,
                    peak_price=peak,
                )
            )

    async def list_orders(self, wallet_address: str, *, status: OrderStatus | None = None) -> list[OrderDTO]:
        async with self._db.get_async_session() as session:
            return await OrderRepository(session).list_by_wallet(wallet_address, status=status)

    async def get_order(self, order_id: str) -> OrderDTO | None:
        async with self._db.get_async_session() as session:
            return await OrderRepository(session).get(order_id)

    async def cancel_order(self, order_id: str, *, wallet_address: str | None = None) -> OrderDTO:
        """Cancel an ACTIVE order.

        Raises:
            OrderNotFoundError: If the order does not exist or belongs to
                another wallet.
            InvalidTransitionError: If the order is no longer ACTIVE.
        """
        async with self._db.get_async_session() as session:
            repo = OrderRepository(session)
            order = await repo.get(order_id)
            if order is None or (wallet_address is not None and order.wallet_address != wallet_address.lower()):
                raise OrderNotFoundError(f"Order {order_id} not found")
            return await repo.transition(order_id, OrderStatus.CANCELLED)

    async def confirm_order(self, order_id: str, tx_hash: str) -> OrderDTO:
        """Record a user-signed transaction for a notify-only TRIGGERED order.

        Recurring (DCA) orders re-arm to ACTIVE; everything else becomes
        EXECUTED.

        Raises:
            pydantic.ValidationError: If ``tx_hash`` is malformed.
            OrderNotFoundError: If the order does not exist.
            InvalidTransitionError: If the order is not TRIGGERED.
        """
        confirmed_hash = ConfirmOrderRequest(tx_hash=tx_hash).tx_hash
        async with self._db.get_async_session() as session:
            repo = OrderRepository(session)
            order = await repo.get(order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found")
            recurring = order.trigger_type == TriggerType.DCA_INTERVAL.value
            if recurring and order.status == OrderStatus.TRIGGERED:
                updated = await repo.transition(
                    order_id,
                    OrderStatus.ACTIVE,
                    tx_hash=confirmed_hash,
                    last_executed_at=datetime.now(UTC),
                )
            else:
                updated = await repo.transition(order_id, OrderStatus.EXECUTED, tx_hash=confirmed_hash)
            await ExecutionLogRepository(session).append(
                ExecutionLogDTO(
                    order_id=order_id,
                    action=LogAction.USER_SIGNED,
                    tx_hash=confirmed_hash,
                    reason="Transaction signed and submitted by wallet owner",
                )
            )

        await self._events.publish(
            OrderEvent(
                type=EventType.EXECUTED,
                order_id=order_id,
                wallet_address=updated.wallet_address,
                payload={
                    "tx_hash": confirmed_hash,
                    "token_address": updated.token_address,
                    "direction": updated.direction.value,
                    "confirmed": False,
                    "recurring": recurring,
                },
            )
        )
        return updated

    async def get_orderbook(self, token_address: str) -> OrderBookView:
        async with self._db.get_async_session() as session:
            orders = await OrderRepository(session).list_open_by_token(token_address)
        return build_orderbook(token_address, orders)

    async def get_execution_logs(self, order_id: str, *, limit: int | None = None) -> list[ExecutionLogDTO]:
        async with self._db.get_async_session() as session:
            return await ExecutionLogRepository(session).list_for_order(order_id, limit=limit)

    def subscribe(self, wallet_address: str) -> Subscription:
        return self._events.subscribe(wallet_address)

    # ------------------------------------------------------------------
    # Read-throughs
    # ------------------------------------------------------------------

    async def get_token_state(self, token_address: str) -> TokenChainState:
        if self._state_fetcher is None:
            raise RuntimeError("OrderService was created without a state fetcher")
        return await self._state_fetcher.fetch_token_state(token_address)

    async def get_quote(self, token_address: str, amount_in: int, *, is_buy: bool) -> FreshQuote:
        if self._quote_fetcher is None:
            raise RuntimeError("OrderService was created without a quote fetcher")
        if amount_in <= 0:
            raise ValueError("amount_in must be positive")
        return await self._quote_fetcher.fetch_fresh_quote(token_address, amount_in, is_buy=is_buy)

    # ------------------------------------------------------------------
    # Agent accounts
    # ------------------------------------------------------------------

    async def create_account(self, wallet_address: str) -> AgentAccountDTO:
        if self._custody is None:
            raise RuntimeError("OrderService was created without wallet custody")
        return await self._custody.create_account(wallet_address)

    async def get_account(self, wallet_address: str) -> AgentAccountDTO | None:
        async with self._db.get_async_session() as session:
            return await AccountRepository(session).get(wallet_address)

    async def update_account_settings(
        self,
        wallet_address: str,
        *,
        auto_execute: bool | None = None,
        ai_risk_check: bool | None = None,
    ) -> AgentAccountDTO | None:
        async with self._db.get_async_session() as session:
            return await AccountRepository(session).set_flags(
                wallet_address, auto_execute=auto_execute, ai_risk_check=ai_risk_check
            )
