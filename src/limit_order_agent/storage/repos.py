"""Repository pattern implementations for data access.

This module provides clean data access abstractions for orders,
execution logs and agent accounts.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from limit_order_agent.monitor.models import Direction, OrderStatus
from limit_order_agent.storage.models import AgentAccountModel, ExecutionLogModel, OrderModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage errors."""


class OrderNotFoundError(StorageError):
    """Raised when an order id does not exist."""


class InvalidTransitionError(StorageError):
    """Raised when a status change is not allowed by the order state machine."""

    def __init__(self, order_id: str, current: OrderStatus, target: OrderStatus) -> None:
        super().__init__(f"Order {order_id}: cannot transition {current.value} -> {target.value}")
        self.order_id = order_id
        self.current = current
        self.target = target


# ACTIVE -> FAILED covers hard failures before the trigger transition
# (nothing to sell, approval failed). TRIGGERED -> ACTIVE re-arms DCA orders.
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.ACTIVE: frozenset(
        {OrderStatus.EXPIRED, OrderStatus.CANCELLED, OrderStatus.TRIGGERED, OrderStatus.FAILED}
    ),
    OrderStatus.TRIGGERED: frozenset({OrderStatus.EXECUTED, OrderStatus.FAILED, OrderStatus.ACTIVE}),
    OrderStatus.EXECUTED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}


class LogAction(str, Enum):
    """Execution log entry tags."""

    CHECK = "CHECK"
    TRIGGER = "TRIGGER"
    ABORT = "ABORT"
    EXPIRE = "EXPIRE"
    USER_SIGNED = "USER_SIGNED"
    TX_CONFIRMED = "TX_CONFIRMED"
    TX_FAILED = "TX_FAILED"


def _as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _int_or_none(value: str | None) -> int | None:
    return int(value) if value not in (None, "") else None


def _str_or_none(value: int | None) -> str | None:
    return str(value) if value is not None else None


@dataclass
class NewOrder:
    """Fields supplied when an order is created."""

    wallet_address: str
    token_address: str
    direction: Direction
    input_amount: int
    trigger_type: str
    trigger_value: str
    max_slippage_bps: int
    expires_at: datetime
    reference_price: int | None = None
    peak_price: int | None = None


@dataclass
class OrderDTO:
    """Data transfer object for orders.

    Amounts and prices are plain ints here; the decimal-string encoding
    is a storage detail.
    """

    id: str
    wallet_address: str
    token_address: str
    direction: Direction
    input_amount: int
    trigger_type: str
    trigger_value: str
    max_slippage_bps: int
    expires_at: datetime
    status: OrderStatus
    reference_price: int | None = None
    peak_price: int | None = None
    last_executed_at: datetime | None = None
    router_used: str | None = None
    tx_hash: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: OrderModel) -> OrderDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            wallet_address=model.wallet_address,
            token_address=model.token_address,
            direction=Direction(model.direction),
            input_amount=int(model.input_amount),
            trigger_type=model.trigger_type,
            trigger_value=model.trigger_value,
            max_slippage_bps=model.max_slippage_bps,
            expires_at=_as_utc(model.expires_at),  # type: ignore[arg-type]
            status=OrderStatus(model.status),
            reference_price=_int_or_none(model.reference_price),
            peak_price=_int_or_none(model.peak_price),
            last_executed_at=_as_utc(model.last_executed_at),
            router_used=model.router_used,
            tx_hash=model.tx_hash,
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "wallet_address": self.wallet_address,
            "token_address": self.token_address,
            "direction": self.direction.value,
            "input_amount": str(self.input_amount),
            "trigger_type": self.trigger_type,
            "trigger_value": self.trigger_value,
            "max_slippage_bps": self.max_slippage_bps,
            "expires_at": self.expires_at.isoformat(),
            "status": self.status.value,
            "reference_price": _str_or_none(self.reference_price),
            "peak_price": _str_or_none(self.peak_price),
            "last_executed_at": self.last_executed_at.isoformat() if self.last_executed_at else None,
            "router_used": self.router_used,
            "tx_hash": self.tx_hash,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class ExecutionLogDTO:
    """Data transfer object for execution log entries."""

    order_id: str
    action: LogAction
    current_price: int | None = None
    current_progress: int | None = None
    is_graduated: bool | None = None
    is_locked: bool | None = None
    router_address: str | None = None
    unsigned_tx: dict[str, Any] | None = None
    tx_hash: str | None = None
    ai_explanation: str | None = None
    ai_provider: str | None = None
    reason: str | None = None
    id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ExecutionLogModel) -> ExecutionLogDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            id=model.id,
            order_id=model.order_id,
            action=LogAction(model.action),
            current_price=_int_or_none(model.current_price),
            current_progress=model.current_progress,
            is_graduated=model.is_graduated,
            is_locked=model.is_locked,
            router_address=model.router_address,
            unsigned_tx=json.loads(model.unsigned_tx_data) if model.unsigned_tx_data else None,
            tx_hash=model.tx_hash,
            ai_explanation=model.ai_explanation,
            ai_provider=model.ai_provider,
            reason=model.reason,
            created_at=_as_utc(model.created_at),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "action": self.action.value,
            "current_price": _str_or_none(self.current_price),
            "current_progress": self.current_progress,
            "is_graduated": self.is_graduated,
            "is_locked": self.is_locked,
            "router_address": self.router_address,
            "unsigned_tx": self.unsigned_tx,
            "tx_hash": self.tx_hash,
            "ai_explanation": self.ai_explanation,
            "ai_provider": self.ai_provider,
            "reason": self.reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class AgentAccountDTO:
    """Data transfer object for agent accounts."""

    wallet_address: str
    agent_address: str
    agent_key_enc: str
    auto_execute: bool = True
    ai_risk_check: bool = False
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AgentAccountModel) -> AgentAccountDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            wallet_address=model.wallet_address,
            agent_address=model.agent_address,
            agent_key_enc=model.agent_key_enc,
            auto_execute=model.auto_execute,
            ai_risk_check=model.ai_risk_check,
            created_at=_as_utc(model.created_at),
        )


class OrderRepository:
    """Repository for order records.

    Orders are never deleted; every status change goes through
    :meth:`transition`, which enforces :data:`ALLOWED_TRANSITIONS`.

    Example:
        ```python
        async with db.get_async_session() as session:
            repo = OrderRepository(session)
            order = await repo.create(new_order)
            await repo.transition(order.id, OrderStatus.CANCELLED)
        ```
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _get_model(self, order_id: str) -> OrderModel:
        result = await self.session.execute(select(OrderModel).where(OrderModel.id == order_id))
        model = result.scalar_one_or_none()
        if model is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return model

    async def create(self, new: NewOrder) -> OrderDTO:
        """Persist a new ACTIVE order with lowercased addresses."""
        model = OrderModel(
            id=str(uuid.uuid4()),
            wallet_address=new.wallet_address.lower(),
            token_address=new.token_address.lower(),
            direction=new.direction.value,
            input_amount=str(new.input_amount),
            trigger_type=new.trigger_type,
            trigger_value=new.trigger_value,
            max_slippage_bps=new.max_slippage_bps,
            expires_at=new.expires_at,
            status=OrderStatus.ACTIVE.value,
            reference_price=_str_or_none(new.reference_price),
            peak_price=_str_or_none(new.peak_price),
        )
        self.session.add(model)
        await self.session.flush()
        logger.info("Created order %s (%s %s)", model.id, model.direction, model.trigger_type)
        return OrderDTO.from_model(model)

    async def get(self, order_id: str) -> OrderDTO | None:
        result = await self.session.execute(select(OrderModel).where(OrderModel.id == order_id))
        model = result.scalar_one_or_none()
        return OrderDTO.from_model(model) if model else None

    async def list_active(self) -> list[OrderDTO]:
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.status == OrderStatus.ACTIVE.value)
            .order_by(OrderModel.created_at.asc())
        )
        return [OrderDTO.from_model(m) for m in result.scalars().all()]

    async def list_by_wallet(self, wallet_address: str, *, status: OrderStatus | None = None) -> list[OrderDTO]:
        """List a wallet's orders, newest first."""
        stmt = select(OrderModel).where(OrderModel.wallet_address == wallet_address.lower())
        if status is not None:
            stmt = stmt.where(OrderModel.status == status.value)
        result = await self.session.execute(stmt.order_by(OrderModel.created_at.desc()))
        return [OrderDTO.from_model(m) for m in result.scalars().all()]

    async def list_open_by_token(self, token_address: str) -> list[OrderDTO]:
        """List ACTIVE and TRIGGERED orders for a token."""
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.token_address == token_address.lower())
            .where(OrderModel.status.in_([OrderStatus.ACTIVE.value, OrderStatus.TRIGGERED.value]))
            .order_by(OrderModel.created_at.asc())
        )
        return [OrderDTO.from_model(m) for m in result.scalars().all()]

    async def transition(
        self,
        order_id: str,
        target: OrderStatus,
        *,
        router_used: str | None = None,
        tx_hash: str | None = None,
        last_executed_at: datetime | None = None,
    ) -> OrderDTO:
        """Move an order to ``target`` status.

        Args:
            order_id: Order to update.
            target: New status.
            router_used: Router type recorded with the trigger or execution.
            tx_hash: Transaction hash, if any.
            last_executed_at: Set when a recurring order executes.

        Returns:
            The updated order.

        Raises:
            OrderNotFoundError: If the order does not exist.
            InvalidTransitionError: If the state machine forbids the change.
        """
        model = await self._get_model(order_id)
        current = OrderStatus(model.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(order_id, current, target)

        model.status = target.value
        if router_used is not None:
            model.router_used = router_used
        if tx_hash is not None:
            model.tx_hash = tx_hash
        if last_executed_at is not None:
            model.last_executed_at = last_executed_at
        model.updated_at = datetime.now(UTC)
        await self.session.flush()
        logger.info("Order %s: %s -> %s", order_id, current.value, target.value)
        return OrderDTO.from_model(model)

    async def ratchet_peak_price(self, order_id: str, price: int) -> bool:
        """Raise the stored peak price to ``price`` if it is higher.

        Returns:
            True if the peak was updated.
        """
        model = await self._get_model(order_id)
        current = _int_or_none(model.peak_price)
        if current is not None and price <= current:
            return False
        model.peak_price = str(price)
        model.updated_at = datetime.now(UTC)
        await self.session.flush()
        return True


class ExecutionLogRepository:
    """Repository for the append-only execution log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(self, entry: ExecutionLogDTO) -> ExecutionLogDTO:
        model = ExecutionLogModel(
            order_id=entry.order_id,
            action=entry.action.value,
            current_price=_str_or_none(entry.current_price),
            current_progress=entry.current_progress,
            is_graduated=entry.is_graduated,
            is_locked=entry.is_locked,
            router_address=entry.router_address,
            unsigned_tx_data=json.dumps(entry.unsigned_tx) if entry.unsigned_tx is not None else None,
            tx_hash=entry.tx_hash,
            ai_explanation=entry.ai_explanation,
            ai_provider=entry.ai_provider,
            reason=entry.reason,
        )
        self.session.add(model)
        await self.session.flush()
        return ExecutionLogDTO.from_model(model)

    async def list_for_order(self, order_id: str, *, limit: int | None = None) -> list[ExecutionLogDTO]:
        """List an order's log entries, newest first."""
        stmt = (
            select(ExecutionLogModel)
            .where(ExecutionLogModel.order_id == order_id)
            .order_by(ExecutionLogModel.created_at.desc(), ExecutionLogModel.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [ExecutionLogDTO.from_model(m) for m in result.scalars().all()]


class AccountRepository:
    """Repository for agent accounts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, wallet_address: str) -> AgentAccountDTO | None:
        result = await self.session.execute(
            select(AgentAccountModel).where(AgentAccountModel.wallet_address == wallet_address.lower())
        )
        model = result.scalar_one_or_none()
        return AgentAccountDTO.from_model(model) if model else None

    async def create(self, dto: AgentAccountDTO) -> AgentAccountDTO:
        model = AgentAccountModel(
            wallet_address=dto.wallet_address.lower(),
            agent_address=dto.agent_address.lower(),
            agent_key_enc=dto.agent_key_enc,
            auto_execute=dto.auto_execute,
            ai_risk_check=dto.ai_risk_check,
        )
        self.session.add(model)
        await self.session.flush()
        return AgentAccountDTO.from_model(model)

    async def set_flags(
        self,
        wallet_address: str,
        *,
        auto_execute: bool | None = None,
        ai_risk_check: bool | None = None,
    ) -> AgentAccountDTO | None:
        result = await self.session.execute(
            select(AgentAccountModel).where(AgentAccountModel.wallet_address == wallet_address.lower())
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        if auto_execute is not None:
            model.auto_execute = auto_execute
        if ai_risk_check is not None:
            model.ai_risk_check = ai_risk_check
        model.updated_at = datetime.now(UTC)
        await self.session.flush()
        return AgentAccountDTO.from_model(model)
