"""SQLAlchemy models for persistent storage.

This module defines the database schema for limit orders, their
append-only execution logs, and the agent accounts that sign on behalf
of user wallets.

Amounts and prices are uint256 values and are stored as decimal strings
so no backend ever rounds them.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# len(str(2**256 - 1)) == 78
UINT256_DIGITS = 78


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class OrderModel(Base):
    """A synthetic limit order."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)

    direction: Mapped[str] = mapped_column(String(4), nullable=False)  # BUY/SELL
    input_amount: Mapped[str] = mapped_column(String(UINT256_DIGITS), nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger_value: Mapped[str] = mapped_column(String(UINT256_DIGITS), nullable=False)
    max_slippage_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")
    reference_price: Mapped[str | None] = mapped_column(String(UINT256_DIGITS), nullable=True)
    peak_price: Mapped[str | None] = mapped_column(String(UINT256_DIGITS), nullable=True)
    last_executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    router_used: Mapped[str | None] = mapped_column(String(16), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("idx_orders_status", "status"),
        Index("idx_orders_wallet_created", "wallet_address", "created_at"),
        Index("idx_orders_token_status", "token_address", "status"),
    )


class ExecutionLogModel(Base):
    """Append-only audit entry for an order."""

    __tablename__ = "execution_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)

    current_price: Mapped[str | None] = mapped_column(String(UINT256_DIGITS), nullable=True)
    current_progress: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_graduated: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    is_locked: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    router_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    unsigned_tx_data: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    ai_explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_provider: Mapped[str | None] = mapped_column(String(16), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_execution_logs_order_created", "order_id", "created_at"),)


class AgentAccountModel(Base):
    """Delegated signing identity for a user wallet."""

    __tablename__ = "agent_accounts"

    wallet_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    agent_address: Mapped[str] = mapped_column(String(42), nullable=False)
    agent_key_enc: Mapped[str] = mapped_column(Text, nullable=False)  # versioned JSON envelope
    auto_execute: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    ai_risk_check: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
