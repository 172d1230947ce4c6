"""Initial schema for orders, execution logs and agent accounts.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Decimal digits of 2**256 - 1
UINT256_DIGITS = 78


def upgrade() -> None:
    # Orders table
    op.create_table(
        "orders",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("direction", sa.String(4), nullable=False),
        sa.Column("input_amount", sa.String(UINT256_DIGITS), nullable=False),
        sa.Column("trigger_type", sa.String(32), nullable=False),
        sa.Column("trigger_value", sa.String(UINT256_DIGITS), nullable=False),
        sa.Column("max_slippage_bps", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("reference_price", sa.String(UINT256_DIGITS), nullable=True),
        sa.Column("peak_price", sa.String(UINT256_DIGITS), nullable=True),
        sa.Column("last_executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("router_used", sa.String(16), nullable=True),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_orders_status", "orders", ["status"])
    op.create_index("idx_orders_wallet_created", "orders", ["wallet_address", "created_at"])
    op.create_index("idx_orders_token_status", "orders", ["token_address", "status"])

    # Execution logs table (append-only)
    op.create_table(
        "execution_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("order_id", sa.String(36), nullable=False),
        sa.Column("action", sa.String(16), nullable=False),
        sa.Column("current_price", sa.String(UINT256_DIGITS), nullable=True),
        sa.Column("current_progress", sa.Integer(), nullable=True),
        sa.Column("is_graduated", sa.Boolean(), nullable=True),
        sa.Column("is_locked", sa.Boolean(), nullable=True),
        sa.Column("router_address", sa.String(42), nullable=True),
        sa.Column("unsigned_tx_data", sa.Text(), nullable=True),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("ai_explanation", sa.Text(), nullable=True),
        sa.Column("ai_provider", sa.String(16), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_execution_logs_order_created", "execution_logs", ["order_id", "created_at"])

    # Agent accounts table
    op.create_table(
        "agent_accounts",
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("agent_address", sa.String(42), nullable=False),
        sa.Column("agent_key_enc", sa.Text(), nullable=False),
        sa.Column("auto_execute", sa.Boolean(), nullable=False),
        sa.Column("ai_risk_check", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("wallet_address"),
    )


def downgrade() -> None:
    op.drop_table("agent_accounts")
    op.drop_index("idx_execution_logs_order_created", table_name="execution_logs")
    op.drop_table("execution_logs")
    op.drop_index("idx_orders_token_status", table_name="orders")
    op.drop_index("idx_orders_wallet_created", table_name="orders")
    op.drop_index("idx_orders_status", table_name="orders")
    op.drop_table("orders")
