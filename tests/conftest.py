"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from limit_order_agent.monitor.models import Direction, OrderStatus, TokenChainState
from limit_order_agent.storage.database import DatabaseManager
from limit_order_agent.storage.repos import OrderDTO

WAD = 10**18

WALLET = "0x1234567890abcdef1234567890abcdef12345678"
TOKEN = "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"
LENS = "0x7e78A8DE94f21804F7a17F4E8BF9EC2c872187ea"
BONDING_CURVE_ROUTER = "0x6F6B8F1a20703309951a5127c45B49b1CD981A22"
DEX_ROUTER = "0x0B79d71AE99528D1dB24A4148b5f4F865cc2b137"

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


@pytest.fixture
def sample_wallet() -> str:
    """Sample owner wallet address for testing."""
    return WALLET


@pytest.fixture
def sample_token() -> str:
    """Sample token address for testing."""
    return TOKEN


def make_state(**overrides: Any) -> TokenChainState:
    """Build a healthy bonding-curve snapshot.

    Defaults: 1 native unit buys 1000 tokens (BUY price 1e15) and 1 token
    sells for 0.001 native (SELL price 1e15).
    """
    fields: dict[str, Any] = {
        "token": TOKEN,
        "name": "Test Token",
        "symbol": "TEST",
        "is_graduated": False,
        "is_locked": False,
        "progress": 5000,
        "total_supply": 1_000_000_000 * WAD,
        "buy_router": BONDING_CURVE_ROUTER,
        "buy_amount_out": 1000 * WAD,
        "sell_router": BONDING_CURVE_ROUTER,
        "sell_amount_out": WAD // 1000,
        "fetched_at": NOW,
    }
    fields.update(overrides)
    return TokenChainState(**fields)


def make_order(**overrides: Any) -> OrderDTO:
    """Build an ACTIVE order DTO that expires a day after :data:`NOW`."""
    fields: dict[str, Any] = {
        "id": "order-1",
        "wallet_address": WALLET,
        "token_address": TOKEN,
        "direction": Direction.BUY,
        "input_amount": WAD,
        "trigger_type": "PRICE_BELOW",
        "trigger_value": str(2 * 10**15),
        "max_slippage_bps": 100,
        "expires_at": NOW + timedelta(days=1),
        "status": OrderStatus.ACTIVE,
    }
    fields.update(overrides)
    return OrderDTO(**fields)


@pytest.fixture
def state_factory() -> Callable[..., TokenChainState]:
    return make_state


@pytest.fixture
def order_factory() -> Callable[..., OrderDTO]:
    return make_order


@pytest.fixture
async def db(tmp_path) -> AsyncGenerator[DatabaseManager, None]:
    """File-backed SQLite database with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()
