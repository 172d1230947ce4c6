"""Storage layer - Database schemas and repositories."""

from limit_order_agent.storage.database import (
    DatabaseManager,
    build_engine,
    normalize_database_url,
)
from limit_order_agent.storage.models import (
    AgentAccountModel,
    Base,
    ExecutionLogModel,
    OrderModel,
)
from limit_order_agent.storage.repos import (
    ALLOWED_TRANSITIONS,
    AccountRepository,
    AgentAccountDTO,
    ExecutionLogDTO,
    ExecutionLogRepository,
    InvalidTransitionError,
    LogAction,
    NewOrder,
    OrderDTO,
    OrderNotFoundError,
    OrderRepository,
    StorageError,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AccountRepository",
    "AgentAccountDTO",
    "AgentAccountModel",
    "Base",
    "DatabaseManager",
    "ExecutionLogDTO",
    "ExecutionLogModel",
    "ExecutionLogRepository",
    "InvalidTransitionError",
    "LogAction",
    "NewOrder",
    "OrderDTO",
    "OrderModel",
    "OrderNotFoundError",
    "OrderRepository",
    "StorageError",
    "build_engine",
    "normalize_database_url",
]
