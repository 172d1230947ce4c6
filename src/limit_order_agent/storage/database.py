"""Async engine and per-step sessions for order storage.

PostgreSQL (asyncpg) is the production backend; SQLite files (aiosqlite)
serve local runs and tests. The scheduler writes from several wallet
tasks at once, so SQLite connections wait on the file lock instead of
failing immediately.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from limit_order_agent.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 5
DEFAULT_MAX_OVERFLOW = 10
SQLITE_BUSY_TIMEOUT_SECONDS = 30


def normalize_database_url(database_url: str) -> str:
    """Map a sync PostgreSQL URL onto the asyncpg driver."""
    if database_url.startswith("postgresql://"):
        logger.warning("DATABASE_URL uses sync dialect 'postgresql://'; switching to 'postgresql+asyncpg://'")
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def build_engine(
    database_url: str,
    *,
    pool_size: int = DEFAULT_POOL_SIZE,
    max_overflow: int = DEFAULT_MAX_OVERFLOW,
    echo: bool = False,
) -> AsyncEngine:
    """Create the async engine for ``database_url``.

    Pool sizing applies to PostgreSQL only. SQLite engines get a busy
    timeout instead.
    """
    url = normalize_database_url(database_url)
    if _is_sqlite(url):
        return create_async_engine(url, echo=echo, connect_args={"timeout": SQLITE_BUSY_TIMEOUT_SECONDS})
    return create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
    )


class DatabaseManager:
    """Owns the engine and hands out one transaction per block.

    Every :meth:`get_async_session` block commits on exit and rolls back
    on error. The scheduler relies on this to persist each side effect of
    an execution step on its own.

    Example:
        ```python
        db = DatabaseManager("sqlite+aiosqlite:///./limit_orders.db")
        await db.init_schema_async()
        async with db.get_async_session() as session:
            orders = await OrderRepository(session).list_active()
        await db.dispose_async()
        ```
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = DEFAULT_POOL_SIZE,
        max_overflow: int = DEFAULT_MAX_OVERFLOW,
        echo: bool = False,
    ) -> None:
        self.database_url = database_url
        self._engine_kwargs: dict[str, Any] = {"pool_size": pool_size, "max_overflow": max_overflow, "echo": echo}
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = build_engine(self.database_url, **self._engine_kwargs)
        return self._engine

    def _session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._sessions is None:
            self._sessions = async_sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._sessions

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session whose work is committed when the block exits cleanly."""
        async with self._session_factory()() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_schema_async(self) -> None:
        """Create any missing tables (local runs; production uses Alembic)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Order storage schema ready")

    async def dispose_async(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None
            logger.info("Database connections disposed")
