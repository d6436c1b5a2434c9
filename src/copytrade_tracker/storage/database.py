"""Async engine ownership and unit-of-work sessions.

Every write path of the tracker (one lead per ``LeadProcessor.process``
call) runs inside exactly one ``get_async_session()`` block, so a lead's
raw ingest, trade events, position states and transitions land together
or not at all.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from copytrade_tracker.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

SYNC_POSTGRES_PREFIX = "postgresql://"
ASYNC_POSTGRES_PREFIX = "postgresql+asyncpg://"


def async_database_url(database_url: str) -> str:
    """Point a plain ``postgresql://`` URL at the asyncpg driver."""
    if database_url.startswith(SYNC_POSTGRES_PREFIX):
        logger.warning("DATABASE_URL has no async driver; using %s", ASYNC_POSTGRES_PREFIX)
        return ASYNC_POSTGRES_PREFIX + database_url[len(SYNC_POSTGRES_PREFIX) :]
    return database_url


class DatabaseManager:
    """Owns the async engine and hands out transactional sessions.

    The engine is created lazily on first use. One ``get_async_session()``
    block is one transaction: it commits when the block exits cleanly and
    rolls back when it raises.

    Example:
        ```python
        db = DatabaseManager(settings.database.url, pool_size=settings.database.pool_size)
        async with db.get_async_session() as session:
            trader = await LeadTraderRepository(session).get(lead_id)
        await db.dispose_async()
        ```
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        self.database_url = async_database_url(database_url)
        self._engine_options: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
        if not self.database_url.startswith("sqlite"):
            self._engine_options.update(pool_size=pool_size, max_overflow=max_overflow)

        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> DatabaseManager:
        """Wrap an existing engine (used by tests with in-memory SQLite)."""
        manager = cls(str(engine.url))
        manager._engine = engine
        return manager

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.database_url, **self._engine_options)
        return self._engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session whose work is committed as one transaction."""
        if self._sessions is None:
            self._sessions = async_sessionmaker(bind=self.engine, expire_on_commit=False)

        session = self._sessions()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def init_schema_async(self) -> None:
        """Create any missing tables; existing tables are left alone."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema initialized")

    async def dispose_async(self) -> None:
        """Close pooled connections; the manager can be reused afterwards."""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("Database connections disposed")
