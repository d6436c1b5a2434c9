"""Tests for DatabaseManager."""

import pytest
from sqlalchemy import func, select

from copytrade_tracker.storage.database import DatabaseManager, async_database_url
from copytrade_tracker.storage.models import LeadTraderModel


def test_async_database_url() -> None:
    assert async_database_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
    assert async_database_url("postgresql+asyncpg://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
    assert async_database_url("sqlite+aiosqlite:///:memory:") == "sqlite+aiosqlite:///:memory:"


class TestSessions:
    """Tests for the transactional session block."""

    @pytest.mark.asyncio
    async def test_commit_on_success(self, db_manager) -> None:
        async with db_manager.get_async_session() as session:
            session.add(LeadTraderModel(id="lead-1", platform="binance"))

        async with db_manager.get_async_session() as session:
            assert await session.scalar(select(func.count()).select_from(LeadTraderModel)) == 1

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, db_manager) -> None:
        with pytest.raises(RuntimeError):
            async with db_manager.get_async_session() as session:
                session.add(LeadTraderModel(id="lead-1", platform="binance"))
                await session.flush()
                raise RuntimeError("abort")

        async with db_manager.get_async_session() as session:
            assert await session.scalar(select(func.count()).select_from(LeadTraderModel)) == 0


@pytest.mark.asyncio
async def test_init_schema_and_dispose() -> None:
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")

    await manager.init_schema_async()
    await manager.dispose_async()
    await manager.dispose_async()
