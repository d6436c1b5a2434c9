"""Pytest configuration and fixtures."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from copytrade_tracker.ingestor.models import LeadPayload, RawOrder, RawPosition
from copytrade_tracker.storage.database import DatabaseManager
from copytrade_tracker.storage.models import Base


def to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


# ============================================================================
# Database fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def db_manager(async_engine) -> DatabaseManager:
    """DatabaseManager bound to the in-memory engine."""
    return DatabaseManager.from_engine(async_engine)


# ============================================================================
# Payload factories
# ============================================================================


@pytest.fixture
def now() -> datetime:
    """Current time truncated to whole seconds (exact in epoch ms)."""
    return datetime.now(UTC).replace(microsecond=0)


@pytest.fixture
def make_raw_order(now: datetime) -> Callable[..., dict[str, Any]]:
    """Factory for upstream order-history entries."""

    def factory(
        *,
        symbol: str = "BTCUSDT",
        side: str = "BUY",
        position_side: str = "LONG",
        qty: str = "1",
        price: str = "100",
        at: datetime | None = None,
        total_pnl: str | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        ts = to_ms(at or now)
        order: dict[str, Any] = {
            "symbol": symbol,
            "side": side,
            "positionSide": position_side,
            "executedQty": qty,
            "avgPrice": price,
            "orderTime": ts,
            "orderUpdateTime": ts,
            "totalPnl": total_pnl,
            "baseAsset": symbol.removesuffix("USDT"),
            "type": "MARKET",
        }
        order.update(extra)
        return order

    return factory


@pytest.fixture
def make_raw_position() -> Callable[..., dict[str, Any]]:
    """Factory for upstream active-position entries."""

    def factory(
        *,
        symbol: str = "BTCUSDT",
        position_side: str = "LONG",
        amount: str = "1",
        entry_price: str = "100",
        mark_price: str = "101",
        leverage: int = 10,
        unrealized: str = "1",
        notional: str | None = None,
    ) -> dict[str, Any]:
        if notional is None:
            notional = str(abs(float(amount)) * float(mark_price))
        return {
            "symbol": symbol,
            "positionSide": position_side,
            "positionAmount": amount,
            "entryPrice": entry_price,
            "markPrice": mark_price,
            "leverage": leverage,
            "unrealizedProfit": unrealized,
            "notionalValue": notional,
            "isolated": False,
        }

    return factory


@pytest.fixture
def make_payload(now: datetime) -> Callable[..., LeadPayload]:
    """Factory for LeadPayload snapshots."""

    def factory(
        lead_id: str = "lead-1",
        *,
        position_show: bool | None = True,
        nickname: str | None = "Alpha",
        positions: list[dict[str, Any]] | None = None,
        orders: list[dict[str, Any]] | None = None,
        fetched_at: datetime | None = None,
        failed_fields: tuple[str, ...] = (),
        roi_series: list[dict[str, Any]] | None = None,
        portfolio_extra: dict[str, Any] | None = None,
    ) -> LeadPayload:
        detail: dict[str, Any] = {"nickname": nickname}
        if position_show is not None:
            detail["positionShow"] = position_show
        detail.update(portfolio_extra or {})
        order_list = orders or []
        return LeadPayload(
            lead_id=lead_id,
            fetched_at=fetched_at or now,
            time_range="30D",
            portfolio_detail=detail,
            active_positions=tuple(RawPosition.from_dict(p) for p in positions or []),
            roi_series=tuple(roi_series or []),
            performance={"roi": "12.5", "pnl": "1000"},
            asset_preferences={"data": [{"asset": "BTC", "volume": "0.6"}]},
            order_total=len(order_list),
            orders=tuple(RawOrder.from_dict(o) for o in order_list),
            failed_fields=failed_fields,
        )

    return factory
