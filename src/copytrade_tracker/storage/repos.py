"""Repository pattern implementations for data access.

This module provides data access abstractions for lead traders, raw
ingest snapshots, trade events, position state, position transitions and
trader scores. Repositories never commit; the caller owns the transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from copytrade_tracker.storage.models import (
    LeadTraderModel,
    PositionStateModel,
    PositionTransitionModel,
    RawIngestModel,
    TradeEventModel,
    TraderScoreModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_INSERT_CHUNK_SIZE = 50


def _utc(value: datetime) -> datetime:
    """Attach UTC to a naive datetime (SQLite drops the offset)."""
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _aware(value: datetime | None) -> datetime | None:
    return _utc(value) if value is not None else None


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _chunks(rows: list[dict[str, Any]], size: int = _INSERT_CHUNK_SIZE) -> Iterable[list[dict[str, Any]]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


# ============================================================================
# Lead traders
# ============================================================================


@dataclass
class LeadTraderDTO:
    """Data transfer object for lead traders."""

    id: str
    platform: str = "binance"
    nickname: str | None = None
    position_show: bool | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: LeadTraderModel) -> LeadTraderDTO:
        return cls(
            id=model.id,
            platform=model.platform,
            nickname=model.nickname,
            position_show=model.position_show,
            created_at=_aware(model.created_at),
            updated_at=_aware(model.updated_at),
        )


class LeadTraderRepository:
    """Repository for tracked lead traders."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, lead_id: str) -> LeadTraderDTO | None:
        result = await self.session.execute(
            select(LeadTraderModel).where(LeadTraderModel.id == lead_id)
        )
        model = result.scalar_one_or_none()
        return LeadTraderDTO.from_model(model) if model else None

    async def get_many(self, lead_ids: Iterable[str] | None = None) -> dict[str, LeadTraderDTO]:
        """Fetch lead traders keyed by id (all leads when ``lead_ids`` is None)."""
        query = select(LeadTraderModel)
        if lead_ids is not None:
            ids = list(lead_ids)
            if not ids:
                return {}
            query = query.where(LeadTraderModel.id.in_(ids))
        result = await self.session.execute(query)
        return {m.id: LeadTraderDTO.from_model(m) for m in result.scalars().all()}

    async def upsert(
        self,
        lead_id: str,
        *,
        position_show: bool | None = None,
        nickname: str | None = None,
        platform: str = "binance",
    ) -> LeadTraderDTO:
        """Create the lead on first sight, else refresh reported attributes.

        ``position_show`` and ``nickname`` only overwrite stored values when
        the exchange actually reported them; ``None`` leaves them untouched.
        """
        now = datetime.now(UTC)
        stmt = _insert_for(self.session, LeadTraderModel).values(
            id=lead_id,
            platform=platform,
            nickname=nickname,
            position_show=position_show,
            created_at=now,
            updated_at=now,
        )
        set_: dict[str, Any] = {"updated_at": now}
        if position_show is not None:
            set_["position_show"] = stmt.excluded.position_show
        if nickname is not None:
            set_["nickname"] = stmt.excluded.nickname
        stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=set_)
        await self.session.execute(stmt)
        await self.session.flush()

        # Bypass the identity map so the returned DTO reflects the upsert.
        result = await self.session.execute(
            select(LeadTraderModel)
            .where(LeadTraderModel.id == lead_id)
            .execution_options(populate_existing=True)
        )
        return LeadTraderDTO.from_model(result.scalar_one())


# ============================================================================
# Raw ingests
# ============================================================================


@dataclass
class RawIngestDTO:
    """Data transfer object for raw payload snapshots."""

    id: int
    lead_id: str
    fetched_at: datetime
    payload: dict[str, Any]
    positions_count: int = 0
    orders_count: int = 0
    time_range: str | None = None
    platform: str = "binance"
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: RawIngestModel) -> RawIngestDTO:
        return cls(
            id=model.id,
            lead_id=model.lead_id,
            fetched_at=_utc(model.fetched_at),
            payload=model.payload,
            positions_count=model.positions_count,
            orders_count=model.orders_count,
            time_range=model.time_range,
            platform=model.platform,
            created_at=_aware(model.created_at),
        )


class RawIngestRepository:
    """Append-only store of raw payload snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(
        self,
        lead_id: str,
        payload: dict[str, Any],
        *,
        fetched_at: datetime,
        platform: str = "binance",
    ) -> RawIngestDTO:
        """Insert a new snapshot; existing rows are never touched."""
        positions = payload.get("activePositions")
        order_history = payload.get("orderHistory")
        orders = order_history.get("allOrders") if isinstance(order_history, dict) else None
        time_range = payload.get("timeRange")
        model = RawIngestModel(
            lead_id=lead_id,
            platform=platform,
            fetched_at=fetched_at,
            payload=payload,
            positions_count=len(positions) if isinstance(positions, list) else 0,
            orders_count=len(orders) if isinstance(orders, list) else 0,
            time_range=time_range if isinstance(time_range, str) else None,
            created_at=datetime.now(UTC),
        )
        self.session.add(model)
        await self.session.flush()
        return RawIngestDTO.from_model(model)

    async def latest_per_lead(
        self,
        lead_ids: Iterable[str] | None = None,
        since: datetime | None = None,
    ) -> dict[str, RawIngestDTO]:
        """Most recent snapshot per lead, optionally at or after ``since``.

        Leads without a matching row are absent from the result.
        """
        ids = list(lead_ids) if lead_ids is not None else None
        if ids is not None and not ids:
            return {}

        latest = select(
            RawIngestModel.lead_id.label("lead_id"),
            func.max(RawIngestModel.fetched_at).label("max_fetched_at"),
        )
        if ids is not None:
            latest = latest.where(RawIngestModel.lead_id.in_(ids))
        if since is not None:
            latest = latest.where(RawIngestModel.fetched_at >= since)
        latest_sq = latest.group_by(RawIngestModel.lead_id).subquery()

        query = (
            select(RawIngestModel)
            .join(
                latest_sq,
                (RawIngestModel.lead_id == latest_sq.c.lead_id)
                & (RawIngestModel.fetched_at == latest_sq.c.max_fetched_at),
            )
            .order_by(RawIngestModel.id.desc())
        )
        result = await self.session.execute(query)

        rows: dict[str, RawIngestDTO] = {}
        for model in result.scalars().all():
            # Highest id wins when two rows share a fetch time.
            rows.setdefault(model.lead_id, RawIngestDTO.from_model(model))
        return rows

    async def with_positions_since(
        self,
        since: datetime,
        lead_ids: Iterable[str] | None = None,
    ) -> list[RawIngestDTO]:
        """Snapshots carrying at least one live position, newest first."""
        query = select(RawIngestModel).where(
            (RawIngestModel.fetched_at >= since) & (RawIngestModel.positions_count > 0)
        )
        if lead_ids is not None:
            ids = list(lead_ids)
            if not ids:
                return []
            query = query.where(RawIngestModel.lead_id.in_(ids))
        result = await self.session.execute(
            query.order_by(RawIngestModel.fetched_at.desc(), RawIngestModel.id.desc())
        )
        return [RawIngestDTO.from_model(m) for m in result.scalars().all()]

    async def get_latest(self, lead_id: str) -> RawIngestDTO | None:
        result = await self.session.execute(
            select(RawIngestModel)
            .where(RawIngestModel.lead_id == lead_id)
            .order_by(RawIngestModel.fetched_at.desc(), RawIngestModel.id.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return RawIngestDTO.from_model(model) if model else None


# ============================================================================
# Trade events
# ============================================================================


@dataclass
class TradeEventDTO:
    """Data transfer object for normalized order-history events."""

    event_key: str
    lead_id: str
    event_type: str
    symbol: str
    price: Decimal
    amount: Decimal
    event_time: datetime
    fetched_at: datetime
    side: str | None = None
    position_side: str | None = None
    amount_asset: str | None = None
    realized_pnl: Decimal | None = None
    platform: str = "binance"
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TradeEventModel) -> TradeEventDTO:
        return cls(
            event_key=model.event_key,
            lead_id=model.lead_id,
            event_type=model.event_type,
            symbol=model.symbol,
            price=model.price,
            amount=model.amount,
            event_time=_utc(model.event_time),
            fetched_at=_utc(model.fetched_at),
            side=model.side,
            position_side=model.position_side,
            amount_asset=model.amount_asset,
            realized_pnl=model.realized_pnl,
            platform=model.platform,
            created_at=_aware(model.created_at),
        )


class TradeEventRepository:
    """Repository for trade events, deduplicated by ``event_key``."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, events: list[TradeEventDTO]) -> int:
        """Insert events whose key is not stored yet.

        Returns:
            Number of newly inserted events.
        """
        by_key = {e.event_key: e for e in events}
        if not by_key:
            return 0

        existing: set[str] = set()
        keys = list(by_key)
        for start in range(0, len(keys), _INSERT_CHUNK_SIZE):
            result = await self.session.execute(
                select(TradeEventModel.event_key).where(
                    TradeEventModel.event_key.in_(keys[start : start + _INSERT_CHUNK_SIZE])
                )
            )
            existing.update(result.scalars().all())

        now = datetime.now(UTC)
        rows = [
            {
                "event_key": e.event_key,
                "lead_id": e.lead_id,
                "platform": e.platform,
                "event_type": e.event_type,
                "symbol": e.symbol,
                "side": e.side,
                "position_side": e.position_side,
                "price": e.price,
                "amount": e.amount,
                "amount_asset": e.amount_asset,
                "realized_pnl": e.realized_pnl,
                "event_time": e.event_time,
                "fetched_at": e.fetched_at,
                "created_at": now,
            }
            for key, e in by_key.items()
            if key not in existing
        ]
        for chunk in _chunks(rows):
            stmt = _insert_for(self.session, TradeEventModel).values(chunk)
            stmt = stmt.on_conflict_do_nothing(index_elements=["event_key"])
            await self.session.execute(stmt)
        await self.session.flush()
        return len(rows)

    async def history_for_lead(self, lead_id: str) -> list[TradeEventDTO]:
        """Every stored event of a lead, oldest first."""
        result = await self.session.execute(
            select(TradeEventModel)
            .where(TradeEventModel.lead_id == lead_id)
            .order_by(TradeEventModel.event_time, TradeEventModel.id)
        )
        return [TradeEventDTO.from_model(m) for m in result.scalars().all()]

    async def realized_pnl_sum(self, lead_id: str, *, since: datetime) -> Decimal:
        """Sum of stored realized PnL for a lead since ``since``."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(TradeEventModel.realized_pnl), 0)).where(
                (TradeEventModel.lead_id == lead_id) & (TradeEventModel.event_time >= since)
            )
        )
        return Decimal(str(result.scalar_one()))

    async def recent_for_leads(
        self,
        lead_ids: Iterable[str],
        *,
        event_types: Iterable[str],
        per_lead: int = 20,
    ) -> list[TradeEventDTO]:
        """The ``per_lead`` newest events of the given types for each lead."""
        types = list(event_types)
        events: list[TradeEventDTO] = []
        for lead_id in lead_ids:
            result = await self.session.execute(
                select(TradeEventModel)
                .where(
                    (TradeEventModel.lead_id == lead_id)
                    & (TradeEventModel.event_type.in_(types))
                )
                .order_by(TradeEventModel.event_time.desc(), TradeEventModel.id.desc())
                .limit(per_lead)
            )
            events.extend(TradeEventDTO.from_model(m) for m in result.scalars().all())
        return events


# ============================================================================
# Position state
# ============================================================================


@dataclass
class PositionStateDTO:
    """Data transfer object for a lead's state on one symbol."""

    lead_id: str
    symbol: str
    status: str
    direction: str | None
    amount: Decimal
    entry_price: Decimal
    last_seen_at: datetime
    source: str
    leverage: int | None = None
    first_seen_at: datetime | None = None
    estimated_open_time: datetime | None = None
    open_event_id: str | None = None
    closed_at: datetime | None = None
    close_event_id: str | None = None
    platform: str = "binance"
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: PositionStateModel) -> PositionStateDTO:
        return cls(
            lead_id=model.lead_id,
            symbol=model.symbol,
            status=model.status,
            direction=model.direction,
            amount=model.amount,
            entry_price=model.entry_price,
            last_seen_at=_utc(model.last_seen_at),
            source=model.source,
            leverage=model.leverage,
            first_seen_at=_aware(model.first_seen_at),
            estimated_open_time=_aware(model.estimated_open_time),
            open_event_id=model.open_event_id,
            closed_at=_aware(model.closed_at),
            close_event_id=model.close_event_id,
            platform=model.platform,
            created_at=_aware(model.created_at),
            updated_at=_aware(model.updated_at),
        )


_POSITION_STATE_UPDATE_COLUMNS = (
    "status",
    "direction",
    "amount",
    "leverage",
    "entry_price",
    "first_seen_at",
    "last_seen_at",
    "estimated_open_time",
    "open_event_id",
    "closed_at",
    "close_event_id",
    "source",
    "updated_at",
)


class PositionStateRepository:
    """Repository for per-(lead, symbol) position state."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_for_lead(self, lead_id: str) -> dict[str, PositionStateDTO]:
        result = await self.session.execute(
            select(PositionStateModel).where(PositionStateModel.lead_id == lead_id)
        )
        return {m.symbol: PositionStateDTO.from_model(m) for m in result.scalars().all()}

    async def list_active(self, lead_ids: Iterable[str] | None = None) -> list[PositionStateDTO]:
        query = select(PositionStateModel).where(PositionStateModel.status == "ACTIVE")
        if lead_ids is not None:
            ids = list(lead_ids)
            if not ids:
                return []
            query = query.where(PositionStateModel.lead_id.in_(ids))
        result = await self.session.execute(query.order_by(PositionStateModel.lead_id))
        return [PositionStateDTO.from_model(m) for m in result.scalars().all()]

    async def upsert(self, dto: PositionStateDTO) -> None:
        """Write a state row in one statement (insert or full replace)."""
        now = datetime.now(UTC)
        values = {
            "lead_id": dto.lead_id,
            "platform": dto.platform,
            "symbol": dto.symbol,
            "status": dto.status,
            "direction": dto.direction,
            "amount": dto.amount,
            "leverage": dto.leverage,
            "entry_price": dto.entry_price,
            "first_seen_at": dto.first_seen_at,
            "last_seen_at": dto.last_seen_at,
            "estimated_open_time": dto.estimated_open_time,
            "open_event_id": dto.open_event_id,
            "closed_at": dto.closed_at,
            "close_event_id": dto.close_event_id,
            "source": dto.source,
            "created_at": now,
            "updated_at": now,
        }
        stmt = _insert_for(self.session, PositionStateModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["lead_id", "symbol"],
            set_={col: getattr(stmt.excluded, col) for col in _POSITION_STATE_UPDATE_COLUMNS},
        )
        await self.session.execute(stmt)
        await self.session.flush()


# ============================================================================
# Position transitions
# ============================================================================


@dataclass
class PositionTransitionDTO:
    """Data transfer object for lot transitions."""

    transition_key: str
    lead_id: str
    symbol: str
    kind: str
    direction: str | None
    amount: Decimal
    occurred_at: datetime
    source: str
    price: Decimal | None = None
    order_id: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: PositionTransitionModel) -> PositionTransitionDTO:
        return cls(
            transition_key=model.transition_key,
            lead_id=model.lead_id,
            symbol=model.symbol,
            kind=model.kind,
            direction=model.direction,
            amount=model.amount,
            occurred_at=_utc(model.occurred_at),
            source=model.source,
            price=model.price,
            order_id=model.order_id,
            created_at=_aware(model.created_at),
        )


class PositionTransitionRepository:
    """Repository for lot transitions, deduplicated by ``transition_key``."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, transitions: list[PositionTransitionDTO]) -> int:
        """Insert transitions not stored yet; returns the number inserted."""
        by_key = {t.transition_key: t for t in transitions}
        if not by_key:
            return 0
        result = await self.session.execute(
            select(PositionTransitionModel.transition_key).where(
                PositionTransitionModel.transition_key.in_(list(by_key))
            )
        )
        existing = set(result.scalars().all())

        now = datetime.now(UTC)
        rows = [
            {
                "transition_key": t.transition_key,
                "lead_id": t.lead_id,
                "symbol": t.symbol,
                "kind": t.kind,
                "direction": t.direction,
                "amount": t.amount,
                "price": t.price,
                "order_id": t.order_id,
                "occurred_at": t.occurred_at,
                "source": t.source,
                "created_at": now,
            }
            for key, t in by_key.items()
            if key not in existing
        ]
        for chunk in _chunks(rows):
            stmt = _insert_for(self.session, PositionTransitionModel).values(chunk)
            stmt = stmt.on_conflict_do_nothing(index_elements=["transition_key"])
            await self.session.execute(stmt)
        await self.session.flush()
        return len(rows)

    async def list_recent(
        self,
        *,
        since: datetime | None = None,
        symbol: str | None = None,
        lead_ids: Iterable[str] | None = None,
        limit: int = 100,
    ) -> list[PositionTransitionDTO]:
        """Newest-first transitions matching the filters."""
        query = select(PositionTransitionModel)
        if since is not None:
            query = query.where(PositionTransitionModel.occurred_at >= since)
        if symbol is not None:
            query = query.where(PositionTransitionModel.symbol == symbol)
        if lead_ids is not None:
            ids = list(lead_ids)
            if not ids:
                return []
            query = query.where(PositionTransitionModel.lead_id.in_(ids))
        query = query.order_by(
            PositionTransitionModel.occurred_at.desc(), PositionTransitionModel.id.desc()
        ).limit(limit)
        result = await self.session.execute(query)
        return [PositionTransitionDTO.from_model(m) for m in result.scalars().all()]


# ============================================================================
# Trader scores
# ============================================================================


@dataclass
class TraderScoreDTO:
    """Data transfer object for trader ranking attributes."""

    lead_id: str
    score_30d: float = 0.0
    quality_score: int | None = None
    confidence: str | None = None
    win_rate: float | None = None
    sample_size: int = 0
    trader_weight: float | None = None
    platform: str = "binance"
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TraderScoreModel) -> TraderScoreDTO:
        return cls(
            lead_id=model.lead_id,
            score_30d=model.score_30d,
            quality_score=model.quality_score,
            confidence=model.confidence,
            win_rate=model.win_rate,
            sample_size=model.sample_size,
            trader_weight=model.trader_weight,
            platform=model.platform,
            updated_at=_aware(model.updated_at),
        )


class TraderScoreRepository:
    """Repository for trader scores (one row per lead)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, lead_id: str) -> TraderScoreDTO | None:
        result = await self.session.execute(
            select(TraderScoreModel).where(TraderScoreModel.lead_id == lead_id)
        )
        model = result.scalar_one_or_none()
        return TraderScoreDTO.from_model(model) if model else None

    async def get_many(self, lead_ids: Iterable[str]) -> dict[str, TraderScoreDTO]:
        ids = list(lead_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(TraderScoreModel).where(TraderScoreModel.lead_id.in_(ids))
        )
        return {m.lead_id: TraderScoreDTO.from_model(m) for m in result.scalars().all()}

    async def lead_ids_with_quality_between(self, low: int, high: int) -> list[str]:
        """Leads whose quality score lies in ``[low, high]``."""
        result = await self.session.execute(
            select(TraderScoreModel.lead_id)
            .where(TraderScoreModel.quality_score.between(low, high))
            .order_by(TraderScoreModel.lead_id)
        )
        return list(result.scalars().all())

    async def upsert(self, dto: TraderScoreDTO) -> None:
        now = datetime.now(UTC)
        stmt = _insert_for(self.session, TraderScoreModel).values(
            lead_id=dto.lead_id,
            platform=dto.platform,
            score_30d=dto.score_30d,
            quality_score=dto.quality_score,
            confidence=dto.confidence,
            win_rate=dto.win_rate,
            sample_size=dto.sample_size,
            trader_weight=dto.trader_weight,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["lead_id"],
            set_={
                "score_30d": stmt.excluded.score_30d,
                "quality_score": stmt.excluded.quality_score,
                "confidence": stmt.excluded.confidence,
                "win_rate": stmt.excluded.win_rate,
                "sample_size": stmt.excluded.sample_size,
                "trader_weight": stmt.excluded.trader_weight,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
