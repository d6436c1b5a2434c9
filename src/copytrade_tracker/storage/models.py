"""SQLAlchemy models for persistent storage.

This module defines the database schema for tracked lead traders, raw
ingest snapshots, normalized order events, derived position state, lot
transitions and trader scores.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class LeadTraderModel(Base):
    """A tracked copy-trade lead (one row per exchange portfolio id)."""

    __tablename__ = "lead_traders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    platform: Mapped[str] = mapped_column(String(20), nullable=False, default="binance")
    nickname: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # NULL means visibility is unknown.
    position_show: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class RawIngestModel(Base):
    """Append-only raw payload snapshot of one lead."""

    __tablename__ = "raw_ingests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("lead_traders.id"), nullable=False
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False, default="binance")
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    positions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    orders_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    time_range: Mapped[str | None] = mapped_column(String(8), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_raw_ingests_lead_fetched", "lead_id", "fetched_at"),
        Index("idx_raw_ingests_fetched", "fetched_at"),
    )


class TradeEventModel(Base):
    """Normalized order-history row, deduplicated by event_key."""

    __tablename__ = "trade_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_key: Mapped[str] = mapped_column(String(255), nullable=False)
    lead_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("lead_traders.id"), nullable=False
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False, default="binance")
    event_type: Mapped[str] = mapped_column(String(16), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str | None] = mapped_column(String(8), nullable=True)
    position_side: Mapped[str | None] = mapped_column(String(8), nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False)
    amount_asset: Mapped[str | None] = mapped_column(String(32), nullable=True)
    realized_pnl: Mapped[Decimal | None] = mapped_column(Numeric(30, 10), nullable=True)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("event_key", name="uq_trade_events_event_key"),
        Index("idx_trade_events_lead_time", "lead_id", "event_time"),
        Index("idx_trade_events_symbol_time", "symbol", "event_time"),
    )


class PositionStateModel(Base):
    """Derived belief about a lead's current exposure to one symbol."""

    __tablename__ = "position_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("lead_traders.id"), nullable=False
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False, default="binance")
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(8), nullable=False)
    direction: Mapped[str | None] = mapped_column(String(8), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False)
    leverage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    entry_price: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False)
    first_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    estimated_open_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    open_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    close_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(String(8), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("lead_id", "symbol", name="uq_position_states_lead_symbol"),
        Index("idx_position_states_status", "status"),
        Index("idx_position_states_symbol_status", "symbol", "status"),
    )


class PositionTransitionModel(Base):
    """Lot state transition (opened / closed / flipped)."""

    __tablename__ = "position_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transition_key: Mapped[str] = mapped_column(String(320), nullable=False)
    lead_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("lead_traders.id"), nullable=False
    )
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    kind: Mapped[str] = mapped_column(String(8), nullable=False)
    direction: Mapped[str | None] = mapped_column(String(8), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False)
    price: Mapped[Decimal | None] = mapped_column(Numeric(30, 10), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source: Mapped[str] = mapped_column(String(8), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("transition_key", name="uq_position_transitions_key"),
        Index("idx_position_transitions_occurred", "occurred_at"),
        Index("idx_position_transitions_lead_occurred", "lead_id", "occurred_at"),
    )


class TraderScoreModel(Base):
    """Ranking attributes per lead, written after every ingest."""

    __tablename__ = "trader_scores"

    lead_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("lead_traders.id"), primary_key=True
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False, default="binance")
    score_30d: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    quality_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confidence: Mapped[str | None] = mapped_column(String(8), nullable=True)
    win_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trader_weight: Mapped[float | None] = mapped_column(Float, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
