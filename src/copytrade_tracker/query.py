"""Read-side queries over persisted tracker state.

The operations here return plain dataclasses so an HTTP layer can
serialize them directly:

- ``get_feed``: latest activity per lead (live holdings and recent orders)
- ``get_latest_records_feed``: recent trade events grouped per position
- ``get_heatmap``: per-symbol consensus across leads
- ``get_events_feed``: OPENED/CLOSED/FLIPPED transitions
- ``get_trader``: one lead's profile, score, positions and performance

Consensus math (heatmap):
    sentiment  = (long_weight - short_weight) / (long_weight + short_weight)
    confidence = round(|sentiment| * min(n / 3, 1) * min(sum_weights / 0.5, 1) * 100)
    direction  = LONG if sentiment > 0.05, SHORT if < -0.05, else NEUTRAL

Derived positions without a stored leverage are given an estimate (see
``engine.leverage``); such entries carry ``leverage_estimated=True``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError

from copytrade_tracker.config import PositioningSettings
from copytrade_tracker.engine.leverage import (
    ESTIMATE_WINDOW,
    PEER_QUALITY_SPREAD,
    LeverageEstimate,
    estimate_leverage,
    leverage_samples,
)
from copytrade_tracker.engine.orders import OrderAction, map_order_action
from copytrade_tracker.engine.segments import (
    Segment,
    parse_segment_filter,
    resolve_segment,
    should_include,
)
from copytrade_tracker.ingestor.models import LeadPayload, RawPosition
from copytrade_tracker.storage.repos import (
    LeadTraderDTO,
    LeadTraderRepository,
    PositionStateDTO,
    PositionStateRepository,
    PositionTransitionRepository,
    RawIngestRepository,
    TradeEventDTO,
    TradeEventRepository,
    TraderScoreDTO,
    TraderScoreRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from copytrade_tracker.ingestor.payload_cache import LeadPayloadCache
    from copytrade_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

DEFAULT_FEED_LIMIT = 50
DEFAULT_LATEST_RECORDS_LIMIT = 200
MAX_LATEST_RECORDS_LIMIT = 1000
LATEST_RECORDS_PER_LEAD = 20
DEFAULT_EVENTS_LIMIT = 100
MAX_EVENTS_LIMIT = 500
DEFAULT_TOP_TRADERS = 10

DERIVED_CONFIDENCE_WITH_OPEN_EVENT = 0.85
DERIVED_CONFIDENCE_WITHOUT_OPEN_EVENT = 0.70
NEUTRAL_BAND = 0.05

TRADE_EVENT_TYPES = (
    OrderAction.OPEN_LONG.value,
    OrderAction.OPEN_SHORT.value,
    OrderAction.CLOSE_LONG.value,
    OrderAction.CLOSE_SHORT.value,
)

_RECENTLY_OPENED_RE = re.compile(r"^(\d+)(m|h|d)$")
_RECENTLY_OPENED_UNITS = {"m": "minutes", "h": "hours", "d": "days"}


class TimeRange(str, Enum):
    """Look-back windows accepted by the read queries."""

    HOUR_1 = "1h"
    HOUR_4 = "4h"
    HOUR_24 = "24h"
    DAY_7 = "7d"
    ALL = "ALL"


_TIME_RANGE_DELTAS: dict[TimeRange, timedelta | None] = {
    TimeRange.HOUR_1: timedelta(hours=1),
    TimeRange.HOUR_4: timedelta(hours=4),
    TimeRange.HOUR_24: timedelta(hours=24),
    TimeRange.DAY_7: timedelta(days=7),
    TimeRange.ALL: None,
}


def parse_time_range(value: str | TimeRange | None) -> TimeRange:
    """Parse a time range; unknown values fall back to 24h."""
    if isinstance(value, TimeRange):
        return value
    if not value:
        return TimeRange.HOUR_24
    normalized = value.strip()
    if normalized.upper() == "ALL":
        return TimeRange.ALL
    try:
        return TimeRange(normalized.lower())
    except ValueError:
        return TimeRange.HOUR_24


def time_range_cutoff(time_range: str | TimeRange | None, now: datetime) -> datetime | None:
    """Earliest timestamp inside the range, or None for ALL."""
    delta = _TIME_RANGE_DELTAS[parse_time_range(time_range)]
    return now - delta if delta is not None else None


def parse_recently_opened(value: str | None) -> timedelta | None:
    """Parse windows like ``30m``, ``6h`` or ``2d``; anything else is None."""
    if not value:
        return None
    match = _RECENTLY_OPENED_RE.match(value.strip())
    if not match:
        return None
    amount = int(match.group(1))
    if amount <= 0:
        return None
    return timedelta(**{_RECENTLY_OPENED_UNITS[match.group(2)]: amount})


def matches_leverage_bucket(leverage: float, bucket: str) -> bool:
    """Leverage buckets: ``ALL``, ``<20x``, ``20-50x``, ``50-100x``, ``>100x``."""
    if bucket == "<20x":
        return leverage < 20
    if bucket == "20-50x":
        return 20 <= leverage <= 50
    if bucket == "50-100x":
        return 50 < leverage <= 100
    if bucket == ">100x":
        return leverage > 100
    return True


def sentiment_score(long_weight: float, short_weight: float) -> float:
    total = long_weight + short_weight
    if total == 0:
        return 0.0
    return (long_weight - short_weight) / total


def consensus_confidence(sentiment: float, trader_count: int, sum_weights: float) -> int:
    trader_coverage = min(trader_count / 3, 1.0)
    weight_coverage = min(sum_weights / 0.5, 1.0)
    return round(abs(sentiment) * trader_coverage * weight_coverage * 100)


def consensus_direction(sentiment: float) -> str:
    if sentiment > NEUTRAL_BAND:
        return "LONG"
    if sentiment < -NEUTRAL_BAND:
        return "SHORT"
    return "NEUTRAL"


def _clamp_limit(value: int | None, default: int, maximum: int | None = None) -> int:
    limit = value if value is not None and value > 0 else default
    return min(limit, maximum) if maximum is not None else limit


def _display_name(lead_id: str, *names: str | None) -> str:
    for name in names:
        if name:
            return name
    return f"Trader {lead_id[-6:]}"


async def estimate_leverages(
    session: AsyncSession,
    lead_ids: list[str],
    now: datetime,
) -> dict[str, LeverageEstimate]:
    """Leverage estimates for leads whose derived positions have none.

    Samples come from live positions in snapshots of the last 7 days. Peers
    are leads whose quality score is within ``PEER_QUALITY_SPREAD`` points.
    """
    if not lead_ids:
        return {}
    scores_repo = TraderScoreRepository(session)
    scores = await scores_repo.get_many(lead_ids)

    peers: dict[str, list[str]] = {}
    by_quality: dict[int, list[str]] = {}
    for lead_id in lead_ids:
        score = scores.get(lead_id)
        quality = score.quality_score if score else None
        if quality is None:
            continue
        if quality not in by_quality:
            by_quality[quality] = await scores_repo.lead_ids_with_quality_between(
                quality - PEER_QUALITY_SPREAD, quality + PEER_QUALITY_SPREAD
            )
        peers[lead_id] = by_quality[quality]

    wanted = set(lead_ids).union(*peers.values())
    samples: dict[str, list[int]] = {}
    snapshots = await RawIngestRepository(session).with_positions_since(
        now - ESTIMATE_WINDOW, sorted(wanted)
    )
    for snapshot in snapshots:
        samples.setdefault(snapshot.lead_id, []).extend(leverage_samples(snapshot.payload))

    return {
        lead_id: estimate_leverage(
            samples.get(lead_id, []),
            [s for peer in peers.get(lead_id, []) for s in samples.get(peer, [])],
        )
        for lead_id in lead_ids
    }


# ============================================================================
# Filters
# ============================================================================


@dataclass
class FeedFilters:
    time_range: str = TimeRange.HOUR_24.value
    segment: str = "BOTH"
    symbol: str | None = None
    source: str = "all"  # all | positions | derived
    limit: int = DEFAULT_FEED_LIMIT


@dataclass
class LatestRecordsFilters:
    limit: int = DEFAULT_LATEST_RECORDS_LIMIT
    lead_ids: list[str] | None = None


@dataclass
class HeatmapFilters:
    time_range: str = TimeRange.HOUR_24.value
    side: str = "ALL"  # ALL | LONG | SHORT
    min_traders: int = 1
    leverage: str = "ALL"
    segment: str = "BOTH"
    recently_opened: str | None = None


@dataclass
class EventsFeedFilters:
    time_range: str = TimeRange.HOUR_24.value
    segment: str = "BOTH"
    symbol: str | None = None
    limit: int = DEFAULT_EVENTS_LIMIT


# ============================================================================
# Results
# ============================================================================


@dataclass
class FeedItem:
    lead_id: str
    nickname: str
    symbol: str
    action: str
    side: str | None
    notional: float
    leverage: int | None
    pnl: float
    timestamp: datetime
    source: str  # POSITIONS | DERIVED
    segment: Segment
    trader_weight: float | None = None
    quality_score: int | None = None
    confidence: str | None = None
    win_rate: float | None = None


@dataclass
class LatestRecord:
    lead_id: str
    nickname: str
    position_show: bool | None
    symbol: str
    direction: str
    event_time: datetime
    total_opened: Decimal
    total_closed: Decimal
    close_percentage: float
    status: str  # OPEN_ONLY | PARTIAL_CLOSE | FULL_CLOSE | OVER_CLOSE
    avg_open_price: Decimal
    avg_close_price: Decimal
    open_count: int
    close_count: int


@dataclass
class HeatmapTrader:
    lead_id: str
    nickname: str
    side: str
    leverage: int
    size: Decimal
    entry_price: Decimal
    notional: float
    pnl: float
    trader_weight: float | None
    segment: Segment
    is_derived: bool
    derived_confidence: float | None = None
    opened_at: datetime | None = None
    hold_duration_seconds: int | None = None
    leverage_estimated: bool = False
    leverage_confidence: str | None = None


@dataclass
class HeatmapCell:
    symbol: str
    long_count: int
    short_count: int
    total_traders: int
    visible_trader_count: int
    hidden_trader_count: int
    avg_leverage: float
    weighted_avg_leverage: float
    total_volume: float
    long_volume: float
    short_volume: float
    sentiment_score: float
    sum_weights: float
    confidence_score: int
    consensus_direction: str
    data_source: str  # VISIBLE | HIDDEN_DERIVED | MIXED
    derived_confidence_avg: int | None
    top_traders: list[HeatmapTrader] = field(default_factory=list)


@dataclass
class TransitionEvent:
    transition_key: str
    lead_id: str
    nickname: str
    symbol: str
    kind: str
    direction: str | None
    amount: Decimal
    price: Decimal | None
    occurred_at: datetime
    source: str
    segment: Segment
    trader_weight: float | None = None


@dataclass
class TraderPosition:
    symbol: str
    direction: str
    amount: Decimal
    entry_price: Decimal
    leverage: int | None
    source: str  # VISIBLE | DERIVED
    mark_price: Decimal | None = None
    unrealized_pnl: Decimal | None = None
    opened_at: datetime | None = None
    leverage_estimated: bool = False
    leverage_confidence: str | None = None


@dataclass
class TraderView:
    lead_id: str
    platform: str
    nickname: str
    segment: Segment
    position_show: bool | None
    score: TraderScoreDTO | None
    positions: list[TraderPosition]
    roi_series: list[dict[str, Any]]
    asset_preferences: dict[str, Any] | None
    performance: dict[str, Any] | None
    fetched_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


@dataclass
class _SymbolAggregate:
    symbol: str
    long_count: int = 0
    short_count: int = 0
    long_volume: float = 0.0
    short_volume: float = 0.0
    visible_count: int = 0
    derived_count: int = 0
    derived_confidence_sum: float = 0.0
    traders: list[HeatmapTrader] = field(default_factory=list)

    def add(self, trader: HeatmapTrader) -> None:
        if trader.side == "LONG":
            self.long_count += 1
            self.long_volume += trader.notional
        else:
            self.short_count += 1
            self.short_volume += trader.notional
        if trader.is_derived:
            self.derived_count += 1
            self.derived_confidence_sum += trader.derived_confidence or 0.0
        else:
            self.visible_count += 1
        self.traders.append(trader)


# ============================================================================
# Service
# ============================================================================


class TrackerQueryService:
    """Read queries for feeds, heatmap, transitions and trader views.

    Example:
        ```python
        service = TrackerQueryService(db_manager, cache=cache)
        cells = await service.get_heatmap(HeatmapFilters(time_range="4h", min_traders=2))
        ```
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        *,
        cache: LeadPayloadCache | None = None,
        positioning: PositioningSettings | None = None,
        top_traders_limit: int = DEFAULT_TOP_TRADERS,
    ) -> None:
        self._db = db_manager
        self._cache = cache
        self._positioning = positioning or PositioningSettings()
        self._top_traders_limit = top_traders_limit

    def _opened_at(self, state: PositionStateDTO | None) -> datetime | None:
        if state is None:
            return None
        if self._positioning.use_estimated_open_time:
            return state.estimated_open_time or state.first_seen_at
        return state.first_seen_at

    def _recently_opened_window(self, value: str | None) -> timedelta | None:
        window = parse_recently_opened(value)
        if window is None:
            return None
        return min(window, timedelta(hours=self._positioning.recently_opened_max_hours))

    async def get_feed(self, filters: FeedFilters | None = None) -> list[FeedItem]:
        """Latest holdings and orders per lead, newest first."""
        filters = filters or FeedFilters()
        now = datetime.now(UTC)
        cutoff = time_range_cutoff(filters.time_range, now)
        segment_filter = parse_segment_filter(filters.segment)
        symbol_filter = (filters.symbol or "").strip().upper() or None
        source = (filters.source or "all").strip().lower()
        if source not in ("all", "positions", "derived"):
            source = "all"

        async with self._db.get_async_session() as session:
            ingests = await RawIngestRepository(session).latest_per_lead(since=cutoff)
            traders = await LeadTraderRepository(session).get_many(ingests.keys())
            scores = await TraderScoreRepository(session).get_many(ingests.keys())

        items: list[FeedItem] = []
        for lead_id, ingest in ingests.items():
            trader = traders.get(lead_id)
            segment = resolve_segment(trader.position_show if trader else None)
            if not should_include(segment, segment_filter):
                continue
            payload = LeadPayload.from_dict(ingest.payload)
            score = scores.get(lead_id)
            nickname = _display_name(lead_id, payload.nickname, trader.nickname if trader else None)

            def item(**kwargs: Any) -> FeedItem:
                return FeedItem(
                    lead_id=lead_id,
                    nickname=nickname,
                    segment=segment,
                    trader_weight=score.trader_weight if score else None,
                    quality_score=score.quality_score if score else None,
                    confidence=score.confidence if score else None,
                    win_rate=score.win_rate if score else None,
                    **kwargs,
                )

            if source in ("all", "positions"):
                for position in payload.active_positions:
                    direction = position.direction
                    if direction is None or not position.symbol:
                        continue
                    if symbol_filter and position.symbol.upper() != symbol_filter:
                        continue
                    items.append(
                        item(
                            symbol=position.symbol,
                            action=f"HOLDING_{direction}",
                            side=direction,
                            notional=float(abs(position.notional_value or ZERO)),
                            leverage=position.leverage,
                            pnl=float(position.unrealized_profit or ZERO),
                            timestamp=ingest.fetched_at,
                            source="POSITIONS",
                        )
                    )

            if source in ("all", "derived"):
                for order in payload.orders:
                    timestamp = order.timestamp
                    if timestamp is None or not order.symbol:
                        continue
                    if cutoff is not None and timestamp < cutoff:
                        continue
                    if symbol_filter and order.symbol.upper() != symbol_filter:
                        continue
                    notional = abs((order.executed_qty or ZERO) * (order.avg_price or ZERO))
                    items.append(
                        item(
                            symbol=order.symbol,
                            action=map_order_action(order.side, order.position_side).value,
                            side=order.position_side,
                            notional=float(notional),
                            leverage=None,
                            pnl=float(order.total_pnl or ZERO),
                            timestamp=timestamp,
                            source="DERIVED",
                        )
                    )

        items.sort(key=lambda i: i.timestamp, reverse=True)
        return items[: _clamp_limit(filters.limit, DEFAULT_FEED_LIMIT)]

    async def get_latest_records_feed(
        self, filters: LatestRecordsFilters | None = None
    ) -> list[LatestRecord]:
        """Recent open/close events grouped per (lead, symbol, direction)."""
        filters = filters or LatestRecordsFilters()
        limit = _clamp_limit(filters.limit, DEFAULT_LATEST_RECORDS_LIMIT, MAX_LATEST_RECORDS_LIMIT)

        async with self._db.get_async_session() as session:
            traders = await LeadTraderRepository(session).get_many(filters.lead_ids)
            events = await TradeEventRepository(session).recent_for_leads(
                sorted(traders),
                event_types=TRADE_EVENT_TYPES,
                per_lead=LATEST_RECORDS_PER_LEAD,
            )

        groups: dict[tuple[str, str, str], tuple[list[TradeEventDTO], list[TradeEventDTO]]] = {}
        for event in events:
            direction = "LONG" if event.event_type.endswith("LONG") else "SHORT"
            opens, closes = groups.setdefault((event.lead_id, event.symbol, direction), ([], []))
            (opens if event.event_type.startswith("OPEN") else closes).append(event)

        records = [
            self._latest_record(lead_id, symbol, direction, opens, closes, traders.get(lead_id))
            for (lead_id, symbol, direction), (opens, closes) in groups.items()
        ]
        records.sort(key=lambda r: r.event_time, reverse=True)
        return records[:limit]

    @staticmethod
    def _latest_record(
        lead_id: str,
        symbol: str,
        direction: str,
        opens: list[TradeEventDTO],
        closes: list[TradeEventDTO],
        trader: LeadTraderDTO | None,
    ) -> LatestRecord:
        total_opened = sum((e.amount for e in opens), ZERO)
        total_closed = sum((e.amount for e in closes), ZERO)

        if not closes:
            status = "OPEN_ONLY"
        elif total_closed > total_opened:
            status = "OVER_CLOSE"
        elif total_closed == total_opened:
            status = "FULL_CLOSE"
        else:
            status = "PARTIAL_CLOSE"

        def vwap(events: list[TradeEventDTO], total: Decimal) -> Decimal:
            priced = [e for e in events if e.price > 0]
            if priced and total > 0:
                return sum((e.price * e.amount for e in priced), ZERO) / total
            return events[0].price if events else ZERO

        close_percentage = float(total_closed / total_opened * 100) if total_opened > 0 else 0.0
        return LatestRecord(
            lead_id=lead_id,
            nickname=_display_name(lead_id, trader.nickname if trader else None),
            position_show=trader.position_show if trader else None,
            symbol=symbol,
            direction=direction,
            event_time=max(e.event_time for e in opens + closes),
            total_opened=total_opened,
            total_closed=total_closed,
            close_percentage=round(close_percentage, 2),
            status=status,
            avg_open_price=vwap(opens, total_opened),
            avg_close_price=vwap(closes, total_closed),
            open_count=len(opens),
            close_count=len(closes),
        )

    async def get_heatmap(self, filters: HeatmapFilters | None = None) -> list[HeatmapCell]:
        """Per-symbol consensus across visible and derived positions."""
        filters = filters or HeatmapFilters()
        now = datetime.now(UTC)
        cutoff = time_range_cutoff(filters.time_range, now)
        segment_filter = parse_segment_filter(filters.segment)
        side_filter = (filters.side or "ALL").strip().upper()
        window = self._recently_opened_window(filters.recently_opened)
        opened_cutoff = now - window if window is not None else None

        async with self._db.get_async_session() as session:
            ingests = await RawIngestRepository(session).latest_per_lead(since=cutoff)
            traders = await LeadTraderRepository(session).get_many(ingests.keys())
            scores = await TraderScoreRepository(session).get_many(ingests.keys())
            states = await PositionStateRepository(session).list_active(ingests.keys())
            unlevered = sorted({s.lead_id for s in states if s.leverage is None})
            estimates = await estimate_leverages(session, unlevered, now)

        states_by_key = {(s.lead_id, s.symbol, s.direction): s for s in states}
        states_by_lead: dict[str, list[PositionStateDTO]] = {}
        for state in states:
            states_by_lead.setdefault(state.lead_id, []).append(state)

        def admit(side: str, leverage: int, opened_at: datetime | None) -> bool:
            if side_filter in ("LONG", "SHORT") and side != side_filter:
                return False
            if not matches_leverage_bucket(leverage, filters.leverage):
                return False
            if opened_cutoff is not None and (opened_at is None or opened_at < opened_cutoff):
                return False
            return True

        def hold_seconds(opened_at: datetime | None) -> int | None:
            return int((now - opened_at).total_seconds()) if opened_at else None

        aggregates: dict[str, _SymbolAggregate] = {}
        for lead_id in sorted(ingests):
            trader = traders.get(lead_id)
            segment = resolve_segment(trader.position_show if trader else None)
            if not should_include(segment, segment_filter):
                continue
            payload = LeadPayload.from_dict(ingests[lead_id].payload)
            score = scores.get(lead_id)
            weight = score.trader_weight if score else None
            nickname = _display_name(lead_id, payload.nickname, trader.nickname if trader else None)

            if segment == Segment.VISIBLE:
                for position in payload.active_positions:
                    direction = position.direction
                    symbol = position.symbol.upper()
                    if direction is None or not symbol:
                        continue
                    # Live positions without a leverage count as 0x.
                    leverage = position.leverage or 0
                    opened_at = self._opened_at(states_by_key.get((lead_id, position.symbol, direction)))
                    if not admit(direction, leverage, opened_at):
                        continue
                    aggregates.setdefault(symbol, _SymbolAggregate(symbol)).add(
                        HeatmapTrader(
                            lead_id=lead_id,
                            nickname=nickname,
                            side=direction,
                            leverage=leverage,
                            size=abs(position.position_amount or ZERO),
                            entry_price=position.entry_price or ZERO,
                            notional=float(abs(position.notional_value or ZERO)),
                            pnl=float(position.unrealized_profit or ZERO),
                            trader_weight=weight,
                            segment=segment,
                            is_derived=False,
                            opened_at=opened_at,
                            hold_duration_seconds=hold_seconds(opened_at),
                        )
                    )
                continue

            for state in states_by_lead.get(lead_id, []):
                if state.direction is None:
                    continue
                estimate = estimates.get(lead_id) if state.leverage is None else None
                leverage = estimate.leverage if estimate else state.leverage or 0
                opened_at = self._opened_at(state)
                if not admit(state.direction, leverage, opened_at):
                    continue
                derived_confidence = (
                    DERIVED_CONFIDENCE_WITH_OPEN_EVENT
                    if state.open_event_id
                    else DERIVED_CONFIDENCE_WITHOUT_OPEN_EVENT
                )
                symbol = state.symbol.upper()
                aggregates.setdefault(symbol, _SymbolAggregate(symbol)).add(
                    HeatmapTrader(
                        lead_id=lead_id,
                        nickname=nickname,
                        side=state.direction,
                        leverage=leverage,
                        size=state.amount,
                        entry_price=state.entry_price,
                        notional=float(state.entry_price * state.amount),
                        pnl=0.0,
                        trader_weight=weight,
                        segment=segment,
                        is_derived=True,
                        derived_confidence=derived_confidence,
                        opened_at=opened_at,
                        hold_duration_seconds=hold_seconds(opened_at),
                        leverage_estimated=estimate is not None,
                        leverage_confidence=estimate.confidence if estimate else None,
                    )
                )

        min_traders = max(filters.min_traders or 1, 1)
        cells = [
            self._heatmap_cell(agg)
            for agg in aggregates.values()
            if len(agg.traders) >= min_traders
        ]
        cells.sort(key=lambda c: (-c.confidence_score, -c.total_traders, c.symbol))
        return cells

    def _heatmap_cell(self, agg: _SymbolAggregate) -> HeatmapCell:
        long_weight = sum(t.trader_weight or 0.0 for t in agg.traders if t.side == "LONG")
        short_weight = sum(t.trader_weight or 0.0 for t in agg.traders if t.side == "SHORT")
        sentiment = sentiment_score(long_weight, short_weight)
        sum_weights = round(long_weight + short_weight, 4)
        total = len(agg.traders)

        avg_leverage = sum(t.leverage for t in agg.traders) / total if total else 0.0
        total_weight = sum(t.trader_weight or 0.0 for t in agg.traders)
        if total_weight > 0:
            weighted_leverage = (
                sum(t.leverage * (t.trader_weight or 0.0) for t in agg.traders) / total_weight
            )
        else:
            weighted_leverage = avg_leverage

        if agg.derived_count and agg.visible_count:
            data_source = "MIXED"
        elif agg.derived_count:
            data_source = "HIDDEN_DERIVED"
        else:
            data_source = "VISIBLE"

        top = sorted(agg.traders, key=lambda t: (-(t.trader_weight or 0.0), t.lead_id))
        return HeatmapCell(
            symbol=agg.symbol,
            long_count=agg.long_count,
            short_count=agg.short_count,
            total_traders=total,
            visible_trader_count=agg.visible_count,
            hidden_trader_count=agg.derived_count,
            avg_leverage=round(avg_leverage, 1),
            weighted_avg_leverage=round(weighted_leverage, 1),
            total_volume=round(agg.long_volume + agg.short_volume, 2),
            long_volume=round(agg.long_volume, 2),
            short_volume=round(agg.short_volume, 2),
            sentiment_score=round(sentiment, 4),
            sum_weights=sum_weights,
            confidence_score=consensus_confidence(sentiment, total, sum_weights),
            consensus_direction=consensus_direction(sentiment),
            data_source=data_source,
            derived_confidence_avg=(
                round(agg.derived_confidence_sum / agg.derived_count * 100)
                if agg.derived_count
                else None
            ),
            top_traders=top[: self._top_traders_limit],
        )

    async def get_events_feed(
        self, filters: EventsFeedFilters | None = None
    ) -> list[TransitionEvent]:
        """Position transitions in the range, newest first."""
        filters = filters or EventsFeedFilters()
        cutoff = time_range_cutoff(filters.time_range, datetime.now(UTC))
        segment_filter = parse_segment_filter(filters.segment)
        symbol = (filters.symbol or "").strip().upper() or None
        limit = _clamp_limit(filters.limit, DEFAULT_EVENTS_LIMIT, MAX_EVENTS_LIMIT)

        async with self._db.get_async_session() as session:
            traders = await LeadTraderRepository(session).get_many()
            eligible = [
                lead_id
                for lead_id, trader in traders.items()
                if should_include(resolve_segment(trader.position_show), segment_filter)
            ]
            transitions = await PositionTransitionRepository(session).list_recent(
                since=cutoff, symbol=symbol, lead_ids=eligible, limit=limit
            )
            scores = await TraderScoreRepository(session).get_many({t.lead_id for t in transitions})

        events: list[TransitionEvent] = []
        for transition in transitions:
            trader = traders[transition.lead_id]
            score = scores.get(transition.lead_id)
            events.append(
                TransitionEvent(
                    transition_key=transition.transition_key,
                    lead_id=transition.lead_id,
                    nickname=_display_name(transition.lead_id, trader.nickname),
                    symbol=transition.symbol,
                    kind=transition.kind,
                    direction=transition.direction,
                    amount=transition.amount,
                    price=transition.price,
                    occurred_at=transition.occurred_at,
                    source=transition.source,
                    segment=resolve_segment(trader.position_show),
                    trader_weight=score.trader_weight if score else None,
                )
            )
        return events

    async def _latest_payload(self, lead_id: str) -> LeadPayload | None:
        if self._cache is not None:
            try:
                cached = await self._cache.get_payload(lead_id)
            except (RedisError, OSError) as e:
                logger.warning("Payload cache read failed for lead %s: %s", lead_id, e)
                cached = None
            if cached is not None:
                return cached

        async with self._db.get_async_session() as session:
            latest = await RawIngestRepository(session).get_latest(lead_id)
        return LeadPayload.from_dict(latest.payload) if latest else None

    async def get_trader(self, lead_id: str) -> TraderView | None:
        """Profile, score, positions and performance of one lead."""
        async with self._db.get_async_session() as session:
            trader = await LeadTraderRepository(session).get(lead_id)
            if trader is None:
                return None
            score = await TraderScoreRepository(session).get(lead_id)
            states = await PositionStateRepository(session).list_active([lead_id])
            unlevered = [lead_id] if any(s.leverage is None for s in states) else []
            estimates = await estimate_leverages(session, unlevered, datetime.now(UTC))
        estimate = estimates.get(lead_id)

        payload = await self._latest_payload(lead_id)
        segment = resolve_segment(trader.position_show)
        states_by_key = {(s.symbol, s.direction): s for s in states}

        positions: list[TraderPosition] = []
        if segment == Segment.VISIBLE and payload is not None:
            for p in payload.active_positions:
                direction = p.direction
                if direction is None:
                    continue
                state = states_by_key.get((p.symbol, direction))
                positions.append(self._visible_position(p, direction, state))
        else:
            for s in states:
                if s.direction is None:
                    continue
                estimated = estimate if s.leverage is None else None
                positions.append(
                    TraderPosition(
                        symbol=s.symbol,
                        direction=s.direction,
                        amount=s.amount,
                        entry_price=s.entry_price,
                        leverage=estimated.leverage if estimated else s.leverage,
                        source=s.source,
                        opened_at=self._opened_at(s),
                        leverage_estimated=estimated is not None,
                        leverage_confidence=estimated.confidence if estimated else None,
                    )
                )
        self._sort_positions(positions)

        return TraderView(
            lead_id=trader.id,
            platform=trader.platform,
            nickname=_display_name(
                lead_id, payload.nickname if payload else None, trader.nickname
            ),
            segment=segment,
            position_show=trader.position_show,
            score=score,
            positions=positions,
            roi_series=list(payload.roi_series) if payload else [],
            asset_preferences=payload.asset_preferences if payload else None,
            performance=payload.performance if payload else None,
            fetched_at=payload.fetched_at if payload else None,
            created_at=trader.created_at,
            updated_at=trader.updated_at,
        )

    def _visible_position(
        self, position: RawPosition, direction: str, state: PositionStateDTO | None
    ) -> TraderPosition:
        return TraderPosition(
            symbol=position.symbol,
            direction=direction,
            amount=abs(position.position_amount or ZERO),
            entry_price=position.entry_price or ZERO,
            leverage=position.leverage,
            source="VISIBLE",
            mark_price=position.mark_price,
            unrealized_pnl=position.unrealized_profit,
            opened_at=self._opened_at(state),
        )

    def _sort_positions(self, positions: list[TraderPosition]) -> None:
        """Order by open time per the configured sort order; unknown times last."""
        newest_first = self._positioning.sort_order == "newest"

        def key(p: TraderPosition) -> tuple[int, float, str]:
            if p.opened_at is None:
                return (1, 0.0, p.symbol)
            ts = p.opened_at.timestamp()
            return (0, -ts if newest_first else ts, p.symbol)

        positions.sort(key=key)

