"""Per-lead ingest processing.

Turns one fetched ``LeadPayload`` into persisted state inside a single
database transaction:

    LeadTrader upsert → RawIngest append → TradeEvent inserts
    → visible tracking (VISIBLE) or replay of the lead's full stored
      order history (HIDDEN / UNKNOWN)
    → PositionState upserts + PositionTransition inserts → TraderScore

The latest payload is then written to the optional Redis cache.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from copytrade_tracker.engine.derivation import DerivationResult, DerivedPosition, derive_positions
from copytrade_tracker.engine.orders import (
    build_trade_events,
    merge_order_history,
    normalize_orders,
)
from copytrade_tracker.engine.scoring import (
    compute_trader_metrics,
    compute_trader_weight,
    normalize_score,
)
from copytrade_tracker.engine.segments import Segment, resolve_segment
from copytrade_tracker.engine.visible import track_visible_positions
from copytrade_tracker.errors import StorageError
from copytrade_tracker.storage.repos import (
    LeadTraderRepository,
    PositionStateDTO,
    PositionStateRepository,
    PositionTransitionDTO,
    PositionTransitionRepository,
    RawIngestRepository,
    TradeEventRepository,
    TraderScoreDTO,
    TraderScoreRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from copytrade_tracker.ingestor.models import LeadPayload
    from copytrade_tracker.ingestor.payload_cache import LeadPayloadCache
    from copytrade_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

SOURCE_DERIVED = "DERIVED"
SCORE_WINDOW = timedelta(days=30)


@dataclass
class LeadIngestResult:
    """Counters for one processed payload."""

    lead_id: str
    segment: Segment
    raw_ingest_id: int
    events_inserted: int = 0
    positions_written: int = 0
    transitions_recorded: int = 0
    anomalies: int = 0
    score_30d: float = 0.0
    trader_weight: float | None = None
    failed_fields: tuple[str, ...] = field(default_factory=tuple)


def derived_transition_key(order_id: str, kind: str) -> str:
    return f"{SOURCE_DERIVED}|{order_id}|{kind}"


def _derived_state(
    lead_id: str, position: DerivedPosition, stored: PositionStateDTO | None
) -> PositionStateDTO:
    leverage = position.leverage
    # Orders replayed from storage carry no leverage; keep the lot's known value.
    if leverage is None and stored is not None and stored.open_event_id == position.open_event_id:
        leverage = stored.leverage
    return PositionStateDTO(
        lead_id=lead_id,
        symbol=position.symbol,
        status=position.status.value,
        direction=position.direction,
        amount=position.amount,
        entry_price=position.entry_price,
        leverage=leverage,
        first_seen_at=position.first_seen_at,
        last_seen_at=position.last_event_at,
        estimated_open_time=position.estimated_open_time,
        open_event_id=position.open_event_id,
        closed_at=position.closed_at,
        close_event_id=position.close_event_id,
        source=SOURCE_DERIVED,
    )


def _derived_transitions(lead_id: str, result: DerivationResult) -> list[PositionTransitionDTO]:
    return [
        PositionTransitionDTO(
            transition_key=derived_transition_key(t.order_id, t.kind.value),
            lead_id=lead_id,
            symbol=t.symbol,
            kind=t.kind.value,
            direction=t.direction,
            amount=t.amount,
            price=t.price,
            order_id=t.order_id,
            occurred_at=t.occurred_at,
            source=SOURCE_DERIVED,
        )
        for t in result.transitions
    ]


class LeadProcessor:
    """Persists fetched payloads and recomputes derived state.

    Example:
        ```python
        processor = LeadProcessor(db_manager, cache=LeadPayloadCache(redis))
        result = await processor.process(payload)
        ```
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        *,
        cache: LeadPayloadCache | None = None,
    ) -> None:
        self._db = db_manager
        self._cache = cache

    async def process(self, payload: LeadPayload) -> LeadIngestResult:
        """Persist one payload; the whole lead is one transaction.

        Raises:
            StorageError: Any database failure; nothing of the payload is
                kept and the next tick retries.
        """
        lead_id = payload.lead_id
        try:
            async with self._db.get_async_session() as session:
                result = await self._process_in_session(session, payload)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to persist lead {lead_id}: {e}", lead_id=lead_id) from e

        if self._cache is not None:
            try:
                await self._cache.set_payload(payload)
            except (RedisError, OSError) as e:
                logger.warning("Failed to cache payload for lead %s: %s", lead_id, e)

        logger.debug(
            "Processed lead %s (%s): %d new events, %d positions, %d transitions",
            lead_id,
            result.segment.value,
            result.events_inserted,
            result.positions_written,
            result.transitions_recorded,
        )
        return result

    async def _process_in_session(
        self, session: AsyncSession, payload: LeadPayload
    ) -> LeadIngestResult:
        lead_id = payload.lead_id
        fetched_at = payload.fetched_at

        trader = await LeadTraderRepository(session).upsert(
            lead_id,
            position_show=payload.position_show,
            nickname=payload.nickname,
        )
        raw = await RawIngestRepository(session).append(
            lead_id, payload.to_dict(), fetched_at=fetched_at
        )

        events_repo = TradeEventRepository(session)
        events_inserted = await events_repo.insert_many(
            build_trade_events(lead_id, payload.orders, fetched_at)
        )

        segment = resolve_segment(trader.position_show)
        states_repo = PositionStateRepository(session)
        prior = await states_repo.get_for_lead(lead_id)
        records = normalize_orders(lead_id, payload.orders)

        anomalies = 0
        if segment == Segment.VISIBLE:
            update = track_visible_positions(lead_id, payload, prior, records)
            states = update.states
            transitions = update.transitions
        else:
            # The payload only covers the last page of orders; replay everything stored.
            history = await events_repo.history_for_lead(lead_id)
            derivation = derive_positions(merge_order_history(history, records), prior)
            for anomaly in derivation.anomalies:
                logger.warning(
                    "Derivation anomaly for lead %s %s: %s (%s) %s",
                    lead_id,
                    anomaly.symbol,
                    anomaly.kind.value,
                    anomaly.order_id,
                    anomaly.detail,
                )
            anomalies = len(derivation.anomalies)
            states = [
                _derived_state(lead_id, p, prior.get(p.symbol))
                for p in derivation.changed_positions()
            ]
            transitions = _derived_transitions(lead_id, derivation)

        for state in states:
            await states_repo.upsert(state)
        transitions_recorded = await PositionTransitionRepository(session).insert_many(transitions)

        now = datetime.now(UTC)
        pnl_sum = await events_repo.realized_pnl_sum(lead_id, since=now - SCORE_WINDOW)
        metrics = compute_trader_metrics(payload, now)
        weight = compute_trader_weight(
            metrics.quality_score, metrics.confidence, metrics.win_rate, trader.position_show
        )
        score = TraderScoreDTO(
            lead_id=lead_id,
            score_30d=normalize_score(pnl_sum),
            quality_score=metrics.quality_score,
            confidence=metrics.confidence,
            win_rate=metrics.win_rate,
            sample_size=metrics.sample_size,
            trader_weight=weight,
        )
        await TraderScoreRepository(session).upsert(score)

        return LeadIngestResult(
            lead_id=lead_id,
            segment=segment,
            raw_ingest_id=raw.id,
            events_inserted=events_inserted,
            positions_written=len(states),
            transitions_recorded=transitions_recorded,
            anomalies=anomalies,
            score_30d=score.score_30d,
            trader_weight=weight,
            failed_fields=payload.failed_fields,
        )
