"""Position state for leads whose live positions are public.

Compares the active-positions snapshot of a payload with the stored state
rows: new symbols open, symbols still present refresh, direction changes
flip, and active rows missing from the snapshot close at the fetch time.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from copytrade_tracker.engine.derivation import PositionStatus, TransitionKind
from copytrade_tracker.engine.orders import OrderAction, OrderRecord
from copytrade_tracker.ingestor.models import LeadPayload, RawPosition
from copytrade_tracker.storage.repos import PositionStateDTO, PositionTransitionDTO

logger = logging.getLogger(__name__)

SOURCE_VISIBLE = "VISIBLE"
OPEN_EVENT_LOOKBACK = timedelta(minutes=5)
ZERO = Decimal("0")


@dataclass
class VisibleUpdate:
    """Rows to upsert and transitions to record for one snapshot."""

    states: list[PositionStateDTO] = field(default_factory=list)
    transitions: list[PositionTransitionDTO] = field(default_factory=list)


def visible_transition_key(lead_id: str, symbol: str, kind: TransitionKind, at: datetime) -> str:
    return f"{SOURCE_VISIBLE}|{lead_id}|{symbol}|{kind.value}|{int(at.timestamp() * 1000)}"


def _dominant_by_symbol(positions: Iterable[RawPosition]) -> dict[str, RawPosition]:
    """One position per symbol; in hedge mode the larger side wins."""
    by_symbol: dict[str, RawPosition] = {}
    for position in positions:
        if not position.symbol or position.direction is None:
            continue
        current = by_symbol.get(position.symbol)
        size = abs(position.position_amount or ZERO)
        if current is None or size > abs(current.position_amount or ZERO):
            by_symbol[position.symbol] = position
    return by_symbol


def find_open_event(
    records: Iterable[OrderRecord],
    symbol: str,
    direction: str,
    fetched_at: datetime,
) -> OrderRecord | None:
    """Latest matching open order within the lookback before ``fetched_at``."""
    wanted = OrderAction.OPEN_LONG if direction == "LONG" else OrderAction.OPEN_SHORT
    window_start = fetched_at - OPEN_EVENT_LOOKBACK
    candidates = [
        r
        for r in records
        if r.symbol == symbol and r.action == wanted and window_start <= r.timestamp <= fetched_at
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda r: (r.timestamp, r.order_id))


def track_visible_positions(
    lead_id: str,
    payload: LeadPayload,
    prior: Mapping[str, PositionStateDTO],
    records: Iterable[OrderRecord] = (),
) -> VisibleUpdate:
    """Reconcile stored state with the payload's active positions.

    A payload whose positions request failed carries no information about
    open positions, so it changes nothing.
    """
    update = VisibleUpdate()
    if "activePositions" in payload.failed_fields:
        logger.debug("Skipping visible tracking for lead %s: positions unavailable", lead_id)
        return update

    fetched_at = payload.fetched_at
    records = list(records)
    snapshot = _dominant_by_symbol(payload.active_positions)

    for symbol in sorted(snapshot):
        position = snapshot[symbol]
        direction = position.direction
        if direction is None:
            continue
        amount = abs(position.position_amount or ZERO)
        entry_price = position.entry_price or ZERO
        stored = prior.get(symbol)
        if stored is not None and stored.status != PositionStatus.ACTIVE.value:
            stored = None

        if stored is not None and stored.direction == direction:
            update.states.append(
                PositionStateDTO(
                    lead_id=lead_id,
                    symbol=symbol,
                    status=PositionStatus.ACTIVE.value,
                    direction=direction,
                    amount=amount,
                    entry_price=entry_price,
                    leverage=position.leverage,
                    first_seen_at=stored.first_seen_at,
                    last_seen_at=fetched_at,
                    estimated_open_time=stored.estimated_open_time,
                    open_event_id=stored.open_event_id,
                    source=SOURCE_VISIBLE,
                )
            )
            continue

        kind = TransitionKind.FLIPPED if stored is not None else TransitionKind.OPENED
        open_event = find_open_event(records, symbol, direction, fetched_at)
        update.states.append(
            PositionStateDTO(
                lead_id=lead_id,
                symbol=symbol,
                status=PositionStatus.ACTIVE.value,
                direction=direction,
                amount=amount,
                entry_price=entry_price,
                leverage=position.leverage,
                first_seen_at=fetched_at,
                last_seen_at=fetched_at,
                estimated_open_time=open_event.timestamp if open_event else fetched_at,
                open_event_id=open_event.order_id if open_event else None,
                source=SOURCE_VISIBLE,
            )
        )
        update.transitions.append(
            PositionTransitionDTO(
                transition_key=visible_transition_key(lead_id, symbol, kind, fetched_at),
                lead_id=lead_id,
                symbol=symbol,
                kind=kind.value,
                direction=direction,
                amount=amount,
                price=entry_price,
                order_id=open_event.order_id if open_event else None,
                occurred_at=fetched_at,
                source=SOURCE_VISIBLE,
            )
        )

    for symbol in sorted(prior):
        stored = prior[symbol]
        if stored.status != PositionStatus.ACTIVE.value or symbol in snapshot:
            continue
        update.states.append(
            PositionStateDTO(
                lead_id=lead_id,
                symbol=symbol,
                status=PositionStatus.CLOSED.value,
                direction=None,
                amount=ZERO,
                entry_price=stored.entry_price,
                leverage=stored.leverage,
                first_seen_at=stored.first_seen_at,
                last_seen_at=stored.last_seen_at,
                estimated_open_time=stored.estimated_open_time,
                open_event_id=stored.open_event_id,
                closed_at=fetched_at,
                source=SOURCE_VISIBLE,
            )
        )
        update.transitions.append(
            PositionTransitionDTO(
                transition_key=visible_transition_key(
                    lead_id, symbol, TransitionKind.CLOSED, fetched_at
                ),
                lead_id=lead_id,
                symbol=symbol,
                kind=TransitionKind.CLOSED.value,
                direction=stored.direction,
                amount=stored.amount,
                price=None,
                order_id=None,
                occurred_at=fetched_at,
                source=SOURCE_VISIBLE,
            )
        )

    return update
