"""Normalization of raw order history into replayable records and events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

from copytrade_tracker.ingestor.models import RawOrder, to_int
from copytrade_tracker.storage.repos import TradeEventDTO

PLATFORM = "binance"


class OrderAction(str, Enum):
    """Position effect of an order (also the stored event type)."""

    OPEN_LONG = "OPEN_LONG"
    OPEN_SHORT = "OPEN_SHORT"
    CLOSE_LONG = "CLOSE_LONG"
    CLOSE_SHORT = "CLOSE_SHORT"
    UNKNOWN = "UNKNOWN"

    @property
    def is_open(self) -> bool:
        return self in (OrderAction.OPEN_LONG, OrderAction.OPEN_SHORT)

    @property
    def is_close(self) -> bool:
        return self in (OrderAction.CLOSE_LONG, OrderAction.CLOSE_SHORT)

    @property
    def direction(self) -> str | None:
        if self in (OrderAction.OPEN_LONG, OrderAction.CLOSE_LONG):
            return "LONG"
        if self in (OrderAction.OPEN_SHORT, OrderAction.CLOSE_SHORT):
            return "SHORT"
        return None


def map_order_action(side: str | None, position_side: str | None) -> OrderAction:
    """Map side + positionSide (hedge mode) to an action.

    One-way mode (``positionSide=BOTH``) has no open/close semantics of its
    own and maps to UNKNOWN; replay treats it as a signed delta.
    """
    if side == "BUY" and position_side == "LONG":
        return OrderAction.OPEN_LONG
    if side == "SELL" and position_side == "LONG":
        return OrderAction.CLOSE_LONG
    if side == "SELL" and position_side == "SHORT":
        return OrderAction.OPEN_SHORT
    if side == "BUY" and position_side == "SHORT":
        return OrderAction.CLOSE_SHORT
    return OrderAction.UNKNOWN


def format_number(value: Decimal | None) -> str:
    """Render a number without exponent or trailing zeros (``100``, ``0.02``)."""
    if value is None:
        return "null"
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def build_event_key(
    lead_id: str,
    event_type: str,
    symbol: str,
    timestamp_ms: int | None,
    quantity: Decimal | None,
    price: Decimal | None,
) -> str:
    ts = str(timestamp_ms) if timestamp_ms is not None else "null"
    return "|".join(
        (PLATFORM, lead_id, event_type, symbol, ts, format_number(quantity), format_number(price))
    )


def asset_of(raw: RawOrder) -> str:
    return raw.base_asset or raw.symbol.replace("USDT", "")


@dataclass(frozen=True)
class OrderRecord:
    """One fill, ready for chronological replay."""

    order_id: str
    symbol: str
    action: OrderAction
    side: str | None
    position_side: str | None
    quantity: Decimal | None
    price: Decimal | None
    timestamp: datetime
    leverage: int | None = None

    @property
    def is_one_way(self) -> bool:
        return self.position_side == "BOTH"


def normalize_order(lead_id: str, raw: RawOrder) -> OrderRecord | None:
    """Build a replayable record; None when symbol or fill time is missing."""
    timestamp = raw.timestamp
    if not raw.symbol or timestamp is None:
        return None
    action = map_order_action(raw.side, raw.position_side)
    order_id = build_event_key(
        lead_id, action.value, raw.symbol, raw.timestamp_ms, raw.executed_qty, raw.avg_price
    )
    return OrderRecord(
        order_id=order_id,
        symbol=raw.symbol,
        action=action,
        side=raw.side,
        position_side=raw.position_side,
        quantity=raw.executed_qty,
        price=raw.avg_price,
        timestamp=timestamp,
        leverage=to_int(raw.raw.get("leverage")),
    )


def normalize_orders(lead_id: str, orders: tuple[RawOrder, ...] | list[RawOrder]) -> list[OrderRecord]:
    records = (normalize_order(lead_id, o) for o in orders)
    return [r for r in records if r is not None]


def to_trade_event(
    lead_id: str,
    record: OrderRecord,
    raw: RawOrder,
    fetched_at: datetime,
) -> TradeEventDTO:
    """Stored event for an order; only positive realized PnL is kept."""
    pnl = raw.total_pnl
    return TradeEventDTO(
        event_key=record.order_id,
        lead_id=lead_id,
        event_type=record.action.value,
        symbol=record.symbol,
        side=record.side,
        position_side=record.position_side,
        price=record.price if record.price is not None else Decimal("0"),
        amount=record.quantity if record.quantity is not None else Decimal("0"),
        amount_asset=asset_of(raw),
        realized_pnl=pnl if pnl is not None and pnl > 0 else None,
        event_time=record.timestamp,
        fetched_at=fetched_at,
        platform=PLATFORM,
    )


def build_trade_events(
    lead_id: str,
    orders: tuple[RawOrder, ...] | list[RawOrder],
    fetched_at: datetime,
) -> list[TradeEventDTO]:
    events: list[TradeEventDTO] = []
    for raw in orders:
        record = normalize_order(lead_id, raw)
        if record is not None:
            events.append(to_trade_event(lead_id, record, raw, fetched_at))
    return events


def _stored_number(value: Decimal, rendered: str) -> Decimal | None:
    # Events store 0 for a missing number; the key still renders it as "null".
    return None if rendered == "null" else value


def record_from_event(event: TradeEventDTO) -> OrderRecord:
    """Rebuild the replayable record behind a stored event."""
    try:
        action = OrderAction(event.event_type)
    except ValueError:
        action = OrderAction.UNKNOWN
    _, quantity_text, price_text = event.event_key.rsplit("|", 2)
    return OrderRecord(
        order_id=event.event_key,
        symbol=event.symbol,
        action=action,
        side=event.side,
        position_side=event.position_side,
        quantity=_stored_number(event.amount, quantity_text),
        price=_stored_number(event.price, price_text),
        timestamp=event.event_time,
    )


def merge_order_history(
    events: list[TradeEventDTO],
    records: list[OrderRecord],
) -> list[OrderRecord]:
    """Stored history plus freshly fetched records, one per order id.

    Fetched records win over their stored copy; only they carry leverage.
    """
    merged = {e.event_key: record_from_event(e) for e in events}
    merged.update((r.order_id, r) for r in records)
    return list(merged.values())
