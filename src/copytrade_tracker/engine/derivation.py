"""Position derivation by chronological lot replay.

Reconstructs a lead's current exposure per symbol from its order history
when the live positions feed is hidden. Replay is pure and deterministic:
orders are sorted by ``(timestamp, order_id)`` and folded into one lot per
symbol, so re-deriving over an overlapping history window gives the same
terminal state.

Inconsistent histories (closes without a matching open, oversized closes,
opposite-direction opens) are recorded as ``DerivationAnomaly`` entries
and never raised.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol

from copytrade_tracker.engine.orders import OrderAction, OrderRecord

ZERO = Decimal("0")
# Scale of the NUMERIC(30, 10) state columns.
STORED_QUANTUM = Decimal("1e-10")


class PositionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class TransitionKind(str, Enum):
    OPENED = "OPENED"
    CLOSED = "CLOSED"
    FLIPPED = "FLIPPED"


class AnomalyKind(str, Enum):
    OVERSIZED_CLOSE = "OVERSIZED_CLOSE"
    CLOSE_WITHOUT_OPEN = "CLOSE_WITHOUT_OPEN"
    DIRECTION_MISMATCH = "DIRECTION_MISMATCH"
    HEDGE_NETTED = "HEDGE_NETTED"
    UNRECOGNIZED_ORDER = "UNRECOGNIZED_ORDER"


@dataclass(frozen=True)
class DerivedPosition:
    """Terminal state of one symbol after replay."""

    symbol: str
    status: PositionStatus
    direction: str | None
    amount: Decimal
    entry_price: Decimal
    leverage: int | None
    first_seen_at: datetime | None
    estimated_open_time: datetime | None
    open_event_id: str | None
    last_event_at: datetime
    closed_at: datetime | None = None
    close_event_id: str | None = None


@dataclass(frozen=True)
class LotTransition:
    """A lot opening, closing or flipping direction.

    ``direction`` is the direction after the change for OPENED/FLIPPED and
    the direction that was closed for CLOSED.
    """

    symbol: str
    kind: TransitionKind
    direction: str
    amount: Decimal
    price: Decimal
    order_id: str
    occurred_at: datetime


@dataclass(frozen=True)
class DerivationAnomaly:
    symbol: str
    kind: AnomalyKind
    order_id: str
    occurred_at: datetime
    detail: str = ""


class PriorPosition(Protocol):
    """Minimal view of a stored state row used for reconciliation."""

    status: str
    direction: str | None
    amount: Decimal
    entry_price: Decimal
    open_event_id: str | None


@dataclass
class DerivationResult:
    positions: dict[str, DerivedPosition] = field(default_factory=dict)
    transitions: list[LotTransition] = field(default_factory=list)
    anomalies: list[DerivationAnomaly] = field(default_factory=list)
    prior: Mapping[str, PriorPosition] = field(default_factory=dict, repr=False)

    def changed_positions(self) -> list[DerivedPosition]:
        """Derived positions that differ from the stored prior rows.

        Symbols absent from the replay are not returned, so their stored
        rows stay as they are.
        """
        prior = self.prior
        changed: list[DerivedPosition] = []
        for symbol in sorted(self.positions):
            derived = self.positions[symbol]
            stored = prior.get(symbol)
            if stored is None or (
                stored.status != derived.status.value
                or stored.direction != derived.direction
                or not _same_stored(stored.amount, derived.amount)
                or not _same_stored(stored.entry_price, derived.entry_price)
                or stored.open_event_id != derived.open_event_id
            ):
                changed.append(derived)
        return changed


def _same_stored(stored: Decimal, derived: Decimal) -> bool:
    return Decimal(stored).quantize(STORED_QUANTUM) == derived.quantize(STORED_QUANTUM)


def _sign(value: Decimal) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def _direction_of(size: Decimal) -> str | None:
    sign = _sign(size)
    if sign > 0:
        return "LONG"
    if sign < 0:
        return "SHORT"
    return None


@dataclass
class _Lot:
    """Open lot of one symbol: signed size and VWAP entry."""

    symbol: str
    size: Decimal = ZERO
    entry_price: Decimal = ZERO
    leverage: int | None = None
    open_order_id: str | None = None
    opened_at: datetime | None = None
    last_event_at: datetime | None = None
    closed_at: datetime | None = None
    close_order_id: str | None = None

    @property
    def direction(self) -> str | None:
        return _direction_of(self.size)

    def open_fresh(self, size: Decimal, order: OrderRecord, price: Decimal) -> None:
        self.size = size
        self.entry_price = price
        self.leverage = order.leverage
        self.open_order_id = order.order_id
        self.opened_at = order.timestamp
        self.closed_at = None
        self.close_order_id = None

    def reset(self, order: OrderRecord) -> None:
        self.size = ZERO
        self.entry_price = ZERO
        self.leverage = None
        self.open_order_id = None
        self.opened_at = None
        self.closed_at = order.timestamp
        self.close_order_id = order.order_id

    def snapshot(self, last_event_at: datetime) -> DerivedPosition:
        if self.size == 0:
            return DerivedPosition(
                symbol=self.symbol,
                status=PositionStatus.CLOSED,
                direction=None,
                amount=ZERO,
                entry_price=ZERO,
                leverage=None,
                first_seen_at=None,
                estimated_open_time=None,
                open_event_id=None,
                last_event_at=last_event_at,
                closed_at=self.closed_at,
                close_event_id=self.close_order_id,
            )
        return DerivedPosition(
            symbol=self.symbol,
            status=PositionStatus.ACTIVE,
            direction=self.direction,
            amount=abs(self.size),
            entry_price=self.entry_price,
            leverage=self.leverage,
            first_seen_at=self.opened_at,
            estimated_open_time=self.opened_at,
            open_event_id=self.open_order_id,
            last_event_at=last_event_at,
        )


class _Replay:
    """Mutable replay state scoped to one ``derive_positions`` call."""

    def __init__(self, prior: Mapping[str, PriorPosition]) -> None:
        self.lots: dict[str, _Lot] = {}
        self.result = DerivationResult(prior=prior)

    def _flag(self, order: OrderRecord, kind: AnomalyKind, detail: str = "") -> None:
        self.result.anomalies.append(
            DerivationAnomaly(
                symbol=order.symbol,
                kind=kind,
                order_id=order.order_id,
                occurred_at=order.timestamp,
                detail=detail,
            )
        )

    def _transition(
        self,
        lot: _Lot,
        order: OrderRecord,
        kind: TransitionKind,
        direction: str,
        amount: Decimal,
        price: Decimal,
    ) -> None:
        self.result.transitions.append(
            LotTransition(
                symbol=lot.symbol,
                kind=kind,
                direction=direction,
                amount=amount,
                price=price,
                order_id=order.order_id,
                occurred_at=order.timestamp,
            )
        )

    def _apply_delta(self, lot: _Lot, delta: Decimal, order: OrderRecord, price: Decimal) -> None:
        """Fold a signed quantity into the lot (grow, shrink, close or flip)."""
        if lot.size == 0:
            lot.open_fresh(delta, order, price)
            self._transition(lot, order, TransitionKind.OPENED, _direction_of(delta) or "", abs(delta), price)
            return

        if _sign(delta) == _sign(lot.size):
            held = abs(lot.size)
            added = abs(delta)
            lot.entry_price = (held * lot.entry_price + added * price) / (held + added)
            lot.size += delta
            return

        previous_direction = lot.direction or ""
        previous_size = abs(lot.size)
        remaining = lot.size + delta
        if remaining == 0:
            lot.reset(order)
            self._transition(lot, order, TransitionKind.CLOSED, previous_direction, previous_size, price)
        elif _sign(remaining) == _sign(lot.size):
            lot.size = remaining
        else:
            lot.open_fresh(remaining, order, price)
            self._transition(
                lot, order, TransitionKind.FLIPPED, lot.direction or "", abs(remaining), price
            )

    def apply(self, order: OrderRecord) -> None:
        quantity = order.quantity
        price = order.price
        if quantity is None or quantity <= 0 or price is None or price < 0:
            self._flag(order, AnomalyKind.UNRECOGNIZED_ORDER, "unusable quantity or price")
            return

        if order.is_one_way:
            if order.side == "BUY":
                delta = quantity
            elif order.side == "SELL":
                delta = -quantity
            else:
                self._flag(order, AnomalyKind.UNRECOGNIZED_ORDER, f"side={order.side}")
                return
            lot = self._lot(order)
            self._apply_delta(lot, delta, order, price)
            return

        action = order.action
        if action == OrderAction.UNKNOWN:
            self._flag(
                order,
                AnomalyKind.UNRECOGNIZED_ORDER,
                f"side={order.side} positionSide={order.position_side}",
            )
            return

        lot = self._lot(order)
        direction = action.direction
        signed = quantity if direction == "LONG" else -quantity

        if action.is_open:
            if lot.size != 0 and lot.direction != direction:
                self._flag(
                    order,
                    AnomalyKind.HEDGE_NETTED,
                    f"{action.value} {quantity} against {lot.direction} {abs(lot.size)}",
                )
            self._apply_delta(lot, signed, order, price)
            return

        # Closing orders reduce the lot of their own direction.
        if lot.size == 0:
            self._flag(order, AnomalyKind.CLOSE_WITHOUT_OPEN, f"{action.value} {quantity}")
            lot.closed_at = order.timestamp
            lot.close_order_id = order.order_id
            return
        if lot.direction != direction:
            self._flag(
                order,
                AnomalyKind.DIRECTION_MISMATCH,
                f"{action.value} against {lot.direction} lot",
            )
            return
        if quantity > abs(lot.size):
            self._flag(
                order,
                AnomalyKind.OVERSIZED_CLOSE,
                f"close {quantity} exceeds lot {abs(lot.size)}",
            )
        self._apply_delta(lot, -signed, order, price)

    def _lot(self, order: OrderRecord) -> _Lot:
        lot = self.lots.get(order.symbol)
        if lot is None:
            lot = _Lot(symbol=order.symbol)
            self.lots[order.symbol] = lot
        return lot


def sort_orders(orders: Iterable[OrderRecord]) -> list[OrderRecord]:
    """Chronological replay order with the order id as tie-breaker."""
    return sorted(orders, key=lambda o: (o.timestamp, o.order_id))


def derive_positions(
    orders: Iterable[OrderRecord],
    prior: Mapping[str, PriorPosition] | None = None,
) -> DerivationResult:
    """Replay orders into per-symbol positions, transitions and anomalies.

    Args:
        orders: The lead's whole order history, in any order; it is sorted
            before replay. A partial history yields partial lots.
        prior: Stored state per symbol. It does not seed the replay; it is
            only consulted by ``DerivationResult.changed_positions()``.

    Returns:
        One ``DerivedPosition`` per symbol touched by the orders.
    """
    replay = _Replay(prior or {})
    for order in sort_orders(orders):
        replay.apply(order)
        lot = replay.lots.get(order.symbol)
        if lot is not None:
            lot.last_event_at = order.timestamp

    for symbol, lot in replay.lots.items():
        if lot.last_event_at is not None:
            replay.result.positions[symbol] = lot.snapshot(lot.last_event_at)
    return replay.result
