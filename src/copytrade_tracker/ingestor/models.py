"""Data models for the ingestor module.

Every upstream field is optional: Binance drops, renames and nulls fields
without notice, so absence is modelled as ``None`` rather than raised.
"""

import contextlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal | None:
    """Parse a numeric string or number into a Decimal, None when unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def to_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    with contextlib.suppress(TypeError, ValueError, OverflowError):
        return int(float(value))
    return None


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    with contextlib.suppress(ValueError, AttributeError):
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def isoformat_ms(value: datetime) -> str:
    """Format a datetime the way the exchange payload does (``...T..:..:..sssZ``)."""
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class RawPosition:
    """One entry of a lead's active positions list."""

    symbol: str
    position_side: str | None
    position_amount: Decimal | None
    entry_price: Decimal | None
    mark_price: Decimal | None
    leverage: int | None
    unrealized_profit: Decimal | None
    notional_value: Decimal | None
    isolated: bool | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawPosition":
        """Create a RawPosition from an upstream JSON object."""
        isolated = data.get("isolated")
        side = _str_or_none(data.get("positionSide"))
        return cls(
            symbol=str(data.get("symbol") or ""),
            position_side=side.upper() if side else None,
            position_amount=to_decimal(data.get("positionAmount")),
            entry_price=to_decimal(data.get("entryPrice")),
            mark_price=to_decimal(data.get("markPrice")),
            leverage=to_int(data.get("leverage")),
            unrealized_profit=to_decimal(data.get("unrealizedProfit")),
            notional_value=to_decimal(data.get("notionalValue")),
            isolated=isolated if isinstance(isolated, bool) else None,
            raw=dict(data),
        )

    @property
    def is_all_zero(self) -> bool:
        """True when amount, notional and unrealized PnL are all zero or missing."""
        return (
            (self.position_amount or ZERO) == 0
            and (self.notional_value or ZERO) == 0
            and (self.unrealized_profit or ZERO) == 0
        )

    @property
    def direction(self) -> str | None:
        """LONG/SHORT from positionSide, or from the amount sign in one-way mode."""
        if self.position_side in ("LONG", "SHORT"):
            return self.position_side
        amount = self.position_amount or ZERO
        if amount > 0:
            return "LONG"
        if amount < 0:
            return "SHORT"
        return None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.raw)


@dataclass(frozen=True)
class RawOrder:
    """One entry of a lead's order history."""

    symbol: str
    side: str | None
    position_side: str | None
    executed_qty: Decimal | None
    avg_price: Decimal | None
    order_update_time: int | None
    order_time: int | None = None
    total_pnl: Decimal | None = None
    base_asset: str | None = None
    order_type: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawOrder":
        """Create a RawOrder from an upstream JSON object."""
        side = _str_or_none(data.get("side"))
        position_side = _str_or_none(data.get("positionSide"))
        return cls(
            symbol=str(data.get("symbol") or ""),
            side=side.upper() if side else None,
            position_side=position_side.upper() if position_side else None,
            executed_qty=to_decimal(data.get("executedQty")),
            avg_price=to_decimal(data.get("avgPrice")),
            order_update_time=to_int(data.get("orderUpdateTime")),
            order_time=to_int(data.get("orderTime")),
            total_pnl=to_decimal(data.get("totalPnl")),
            base_asset=_str_or_none(data.get("baseAsset")),
            order_type=_str_or_none(data.get("type")),
            raw=dict(data),
        )

    @property
    def timestamp_ms(self) -> int | None:
        """Fill time in epoch milliseconds (update time, else creation time)."""
        if self.order_update_time:
            return self.order_update_time
        return self.order_time or None

    @property
    def timestamp(self) -> datetime | None:
        ms = self.timestamp_ms
        return datetime.fromtimestamp(ms / 1000, tz=UTC) if ms is not None else None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.raw)


@dataclass(frozen=True)
class PositionAudit:
    """Counters describing how the active positions list was filtered."""

    source_raw_positions_count: int = 0
    filtered_active_positions_count: int = 0
    dropped_positions_count: int = 0
    non_zero_by_amount_count: int = 0
    non_zero_by_notional_count: int = 0
    non_zero_by_unrealized_count: int = 0
    dropped_because_all_zero_count: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PositionAudit":
        data = data or {}
        return cls(
            source_raw_positions_count=to_int(data.get("sourceRawPositionsCount")) or 0,
            filtered_active_positions_count=to_int(data.get("filteredActivePositionsCount")) or 0,
            dropped_positions_count=to_int(data.get("droppedPositionsCount")) or 0,
            non_zero_by_amount_count=to_int(data.get("nonZeroByAmountCount")) or 0,
            non_zero_by_notional_count=to_int(data.get("nonZeroByNotionalCount")) or 0,
            non_zero_by_unrealized_count=to_int(data.get("nonZeroByUnrealizedCount")) or 0,
            dropped_because_all_zero_count=to_int(data.get("droppedBecauseAllZeroCount")) or 0,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "sourceRawPositionsCount": self.source_raw_positions_count,
            "filteredActivePositionsCount": self.filtered_active_positions_count,
            "droppedPositionsCount": self.dropped_positions_count,
            "nonZeroByAmountCount": self.non_zero_by_amount_count,
            "nonZeroByNotionalCount": self.non_zero_by_notional_count,
            "nonZeroByUnrealizedCount": self.non_zero_by_unrealized_count,
            "droppedBecauseAllZeroCount": self.dropped_because_all_zero_count,
        }


def filter_active_positions(
    raw_positions: list[RawPosition],
) -> tuple[tuple[RawPosition, ...], PositionAudit]:
    """Drop positions whose amount, notional and unrealized PnL are all zero."""
    by_amount = by_notional = by_unrealized = 0
    active: list[RawPosition] = []
    for position in raw_positions:
        if (position.position_amount or ZERO) != 0:
            by_amount += 1
        if (position.notional_value or ZERO) != 0:
            by_notional += 1
        if (position.unrealized_profit or ZERO) != 0:
            by_unrealized += 1
        if not position.is_all_zero:
            active.append(position)

    dropped = len(raw_positions) - len(active)
    audit = PositionAudit(
        source_raw_positions_count=len(raw_positions),
        filtered_active_positions_count=len(active),
        dropped_positions_count=dropped,
        non_zero_by_amount_count=by_amount,
        non_zero_by_notional_count=by_notional,
        non_zero_by_unrealized_count=by_unrealized,
        dropped_because_all_zero_count=dropped,
    )
    return tuple(active), audit


def _dict_or_none(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _list_of_dicts(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


@dataclass(frozen=True)
class LeadPayload:
    """Aggregated snapshot of one lead, as fetched in one pass.

    ``to_dict()`` produces the JSON document persisted in ``raw_ingests``
    and ``from_dict()`` reads it back (also tolerating older documents
    with missing keys).
    """

    lead_id: str
    fetched_at: datetime
    time_range: str | None = None
    start_time: int | None = None
    end_time: int | None = None
    lead_common: dict[str, Any] | None = None
    portfolio_detail: dict[str, Any] | None = None
    active_positions: tuple[RawPosition, ...] = ()
    position_audit: PositionAudit = field(default_factory=PositionAudit)
    roi_series: tuple[dict[str, Any], ...] = ()
    asset_preferences: dict[str, Any] | None = None
    performance: dict[str, Any] | None = None
    order_total: int = 0
    orders: tuple[RawOrder, ...] = ()
    failed_fields: tuple[str, ...] = ()

    @property
    def position_show(self) -> bool | None:
        """Visibility flag, only when the exchange reported a real boolean."""
        value = (self.portfolio_detail or {}).get("positionShow")
        return value if isinstance(value, bool) else None

    @property
    def nickname(self) -> str | None:
        value = (self.portfolio_detail or {}).get("nickname")
        if isinstance(value, str) and value.strip():
            return value
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LeadPayload":
        """Create a LeadPayload from a stored JSON document."""
        order_history = _dict_or_none(data.get("orderHistory")) or {}
        fetched_at = parse_timestamp(data.get("fetchedAt")) or datetime.now(UTC)
        return cls(
            lead_id=str(data.get("leadId") or ""),
            fetched_at=fetched_at,
            time_range=_str_or_none(data.get("timeRange")),
            start_time=to_int(data.get("startTime")),
            end_time=to_int(data.get("endTime")),
            lead_common=_dict_or_none(data.get("leadCommon")),
            portfolio_detail=_dict_or_none(data.get("portfolioDetail")),
            active_positions=tuple(
                RawPosition.from_dict(p) for p in _list_of_dicts(data.get("activePositions"))
            ),
            position_audit=PositionAudit.from_dict(_dict_or_none(data.get("positionAudit"))),
            roi_series=tuple(_list_of_dicts(data.get("roiSeries"))),
            asset_preferences=_dict_or_none(data.get("assetPreferences")),
            performance=_dict_or_none(data.get("performance")),
            order_total=to_int(order_history.get("total")) or 0,
            orders=tuple(
                RawOrder.from_dict(o) for o in _list_of_dicts(order_history.get("allOrders"))
            ),
            failed_fields=tuple(str(f) for f in data.get("failedFields") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "leadId": self.lead_id,
            "fetchedAt": isoformat_ms(self.fetched_at),
            "timeRange": self.time_range,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "leadCommon": self.lead_common,
            "portfolioDetail": self.portfolio_detail,
            "activePositions": [p.to_dict() for p in self.active_positions],
            "positionAudit": self.position_audit.to_dict(),
            "roiSeries": list(self.roi_series),
            "assetPreferences": self.asset_preferences,
            "performance": self.performance,
            "orderHistory": {
                "total": self.order_total,
                "allOrders": [o.to_dict() for o in self.orders],
            },
            "failedFields": list(self.failed_fields),
        }
