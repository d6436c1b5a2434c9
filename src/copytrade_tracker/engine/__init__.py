"""Position engine - order normalization, derivation, visibility, scoring and leverage estimates."""

from copytrade_tracker.engine.derivation import (
    AnomalyKind,
    DerivationAnomaly,
    DerivationResult,
    DerivedPosition,
    LotTransition,
    PositionStatus,
    TransitionKind,
    derive_positions,
)
from copytrade_tracker.engine.leverage import LeverageEstimate, estimate_leverage
from copytrade_tracker.engine.orders import OrderAction, OrderRecord, map_order_action
from copytrade_tracker.engine.segments import (
    Segment,
    SegmentFilter,
    parse_segment_filter,
    resolve_segment,
    should_include,
)

__all__ = [
    "AnomalyKind",
    "DerivationAnomaly",
    "DerivationResult",
    "DerivedPosition",
    "LeverageEstimate",
    "LotTransition",
    "OrderAction",
    "OrderRecord",
    "PositionStatus",
    "Segment",
    "SegmentFilter",
    "TransitionKind",
    "derive_positions",
    "estimate_leverage",
    "map_order_action",
    "parse_segment_filter",
    "resolve_segment",
    "should_include",
]
