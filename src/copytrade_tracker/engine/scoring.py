"""Trader quality metrics, 30-day score and consensus weight.

Scoring Formula:
    quality = 50
        + round(win_rate * 20)                       # when win rate is known
        + round(min(sharpe, 3) * 5)                  # when sharpe > 0
        + clamp(round(roi_change / 2), -15, 15)      # first vs last ROI point
        + leverage adjustment                        # only with visible positions
        - min(max_consecutive_losses, 3) * 5
    clamped to 0..100.

    weight = (quality / 100 * confidence_factor)
        * (0.7 + 0.3 * clamp(win_rate or 0, 0, 1))
        * (1.0 if position_show is True else 0.6)
"""

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from copytrade_tracker.ingestor.models import LeadPayload, RawOrder, to_decimal

BASE_QUALITY_SCORE = 50
WIN_RATE_POINTS = 20
SHARPE_CAP = 3.0
SHARPE_POINTS = 5
ROI_CONTRIBUTION_CAP = 15
CONSECUTIVE_LOSS_CAP = 3
CONSECUTIVE_LOSS_POINTS = 5

HIGH_CONFIDENCE_CLOSES = 20
MEDIUM_CONFIDENCE_CLOSES = 10
CONFIDENCE_WINDOW = timedelta(days=7)

CONFIDENCE_FACTORS = {
    "high": 1.0,
    "medium": 0.7,
    "low": 0.4,
}
HIDDEN_AVAILABILITY_PENALTY = 0.6


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def normalize_score(pnl_sum: float | Decimal) -> float:
    """Map a 30-day realized PnL sum to 0..100 on a log scale.

    $100 is about 50 points and $10,000 reaches the cap.
    """
    pnl = float(pnl_sum)
    if pnl <= 0:
        return 0.0
    return min(100.0, max(0.0, math.log10(pnl + 1) * 25))


def is_closing_order(order: RawOrder) -> bool:
    return (order.side == "SELL" and order.position_side == "LONG") or (
        order.side == "BUY" and order.position_side == "SHORT"
    )


@dataclass
class TraderMetrics:
    """Quality metrics derived from one payload."""

    quality_score: int
    confidence: str
    win_rate: float | None
    sample_size: int
    wins: int = 0
    losses: int = 0
    max_consecutive_losses: int = 0
    max_consecutive_wins: int = 0
    avg_leverage: float | None = None
    total_realized_pnl: float = 0.0
    score_breakdown: dict[str, int] = field(default_factory=dict)


def _order_time_ms(order: RawOrder) -> int:
    return order.order_time or order.order_update_time or 0


def compute_trader_metrics(payload: LeadPayload, now: datetime | None = None) -> TraderMetrics:
    """Compute quality score, win rate and confidence from a payload."""
    now = now or datetime.now(UTC)
    window_start_ms = int((now - CONFIDENCE_WINDOW).timestamp() * 1000)

    closes = [o for o in payload.orders if is_closing_order(o)]
    wins = [o for o in closes if o.total_pnl is not None and o.total_pnl > 0]
    losses = [o for o in closes if o.total_pnl is not None and o.total_pnl < 0]
    decided = len(wins) + len(losses)
    win_rate = len(wins) / decided if decided > 0 else None

    consecutive_losses = max_losses = 0
    consecutive_wins = max_wins = 0
    for order in sorted(closes, key=_order_time_ms):
        pnl = order.total_pnl
        if pnl is None or pnl == 0:
            continue
        if pnl < 0:
            consecutive_losses += 1
            consecutive_wins = 0
            max_losses = max(max_losses, consecutive_losses)
        else:
            consecutive_wins += 1
            consecutive_losses = 0
            max_wins = max(max_wins, consecutive_wins)

    total_pnl = float(sum((o.total_pnl or Decimal("0") for o in closes), Decimal("0")))

    positions = payload.active_positions
    avg_leverage: float | None = None
    if positions and positions[0].symbol:
        avg_leverage = sum(p.leverage or 0 for p in positions) / len(positions)

    breakdown: dict[str, int] = {"base": BASE_QUALITY_SCORE}
    score = BASE_QUALITY_SCORE

    if win_rate is not None:
        breakdown["winRate"] = _round_half_up(win_rate * WIN_RATE_POINTS)
        score += breakdown["winRate"]

    sharpe = to_decimal((payload.portfolio_detail or {}).get("sharpRatio"))
    if sharpe is not None and sharpe > 0:
        breakdown["sharpeRatio"] = _round_half_up(min(float(sharpe), SHARPE_CAP) * SHARPE_POINTS)
        score += breakdown["sharpeRatio"]

    if len(payload.roi_series) >= 2:
        first = float(to_decimal(payload.roi_series[0].get("value")) or 0)
        last = float(to_decimal(payload.roi_series[-1].get("value")) or 0)
        contribution = _round_half_up((last - first) / 2)
        breakdown["roi30d"] = max(-ROI_CONTRIBUTION_CAP, min(ROI_CONTRIBUTION_CAP, contribution))
        score += breakdown["roi30d"]

    if avg_leverage is not None:
        if avg_leverage > 50:
            breakdown["highLeverage"] = -10
        elif avg_leverage > 30:
            breakdown["mediumLeverage"] = -5
        elif avg_leverage < 20:
            breakdown["lowLeverage"] = 5
        score += breakdown.get("highLeverage", 0)
        score += breakdown.get("mediumLeverage", 0)
        score += breakdown.get("lowLeverage", 0)

    if max_losses > 0:
        breakdown["consecutiveLosses"] = -min(max_losses, CONSECUTIVE_LOSS_CAP) * CONSECUTIVE_LOSS_POINTS
        score += breakdown["consecutiveLosses"]

    score = min(max(score, 0), 100)

    sample_7d = sum(1 for o in closes if _order_time_ms(o) >= window_start_ms)
    if sample_7d >= HIGH_CONFIDENCE_CLOSES:
        confidence = "high"
    elif sample_7d >= MEDIUM_CONFIDENCE_CLOSES:
        confidence = "medium"
    else:
        confidence = "low"

    return TraderMetrics(
        quality_score=score,
        confidence=confidence,
        win_rate=win_rate,
        sample_size=sample_7d,
        wins=len(wins),
        losses=len(losses),
        max_consecutive_losses=max_losses,
        max_consecutive_wins=max_wins,
        avg_leverage=avg_leverage,
        total_realized_pnl=round(total_pnl, 2),
        score_breakdown=breakdown,
    )


def compute_trader_weight(
    quality_score: int | float,
    confidence: str,
    win_rate: float | None,
    position_show: bool | None,
) -> float:
    """Consensus weight in 0..1; unknown visibility is treated as hidden."""
    confidence_factor = CONFIDENCE_FACTORS.get(confidence, CONFIDENCE_FACTORS["low"])
    base_weight = (quality_score / 100) * confidence_factor
    win_adj = min(max(win_rate or 0.0, 0.0), 1.0)
    availability = 1.0 if position_show is True else HIDDEN_AVAILABILITY_PENALTY
    return round(base_weight * (0.7 + 0.3 * win_adj) * availability, 4)
