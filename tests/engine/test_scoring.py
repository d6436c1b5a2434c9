"""Tests for trader metrics, score normalization and weight."""

from datetime import timedelta

import pytest

from copytrade_tracker.engine.scoring import (
    compute_trader_metrics,
    compute_trader_weight,
    normalize_score,
)


# ============================================================================
# normalize_score
# ============================================================================


class TestNormalizeScore:
    """Tests for the log-scale 30-day score."""

    @pytest.mark.parametrize("pnl", [0, -50, -0.01])
    def test_non_positive_is_zero(self, pnl) -> None:
        assert normalize_score(pnl) == 0.0

    def test_hundred_dollars_is_about_fifty(self) -> None:
        assert normalize_score(100) == pytest.approx(50.1, abs=0.1)

    def test_capped_at_hundred(self) -> None:
        assert normalize_score(9999) == pytest.approx(100.0)
        assert normalize_score(1_000_000) == 100.0

    def test_monotonic(self) -> None:
        assert normalize_score(10) < normalize_score(100) < normalize_score(1000)


# ============================================================================
# compute_trader_metrics
# ============================================================================


class TestComputeTraderMetrics:
    """Tests for quality score, win rate and confidence."""

    def test_empty_payload_is_base_score(self, make_payload, now) -> None:
        metrics = compute_trader_metrics(make_payload(positions=[]), now)

        assert metrics.quality_score == 50
        assert metrics.win_rate is None
        assert metrics.confidence == "low"
        assert metrics.sample_size == 0

    def test_score_breakdown(self, make_payload, make_raw_order, make_raw_position, now) -> None:
        orders = [
            make_raw_order(side="SELL", position_side="LONG", total_pnl="10", at=now - timedelta(hours=3)),
            make_raw_order(side="SELL", position_side="LONG", total_pnl="-2", at=now - timedelta(hours=2)),
            make_raw_order(side="BUY", position_side="SHORT", total_pnl="-3", at=now - timedelta(hours=1)),
            # Opening orders never count as closes.
            make_raw_order(side="BUY", position_side="LONG", total_pnl="99", at=now),
        ]
        payload = make_payload(
            orders=orders,
            positions=[make_raw_position(leverage=10)],
            roi_series=[{"value": "10"}, {"value": "25"}, {"value": "40"}],
            portfolio_extra={"sharpRatio": "1.2"},
        )

        metrics = compute_trader_metrics(payload, now)

        assert metrics.wins == 1
        assert metrics.losses == 2
        assert metrics.win_rate == pytest.approx(1 / 3)
        assert metrics.max_consecutive_losses == 2
        assert metrics.score_breakdown == {
            "base": 50,
            "winRate": 7,
            "sharpeRatio": 6,
            "roi30d": 15,
            "lowLeverage": 5,
            "consecutiveLosses": -10,
        }
        assert metrics.quality_score == 73
        assert metrics.total_realized_pnl == 5.0

    def test_roi_contribution_is_clamped(self, make_payload, now) -> None:
        payload = make_payload(roi_series=[{"value": "100"}, {"value": "-100"}])
        metrics = compute_trader_metrics(payload, now)

        assert metrics.score_breakdown["roi30d"] == -15

    def test_high_leverage_penalty(self, make_payload, make_raw_position, now) -> None:
        payload = make_payload(positions=[make_raw_position(leverage=75)])
        metrics = compute_trader_metrics(payload, now)

        assert metrics.score_breakdown["highLeverage"] == -10
        assert metrics.quality_score == 40

    def test_score_is_clamped(self, make_payload, make_raw_order, now) -> None:
        losses = [
            make_raw_order(side="SELL", position_side="LONG", total_pnl="-1", at=now - timedelta(minutes=i))
            for i in range(1, 6)
        ]
        payload = make_payload(
            orders=losses,
            roi_series=[{"value": "500"}, {"value": "0"}],
            positions=[],
        )
        metrics = compute_trader_metrics(payload, now)

        # 50 + 0 (win rate) - 15 (roi) - 15 (losses)
        assert metrics.quality_score == 20
        assert 0 <= metrics.quality_score <= 100

    @pytest.mark.parametrize(("recent", "expected"), [(20, "high"), (10, "medium"), (9, "low")])
    def test_confidence_counts_recent_closes(
        self, make_payload, make_raw_order, now, recent, expected
    ) -> None:
        orders = [
            make_raw_order(side="SELL", position_side="LONG", total_pnl="1", at=now - timedelta(hours=i + 1))
            for i in range(recent)
        ]
        orders += [
            make_raw_order(side="SELL", position_side="LONG", total_pnl="1", at=now - timedelta(days=8, hours=i))
            for i in range(15)
        ]
        metrics = compute_trader_metrics(make_payload(orders=orders), now)

        assert metrics.confidence == expected
        assert metrics.sample_size == recent


# ============================================================================
# compute_trader_weight
# ============================================================================


class TestComputeTraderWeight:
    """Tests for the consensus weight."""

    def test_visible_trader(self) -> None:
        assert compute_trader_weight(73, "low", 1 / 3, True) == pytest.approx(0.2336)

    def test_hidden_penalty(self) -> None:
        visible = compute_trader_weight(80, "high", 0.5, True)
        hidden = compute_trader_weight(80, "high", 0.5, False)
        unknown = compute_trader_weight(80, "high", 0.5, None)

        assert hidden == pytest.approx(visible * 0.6, abs=1e-4)
        assert unknown == hidden

    def test_unknown_win_rate_and_confidence(self) -> None:
        assert compute_trader_weight(100, "bogus", None, True) == pytest.approx(0.28)

    def test_bounded(self) -> None:
        assert compute_trader_weight(100, "high", 1.0, True) == 1.0
        assert compute_trader_weight(0, "high", 1.0, True) == 0.0
