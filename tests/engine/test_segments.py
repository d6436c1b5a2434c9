"""Tests for lead segments and segment filtering."""

import pytest

from copytrade_tracker.engine.segments import (
    Segment,
    SegmentFilter,
    parse_segment_filter,
    resolve_segment,
    should_include,
)


class TestResolveSegment:
    """Tests for resolve_segment."""

    def test_booleans(self) -> None:
        assert resolve_segment(True) == Segment.VISIBLE
        assert resolve_segment(False) == Segment.HIDDEN

    @pytest.mark.parametrize("value", [None, 1, 0, "true", "false", ""])
    def test_anything_else_is_unknown(self, value) -> None:
        assert resolve_segment(value) == Segment.UNKNOWN


class TestShouldInclude:
    """Tests for should_include across every combination."""

    @pytest.mark.parametrize(
        ("segment", "segment_filter", "expected"),
        [
            (Segment.VISIBLE, SegmentFilter.BOTH, True),
            (Segment.HIDDEN, SegmentFilter.BOTH, True),
            (Segment.UNKNOWN, SegmentFilter.BOTH, False),
            (Segment.VISIBLE, SegmentFilter.VISIBLE, True),
            (Segment.HIDDEN, SegmentFilter.VISIBLE, False),
            (Segment.UNKNOWN, SegmentFilter.VISIBLE, False),
            (Segment.VISIBLE, SegmentFilter.HIDDEN, False),
            (Segment.HIDDEN, SegmentFilter.HIDDEN, True),
            (Segment.UNKNOWN, SegmentFilter.HIDDEN, False),
        ],
    )
    def test_matrix(self, segment, segment_filter, expected) -> None:
        assert should_include(segment, segment_filter) is expected


class TestParseSegmentFilter:
    """Tests for parse_segment_filter."""

    def test_case_insensitive(self) -> None:
        assert parse_segment_filter("visible") == SegmentFilter.VISIBLE
        assert parse_segment_filter(" Hidden ") == SegmentFilter.HIDDEN

    @pytest.mark.parametrize("value", [None, "", "unknown", "all"])
    def test_defaults_to_both(self, value) -> None:
        assert parse_segment_filter(value) == SegmentFilter.BOTH
