"""Lead visibility segments and segment filtering."""

from enum import Enum


class Segment(str, Enum):
    """Visibility of a lead's live positions."""

    VISIBLE = "VISIBLE"
    HIDDEN = "HIDDEN"
    UNKNOWN = "UNKNOWN"


class SegmentFilter(str, Enum):
    """Segment selection requested by a read query."""

    BOTH = "BOTH"
    VISIBLE = "VISIBLE"
    HIDDEN = "HIDDEN"


def resolve_segment(position_show: bool | None) -> Segment:
    """Map the exchange's ``positionShow`` flag to a segment.

    Only real booleans count; anything else means visibility is unknown.
    """
    if position_show is True:
        return Segment.VISIBLE
    if position_show is False:
        return Segment.HIDDEN
    return Segment.UNKNOWN


def should_include(segment: Segment, segment_filter: SegmentFilter) -> bool:
    """Whether a lead in ``segment`` passes ``segment_filter``.

    BOTH covers VISIBLE and HIDDEN only; UNKNOWN leads are never part of
    aggregate views.
    """
    if segment_filter == SegmentFilter.BOTH:
        return segment != Segment.UNKNOWN
    return segment.value == segment_filter.value


def parse_segment_filter(value: str | None) -> SegmentFilter:
    """Case-insensitive parse; missing or unrecognized values mean BOTH."""
    if not value:
        return SegmentFilter.BOTH
    try:
        return SegmentFilter(value.strip().upper())
    except ValueError:
        return SegmentFilter.BOTH
