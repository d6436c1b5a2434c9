"""Tests for ingestor data models."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from copytrade_tracker.ingestor.models import (
    LeadPayload,
    RawOrder,
    RawPosition,
    filter_active_positions,
    isoformat_ms,
    parse_timestamp,
    to_decimal,
    to_int,
)


class TestParsing:
    """Tests for the lenient value parsers."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("1.50", Decimal("1.50")),
            (2, Decimal("2")),
            (" 3 ", Decimal("3")),
            ("abc", None),
            ("NaN", None),
            ("Infinity", None),
            (True, None),
            (None, None),
        ],
    )
    def test_to_decimal(self, value, expected) -> None:
        assert to_decimal(value) == expected

    def test_to_int(self) -> None:
        assert to_int("20") == 20
        assert to_int(12.9) == 12
        assert to_int("x") is None
        assert to_int(False) is None

    def test_parse_timestamp(self) -> None:
        expected = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

        assert parse_timestamp(int(expected.timestamp() * 1000)) == expected
        assert parse_timestamp("2026-03-01T12:00:00.000Z") == expected
        assert parse_timestamp("2026-03-01T12:00:00") == expected
        assert parse_timestamp("yesterday") is None

    def test_isoformat_ms(self) -> None:
        value = datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=UTC)
        assert isoformat_ms(value) == "2026-03-01T12:00:00.123Z"


class TestRawPosition:
    """Tests for RawPosition."""

    def test_from_dict(self) -> None:
        position = RawPosition.from_dict(
            {
                "symbol": "ETHUSDT",
                "positionSide": "short",
                "positionAmount": "-2.5",
                "entryPrice": "3000",
                "leverage": "20",
                "isolated": "yes",
            }
        )

        assert position.position_side == "SHORT"
        assert position.position_amount == Decimal("-2.5")
        assert position.leverage == 20
        assert position.mark_price is None
        assert position.isolated is None
        assert position.direction == "SHORT"

    def test_direction_from_amount_sign(self) -> None:
        long = RawPosition.from_dict({"symbol": "X", "positionSide": "BOTH", "positionAmount": "1"})
        flat = RawPosition.from_dict({"symbol": "X", "positionSide": "BOTH", "positionAmount": "0"})

        assert long.direction == "LONG"
        assert flat.direction is None

    def test_filter_active_positions(self) -> None:
        positions = [
            RawPosition.from_dict({"symbol": "A", "positionAmount": "1"}),
            RawPosition.from_dict({"symbol": "B", "positionAmount": "0", "unrealizedProfit": "2"}),
            RawPosition.from_dict({"symbol": "C", "positionAmount": "0", "notionalValue": "0"}),
        ]

        active, audit = filter_active_positions(positions)

        assert [p.symbol for p in active] == ["A", "B"]
        assert audit.source_raw_positions_count == 3
        assert audit.dropped_because_all_zero_count == 1
        assert audit.non_zero_by_amount_count == 1
        assert audit.non_zero_by_unrealized_count == 1


class TestRawOrder:
    """Tests for RawOrder."""

    def test_timestamp_prefers_update_time(self) -> None:
        order = RawOrder.from_dict({"symbol": "X", "orderTime": 1000, "orderUpdateTime": 2000})
        assert order.timestamp_ms == 2000

    def test_timestamp_missing(self) -> None:
        order = RawOrder.from_dict({"symbol": "X"})
        assert order.timestamp_ms is None
        assert order.timestamp is None

    def test_raw_is_preserved(self) -> None:
        data = {"symbol": "X", "side": "buy", "unknownField": 1}
        order = RawOrder.from_dict(data)

        assert order.side == "BUY"
        assert order.to_dict() == data


class TestLeadPayload:
    """Tests for LeadPayload documents."""

    def test_position_show_requires_boolean(self, make_payload) -> None:
        assert make_payload(position_show=True).position_show is True
        assert make_payload(position_show=None).position_show is None
        payload = make_payload(position_show=None, portfolio_extra={"positionShow": "true"})
        assert payload.position_show is None

    def test_document_keys(self, make_payload, make_raw_order, make_raw_position) -> None:
        payload = make_payload(orders=[make_raw_order()], positions=[make_raw_position()])
        document = payload.to_dict()

        assert document["leadId"] == "lead-1"
        assert document["fetchedAt"].endswith("Z")
        assert document["orderHistory"]["total"] == 1
        assert len(document["orderHistory"]["allOrders"]) == 1
        assert document["activePositions"][0]["symbol"] == "BTCUSDT"
        assert set(document["positionAudit"]) >= {"sourceRawPositionsCount"}

    def test_from_dict_reads_stored_document(self, make_payload, make_raw_order) -> None:
        original = make_payload(orders=[make_raw_order()], failed_fields=("performance",))
        restored = LeadPayload.from_dict(original.to_dict())

        assert restored.lead_id == original.lead_id
        assert restored.fetched_at == original.fetched_at
        assert restored.orders == original.orders
        assert restored.failed_fields == ("performance",)

    def test_from_dict_tolerates_sparse_document(self) -> None:
        payload = LeadPayload.from_dict({"leadId": "x", "activePositions": None})

        assert payload.lead_id == "x"
        assert payload.active_positions == ()
        assert payload.orders == ()
        assert payload.portfolio_detail is None
