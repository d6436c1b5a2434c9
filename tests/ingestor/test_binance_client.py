"""Tests for the Binance copy-trade client."""

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from copytrade_tracker.errors import UpstreamError, UpstreamTimeoutError
from copytrade_tracker.ingestor.binance_client import (
    CHART_DATA_PATH,
    COIN_PERFORMANCE_PATH,
    LEAD_COMMON_PATH,
    ORDER_HISTORY_PATH,
    PERFORMANCE_PATH,
    PORTFOLIO_DETAIL_PATH,
    POSITIONS_PATH,
    BinanceCopyTradeClient,
)

BASE_URL = "https://binance.test/bapi/futures"
LEAD_ID = "4438529284547143424"


def ok(data: Any) -> httpx.Response:
    return httpx.Response(200, json={"code": "000000", "success": True, "data": data})


def default_routes() -> dict[str, Callable[[httpx.Request], httpx.Response]]:
    return {
        LEAD_COMMON_PATH: lambda r: ok({"futuresPublicLPId": LEAD_ID}),
        PORTFOLIO_DETAIL_PATH: lambda r: ok(
            {"nickname": "Alpha", "positionShow": True, "sharpRatio": "1.1"}
        ),
        POSITIONS_PATH: lambda r: ok(
            [
                {
                    "symbol": "BTCUSDT",
                    "positionSide": "LONG",
                    "positionAmount": "0.5",
                    "entryPrice": "60000",
                    "markPrice": "61000",
                    "leverage": 10,
                    "unrealizedProfit": "500",
                    "notionalValue": "30500",
                },
                {
                    "symbol": "ETHUSDT",
                    "positionSide": "SHORT",
                    "positionAmount": "0",
                    "entryPrice": "0",
                    "markPrice": "3000",
                    "leverage": 5,
                    "unrealizedProfit": "0",
                    "notionalValue": "0",
                },
            ]
        ),
        CHART_DATA_PATH: lambda r: ok([{"value": "1.5", "dateTime": 1}, {"value": "3.0", "dateTime": 2}]),
        COIN_PERFORMANCE_PATH: lambda r: ok({"data": [{"asset": "BTC", "volume": "0.8"}]}),
        PERFORMANCE_PATH: lambda r: ok({"roi": "12.3", "pnl": "456.7"}),
        ORDER_HISTORY_PATH: lambda r: ok(
            {
                "total": 2,
                "list": [
                    {
                        "symbol": "BTCUSDT",
                        "side": "BUY",
                        "positionSide": "LONG",
                        "executedQty": "0.5",
                        "avgPrice": "60000",
                        "orderTime": 1772366400000,
                        "orderUpdateTime": 1772366400500,
                    },
                    "not-an-order",
                ],
            }
        ),
    }


def make_client(
    routes: dict[str, Callable[[httpx.Request], httpx.Response]],
    seen: list[httpx.Request] | None = None,
) -> BinanceCopyTradeClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        path = request.url.path.removeprefix("/bapi/futures")
        return routes[path](request)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return BinanceCopyTradeClient(base_url=BASE_URL, http_client=http_client)


class TestFetchLeadPayload:
    """Tests for assembling a LeadPayload."""

    @pytest.mark.asyncio
    async def test_full_payload(self) -> None:
        seen: list[httpx.Request] = []
        client = make_client(default_routes(), seen)

        payload = await client.fetch_lead_payload(LEAD_ID, order_page_size=500, timeout_seconds=5)

        assert payload.lead_id == LEAD_ID
        assert payload.failed_fields == ()
        assert payload.nickname == "Alpha"
        assert payload.position_show is True
        assert payload.time_range == "30D"
        assert [p.symbol for p in payload.active_positions] == ["BTCUSDT"]
        assert payload.position_audit.source_raw_positions_count == 2
        assert payload.position_audit.dropped_because_all_zero_count == 1
        assert payload.order_total == 2
        assert len(payload.orders) == 1
        assert payload.orders[0].order_update_time == 1772366400500
        assert len(payload.roi_series) == 2
        assert payload.performance == {"roi": "12.3", "pnl": "456.7"}
        assert len(seen) == 7

        [order_request] = [r for r in seen if r.method == "POST"]
        body = json.loads(order_request.content)
        assert body["portfolioId"] == LEAD_ID
        assert body["pageSize"] == 100
        assert abs(body["endTime"] - body["startTime"] - 30 * 24 * 3600 * 1000) <= 1

    @pytest.mark.asyncio
    async def test_query_parameters(self) -> None:
        seen: list[httpx.Request] = []
        client = make_client(default_routes(), seen)

        await client.fetch_lead_payload(LEAD_ID, order_page_size=20, timeout_seconds=5)

        [chart] = [r for r in seen if r.url.path.endswith(CHART_DATA_PATH)]
        assert chart.url.params["portfolioId"] == LEAD_ID
        assert chart.url.params["dataType"] == "ROI"
        assert chart.url.params["timeRange"] == "30D"

    @pytest.mark.asyncio
    async def test_http_error_degrades_single_field(self) -> None:
        routes = default_routes()
        routes[POSITIONS_PATH] = lambda r: httpx.Response(503)
        client = make_client(routes)

        payload = await client.fetch_lead_payload(LEAD_ID, order_page_size=100, timeout_seconds=5)

        assert payload.failed_fields == ("activePositions",)
        assert payload.active_positions == ()
        assert payload.nickname == "Alpha"
        assert len(payload.orders) == 1

    @pytest.mark.asyncio
    async def test_success_false_envelope_is_failure(self) -> None:
        routes = default_routes()
        routes[PORTFOLIO_DETAIL_PATH] = lambda r: httpx.Response(
            200, json={"success": False, "message": "portfolio not found", "data": None}
        )
        client = make_client(routes)

        payload = await client.fetch_lead_payload(LEAD_ID, order_page_size=100, timeout_seconds=5)

        assert "portfolioDetail" in payload.failed_fields
        assert payload.portfolio_detail is None
        assert payload.position_show is None

    @pytest.mark.asyncio
    async def test_timeout_and_malformed_json(self) -> None:
        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        routes = default_routes()
        routes[ORDER_HISTORY_PATH] = timeout
        routes[PERFORMANCE_PATH] = lambda r: httpx.Response(200, content=b"<html>")
        client = make_client(routes)

        payload = await client.fetch_lead_payload(LEAD_ID, order_page_size=100, timeout_seconds=5)

        assert set(payload.failed_fields) == {"orderHistory", "performance"}
        assert payload.orders == ()
        assert payload.order_total == 0
        assert payload.performance is None

    @pytest.mark.asyncio
    async def test_everything_failing_still_returns_payload(self) -> None:
        routes = {path: (lambda r: httpx.Response(500)) for path in default_routes()}
        client = make_client(routes)

        payload = await client.fetch_lead_payload(LEAD_ID, order_page_size=100, timeout_seconds=5)

        assert len(payload.failed_fields) == 7
        assert payload.to_dict()["leadId"] == LEAD_ID


class TestRequest:
    """Tests for the envelope unwrapping and error mapping."""

    @pytest.mark.asyncio
    async def test_timeout_raises_timeout_error(self) -> None:
        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        client = make_client({PERFORMANCE_PATH: timeout})

        with pytest.raises(UpstreamTimeoutError):
            await client._request("GET", PERFORMANCE_PATH, timeout_seconds=1)

    @pytest.mark.asyncio
    async def test_status_code_is_kept(self) -> None:
        client = make_client({PERFORMANCE_PATH: lambda r: httpx.Response(429)})

        with pytest.raises(UpstreamError) as exc_info:
            await client._request("GET", PERFORMANCE_PATH, timeout_seconds=1)

        assert exc_info.value.status_code == 429
        assert exc_info.value.endpoint == PERFORMANCE_PATH

    @pytest.mark.asyncio
    async def test_body_without_data_is_returned_whole(self) -> None:
        client = make_client({PERFORMANCE_PATH: lambda r: httpx.Response(200, json={"roi": "1"})})

        assert await client._request("GET", PERFORMANCE_PATH, timeout_seconds=1) == {"roi": "1"}

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self) -> None:
        client = make_client(default_routes())
        http_client = client._client
        assert http_client is not None

        await client.aclose()

        assert not http_client.is_closed
        await http_client.aclose()
