"""Async client for the public Binance copy-trade endpoints.

Fetches every per-lead endpoint in parallel and assembles one
``LeadPayload``. Each sub-request degrades independently: a timeout, a
transport error, a non-2xx status, malformed JSON or an envelope with
``success=false`` leaves that field empty and is reported in
``LeadPayload.failed_fields``.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from copytrade_tracker.config import DEFAULT_BINANCE_BASE_URL, MAX_ORDER_PAGE_SIZE
from copytrade_tracker.errors import UpstreamError, UpstreamTimeoutError
from copytrade_tracker.ingestor.models import (
    LeadPayload,
    RawOrder,
    RawPosition,
    filter_active_positions,
    to_int,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_TIME_RANGE = "30D"
ORDER_HISTORY_WINDOW = timedelta(days=30)

LEAD_COMMON_PATH = "/friendly/future/spot-copy-trade/common/spot-futures-last-lead"
PORTFOLIO_DETAIL_PATH = "/friendly/future/copy-trade/lead-portfolio/detail"
POSITIONS_PATH = "/friendly/future/copy-trade/lead-data/positions"
CHART_DATA_PATH = "/public/future/copy-trade/lead-portfolio/chart-data"
COIN_PERFORMANCE_PATH = "/public/future/copy-trade/lead-portfolio/performance/coin"
PERFORMANCE_PATH = "/public/future/copy-trade/lead-portfolio/performance"
ORDER_HISTORY_PATH = "/friendly/future/copy-trade/lead-portfolio/order-history"


class BinanceCopyTradeClient:
    """Wrapper around ``httpx.AsyncClient`` for lead-portfolio data.

    No retries happen inside one fetch; the scheduler's next tick is the
    retry. The client owns its connection pool unless one is injected.

    Example:
        >>> async with BinanceCopyTradeClient() as client:
        ...     payload = await client.fetch_lead_payload("4438529284547143424")
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BINANCE_BASE_URL,
        time_range: str = DEFAULT_TIME_RANGE,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._time_range = time_range
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={"Content-Type": "application/json"},
                timeout=DEFAULT_TIMEOUT_SECONDS,
            )
        return self._client

    async def aclose(self) -> None:
        """Release the HTTP connection pool."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BinanceCopyTradeClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        timeout_seconds: float,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        """Issue one request and unwrap the ``{success, data}`` envelope.

        Raises:
            UpstreamTimeoutError: The request exceeded ``timeout_seconds``.
            UpstreamError: Transport failure, non-2xx status, malformed
                JSON or ``success=false``.
        """
        client = await self._get_client()
        try:
            response = await client.request(
                method,
                path,
                params=params,
                json=json_body,
                timeout=timeout_seconds,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Request timed out: {e}", endpoint=path) from e
        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                f"HTTP {e.response.status_code}",
                endpoint=path,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Transport error: {e}", endpoint=path) from e
        except ValueError as e:
            raise UpstreamError("Malformed JSON body", endpoint=path) from e

        if isinstance(body, dict):
            if body.get("success") is False:
                message = body.get("message") or "success=false"
                raise UpstreamError(f"Binance API error: {message}", endpoint=path)
            data = body.get("data")
            return data if data is not None else body
        return body

    async def _fetch_field(
        self,
        field_name: str,
        method: str,
        path: str,
        *,
        timeout_seconds: float,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> tuple[str, Any, str | None]:
        """Fetch one payload field, returning ``(name, data, error)``."""
        try:
            data = await self._request(
                method,
                path,
                timeout_seconds=timeout_seconds,
                params=params,
                json_body=json_body,
            )
        except UpstreamError as e:
            return field_name, None, str(e)
        return field_name, data, None

    async def fetch_lead_payload(
        self,
        lead_id: str,
        *,
        order_page_size: int = MAX_ORDER_PAGE_SIZE,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> LeadPayload:
        """Fetch every endpoint for one lead and assemble its payload.

        Args:
            lead_id: Binance lead portfolio id.
            order_page_size: Order history rows to request (capped at 100).
            timeout_seconds: Timeout applied to each sub-request.

        Returns:
            The payload, degraded where sub-requests failed.
        """
        now = datetime.now(UTC)
        end_time = int(now.timestamp() * 1000)
        start_time = int((now - ORDER_HISTORY_WINDOW).timestamp() * 1000)
        by_lead = {"portfolioId": lead_id}
        by_range = {"portfolioId": lead_id, "timeRange": self._time_range}

        results = await asyncio.gather(
            self._fetch_field(
                "leadCommon", "GET", LEAD_COMMON_PATH,
                params=by_lead, timeout_seconds=timeout_seconds,
            ),
            self._fetch_field(
                "portfolioDetail", "GET", PORTFOLIO_DETAIL_PATH,
                params=by_lead, timeout_seconds=timeout_seconds,
            ),
            self._fetch_field(
                "activePositions", "GET", POSITIONS_PATH,
                params=by_lead, timeout_seconds=timeout_seconds,
            ),
            self._fetch_field(
                "roiSeries", "GET", CHART_DATA_PATH,
                params={"dataType": "ROI", **by_range}, timeout_seconds=timeout_seconds,
            ),
            self._fetch_field(
                "assetPreferences", "GET", COIN_PERFORMANCE_PATH,
                params=by_range, timeout_seconds=timeout_seconds,
            ),
            self._fetch_field(
                "performance", "GET", PERFORMANCE_PATH,
                params=by_range, timeout_seconds=timeout_seconds,
            ),
            self._fetch_field(
                "orderHistory", "POST", ORDER_HISTORY_PATH,
                json_body={
                    "portfolioId": lead_id,
                    "startTime": start_time,
                    "endTime": end_time,
                    "pageSize": min(order_page_size, MAX_ORDER_PAGE_SIZE),
                },
                timeout_seconds=timeout_seconds,
            ),
        )

        data: dict[str, Any] = {}
        failures: dict[str, str] = {}
        for field_name, value, error in results:
            if error is not None:
                failures[field_name] = error
            data[field_name] = value

        raw_positions = [
            RawPosition.from_dict(p)
            for p in _as_list(data["activePositions"])
            if isinstance(p, dict)
        ]
        active_positions, audit = filter_active_positions(raw_positions)

        order_history = data["orderHistory"] if isinstance(data["orderHistory"], dict) else {}
        orders = tuple(
            RawOrder.from_dict(o)
            for o in _as_list(order_history.get("list"))
            if isinstance(o, dict)
        )

        if failures:
            logger.warning(
                "Some endpoints failed for lead %s: %s",
                lead_id,
                ", ".join(f"{name} ({reason})" for name, reason in failures.items()),
            )
        logger.debug(
            "Fetched lead %s: %d positions (%d dropped), %d orders",
            lead_id,
            len(active_positions),
            audit.dropped_positions_count,
            len(orders),
        )

        return LeadPayload(
            lead_id=lead_id,
            fetched_at=now,
            time_range=self._time_range,
            start_time=start_time,
            end_time=end_time,
            lead_common=_as_dict(data["leadCommon"]),
            portfolio_detail=_as_dict(data["portfolioDetail"]),
            active_positions=active_positions,
            position_audit=audit,
            roi_series=tuple(p for p in _as_list(data["roiSeries"]) if isinstance(p, dict)),
            asset_preferences=_as_dict(data["assetPreferences"]),
            performance=_as_dict(data["performance"]),
            order_total=to_int(order_history.get("total")) or 0,
            orders=orders,
            failed_fields=tuple(failures),
        )


def _as_dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []
