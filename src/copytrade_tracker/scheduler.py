"""Periodic ingestion scheduler.

This module provides the IngestScheduler that polls the configured lead
set on a fixed interval, fetching payloads with bounded concurrency and
handing them to the LeadProcessor.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from redis.asyncio import Redis

from copytrade_tracker.errors import SchedulerError
from copytrade_tracker.ingestor.binance_client import BinanceCopyTradeClient
from copytrade_tracker.ingestor.payload_cache import LeadPayloadCache
from copytrade_tracker.processor import LeadIngestResult, LeadProcessor
from copytrade_tracker.storage.database import DatabaseManager

if TYPE_CHECKING:
    from copytrade_tracker.config import Settings
    from copytrade_tracker.ingestor.models import LeadPayload

logger = logging.getLogger(__name__)


class LeadFetcher(Protocol):
    async def fetch_lead_payload(
        self,
        lead_id: str,
        *,
        order_page_size: int,
        timeout_seconds: float,
    ) -> LeadPayload: ...


class PayloadProcessor(Protocol):
    async def process(self, payload: LeadPayload) -> LeadIngestResult: ...


class SchedulerState(str, Enum):
    """Scheduler lifecycle states."""

    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class TickStats:
    """Outcome of one pass over the lead set."""

    started_at: datetime
    finished_at: datetime | None = None
    duration_seconds: float = 0.0
    leads_total: int = 0
    leads_succeeded: int = 0
    leads_failed: int = 0
    events_inserted: int = 0
    transitions_recorded: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "durationSeconds": round(self.duration_seconds, 3),
            "leadsTotal": self.leads_total,
            "leadsSucceeded": self.leads_succeeded,
            "leadsFailed": self.leads_failed,
            "eventsInserted": self.events_inserted,
            "transitionsRecorded": self.transitions_recorded,
            "errors": dict(self.errors),
        }


@dataclass
class SchedulerStats:
    """Statistics for the scheduler since construction."""

    started_at: datetime | None = None
    ticks_run: int = 0
    ticks_skipped: int = 0
    leads_processed: int = 0
    leads_failed: int = 0
    last_tick_at: datetime | None = None
    last_tick_duration_seconds: float = 0.0
    last_error: str | None = None


class IngestScheduler:
    """Drives periodic ingestion across the configured leads.

    Ticks are serialized: a tick that comes due while the previous one is
    still running is skipped and counted, never queued. One lead's failure
    is logged and counted without affecting the other leads of the tick.

    Example:
        ```python
        settings = get_settings()
        async with IngestScheduler.from_settings(settings) as scheduler:
            await scheduler.start()
            ...
            await scheduler.stop()
        ```
    """

    def __init__(
        self,
        client: LeadFetcher,
        processor: PayloadProcessor,
        *,
        lead_ids: list[str],
        enabled: bool = True,
        interval_seconds: float = 60.0,
        concurrency: int = 5,
        order_page_size: int = 100,
        timeout_seconds: float = 15.0,
        db_manager: DatabaseManager | None = None,
        cache: LeadPayloadCache | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            client: Upstream client used to fetch lead payloads.
            processor: Persists each fetched payload.
            lead_ids: Leads polled on every tick.
            enabled: If False, start() is a no-op.
            interval_seconds: Delay between tick starts.
            concurrency: Maximum leads fetched and processed at once.
            order_page_size: Order history rows requested per lead.
            timeout_seconds: Timeout per upstream sub-request.
            db_manager: Released by aclose() when given.
            cache: Released by aclose() when given.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._client = client
        self._processor = processor
        self._lead_ids = list(dict.fromkeys(lead_ids))
        self._enabled = enabled
        self._interval = interval_seconds
        self._concurrency = concurrency
        self._order_page_size = order_page_size
        self._timeout_seconds = timeout_seconds
        self._db_manager = db_manager
        self._cache = cache

        self._state = SchedulerState.STOPPED
        self._stats = SchedulerStats()
        self._stop_event = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._tick_task: asyncio.Task[TickStats | None] | None = None
        self._tick_running = False
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings) -> IngestScheduler:
        """Build a scheduler that owns its HTTP client, DB engine and cache."""
        scraper = settings.scraper
        db_manager = DatabaseManager(
            settings.database.url,
            pool_size=settings.database.pool_size,
        )
        cache = None
        if settings.redis.enabled:
            cache = LeadPayloadCache(
                Redis.from_url(settings.redis.url),
                cache_ttl_seconds=settings.redis.payload_ttl_seconds,
            )
        client = BinanceCopyTradeClient(
            base_url=scraper.base_url,
            time_range=scraper.time_range,
        )
        return cls(
            client,
            LeadProcessor(db_manager, cache=cache),
            lead_ids=scraper.lead_ids,
            enabled=scraper.enabled,
            interval_seconds=scraper.interval_seconds,
            concurrency=scraper.concurrency,
            order_page_size=scraper.order_page_size,
            timeout_seconds=scraper.timeout_seconds,
            db_manager=db_manager,
            cache=cache,
        )

    @property
    def state(self) -> SchedulerState:
        """Current scheduler state."""
        return self._state

    @property
    def stats(self) -> SchedulerStats:
        """Current scheduler statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    @property
    def tick_in_progress(self) -> bool:
        return self._tick_running

    async def start(self) -> None:
        """Start ticking: the first tick fires immediately.

        A disabled scheduler logs and stays STOPPED.

        Raises:
            SchedulerError: If the scheduler has already been closed.
        """
        if self._closed:
            raise SchedulerError("Cannot start a closed scheduler")
        if not self._enabled:
            logger.info("Ingest scheduler disabled; not starting")
            return
        if self._state != SchedulerState.STOPPED:
            logger.warning("Cannot start scheduler: already in state %s", self._state.value)
            return
        if not self._lead_ids:
            logger.warning("No lead ids configured; scheduler ticks will be no-ops")

        self._stop_event.clear()
        self._state = SchedulerState.RUNNING
        self._stats.started_at = datetime.now(UTC)
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info(
            "Ingest scheduler started: %d leads, interval=%.1fs, concurrency=%d",
            len(self._lead_ids),
            self._interval,
            self._concurrency,
        )

    async def stop(self) -> None:
        """Stop ticking and wait for the in-flight tick to drain."""
        if self._state == SchedulerState.STOPPED:
            return

        self._stop_event.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if self._tick_task is not None:
            # Already-dispatched lead work finishes; only a cancelled
            # caller abandons it.
            with contextlib.suppress(asyncio.CancelledError):
                await self._tick_task
            self._tick_task = None

        self._state = SchedulerState.STOPPED
        logger.info("Ingest scheduler stopped")

    async def wait_stopped(self) -> None:
        """Block until stop() has been requested."""
        await self._stop_event.wait()

    def request_stop(self) -> None:
        """Signal-safe stop request; stop() still has to be awaited."""
        self._stop_event.set()

    async def _run_loop(self) -> None:
        """Launch a tick on every interval until stopped."""
        while not self._stop_event.is_set():
            self._launch_tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break
            except TimeoutError:
                pass

    def _launch_tick(self) -> None:
        if self._tick_task is not None and not self._tick_task.done():
            self._stats.ticks_skipped += 1
            logger.warning("Previous tick still running; skipping this tick")
            return
        self._tick_task = asyncio.create_task(self.run_tick())

    async def run_tick(self) -> TickStats | None:
        """Run one pass over all leads.

        Returns:
            The tick statistics, or None if another tick was running and
            this one was skipped.
        """
        if self._tick_running:
            self._stats.ticks_skipped += 1
            logger.warning("Tick already in progress; skipping")
            return None

        self._tick_running = True
        started = time.monotonic()
        tick = TickStats(started_at=datetime.now(UTC), leads_total=len(self._lead_ids))
        try:
            semaphore = asyncio.Semaphore(self._concurrency)
            results = await asyncio.gather(
                *(self._process_lead(lead_id, semaphore) for lead_id in self._lead_ids),
                return_exceptions=True,
            )
            for lead_id, result in zip(self._lead_ids, results, strict=True):
                if isinstance(result, BaseException):
                    tick.leads_failed += 1
                    tick.errors[lead_id] = str(result) or type(result).__name__
                    logger.error("Lead %s failed: %s", lead_id, result)
                    continue
                tick.leads_succeeded += 1
                tick.events_inserted += result.events_inserted
                tick.transitions_recorded += result.transitions_recorded
        finally:
            tick.finished_at = datetime.now(UTC)
            tick.duration_seconds = time.monotonic() - started
            self._record_tick(tick)
            self._tick_running = False

        logger.info(
            "Tick finished in %.2fs: %d/%d leads ok, %d failed, %d new events",
            tick.duration_seconds,
            tick.leads_succeeded,
            tick.leads_total,
            tick.leads_failed,
            tick.events_inserted,
        )
        return tick

    async def _process_lead(
        self, lead_id: str, semaphore: asyncio.Semaphore
    ) -> LeadIngestResult:
        async with semaphore:
            payload = await self._client.fetch_lead_payload(
                lead_id,
                order_page_size=self._order_page_size,
                timeout_seconds=self._timeout_seconds,
            )
            return await self._processor.process(payload)

    def _record_tick(self, tick: TickStats) -> None:
        self._stats.ticks_run += 1
        self._stats.leads_processed += tick.leads_succeeded
        self._stats.leads_failed += tick.leads_failed
        self._stats.last_tick_at = tick.finished_at
        self._stats.last_tick_duration_seconds = tick.duration_seconds
        if tick.errors:
            lead_id, error = next(iter(tick.errors.items()))
            self._stats.last_error = f"{lead_id}: {error}"

    async def aclose(self) -> None:
        """Stop and release the HTTP client, cache and database engine."""
        await self.stop()
        if self._closed:
            return
        self._closed = True
        closer = getattr(self._client, "aclose", None)
        if closer is not None:
            await closer()
        if self._cache is not None:
            await self._cache.aclose()
        if self._db_manager is not None:
            await self._db_manager.dispose_async()

    async def __aenter__(self) -> IngestScheduler:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()
