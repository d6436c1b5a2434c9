"""Tests for the ingest scheduler."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from copytrade_tracker.engine.segments import Segment
from copytrade_tracker.errors import SchedulerError, UpstreamError
from copytrade_tracker.processor import LeadIngestResult, LeadProcessor
from copytrade_tracker.scheduler import IngestScheduler, SchedulerState
from copytrade_tracker.storage.models import RawIngestModel

# ============================================================================
# Fakes
# ============================================================================


class FakeClient:
    """Records concurrency and fails for selected leads."""

    def __init__(self, make_payload, *, delay: float = 0.0, failing: set[str] | None = None) -> None:
        self._make_payload = make_payload
        self._delay = delay
        self._failing = failing or set()
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls: list[str] = []
        self.closed = False
        self.gate: asyncio.Event | None = None

    async def fetch_lead_payload(self, lead_id, *, order_page_size, timeout_seconds):
        self.calls.append(lead_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(self._delay)
            if lead_id in self._failing:
                raise UpstreamError(f"lead {lead_id} unavailable")
            return self._make_payload(lead_id, position_show=False)
        finally:
            self.in_flight -= 1

    async def aclose(self) -> None:
        self.closed = True


class FakeProcessor:
    def __init__(self) -> None:
        self.processed: list[str] = []

    async def process(self, payload) -> LeadIngestResult:
        self.processed.append(payload.lead_id)
        return LeadIngestResult(
            lead_id=payload.lead_id,
            segment=Segment.HIDDEN,
            raw_ingest_id=len(self.processed),
            events_inserted=2,
            transitions_recorded=1,
        )


def make_scheduler(client, processor=None, **kwargs) -> IngestScheduler:
    kwargs.setdefault("lead_ids", ["a", "b", "c"])
    return IngestScheduler(client, processor or FakeProcessor(), **kwargs)


# ============================================================================
# run_tick
# ============================================================================


class TestRunTick:
    """Tests for a single pass over the leads."""

    @pytest.mark.asyncio
    async def test_all_leads_processed(self, make_payload) -> None:
        client = FakeClient(make_payload)
        processor = FakeProcessor()
        scheduler = make_scheduler(client, processor)

        tick = await scheduler.run_tick()

        assert tick is not None
        assert sorted(processor.processed) == ["a", "b", "c"]
        assert tick.leads_total == 3
        assert tick.leads_succeeded == 3
        assert tick.events_inserted == 6
        assert tick.transitions_recorded == 3
        assert scheduler.stats.ticks_run == 1
        assert scheduler.stats.leads_processed == 3

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, make_payload) -> None:
        client = FakeClient(make_payload, delay=0.02)
        scheduler = make_scheduler(
            client, lead_ids=[f"lead-{i}" for i in range(10)], concurrency=3
        )

        await scheduler.run_tick()

        assert len(client.calls) == 10
        assert client.max_in_flight == 3

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, db_manager, make_payload) -> None:
        client = FakeClient(make_payload, failing={"b"})
        # One SQLite connection is shared, so leads run one at a time.
        scheduler = make_scheduler(client, LeadProcessor(db_manager), concurrency=1)

        tick = await scheduler.run_tick()

        assert tick is not None
        assert tick.leads_succeeded == 2
        assert tick.leads_failed == 1
        assert "unavailable" in tick.errors["b"]
        assert scheduler.stats.last_error is not None

        async with db_manager.get_async_session() as session:
            result = await session.execute(select(RawIngestModel.lead_id))
            stored = sorted(result.scalars().all())
        assert stored == ["a", "c"]

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, make_payload) -> None:
        client = FakeClient(make_payload)
        client.gate = asyncio.Event()
        scheduler = make_scheduler(client)

        first = asyncio.create_task(scheduler.run_tick())
        await asyncio.sleep(0)
        assert scheduler.tick_in_progress

        assert await scheduler.run_tick() is None
        assert scheduler.stats.ticks_skipped == 1

        client.gate.set()
        tick = await first
        assert tick is not None
        assert scheduler.stats.ticks_run == 1

    @pytest.mark.asyncio
    async def test_no_leads_is_noop(self, make_payload) -> None:
        client = FakeClient(make_payload)
        scheduler = make_scheduler(client, lead_ids=[])

        tick = await scheduler.run_tick()

        assert tick is not None
        assert tick.leads_total == 0
        assert client.calls == []

    def test_duplicate_leads_collapsed(self, make_payload) -> None:
        scheduler = make_scheduler(FakeClient(make_payload), lead_ids=["a", "b", "a"])
        assert scheduler._lead_ids == ["a", "b"]

    def test_invalid_concurrency(self, make_payload) -> None:
        with pytest.raises(ValueError):
            make_scheduler(FakeClient(make_payload), concurrency=0)

    @pytest.mark.asyncio
    async def test_tick_to_dict(self, make_payload) -> None:
        scheduler = make_scheduler(FakeClient(make_payload, failing={"a"}))

        tick = await scheduler.run_tick()

        assert tick is not None
        data = tick.to_dict()
        assert data["leadsFailed"] == 1
        assert data["leadsSucceeded"] == 2
        assert set(data["errors"]) == {"a"}
        assert data["finishedAt"] is not None


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    """Tests for start / stop / aclose."""

    @pytest.mark.asyncio
    async def test_disabled_start_is_noop(self, make_payload) -> None:
        client = FakeClient(make_payload)
        scheduler = make_scheduler(client, enabled=False)

        await scheduler.start()
        await asyncio.sleep(0.01)

        assert scheduler.state == SchedulerState.STOPPED
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_start_runs_first_tick_immediately(self, make_payload) -> None:
        client = FakeClient(make_payload)
        processor = FakeProcessor()
        scheduler = make_scheduler(client, processor, interval_seconds=60)

        await scheduler.start()
        assert scheduler.is_running
        for _ in range(50):
            if scheduler.stats.ticks_run:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert scheduler.stats.ticks_run == 1
        assert sorted(processor.processed) == ["a", "b", "c"]
        assert scheduler.state == SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_drains_in_flight_tick(self, make_payload) -> None:
        client = FakeClient(make_payload)
        client.gate = asyncio.Event()
        processor = FakeProcessor()
        scheduler = make_scheduler(client, processor, interval_seconds=60)

        await scheduler.start()
        while not scheduler.tick_in_progress:
            await asyncio.sleep(0)

        stop_task = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.01)
        assert not stop_task.done()

        client.gate.set()
        await stop_task

        assert sorted(processor.processed) == ["a", "b", "c"]
        assert scheduler.state == SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_slow_tick_skips_next_interval(self, make_payload) -> None:
        client = FakeClient(make_payload)
        client.gate = asyncio.Event()
        scheduler = make_scheduler(client, interval_seconds=0.01)

        await scheduler.start()
        await asyncio.sleep(0.05)
        client.gate.set()
        await scheduler.stop()

        assert scheduler.stats.ticks_skipped >= 1
        assert scheduler.stats.ticks_run == 1

    @pytest.mark.asyncio
    async def test_start_twice_warns(self, make_payload) -> None:
        scheduler = make_scheduler(FakeClient(make_payload), interval_seconds=60)

        await scheduler.start()
        loop_task = scheduler._loop_task
        await scheduler.start()

        assert scheduler._loop_task is loop_task
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_request_stop_releases_waiter(self, make_payload) -> None:
        scheduler = make_scheduler(FakeClient(make_payload), interval_seconds=60)
        await scheduler.start()

        waiter = asyncio.create_task(scheduler.wait_stopped())
        scheduler.request_stop()
        await asyncio.wait_for(waiter, timeout=1)
        await scheduler.stop()

        assert scheduler.state == SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_aclose_releases_resources(self, make_payload) -> None:
        client = FakeClient(make_payload)
        cache = AsyncMock()
        db_manager = AsyncMock()
        scheduler = make_scheduler(client, cache=cache, db_manager=db_manager)

        async with scheduler:
            pass

        assert client.closed
        cache.aclose.assert_awaited_once()
        db_manager.dispose_async.assert_awaited_once()

        await scheduler.aclose()
        cache.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_after_close_raises(self, make_payload) -> None:
        scheduler = make_scheduler(FakeClient(make_payload))
        await scheduler.aclose()

        with pytest.raises(SchedulerError):
            await scheduler.start()
