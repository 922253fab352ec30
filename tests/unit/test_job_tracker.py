"""Unit tests for the JobTracker state machine."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ragdesk.models.job import JobStatus, JobType
from ragdesk.pipeline.event_bus import Event, EventBus
from ragdesk.providers.store.database import Database
from ragdesk.services.jobs.job_tracker import JobTracker
from ragdesk.utils.errors import InvalidTransitionError, NotFoundError, TenantBoundaryError
from tests.conftest import AGENT_A, ORG_A, ORG_B


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tracker(database: Database, event_bus: EventBus, clock: FakeClock) -> JobTracker:
    return JobTracker(database, event_bus=event_bus, max_attempts=3, stuck_after_seconds=300, clock=clock)


async def _create(tracker: JobTracker, key: str = "source:s1:initial", **kwargs):
    job, _ = await tracker.create(
        organization_id=kwargs.pop("organization_id", ORG_A),
        agent_id=AGENT_A,
        job_type=JobType.TEXT_SNIPPET,
        idempotency_key=key,
        source_id="s1",
        **kwargs,
    )
    return job


class TestIdempotentCreation:
    @pytest.mark.asyncio
    async def test_second_create_returns_existing_job(self, tracker: JobTracker) -> None:
        first, created_first = await tracker.create(ORG_A, AGENT_A, JobType.QA_PAIR, "k1", "s1")
        second, created_second = await tracker.create(ORG_A, AGENT_A, JobType.QA_PAIR, "k1", "s1")

        assert created_first is True
        assert created_second is False
        assert first.id == second.id
        assert (await tracker.stats(ORG_A)).total == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_make_one_row(self, tracker: JobTracker) -> None:
        results = await asyncio.gather(
            *[tracker.create(ORG_A, AGENT_A, JobType.WEB_SCRAPING, "race", "s1") for _ in range(8)]
        )

        assert len({job.id for job, _ in results}) == 1
        assert sum(1 for _, created in results if created) == 1
        assert (await tracker.stats()).total == 1

    @pytest.mark.asyncio
    async def test_key_owned_by_other_org_is_rejected(self, tracker: JobTracker) -> None:
        await _create(tracker, key="shared")
        with pytest.raises(TenantBoundaryError):
            await _create(tracker, key="shared", organization_id=ORG_B)

    @pytest.mark.asyncio
    async def test_new_job_is_pending(self, tracker: JobTracker) -> None:
        job = await _create(tracker)
        assert job.status is JobStatus.PENDING
        assert job.attempt_count == 0
        assert job.max_attempts == 3


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stamps_attempt_and_heartbeat(self, tracker: JobTracker, clock: FakeClock) -> None:
        job = await _create(tracker)
        running = await tracker.start(job.id)

        assert running.status is JobStatus.RUNNING
        assert running.attempt_count == 1
        assert running.started_at == clock.now
        assert running.last_heartbeat == clock.now

    @pytest.mark.asyncio
    async def test_progress_is_monotonic_and_clamped(self, tracker: JobTracker) -> None:
        job = await _create(tracker)
        await tracker.start(job.id)

        assert (await tracker.update_progress(job.id, 40, "Acquired")).progress.current == 40
        assert (await tracker.update_progress(job.id, 10, "late")).progress.current == 40
        assert (await tracker.update_progress(job.id, 250, "over")).progress.current == 100

    @pytest.mark.asyncio
    async def test_progress_refreshes_heartbeat(self, tracker: JobTracker, clock: FakeClock) -> None:
        job = await _create(tracker)
        await tracker.start(job.id)
        clock.advance(30)
        updated = await tracker.update_progress(job.id, 50)
        assert updated.last_heartbeat == clock.now

    @pytest.mark.asyncio
    async def test_progress_requires_running(self, tracker: JobTracker) -> None:
        job = await _create(tracker)
        with pytest.raises(InvalidTransitionError):
            await tracker.update_progress(job.id, 10)

    @pytest.mark.asyncio
    async def test_complete(self, tracker: JobTracker) -> None:
        job = await _create(tracker)
        await tracker.start(job.id)
        done = await tracker.complete(job.id)

        assert done.status is JobStatus.COMPLETED
        assert done.progress.current == 100
        assert done.completed_at is not None

    @pytest.mark.asyncio
    async def test_completed_job_cannot_restart(self, tracker: JobTracker) -> None:
        job = await _create(tracker)
        await tracker.start(job.id)
        await tracker.complete(job.id)
        with pytest.raises(InvalidTransitionError):
            await tracker.start(job.id)

    @pytest.mark.asyncio
    async def test_unknown_job(self, tracker: JobTracker) -> None:
        with pytest.raises(NotFoundError):
            await tracker.get("missing")

    @pytest.mark.asyncio
    async def test_get_scoped_rejects_other_org(self, tracker: JobTracker) -> None:
        job = await _create(tracker)
        with pytest.raises(TenantBoundaryError):
            await tracker.get_scoped(ORG_B, job.id)


class TestRetries:
    @pytest.mark.asyncio
    async def test_retryable_failure_requeues(self, tracker: JobTracker) -> None:
        job = await _create(tracker)
        await tracker.start(job.id)
        outcome = await tracker.fail(job.id, "embedding timeout")

        assert outcome.will_retry is True
        assert outcome.job.status is JobStatus.PENDING
        assert outcome.job.error_history[0].attempt == 1
        assert outcome.job.error_history[0].message == "embedding timeout"

    @pytest.mark.asyncio
    async def test_max_attempts_is_terminal(self, tracker: JobTracker) -> None:
        job = await _create(tracker)
        outcome = None
        for _ in range(3):
            await tracker.start(job.id)
            outcome = await tracker.fail(job.id, "still down")

        assert outcome is not None
        assert outcome.will_retry is False
        assert outcome.job.status is JobStatus.FAILED
        assert outcome.job.attempt_count == outcome.job.max_attempts == 3
        assert [e.attempt for e in outcome.job.error_history] == [1, 2, 3]
        with pytest.raises(InvalidTransitionError):
            await tracker.start(job.id)

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_terminal_immediately(self, tracker: JobTracker) -> None:
        job = await _create(tracker)
        await tracker.start(job.id)
        outcome = await tracker.fail(job.id, "no chunks", retryable=False)

        assert outcome.will_retry is False
        assert outcome.job.status is JobStatus.FAILED
        assert outcome.job.attempt_count == 1

    @pytest.mark.asyncio
    async def test_fail_requires_running(self, tracker: JobTracker) -> None:
        job = await _create(tracker)
        with pytest.raises(InvalidTransitionError):
            await tracker.fail(job.id, "boom")


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, tracker: JobTracker) -> None:
        job = await _create(tracker)
        cancelled = await tracker.cancel(job.id)

        assert cancelled.status is JobStatus.CANCELLED
        assert await tracker.is_cancelled(job.id) is True

    @pytest.mark.asyncio
    async def test_cancel_terminal_job_rejected(self, tracker: JobTracker) -> None:
        job = await _create(tracker)
        await tracker.start(job.id)
        await tracker.complete(job.id)
        with pytest.raises(InvalidTransitionError):
            await tracker.cancel(job.id)


class TestStuckJobs:
    @pytest.mark.asyncio
    async def test_stale_heartbeat_is_reported_not_changed(
        self, tracker: JobTracker, clock: FakeClock
    ) -> None:
        job = await _create(tracker)
        await tracker.start(job.id)
        clock.advance(301)

        stuck = await tracker.find_stuck()

        assert [s.job.id for s in stuck] == [job.id]
        assert stuck[0].seconds_since_heartbeat == pytest.approx(301)
        assert (await tracker.get(job.id)).status is JobStatus.RUNNING

    @pytest.mark.asyncio
    async def test_fresh_heartbeat_not_reported(self, tracker: JobTracker, clock: FakeClock) -> None:
        job = await _create(tracker)
        await tracker.start(job.id)
        clock.advance(200)
        await tracker.heartbeat(job.id)
        clock.advance(200)
        assert await tracker.find_stuck() == []

    @pytest.mark.asyncio
    async def test_requeue_stuck_records_timeout(self, tracker: JobTracker, clock: FakeClock) -> None:
        job = await _create(tracker)
        await tracker.start(job.id)
        clock.advance(600)

        outcome = await tracker.requeue_stuck(job.id)

        assert outcome.will_retry is True
        assert outcome.job.status is JobStatus.PENDING
        assert "Heartbeat timed out" in outcome.job.error_history[-1].message

    @pytest.mark.asyncio
    async def test_requeue_rejects_healthy_job(self, tracker: JobTracker, clock: FakeClock) -> None:
        job = await _create(tracker)
        await tracker.start(job.id)
        clock.advance(10)
        with pytest.raises(InvalidTransitionError):
            await tracker.requeue_stuck(job.id)


class TestQueriesAndEvents:
    @pytest.mark.asyncio
    async def test_list_filters_by_status_and_org(self, tracker: JobTracker) -> None:
        a = await _create(tracker, key="a")
        await _create(tracker, key="b")
        await _create(tracker, key="c", organization_id=ORG_B)
        await tracker.start(a.id)

        running = await tracker.list_jobs(ORG_A, status=JobStatus.RUNNING)
        assert [j.id for j in running] == [a.id]
        assert len(await tracker.list_jobs(ORG_A)) == 2

        stats = await tracker.stats(ORG_A)
        assert (stats.pending, stats.running, stats.total) == (1, 1, 2)

    @pytest.mark.asyncio
    async def test_latest_for_source(self, tracker: JobTracker, clock: FakeClock) -> None:
        await _create(tracker, key="first")
        clock.advance(5)
        second = await _create(tracker, key="second")
        latest = await tracker.get_latest_for_source("s1")
        assert latest is not None and latest.id == second.id

    @pytest.mark.asyncio
    async def test_transitions_publish_events(self, tracker: JobTracker, event_bus: EventBus) -> None:
        seen: list[Event] = []
        job = await _create(tracker)
        event_bus.subscribe(f"job:{job.id}", seen.append)

        await tracker.start(job.id)
        await tracker.update_progress(job.id, 50, "Chunked")
        await tracker.complete(job.id)

        assert [e.kind for e in seen] == ["job.started", "job.progress", "job.completed"]
        assert seen[-1].data["status"] == "completed"
