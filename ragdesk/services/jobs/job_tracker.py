"""Durable job state machine for ingestion work.

The tracker is the only writer of the ``jobs`` table.  Every transition is
a read-check-write inside one ``BEGIN IMMEDIATE`` transaction and is
validated against :data:`~ragdesk.models.job.JOB_TRANSITIONS`; callers never
set a status string themselves.

Idempotent creation
-------------------
``create`` inserts with ``ON CONFLICT(idempotency_key) DO NOTHING`` and
then reads the row back by key.  The UNIQUE constraint decides the winner
when two triggers for the same unit of work race, and both callers see the
same job id.

Stuck jobs
----------
A running job whose ``last_heartbeat`` is older than the threshold is
*reported* by :meth:`JobTracker.find_stuck`.  Nothing requeues it
automatically: an operator calls :meth:`JobTracker.requeue_stuck`, which
records a heartbeat-timeout failure and follows the normal retry rule.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

import aiosqlite
import structlog

from ragdesk.models.job import (
    JOB_TRANSITIONS,
    FailureOutcome,
    Job,
    JobErrorEntry,
    JobProgress,
    JobStats,
    JobStatus,
    JobType,
    StuckJob,
)
from ragdesk.pipeline.event_bus import EventBus
from ragdesk.providers.store.database import (
    Database,
    from_iso,
    from_json,
    to_iso,
    to_json,
    utc_now,
)
from ragdesk.utils.errors import InvalidTransitionError, NotFoundError, TenantBoundaryError

logger = structlog.get_logger(logger_name=__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_LIST_LIMIT = 50

_INSERT_SQL = """\
INSERT INTO jobs (
    id, organization_id, agent_id, source_id, job_type, status, idempotency_key,
    attempt_count, max_attempts, force, scheduled_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
ON CONFLICT(idempotency_key) DO NOTHING;
"""


class JobTracker:
    """Creates jobs and drives them through their lifecycle.

    Parameters
    ----------
    database:
        Shared SQLite database.
    event_bus:
        Receives a ``job.*`` event on every transition and progress update.
    max_attempts:
        Default attempt budget for new jobs.
    stuck_after_seconds:
        Heartbeat age after which a running job is reported as stuck.
    clock:
        Source of "now"; injectable for tests.
    """

    def __init__(
        self,
        database: Database,
        event_bus: EventBus | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        stuck_after_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = database
        self._event_bus = event_bus
        self._max_attempts = max_attempts
        self._stuck_after_seconds = stuck_after_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    async def create(
        self,
        organization_id: str,
        agent_id: str,
        job_type: JobType,
        idempotency_key: str,
        source_id: str | None = None,
        force: bool = False,
        max_attempts: int | None = None,
    ) -> tuple[Job, bool]:
        """Create a pending job, or return the existing one for the key.

        Returns
        -------
        tuple[Job, bool]
            The job and whether this call created it.

        Raises
        ------
        TenantBoundaryError
            If the key already belongs to another organization's job.
        """
        async with self._db.connect() as db:
            cursor = await db.execute(
                _INSERT_SQL,
                (
                    str(uuid.uuid4()),
                    organization_id,
                    agent_id,
                    source_id,
                    job_type.value,
                    JobStatus.PENDING.value,
                    idempotency_key,
                    max_attempts or self._max_attempts,
                    int(force),
                    to_iso(self._clock()),
                ),
            )
            created = cursor.rowcount == 1
            await db.commit()
            cursor = await db.execute(
                "SELECT * FROM jobs WHERE idempotency_key = ?", (idempotency_key,)
            )
            row = await cursor.fetchone()

        job = _row_to_job(row)
        if job.organization_id != organization_id:
            raise TenantBoundaryError(message="Idempotency key belongs to another organization")

        if created:
            logger.info(
                "job_created",
                job_id=job.id,
                job_type=job.job_type.value,
                source_id=source_id,
                idempotency_key=idempotency_key,
            )
            await self._publish(job, "job.created")
        else:
            logger.info("job_already_exists", job_id=job.id, idempotency_key=idempotency_key)
        return job, created

    async def get(self, job_id: str) -> Job:
        async with self._db.connect() as db:
            cursor = await db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"Job {job_id} not found")
        return _row_to_job(row)

    async def get_scoped(self, organization_id: str, job_id: str) -> Job:
        job = await self.get(job_id)
        if job.organization_id != organization_id:
            raise TenantBoundaryError(message=f"Job {job_id} is outside this organization")
        return job

    async def get_latest_for_source(self, source_id: str) -> Job | None:
        async with self._db.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM jobs WHERE source_id = ? ORDER BY scheduled_at DESC, rowid DESC LIMIT 1",
                (source_id,),
            )
            row = await cursor.fetchone()
        return _row_to_job(row) if row else None

    async def list_jobs(
        self,
        organization_id: str | None = None,
        status: JobStatus | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[Job]:
        clauses: list[str] = []
        params: list[Any] = []
        if organization_id is not None:
            clauses.append("organization_id = ?")
            params.append(organization_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        async with self._db.connect() as db:
            cursor = await db.execute(
                f"SELECT * FROM jobs {where} ORDER BY scheduled_at DESC, rowid DESC LIMIT ?",  # noqa: S608
                params,
            )
            rows = await cursor.fetchall()
        return [_row_to_job(r) for r in rows]

    async def stats(self, organization_id: str | None = None) -> JobStats:
        sql = "SELECT status, COUNT(*) AS n FROM jobs"
        params: tuple = ()
        if organization_id is not None:
            sql += " WHERE organization_id = ?"
            params = (organization_id,)
        sql += " GROUP BY status"
        async with self._db.connect() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        counts = {r["status"]: r["n"] for r in rows}
        return JobStats(**counts, total=sum(counts.values()))

    async def find_stuck(self, threshold_seconds: int | None = None) -> list[StuckJob]:
        """Report running jobs with a stale heartbeat.  Changes nothing."""
        threshold = threshold_seconds if threshold_seconds is not None else self._stuck_after_seconds
        now = self._clock()
        stuck: list[StuckJob] = []
        for job in await self.list_jobs(status=JobStatus.RUNNING, limit=1000):
            heartbeat = job.last_heartbeat or job.started_at or job.scheduled_at
            age = (now - heartbeat).total_seconds()
            if age > threshold:
                stuck.append(StuckJob(job=job, seconds_since_heartbeat=age))
        if stuck:
            logger.warning("stuck_jobs_detected", count=len(stuck), threshold_seconds=threshold)
        return stuck

    async def is_cancelled(self, job_id: str) -> bool:
        async with self._db.connect() as db:
            cursor = await db.execute("SELECT status FROM jobs WHERE id = ?", (job_id,))
            row = await cursor.fetchone()
        return row is not None and row["status"] == JobStatus.CANCELLED.value

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start(self, job_id: str) -> Job:
        """``pending -> running``: count the attempt and stamp the heartbeat."""

        def _apply(job: Job, now: datetime) -> dict[str, Any]:
            return {
                "status": JobStatus.RUNNING.value,
                "attempt_count": job.attempt_count + 1,
                "started_at": to_iso(now),
                "last_heartbeat": to_iso(now),
                "progress_current": 0,
                "progress_message": "Starting",
            }

        job = await self._transition(job_id, JobStatus.RUNNING, _apply)
        logger.info("job_started", job_id=job_id, attempt=job.attempt_count, max_attempts=job.max_attempts)
        await self._publish(job, "job.started")
        return job

    async def update_progress(self, job_id: str, current: int, message: str = "") -> Job:
        """Record progress on a running job and refresh its heartbeat.

        Progress is clamped to 0-100 and never moves backwards within an
        attempt.
        """
        current = max(0, min(100, current))
        now = self._clock()
        async with self._db.transaction() as db:
            row = await _fetch_row(db, job_id)
            status = JobStatus(row["status"])
            if status is not JobStatus.RUNNING:
                raise InvalidTransitionError(
                    message=f"Cannot report progress on job {job_id} in status {status.value}"
                )
            current = max(current, row["progress_current"])
            await db.execute(
                "UPDATE jobs SET progress_current = ?, progress_message = ?, last_heartbeat = ? "
                "WHERE id = ?",
                (current, message, to_iso(now), job_id),
            )
            cursor = await db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
            job = _row_to_job(await cursor.fetchone())

        logger.debug("job_progress", job_id=job_id, progress=current, message=message)
        await self._publish(job, "job.progress")
        return job

    async def heartbeat(self, job_id: str) -> None:
        async with self._db.connect() as db:
            await db.execute(
                "UPDATE jobs SET last_heartbeat = ? WHERE id = ? AND status = ?",
                (to_iso(self._clock()), job_id, JobStatus.RUNNING.value),
            )
            await db.commit()

    async def complete(self, job_id: str, message: str = "Completed") -> Job:
        def _apply(job: Job, now: datetime) -> dict[str, Any]:
            return {
                "status": JobStatus.COMPLETED.value,
                "progress_current": 100,
                "progress_message": message,
                "completed_at": to_iso(now),
                "last_heartbeat": to_iso(now),
            }

        job = await self._transition(job_id, JobStatus.COMPLETED, _apply)
        logger.info("job_completed", job_id=job_id, attempts=job.attempt_count)
        await self._publish(job, "job.completed")
        return job

    async def fail(self, job_id: str, error: str, retryable: bool = True) -> FailureOutcome:
        """Record a failed attempt.

        A retryable failure with attempts left returns the job to
        ``pending``; anything else is terminal ``failed``.  Either way the
        attempt is appended to ``error_history``.
        """
        decided: dict[str, bool] = {}

        def _apply(job: Job, now: datetime) -> dict[str, Any]:
            entry = JobErrorEntry(attempt=job.attempt_count, timestamp=now, message=error)
            history = [e.model_dump(mode="json") for e in job.error_history]
            history.append(entry.model_dump(mode="json"))
            will_retry = retryable and job.can_retry
            decided["will_retry"] = will_retry
            updates: dict[str, Any] = {
                "error_history": to_json(history),
                "progress_message": error,
            }
            if will_retry:
                updates["status"] = JobStatus.PENDING.value
                updates["scheduled_at"] = to_iso(now)
            else:
                updates["status"] = JobStatus.FAILED.value
                updates["completed_at"] = to_iso(now)
            return updates

        job = await self._transition(
            job_id,
            None,
            _apply,
            allowed_from=frozenset({JobStatus.RUNNING}),
        )
        will_retry = decided["will_retry"]
        if will_retry:
            logger.warning(
                "job_attempt_failed",
                job_id=job_id,
                attempt=job.attempt_count,
                max_attempts=job.max_attempts,
                error=error,
            )
            await self._publish(job, "job.retrying")
        else:
            logger.error(
                "job_failed",
                job_id=job_id,
                attempts=job.attempt_count,
                retryable=retryable,
                error=error,
            )
            await self._publish(job, "job.failed")
        return FailureOutcome(job=job, will_retry=will_retry)

    async def cancel(self, job_id: str) -> Job:
        def _apply(job: Job, now: datetime) -> dict[str, Any]:
            return {
                "status": JobStatus.CANCELLED.value,
                "progress_message": "Cancelled",
                "completed_at": to_iso(now),
            }

        job = await self._transition(job_id, JobStatus.CANCELLED, _apply)
        logger.info("job_cancelled", job_id=job_id)
        await self._publish(job, "job.cancelled")
        return job

    async def requeue_stuck(self, job_id: str, threshold_seconds: int | None = None) -> FailureOutcome:
        """Operator remediation for a stuck job.

        Raises
        ------
        InvalidTransitionError
            If the job is not running or its heartbeat is still fresh.
        """
        threshold = threshold_seconds if threshold_seconds is not None else self._stuck_after_seconds
        job = await self.get(job_id)
        if job.status is not JobStatus.RUNNING:
            raise InvalidTransitionError(message=f"Job {job_id} is {job.status.value}, not running")
        heartbeat = job.last_heartbeat or job.started_at or job.scheduled_at
        age = (self._clock() - heartbeat).total_seconds()
        if age <= threshold:
            raise InvalidTransitionError(
                message=f"Job {job_id} heartbeat is {int(age)}s old, not stuck"
            )
        logger.warning("job_requeue_requested", job_id=job_id, seconds_since_heartbeat=age)
        return await self.fail(job_id, f"Heartbeat timed out after {int(age)}s", retryable=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _transition(
        self,
        job_id: str,
        target: JobStatus | None,
        apply: Callable[[Job, datetime], dict[str, Any]],
        allowed_from: frozenset[JobStatus] | None = None,
    ) -> Job:
        now = self._clock()
        async with self._db.transaction() as db:
            current = _row_to_job(await _fetch_row(db, job_id))
            if allowed_from is not None and current.status not in allowed_from:
                raise InvalidTransitionError(
                    message=f"Job {job_id} cannot fail from status {current.status.value}"
                )
            if target is not None and target not in JOB_TRANSITIONS[current.status]:
                raise InvalidTransitionError(
                    message=f"Job {job_id} cannot move from {current.status.value} to {target.value}"
                )
            updates = apply(current, now)
            columns = ", ".join(f"{column} = ?" for column in updates)
            await db.execute(
                f"UPDATE jobs SET {columns} WHERE id = ?",  # noqa: S608
                [*updates.values(), job_id],
            )
            cursor = await db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
            return _row_to_job(await cursor.fetchone())

    async def _publish(self, job: Job, kind: str) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(
            f"job:{job.id}",
            kind,
            {
                "job_id": job.id,
                "source_id": job.source_id,
                "status": job.status.value,
                "attempt_count": job.attempt_count,
                "progress": job.progress.current,
                "message": job.progress.message,
            },
            organization_id=job.organization_id,
        )


async def _fetch_row(db: aiosqlite.Connection, job_id: str) -> aiosqlite.Row:
    cursor = await db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
    row = await cursor.fetchone()
    if row is None:
        raise NotFoundError(message=f"Job {job_id} not found")
    return row


def _row_to_job(row: aiosqlite.Row) -> Job:
    return Job(
        id=row["id"],
        organization_id=row["organization_id"],
        agent_id=row["agent_id"],
        source_id=row["source_id"],
        job_type=JobType(row["job_type"]),
        status=JobStatus(row["status"]),
        idempotency_key=row["idempotency_key"],
        attempt_count=row["attempt_count"],
        max_attempts=row["max_attempts"],
        progress=JobProgress(
            current=row["progress_current"],
            total=row["progress_total"],
            message=row["progress_message"],
        ),
        error_history=[JobErrorEntry(**e) for e in from_json(row["error_history"], [])],
        force=bool(row["force"]),
        scheduled_at=from_iso(row["scheduled_at"]),
        started_at=from_iso(row["started_at"]),
        completed_at=from_iso(row["completed_at"]),
        last_heartbeat=from_iso(row["last_heartbeat"]),
    )
