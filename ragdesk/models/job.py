"""Ingestion job models and the job state machine.

# ─── JOB LIFECYCLE ────────────────────────────────────────────────────
#
#   pending ──start──▶ running ──complete──▶ completed
#      ▲                  │
#      │                  ├──fail (attempts left, retryable)──▶ pending
#      │                  ├──fail (exhausted or terminal)─────▶ failed
#      │                  └──cancel───────────────────────────▶ cancelled
#      └──────────────────────────── cancel (from pending) ───▶ cancelled
#
# completed / failed / cancelled are terminal.  A failed job is never
# picked up again; a new attempt at the same work needs a new job.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobType(str, Enum):
    FILE_PROCESSING = "file_processing"
    WEB_SCRAPING = "web_scraping"
    TEXT_SNIPPET = "text_snippet"
    QA_PAIR = "qa_pair"
    AGENT_RETRAIN = "agent_retrain"


JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PENDING, JobStatus.CANCELLED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class JobProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    current: int = Field(default=0, ge=0, le=100)
    total: int = 100
    message: str = ""


class JobErrorEntry(BaseModel):
    """One failed attempt, as appended to ``Job.error_history``."""

    model_config = ConfigDict(frozen=True)

    attempt: int
    timestamp: datetime
    message: str


class Job(BaseModel):
    """One unit of asynchronous ingestion work against a source or agent."""

    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    agent_id: str
    source_id: str | None = None
    job_type: JobType
    status: JobStatus = JobStatus.PENDING
    idempotency_key: str
    attempt_count: int = 0
    max_attempts: int = 3
    progress: JobProgress = Field(default_factory=JobProgress)
    error_history: list[JobErrorEntry] = Field(default_factory=list)
    force: bool = False
    scheduled_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_heartbeat: datetime | None = None

    @property
    def can_retry(self) -> bool:
        return self.attempt_count < self.max_attempts


class FailureOutcome(BaseModel):
    """What :meth:`JobTracker.fail` decided: requeued or terminally failed."""

    model_config = ConfigDict(frozen=True)

    job: Job
    will_retry: bool


class JobStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0


class StuckJob(BaseModel):
    """A running job whose heartbeat is older than the configured threshold."""

    model_config = ConfigDict(frozen=True)

    job: Job
    seconds_since_heartbeat: float


class IngestionTrigger(BaseModel):
    """A request to ingest one source, as received at the job trigger boundary.

    ``job_id`` resumes an existing job instead of creating one.  ``force``
    re-embeds even when the content fingerprint is unchanged.
    """

    model_config = ConfigDict(frozen=True)

    source_id: str
    organization_id: str
    agent_id: str
    idempotency_key: str
    job_id: str | None = None
    force: bool = False
