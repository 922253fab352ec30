"""Pydantic request/response schemas for the ragdesk HTTP API.

Request schemas end with ``Request`` and response schemas with
``Response``.  Domain models (``Source``, ``Job``, ``Message`` ...) are
returned directly where their shape is already the public contract.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from ragdesk.models.job import Job
from ragdesk.models.source import CrawlMode, Source
from ragdesk.models.usage import UsageEvent, UsageTotals


class ErrorResponse(BaseModel):
    """Standard error response body."""

    error: str
    detail: str | None = None
    retry_after: float | None = None


class HealthResponse(BaseModel):
    status: str
    version: str
    providers: dict[str, Any]


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class TextSourceRequest(BaseModel):
    agent_id: str
    name: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1)


class QASourceRequest(BaseModel):
    agent_id: str
    question: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1)
    name: str | None = Field(default=None, max_length=200)


class WebsiteSourceRequest(BaseModel):
    agent_id: str
    url: str = Field(..., min_length=8, max_length=2048)
    crawl_mode: CrawlMode = CrawlMode.SCRAPE
    crawl_limit: int | None = Field(default=None, ge=1, le=500)
    name: str | None = Field(default=None, max_length=200)


class UpdateTextRequest(BaseModel):
    content: str = Field(..., min_length=1)


class UpdateQARequest(BaseModel):
    question: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1)


class SourceJobResponse(BaseModel):
    """A source together with the ingestion job started for it."""

    source: Source
    job: Job


# ---------------------------------------------------------------------------
# Ingestion / jobs
# ---------------------------------------------------------------------------


class IngestionTriggerRequest(BaseModel):
    source_id: str
    agent_id: str
    idempotency_key: str = Field(..., min_length=1, max_length=512)
    job_id: str | None = None
    force: bool = False


class JobListResponse(BaseModel):
    jobs: list[Job]
    total: int


class StuckJobResponse(BaseModel):
    job: Job
    seconds_since_heartbeat: float


class RequeueResponse(BaseModel):
    job: Job
    will_retry: bool


class RetrainRequest(BaseModel):
    force: bool = False


class RetrainResponse(BaseModel):
    agent_id: str
    jobs: list[Job]


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class UsageResponse(BaseModel):
    totals: UsageTotals
    events: list[UsageEvent]
