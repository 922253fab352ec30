"""Knowledge source models and the source lifecycle.

A source moves ``pending -> processing -> ready | failed``.  The only
backwards edges are ``failed -> pending`` (retry) and ``ready -> pending``
(content edited or re-ingestion forced).  :data:`SOURCE_TRANSITIONS` is the
single table the source repository checks before writing a status.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class SourceType(str, Enum):
    FILE = "file"
    WEBSITE = "website"
    TEXT = "text"
    QA = "qa"


class SourceStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class CrawlMode(str, Enum):
    """``scrape`` fetches one page; ``crawl`` follows same-host links."""

    SCRAPE = "scrape"
    CRAWL = "crawl"


SOURCE_TRANSITIONS: dict[SourceStatus, frozenset[SourceStatus]] = {
    SourceStatus.PENDING: frozenset({SourceStatus.PROCESSING}),
    SourceStatus.PROCESSING: frozenset({SourceStatus.READY, SourceStatus.FAILED}),
    SourceStatus.READY: frozenset({SourceStatus.PENDING}),
    SourceStatus.FAILED: frozenset({SourceStatus.PENDING}),
}


def can_transition(current: SourceStatus, target: SourceStatus) -> bool:
    return target in SOURCE_TRANSITIONS[current]


class Source(BaseModel):
    """A knowledge input owned by an (organization, agent) pair.

    Type-specific inputs live in optional fields: ``content`` for text,
    ``question``/``answer`` for Q&A, ``url``/``crawl_mode``/``crawl_limit``
    for websites and ``storage_path``/``mime_type`` for uploaded files.
    ``content_hash`` is the fingerprint of the content last embedded and
    ``embedding_model`` the model its chunks were embedded with.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    agent_id: str
    type: SourceType
    name: str
    status: SourceStatus = SourceStatus.PENDING
    content: str | None = None
    question: str | None = None
    answer: str | None = None
    url: str | None = None
    crawl_mode: CrawlMode | None = None
    crawl_limit: int | None = None
    crawled_pages: int | None = None
    storage_path: str | None = None
    mime_type: str | None = None
    size_bytes: int = 0
    content_hash: str | None = None
    embedding_model: str | None = None
    chunk_count: int = 0
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class AcquiredSegment(BaseModel):
    """One piece of raw text produced by type-specific acquisition.

    A PDF yields one segment per page; a crawl yields one per page fetched;
    text and Q&A sources yield exactly one.
    """

    model_config = ConfigDict(frozen=True)

    text: str
    page_number: int | None = None
    url: str | None = None
    title: str | None = None


class AcquisitionResult(BaseModel):
    """Everything acquisition learned about a source before chunking."""

    model_config = ConfigDict(frozen=True)

    segments: list[AcquiredSegment] = Field(default_factory=list)
    size_bytes: int = 0
    crawled_pages: int | None = None

    @property
    def combined_text(self) -> str:
        """Segment texts joined in order; the input to fingerprinting."""
        return "\n\n".join(s.text for s in self.segments)
