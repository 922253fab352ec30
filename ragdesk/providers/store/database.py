"""SQLite database shared by every ragdesk repository.

One file holds organizations, agents, sources, jobs, conversations,
messages, streams and the usage ledger.  Each operation opens its own
``aiosqlite`` connection; WAL mode lets readers proceed while a writer
holds the lock, and ``busy_timeout`` makes concurrent writers queue instead
of failing.

Idempotency is enforced here, not by callers: ``jobs.idempotency_key`` and
``usage_events.idempotency_key`` are UNIQUE, so two concurrent inserts with
the same key cannot both succeed.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite
import structlog

logger = structlog.get_logger(logger_name=__name__)

_SCHEMA_SQL = [
    """\
CREATE TABLE IF NOT EXISTS organizations (
    id                      TEXT PRIMARY KEY,
    name                    TEXT    NOT NULL,
    plan                    TEXT    NOT NULL,
    rate_limit_tokens       REAL    NOT NULL,
    rate_limit_last_refill  REAL    NOT NULL,
    message_credits_used    INTEGER NOT NULL DEFAULT 0,
    message_credits_limit   INTEGER NOT NULL DEFAULT 0,
    storage_used_kb         INTEGER NOT NULL DEFAULT 0,
    storage_limit_kb        INTEGER NOT NULL DEFAULT 0,
    guardrails              TEXT,
    created_at              TEXT    NOT NULL
);
""",
    """\
CREATE TABLE IF NOT EXISTS agents (
    id                    TEXT PRIMARY KEY,
    organization_id       TEXT    NOT NULL REFERENCES organizations(id),
    name                  TEXT    NOT NULL,
    model                 TEXT    NOT NULL,
    temperature           REAL    NOT NULL,
    system_prompt         TEXT    NOT NULL DEFAULT '',
    embedding_model       TEXT    NOT NULL,
    embedding_dimensions  INTEGER NOT NULL,
    needs_retraining      INTEGER NOT NULL DEFAULT 0,
    last_trained_at       TEXT,
    version               INTEGER NOT NULL DEFAULT 1,
    created_at            TEXT    NOT NULL
);
""",
    """\
CREATE TABLE IF NOT EXISTS sources (
    id               TEXT PRIMARY KEY,
    organization_id  TEXT    NOT NULL,
    agent_id         TEXT    NOT NULL REFERENCES agents(id),
    type             TEXT    NOT NULL,
    name             TEXT    NOT NULL,
    status           TEXT    NOT NULL,
    content          TEXT,
    question         TEXT,
    answer           TEXT,
    url              TEXT,
    crawl_mode       TEXT,
    crawl_limit      INTEGER,
    crawled_pages    INTEGER,
    storage_path     TEXT,
    mime_type        TEXT,
    size_bytes       INTEGER NOT NULL DEFAULT 0,
    content_hash     TEXT,
    embedding_model  TEXT,
    chunk_count      INTEGER NOT NULL DEFAULT 0,
    error_message    TEXT,
    created_at       TEXT    NOT NULL,
    updated_at       TEXT    NOT NULL,
    deleted_at       TEXT
);
""",
    """\
CREATE TABLE IF NOT EXISTS jobs (
    id                TEXT PRIMARY KEY,
    organization_id   TEXT    NOT NULL,
    agent_id          TEXT    NOT NULL,
    source_id         TEXT,
    job_type          TEXT    NOT NULL,
    status            TEXT    NOT NULL,
    idempotency_key   TEXT    NOT NULL UNIQUE,
    attempt_count     INTEGER NOT NULL DEFAULT 0,
    max_attempts      INTEGER NOT NULL,
    progress_current  INTEGER NOT NULL DEFAULT 0,
    progress_total    INTEGER NOT NULL DEFAULT 100,
    progress_message  TEXT    NOT NULL DEFAULT '',
    error_history     TEXT    NOT NULL DEFAULT '[]',
    force             INTEGER NOT NULL DEFAULT 0,
    scheduled_at      TEXT    NOT NULL,
    started_at        TEXT,
    completed_at      TEXT,
    last_heartbeat    TEXT
);
""",
    """\
CREATE TABLE IF NOT EXISTS conversations (
    id               TEXT PRIMARY KEY,
    organization_id  TEXT NOT NULL,
    agent_id         TEXT NOT NULL,
    visitor_id       TEXT NOT NULL,
    agent_config     TEXT NOT NULL,
    created_at       TEXT NOT NULL,
    last_message_at  TEXT NOT NULL
);
""",
    """\
CREATE TABLE IF NOT EXISTS messages (
    id                 TEXT PRIMARY KEY,
    conversation_id    TEXT NOT NULL REFERENCES conversations(id),
    organization_id    TEXT NOT NULL,
    role               TEXT NOT NULL,
    content            TEXT NOT NULL,
    citations          TEXT NOT NULL DEFAULT '[]',
    stream_id          TEXT,
    model              TEXT,
    tokens_prompt      INTEGER,
    tokens_completion  INTEGER,
    latency_ms         INTEGER,
    judge_passed       INTEGER,
    created_at         TEXT NOT NULL
);
""",
    """\
CREATE TABLE IF NOT EXISTS streams (
    id               TEXT PRIMARY KEY,
    message_id       TEXT    NOT NULL,
    organization_id  TEXT    NOT NULL,
    text             TEXT    NOT NULL DEFAULT '',
    status           TEXT    NOT NULL,
    sequence         INTEGER NOT NULL DEFAULT 0,
    updated_at       TEXT    NOT NULL
);
""",
    """\
CREATE TABLE IF NOT EXISTS usage_events (
    id                 TEXT PRIMARY KEY,
    idempotency_key    TEXT    NOT NULL UNIQUE,
    organization_id    TEXT    NOT NULL,
    agent_id           TEXT,
    conversation_id    TEXT,
    message_id         TEXT,
    source_id          TEXT,
    event_type         TEXT    NOT NULL,
    model              TEXT    NOT NULL,
    tokens_prompt      INTEGER NOT NULL DEFAULT 0,
    tokens_completion  INTEGER NOT NULL DEFAULT 0,
    latency_ms         INTEGER,
    created_at         TEXT    NOT NULL
);
""",
]

_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_agents_org ON agents(organization_id);",
    "CREATE INDEX IF NOT EXISTS idx_sources_agent ON sources(organization_id, agent_id);",
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);",
    "CREATE INDEX IF NOT EXISTS idx_jobs_source ON jobs(source_id, scheduled_at);",
    "CREATE INDEX IF NOT EXISTS idx_jobs_org ON jobs(organization_id, status);",
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id);",
    "CREATE INDEX IF NOT EXISTS idx_streams_message ON streams(message_id);",
    "CREATE INDEX IF NOT EXISTS idx_usage_org ON usage_events(organization_id, created_at);",
]


# ---------------------------------------------------------------------------
# Column conversion helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def to_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def from_json(value: str | None, default: Any = None) -> Any:
    if not value:
        return default
    return json.loads(value)


class Database:
    """Owns the SQLite file path and hands out configured connections."""

    def __init__(self, db_path: str | Path, busy_timeout_seconds: float = 30.0) -> None:
        self._db_path = Path(db_path)
        self._busy_timeout = busy_timeout_seconds

    @property
    def path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        """Create all tables and indices if they don't exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute("PRAGMA journal_mode=WAL;")
            for table_sql in _SCHEMA_SQL:
                await db.execute(table_sql)
            for idx_sql in _INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info("database_initialized", path=str(self._db_path))

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection with ``Row`` results and foreign keys enforced."""
        async with aiosqlite.connect(str(self._db_path), timeout=self._busy_timeout) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON;")
            yield db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection inside ``BEGIN IMMEDIATE``.

        The write lock is taken up front, so a read-check-write sequence in
        the block cannot interleave with another writer.  Commits on normal
        exit, rolls back on any exception.
        """
        async with self.connect() as db:
            await db.execute("BEGIN IMMEDIATE;")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()
