"""Persistence for knowledge sources.

Status changes go through :meth:`SourceRepository.transition`, which checks
:data:`~ragdesk.models.source.SOURCE_TRANSITIONS` inside a write
transaction, so an illegal edge is rejected no matter who asks for it.
"""

from __future__ import annotations

from typing import Any

import aiosqlite
import structlog

from ragdesk.models.source import (
    CrawlMode,
    Source,
    SourceStatus,
    SourceType,
    can_transition,
)
from ragdesk.providers.store.database import Database, from_iso, to_iso, utc_now
from ragdesk.utils.errors import InvalidTransitionError, NotFoundError, TenantBoundaryError

logger = structlog.get_logger(logger_name=__name__)

_INSERT_SQL = """\
INSERT INTO sources (
    id, organization_id, agent_id, type, name, status, content, question, answer,
    url, crawl_mode, crawl_limit, storage_path, mime_type, size_bytes,
    created_at, updated_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

# Columns a status transition may set alongside the status itself.
_TRANSITION_FIELDS = frozenset(
    {
        "error_message",
        "content_hash",
        "embedding_model",
        "chunk_count",
        "crawled_pages",
        "size_bytes",
    }
)


class SourceRepository:
    """CRUD and lifecycle writes for the ``sources`` table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create(self, source: Source) -> Source:
        async with self._db.connect() as db:
            await db.execute(
                _INSERT_SQL,
                (
                    source.id,
                    source.organization_id,
                    source.agent_id,
                    source.type.value,
                    source.name,
                    source.status.value,
                    source.content,
                    source.question,
                    source.answer,
                    source.url,
                    source.crawl_mode.value if source.crawl_mode else None,
                    source.crawl_limit,
                    source.storage_path,
                    source.mime_type,
                    source.size_bytes,
                    to_iso(source.created_at),
                    to_iso(source.updated_at),
                ),
            )
            await db.commit()
        logger.info(
            "source_registered",
            source_id=source.id,
            organization_id=source.organization_id,
            agent_id=source.agent_id,
            source_type=source.type.value,
        )
        return source

    async def get(self, source_id: str) -> Source:
        async with self._db.connect() as db:
            cursor = await db.execute("SELECT * FROM sources WHERE id = ?", (source_id,))
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"Source {source_id} not found")
        return _row_to_source(row)

    async def get_scoped(self, organization_id: str, agent_id: str | None, source_id: str) -> Source:
        """Fetch a source, rejecting access from a different tenant or agent."""
        source = await self.get(source_id)
        if source.organization_id != organization_id or (
            agent_id is not None and source.agent_id != agent_id
        ):
            raise TenantBoundaryError(
                message=f"Source {source_id} is outside organization {organization_id}"
            )
        return source

    async def list_for_agent(
        self,
        organization_id: str,
        agent_id: str,
        include_deleted: bool = False,
    ) -> list[Source]:
        sql = "SELECT * FROM sources WHERE organization_id = ? AND agent_id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        sql += " ORDER BY created_at"
        async with self._db.connect() as db:
            cursor = await db.execute(sql, (organization_id, agent_id))
            rows = await cursor.fetchall()
        return [_row_to_source(r) for r in rows]

    async def live_source_ids(self, organization_id: str, agent_id: str) -> set[str]:
        """Ids of the agent's sources that have not been soft-deleted."""
        async with self._db.connect() as db:
            cursor = await db.execute(
                "SELECT id FROM sources WHERE organization_id = ? AND agent_id = ? "
                "AND deleted_at IS NULL",
                (organization_id, agent_id),
            )
            rows = await cursor.fetchall()
        return {r["id"] for r in rows}

    async def transition(
        self,
        source_id: str,
        target: SourceStatus,
        **fields: Any,
    ) -> Source:
        """Move a source to *target*, optionally updating lifecycle columns.

        Raises
        ------
        InvalidTransitionError
            If the current status cannot reach *target*, or the source has
            been soft-deleted.
        """
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot set {sorted(unknown)} through a transition")

        async with self._db.transaction() as db:
            cursor = await db.execute(
                "SELECT status, deleted_at FROM sources WHERE id = ?", (source_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(message=f"Source {source_id} not found")
            current = SourceStatus(row["status"])
            if row["deleted_at"] is not None:
                raise InvalidTransitionError(message=f"Source {source_id} has been deleted")
            if not can_transition(current, target):
                raise InvalidTransitionError(
                    message=f"Source {source_id} cannot move from {current.value} to {target.value}"
                )

            if target is SourceStatus.PENDING or target is SourceStatus.PROCESSING:
                fields.setdefault("error_message", None)

            assignments = ["status = ?", "updated_at = ?"]
            params: list[Any] = [target.value, to_iso(utc_now())]
            for column, value in fields.items():
                assignments.append(f"{column} = ?")
                params.append(value)
            params.append(source_id)
            await db.execute(
                f"UPDATE sources SET {', '.join(assignments)} WHERE id = ?",  # noqa: S608
                params,
            )

        logger.info(
            "source_status_changed",
            source_id=source_id,
            from_status=current.value,
            to_status=target.value,
        )
        return await self.get(source_id)

    async def update_manual_content(
        self,
        source_id: str,
        content: str | None = None,
        question: str | None = None,
        answer: str | None = None,
        size_bytes: int = 0,
    ) -> Source:
        """Replace the literal content of a text or Q&A source."""
        async with self._db.connect() as db:
            await db.execute(
                "UPDATE sources SET content = ?, question = ?, answer = ?, size_bytes = ?, "
                "updated_at = ? WHERE id = ?",
                (content, question, answer, size_bytes, to_iso(utc_now()), source_id),
            )
            await db.commit()
        return await self.get(source_id)

    async def soft_delete(self, source_id: str) -> Source:
        async with self._db.connect() as db:
            now = to_iso(utc_now())
            await db.execute(
                "UPDATE sources SET deleted_at = ?, updated_at = ? "
                "WHERE id = ? AND deleted_at IS NULL",
                (now, now, source_id),
            )
            await db.commit()
        logger.info("source_soft_deleted", source_id=source_id)
        return await self.get(source_id)


def _row_to_source(row: aiosqlite.Row) -> Source:
    return Source(
        id=row["id"],
        organization_id=row["organization_id"],
        agent_id=row["agent_id"],
        type=SourceType(row["type"]),
        name=row["name"],
        status=SourceStatus(row["status"]),
        content=row["content"],
        question=row["question"],
        answer=row["answer"],
        url=row["url"],
        crawl_mode=CrawlMode(row["crawl_mode"]) if row["crawl_mode"] else None,
        crawl_limit=row["crawl_limit"],
        crawled_pages=row["crawled_pages"],
        storage_path=row["storage_path"],
        mime_type=row["mime_type"],
        size_bytes=row["size_bytes"],
        content_hash=row["content_hash"],
        embedding_model=row["embedding_model"],
        chunk_count=row["chunk_count"],
        error_message=row["error_message"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        deleted_at=from_iso(row["deleted_at"]),
    )
