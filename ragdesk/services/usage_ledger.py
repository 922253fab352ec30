"""Append-only usage ledger with idempotent writes.

``record`` relies on the UNIQUE constraint on ``usage_events.idempotency_key``:
the insert is ``ON CONFLICT DO NOTHING`` and the stored row is read back,
so a retried ingestion step or chat turn never bills twice.
"""

from __future__ import annotations

import uuid

import aiosqlite
import structlog

from ragdesk.models.usage import UsageEvent, UsageEventInput, UsageEventType, UsageTotals
from ragdesk.providers.store.database import Database, from_iso, to_iso, utc_now

logger = structlog.get_logger(logger_name=__name__)

_INSERT_SQL = """\
INSERT INTO usage_events (
    id, idempotency_key, organization_id, agent_id, conversation_id, message_id,
    source_id, event_type, model, tokens_prompt, tokens_completion, latency_ms, created_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(idempotency_key) DO NOTHING;
"""


class UsageLedger:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def record(self, event: UsageEventInput, idempotency_key: str) -> UsageEvent:
        """Insert *event* unless a row with *idempotency_key* already exists.

        Returns the stored row, which is the earlier one on a duplicate.
        """
        async with self._db.connect() as db:
            cursor = await db.execute(
                _INSERT_SQL,
                (
                    str(uuid.uuid4()),
                    idempotency_key,
                    event.organization_id,
                    event.agent_id,
                    event.conversation_id,
                    event.message_id,
                    event.source_id,
                    event.event_type.value,
                    event.model,
                    event.tokens_prompt,
                    event.tokens_completion,
                    event.latency_ms,
                    to_iso(utc_now()),
                ),
            )
            inserted = cursor.rowcount == 1
            await db.commit()
            cursor = await db.execute(
                "SELECT * FROM usage_events WHERE idempotency_key = ?", (idempotency_key,)
            )
            row = await cursor.fetchone()

        if inserted:
            logger.info(
                "usage_recorded",
                organization_id=event.organization_id,
                event_type=event.event_type.value,
                tokens_prompt=event.tokens_prompt,
                tokens_completion=event.tokens_completion,
                idempotency_key=idempotency_key,
            )
        else:
            logger.debug("usage_duplicate_ignored", idempotency_key=idempotency_key)
        return _row_to_event(row)

    async def list_events(self, organization_id: str, limit: int = 100) -> list[UsageEvent]:
        async with self._db.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM usage_events WHERE organization_id = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (organization_id, limit),
            )
            rows = await cursor.fetchall()
        return [_row_to_event(r) for r in rows]

    async def totals(self, organization_id: str) -> UsageTotals:
        async with self._db.connect() as db:
            cursor = await db.execute(
                "SELECT event_type, COUNT(*) AS n, "
                "COALESCE(SUM(tokens_prompt), 0) AS tp, COALESCE(SUM(tokens_completion), 0) AS tc "
                "FROM usage_events WHERE organization_id = ? GROUP BY event_type",
                (organization_id,),
            )
            rows = await cursor.fetchall()
        return UsageTotals(
            organization_id=organization_id,
            events_by_type={r["event_type"]: r["n"] for r in rows},
            tokens_prompt=sum(r["tp"] for r in rows),
            tokens_completion=sum(r["tc"] for r in rows),
        )


def _row_to_event(row: aiosqlite.Row) -> UsageEvent:
    return UsageEvent(
        id=row["id"],
        idempotency_key=row["idempotency_key"],
        organization_id=row["organization_id"],
        agent_id=row["agent_id"],
        conversation_id=row["conversation_id"],
        message_id=row["message_id"],
        source_id=row["source_id"],
        event_type=UsageEventType(row["event_type"]),
        model=row["model"],
        tokens_prompt=row["tokens_prompt"],
        tokens_completion=row["tokens_completion"],
        latency_ms=row["latency_ms"],
        created_at=from_iso(row["created_at"]),
    )
