"""Persistence for conversations, messages and durable generation streams.

Messages are append-only with one exception: an assistant message is
inserted empty when its turn starts and finalized exactly once when the
turn ends.  Partial text between those two writes lives in the
``streams`` table, which a reconnecting client reads to resume.
"""

from __future__ import annotations

from datetime import datetime

import aiosqlite
import structlog

from ragdesk.models.chat import (
    Conversation,
    Message,
    MessageRole,
    StreamCheckpoint,
    StreamStatus,
)
from ragdesk.models.rag import Citation
from ragdesk.models.tenant import AgentConfigSnapshot
from ragdesk.providers.store.database import (
    Database,
    from_iso,
    from_json,
    to_iso,
    to_json,
    utc_now,
)
from ragdesk.utils.errors import NotFoundError, TenantBoundaryError

logger = structlog.get_logger(logger_name=__name__)

_INSERT_MESSAGE_SQL = """\
INSERT INTO messages (
    id, conversation_id, organization_id, role, content, citations, stream_id,
    model, tokens_prompt, tokens_completion, latency_ms, judge_passed, created_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_FINALIZE_MESSAGE_SQL = """\
UPDATE messages
SET content = ?, citations = ?, model = ?, tokens_prompt = ?, tokens_completion = ?,
    latency_ms = ?, judge_passed = ?
WHERE id = ?;
"""


class ConversationRepository:
    """Conversations, their messages, and stream checkpoints."""

    def __init__(self, database: Database) -> None:
        self._db = database

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with self._db.connect() as db:
            await db.execute(
                "INSERT INTO conversations (id, organization_id, agent_id, visitor_id, "
                "agent_config, created_at, last_message_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    conversation.id,
                    conversation.organization_id,
                    conversation.agent_id,
                    conversation.visitor_id,
                    to_json(conversation.agent_config.model_dump()),
                    to_iso(conversation.created_at),
                    to_iso(conversation.last_message_at),
                ),
            )
            await db.commit()
        logger.info(
            "conversation_created",
            conversation_id=conversation.id,
            organization_id=conversation.organization_id,
            agent_id=conversation.agent_id,
        )
        return conversation

    async def get_conversation(
        self,
        organization_id: str,
        conversation_id: str,
        agent_id: str | None = None,
    ) -> Conversation:
        """Fetch a conversation, refusing access across tenants or agents."""
        async with self._db.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            )
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"Conversation {conversation_id} not found")
        if row["organization_id"] != organization_id or (
            agent_id is not None and row["agent_id"] != agent_id
        ):
            raise TenantBoundaryError(
                message=f"Conversation {conversation_id} is outside this organization or agent"
            )
        return Conversation(
            id=row["id"],
            organization_id=row["organization_id"],
            agent_id=row["agent_id"],
            visitor_id=row["visitor_id"],
            agent_config=AgentConfigSnapshot(**from_json(row["agent_config"])),
            created_at=from_iso(row["created_at"]),
            last_message_at=from_iso(row["last_message_at"]),
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_message(self, message: Message) -> Message:
        async with self._db.connect() as db:
            await db.execute(
                _INSERT_MESSAGE_SQL,
                (
                    message.id,
                    message.conversation_id,
                    message.organization_id,
                    message.role.value,
                    message.content,
                    to_json([c.model_dump(mode="json") for c in message.citations]),
                    message.stream_id,
                    message.model,
                    message.tokens_prompt,
                    message.tokens_completion,
                    message.latency_ms,
                    None if message.judge_passed is None else int(message.judge_passed),
                    to_iso(message.created_at),
                ),
            )
            await db.execute(
                "UPDATE conversations SET last_message_at = ? WHERE id = ?",
                (to_iso(message.created_at), message.conversation_id),
            )
            await db.commit()
        return message

    async def finalize_message(
        self,
        message_id: str,
        content: str,
        citations: list[Citation],
        model: str | None,
        tokens_prompt: int | None,
        tokens_completion: int | None,
        latency_ms: int | None,
        judge_passed: bool | None,
    ) -> Message:
        async with self._db.connect() as db:
            await db.execute(
                _FINALIZE_MESSAGE_SQL,
                (
                    content,
                    to_json([c.model_dump(mode="json") for c in citations]),
                    model,
                    tokens_prompt,
                    tokens_completion,
                    latency_ms,
                    None if judge_passed is None else int(judge_passed),
                    message_id,
                ),
            )
            await db.commit()
        return await self.get_message(message_id)

    async def get_message(self, message_id: str) -> Message:
        async with self._db.connect() as db:
            cursor = await db.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"Message {message_id} not found")
        return _row_to_message(row)

    async def list_messages(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        """Messages oldest-first; with *limit*, only the most recent ones."""
        async with self._db.connect() as db:
            if limit is None:
                cursor = await db.execute(
                    "SELECT * FROM messages WHERE conversation_id = ? ORDER BY rowid",
                    (conversation_id,),
                )
            else:
                cursor = await db.execute(
                    "SELECT * FROM (SELECT rowid AS seq, * FROM messages "
                    "WHERE conversation_id = ? ORDER BY rowid DESC LIMIT ?) ORDER BY seq",
                    (conversation_id, limit),
                )
            rows = await cursor.fetchall()
        return [_row_to_message(r) for r in rows]

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def create_stream(self, stream_id: str, message_id: str, organization_id: str) -> StreamCheckpoint:
        now = utc_now()
        async with self._db.connect() as db:
            await db.execute(
                "INSERT INTO streams (id, message_id, organization_id, text, status, sequence, "
                "updated_at) VALUES (?, ?, ?, '', ?, 0, ?)",
                (stream_id, message_id, organization_id, StreamStatus.STREAMING.value, to_iso(now)),
            )
            await db.commit()
        return StreamCheckpoint(
            id=stream_id,
            message_id=message_id,
            organization_id=organization_id,
            updated_at=now,
        )

    async def write_checkpoint(
        self,
        stream_id: str,
        text: str,
        status: StreamStatus = StreamStatus.STREAMING,
    ) -> None:
        async with self._db.connect() as db:
            await db.execute(
                "UPDATE streams SET text = ?, status = ?, sequence = sequence + 1, updated_at = ? "
                "WHERE id = ?",
                (text, status.value, to_iso(utc_now()), stream_id),
            )
            await db.commit()

    async def get_stream(self, organization_id: str, stream_id: str) -> StreamCheckpoint:
        async with self._db.connect() as db:
            cursor = await db.execute("SELECT * FROM streams WHERE id = ?", (stream_id,))
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"Stream {stream_id} not found")
        if row["organization_id"] != organization_id:
            raise TenantBoundaryError(message=f"Stream {stream_id} is outside this organization")
        return StreamCheckpoint(
            id=row["id"],
            message_id=row["message_id"],
            organization_id=row["organization_id"],
            text=row["text"],
            status=StreamStatus(row["status"]),
            sequence=row["sequence"],
            updated_at=from_iso(row["updated_at"]),
        )


def _row_to_message(row: aiosqlite.Row) -> Message:
    judge_passed = row["judge_passed"]
    created_at: datetime = from_iso(row["created_at"])
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        organization_id=row["organization_id"],
        role=MessageRole(row["role"]),
        content=row["content"],
        citations=[Citation(**c) for c in from_json(row["citations"], [])],
        stream_id=row["stream_id"],
        model=row["model"],
        tokens_prompt=row["tokens_prompt"],
        tokens_completion=row["tokens_completion"],
        latency_ms=row["latency_ms"],
        judge_passed=None if judge_passed is None else bool(judge_passed),
        created_at=created_at,
    )
