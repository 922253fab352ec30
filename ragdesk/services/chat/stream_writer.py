"""Durable checkpoints for a live generation stream.

Tokens reach the connected client immediately; the database only sees the
accumulated text at sentence boundaries, and only once at least
``min_chars`` new characters have arrived since the last checkpoint.
Writes run on their own task, so a slow disk never stalls the token loop,
and only the newest snapshot is written when several queue up.

With ``persist=False`` (organizations that hold text until it is judged)
nothing is written while tokens arrive; the orchestrator's final write
carries only judged text.
"""

from __future__ import annotations

import asyncio
import re

import structlog

from ragdesk.pipeline.event_bus import EventBus
from ragdesk.providers.store.conversation_repository import ConversationRepository

logger = structlog.get_logger(logger_name=__name__)

# Sentence end (optionally closed by a quote or bracket) or a line break, at the tail.
_BOUNDARY_RE = re.compile(r"(?:[.!?][\"')\]]*|\n)\s*$")


class CheckpointWriter:
    def __init__(
        self,
        conversations: ConversationRepository,
        stream_id: str,
        organization_id: str,
        min_chars: int = 80,
        event_bus: EventBus | None = None,
        persist: bool = True,
    ) -> None:
        self._conversations = conversations
        self._stream_id = stream_id
        self._organization_id = organization_id
        self._min_chars = min_chars
        self._event_bus = event_bus
        self._persist = persist
        self._text = ""
        self._marked = 0
        self._snapshot: str | None = None
        self._wake = asyncio.Event()
        self._closed = False
        self._writes = 0
        self._task = asyncio.create_task(self._loop(), name=f"checkpoint:{stream_id}")

    @property
    def text(self) -> str:
        return self._text

    @property
    def writes(self) -> int:
        return self._writes

    def feed(self, delta: str) -> None:
        """Append streamed text; mark a checkpoint when a sentence closes."""
        self._text += delta
        if not self._persist:
            return
        if len(self._text) - self._marked >= self._min_chars and _BOUNDARY_RE.search(self._text[-4:]):
            self._marked = len(self._text)
            self._snapshot = self._text
            self._wake.set()

    async def close(self) -> None:
        """Stop after writing any checkpoint already marked."""
        self._closed = True
        self._wake.set()
        await self._task

    async def _loop(self) -> None:
        while True:
            await self._wake.wait()
            self._wake.clear()
            snapshot, self._snapshot = self._snapshot, None
            if snapshot is not None:
                await self._write(snapshot)
            if self._closed and self._snapshot is None:
                return

    async def _write(self, text: str) -> None:
        try:
            await self._conversations.write_checkpoint(self._stream_id, text)
        except Exception as exc:
            # The final write at the end of the turn still persists the full text.
            logger.warning("stream_checkpoint_failed", stream_id=self._stream_id, error=str(exc))
            return
        self._writes += 1
        logger.debug("stream_checkpoint_written", stream_id=self._stream_id, chars=len(text))
        if self._event_bus is not None:
            await self._event_bus.publish(
                f"stream:{self._stream_id}",
                "stream.checkpoint",
                {"stream_id": self._stream_id, "chars": len(text), "sequence": self._writes},
                organization_id=self._organization_id,
            )
