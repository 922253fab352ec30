"""Explicit publish/subscribe for source, job and stream state changes.

Components that change state publish an :class:`Event` to a topic; anyone
interested (the websocket endpoint, a polling UI, tests) subscribes to that
topic.  Nothing reacts to database writes implicitly.

Topics in use:

- ``source:{id}``  -- source status changes
- ``job:{id}``     -- job transitions and progress
- ``stream:{id}``  -- chat turn phases and durable checkpoints
- ``org:{id}``     -- everything above, fanned out per organization

The last event of each recently active topic is retained (LRU-bounded),
so a subscriber that joins late still learns the current state via :meth:`EventBus.latest`.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

import structlog
from cachetools import LRUCache
from pydantic import BaseModel, ConfigDict, Field

from ragdesk.utils.logging import get_logger


class Event(BaseModel):
    """One state change, as delivered to listeners."""

    model_config = ConfigDict(frozen=True)

    topic: str
    kind: str = Field(description='e.g. "job.progress", "source.status", "stream.checkpoint".')
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


class EventBus:
    """In-process topic-keyed broadcaster.

    Listeners may be sync or async callables taking a single
    :class:`Event`.  A listener that raises is logged and skipped so one
    faulty subscriber cannot block the publisher.
    """

    def __init__(self, max_retained_topics: int = 10_000) -> None:
        self._listeners: dict[str, list[Callable]] = {}
        self._latest: LRUCache = LRUCache(maxsize=max_retained_topics)
        self._logger: structlog.BoundLogger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(
        self,
        topic: str,
        kind: str,
        data: dict[str, Any] | None = None,
        organization_id: str | None = None,
    ) -> Event:
        """Publish to *topic* and, when given, to ``org:{organization_id}``."""
        event = Event(topic=topic, kind=kind, data=data or {})
        self._latest[topic] = event
        self._logger.debug("event_published", topic=topic, kind=kind)
        await self._notify_listeners(topic, event)
        if organization_id:
            await self._notify_listeners(f"org:{organization_id}", event)
        return event

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    def subscribe(self, topic: str, callback: Callable) -> None:
        listeners = self._listeners.setdefault(topic, [])
        if callback not in listeners:
            listeners.append(callback)
            self._logger.debug("listener_registered", topic=topic, total_listeners=len(listeners))

    def unsubscribe(self, topic: str, callback: Callable) -> None:
        listeners = self._listeners.get(topic, [])
        if callback in listeners:
            listeners.remove(callback)
            if not listeners:
                self._listeners.pop(topic, None)
            self._logger.debug("listener_unregistered", topic=topic, remaining_listeners=len(listeners))

    def latest(self, topic: str) -> Event | None:
        return self._latest.get(topic)

    def listener_count(self, topic: str) -> int:
        return len(self._listeners.get(topic, []))

    async def _notify_listeners(self, topic: str, event: Event) -> None:
        for callback in list(self._listeners.get(topic, [])):
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                self._logger.warning(
                    "listener_callback_error",
                    topic=topic,
                    error=str(exc),
                    callback=getattr(callback, "__name__", repr(callback)),
                )
