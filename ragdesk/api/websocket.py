"""WebSocket endpoint for live event-bus subscriptions.

A client connects to ``/ws/events/{topic}?organization_id=...`` where
*topic* is one of ``org:{id}``, ``source:{id}``, ``job:{id}`` or
``stream:{id}``.  The topic is checked against the caller's organization
before anything is sent.  The last event on the topic is sent right away
so a late subscriber starts from current state; after that every event is
pushed as JSON.
"""

from __future__ import annotations

import contextlib

import structlog
from fastapi import WebSocket, WebSocketDisconnect

from ragdesk.pipeline.event_bus import Event, EventBus
from ragdesk.utils.errors import NotFoundError, RagDeskError, TenantBoundaryError
from ragdesk.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

# Application-defined close codes (4000-4999).
_CLOSE_FORBIDDEN = 4403
_CLOSE_NOT_FOUND = 4404


async def authorize_topic(websocket: WebSocket, topic: str, organization_id: str) -> None:
    """Raise unless *organization_id* owns the entity named by *topic*."""
    kind, _, entity_id = topic.partition(":")
    state = websocket.app.state
    if not entity_id:
        raise NotFoundError(message=f"Unknown topic {topic}")
    if kind == "org":
        if entity_id != organization_id:
            raise TenantBoundaryError(message="Topic belongs to another organization")
    elif kind == "source":
        await state.source_repository.get_scoped(organization_id, None, entity_id)
    elif kind == "job":
        await state.job_tracker.get_scoped(organization_id, entity_id)
    elif kind == "stream":
        await state.conversation_repository.get_stream(organization_id, entity_id)
    else:
        raise NotFoundError(message=f"Unknown topic kind {kind}")


async def websocket_events(websocket: WebSocket, topic: str, organization_id: str = "") -> None:
    """Forward events published on *topic* to the connected client."""
    event_bus: EventBus = websocket.app.state.event_bus

    await websocket.accept()
    try:
        await authorize_topic(websocket, topic, organization_id)
    except RagDeskError as exc:
        code = _CLOSE_NOT_FOUND if isinstance(exc, NotFoundError) else _CLOSE_FORBIDDEN
        _logger.warning("websocket_rejected", topic=topic, error=exc.message)
        await websocket.close(code=code)
        return
    _logger.info("websocket_connected", topic=topic)

    async def _on_event(event: Event) -> None:
        # The socket may close between publish and send; cleanup is in finally.
        with contextlib.suppress(Exception):
            await websocket.send_json(event.model_dump())

    event_bus.subscribe(topic, _on_event)

    try:
        latest = event_bus.latest(topic)
        if latest is not None:
            await websocket.send_json(latest.model_dump())

        while True:
            await websocket.receive_text()

    except WebSocketDisconnect:
        _logger.info("websocket_disconnected", topic=topic)

    finally:
        event_bus.unsubscribe(topic, _on_event)
        _logger.debug("websocket_listener_cleaned_up", topic=topic)
