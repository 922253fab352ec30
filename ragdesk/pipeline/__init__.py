"""In-process plumbing: the event bus and the background job runner."""

from ragdesk.pipeline.event_bus import Event, EventBus
from ragdesk.pipeline.job_runner import JobRunner

__all__ = ["Event", "EventBus", "JobRunner"]
