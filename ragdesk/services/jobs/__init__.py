"""Job tracking for asynchronous ingestion work."""

from ragdesk.services.jobs.job_tracker import JobTracker

__all__ = ["JobTracker"]
