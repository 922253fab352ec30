"""Background execution of ingestion jobs.

Triggers return as soon as a job row exists; the work itself runs here as
asyncio tasks, bounded by a semaphore so a burst of uploads cannot open an
unbounded number of embedding and crawl connections.  Task references are
held until completion so they are not garbage collected mid-run.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger(logger_name=__name__)


class JobRunner:
    """Runs at most ``concurrency`` jobs at once, one task per job id."""

    def __init__(self, concurrency: int = 4) -> None:
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._retired: set[asyncio.Task[Any]] = set()

    def submit(self, job_id: str, work: Callable[[], Awaitable[Any]]) -> bool:
        """Schedule ``work()`` for *job_id* unless that job is already in flight.

        Returns ``True`` when a new task was created.
        """
        if job_id in self._tasks:
            logger.debug("job_already_scheduled", job_id=job_id)
            return False
        self._track(job_id, asyncio.create_task(self._run(job_id, work), name=f"job:{job_id}"))
        return True

    def resubmit(self, job_id: str, work: Callable[[], Awaitable[Any]]) -> None:
        """Schedule ``work()`` for *job_id* to start once any task still holding it exits.

        Used after an operator requeues a job whose previous task may still
        be alive: that task notices it was superseded at its next checkpoint
        and returns, and only then does the new run start.
        """
        previous = self._tasks.get(job_id)

        async def _after_previous() -> None:
            if previous is not None:
                await asyncio.wait([previous])
            await self._run(job_id, work)

        if previous is not None:
            self._retired.add(previous)
            previous.add_done_callback(self._retired.discard)
            logger.info("job_resubmitted_after_previous", job_id=job_id)
        self._track(job_id, asyncio.create_task(_after_previous(), name=f"job:{job_id}"))

    def _track(self, job_id: str, task: asyncio.Task[Any]) -> None:
        self._tasks[job_id] = task

        def _forget(done: asyncio.Task[Any]) -> None:
            if self._tasks.get(job_id) is done:
                del self._tasks[job_id]

        task.add_done_callback(_forget)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._tasks

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def _run(self, job_id: str, work: Callable[[], Awaitable[Any]]) -> None:
        async with self._semaphore:
            try:
                await work()
            except asyncio.CancelledError:
                logger.info("job_task_cancelled", job_id=job_id)
                raise
            except Exception as exc:
                # The coordinator has already recorded the failure on the job and source.
                logger.error("job_task_failed", job_id=job_id, error=str(exc))

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight jobs to finish (used by tests and graceful shutdown)."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def shutdown(self) -> None:
        """Cancel in-flight tasks; their jobs stay running until requeued."""
        tasks = [*self._tasks.values(), *self._retired]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("job_runner_stopped", cancelled=len(tasks))
