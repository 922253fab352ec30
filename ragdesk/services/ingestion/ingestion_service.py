"""Ingestion coordinator: drives one source from ``pending`` to ``ready``.

Pipeline stages: **acquire -> fingerprint -> chunk -> embed -> store**.

Every stage is a checkpoint reported to the job tracker, so progress is
monotonic and the heartbeat stays fresh:

=====  ===========================================
  10   source marked ``processing``, acquiring
  40   content acquired
  50   chunked
  80   embedded
  95   chunks stored
 100   source ``ready``, job completed
=====  ===========================================

Between checkpoints the crawler and the embedder heartbeat after every
breadth-first level and every batch, so a long step is not mistaken for
a stuck job.

Cancellation is cooperative: the job row is checked at every checkpoint,
and nothing is written to the vector store after a cancel is observed.
An attempt that finds its job no longer ``running`` (requeued by an
operator) stops without recording a failure; the requeued run takes over.

Retry policy
------------
A :class:`RetryableError` (embedding, LLM, crawl, vector store) fails the
attempt through :meth:`JobTracker.fail`; while attempts remain the job goes
back to ``pending`` and is re-run after an exponential backoff, with the
source left in ``processing``.  Anything else (zero pages, zero chunks,
an unsupported file, a dimension mismatch) fails the job terminally.  In
both terminal cases the source is marked ``failed`` with the error message
and the exception is re-raised to whoever awaited :meth:`run`.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable

import structlog

from ragdesk.interfaces.vector_store_provider import IVectorStoreProvider
from ragdesk.models.job import IngestionTrigger, Job, JobStatus, JobType
from ragdesk.models.rag import Chunk
from ragdesk.models.source import Source, SourceStatus, SourceType
from ragdesk.models.tenant import Agent
from ragdesk.models.usage import UsageEventInput, UsageEventType
from ragdesk.pipeline.event_bus import EventBus
from ragdesk.pipeline.job_runner import JobRunner
from ragdesk.providers.store.account_repository import AccountRepository
from ragdesk.providers.store.source_repository import SourceRepository
from ragdesk.services.ingestion.chunker import TextChunker
from ragdesk.services.ingestion.embedding_generator import EmbeddingGenerator
from ragdesk.services.ingestion.fingerprint import fingerprint
from ragdesk.services.ingestion.source_acquirer import SourceAcquirer
from ragdesk.services.jobs.job_tracker import JobTracker
from ragdesk.services.usage_ledger import UsageLedger
from ragdesk.utils.errors import (
    ContentError,
    InvalidTransitionError,
    JobCancelledError,
    RetryableError,
)

logger = structlog.get_logger(logger_name=__name__)

JOB_TYPE_BY_SOURCE: dict[SourceType, JobType] = {
    SourceType.FILE: JobType.FILE_PROCESSING,
    SourceType.WEBSITE: JobType.WEB_SCRAPING,
    SourceType.TEXT: JobType.TEXT_SNIPPET,
    SourceType.QA: JobType.QA_PAIR,
}


def size_kb(size_bytes: int) -> int:
    return math.ceil(size_bytes / 1024) if size_bytes > 0 else 0


class IngestionCoordinator:
    """Creates ingestion jobs and runs them against the pipeline stages.

    All collaborators are injected; ``runner`` is optional so tests can
    await :meth:`run` directly instead of going through background tasks.
    """

    def __init__(
        self,
        sources: SourceRepository,
        accounts: AccountRepository,
        tracker: JobTracker,
        acquirer: SourceAcquirer,
        chunker: TextChunker,
        embedder: EmbeddingGenerator,
        vector_store: IVectorStoreProvider,
        ledger: UsageLedger,
        event_bus: EventBus | None = None,
        runner: JobRunner | None = None,
        retry_backoff_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._sources = sources
        self._accounts = accounts
        self._tracker = tracker
        self._acquirer = acquirer
        self._chunker = chunker
        self._embedder = embedder
        self._store = vector_store
        self._ledger = ledger
        self._event_bus = event_bus
        self._runner = runner
        self._backoff = retry_backoff_seconds
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Trigger boundary
    # ------------------------------------------------------------------

    async def trigger(self, request: IngestionTrigger, job_type: JobType | None = None) -> Job:
        """Register (or find) the job for *request* and schedule it.

        Returns without waiting for the job to run.  A duplicate trigger
        with the same idempotency key gets the existing job back and does
        not schedule a second run of it.
        An explicit ``job_id`` (an operator requeue) always schedules a run,
        queued behind any task still holding that job.
        """
        source = await self._sources.get_scoped(
            request.organization_id, request.agent_id, request.source_id
        )
        if request.job_id:
            job = await self._tracker.get_scoped(request.organization_id, request.job_id)
            created = False
        else:
            job, created = await self._tracker.create(
                organization_id=request.organization_id,
                agent_id=request.agent_id,
                source_id=source.id,
                job_type=job_type or JOB_TYPE_BY_SOURCE[source.type],
                idempotency_key=request.idempotency_key,
                force=request.force,
            )

        if self._runner is not None and not job.status.is_terminal:
            job_id = job.id
            if request.job_id:
                self._runner.resubmit(job_id, lambda: self.run(job_id))
            else:
                self._runner.submit(job_id, lambda: self.run(job_id))
        logger.info(
            "ingestion_triggered",
            job_id=job.id,
            source_id=source.id,
            created=created,
            status=job.status.value,
        )
        return job

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(self, job_id: str) -> Job:
        """Run *job_id* to a terminal state, retrying transient failures."""
        job = await self._tracker.get(job_id)
        while not job.status.is_terminal:
            try:
                job = await self._tracker.start(job_id)
            except InvalidTransitionError:
                # Cancelled, or picked up elsewhere, between reads.
                return await self._tracker.get(job_id)

            try:
                await self._process(job)
            except JobCancelledError:
                return await self._handle_cancelled(job)
            except Exception as exc:
                if await self._tracker.is_cancelled(job_id):
                    return await self._handle_cancelled(job)
                current = await self._tracker.get(job_id)
                if current.status is not JobStatus.RUNNING:
                    # Requeued while this attempt was still alive; the next run owns the job.
                    logger.warning(
                        "ingestion_attempt_superseded",
                        job_id=job_id,
                        status=current.status.value,
                        error=str(exc),
                    )
                    return current
                outcome = await self._tracker.fail(
                    job_id, str(exc), retryable=isinstance(exc, RetryableError)
                )
                if outcome.will_retry:
                    delay = self._backoff * (2 ** (outcome.job.attempt_count - 1))
                    logger.info("ingestion_retry_scheduled", job_id=job_id, delay_seconds=delay)
                    await self._sleep(delay)
                    job = await self._tracker.get(job_id)
                    continue
                await self._mark_source_failed(job, str(exc))
                raise
            return await self._complete(job)
        return job

    async def _complete(self, job: Job) -> Job:
        try:
            return await self._tracker.complete(job.id)
        except InvalidTransitionError:
            # Cancelled or requeued after the last checkpoint; the chunks are already stored.
            current = await self._tracker.get(job.id)
            logger.info(
                "ingestion_completion_skipped", job_id=job.id, status=current.status.value
            )
            return current

    async def _handle_cancelled(self, job: Job) -> Job:
        logger.info("ingestion_cancelled", job_id=job.id, source_id=job.source_id)
        await self._mark_source_failed(job, "Ingestion was cancelled")
        return await self._tracker.get(job.id)

    async def _process(self, job: Job) -> None:
        source = await self._sources.get_scoped(job.organization_id, job.agent_id, job.source_id)
        if source.is_deleted:
            raise ContentError(message="Source was deleted before ingestion ran")
        agent = await self._accounts.get_agent(job.organization_id, job.agent_id)

        async def heartbeat() -> None:
            await self._tracker.heartbeat(job.id)

        source = await self._begin_processing(source)
        await self._checkpoint(job, 10, "Acquiring content")
        acquired = await self._acquirer.acquire(source, heartbeat=heartbeat)
        await self._checkpoint(job, 40, f"Acquired {len(acquired.segments)} segment(s)")

        content_hash = fingerprint(acquired.combined_text)
        if not job.force and await self._is_unchanged(source, agent, content_hash):
            await self._finish_source(
                source,
                agent,
                source.chunk_count,
                content_hash,
                acquired.size_bytes,
                acquired.crawled_pages,
            )
            logger.info("ingestion_skipped_unchanged", job_id=job.id, source_id=source.id)
            return

        chunks_text: list[tuple[int | None, str | None, str, int]] = []
        for segment in acquired.segments:
            for span in self._chunker.chunk(segment.text):
                chunks_text.append((segment.page_number, segment.url, span.text, span.token_count))
        if not chunks_text:
            raise ContentError(message=f"Source {source.name} produced no chunks")
        await self._checkpoint(job, 50, f"Split into {len(chunks_text)} chunks")

        embedded = await self._embedder.generate(
            [text for _, _, text, _ in chunks_text],
            agent.embedding_model,
            agent.embedding_dimensions,
            heartbeat=heartbeat,
        )
        await self._checkpoint(job, 80, f"Embedded {len(embedded.vectors)} chunks")

        created_at = time.time()
        chunks = [
            Chunk(
                id=f"{source.id}:{index}",
                organization_id=source.organization_id,
                agent_id=source.agent_id,
                source_id=source.id,
                source_type=source.type,
                source_name=source.name,
                chunk_index=index,
                text=text,
                token_count=token_count,
                embedding=vector.vector,
                embedding_model=vector.model,
                page_number=page_number,
                url=url,
                created_at=created_at,
            )
            for index, ((page_number, url, text, token_count), vector) in enumerate(
                zip(chunks_text, embedded.vectors)
            )
        ]
        await self._ensure_not_cancelled(job)
        await self._store.delete_by_source(source.id)
        await self._store.upsert(chunks)
        await self._checkpoint(job, 95, "Stored chunks")

        await self._ledger.record(
            UsageEventInput(
                organization_id=source.organization_id,
                agent_id=source.agent_id,
                source_id=source.id,
                event_type=UsageEventType.EMBEDDING,
                model=agent.embedding_model,
                tokens_prompt=embedded.tokens,
            ),
            idempotency_key=f"source:{source.id}:embed:{agent.embedding_model}:{content_hash}",
        )
        await self._finish_source(
            source, agent, len(chunks), content_hash, acquired.size_bytes, acquired.crawled_pages
        )

    # ------------------------------------------------------------------
    # Agent retraining flag
    # ------------------------------------------------------------------

    async def refresh_agent_training(self, organization_id: str, agent_id: str) -> bool:
        """Clear ``needs_retraining`` when every live source is embedded and current.

        Returns the flag's value afterwards.  A stale agent stays flagged;
        this method never sets the flag.
        """
        agent = await self._accounts.get_agent(organization_id, agent_id)
        sources = await self._sources.list_for_agent(organization_id, agent_id)
        current = all(
            s.status is SourceStatus.READY and s.embedding_model == agent.embedding_model
            for s in sources
        )
        if current and agent.needs_retraining:
            await self._accounts.set_needs_retraining(agent_id, False)
            return False
        return agent.needs_retraining

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _is_unchanged(self, source: Source, agent: Agent, content_hash: str) -> bool:
        if source.content_hash != content_hash or source.embedding_model != agent.embedding_model:
            return False
        stored = await self._store.count_by_source(source.id)
        return stored > 0 and stored == source.chunk_count

    async def _begin_processing(self, source: Source) -> Source:
        if source.status is SourceStatus.PROCESSING:
            # A retried attempt of the job that moved it there.
            return source
        if source.status in (SourceStatus.READY, SourceStatus.FAILED):
            source = await self._sources.transition(source.id, SourceStatus.PENDING)
        source = await self._sources.transition(source.id, SourceStatus.PROCESSING)
        await self._publish_source(source)
        return source

    async def _finish_source(
        self,
        source: Source,
        agent: Agent,
        chunk_count: int,
        content_hash: str,
        size_bytes: int,
        crawled_pages: int | None,
    ) -> None:
        ready = await self._sources.transition(
            source.id,
            SourceStatus.READY,
            content_hash=content_hash,
            embedding_model=agent.embedding_model,
            chunk_count=chunk_count,
            crawled_pages=crawled_pages,
            size_bytes=size_bytes,
        )
        delta_kb = size_kb(size_bytes) - size_kb(source.size_bytes)
        if delta_kb:
            await self._accounts.adjust_storage(source.organization_id, delta_kb)
        await self.refresh_agent_training(source.organization_id, source.agent_id)
        logger.info(
            "source_ready",
            source_id=source.id,
            chunk_count=chunk_count,
            content_hash=content_hash[:12],
        )
        await self._publish_source(ready)

    async def _mark_source_failed(self, job: Job, message: str) -> None:
        try:
            source = await self._sources.get(job.source_id)
            if source.status is SourceStatus.PENDING:
                source = await self._sources.transition(source.id, SourceStatus.PROCESSING)
            if source.status is SourceStatus.PROCESSING:
                source = await self._sources.transition(
                    source.id, SourceStatus.FAILED, error_message=message
                )
                await self._publish_source(source)
        except InvalidTransitionError as exc:
            # Deleted while the job was running; nothing left to mark.
            logger.warning("source_fail_mark_skipped", source_id=job.source_id, reason=str(exc))

    async def _checkpoint(self, job: Job, progress: int, message: str) -> None:
        await self._ensure_not_cancelled(job)
        try:
            await self._tracker.update_progress(job.id, progress, message)
        except InvalidTransitionError as exc:
            if await self._tracker.is_cancelled(job.id):
                raise JobCancelledError() from exc
            raise

    async def _ensure_not_cancelled(self, job: Job) -> None:
        if await self._tracker.is_cancelled(job.id):
            raise JobCancelledError()

    async def _publish_source(self, source: Source) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(
            f"source:{source.id}",
            f"source.{source.status.value}",
            {
                "source_id": source.id,
                "status": source.status.value,
                "chunk_count": source.chunk_count,
                "error_message": source.error_message,
            },
            organization_id=source.organization_id,
        )
