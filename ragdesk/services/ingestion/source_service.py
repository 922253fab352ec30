"""Source registration and lifecycle operations.

Each operation that changes what an agent knows ends by handing an
:class:`IngestionTrigger` to the coordinator, with an idempotency key that
identifies the logical unit of work:

==========================  ===================================================
Operation                   Idempotency key
==========================  ===================================================
register                    ``source:{id}:initial``
edit text / Q&A             ``source:{id}:rev:{updated_at}``
retry a failed source       ``source:{id}:retry:{updated_at of the failure}``
agent retrain               ``agent:{agentId}:retrain:{version}:source:{id}:{updated_at}``
==========================  ===================================================

Repeating any of these for the same state yields the same key, so a
double-clicked button or a retried HTTP request never starts a second job.
"""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from urllib.parse import urlparse

import structlog

from ragdesk.interfaces.vector_store_provider import IVectorStoreProvider
from ragdesk.models.job import IngestionTrigger, Job, JobStatus, JobType
from ragdesk.models.source import CrawlMode, Source, SourceStatus, SourceType
from ragdesk.pipeline.event_bus import EventBus
from ragdesk.providers.store.account_repository import AccountRepository
from ragdesk.providers.store.database import to_iso, utc_now
from ragdesk.providers.store.source_repository import SourceRepository
from ragdesk.services.ingestion.ingestion_service import IngestionCoordinator, size_kb
from ragdesk.services.ingestion.source_acquirer import SUPPORTED_MIME_TYPES, format_qa
from ragdesk.services.jobs.job_tracker import JobTracker
from ragdesk.utils.errors import ContentError, InvalidTransitionError, StorageQuotaExceededError

logger = structlog.get_logger(logger_name=__name__)


class SourceService:
    """Registers, edits, deletes and retries sources; retrains agents."""

    def __init__(
        self,
        sources: SourceRepository,
        accounts: AccountRepository,
        tracker: JobTracker,
        coordinator: IngestionCoordinator,
        vector_store: IVectorStoreProvider,
        upload_dir: str | Path,
        crawl_default_limit: int = 10,
        event_bus: EventBus | None = None,
    ) -> None:
        self._sources = sources
        self._accounts = accounts
        self._tracker = tracker
        self._coordinator = coordinator
        self._store = vector_store
        self._upload_dir = Path(upload_dir)
        self._crawl_default_limit = crawl_default_limit
        self._event_bus = event_bus

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register_text(
        self, organization_id: str, agent_id: str, name: str, content: str
    ) -> tuple[Source, Job]:
        if not content.strip():
            raise ContentError(message="Text source is empty")
        return await self._register(
            organization_id,
            agent_id,
            SourceType.TEXT,
            name,
            size_bytes=len(content.encode("utf-8")),
            content=content,
        )

    async def register_qa(
        self, organization_id: str, agent_id: str, question: str, answer: str, name: str | None = None
    ) -> tuple[Source, Job]:
        if not question.strip() or not answer.strip():
            raise ContentError(message="Q&A source needs both a question and an answer")
        return await self._register(
            organization_id,
            agent_id,
            SourceType.QA,
            name or question.strip()[:80],
            size_bytes=len(format_qa(question, answer).encode("utf-8")),
            question=question,
            answer=answer,
        )

    async def register_website(
        self,
        organization_id: str,
        agent_id: str,
        url: str,
        crawl_mode: CrawlMode = CrawlMode.SCRAPE,
        crawl_limit: int | None = None,
        name: str | None = None,
    ) -> tuple[Source, Job]:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ContentError(message=f"Not an http(s) URL: {url}")
        limit = 1 if crawl_mode is CrawlMode.SCRAPE else (crawl_limit or self._crawl_default_limit)
        return await self._register(
            organization_id,
            agent_id,
            SourceType.WEBSITE,
            name or parsed.netloc,
            size_bytes=0,
            url=url,
            crawl_mode=crawl_mode,
            crawl_limit=limit,
        )

    async def register_file(
        self,
        organization_id: str,
        agent_id: str,
        filename: str,
        mime_type: str,
        data: bytes,
    ) -> tuple[Source, Job]:
        base_type = mime_type.split(";")[0].strip().lower()
        if base_type not in SUPPORTED_MIME_TYPES:
            raise ContentError(message=f"Unsupported file type: {mime_type}")
        if not data:
            raise ContentError(message=f"{filename} is empty")

        source_id = str(uuid.uuid4())
        safe_name = Path(filename).name or "upload"
        path = self._upload_dir / organization_id / source_id / safe_name
        await self._check_quota(organization_id, len(data))
        await asyncio.to_thread(_write_upload, path, data)
        return await self._register(
            organization_id,
            agent_id,
            SourceType.FILE,
            safe_name,
            size_bytes=len(data),
            source_id=source_id,
            storage_path=str(path),
            mime_type=base_type,
        )

    async def _register(
        self,
        organization_id: str,
        agent_id: str,
        source_type: SourceType,
        name: str,
        size_bytes: int,
        source_id: str | None = None,
        **fields: object,
    ) -> tuple[Source, Job]:
        # Tenant check before anything is written.
        await self._accounts.get_agent(organization_id, agent_id)
        await self._check_quota(organization_id, size_bytes)

        now = utc_now()
        source = Source(
            id=source_id or str(uuid.uuid4()),
            organization_id=organization_id,
            agent_id=agent_id,
            type=source_type,
            name=name,
            size_bytes=size_bytes,
            created_at=now,
            updated_at=now,
            **fields,
        )
        await self._sources.create(source)
        if size_bytes:
            await self._accounts.adjust_storage(organization_id, size_kb(size_bytes))
        await self._accounts.set_needs_retraining(agent_id, True)

        job = await self._coordinator.trigger(
            IngestionTrigger(
                source_id=source.id,
                organization_id=organization_id,
                agent_id=agent_id,
                idempotency_key=f"source:{source.id}:initial",
            )
        )
        return source, job

    # ------------------------------------------------------------------
    # Manual content edits
    # ------------------------------------------------------------------

    async def update_text(
        self, organization_id: str, source_id: str, content: str
    ) -> tuple[Source, Job]:
        if not content.strip():
            raise ContentError(message="Text source is empty")
        source = await self._editable(organization_id, source_id, SourceType.TEXT)
        return await self._apply_edit(source, len(content.encode("utf-8")), content=content)

    async def update_qa(
        self, organization_id: str, source_id: str, question: str, answer: str
    ) -> tuple[Source, Job]:
        if not question.strip() or not answer.strip():
            raise ContentError(message="Q&A source needs both a question and an answer")
        source = await self._editable(organization_id, source_id, SourceType.QA)
        return await self._apply_edit(
            source,
            len(format_qa(question, answer).encode("utf-8")),
            question=question,
            answer=answer,
        )

    async def _editable(self, organization_id: str, source_id: str, expected: SourceType) -> Source:
        source = await self._sources.get_scoped(organization_id, None, source_id)
        if source.type is not expected:
            raise ContentError(message=f"Source {source_id} is a {source.type.value} source")
        if source.is_deleted:
            raise InvalidTransitionError(message=f"Source {source_id} has been deleted")
        if source.status is SourceStatus.PROCESSING:
            raise InvalidTransitionError(
                message=f"Source {source_id} is being processed; edit it once ingestion finishes"
            )
        return source

    async def _apply_edit(
        self,
        source: Source,
        size_bytes: int,
        content: str | None = None,
        question: str | None = None,
        answer: str | None = None,
    ) -> tuple[Source, Job]:
        await self._check_quota(source.organization_id, size_bytes - source.size_bytes)
        await self._sources.update_manual_content(
            source.id, content=content, question=question, answer=answer, size_bytes=size_bytes
        )
        if source.status is not SourceStatus.PENDING:
            await self._sources.transition(source.id, SourceStatus.PENDING)
        delta_kb = size_kb(size_bytes) - size_kb(source.size_bytes)
        if delta_kb:
            await self._accounts.adjust_storage(source.organization_id, delta_kb)
        await self._accounts.set_needs_retraining(source.agent_id, True)

        updated = await self._sources.get(source.id)
        logger.info("source_content_updated", source_id=source.id, source_type=source.type.value)
        job = await self._coordinator.trigger(
            IngestionTrigger(
                source_id=source.id,
                organization_id=source.organization_id,
                agent_id=source.agent_id,
                idempotency_key=f"source:{source.id}:rev:{to_iso(updated.updated_at)}",
            )
        )
        return updated, job

    # ------------------------------------------------------------------
    # Delete / retry
    # ------------------------------------------------------------------

    async def delete_source(self, organization_id: str, source_id: str) -> Source:
        """Soft-delete a source and remove its chunks from the vector store."""
        source = await self._sources.get_scoped(organization_id, None, source_id)
        if source.is_deleted:
            return source

        latest = await self._tracker.get_latest_for_source(source_id)
        if latest is not None and not latest.status.is_terminal:
            await self._tracker.cancel(latest.id)

        deleted = await self._sources.soft_delete(source_id)
        removed = await self._store.delete_by_source(source_id)
        if source.size_bytes:
            await self._accounts.adjust_storage(organization_id, -size_kb(source.size_bytes))
        await self._coordinator.refresh_agent_training(organization_id, source.agent_id)

        logger.info("source_deleted", source_id=source_id, chunks_removed=removed)
        if self._event_bus is not None:
            await self._event_bus.publish(
                f"source:{source_id}",
                "source.deleted",
                {"source_id": source_id, "chunks_removed": removed},
                organization_id=organization_id,
            )
        return deleted

    async def retry_source(self, organization_id: str, source_id: str) -> tuple[Source, Job]:
        source = await self._sources.get_scoped(organization_id, None, source_id)
        if source.status is not SourceStatus.FAILED:
            raise InvalidTransitionError(
                message=f"Only failed sources can be retried; {source_id} is {source.status.value}"
            )
        key = f"source:{source_id}:retry:{to_iso(source.updated_at)}"
        pending = await self._sources.transition(source_id, SourceStatus.PENDING)
        job = await self._coordinator.trigger(
            IngestionTrigger(
                source_id=source_id,
                organization_id=organization_id,
                agent_id=source.agent_id,
                idempotency_key=key,
            )
        )
        return pending, job

    # ------------------------------------------------------------------
    # Agent retraining
    # ------------------------------------------------------------------

    async def retrain_agent(self, organization_id: str, agent_id: str, force: bool = False) -> list[Job]:
        """Queue ingestion for every source that is not current.

        With ``force`` every live source is re-embedded, which is what an
        embedding model change requires.  Sources that already have a live
        job are left to it.  The key carries the source's ``updated_at``, so a
        retrain after an earlier one failed or finished starts a fresh job.
        """
        agent = await self._accounts.get_agent(organization_id, agent_id)
        jobs: list[Job] = []
        for source in await self._sources.list_for_agent(organization_id, agent_id):
            current = (
                source.status is SourceStatus.READY
                and source.embedding_model == agent.embedding_model
            )
            if current and not force:
                continue
            latest = await self._tracker.get_latest_for_source(source.id)
            if latest is not None and latest.status in (JobStatus.PENDING, JobStatus.RUNNING):
                continue
            job = await self._coordinator.trigger(
                IngestionTrigger(
                    source_id=source.id,
                    organization_id=organization_id,
                    agent_id=agent_id,
                    idempotency_key=(
                        f"agent:{agent_id}:retrain:{agent.version}:source:{source.id}"
                        f":{to_iso(source.updated_at)}"
                    ),
                    force=force,
                ),
                job_type=JobType.AGENT_RETRAIN,
            )
            jobs.append(job)

        if not jobs:
            await self._coordinator.refresh_agent_training(organization_id, agent_id)
        logger.info("agent_retrain_queued", agent_id=agent_id, jobs=len(jobs), force=force)
        return jobs

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _check_quota(self, organization_id: str, additional_bytes: int) -> None:
        if additional_bytes <= 0:
            return
        org = await self._accounts.get_organization(organization_id)
        if org.storage_used_kb + size_kb(additional_bytes) > org.storage_limit_kb:
            logger.warning(
                "storage_quota_exceeded",
                organization_id=organization_id,
                used_kb=org.storage_used_kb,
                limit_kb=org.storage_limit_kb,
            )
            raise StorageQuotaExceededError()


def _write_upload(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
