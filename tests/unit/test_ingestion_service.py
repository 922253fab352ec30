"""Unit tests for the ingestion coordinator (acquire -> chunk -> embed -> store)."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from ragdesk.interfaces.page_fetcher import IPageFetcher
from ragdesk.models.job import IngestionTrigger, JobStatus
from ragdesk.models.llm import FetchedPage
from ragdesk.models.source import CrawlMode, SourceStatus
from ragdesk.models.usage import UsageEventType
from ragdesk.pipeline.job_runner import JobRunner
from ragdesk.services.ingestion.chunker import TextChunker
from ragdesk.services.ingestion.embedding_generator import EmbeddingGenerator
from ragdesk.services.ingestion.ingestion_service import IngestionCoordinator
from ragdesk.services.ingestion.source_acquirer import SourceAcquirer
from ragdesk.services.ingestion.source_service import SourceService
from ragdesk.utils.errors import ContentError, EmbeddingError
from tests.conftest import AGENT_A, ORG_A

_FAQ = (
    "Our store opens at nine in the morning. Deliveries arrive within two days. "
    "Returns are accepted for thirty days with a receipt. Gift cards never expire."
)


@pytest.fixture
def fetcher() -> MagicMock:
    mock = MagicMock(spec=IPageFetcher)
    mock.fetch = AsyncMock()
    return mock


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


def _coordinator(
    sources, accounts, tracker, ledger, vector_store, embedding_provider, fetcher, sleep, runner=None
) -> IngestionCoordinator:
    return IngestionCoordinator(
        sources=sources,
        accounts=accounts,
        tracker=tracker,
        acquirer=SourceAcquirer(fetcher),
        chunker=TextChunker(chunk_size=12, overlap=3),
        embedder=EmbeddingGenerator(embedding_provider, batch_size=4),
        vector_store=vector_store,
        ledger=ledger,
        runner=runner,
        retry_backoff_seconds=2.0,
        sleep=sleep,
    )


@pytest.fixture
def coordinator(
    tenants, sources, accounts, tracker, ledger, vector_store, embedding_provider, fetcher, sleep
) -> IngestionCoordinator:
    return _coordinator(
        sources, accounts, tracker, ledger, vector_store, embedding_provider, fetcher, sleep
    )


@pytest.fixture
def service(coordinator, sources, accounts, tracker, vector_store, tmp_path: Path) -> SourceService:
    return SourceService(
        sources=sources,
        accounts=accounts,
        tracker=tracker,
        coordinator=coordinator,
        vector_store=vector_store,
        upload_dir=tmp_path / "uploads",
    )


class TestSuccessfulIngestion:
    @pytest.mark.asyncio
    async def test_text_source_becomes_ready(
        self, service, coordinator, sources, accounts, vector_store, ledger
    ) -> None:
        source, job = await service.register_text(ORG_A, AGENT_A, "FAQ", _FAQ)
        assert job.status is JobStatus.PENDING

        finished = await coordinator.run(job.id)

        assert finished.status is JobStatus.COMPLETED
        assert finished.progress.current == 100
        ready = await sources.get(source.id)
        assert ready.status is SourceStatus.READY
        assert ready.chunk_count > 1
        assert ready.content_hash is not None
        assert ready.embedding_model == "fake-embed"
        assert await vector_store.count_by_source(source.id) == ready.chunk_count

        agent = await accounts.get_agent(ORG_A, AGENT_A)
        assert agent.needs_retraining is False
        events = await ledger.list_events(ORG_A)
        assert [e.event_type for e in events] == [UsageEventType.EMBEDDING]

    @pytest.mark.asyncio
    async def test_progress_is_published(self, service, coordinator, event_bus) -> None:
        _, job = await service.register_text(ORG_A, AGENT_A, "FAQ", _FAQ)
        seen: list[int] = []
        event_bus.subscribe(
            f"job:{job.id}",
            lambda e: seen.append(e.data["progress"]) if e.kind == "job.progress" else None,
        )
        await coordinator.run(job.id)
        assert seen == sorted(seen)
        assert seen[-1] == 95

    @pytest.mark.asyncio
    async def test_unchanged_content_is_not_re_embedded(
        self, service, coordinator, embedding_provider, ledger
    ) -> None:
        source, job = await service.register_text(ORG_A, AGENT_A, "FAQ", _FAQ)
        await coordinator.run(job.id)
        calls_after_first = len(embedding_provider.calls)

        again = await coordinator.trigger(
            IngestionTrigger(
                source_id=source.id,
                organization_id=ORG_A,
                agent_id=AGENT_A,
                idempotency_key="manual-reingest",
            )
        )
        result = await coordinator.run(again.id)

        assert result.status is JobStatus.COMPLETED
        assert len(embedding_provider.calls) == calls_after_first
        assert len(await ledger.list_events(ORG_A)) == 1

    @pytest.mark.asyncio
    async def test_forced_run_re_embeds_without_double_billing(
        self, service, coordinator, embedding_provider, ledger, vector_store, sources
    ) -> None:
        source, job = await service.register_text(ORG_A, AGENT_A, "FAQ", _FAQ)
        await coordinator.run(job.id)
        first_ids = set(vector_store.chunk_ids_for_source(source.id))
        calls_after_first = len(embedding_provider.calls)

        forced = await coordinator.trigger(
            IngestionTrigger(
                source_id=source.id,
                organization_id=ORG_A,
                agent_id=AGENT_A,
                idempotency_key="forced",
                force=True,
            )
        )
        await coordinator.run(forced.id)

        assert len(embedding_provider.calls) > calls_after_first
        assert set(vector_store.chunk_ids_for_source(source.id)) == first_ids
        assert (await sources.get(source.id)).status is SourceStatus.READY
        # Same content hash, same idempotency key.
        assert len(await ledger.list_events(ORG_A)) == 1

    @pytest.mark.asyncio
    async def test_duplicate_trigger_returns_same_job(self, service, coordinator) -> None:
        source, job = await service.register_text(ORG_A, AGENT_A, "FAQ", _FAQ)
        again = await coordinator.trigger(
            IngestionTrigger(
                source_id=source.id,
                organization_id=ORG_A,
                agent_id=AGENT_A,
                idempotency_key=f"source:{source.id}:initial",
            )
        )
        assert again.id == job.id

    @pytest.mark.asyncio
    async def test_runner_executes_in_background(
        self, tenants, sources, accounts, tracker, ledger, vector_store, embedding_provider,
        fetcher, sleep, tmp_path: Path,
    ) -> None:
        runner = JobRunner(concurrency=2)
        coordinator = _coordinator(
            sources, accounts, tracker, ledger, vector_store, embedding_provider, fetcher, sleep,
            runner=runner,
        )
        service = SourceService(
            sources=sources,
            accounts=accounts,
            tracker=tracker,
            coordinator=coordinator,
            vector_store=vector_store,
            upload_dir=tmp_path,
        )
        source, job = await service.register_qa(ORG_A, AGENT_A, "Do you ship abroad?", "Yes.")
        await runner.drain(timeout=5)

        assert (await tracker.get(job.id)).status is JobStatus.COMPLETED
        assert (await sources.get(source.id)).status is SourceStatus.READY


class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_embedding_error_is_retried(
        self, service, coordinator, embedding_provider, sleep, sources
    ) -> None:
        embedding_provider.fail_times = 1
        source, job = await service.register_text(ORG_A, AGENT_A, "FAQ", _FAQ)

        finished = await coordinator.run(job.id)

        assert finished.status is JobStatus.COMPLETED
        assert finished.attempt_count == 2
        assert len(finished.error_history) == 1
        sleep.assert_awaited_once_with(2.0)
        assert (await sources.get(source.id)).status is SourceStatus.READY

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_the_source(
        self, service, coordinator, embedding_provider, sleep, sources, tracker
    ) -> None:
        embedding_provider.fail_times = 10
        source, job = await service.register_text(ORG_A, AGENT_A, "FAQ", _FAQ)

        with pytest.raises(EmbeddingError):
            await coordinator.run(job.id)

        failed_job = await tracker.get(job.id)
        assert failed_job.status is JobStatus.FAILED
        assert failed_job.attempt_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]
        failed = await sources.get(source.id)
        assert failed.status is SourceStatus.FAILED
        assert "temporary outage" in (failed.error_message or "")

    @pytest.mark.asyncio
    async def test_empty_page_is_terminal(self, service, coordinator, fetcher, sources, tracker, sleep) -> None:
        fetcher.fetch.return_value = FetchedPage(url="https://acme.test/", text="   ")
        source, job = await service.register_website(
            ORG_A, AGENT_A, "https://acme.test/", crawl_mode=CrawlMode.SCRAPE
        )

        with pytest.raises(ContentError):
            await coordinator.run(job.id)

        failed_job = await tracker.get(job.id)
        assert failed_job.status is JobStatus.FAILED
        assert failed_job.attempt_count == 1
        sleep.assert_not_awaited()
        assert (await sources.get(source.id)).status is SourceStatus.FAILED

    @pytest.mark.asyncio
    async def test_retry_failed_source_runs_new_job(
        self, service, coordinator, fetcher, sources
    ) -> None:
        fetcher.fetch.return_value = FetchedPage(url="https://acme.test/", text="")
        source, job = await service.register_website(ORG_A, AGENT_A, "https://acme.test/")
        with pytest.raises(ContentError):
            await coordinator.run(job.id)

        fetcher.fetch.return_value = FetchedPage(url="https://acme.test/", text=_FAQ, title="Acme")
        pending, retry_job = await service.retry_source(ORG_A, source.id)
        assert pending.status is SourceStatus.PENDING
        assert retry_job.id != job.id

        await coordinator.run(retry_job.id)
        ready = await sources.get(source.id)
        assert ready.status is SourceStatus.READY
        assert ready.crawled_pages == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_run_stores_nothing(
        self, service, coordinator, fetcher, tracker, sources, vector_store
    ) -> None:
        job_ids: list[str] = []

        async def fetch_then_cancel(url: str) -> FetchedPage:
            await tracker.cancel(job_ids[0])
            return FetchedPage(url=url, text=_FAQ)

        fetcher.fetch.side_effect = fetch_then_cancel
        source, job = await service.register_website(ORG_A, AGENT_A, "https://acme.test/")
        job_ids.append(job.id)

        finished = await coordinator.run(job.id)

        assert finished.status is JobStatus.CANCELLED
        assert await vector_store.count_by_source(source.id) == 0
        assert (await sources.get(source.id)).status is SourceStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancelled_before_start_is_left_alone(self, service, coordinator, tracker, embedding_provider) -> None:
        _, job = await service.register_text(ORG_A, AGENT_A, "FAQ", _FAQ)
        await tracker.cancel(job.id)

        finished = await coordinator.run(job.id)

        assert finished.status is JobStatus.CANCELLED
        assert embedding_provider.calls == []

    @pytest.mark.asyncio
    async def test_cancel_after_last_checkpoint_returns_cancelled_job(
        self, service, coordinator, tracker, ledger, monkeypatch
    ) -> None:
        _, job = await service.register_text(ORG_A, AGENT_A, "FAQ", _FAQ)
        record = ledger.record

        async def record_then_cancel(*args, **kwargs):
            await tracker.cancel(job.id)
            return await record(*args, **kwargs)

        monkeypatch.setattr(ledger, "record", record_then_cancel)

        finished = await coordinator.run(job.id)

        assert finished.status is JobStatus.CANCELLED


class TestRequeue:
    @pytest.mark.asyncio
    async def test_requeued_job_reruns_after_the_stuck_attempt_exits(
        self, tenants, sources, accounts, tracker, ledger, vector_store, embedding_provider,
        fetcher, sleep, tmp_path: Path,
    ) -> None:
        runner = JobRunner(concurrency=1)
        coordinator = _coordinator(
            sources, accounts, tracker, ledger, vector_store, embedding_provider, fetcher, sleep,
            runner=runner,
        )
        service = SourceService(
            sources=sources,
            accounts=accounts,
            tracker=tracker,
            coordinator=coordinator,
            vector_store=vector_store,
            upload_dir=tmp_path,
        )
        release = asyncio.Event()

        async def slow_fetch(url: str) -> FetchedPage:
            await release.wait()
            return FetchedPage(url=url, text=_FAQ, title="Acme")

        fetcher.fetch.side_effect = slow_fetch
        source, job = await service.register_website(
            ORG_A, AGENT_A, "https://acme.test/", crawl_mode=CrawlMode.SCRAPE
        )
        while (await tracker.get(job.id)).status is not JobStatus.RUNNING:
            await asyncio.sleep(0.01)

        outcome = await tracker.requeue_stuck(job.id, threshold_seconds=-1)
        assert outcome.will_retry
        await coordinator.trigger(
            IngestionTrigger(
                source_id=source.id,
                organization_id=ORG_A,
                agent_id=AGENT_A,
                idempotency_key=job.idempotency_key,
                job_id=job.id,
            )
        )
        release.set()
        await runner.drain(timeout=5)

        finished = await tracker.get(job.id)
        assert finished.status is JobStatus.COMPLETED
        assert finished.attempt_count == 2
        assert len(finished.error_history) == 1
        assert (await sources.get(source.id)).status is SourceStatus.READY


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_embedding_batches_refresh_the_heartbeat(
        self, service, coordinator, tracker, sources, monkeypatch
    ) -> None:
        source, job = await service.register_text(ORG_A, AGENT_A, "FAQ", _FAQ)
        beats: list[str] = []
        heartbeat = tracker.heartbeat

        async def recording_heartbeat(job_id: str) -> None:
            beats.append(job_id)
            await heartbeat(job_id)

        monkeypatch.setattr(tracker, "heartbeat", recording_heartbeat)

        await coordinator.run(job.id)

        chunk_count = (await sources.get(source.id)).chunk_count
        assert beats == [job.id] * -(-chunk_count // 4)


class TestUsage:
    @pytest.mark.asyncio
    async def test_switching_embedding_model_bills_the_new_model(
        self, service, coordinator, accounts, ledger
    ) -> None:
        source, job = await service.register_text(ORG_A, AGENT_A, "FAQ", _FAQ)
        await coordinator.run(job.id)
        agent = await accounts.get_agent(ORG_A, AGENT_A)
        await accounts.upsert_agent(agent.model_copy(update={"embedding_model": "fake-embed-2"}))

        again = await coordinator.trigger(
            IngestionTrigger(
                source_id=source.id,
                organization_id=ORG_A,
                agent_id=AGENT_A,
                idempotency_key="after-model-switch",
            )
        )
        await coordinator.run(again.id)

        events = await ledger.list_events(ORG_A)
        assert sorted(e.model for e in events) == ["fake-embed", "fake-embed-2"]
