"""FastAPI routes for ragdesk.

Service dependencies are resolved from ``app.state`` via FastAPI's
``Depends`` using the ``Annotated`` pattern.  Tenant identity arrives in
the ``X-Organization-Id`` header, set by the authenticating gateway in
front of ragdesk; every read and write below is scoped to it.

# ─── API ROUTE MAP ────────────────────────────────────────────────────
#
# Endpoint                              Method  Description
# ─────────────────────────────────────────────────────────────────────
# /api/v1/chat                          POST    Chat turn, streamed as text/plain
# /api/v1/streams/{id}                  GET     Durable stream checkpoint
# /api/v1/conversations/{id}/messages   GET     Conversation transcript
# /api/v1/sources/text|qa|website|file  POST    Register a source (202)
# /api/v1/sources/{id}/text|qa          PUT     Edit manual content
# /api/v1/sources/{id}                  GET     Source detail
# /api/v1/sources/{id}                  DELETE  Soft delete + drop chunks
# /api/v1/sources/{id}/retry            POST    Retry a failed source
# /api/v1/ingestion/trigger             POST    Idempotent ingestion trigger
# /api/v1/jobs[/stats|/stuck|/{id}]     GET     Job inspection
# /api/v1/jobs/{id}/cancel|requeue      POST    Job control
# /api/v1/agents/{id}/retrain           POST    Re-ingest an agent's sources
# /api/v1/usage                         GET     Usage ledger + totals
# /api/v1/health                        GET     Health check
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, File, Form, Header, Query, Request, UploadFile
from fastapi.responses import StreamingResponse

from ragdesk import __version__
from ragdesk.api.schemas import (
    ErrorResponse,
    HealthResponse,
    IngestionTriggerRequest,
    JobListResponse,
    QASourceRequest,
    RequeueResponse,
    RetrainRequest,
    RetrainResponse,
    SourceJobResponse,
    StuckJobResponse,
    TextSourceRequest,
    UpdateQARequest,
    UpdateTextRequest,
    UsageResponse,
    WebsiteSourceRequest,
)
from ragdesk.models.chat import ChatRequest, Message, StreamCheckpoint
from ragdesk.models.job import IngestionTrigger, Job, JobStats, JobStatus
from ragdesk.models.source import Source
from ragdesk.providers.store.conversation_repository import ConversationRepository
from ragdesk.providers.store.source_repository import SourceRepository
from ragdesk.services.chat.chat_orchestrator import ChatOrchestrator
from ragdesk.services.ingestion.ingestion_service import IngestionCoordinator
from ragdesk.services.ingestion.source_service import SourceService
from ragdesk.services.jobs.job_tracker import JobTracker
from ragdesk.services.usage_ledger import UsageLedger
from ragdesk.utils.errors import ContentError
from ragdesk.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

_MAX_UPLOAD_BYTES = 20 * 1024 * 1024
_UPLOAD_CHUNK_SIZE = 64 * 1024

_CAPACITY_RESPONSES: dict[int | str, dict[str, Any]] = {429: {"model": ErrorResponse}}
_SCOPED_RESPONSES: dict[int | str, dict[str, Any]] = {
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}


# ---------------------------------------------------------------------------
# Dependency injection
# ---------------------------------------------------------------------------


def _get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.chat_orchestrator


def _get_source_service(request: Request) -> SourceService:
    return request.app.state.source_service


def _get_coordinator(request: Request) -> IngestionCoordinator:
    return request.app.state.ingestion_coordinator


def _get_tracker(request: Request) -> JobTracker:
    return request.app.state.job_tracker


def _get_sources(request: Request) -> SourceRepository:
    return request.app.state.source_repository


def _get_conversations(request: Request) -> ConversationRepository:
    return request.app.state.conversation_repository


def _get_ledger(request: Request) -> UsageLedger:
    return request.app.state.usage_ledger


OrchestratorDep = Annotated[ChatOrchestrator, Depends(_get_orchestrator)]
SourceServiceDep = Annotated[SourceService, Depends(_get_source_service)]
CoordinatorDep = Annotated[IngestionCoordinator, Depends(_get_coordinator)]
TrackerDep = Annotated[JobTracker, Depends(_get_tracker)]
SourcesDep = Annotated[SourceRepository, Depends(_get_sources)]
ConversationsDep = Annotated[ConversationRepository, Depends(_get_conversations)]
LedgerDep = Annotated[UsageLedger, Depends(_get_ledger)]
OrgDep = Annotated[str, Header(alias="X-Organization-Id", min_length=1)]


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


@router.post(
    "/chat",
    response_class=StreamingResponse,
    responses={**_CAPACITY_RESPONSES, **_SCOPED_RESPONSES},
    summary="Run one chat turn and stream the answer",
)
async def chat(body: ChatRequest, orchestrator: OrchestratorDep) -> StreamingResponse:
    """Stream the assistant's reply as plain text.

    A form feed in the stream means "replace everything shown so far with
    the text that follows".  The generation keeps running if the client
    disconnects; ``GET /streams/{X-Stream-Id}`` returns the durable text.
    """
    turn = await orchestrator.start_turn(body)
    return StreamingResponse(
        turn.iter_text(),
        media_type="text/plain; charset=utf-8",
        headers={
            "X-Conversation-Id": turn.conversation_id,
            "X-Message-Id": turn.message_id,
            "X-Stream-Id": turn.stream_id,
            "Cache-Control": "no-cache",
        },
    )


@router.get(
    "/streams/{stream_id}",
    response_model=StreamCheckpoint,
    responses=_SCOPED_RESPONSES,
    summary="Durable checkpoint of a generation stream",
)
async def get_stream(
    stream_id: str, organization_id: OrgDep, conversations: ConversationsDep
) -> StreamCheckpoint:
    return await conversations.get_stream(organization_id, stream_id)


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=list[Message],
    responses=_SCOPED_RESPONSES,
    summary="Conversation transcript",
)
async def list_messages(
    conversation_id: str,
    organization_id: OrgDep,
    conversations: ConversationsDep,
    limit: Annotated[int | None, Query(ge=1, le=500)] = None,
) -> list[Message]:
    await conversations.get_conversation(organization_id, conversation_id)
    return await conversations.list_messages(conversation_id, limit=limit)


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


def _source_job(result: tuple[Source, Job]) -> SourceJobResponse:
    source, job = result
    return SourceJobResponse(source=source, job=job)


@router.post(
    "/sources/text",
    status_code=202,
    response_model=SourceJobResponse,
    responses={**_CAPACITY_RESPONSES, **_SCOPED_RESPONSES},
    summary="Register a text snippet",
)
async def create_text_source(
    body: TextSourceRequest, organization_id: OrgDep, service: SourceServiceDep
) -> SourceJobResponse:
    return _source_job(
        await service.register_text(organization_id, body.agent_id, body.name, body.content)
    )


@router.post(
    "/sources/qa",
    status_code=202,
    response_model=SourceJobResponse,
    responses={**_CAPACITY_RESPONSES, **_SCOPED_RESPONSES},
    summary="Register a question/answer pair",
)
async def create_qa_source(
    body: QASourceRequest, organization_id: OrgDep, service: SourceServiceDep
) -> SourceJobResponse:
    return _source_job(
        await service.register_qa(
            organization_id, body.agent_id, body.question, body.answer, name=body.name
        )
    )


@router.post(
    "/sources/website",
    status_code=202,
    response_model=SourceJobResponse,
    responses={**_CAPACITY_RESPONSES, **_SCOPED_RESPONSES},
    summary="Register a website to scrape or crawl",
)
async def create_website_source(
    body: WebsiteSourceRequest, organization_id: OrgDep, service: SourceServiceDep
) -> SourceJobResponse:
    return _source_job(
        await service.register_website(
            organization_id,
            body.agent_id,
            body.url,
            crawl_mode=body.crawl_mode,
            crawl_limit=body.crawl_limit,
            name=body.name,
        )
    )


@router.post(
    "/sources/file",
    status_code=202,
    response_model=SourceJobResponse,
    responses={413: {"model": ErrorResponse}, **_CAPACITY_RESPONSES, **_SCOPED_RESPONSES},
    summary="Upload a PDF, DOCX or text file",
)
async def create_file_source(
    organization_id: OrgDep,
    service: SourceServiceDep,
    agent_id: Annotated[str, Form()],
    file: Annotated[UploadFile, File()],
) -> SourceJobResponse:
    # Read in chunks so an oversized upload is rejected early.
    chunks: list[bytes] = []
    total_size = 0
    while True:
        chunk = await file.read(_UPLOAD_CHUNK_SIZE)
        if not chunk:
            break
        total_size += len(chunk)
        if total_size > _MAX_UPLOAD_BYTES:
            raise ContentError(
                message=f"File too large: maximum is {_MAX_UPLOAD_BYTES // (1024 * 1024)} MB"
            )
        chunks.append(chunk)

    return _source_job(
        await service.register_file(
            organization_id,
            agent_id,
            filename=file.filename or "upload",
            mime_type=file.content_type or "application/octet-stream",
            data=b"".join(chunks),
        )
    )


@router.put(
    "/sources/{source_id}/text",
    status_code=202,
    response_model=SourceJobResponse,
    responses={409: {"model": ErrorResponse}, **_SCOPED_RESPONSES},
    summary="Replace a text source's content",
)
async def update_text_source(
    source_id: str, body: UpdateTextRequest, organization_id: OrgDep, service: SourceServiceDep
) -> SourceJobResponse:
    return _source_job(await service.update_text(organization_id, source_id, body.content))


@router.put(
    "/sources/{source_id}/qa",
    status_code=202,
    response_model=SourceJobResponse,
    responses={409: {"model": ErrorResponse}, **_SCOPED_RESPONSES},
    summary="Replace a Q&A source's question and answer",
)
async def update_qa_source(
    source_id: str, body: UpdateQARequest, organization_id: OrgDep, service: SourceServiceDep
) -> SourceJobResponse:
    return _source_job(
        await service.update_qa(organization_id, source_id, body.question, body.answer)
    )


@router.get(
    "/sources/{source_id}",
    response_model=Source,
    responses=_SCOPED_RESPONSES,
    summary="Source detail",
)
async def get_source(source_id: str, organization_id: OrgDep, sources: SourcesDep) -> Source:
    return await sources.get_scoped(organization_id, None, source_id)


@router.delete(
    "/sources/{source_id}",
    response_model=Source,
    responses=_SCOPED_RESPONSES,
    summary="Soft-delete a source and remove its chunks",
)
async def delete_source(
    source_id: str, organization_id: OrgDep, service: SourceServiceDep
) -> Source:
    return await service.delete_source(organization_id, source_id)


@router.post(
    "/sources/{source_id}/retry",
    status_code=202,
    response_model=SourceJobResponse,
    responses={409: {"model": ErrorResponse}, **_SCOPED_RESPONSES},
    summary="Retry a failed source",
)
async def retry_source(
    source_id: str, organization_id: OrgDep, service: SourceServiceDep
) -> SourceJobResponse:
    return _source_job(await service.retry_source(organization_id, source_id))


# ---------------------------------------------------------------------------
# Ingestion / jobs
# ---------------------------------------------------------------------------


@router.post(
    "/ingestion/trigger",
    status_code=202,
    response_model=Job,
    responses=_SCOPED_RESPONSES,
    summary="Start (or find) the ingestion job for an idempotency key",
)
async def trigger_ingestion(
    body: IngestionTriggerRequest, organization_id: OrgDep, coordinator: CoordinatorDep
) -> Job:
    return await coordinator.trigger(
        IngestionTrigger(
            source_id=body.source_id,
            organization_id=organization_id,
            agent_id=body.agent_id,
            idempotency_key=body.idempotency_key,
            job_id=body.job_id,
            force=body.force,
        )
    )


@router.get("/jobs", response_model=JobListResponse, summary="List jobs")
async def list_jobs(
    organization_id: OrgDep,
    tracker: TrackerDep,
    status: JobStatus | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> JobListResponse:
    jobs = await tracker.list_jobs(organization_id, status=status, limit=limit)
    return JobListResponse(jobs=jobs, total=len(jobs))


@router.get("/jobs/stats", response_model=JobStats, summary="Job counts per status")
async def job_stats(organization_id: OrgDep, tracker: TrackerDep) -> JobStats:
    return await tracker.stats(organization_id)


@router.get(
    "/jobs/stuck",
    response_model=list[StuckJobResponse],
    summary="Running jobs whose heartbeat is stale",
)
async def stuck_jobs(
    organization_id: OrgDep,
    tracker: TrackerDep,
    threshold_seconds: Annotated[int | None, Query(ge=1)] = None,
) -> list[StuckJobResponse]:
    stuck = await tracker.find_stuck(threshold_seconds)
    return [
        StuckJobResponse(job=s.job, seconds_since_heartbeat=s.seconds_since_heartbeat)
        for s in stuck
        if s.job.organization_id == organization_id
    ]


@router.get("/jobs/{job_id}", response_model=Job, responses=_SCOPED_RESPONSES, summary="Job detail")
async def get_job(job_id: str, organization_id: OrgDep, tracker: TrackerDep) -> Job:
    return await tracker.get_scoped(organization_id, job_id)


@router.post(
    "/jobs/{job_id}/cancel",
    response_model=Job,
    responses={409: {"model": ErrorResponse}, **_SCOPED_RESPONSES},
    summary="Cancel a pending or running job",
)
async def cancel_job(job_id: str, organization_id: OrgDep, tracker: TrackerDep) -> Job:
    await tracker.get_scoped(organization_id, job_id)
    return await tracker.cancel(job_id)


@router.post(
    "/jobs/{job_id}/requeue",
    response_model=RequeueResponse,
    responses={409: {"model": ErrorResponse}, **_SCOPED_RESPONSES},
    summary="Record a heartbeat timeout on a stuck job and retry it",
)
async def requeue_job(
    job_id: str,
    organization_id: OrgDep,
    tracker: TrackerDep,
    coordinator: CoordinatorDep,
    threshold_seconds: Annotated[int | None, Query(ge=1)] = None,
) -> RequeueResponse:
    await tracker.get_scoped(organization_id, job_id)
    outcome = await tracker.requeue_stuck(job_id, threshold_seconds)
    job = outcome.job
    if outcome.will_retry and job.source_id is not None:
        job = await coordinator.trigger(
            IngestionTrigger(
                source_id=job.source_id,
                organization_id=job.organization_id,
                agent_id=job.agent_id,
                idempotency_key=job.idempotency_key,
                job_id=job.id,
            )
        )
    _logger.info("job_requeued", job_id=job_id, will_retry=outcome.will_retry)
    return RequeueResponse(job=job, will_retry=outcome.will_retry)


@router.post(
    "/agents/{agent_id}/retrain",
    status_code=202,
    response_model=RetrainResponse,
    responses=_SCOPED_RESPONSES,
    summary="Re-ingest sources that are out of date for this agent",
)
async def retrain_agent(
    agent_id: str,
    organization_id: OrgDep,
    service: SourceServiceDep,
    body: RetrainRequest | None = None,
) -> RetrainResponse:
    force = body.force if body is not None else False
    jobs = await service.retrain_agent(organization_id, agent_id, force=force)
    return RetrainResponse(agent_id=agent_id, jobs=jobs)


# ---------------------------------------------------------------------------
# Usage / health
# ---------------------------------------------------------------------------


@router.get("/usage", response_model=UsageResponse, summary="Usage ledger and token totals")
async def usage(
    organization_id: OrgDep,
    ledger: LedgerDep,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> UsageResponse:
    return UsageResponse(
        totals=await ledger.totals(organization_id),
        events=await ledger.list_events(organization_id, limit=limit),
    )


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health_check(request: Request) -> HealthResponse:
    """Return application health, version, and provider availability."""
    providers: dict[str, Any] = dict(getattr(request.app.state, "provider_registry", {}))
    runner = getattr(request.app.state, "job_runner", None)
    if runner is not None:
        providers["active_jobs"] = runner.active_count

    status = "healthy" if providers.get("llm", False) and providers.get("embedding", False) else "degraded"
    return HealthResponse(status=status, version=__version__, providers=providers)
