"""ragdesk FastAPI application entry point.

Wires providers, repositories and services together via dependency
injection.  Configuration comes from :class:`Settings` (environment /
``.env``) and ``config/config.yaml`` (plan tiers, default guardrails).
Every component is built once in :func:`_build_all` and stored on
``app.state``; routes read them back through ``Depends``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog
import uvicorn
from fastapi import FastAPI, WebSocket

from ragdesk import __version__
from ragdesk.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
)
from ragdesk.api.routes import router as api_router
from ragdesk.api.websocket import websocket_events
from ragdesk.config.loader import load_config
from ragdesk.config.settings import Settings
from ragdesk.interfaces.vector_store_provider import IVectorStoreProvider
from ragdesk.models.tenant import Guardrails, PlanLimits, PlanTier
from ragdesk.pipeline.event_bus import EventBus
from ragdesk.pipeline.job_runner import JobRunner
from ragdesk.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider
from ragdesk.providers.llm.openai_provider import OpenAILLMProvider
from ragdesk.providers.store.account_repository import AccountRepository
from ragdesk.providers.store.conversation_repository import ConversationRepository
from ragdesk.providers.store.database import Database
from ragdesk.providers.store.source_repository import SourceRepository
from ragdesk.providers.vector_store.chromadb_provider import ChromaDBProvider
from ragdesk.providers.vector_store.memory_store import InMemoryVectorStore
from ragdesk.providers.web.page_fetcher import WebPageFetcher
from ragdesk.services.chat.chat_orchestrator import ChatOrchestrator
from ragdesk.services.chat.prompt_builder import PromptBuilder
from ragdesk.services.chat.safety_judge import SafetyJudge
from ragdesk.services.ingestion.chunker import TextChunker
from ragdesk.services.ingestion.embedding_generator import EmbeddingGenerator
from ragdesk.services.ingestion.ingestion_service import IngestionCoordinator
from ragdesk.services.ingestion.source_acquirer import SourceAcquirer
from ragdesk.services.ingestion.source_service import SourceService
from ragdesk.services.jobs.job_tracker import JobTracker
from ragdesk.services.rate_limiter import RateLimiter
from ragdesk.services.retrieval_service import RetrievalEngine
from ragdesk.services.usage_ledger import UsageLedger
from ragdesk.utils.errors import ConfigurationError
from ragdesk.utils.logging import configure_logging, get_logger

_logger: structlog.BoundLogger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------


def _build_vector_store(app_settings: Settings) -> IVectorStoreProvider:
    backend = app_settings.vector_store_backend.lower()
    if backend == "chromadb":
        return ChromaDBProvider(
            persist_directory=app_settings.chromadb_persist_dir,
            collection_prefix=app_settings.chromadb_collection_prefix,
        )
    if backend == "memory":
        return InMemoryVectorStore()
    raise ConfigurationError(message=f"Unknown vector store backend: {backend}")


def _parse_plans(config: dict[str, Any]) -> dict[PlanTier, PlanLimits]:
    plans: dict[PlanTier, PlanLimits] = {}
    for name, limits in config.get("plans", {}).items():
        try:
            tier = PlanTier(name)
        except ValueError as exc:
            raise ConfigurationError(message=f"Unknown plan tier in config: {name}") from exc
        plans[tier] = PlanLimits(**limits)
    return plans


# ---------------------------------------------------------------------------
# Full DI assembly for the FastAPI application
# ---------------------------------------------------------------------------


def _build_all(app_settings: Settings, config: dict[str, Any]) -> dict[str, Any]:
    """Construct every provider and service instance for the application.

    Returns a flat dict of named components to be stored on ``app.state``.
    """
    # -- Shared resources --
    http_client = httpx.AsyncClient(
        timeout=app_settings.http_timeout_seconds, follow_redirects=True
    )
    database = Database(app_settings.database_path)
    event_bus = EventBus()
    runner = JobRunner(concurrency=app_settings.ingestion_concurrency)

    # -- Providers --
    llm = OpenAILLMProvider(settings=app_settings)
    embedding_provider = OpenAIEmbeddingProvider(settings=app_settings)
    vector_store = _build_vector_store(app_settings)
    page_fetcher = WebPageFetcher(
        http_client=http_client, timeout=app_settings.http_timeout_seconds
    )

    # -- Repositories --
    accounts = AccountRepository(database)
    sources = SourceRepository(database)
    conversations = ConversationRepository(database)

    # -- Jobs / usage / admission --
    tracker = JobTracker(
        database,
        event_bus=event_bus,
        max_attempts=app_settings.job_max_attempts,
        stuck_after_seconds=app_settings.job_stuck_after_seconds,
    )
    ledger = UsageLedger(database)
    rate_limiter = RateLimiter(database, _parse_plans(config))

    # -- Ingestion --
    embedder = EmbeddingGenerator(embedding_provider, batch_size=app_settings.embedding_batch_size)
    coordinator = IngestionCoordinator(
        sources=sources,
        accounts=accounts,
        tracker=tracker,
        acquirer=SourceAcquirer(page_fetcher, crawl_concurrency=app_settings.crawl_concurrency),
        chunker=TextChunker(
            chunk_size=app_settings.chunk_size_tokens,
            overlap=app_settings.chunk_overlap_tokens,
            chars_per_token=app_settings.chars_per_token,
        ),
        embedder=embedder,
        vector_store=vector_store,
        ledger=ledger,
        event_bus=event_bus,
        runner=runner,
        retry_backoff_seconds=app_settings.job_retry_backoff_seconds,
    )
    source_service = SourceService(
        sources=sources,
        accounts=accounts,
        tracker=tracker,
        coordinator=coordinator,
        vector_store=vector_store,
        upload_dir=app_settings.upload_dir,
        crawl_default_limit=app_settings.crawl_default_limit,
        event_bus=event_bus,
    )

    # -- Chat --
    retrieval = RetrievalEngine(
        embedder, vector_store, sources, accounts, default_top_k=app_settings.rag_top_k
    )
    orchestrator = ChatOrchestrator(
        accounts=accounts,
        conversations=conversations,
        retrieval=retrieval,
        prompt_builder=PromptBuilder(
            llm=llm,
            summary_model=app_settings.chat_model,
            max_context_tokens=app_settings.max_context_tokens,
            max_history_tokens=app_settings.max_history_tokens,
            chars_per_token=app_settings.chars_per_token,
        ),
        llm=llm,
        judge=SafetyJudge(
            llm,
            model=app_settings.judge_model,
            pass_threshold=app_settings.judge_pass_threshold,
            timeout_seconds=app_settings.judge_timeout_seconds,
        ),
        rate_limiter=rate_limiter,
        ledger=ledger,
        default_guardrails=Guardrails(**config["guardrails"]),
        event_bus=event_bus,
        history_window=app_settings.history_message_window,
        checkpoint_min_chars=app_settings.stream_checkpoint_min_chars,
    )

    provider_registry = {
        "llm": llm.is_available(),
        "embedding": embedding_provider.is_available(),
        "vector_store": vector_store.get_provider_name(),
    }

    return {
        "settings": app_settings,
        "http_client": http_client,
        "database": database,
        "event_bus": event_bus,
        "job_runner": runner,
        "vector_store": vector_store,
        "page_fetcher": page_fetcher,
        "account_repository": accounts,
        "source_repository": sources,
        "conversation_repository": conversations,
        "job_tracker": tracker,
        "usage_ledger": ledger,
        "rate_limiter": rate_limiter,
        "ingestion_coordinator": coordinator,
        "source_service": source_service,
        "retrieval_engine": retrieval,
        "chat_orchestrator": orchestrator,
        "provider_registry": provider_registry,
    }


# ---------------------------------------------------------------------------
# FastAPI application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    components: dict[str, Any] | None = None,
) -> FastAPI:
    """Build and configure the FastAPI application.

    Parameters
    ----------
    settings:
        Application settings; read from the environment when omitted.
    components:
        Pre-built components to put on ``app.state`` instead of calling
        :func:`_build_all`.  Tests use this to inject fakes.
    """
    app_settings = settings or Settings()
    configure_logging(log_level=app_settings.log_level, app_env=app_settings.app_env)

    @asynccontextmanager
    async def _lifespan(application: FastAPI):  # noqa: ANN202
        """Build and initialise components on startup, drain them on shutdown."""
        built = components
        if built is None:
            built = _build_all(app_settings, load_config(app_settings))
        for key, value in built.items():
            setattr(application.state, key, value)

        await built["database"].initialize()
        _logger.info(
            "app_startup",
            version=__version__,
            environment=app_settings.app_env,
            vector_store=built["vector_store"].get_provider_name(),
        )

        yield

        await built["chat_orchestrator"].drain()
        await built["job_runner"].shutdown()
        page_fetcher = built.get("page_fetcher")
        if page_fetcher is not None:
            await page_fetcher.close()
        http_client: httpx.AsyncClient | None = built.get("http_client")
        if http_client is not None:
            await http_client.aclose()
        _logger.info("app_shutdown", message="Background work drained and clients closed")

    application = FastAPI(
        title="ragdesk API",
        version=__version__,
        description=(
            "Multi-tenant retrieval-augmented chat: ingest knowledge sources, "
            "answer visitors with streamed, judged and cited responses."
        ),
        lifespan=_lifespan,
    )

    # -- Middleware (order matters: last added = first executed) --
    application.add_middleware(ErrorHandlingMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    configure_cors(application, allowed_origins=app_settings.get_allowed_origins())

    # -- API routes --
    application.include_router(api_router)

    # -- WebSocket --
    @application.websocket("/ws/events/{topic}")
    async def ws_events(websocket: WebSocket, topic: str, organization_id: str = "") -> None:
        await websocket_events(websocket, topic, organization_id)

    return application


def main() -> None:
    app_settings = Settings()
    uvicorn.run(
        "ragdesk.main:create_app",
        factory=True,
        host=app_settings.app_host,
        port=app_settings.app_port,
        reload=(app_settings.app_env == "development"),
    )


if __name__ == "__main__":
    main()
