"""Tenant-scoped semantic retrieval over an agent's chunks.

The vector store is asked for hits filtered by organization and agent,
and every hit is checked again here: a chunk from another organization or
agent is dropped and logged, and so is any chunk whose source has been
soft-deleted.  Results are ordered by score, then by chunk recency.
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel, ConfigDict, Field

from ragdesk.interfaces.vector_store_provider import IVectorStoreProvider
from ragdesk.models.rag import ScoredChunk
from ragdesk.providers.store.account_repository import AccountRepository
from ragdesk.providers.store.source_repository import SourceRepository
from ragdesk.services.ingestion.embedding_generator import EmbeddingGenerator

logger = structlog.get_logger(logger_name=__name__)

# Extra hits requested so that post-filtering still fills k.
_OVERFETCH = 2


class RetrievalResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunks: list[ScoredChunk] = Field(default_factory=list)
    query_tokens: int = 0
    embedding_model: str = ""


class RetrievalEngine:
    def __init__(
        self,
        embedder: EmbeddingGenerator,
        vector_store: IVectorStoreProvider,
        sources: SourceRepository,
        accounts: AccountRepository,
        default_top_k: int = 5,
    ) -> None:
        self._embedder = embedder
        self._store = vector_store
        self._sources = sources
        self._accounts = accounts
        self._default_top_k = default_top_k

    async def retrieve(
        self,
        query: str,
        organization_id: str,
        agent_id: str,
        k: int | None = None,
    ) -> RetrievalResult:
        """Return the best chunks for *query* and what embedding it cost.

        Raises
        ------
        TenantBoundaryError
            If *agent_id* does not belong to *organization_id*.
        """
        top_k = k or self._default_top_k
        if not query.strip():
            return RetrievalResult()

        agent = await self._accounts.get_agent(organization_id, agent_id)
        live_sources = await self._sources.live_source_ids(organization_id, agent_id)
        if not live_sources:
            logger.debug("retrieval_no_sources", agent_id=agent_id)
            return RetrievalResult(embedding_model=agent.embedding_model)

        embedded = await self._embedder.generate(
            [query], agent.embedding_model, agent.embedding_dimensions
        )
        hits = await self._store.search(
            organization_id, agent_id, embedded.vectors[0].vector, top_k * _OVERFETCH
        )

        results: list[ScoredChunk] = []
        for hit in hits:
            chunk = hit.chunk
            if chunk.organization_id != organization_id or chunk.agent_id != agent_id:
                logger.error(
                    "retrieval_tenant_violation",
                    chunk_id=chunk.id,
                    expected_org=organization_id,
                    expected_agent=agent_id,
                    chunk_org=chunk.organization_id,
                    chunk_agent=chunk.agent_id,
                )
                continue
            if chunk.source_id not in live_sources:
                continue
            results.append(hit)

        results.sort(key=lambda h: (-h.score, -h.chunk.created_at))
        results = results[:top_k]
        logger.info(
            "retrieval_completed",
            organization_id=organization_id,
            agent_id=agent_id,
            candidates=len(hits),
            returned=len(results),
        )
        return RetrievalResult(
            chunks=results,
            query_tokens=embedded.tokens,
            embedding_model=agent.embedding_model,
        )
