"""In-process vector store backed by numpy.

Used for local development without a persistent index
(``VECTOR_STORE_BACKEND=memory``) and for tests.  Same contract as the
ChromaDB adapter: cosine similarity, organization+agent filter applied
inside the search.
"""

from __future__ import annotations

import asyncio

import numpy as np
import structlog

from ragdesk.interfaces.vector_store_provider import IVectorStoreProvider
from ragdesk.models.rag import Chunk, ScoredChunk
from ragdesk.utils.errors import VectorStoreError

logger = structlog.get_logger(logger_name=__name__)


class InMemoryVectorStore(IVectorStoreProvider):
    """Dictionary of chunks searched by brute-force cosine similarity."""

    def __init__(self) -> None:
        self._chunks: dict[str, Chunk] = {}
        self._lock = asyncio.Lock()

    async def search(
        self,
        organization_id: str,
        agent_id: str,
        query_vector: list[float],
        k: int,
    ) -> list[ScoredChunk]:
        if k <= 0 or not query_vector:
            return []

        candidates = [
            c
            for c in self._chunks.values()
            if c.organization_id == organization_id
            and c.agent_id == agent_id
            and len(c.embedding) == len(query_vector)
        ]
        if not candidates:
            return []

        query = np.asarray(query_vector, dtype=np.float64)
        matrix = np.asarray([c.embedding for c in candidates], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        scores = (matrix @ query) / norms

        order = np.argsort(-scores, kind="stable")[:k]
        return [ScoredChunk(chunk=candidates[i], score=float(scores[i])) for i in order]

    async def upsert(self, chunks: list[Chunk]) -> int:
        async with self._lock:
            for chunk in chunks:
                if not chunk.embedding:
                    raise VectorStoreError(
                        message=f"Chunk {chunk.id} has no embedding",
                        provider_name=self.get_provider_name(),
                    )
                self._chunks[chunk.id] = chunk
        return len(chunks)

    async def delete_by_source(self, source_id: str) -> int:
        async with self._lock:
            doomed = [cid for cid, c in self._chunks.items() if c.source_id == source_id]
            for cid in doomed:
                del self._chunks[cid]
        logger.debug("memory_store_delete_by_source", source_id=source_id, deleted_count=len(doomed))
        return len(doomed)

    async def count_by_source(self, source_id: str) -> int:
        return sum(1 for c in self._chunks.values() if c.source_id == source_id)

    def chunk_ids_for_source(self, source_id: str) -> list[str]:
        return sorted(cid for cid, c in self._chunks.items() if c.source_id == source_id)

    def get_provider_name(self) -> str:
        return "memory"
