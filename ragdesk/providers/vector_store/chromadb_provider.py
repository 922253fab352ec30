"""ChromaDB vector store provider adapter.

Wraps ``chromadb.PersistentClient`` to implement
:class:`IVectorStoreProvider`.  Uses cosine distance for similarity search.

Agents may use different embedding models, and a Chroma collection fixes
its dimensionality on first insert, so chunks are stored in one collection
per dimensionality: ``{prefix}_{dims}``.  Tenant scope is part of every
query's ``where`` clause.
"""

from __future__ import annotations

import os
from typing import Any

# Chroma reads this at import time; the client Settings below covers
# versions that ignore it.
os.environ.setdefault("ANONYMIZED_TELEMETRY", "False")

import chromadb
import structlog

from ragdesk.interfaces.vector_store_provider import IVectorStoreProvider
from ragdesk.models.rag import Chunk, ScoredChunk
from ragdesk.models.source import SourceType
from ragdesk.utils.errors import VectorStoreError

logger = structlog.get_logger(logger_name=__name__)

_UPSERT_BATCH = 50


class _NoopEmbeddingFunction(chromadb.EmbeddingFunction[list[str]]):
    """Keeps ChromaDB from loading its default model.

    ragdesk always passes pre-computed embeddings, so Chroma's built-in
    embedding must never run.
    """

    def __init__(self) -> None:
        pass

    def __call__(self, input: list[str]) -> list[list[float]]:
        raise NotImplementedError(
            "ragdesk uses pre-computed embeddings; "
            "ChromaDB's built-in embedding should never be called."
        )

    @staticmethod
    def name() -> str:
        return "noop_precomputed"


class ChromaDBProvider(IVectorStoreProvider):
    """Vector store provider backed by ChromaDB with local persistence."""

    def __init__(
        self,
        persist_directory: str = "./data/chromadb",
        collection_prefix: str = "ragdesk_chunks",
    ) -> None:
        self._persist_directory = persist_directory
        self._prefix = collection_prefix
        self._client = chromadb.PersistentClient(
            path=persist_directory,
            settings=chromadb.config.Settings(anonymized_telemetry=False),
        )
        self._collections: dict[int, Any] = {}

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def _collection_name(self, dimensions: int) -> str:
        return f"{self._prefix}_{dimensions}"

    def _get_collection(self, dimensions: int, create: bool) -> Any | None:
        if dimensions in self._collections:
            return self._collections[dimensions]
        name = self._collection_name(dimensions)
        if create:
            collection = self._client.get_or_create_collection(
                name=name,
                metadata={"hnsw:space": "cosine"},
                embedding_function=_NoopEmbeddingFunction(),
            )
        else:
            if name not in self._existing_collection_names():
                return None
            collection = self._client.get_collection(
                name=name,
                embedding_function=_NoopEmbeddingFunction(),
            )
        self._collections[dimensions] = collection
        return collection

    def _existing_collection_names(self) -> list[str]:
        # Older clients return names, newer ones return Collection objects.
        return [
            c if isinstance(c, str) else c.name
            for c in self._client.list_collections()
        ]

    def _all_collections(self) -> list[Any]:
        collections = []
        for name in self._existing_collection_names():
            suffix = name.removeprefix(f"{self._prefix}_")
            if suffix != name and suffix.isdigit():
                collections.append(self._get_collection(int(suffix), create=False))
        return [c for c in collections if c is not None]

    # ------------------------------------------------------------------
    # IVectorStoreProvider implementation
    # ------------------------------------------------------------------

    async def search(
        self,
        organization_id: str,
        agent_id: str,
        query_vector: list[float],
        k: int,
    ) -> list[ScoredChunk]:
        if k <= 0 or not query_vector:
            return []
        try:
            collection = self._get_collection(len(query_vector), create=False)
            if collection is None:
                return []

            results = collection.query(
                query_embeddings=[query_vector],
                n_results=k,
                where={
                    "$and": [
                        {"organization_id": organization_id},
                        {"agent_id": agent_id},
                    ]
                },
                include=["documents", "metadatas", "distances"],
            )
        except Exception as exc:
            raise VectorStoreError(
                message=f"ChromaDB search failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        if not results["ids"] or not results["ids"][0]:
            return []

        ids = results["ids"][0]
        documents = results["documents"][0] if results["documents"] else [""] * len(ids)
        metadatas = results["metadatas"][0] if results["metadatas"] else [{}] * len(ids)
        distances = results["distances"][0] if results["distances"] else [1.0] * len(ids)

        hits = [
            ScoredChunk(
                chunk=self._metadata_to_chunk(chunk_id, doc, meta),
                score=max(0.0, min(1.0, 1.0 - distance)),
            )
            for chunk_id, doc, meta, distance in zip(ids, documents, metadatas, distances, strict=True)
        ]
        logger.debug(
            "chromadb_search",
            organization_id=organization_id,
            agent_id=agent_id,
            results=len(hits),
        )
        return hits

    async def upsert(self, chunks: list[Chunk]) -> int:
        if not chunks:
            return 0

        by_dimension: dict[int, list[Chunk]] = {}
        for chunk in chunks:
            if not chunk.embedding:
                raise VectorStoreError(
                    message=f"Chunk {chunk.id} has no embedding",
                    provider_name=self.get_provider_name(),
                )
            by_dimension.setdefault(len(chunk.embedding), []).append(chunk)

        try:
            total = 0
            for dimensions, group in by_dimension.items():
                collection = self._get_collection(dimensions, create=True)
                for start in range(0, len(group), _UPSERT_BATCH):
                    batch = group[start : start + _UPSERT_BATCH]
                    collection.upsert(
                        ids=[c.id for c in batch],
                        embeddings=[c.embedding for c in batch],
                        documents=[c.text for c in batch],
                        metadatas=[self._chunk_to_metadata(c) for c in batch],
                    )
                    total += len(batch)
        except Exception as exc:
            raise VectorStoreError(
                message=f"ChromaDB upsert failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        logger.info("chromadb_upsert", count=total)
        return total

    async def delete_by_source(self, source_id: str) -> int:
        try:
            deleted = 0
            for collection in self._all_collections():
                existing = collection.get(where={"source_id": source_id}, include=[])
                count = len(existing["ids"]) if existing["ids"] else 0
                if count:
                    collection.delete(where={"source_id": source_id})
                    deleted += count
        except Exception as exc:
            raise VectorStoreError(
                message=f"ChromaDB delete_by_source failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        logger.info("chromadb_delete_by_source", source_id=source_id, deleted_count=deleted)
        return deleted

    async def count_by_source(self, source_id: str) -> int:
        try:
            return sum(
                len(collection.get(where={"source_id": source_id}, include=[])["ids"] or [])
                for collection in self._all_collections()
            )
        except Exception as exc:
            raise VectorStoreError(
                message=f"ChromaDB count_by_source failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

    def get_provider_name(self) -> str:
        return "chromadb"

    # ------------------------------------------------------------------
    # Metadata mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _chunk_to_metadata(chunk: Chunk) -> dict[str, Any]:
        """Flatten a chunk's metadata; Chroma rejects ``None`` values."""
        meta: dict[str, Any] = {
            "organization_id": chunk.organization_id,
            "agent_id": chunk.agent_id,
            "source_id": chunk.source_id,
            "source_type": chunk.source_type.value,
            "source_name": chunk.source_name,
            "chunk_index": chunk.chunk_index,
            "token_count": chunk.token_count,
            "embedding_model": chunk.embedding_model,
            "created_at": chunk.created_at,
        }
        if chunk.page_number is not None:
            meta["page_number"] = chunk.page_number
        if chunk.url:
            meta["url"] = chunk.url
        return meta

    @staticmethod
    def _metadata_to_chunk(chunk_id: str, document: str, meta: dict[str, Any]) -> Chunk:
        return Chunk(
            id=chunk_id,
            organization_id=meta["organization_id"],
            agent_id=meta["agent_id"],
            source_id=meta["source_id"],
            source_type=SourceType(meta["source_type"]),
            source_name=meta.get("source_name", ""),
            chunk_index=int(meta.get("chunk_index", 0)),
            text=document or "",
            token_count=int(meta.get("token_count", 0)),
            embedding_model=meta.get("embedding_model", ""),
            page_number=meta.get("page_number"),
            url=meta.get("url"),
            created_at=float(meta.get("created_at", 0.0)),
        )
