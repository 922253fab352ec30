"""Abstract base class for vector-store providers.

The store is a k-nearest-neighbour index over :class:`Chunk` records.  Every
search is filtered by organization AND agent inside the store query; the
retrieval service re-checks the scope of each hit on top of that.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ragdesk.models.rag import Chunk, ScoredChunk


# Concrete implementations: ChromaDBProvider, InMemoryVectorStore
# Located in: ragdesk/providers/vector_store/
class IVectorStoreProvider(ABC):
    """Contract for chunk storage and tenant-filtered similarity search."""

    @abstractmethod
    async def search(
        self,
        organization_id: str,
        agent_id: str,
        query_vector: list[float],
        k: int,
    ) -> list[ScoredChunk]:
        """Return up to *k* chunks of this organization+agent, best first.

        Parameters
        ----------
        organization_id, agent_id:
            Tenant scope.  Chunks outside it are never returned.
        query_vector:
            Query embedding; must share the dimensionality of the stored
            chunks for this agent.
        k:
            Maximum number of hits.
        """

    @abstractmethod
    async def upsert(self, chunks: list[Chunk]) -> int:
        """Store *chunks* (with embeddings); returns the number written."""

    @abstractmethod
    async def delete_by_source(self, source_id: str) -> int:
        """Delete every chunk of a source; returns the number deleted."""

    @abstractmethod
    async def count_by_source(self, source_id: str) -> int:
        """Return how many chunks a source currently has."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier used in logs and error messages."""
