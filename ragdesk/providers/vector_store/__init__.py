"""Vector store adapters."""

from ragdesk.providers.vector_store.chromadb_provider import ChromaDBProvider
from ragdesk.providers.vector_store.memory_store import InMemoryVectorStore

__all__ = ["ChromaDBProvider", "InMemoryVectorStore"]
