"""Provider interfaces (abstract base classes).

Services depend on these contracts only; concrete adapters live under
``ragdesk/providers`` and are wired together in ``ragdesk/main.py``.
"""

from ragdesk.interfaces.embedding_provider import IEmbeddingProvider
from ragdesk.interfaces.llm_provider import ILLMProvider
from ragdesk.interfaces.page_fetcher import IPageFetcher
from ragdesk.interfaces.vector_store_provider import IVectorStoreProvider

__all__ = [
    "IEmbeddingProvider",
    "ILLMProvider",
    "IPageFetcher",
    "IVectorStoreProvider",
]
