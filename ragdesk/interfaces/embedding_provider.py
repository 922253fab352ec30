"""Abstract base class for text-embedding service providers.

Defines the contract for turning text into vectors over an outbound HTTP
call.  The model identifier is an argument rather than provider state:
each agent pins its own embedding model, and one provider instance serves
every agent.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ragdesk.models.llm import EmbeddingResponse


# Concrete implementation: OpenAIEmbeddingProvider (ragdesk/providers/embedding/)
class IEmbeddingProvider(ABC):
    """Contract for embedding services used by ingestion and retrieval."""

    @abstractmethod
    async def embed(self, texts: list[str], model: str) -> EmbeddingResponse:
        """Embed a batch of texts with *model* in a single service call.

        Parameters
        ----------
        texts:
            Texts to embed.  Callers are responsible for batch sizing;
            implementations make exactly one request per call.
        model:
            The embedding model identifier to request.

        Returns
        -------
        EmbeddingResponse
            Vectors corresponding positionally to *texts*, tagged with the
            model the service reports having used.

        Raises
        ------
        ragdesk.utils.errors.EmbeddingError
            If the call fails; the whole batch is considered failed.
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier used in logs and error messages."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if credentials are configured."""
