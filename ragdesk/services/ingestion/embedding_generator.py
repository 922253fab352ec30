"""Batching front-end for the embedding service.

Texts are sent in batches (100 per request by default).  Each request is
all-or-nothing: a failed or short batch raises, and the caller retries the
whole step through the job tracker rather than patching individual items.

Every vector is tagged with the model that produced it, and its length is
checked against the agent's configured dimensionality.  A mismatch means
the agent's model was swapped without re-embedding, which no retry can fix,
so it raises :class:`ConfigurationError` instead of a retryable error.
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel, ConfigDict

from ragdesk.interfaces.embedding_provider import IEmbeddingProvider
from ragdesk.models.rag import EmbeddedVector
from ragdesk.utils.concurrency import Heartbeat, beat
from ragdesk.utils.errors import ConfigurationError, EmbeddingError
from ragdesk.utils.tokens import estimate_tokens

logger = structlog.get_logger(logger_name=__name__)


class EmbeddingResult(BaseModel):
    """Vectors for one ``generate`` call plus the tokens billed for them."""

    model_config = ConfigDict(frozen=True)

    vectors: list[EmbeddedVector]
    tokens: int = 0


class EmbeddingGenerator:
    """Embeds chunk texts and queries with a fixed, per-call model."""

    def __init__(self, provider: IEmbeddingProvider, batch_size: int = 100) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._provider = provider
        self._batch_size = batch_size

    async def generate(
        self,
        texts: list[str],
        model: str,
        dimensions: int,
        heartbeat: Heartbeat | None = None,
    ) -> EmbeddingResult:
        """Embed *texts* with *model*, one vector per input, in input order.

        *heartbeat*, when given, is awaited after every batch.

        Raises
        ------
        EmbeddingError
            If a batch call fails or returns the wrong number of vectors.
        ConfigurationError
            If a vector's length differs from *dimensions*.
        """
        vectors: list[EmbeddedVector] = []
        tokens = 0
        for start in range(0, len(texts), self._batch_size):
            batch = texts[start : start + self._batch_size]
            response = await self._provider.embed(batch, model)

            if len(response.vectors) != len(batch):
                raise EmbeddingError(
                    message=(
                        f"Embedding batch returned {len(response.vectors)} vectors "
                        f"for {len(batch)} inputs"
                    ),
                    provider_name=self._provider.get_provider_name(),
                )
            for vector in response.vectors:
                if len(vector) != dimensions:
                    raise ConfigurationError(
                        message=(
                            f"Model {model} produced {len(vector)}-dimensional vectors, "
                            f"agent is configured for {dimensions}"
                        ),
                        provider_name=self._provider.get_provider_name(),
                    )
                vectors.append(EmbeddedVector(vector=vector, model=model))

            tokens += (
                response.tokens
                if response.tokens is not None
                else sum(estimate_tokens(t) for t in batch)
            )
            await beat(heartbeat)

        logger.info(
            "embeddings_generated",
            model=model,
            count=len(vectors),
            batches=(len(texts) + self._batch_size - 1) // self._batch_size,
            tokens=tokens,
        )
        return EmbeddingResult(vectors=vectors, tokens=tokens)
