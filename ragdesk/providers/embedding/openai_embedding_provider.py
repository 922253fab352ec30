"""OpenAI-compatible embedding provider adapter.

Wraps the ``openai`` async client to implement :class:`IEmbeddingProvider`.
Works against OpenAI itself or any gateway exposing ``/embeddings`` (set
``OPENAI_BASE_URL``).  Batch sizing is the caller's job: one ``embed`` call
is one HTTP request, so a failure fails the whole batch.
"""

from __future__ import annotations

import openai
import structlog

from ragdesk.config.settings import Settings
from ragdesk.interfaces.embedding_provider import IEmbeddingProvider
from ragdesk.models.llm import EmbeddingResponse
from ragdesk.utils.errors import EmbeddingError

logger = structlog.get_logger(logger_name=__name__)


class OpenAIEmbeddingProvider(IEmbeddingProvider):
    """Embedding provider backed by an OpenAI-compatible embeddings API."""

    def __init__(self, settings: Settings, client: openai.AsyncOpenAI | None = None) -> None:
        self._api_key = settings.openai_api_key

        if client is None:
            client_kwargs: dict = {
                "api_key": self._api_key or "unset",
                "timeout": openai.Timeout(settings.embedding_timeout_seconds, connect=5.0),
                "max_retries": 0,
            }
            if settings.openai_base_url:
                client_kwargs["base_url"] = settings.openai_base_url
            client = openai.AsyncOpenAI(**client_kwargs)

        self._client = client
        self._provider_label = (
            "openai-compatible_embedding" if settings.openai_base_url else "openai_embedding"
        )

    # ------------------------------------------------------------------
    # IEmbeddingProvider implementation
    # ------------------------------------------------------------------

    async def embed(self, texts: list[str], model: str) -> EmbeddingResponse:
        if not texts:
            return EmbeddingResponse(vectors=[], model=model, tokens=0)

        try:
            response = await self._client.embeddings.create(input=texts, model=model)
        except openai.APITimeoutError as exc:
            raise EmbeddingError(
                message=f"{self._provider_label} timed out embedding {len(texts)} texts",
                provider_name=self.get_provider_name(),
            ) from exc
        except openai.APIError as exc:
            raise EmbeddingError(
                message=f"{self._provider_label} API error: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        # The API may return items out of order; ``index`` is authoritative.
        items = sorted(response.data, key=lambda item: item.index)
        tokens = response.usage.total_tokens if response.usage else None
        logger.info(
            "openai_embedding_batch",
            model=model,
            provider=self._provider_label,
            batch_size=len(texts),
            tokens=tokens,
        )
        return EmbeddingResponse(
            vectors=[list(item.embedding) for item in items],
            model=model,
            tokens=tokens,
        )

    def get_provider_name(self) -> str:
        return self._provider_label

    def is_available(self) -> bool:
        return bool(self._api_key)
