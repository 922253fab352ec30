"""Abstract base class for LLM service providers.

Two call shapes are needed: a one-shot completion (safety judge, history
summarization) and a token stream (chat generation).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator

from ragdesk.models.llm import LLMCompletion, LLMMessage, StreamDelta


# Concrete implementation: OpenAILLMProvider (ragdesk/providers/llm/)
class ILLMProvider(ABC):
    """Contract for chat-completion services."""

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 500,
        json_mode: bool = False,
    ) -> LLMCompletion:
        """Generate a single completion.

        Raises
        ------
        ragdesk.utils.errors.LLMError
            If the API call fails or returns no content.
        """

    @abstractmethod
    def stream(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> AsyncIterator[StreamDelta]:
        """Stream a chat completion as text deltas.

        The final item has ``finished=True`` and carries token usage when
        the service reports it.  Errors, including ones reported by the
        service mid-stream, raise :class:`~ragdesk.utils.errors.LLMError`
        from the iterator.
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier used in logs and error messages."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if credentials are configured."""
