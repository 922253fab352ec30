"""LLM provider adapters."""

from ragdesk.providers.llm.openai_provider import OpenAILLMProvider

__all__ = ["OpenAILLMProvider"]
