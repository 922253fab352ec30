"""Provider-facing result models for completion, streaming and embedding calls."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class LLMMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str
    content: str


class LLMCompletion(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    model: str
    tokens_prompt: int | None = None
    tokens_completion: int | None = None


class StreamDelta(BaseModel):
    """One streamed event: a text delta, or the closing usage report."""

    model_config = ConfigDict(frozen=True)

    text: str = ""
    tokens_prompt: int | None = None
    tokens_completion: int | None = None
    finished: bool = False


class EmbeddingResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    vectors: list[list[float]] = Field(repr=False)
    model: str
    tokens: int | None = None


class FetchedPage(BaseModel):
    """A fetched web page: extracted main text plus discovered links."""

    model_config = ConfigDict(frozen=True)

    url: str
    title: str | None = None
    text: str = ""
    links: list[str] = Field(default_factory=list)
