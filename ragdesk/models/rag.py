"""Retrieval data models: text spans, embedded chunks and search hits.

Pipeline overview:

    1. CHUNKING: acquired text is split into overlapping, sentence-aware
       :class:`TextSpan` windows (ragdesk/services/ingestion/chunker.py).
    2. EMBEDDING: each span is embedded; the vector is tagged with the
       model that produced it (:class:`EmbeddedVector`).
    3. STORAGE: spans + vectors become immutable :class:`Chunk` records in
       the vector store, scoped by organization and agent.
    4. RETRIEVAL: a query vector returns :class:`ScoredChunk` hits, which
       the chat orchestrator turns into prompt context and citations.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from ragdesk.models.source import SourceType


class TextSpan(BaseModel):
    """A chunker window over a text, with character offsets into that text."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    text: str
    start: int = Field(ge=0, description="Offset of the first character.")
    end: int = Field(ge=0, description="Offset one past the last character.")
    token_count: int = Field(ge=0, description="Estimated, not tokenizer-exact.")


class EmbeddedVector(BaseModel):
    model_config = ConfigDict(frozen=True)

    vector: list[float]
    model: str


class Chunk(BaseModel):
    """An immutable embedded slice of one source.

    Chunks are never updated; re-embedding a source deletes its chunks
    and inserts a new set.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    agent_id: str
    source_id: str
    source_type: SourceType
    source_name: str
    chunk_index: int = Field(ge=0)
    text: str
    token_count: int = 0
    embedding: list[float] = Field(default_factory=list, repr=False)
    embedding_model: str
    page_number: int | None = None
    url: str | None = None
    created_at: float = Field(description="Unix time; newer wins score ties.")


class ScoredChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunk: Chunk
    score: float = Field(description="Cosine similarity, higher is closer.")


class Citation(BaseModel):
    """A source attribution attached to a delivered assistant message."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    source_name: str
    source_type: SourceType
    chunk_id: str
    page_number: int | None = None
    url: str | None = None
    score: float = 0.0
