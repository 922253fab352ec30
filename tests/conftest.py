"""Shared pytest fixtures for the ragdesk test suite."""

from __future__ import annotations

import hashlib
import math
import re
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from ragdesk.config.settings import Settings
from ragdesk.interfaces.embedding_provider import IEmbeddingProvider
from ragdesk.interfaces.llm_provider import ILLMProvider
from ragdesk.models.llm import EmbeddingResponse, LLMCompletion, LLMMessage, StreamDelta
from ragdesk.models.tenant import Agent, Guardrails, PlanLimits, PlanTier
from ragdesk.pipeline.event_bus import EventBus
from ragdesk.providers.store.account_repository import AccountRepository
from ragdesk.providers.store.conversation_repository import ConversationRepository
from ragdesk.providers.store.database import Database
from ragdesk.providers.store.source_repository import SourceRepository
from ragdesk.providers.vector_store.memory_store import InMemoryVectorStore
from ragdesk.services.jobs.job_tracker import JobTracker
from ragdesk.services.usage_ledger import UsageLedger
from ragdesk.utils.errors import EmbeddingError, LLMError

EMBED_MODEL = "fake-embed"
EMBED_DIMENSIONS = 16

ORG_A = "org-a"
ORG_B = "org-b"
AGENT_A = "agent-a"
AGENT_B = "agent-b"

PLANS: dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(
        rate_limit_capacity=5,
        rate_limit_refill_per_second=1.0,
        message_credits=100,
        storage_limit_kb=1000,
    ),
    PlanTier.PRO: PlanLimits(
        rate_limit_capacity=50,
        rate_limit_refill_per_second=5.0,
        message_credits=1000,
        storage_limit_kb=100_000,
    ),
}

GUARDRAILS = Guardrails(
    crisis_template="Please call 988 for support.",
    redirect_template="Please contact the authorities.",
    disclaimer_template="Please consult a professional.",
    decline_template="I can't help with that.",
)


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------


class FakeEmbeddingProvider(IEmbeddingProvider):
    """Deterministic bag-of-words vectors: shared words mean higher cosine."""

    def __init__(self, dimensions: int = EMBED_DIMENSIONS) -> None:
        self.dimensions = dimensions
        self.calls: list[list[str]] = []
        self.fail_times = 0

    async def embed(self, texts: list[str], model: str) -> EmbeddingResponse:
        self.calls.append(list(texts))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise EmbeddingError(message="temporary outage", provider_name="fake")
        return EmbeddingResponse(
            vectors=[self.vector_for(t) for t in texts],
            model=model,
            tokens=sum(len(t.split()) for t in texts),
        )

    def vector_for(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            slot = int(hashlib.sha256(word.encode()).hexdigest(), 16) % self.dimensions
            vector[slot] += 1.0
        norm = math.sqrt(sum(v * v for v in vector)) or 1.0
        return [v / norm for v in vector]

    def get_provider_name(self) -> str:
        return "fake"

    def is_available(self) -> bool:
        return True


class ScriptedLLM(ILLMProvider):
    """LLM double: streams ``stream_chunks`` and answers ``complete`` from a queue."""

    def __init__(
        self,
        stream_chunks: list[str] | None = None,
        completions: list[str | Exception] | None = None,
    ) -> None:
        self.stream_chunks = stream_chunks if stream_chunks is not None else ["Hello", " there."]
        self.completions: list[str | Exception] = list(completions or [])
        self.stream_error: Exception | None = None
        self.streamed_messages: list[list[LLMMessage]] = []
        self.complete_calls: list[dict[str, Any]] = []

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 500,
        json_mode: bool = False,
    ) -> LLMCompletion:
        self.complete_calls.append(
            {"system_prompt": system_prompt, "user_prompt": user_prompt, "model": model}
        )
        if not self.completions:
            raise LLMError(message="no scripted completion", provider_name="scripted")
        nxt = self.completions.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return LLMCompletion(text=nxt, model=model, tokens_prompt=10, tokens_completion=5)

    async def stream(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> AsyncIterator[StreamDelta]:
        self.streamed_messages.append(list(messages))
        for piece in self.stream_chunks:
            yield StreamDelta(text=piece)
        if self.stream_error is not None:
            raise self.stream_error
        yield StreamDelta(finished=True, tokens_prompt=42, tokens_completion=7)

    def get_provider_name(self) -> str:
        return "scripted"

    def is_available(self) -> bool:
        return True


PASS_JUDGEMENT = (
    '{"verdict": "PASS", "safety_score": 0.95, "groundedness_score": 0.9, '
    '"brand_alignment_score": 0.9, "category": "none", "reasoning": "fine"}'
)


def fail_judgement(category: str = "decline") -> str:
    return (
        '{"verdict": "FAIL", "safety_score": 0.1, "groundedness_score": 0.5, '
        f'"brand_alignment_score": 0.5, "category": "{category}", "reasoning": "unsafe"}}'
    )


# ---------------------------------------------------------------------------
# Settings / infrastructure
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key="sk-test",
        database_path=str(tmp_path / "ragdesk.db"),
        upload_dir=str(tmp_path / "uploads"),
        vector_store_backend="memory",
        embedding_model=EMBED_MODEL,
        embedding_dimensions=EMBED_DIMENSIONS,
        config_path=str(tmp_path / "missing.yaml"),
    )


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "test.db")
    await db.initialize()
    return db


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def accounts(database: Database) -> AccountRepository:
    return AccountRepository(database)


@pytest.fixture
def sources(database: Database) -> SourceRepository:
    return SourceRepository(database)


@pytest.fixture
def conversations(database: Database) -> ConversationRepository:
    return ConversationRepository(database)


@pytest.fixture
def tracker(database: Database, event_bus: EventBus) -> JobTracker:
    return JobTracker(database, event_bus=event_bus)


@pytest.fixture
def ledger(database: Database) -> UsageLedger:
    return UsageLedger(database)


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


def make_agent(agent_id: str = AGENT_A, organization_id: str = ORG_A, **overrides: Any) -> Agent:
    fields: dict[str, Any] = {
        "id": agent_id,
        "organization_id": organization_id,
        "name": "Helpdesk",
        "model": "test-chat",
        "temperature": 0.2,
        "system_prompt": "You answer questions about Acme products.",
        "embedding_model": EMBED_MODEL,
        "embedding_dimensions": EMBED_DIMENSIONS,
    }
    fields.update(overrides)
    return Agent(**fields)


@pytest_asyncio.fixture
async def tenants(accounts: AccountRepository) -> dict[str, Agent]:
    """Two organizations, each with one agent, plus a second agent in org A."""
    await accounts.upsert_organization(ORG_A, "Acme", PlanTier.PRO, PLANS[PlanTier.PRO])
    await accounts.upsert_organization(ORG_B, "Globex", PlanTier.FREE, PLANS[PlanTier.FREE])
    agent_a = await accounts.upsert_agent(make_agent())
    agent_b = await accounts.upsert_agent(make_agent(AGENT_B, ORG_A, name="Sales"))
    agent_other = await accounts.upsert_agent(make_agent("agent-x", ORG_B, name="Globex bot"))
    return {"a": agent_a, "b": agent_b, "other": agent_other}
