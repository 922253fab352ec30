"""Unit tests for chat turns: streaming, judging, fallback and persistence."""

from __future__ import annotations

import time
import uuid

import pytest

from ragdesk.models.chat import ChatMessageInput, ChatRequest, MessageRole, StreamStatus
from ragdesk.models.rag import Chunk
from ragdesk.models.source import Source, SourceType
from ragdesk.models.tenant import PlanLimits, PlanTier
from ragdesk.models.usage import UsageEventType
from ragdesk.providers.store.database import utc_now
from ragdesk.services.chat.chat_orchestrator import APOLOGY_MESSAGE, ChatOrchestrator, ChatTurn
from ragdesk.services.chat.prompt_builder import PromptBuilder
from ragdesk.services.chat.safety_judge import SafetyJudge
from ragdesk.services.ingestion.embedding_generator import EmbeddingGenerator
from ragdesk.services.rate_limiter import RateLimiter
from ragdesk.services.retrieval_service import RetrievalEngine
from ragdesk.utils.errors import (
    ContentError,
    CreditsExhaustedError,
    LLMError,
    TenantBoundaryError,
)
from tests.conftest import (
    AGENT_A,
    AGENT_B,
    EMBED_MODEL,
    GUARDRAILS,
    ORG_A,
    PASS_JUDGEMENT,
    PLANS,
    ScriptedLLM,
    fail_judgement,
)


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM(stream_chunks=["Hello", " there."], completions=[PASS_JUDGEMENT])


@pytest.fixture
def orchestrator(
    tenants, database, accounts, conversations, sources, ledger, vector_store, embedding_provider, event_bus, llm
) -> ChatOrchestrator:
    return ChatOrchestrator(
        accounts=accounts,
        conversations=conversations,
        retrieval=RetrievalEngine(EmbeddingGenerator(embedding_provider), vector_store, sources, accounts),
        prompt_builder=PromptBuilder(),
        llm=llm,
        judge=SafetyJudge(llm, model="judge-model", timeout_seconds=5),
        rate_limiter=RateLimiter(database, PLANS),
        ledger=ledger,
        default_guardrails=GUARDRAILS,
        event_bus=event_bus,
        checkpoint_min_chars=5,
    )


def _request(text: str = "When do you open?", **fields) -> ChatRequest:
    return ChatRequest(
        organization_id=fields.pop("organization_id", ORG_A),
        agent_id=fields.pop("agent_id", AGENT_A),
        visitor_id="visitor-1",
        messages=fields.pop("messages", [ChatMessageInput(role=MessageRole.USER, content=text)]),
        **fields,
    )


async def _collect(turn: ChatTurn) -> str:
    return "".join([piece async for piece in turn.iter_text()])


class TestDelivered:
    @pytest.mark.asyncio
    async def test_streams_and_persists(self, orchestrator, conversations, accounts, ledger) -> None:
        turn = await orchestrator.start_turn(_request())
        shown = await _collect(turn)
        message = await turn.result()

        assert shown == "Hello there."
        assert message.content == "Hello there."
        assert message.judge_passed is True
        assert message.tokens_prompt == 42
        assert message.tokens_completion == 7

        stored = await conversations.list_messages(turn.conversation_id)
        assert [m.role for m in stored] == [MessageRole.USER, MessageRole.ASSISTANT]
        stream = await conversations.get_stream(ORG_A, turn.stream_id)
        assert stream.status is StreamStatus.DONE
        assert stream.text == "Hello there."

        assert (await accounts.get_organization(ORG_A)).message_credits_used == 1
        kinds = sorted(e.event_type for e in await ledger.list_events(ORG_A))
        assert kinds == sorted([UsageEventType.CHAT_COMPLETION, UsageEventType.JUDGE])

    @pytest.mark.asyncio
    async def test_phases_are_published_in_order(self, orchestrator, event_bus) -> None:
        seen: list[str] = []
        event_bus.subscribe(f"org:{ORG_A}", lambda e: seen.append(e.kind) if e.kind.startswith("chat.") else None)

        turn = await orchestrator.start_turn(_request())
        await turn.result()

        assert seen == ["chat.received", "chat.retrieving", "chat.generating", "chat.judging", "chat.delivered"]

    @pytest.mark.asyncio
    async def test_follow_up_turn_sees_history(self, orchestrator, llm) -> None:
        first = await orchestrator.start_turn(_request("Hi"))
        await first.result()
        llm.completions.append(PASS_JUDGEMENT)

        second = await orchestrator.start_turn(_request("And on Sunday?", conversation_id=first.conversation_id))
        await second.result()

        contents = [m.content for m in llm.streamed_messages[1][1:]]
        assert contents == ["Hi", "Hello there.", "And on Sunday?"]

    @pytest.mark.asyncio
    async def test_grounded_answer_carries_citations(
        self, orchestrator, sources, vector_store, embedding_provider, ledger
    ) -> None:
        now = utc_now()
        source = await sources.create(
            Source(
                id=str(uuid.uuid4()),
                organization_id=ORG_A,
                agent_id=AGENT_A,
                type=SourceType.TEXT,
                name="Store hours",
                created_at=now,
                updated_at=now,
            )
        )
        text = "We open at nine and close at five."
        await vector_store.upsert(
            [
                Chunk(
                    id=f"{source.id}:0",
                    organization_id=ORG_A,
                    agent_id=AGENT_A,
                    source_id=source.id,
                    source_type=SourceType.TEXT,
                    source_name="Store hours",
                    chunk_index=0,
                    text=text,
                    embedding=embedding_provider.vector_for(text),
                    embedding_model=EMBED_MODEL,
                    created_at=time.time(),
                )
            ]
        )

        turn = await orchestrator.start_turn(_request("When do you open?"))
        message = await turn.result()

        assert [c.source_id for c in message.citations] == [source.id]
        kinds = {e.event_type for e in await ledger.list_events(ORG_A)}
        assert UsageEventType.EMBEDDING in kinds

    @pytest.mark.asyncio
    async def test_skip_judge(self, orchestrator, llm, ledger) -> None:
        turn = await orchestrator.start_turn(_request(), skip_judge=True)
        message = await turn.result()

        assert message.content == "Hello there."
        assert message.judge_passed is None
        assert llm.complete_calls == []
        kinds = {e.event_type for e in await ledger.list_events(ORG_A)}
        assert UsageEventType.JUDGE not in kinds


class TestFallback:
    @pytest.mark.asyncio
    async def test_failed_judge_replaces_streamed_text(self, orchestrator, llm, accounts) -> None:
        llm.completions[:] = [fail_judgement("crisis")]

        turn = await orchestrator.start_turn(_request("I feel hopeless"))
        shown = await _collect(turn)
        message = await turn.result()

        assert shown == "Hello there.\fPlease call 988 for support."
        assert message.content == "Please call 988 for support."
        assert message.citations == []
        assert message.judge_passed is False
        assert (await accounts.get_organization(ORG_A)).message_credits_used == 1

    @pytest.mark.asyncio
    async def test_hold_until_judged_shows_only_final_text(self, orchestrator, llm, accounts) -> None:
        held = GUARDRAILS.model_copy(update={"hold_until_judged": True})
        await accounts.upsert_organization(ORG_A, "Acme", PlanTier.PRO, PLANS[PlanTier.PRO], guardrails=held)

        turn = await orchestrator.start_turn(_request())
        assert await _collect(turn) == "Hello there."

        llm.completions.append(fail_judgement("decline"))
        turn = await orchestrator.start_turn(_request("Tell me something rude"))
        assert await _collect(turn) == GUARDRAILS.decline_template

    @pytest.mark.asyncio
    async def test_hold_until_judged_keeps_unjudged_text_out_of_checkpoints(
        self, orchestrator, llm, accounts, conversations
    ) -> None:
        held = GUARDRAILS.model_copy(update={"hold_until_judged": True})
        await accounts.upsert_organization(ORG_A, "Acme", PlanTier.PRO, PLANS[PlanTier.PRO], guardrails=held)
        llm.completions[:] = [fail_judgement("decline")]

        turn = await orchestrator.start_turn(_request("Tell me something rude"))
        await turn.result()

        stream = await conversations.get_stream(ORG_A, turn.stream_id)
        assert stream.text == GUARDRAILS.decline_template
        # Only the final judged write reached the stream record.
        assert stream.sequence == 1

    @pytest.mark.asyncio
    async def test_generation_error_becomes_apology(self, orchestrator, llm, accounts, conversations) -> None:
        llm.stream_error = LLMError(message="connection reset", provider_name="scripted")

        turn = await orchestrator.start_turn(_request())
        shown = await _collect(turn)
        message = await turn.result()

        assert shown == "Hello there.\f" + APOLOGY_MESSAGE
        assert message.content == APOLOGY_MESSAGE
        assert "connection reset" not in shown
        assert (await accounts.get_organization(ORG_A)).message_credits_used == 0
        stream = await conversations.get_stream(ORG_A, turn.stream_id)
        assert stream.status is StreamStatus.DONE

    @pytest.mark.asyncio
    async def test_turn_finishes_without_a_reader(self, orchestrator, conversations) -> None:
        turn = await orchestrator.start_turn(_request())
        await orchestrator.drain()

        stored = await conversations.get_message(turn.message_id)
        assert stored.content == "Hello there."


class TestAdmission:
    @pytest.mark.asyncio
    async def test_last_message_must_be_user(self, orchestrator) -> None:
        request = _request(
            messages=[
                ChatMessageInput(role=MessageRole.USER, content="Hi"),
                ChatMessageInput(role=MessageRole.ASSISTANT, content="Hello"),
            ]
        )
        with pytest.raises(ContentError):
            await orchestrator.start_turn(request)

    @pytest.mark.asyncio
    async def test_conversation_of_another_agent(self, orchestrator) -> None:
        turn = await orchestrator.start_turn(_request())
        await turn.result()
        with pytest.raises(TenantBoundaryError):
            await orchestrator.start_turn(_request(agent_id=AGENT_B, conversation_id=turn.conversation_id))

    @pytest.mark.asyncio
    async def test_credits_exhausted(self, orchestrator, accounts) -> None:
        limits = PlanLimits(
            rate_limit_capacity=50, rate_limit_refill_per_second=5.0, message_credits=1, storage_limit_kb=10
        )
        await accounts.upsert_organization(ORG_A, "Acme", PlanTier.PRO, limits)

        turn = await orchestrator.start_turn(_request())
        await turn.result()

        with pytest.raises(CreditsExhaustedError):
            await orchestrator.start_turn(_request())

    @pytest.mark.asyncio
    async def test_client_history_seeds_new_conversation(self, orchestrator, conversations) -> None:
        request = _request(
            messages=[
                ChatMessageInput(role=MessageRole.USER, content="Earlier question"),
                ChatMessageInput(role=MessageRole.ASSISTANT, content="Earlier answer"),
                ChatMessageInput(role=MessageRole.USER, content="Now this"),
            ]
        )
        turn = await orchestrator.start_turn(request)
        await turn.result()

        stored = [m.content for m in await conversations.list_messages(turn.conversation_id)]
        assert stored == ["Earlier question", "Earlier answer", "Now this", "Hello there."]
