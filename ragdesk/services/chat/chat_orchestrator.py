"""Chat turn orchestration: retrieve, stream, judge, persist.

A turn moves ``received -> retrieving -> generating -> judging`` and ends
in ``delivered`` or ``fallback``.  Each phase change is published on
``stream:{stream_id}``.

Connection independence
-----------------------
:meth:`ChatOrchestrator.start_turn` does admission control and writes the
user message, an empty assistant message and a stream record, then starts
the rest of the turn as a background task and returns a :class:`ChatTurn`.
The HTTP layer only *reads* the turn's token queue.  If the client goes
away, generation, judging and persistence carry on, and a reconnecting
client resumes from the stream record.

Live stream protocol
--------------------
Text deltas are sent as they arrive.  If the judge then fails the
response, the stream ends with a form feed (``\\f``) followed by the
fallback text, meaning "replace what was shown".  Organizations with
``hold_until_judged`` get nothing until the judge has decided, and then
only the final text.  The unsafe generation is written to the log
(``judge_fallback``) and nowhere else.

Any error after admission degrades to :data:`APOLOGY_MESSAGE`; the client
never sees internal error detail.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import AsyncIterator

import structlog

from ragdesk.interfaces.llm_provider import ILLMProvider
from ragdesk.models.chat import (
    ChatRequest,
    ChatTurnPhase,
    Conversation,
    JudgeVerdict,
    Message,
    MessageRole,
    StreamStatus,
)
from ragdesk.models.tenant import AgentConfigSnapshot, Guardrails
from ragdesk.models.usage import UsageEventInput, UsageEventType
from ragdesk.pipeline.event_bus import EventBus
from ragdesk.providers.store.account_repository import AccountRepository
from ragdesk.providers.store.conversation_repository import ConversationRepository
from ragdesk.providers.store.database import utc_now
from ragdesk.services.chat.prompt_builder import PromptBuilder
from ragdesk.services.chat.safety_judge import SafetyJudge, fallback_text
from ragdesk.services.chat.stream_writer import CheckpointWriter
from ragdesk.services.rate_limiter import RateLimiter
from ragdesk.services.retrieval_service import RetrievalEngine, RetrievalResult
from ragdesk.services.usage_ledger import UsageLedger
from ragdesk.utils.errors import ContentError
from ragdesk.utils.tokens import estimate_tokens

logger = structlog.get_logger(logger_name=__name__)

APOLOGY_MESSAGE = (
    "I'm sorry, I'm having trouble responding right now. Please try again in a moment."
)
REPLACE_MARKER = "\f"


class ChatTurn:
    """Handle on one in-flight turn: identifiers plus the live token feed."""

    def __init__(self, conversation_id: str, message_id: str, stream_id: str) -> None:
        self._conversation_id = conversation_id
        self._message_id = message_id
        self._stream_id = stream_id
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._task: asyncio.Task[Message] | None = None
        self._emitted = False

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def message_id(self) -> str:
        return self._message_id

    @property
    def stream_id(self) -> str:
        return self._stream_id

    @property
    def emitted(self) -> bool:
        """Whether any text has been sent to the live feed yet."""
        return self._emitted

    async def iter_text(self) -> AsyncIterator[str]:
        """Yield live text until the turn finishes."""
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    async def result(self) -> Message:
        """Wait for the turn to finish and return the final assistant message."""
        if self._task is None:
            raise RuntimeError("Turn has not been started")
        return await self._task

    def _emit(self, text: str) -> None:
        if text:
            self._emitted = True
            self._queue.put_nowait(text)

    def _close(self) -> None:
        self._queue.put_nowait(None)


class ChatOrchestrator:
    """Runs chat turns end to end.

    Parameters
    ----------
    default_guardrails:
        Used for organizations without their own guardrail configuration.
    history_window:
        How many stored messages are considered as history.
    checkpoint_min_chars:
        Minimum new text between durable stream checkpoints.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        conversations: ConversationRepository,
        retrieval: RetrievalEngine,
        prompt_builder: PromptBuilder,
        llm: ILLMProvider,
        judge: SafetyJudge,
        rate_limiter: RateLimiter,
        ledger: UsageLedger,
        default_guardrails: Guardrails,
        event_bus: EventBus | None = None,
        history_window: int = 10,
        checkpoint_min_chars: int = 80,
        max_output_tokens: int = 1024,
    ) -> None:
        self._accounts = accounts
        self._conversations = conversations
        self._retrieval = retrieval
        self._prompts = prompt_builder
        self._llm = llm
        self._judge = judge
        self._rate_limiter = rate_limiter
        self._ledger = ledger
        self._default_guardrails = default_guardrails
        self._event_bus = event_bus
        self._history_window = history_window
        self._checkpoint_min_chars = checkpoint_min_chars
        self._max_output_tokens = max_output_tokens
        self._tasks: set[asyncio.Task[Message]] = set()

    # ------------------------------------------------------------------
    # Turn entry point
    # ------------------------------------------------------------------

    async def start_turn(self, request: ChatRequest, *, skip_judge: bool = False) -> ChatTurn:
        """Admit the request, persist its inputs and start generation.

        ``skip_judge`` is for trusted internal callers only; the HTTP route
        never sets it, and every skip is logged.

        Raises
        ------
        CapacityError
            Rate limit or message credits exhausted.
        TenantBoundaryError
            The agent or conversation belongs elsewhere.
        ContentError
            The request does not end with a user message.
        """
        if request.messages[-1].role is not MessageRole.USER:
            raise ContentError(message="The last message must come from the user")
        user_text = request.messages[-1].content

        await self._rate_limiter.check_credits(request.organization_id)
        await self._rate_limiter.acquire(request.organization_id)
        organization = await self._accounts.get_organization(request.organization_id)
        agent = await self._accounts.get_agent(request.organization_id, request.agent_id)

        if request.conversation_id:
            conversation = await self._conversations.get_conversation(
                request.organization_id, request.conversation_id, agent_id=request.agent_id
            )
        else:
            conversation = await self._create_conversation(request, AgentConfigSnapshot.from_agent(agent))

        history = await self._conversations.list_messages(conversation.id, limit=self._history_window)

        now = utc_now()
        await self._conversations.append_message(
            Message(
                id=str(uuid.uuid4()),
                conversation_id=conversation.id,
                organization_id=conversation.organization_id,
                role=MessageRole.USER,
                content=user_text,
                created_at=now,
            )
        )
        turn = ChatTurn(conversation.id, str(uuid.uuid4()), str(uuid.uuid4()))
        await self._conversations.append_message(
            Message(
                id=turn.message_id,
                conversation_id=conversation.id,
                organization_id=conversation.organization_id,
                role=MessageRole.ASSISTANT,
                content="",
                stream_id=turn.stream_id,
                model=conversation.agent_config.model,
                created_at=utc_now(),
            )
        )
        await self._conversations.create_stream(turn.stream_id, turn.message_id, conversation.organization_id)
        await self._publish_phase(turn, conversation, ChatTurnPhase.RECEIVED)

        guardrails = organization.guardrails or self._default_guardrails
        task = asyncio.create_task(
            self._run_turn(turn, conversation, history, user_text, guardrails, skip_judge),
            name=f"chat:{turn.message_id}",
        )
        turn._task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(
            "chat_turn_started",
            conversation_id=conversation.id,
            message_id=turn.message_id,
            stream_id=turn.stream_id,
            history=len(history),
        )
        return turn

    async def drain(self) -> None:
        """Wait for every in-flight turn (graceful shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Turn body (runs detached from the client connection)
    # ------------------------------------------------------------------

    async def _run_turn(
        self,
        turn: ChatTurn,
        conversation: Conversation,
        history: list[Message],
        user_text: str,
        guardrails: Guardrails,
        skip_judge: bool,
    ) -> Message:
        started = time.monotonic()
        config = conversation.agent_config
        writer: CheckpointWriter | None = None
        try:
            await self._publish_phase(turn, conversation, ChatTurnPhase.RETRIEVING)
            retrieved = await self._retrieval.retrieve(
                user_text, conversation.organization_id, conversation.agent_id
            )
            prompt = await self._prompts.build(config, retrieved.chunks, history, user_text)

            await self._publish_phase(turn, conversation, ChatTurnPhase.GENERATING)
            writer = CheckpointWriter(
                self._conversations,
                turn.stream_id,
                conversation.organization_id,
                min_chars=self._checkpoint_min_chars,
                event_bus=self._event_bus,
                persist=not guardrails.hold_until_judged,
            )
            tokens_prompt: int | None = None
            tokens_completion: int | None = None
            async for delta in self._llm.stream(
                prompt.messages,
                model=config.model,
                temperature=config.temperature,
                max_tokens=self._max_output_tokens,
            ):
                if delta.finished:
                    tokens_prompt = delta.tokens_prompt
                    tokens_completion = delta.tokens_completion
                    continue
                if not delta.text:
                    continue
                writer.feed(delta.text)
                if not guardrails.hold_until_judged:
                    turn._emit(delta.text)
            response = writer.text
            await writer.close()
            writer = None

            await self._publish_phase(turn, conversation, ChatTurnPhase.JUDGING)
            if skip_judge:
                verdict = self._judge.skip(
                    "Caller requested skip",
                    conversation_id=conversation.id,
                    message_id=turn.message_id,
                )
            else:
                verdict = await self._judge.evaluate(
                    response, prompt.context_text, user_text, config.system_prompt, guardrails
                )

            if verdict.passed:
                final_text = response
                citations = prompt.citations
                phase = ChatTurnPhase.DELIVERED
                if guardrails.hold_until_judged:
                    turn._emit(final_text)
            else:
                final_text = fallback_text(verdict.category, guardrails)
                citations = []
                phase = ChatTurnPhase.FALLBACK
                logger.warning(
                    "judge_fallback",
                    conversation_id=conversation.id,
                    message_id=turn.message_id,
                    category=verdict.category.value,
                    reason=verdict.reason,
                    judge_errored=verdict.errored,
                    raw_response=response,
                )
                turn._emit(REPLACE_MARKER + final_text if turn.emitted else final_text)

            latency_ms = int((time.monotonic() - started) * 1000)
            tokens_prompt = tokens_prompt if tokens_prompt is not None else sum(
                estimate_tokens(m.content) for m in prompt.messages
            )
            tokens_completion = (
                tokens_completion if tokens_completion is not None else estimate_tokens(response)
            )
            message = await self._conversations.finalize_message(
                turn.message_id,
                content=final_text,
                citations=citations,
                model=config.model,
                tokens_prompt=tokens_prompt,
                tokens_completion=tokens_completion,
                latency_ms=latency_ms,
                judge_passed=None if verdict.skipped else verdict.passed,
            )
            await self._conversations.write_checkpoint(turn.stream_id, final_text, StreamStatus.DONE)
            await self._record_usage(
                conversation, turn, tokens_prompt, tokens_completion, latency_ms, retrieved, verdict
            )
            await self._accounts.consume_message_credit(conversation.organization_id)
            await self._publish_phase(turn, conversation, phase)

            logger.info(
                "chat_turn_completed",
                conversation_id=conversation.id,
                message_id=turn.message_id,
                phase=phase.value,
                latency_ms=latency_ms,
                citations=len(citations),
            )
            return message
        except Exception as exc:
            logger.error(
                "chat_turn_failed",
                conversation_id=conversation.id,
                message_id=turn.message_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if writer is not None:
                await writer.close()
            return await self._deliver_apology(turn, conversation, started)
        finally:
            turn._close()

    async def _deliver_apology(
        self, turn: ChatTurn, conversation: Conversation, started: float
    ) -> Message:
        turn._emit(REPLACE_MARKER + APOLOGY_MESSAGE if turn.emitted else APOLOGY_MESSAGE)
        message = await self._conversations.finalize_message(
            turn.message_id,
            content=APOLOGY_MESSAGE,
            citations=[],
            model=conversation.agent_config.model,
            tokens_prompt=None,
            tokens_completion=None,
            latency_ms=int((time.monotonic() - started) * 1000),
            judge_passed=None,
        )
        await self._conversations.write_checkpoint(turn.stream_id, APOLOGY_MESSAGE, StreamStatus.DONE)
        await self._publish_phase(turn, conversation, ChatTurnPhase.FALLBACK)
        return message

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _create_conversation(
        self, request: ChatRequest, snapshot: AgentConfigSnapshot
    ) -> Conversation:
        now = utc_now()
        conversation = await self._conversations.create_conversation(
            Conversation(
                id=str(uuid.uuid4()),
                organization_id=request.organization_id,
                agent_id=request.agent_id,
                visitor_id=request.visitor_id,
                agent_config=snapshot,
                created_at=now,
                last_message_at=now,
            )
        )
        # Earlier turns supplied by the client seed the transcript of a new conversation.
        for earlier in request.messages[:-1]:
            await self._conversations.append_message(
                Message(
                    id=str(uuid.uuid4()),
                    conversation_id=conversation.id,
                    organization_id=conversation.organization_id,
                    role=earlier.role,
                    content=earlier.content,
                    created_at=utc_now(),
                )
            )
        return conversation

    async def _record_usage(
        self,
        conversation: Conversation,
        turn: ChatTurn,
        tokens_prompt: int,
        tokens_completion: int,
        latency_ms: int,
        retrieved: RetrievalResult,
        verdict: JudgeVerdict,
    ) -> None:
        base = {
            "organization_id": conversation.organization_id,
            "agent_id": conversation.agent_id,
            "conversation_id": conversation.id,
            "message_id": turn.message_id,
        }
        await self._ledger.record(
            UsageEventInput(
                **base,
                event_type=UsageEventType.CHAT_COMPLETION,
                model=conversation.agent_config.model,
                tokens_prompt=tokens_prompt,
                tokens_completion=tokens_completion,
                latency_ms=latency_ms,
            ),
            idempotency_key=f"message:{turn.message_id}:completion",
        )
        if retrieved.query_tokens:
            await self._ledger.record(
                UsageEventInput(
                    **base,
                    event_type=UsageEventType.EMBEDDING,
                    model=retrieved.embedding_model,
                    tokens_prompt=retrieved.query_tokens,
                ),
                idempotency_key=f"message:{turn.message_id}:query_embedding",
            )
        if not verdict.skipped:
            await self._ledger.record(
                UsageEventInput(
                    **base,
                    event_type=UsageEventType.JUDGE,
                    model=self._judge.model,
                    tokens_prompt=verdict.tokens_prompt or 0,
                    tokens_completion=verdict.tokens_completion or 0,
                ),
                idempotency_key=f"message:{turn.message_id}:judge",
            )

    async def _publish_phase(
        self, turn: ChatTurn, conversation: Conversation, phase: ChatTurnPhase
    ) -> None:
        logger.debug("chat_phase", message_id=turn.message_id, phase=phase.value)
        if self._event_bus is None:
            return
        await self._event_bus.publish(
            f"stream:{turn.stream_id}",
            f"chat.{phase.value}",
            {
                "conversation_id": conversation.id,
                "message_id": turn.message_id,
                "stream_id": turn.stream_id,
                "phase": phase.value,
            },
            organization_id=conversation.organization_id,
        )
