"""Chat models: conversations, messages, durable streams and judge verdicts.

A chat turn walks ``received -> retrieving -> generating -> judging`` and
ends in exactly one of ``delivered`` or ``fallback``.  Each phase change is
published on the event bus (topic ``stream:{id}``) so other subscribers can
follow a turn without polling.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from ragdesk.models.rag import Citation
from ragdesk.models.tenant import AgentConfigSnapshot


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ChatTurnPhase(str, Enum):
    RECEIVED = "received"
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    JUDGING = "judging"
    DELIVERED = "delivered"
    FALLBACK = "fallback"


class StreamStatus(str, Enum):
    STREAMING = "streaming"
    DONE = "done"


class FallbackCategory(str, Enum):
    """Which guardrail template replaces a failed response."""

    CRISIS = "crisis"
    REDIRECT_AUTHORITIES = "redirect_authorities"
    DISCLAIMER = "disclaimer"
    DECLINE = "decline"
    NONE = "none"


class Conversation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    agent_id: str
    visitor_id: str
    agent_config: AgentConfigSnapshot
    created_at: datetime
    last_message_at: datetime


class Message(BaseModel):
    """An append-only conversation entry.

    Assistant messages are inserted empty when generation starts and
    written once more when the turn finishes; intermediate text lives in
    the stream record named by ``stream_id``.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    organization_id: str
    role: MessageRole
    content: str
    citations: list[Citation] = Field(default_factory=list)
    stream_id: str | None = None
    model: str | None = None
    tokens_prompt: int | None = None
    tokens_completion: int | None = None
    latency_ms: int | None = None
    judge_passed: bool | None = None
    created_at: datetime


class StreamCheckpoint(BaseModel):
    """The durable state of a generation stream, for resuming clients."""

    model_config = ConfigDict(frozen=True)

    id: str
    message_id: str
    organization_id: str
    text: str = ""
    status: StreamStatus = StreamStatus.STREAMING
    sequence: int = Field(default=0, description="Checkpoint writes so far.")
    updated_at: datetime


class ChatMessageInput(BaseModel):
    """One role/content pair as submitted by the chat client."""

    role: MessageRole
    content: str = Field(min_length=1)


class ChatRequest(BaseModel):
    """Inbound chat turn at the chat request boundary."""

    organization_id: str
    agent_id: str
    visitor_id: str
    messages: list[ChatMessageInput] = Field(min_length=1)
    conversation_id: str | None = None


class JudgeScores(BaseModel):
    model_config = ConfigDict(frozen=True)

    safety: float = Field(ge=0.0, le=1.0)
    groundedness: float = Field(ge=0.0, le=1.0)
    brand_alignment: float = Field(ge=0.0, le=1.0)


class JudgeVerdict(BaseModel):
    """Outcome of the safety judge for one generated response."""

    model_config = ConfigDict(frozen=True)

    passed: bool
    reason: str
    category: FallbackCategory = FallbackCategory.NONE
    scores: JudgeScores | None = None
    skipped: bool = False
    errored: bool = False
    tokens_prompt: int | None = None
    tokens_completion: int | None = None
