"""Pydantic v2 domain models for ragdesk.

- **tenant** -- organizations, agents, plan limits, guardrails.
- **source** -- knowledge sources and their lifecycle table.
- **job** -- ingestion jobs and the job state machine.
- **rag** -- text spans, embedded chunks, search hits, citations.
- **chat** -- conversations, messages, durable streams, judge verdicts.
- **usage** -- append-only usage ledger rows.
- **llm** -- provider results for completion, streaming, embedding, fetching.
"""

from ragdesk.models.chat import (
    ChatMessageInput,
    ChatRequest,
    ChatTurnPhase,
    Conversation,
    FallbackCategory,
    JudgeScores,
    JudgeVerdict,
    Message,
    MessageRole,
    StreamCheckpoint,
    StreamStatus,
)
from ragdesk.models.job import (
    FailureOutcome,
    IngestionTrigger,
    Job,
    JobErrorEntry,
    JobProgress,
    JobStats,
    JobStatus,
    JobType,
    StuckJob,
)
from ragdesk.models.llm import EmbeddingResponse, FetchedPage, LLMCompletion, LLMMessage, StreamDelta
from ragdesk.models.rag import Chunk, Citation, EmbeddedVector, ScoredChunk, TextSpan
from ragdesk.models.source import (
    AcquiredSegment,
    AcquisitionResult,
    CrawlMode,
    Source,
    SourceStatus,
    SourceType,
)
from ragdesk.models.tenant import (
    Agent,
    AgentConfigSnapshot,
    Guardrails,
    Organization,
    PlanLimits,
    PlanTier,
)
from ragdesk.models.usage import UsageEvent, UsageEventInput, UsageEventType, UsageTotals

__all__ = [
    "AcquiredSegment",
    "AcquisitionResult",
    "Agent",
    "AgentConfigSnapshot",
    "ChatMessageInput",
    "ChatRequest",
    "ChatTurnPhase",
    "Chunk",
    "Citation",
    "Conversation",
    "CrawlMode",
    "EmbeddingResponse",
    "EmbeddedVector",
    "FailureOutcome",
    "FallbackCategory",
    "FetchedPage",
    "Guardrails",
    "IngestionTrigger",
    "Job",
    "JobErrorEntry",
    "JobProgress",
    "JobStats",
    "JobStatus",
    "JobType",
    "JudgeScores",
    "JudgeVerdict",
    "LLMCompletion",
    "LLMMessage",
    "Message",
    "MessageRole",
    "Organization",
    "PlanLimits",
    "PlanTier",
    "ScoredChunk",
    "Source",
    "SourceStatus",
    "SourceType",
    "StreamCheckpoint",
    "StreamStatus",
    "StreamDelta",
    "StuckJob",
    "TextSpan",
    "UsageEvent",
    "UsageEventInput",
    "UsageEventType",
    "UsageTotals",
]
