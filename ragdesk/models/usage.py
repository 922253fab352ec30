"""Usage ledger models.

Ledger rows are append-only: never updated, never deleted.  Each one is
keyed by an idempotency key derived from the work it bills for, e.g.
``source:{id}:embed:{model}:{contentHash}`` or ``message:{id}:completion``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class UsageEventType(str, Enum):
    CHAT_COMPLETION = "chat_completion"
    EMBEDDING = "embedding"
    JUDGE = "judge"


class UsageEventInput(BaseModel):
    """A billable event before it has been written to the ledger."""

    model_config = ConfigDict(frozen=True)

    organization_id: str
    agent_id: str | None = None
    conversation_id: str | None = None
    message_id: str | None = None
    source_id: str | None = None
    event_type: UsageEventType
    model: str
    tokens_prompt: int = Field(default=0, ge=0)
    tokens_completion: int = Field(default=0, ge=0)
    latency_ms: int | None = None


class UsageEvent(UsageEventInput):
    id: str
    idempotency_key: str
    created_at: datetime


class UsageTotals(BaseModel):
    """Aggregated ledger totals for one organization."""

    model_config = ConfigDict(frozen=True)

    organization_id: str
    events_by_type: dict[str, int] = Field(default_factory=dict)
    tokens_prompt: int = 0
    tokens_completion: int = 0
