"""Tenant-side models: organizations, agents and their guardrails.

Organization and agent CRUD live outside ragdesk; these models are the
read view the core needs (plan tier for admission control, agent config for
chat, embedding identity for ingestion) plus the rate-limit bucket state
the core owns.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PlanTier(str, Enum):
    """Billing plan; selects rate-limit bucket, credits and storage limits."""

    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class PlanLimits(BaseModel):
    """Limits for one plan tier, loaded from ``config/config.yaml``."""

    model_config = ConfigDict(frozen=True)

    rate_limit_capacity: int = Field(gt=0, description="Token bucket size.")
    rate_limit_refill_per_second: float = Field(gt=0.0, description="Tokens added per second.")
    message_credits: int = Field(ge=0, description="Assistant messages per billing period.")
    storage_limit_kb: int = Field(ge=0, description="Total source bytes allowed, in KB.")


class Guardrails(BaseModel):
    """Per-organization safety configuration consumed by the safety judge.

    Each ``*_template`` is the literal text a visitor sees when the judge
    fails a response and selects the matching fallback category.
    """

    model_config = ConfigDict(frozen=True)

    crisis_template: str
    redirect_template: str
    disclaimer_template: str
    decline_template: str
    blocked_topics: list[str] = Field(default_factory=list)
    brand_rules: str = ""
    hold_until_judged: bool = Field(
        default=False,
        description="Buffer generated text until the judge has passed it.",
    )


class Organization(BaseModel):
    """A tenant, with its plan and the state of its admission-control bucket."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    plan: PlanTier = PlanTier.FREE
    rate_limit_tokens: float = Field(ge=0.0)
    rate_limit_last_refill: float = Field(description="Unix time of the last lazy refill.")
    message_credits_used: int = 0
    message_credits_limit: int = 0
    storage_used_kb: int = 0
    storage_limit_kb: int = 0
    guardrails: Guardrails | None = Field(
        default=None,
        description="Organization overrides; None means the configured defaults.",
    )


class Agent(BaseModel):
    """A chatbot configuration owned by an organization."""

    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    name: str
    model: str
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    system_prompt: str = ""
    embedding_model: str
    embedding_dimensions: int = Field(gt=0)
    needs_retraining: bool = False
    last_trained_at: datetime | None = None
    version: int = 1


class AgentConfigSnapshot(BaseModel):
    """Agent configuration frozen onto a conversation at creation time."""

    model_config = ConfigDict(frozen=True)

    name: str
    model: str
    temperature: float
    system_prompt: str

    @classmethod
    def from_agent(cls, agent: Agent) -> AgentConfigSnapshot:
        return cls(
            name=agent.name,
            model=agent.model,
            temperature=agent.temperature,
            system_prompt=agent.system_prompt,
        )
