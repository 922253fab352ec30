"""Read/write access to organizations and agents.

Tenant CRUD belongs to the surrounding platform; this repository covers
what the core needs: provisioning rows (used by seeding and tests), plan
and guardrail lookups, message-credit and storage accounting, and the
agent retraining flag.  Token-bucket columns are written only by
:class:`ragdesk.services.rate_limiter.RateLimiter`.
"""

from __future__ import annotations

import time
from datetime import datetime

import aiosqlite
import structlog

from ragdesk.models.tenant import Agent, Guardrails, Organization, PlanLimits, PlanTier
from ragdesk.providers.store.database import Database, from_iso, from_json, to_iso, to_json, utc_now
from ragdesk.utils.errors import NotFoundError, TenantBoundaryError

logger = structlog.get_logger(logger_name=__name__)

_UPSERT_ORG_SQL = """\
INSERT INTO organizations (
    id, name, plan, rate_limit_tokens, rate_limit_last_refill,
    message_credits_limit, storage_limit_kb, guardrails, created_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    name                  = excluded.name,
    plan                  = excluded.plan,
    message_credits_limit = excluded.message_credits_limit,
    storage_limit_kb      = excluded.storage_limit_kb,
    guardrails            = excluded.guardrails;
"""

_UPSERT_AGENT_SQL = """\
INSERT INTO agents (
    id, organization_id, name, model, temperature, system_prompt,
    embedding_model, embedding_dimensions, needs_retraining, version, created_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    name                 = excluded.name,
    model                = excluded.model,
    temperature          = excluded.temperature,
    system_prompt        = excluded.system_prompt,
    embedding_model      = excluded.embedding_model,
    embedding_dimensions = excluded.embedding_dimensions,
    needs_retraining     = CASE
        WHEN agents.embedding_model != excluded.embedding_model
          OR agents.embedding_dimensions != excluded.embedding_dimensions THEN 1
        ELSE agents.needs_retraining
    END,
    version              = agents.version + 1;
"""


class AccountRepository:
    """Organizations and agents, as seen by ingestion and chat."""

    def __init__(self, database: Database) -> None:
        self._db = database

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    async def upsert_organization(
        self,
        organization_id: str,
        name: str,
        plan: PlanTier,
        limits: PlanLimits,
        guardrails: Guardrails | None = None,
    ) -> Organization:
        """Create an organization with a full bucket, or update its plan."""
        async with self._db.connect() as db:
            await db.execute(
                _UPSERT_ORG_SQL,
                (
                    organization_id,
                    name,
                    plan.value,
                    float(limits.rate_limit_capacity),
                    time.time(),
                    limits.message_credits,
                    limits.storage_limit_kb,
                    to_json(guardrails.model_dump()) if guardrails else None,
                    to_iso(utc_now()),
                ),
            )
            await db.commit()
        return await self.get_organization(organization_id)

    async def get_organization(self, organization_id: str) -> Organization:
        async with self._db.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM organizations WHERE id = ?", (organization_id,)
            )
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"Organization {organization_id} not found")
        return _row_to_organization(row)

    async def consume_message_credit(self, organization_id: str) -> None:
        async with self._db.connect() as db:
            await db.execute(
                "UPDATE organizations SET message_credits_used = message_credits_used + 1 "
                "WHERE id = ?",
                (organization_id,),
            )
            await db.commit()

    async def adjust_storage(self, organization_id: str, delta_kb: int) -> None:
        async with self._db.connect() as db:
            await db.execute(
                "UPDATE organizations SET storage_used_kb = MAX(0, storage_used_kb + ?) "
                "WHERE id = ?",
                (delta_kb, organization_id),
            )
            await db.commit()

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def upsert_agent(self, agent: Agent) -> Agent:
        async with self._db.connect() as db:
            await db.execute(
                _UPSERT_AGENT_SQL,
                (
                    agent.id,
                    agent.organization_id,
                    agent.name,
                    agent.model,
                    agent.temperature,
                    agent.system_prompt,
                    agent.embedding_model,
                    agent.embedding_dimensions,
                    int(agent.needs_retraining),
                    agent.version,
                    to_iso(utc_now()),
                ),
            )
            await db.commit()
        return await self.get_agent(agent.organization_id, agent.id)

    async def get_agent(self, organization_id: str, agent_id: str) -> Agent:
        """Fetch an agent, refusing one that belongs to another organization."""
        async with self._db.connect() as db:
            cursor = await db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,))
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"Agent {agent_id} not found")
        if row["organization_id"] != organization_id:
            raise TenantBoundaryError(
                message=f"Agent {agent_id} does not belong to organization {organization_id}"
            )
        return _row_to_agent(row)

    async def set_needs_retraining(
        self,
        agent_id: str,
        needs_retraining: bool,
        trained_at: datetime | None = None,
    ) -> None:
        async with self._db.connect() as db:
            if needs_retraining:
                await db.execute(
                    "UPDATE agents SET needs_retraining = 1 WHERE id = ?", (agent_id,)
                )
            else:
                await db.execute(
                    "UPDATE agents SET needs_retraining = 0, last_trained_at = ? WHERE id = ?",
                    (to_iso(trained_at or utc_now()), agent_id),
                )
            await db.commit()
        logger.info("agent_retraining_flag", agent_id=agent_id, needs_retraining=needs_retraining)


def _row_to_organization(row: aiosqlite.Row) -> Organization:
    guardrails = from_json(row["guardrails"])
    return Organization(
        id=row["id"],
        name=row["name"],
        plan=PlanTier(row["plan"]),
        rate_limit_tokens=row["rate_limit_tokens"],
        rate_limit_last_refill=row["rate_limit_last_refill"],
        message_credits_used=row["message_credits_used"],
        message_credits_limit=row["message_credits_limit"],
        storage_used_kb=row["storage_used_kb"],
        storage_limit_kb=row["storage_limit_kb"],
        guardrails=Guardrails(**guardrails) if guardrails else None,
    )


def _row_to_agent(row: aiosqlite.Row) -> Agent:
    return Agent(
        id=row["id"],
        organization_id=row["organization_id"],
        name=row["name"],
        model=row["model"],
        temperature=row["temperature"],
        system_prompt=row["system_prompt"],
        embedding_model=row["embedding_model"],
        embedding_dimensions=row["embedding_dimensions"],
        needs_retraining=bool(row["needs_retraining"]),
        last_trained_at=from_iso(row["last_trained_at"]),
        version=row["version"],
    )
