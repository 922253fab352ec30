"""Per-organization token-bucket admission control.

Bucket state lives on the ``organizations`` row (``rate_limit_tokens`` and
``rate_limit_last_refill``).  There is no background refill timer: each
``acquire`` computes the refill from the time elapsed since the last one,
then decrements, all inside one ``BEGIN IMMEDIATE`` transaction so two
concurrent requests can never both spend the last token.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping

import structlog

from ragdesk.models.tenant import PlanLimits, PlanTier
from ragdesk.providers.store.database import Database
from ragdesk.utils.errors import CreditsExhaustedError, NotFoundError, RateLimitExceededError

logger = structlog.get_logger(logger_name=__name__)


class RateLimiter:
    """Admits or rejects requests per organization.

    Parameters
    ----------
    database:
        Shared SQLite database holding the bucket columns.
    plans:
        Limits per plan tier.
    clock:
        Returns Unix time in seconds; injectable for tests.
    """

    def __init__(
        self,
        database: Database,
        plans: Mapping[PlanTier, PlanLimits],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = database
        self._plans = dict(plans)
        self._clock = clock

    async def acquire(self, organization_id: str) -> float:
        """Spend one token, returning the tokens left afterwards.

        Raises
        ------
        RateLimitExceededError
            When the bucket holds less than one token.  ``retry_after`` is
            the time until one token has refilled.
        """
        now = self._clock()
        async with self._db.transaction() as db:
            cursor = await db.execute(
                "SELECT plan, rate_limit_tokens, rate_limit_last_refill "
                "FROM organizations WHERE id = ?",
                (organization_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(message=f"Organization {organization_id} not found")

            limits = self._plans[PlanTier(row["plan"])]
            elapsed = max(0.0, now - row["rate_limit_last_refill"])
            tokens = min(
                float(limits.rate_limit_capacity),
                row["rate_limit_tokens"] + elapsed * limits.rate_limit_refill_per_second,
            )

            if tokens < 1.0:
                # Persist the refill so the next check starts from it.
                await db.execute(
                    "UPDATE organizations SET rate_limit_tokens = ?, rate_limit_last_refill = ? "
                    "WHERE id = ?",
                    (tokens, now, organization_id),
                )
                retry_after = (1.0 - tokens) / limits.rate_limit_refill_per_second
                logger.warning(
                    "rate_limit_rejected",
                    organization_id=organization_id,
                    tokens=round(tokens, 3),
                    retry_after=round(retry_after, 2),
                )
                rejection = RateLimitExceededError(retry_after=retry_after)
            else:
                tokens -= 1.0
                await db.execute(
                    "UPDATE organizations SET rate_limit_tokens = ?, rate_limit_last_refill = ? "
                    "WHERE id = ?",
                    (tokens, now, organization_id),
                )
                rejection = None

        # Raised after the block so the refill above is committed, not rolled back.
        if rejection is not None:
            raise rejection
        return tokens

    async def check_credits(self, organization_id: str) -> None:
        """Reject when the organization has no message credits left."""
        async with self._db.connect() as db:
            cursor = await db.execute(
                "SELECT message_credits_used, message_credits_limit FROM organizations WHERE id = ?",
                (organization_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(message=f"Organization {organization_id} not found")
        if row["message_credits_used"] >= row["message_credits_limit"]:
            logger.warning(
                "message_credits_exhausted",
                organization_id=organization_id,
                used=row["message_credits_used"],
                limit=row["message_credits_limit"],
            )
            raise CreditsExhaustedError()
