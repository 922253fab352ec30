"""Unit tests for the per-organization token bucket and credit check."""

from __future__ import annotations

import asyncio
import time

import pytest

from ragdesk.models.tenant import Agent, PlanTier
from ragdesk.providers.store.account_repository import AccountRepository
from ragdesk.providers.store.database import Database
from ragdesk.services.rate_limiter import RateLimiter
from ragdesk.utils.errors import CreditsExhaustedError, NotFoundError, RateLimitExceededError
from tests.conftest import ORG_A, ORG_B, PLANS


class FakeClock:
    def __init__(self) -> None:
        self.now = time.time()

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(database: Database, clock: FakeClock, tenants: dict[str, Agent]) -> RateLimiter:
    # ORG_B is on the free plan: capacity 5, refill 1 token/second.
    clock.now = time.time()
    return RateLimiter(database, PLANS, clock=clock)


class TestTokenBucket:
    @pytest.mark.asyncio
    async def test_capacity_plus_one_rejects_exactly_once(self, limiter: RateLimiter) -> None:
        capacity = PLANS[PlanTier.FREE].rate_limit_capacity
        outcomes: list[bool] = []
        for _ in range(capacity + 1):
            try:
                await limiter.acquire(ORG_B)
                outcomes.append(True)
            except RateLimitExceededError:
                outcomes.append(False)

        assert outcomes.count(False) == 1
        assert outcomes[-1] is False

    @pytest.mark.asyncio
    async def test_rejection_carries_retry_after(self, limiter: RateLimiter) -> None:
        for _ in range(5):
            await limiter.acquire(ORG_B)
        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.acquire(ORG_B)
        assert exc_info.value.retry_after == pytest.approx(1.0, abs=0.05)

    @pytest.mark.asyncio
    async def test_refill_is_lazy_and_capped(self, limiter: RateLimiter, clock: FakeClock) -> None:
        for _ in range(5):
            await limiter.acquire(ORG_B)

        clock.now += 2.0
        assert await limiter.acquire(ORG_B) == pytest.approx(1.0, abs=0.05)

        clock.now += 3600.0
        remaining = await limiter.acquire(ORG_B)
        assert remaining == pytest.approx(PLANS[PlanTier.FREE].rate_limit_capacity - 1)

    @pytest.mark.asyncio
    async def test_concurrent_requests_never_overspend(self, limiter: RateLimiter) -> None:
        results = await asyncio.gather(
            *[limiter.acquire(ORG_B) for _ in range(10)], return_exceptions=True
        )
        admitted = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, RateLimitExceededError)]
        assert len(admitted) == 5
        assert len(rejected) == 5

    @pytest.mark.asyncio
    async def test_buckets_are_per_organization(self, limiter: RateLimiter) -> None:
        for _ in range(5):
            await limiter.acquire(ORG_B)
        await limiter.acquire(ORG_A)

    @pytest.mark.asyncio
    async def test_unknown_organization(self, limiter: RateLimiter) -> None:
        with pytest.raises(NotFoundError):
            await limiter.acquire("nope")


class TestMessageCredits:
    @pytest.mark.asyncio
    async def test_credits_available(self, limiter: RateLimiter) -> None:
        await limiter.check_credits(ORG_A)

    @pytest.mark.asyncio
    async def test_credits_exhausted(
        self, limiter: RateLimiter, accounts: AccountRepository
    ) -> None:
        for _ in range(PLANS[PlanTier.FREE].message_credits):
            await accounts.consume_message_credit(ORG_B)
        with pytest.raises(CreditsExhaustedError):
            await limiter.check_credits(ORG_B)
