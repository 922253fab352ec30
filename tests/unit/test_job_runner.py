"""Unit tests for the background job runner."""

from __future__ import annotations

import asyncio

import pytest

from ragdesk.pipeline.job_runner import JobRunner


class TestJobRunner:
    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self) -> None:
        runner = JobRunner(concurrency=2)
        active = 0
        peak = 0

        async def work() -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        for i in range(6):
            assert runner.submit(f"job-{i}", work) is True
        await runner.drain(timeout=5)

        assert peak == 2
        assert runner.active_count == 0

    @pytest.mark.asyncio
    async def test_same_job_is_not_scheduled_twice(self) -> None:
        runner = JobRunner()
        release = asyncio.Event()
        calls = 0

        async def work() -> None:
            nonlocal calls
            calls += 1
            await release.wait()

        assert runner.submit("job-1", work) is True
        assert runner.submit("job-1", work) is False
        assert runner.is_running("job-1")

        release.set()
        await runner.drain(timeout=5)
        assert calls == 1
        assert not runner.is_running("job-1")

    @pytest.mark.asyncio
    async def test_resubmit_waits_for_the_previous_task(self) -> None:
        runner = JobRunner(concurrency=1)
        release = asyncio.Event()
        order: list[str] = []

        async def first() -> None:
            await release.wait()
            order.append("first")

        async def second() -> None:
            order.append("second")

        runner.submit("job-1", first)
        await asyncio.sleep(0)
        runner.resubmit("job-1", second)
        await asyncio.sleep(0.01)
        assert order == []

        release.set()
        await runner.drain(timeout=5)
        assert order == ["first", "second"]
        assert not runner.is_running("job-1")

    @pytest.mark.asyncio
    async def test_failures_are_contained(self) -> None:
        runner = JobRunner()

        async def work() -> None:
            raise RuntimeError("handled by the coordinator")

        runner.submit("job-1", work)
        await runner.drain(timeout=5)
        assert runner.active_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_cancels_in_flight(self) -> None:
        runner = JobRunner()
        cancelled = asyncio.Event()

        async def work() -> None:
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        runner.submit("job-1", work)
        await asyncio.sleep(0)
        await runner.shutdown()

        assert cancelled.is_set()
        assert runner.active_count == 0
