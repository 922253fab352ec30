"""Bounded-concurrency helpers.

:func:`throttled_gather` is a drop-in for ``asyncio.gather`` that wraps each
awaitable in a semaphore acquire/release.  The website crawler uses it to
fetch one breadth-first level of pages at a time without opening an
unbounded number of connections to the same host.

:data:`Heartbeat` callbacks let a long step (a crawl, a multi-batch embed)
prove to the job tracker that its worker is still alive.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

_T = TypeVar("_T")


async def throttled_gather(
    coros: list[Awaitable[_T]],
    semaphore: asyncio.Semaphore,
    return_exceptions: bool = True,
) -> list[_T | BaseException]:
    """Run awaitables concurrently, at most ``semaphore`` slots at a time.

    Parameters
    ----------
    coros:
        Awaitable objects to execute concurrently.
    semaphore:
        Semaphore bounding how many run at once.  Owned by the caller so
        limits are per component rather than process-global.
    return_exceptions:
        If ``True``, exceptions are returned in the results list rather
        than being raised.  Mirrors ``asyncio.gather`` semantics.

    Returns
    -------
    list[_T | BaseException]
        Results in the same order as the input coroutines.
    """

    async def _wrapped(coro: Awaitable[_T]) -> _T:
        async with semaphore:
            return await coro

    tasks = [_wrapped(c) for c in coros]
    return await asyncio.gather(*tasks, return_exceptions=return_exceptions)


Heartbeat = Callable[[], Awaitable[None]]
"""Async callback a long-running step calls between units of work."""


async def beat(heartbeat: Heartbeat | None) -> None:
    if heartbeat is not None:
        await heartbeat()
