"""Bounded fan-out helper for running independent pipelines concurrently.

Ingestion is sequential *within* an upload session, but separate sessions
(different users, different uploads) may run side by side.
:func:`throttled_gather` is a drop-in replacement for ``asyncio.gather``
that wraps each awaitable in a semaphore so only a bounded number execute
at once, which keeps the combined load on the embedding provider in check.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

_T = TypeVar("_T")


async def throttled_gather(
    coros: list[Awaitable[_T]],
    max_concurrency: int = 4,
    return_exceptions: bool = True,
) -> list[_T | BaseException]:
    """Run awaitables concurrently with at most *max_concurrency* in flight.

    Parameters
    ----------
    coros:
        Awaitable objects to execute concurrently.
    max_concurrency:
        Upper bound on simultaneously running awaitables (minimum 1).
    return_exceptions:
        If ``True``, exceptions are returned in the results list rather
        than being raised.  Mirrors ``asyncio.gather`` semantics.

    Returns
    -------
    list[_T | BaseException]
        Results in the same order as the input coroutines.
    """
    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def _wrapped(coro: Awaitable[_T]) -> _T:
        async with semaphore:
            return await coro

    tasks = [_wrapped(c) for c in coros]
    return await asyncio.gather(*tasks, return_exceptions=return_exceptions)
