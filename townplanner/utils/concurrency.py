"""Shared concurrency primitives for the ingestion and report pipelines.

Two patterns are exposed:

1. **throttled_gather** -- a drop-in replacement for ``asyncio.gather`` that
   wraps each awaitable in a semaphore acquire/release.  Used for batch
   retrieval across queries and for per-section report generation.

2. **with_timeout** -- wraps a single provider call with an explicit
   deadline and converts ``asyncio.TimeoutError`` into
   :class:`~townplanner.utils.errors.ProviderTimeoutError`, so a timeout is
   handled exactly like any other transient provider failure.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from townplanner.utils.errors import ProviderTimeoutError

_T = TypeVar("_T")

_DEFAULT_LIMIT = 4


async def throttled_gather(
    coros: list[Awaitable[_T]],
    limit: int | None = None,
    semaphore: asyncio.Semaphore | None = None,
    return_exceptions: bool = True,
) -> list[_T | BaseException]:
    """Run awaitables concurrently with bounded parallelism.

    Parameters
    ----------
    coros:
        Awaitable objects to execute concurrently.
    limit:
        Maximum number running at once.  Ignored when ``semaphore`` is given.
    semaphore:
        Optional semaphore shared with other callers.
    return_exceptions:
        If ``True``, exceptions are returned in the results list rather
        than being raised.  Mirrors ``asyncio.gather`` semantics.

    Returns
    -------
    list[_T | BaseException]
        Results in the same order as the input coroutines.
    """
    if semaphore is None:
        semaphore = asyncio.Semaphore(max(1, limit or _DEFAULT_LIMIT))

    async def _wrapped(coro: Awaitable[_T]) -> _T:
        async with semaphore:
            return await coro

    tasks = [_wrapped(c) for c in coros]
    return await asyncio.gather(*tasks, return_exceptions=return_exceptions)


async def with_timeout(
    awaitable: Awaitable[_T],
    seconds: float | None,
    provider_name: str | None = None,
    operation: str = "call",
) -> _T:
    """Await *awaitable* with a deadline of *seconds* (``None`` disables it)."""
    if seconds is None or seconds <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise ProviderTimeoutError(
            message=f"{operation} timed out after {seconds:g}s",
            provider_name=provider_name,
        ) from exc
