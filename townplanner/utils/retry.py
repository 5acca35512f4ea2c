"""Bounded retry and polling policies.

Both policies take an injectable ``sleep`` coroutine so tests can run them
against a fake clock instead of waiting in real time::

    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    policy = RetryPolicy(max_attempts=3, interval_seconds=2.0, sleep=fake_sleep)
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

from townplanner.utils.errors import ParseTimeoutError, TransientProviderError

_T = TypeVar("_T")

SleepFn = Callable[[float], Awaitable[None]]

logger = structlog.get_logger(logger_name=__name__)


class RetryPolicy:
    """Retry an async operation on transient errors.

    Parameters
    ----------
    max_attempts:
        Total number of attempts including the first one (minimum 1).
    interval_seconds:
        Delay before the second attempt.
    backoff_factor:
        Multiplier applied to the delay after every failed attempt.
        ``1.0`` gives a fixed interval.
    retry_on:
        Exception types that are considered retryable.  Everything else
        propagates immediately.
    sleep:
        Coroutine used to wait between attempts.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        interval_seconds: float = 1.0,
        backoff_factor: float = 2.0,
        retry_on: tuple[type[BaseException], ...] = (TransientProviderError,),
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._max_attempts = max(1, max_attempts)
        self._interval = max(0.0, interval_seconds)
        self._backoff = max(1.0, backoff_factor)
        self._retry_on = retry_on
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def delays(self) -> list[float]:
        """Return the waits that precede attempts 2..max_attempts."""
        return [
            self._interval * (self._backoff ** i)
            for i in range(self._max_attempts - 1)
        ]

    async def run(self, operation: Callable[[], Awaitable[_T]], name: str = "operation") -> _T:
        """Call *operation* until it succeeds or the attempt budget is spent.

        *operation* is a zero-argument factory so each attempt gets a fresh
        coroutine.  The last retryable error is re-raised unchanged.
        """
        delays = self.delays()
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await operation()
            except self._retry_on as exc:
                if attempt >= self._max_attempts:
                    logger.warning(
                        "retry_exhausted",
                        operation=name,
                        attempts=attempt,
                        error=str(exc),
                    )
                    raise
                delay = delays[attempt - 1]
                logger.info(
                    "retry_scheduled",
                    operation=name,
                    attempt=attempt,
                    delay=delay,
                    error=str(exc),
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover


class PollingPolicy:
    """Poll a long-running external job with a fixed interval.

    ``check`` returns ``None`` while the job is still running and any other
    value once it is done.  Exhausting ``max_attempts`` raises
    :class:`ParseTimeoutError`, which is a terminal failure for the unit.
    """

    def __init__(
        self,
        max_attempts: int = 60,
        interval_seconds: float = 5.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._max_attempts = max(1, max_attempts)
        self._interval = max(0.0, interval_seconds)
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def poll(
        self,
        check: Callable[[], Awaitable[_T | None]],
        provider_name: str | None = None,
    ) -> _T:
        for attempt in range(1, self._max_attempts + 1):
            result = await check()
            if result is not None:
                return result
            if attempt < self._max_attempts:
                await self._sleep(self._interval)

        raise ParseTimeoutError(
            message=(
                f"Job not finished after {self._max_attempts} polls "
                f"at {self._interval:g}s intervals"
            ),
            provider_name=provider_name,
        )
