"""Unit tests for retry/polling policies and the concurrency helpers."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from townplanner.utils.concurrency import throttled_gather, with_timeout
from townplanner.utils.errors import (
    LLMError,
    ParseTimeoutError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitError,
)
from townplanner.utils.retry import PollingPolicy, RetryPolicy


def _flaky(failures: list[Exception], result: str = "ok") -> tuple[Callable[[], Any], list[int]]:
    """Operation factory that raises each queued failure once, then succeeds."""
    calls: list[int] = []

    async def _operation() -> str:
        calls.append(1)
        if failures:
            raise failures.pop(0)
        return result

    return _operation, calls


class TestRetryPolicy:
    def test_delays_grow_geometrically(self) -> None:
        policy = RetryPolicy(max_attempts=4, interval_seconds=1.0, backoff_factor=2.0)
        assert policy.delays() == [1.0, 2.0, 4.0]

    def test_fixed_interval(self) -> None:
        policy = RetryPolicy(max_attempts=3, interval_seconds=5.0, backoff_factor=1.0)
        assert policy.delays() == [5.0, 5.0]

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, fake_sleep, sleeps: list[float]) -> None:
        operation, calls = _flaky([RateLimitError(), ProviderUnavailableError()])
        policy = RetryPolicy(max_attempts=3, interval_seconds=1.0, sleep=fake_sleep)

        assert await policy.run(operation, "embed") == "ok"
        assert len(calls) == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_budget_reraises_last_error(self, fake_sleep, sleeps: list[float]) -> None:
        last = ProviderTimeoutError(message="third")
        operation, calls = _flaky([RateLimitError(), RateLimitError(), last])
        policy = RetryPolicy(max_attempts=3, sleep=fake_sleep)

        with pytest.raises(ProviderTimeoutError) as exc_info:
            await policy.run(operation)

        assert exc_info.value is last
        assert len(calls) == 3
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_non_transient_errors_are_not_retried(self, fake_sleep, sleeps: list[float]) -> None:
        operation, calls = _flaky([LLMError(message="bad request")])
        policy = RetryPolicy(max_attempts=5, sleep=fake_sleep)

        with pytest.raises(LLMError):
            await policy.run(operation)

        assert len(calls) == 1
        assert sleeps == []


class TestPollingPolicy:
    @pytest.mark.asyncio
    async def test_returns_first_non_none_result(self, fake_sleep, sleeps: list[float]) -> None:
        answers = [None, None, {"status": "SUCCESS"}]

        async def check() -> dict | None:
            return answers.pop(0)

        policy = PollingPolicy(max_attempts=5, interval_seconds=2.0, sleep=fake_sleep)
        assert await policy.poll(check) == {"status": "SUCCESS"}
        assert sleeps == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_parse_timeout(self, fake_sleep, sleeps: list[float]) -> None:
        async def check() -> None:
            return None

        policy = PollingPolicy(max_attempts=3, interval_seconds=5.0, sleep=fake_sleep)
        with pytest.raises(ParseTimeoutError) as exc_info:
            await policy.poll(check, provider_name="llamacloud")

        assert exc_info.value.provider_name == "llamacloud"
        assert exc_info.value.code == "parse_timeout"
        assert sleeps == [5.0, 5.0]


class TestWithTimeout:
    @pytest.mark.asyncio
    async def test_timeout_becomes_transient_provider_error(self) -> None:
        with pytest.raises(ProviderTimeoutError) as exc_info:
            await with_timeout(asyncio.sleep(1), 0.01, provider_name="openai", operation="completion")
        assert "completion timed out" in str(exc_info.value)
        assert str(exc_info.value).startswith("[openai]")

    @pytest.mark.asyncio
    async def test_none_disables_the_deadline(self) -> None:
        async def value() -> int:
            return 7

        assert await with_timeout(value(), None) == 7


class TestThrottledGather:
    @pytest.mark.asyncio
    async def test_results_keep_input_order_and_failures_are_isolated(self) -> None:
        async def ok(value: int) -> int:
            await asyncio.sleep(0)
            return value

        async def boom() -> int:
            raise LLMError(message="failed")

        results = await throttled_gather([ok(1), boom(), ok(3)], limit=2)

        assert results[0] == 1
        assert isinstance(results[1], LLMError)
        assert results[2] == 3

    @pytest.mark.asyncio
    async def test_parallelism_is_bounded(self) -> None:
        running = 0
        peak = 0

        async def work() -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        await throttled_gather([work() for _ in range(8)], limit=3)
        assert peak == 3
