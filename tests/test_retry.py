"""Tests for :mod:`codeloop.ai.orchestration.retry`."""

from __future__ import annotations

import asyncio

import pytest

from codeloop.ai.orchestration.errors import ModelCallError
from codeloop.ai.orchestration.retry import RetryPolicy, classify_error, is_retryable_error, retry_async
from codeloop.ai.tools.errors import ToolTimeoutError, ToolValidationError


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_exponential_delays_are_capped() -> None:
    policy = RetryPolicy(base_delay=1.0, multiplier=2.0, max_delay=5.0)
    assert [policy.delay_for(attempt) for attempt in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


def test_linear_delays() -> None:
    policy = RetryPolicy(base_delay=0.5, backoff="linear")
    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [0.5, 1.0, 1.5]


@pytest.mark.asyncio
async def test_retries_until_success() -> None:
    sleep = _SleepRecorder()
    attempts: list[int] = []
    retries: list[int] = []

    async def _operation() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise ModelCallError("overloaded", retryable=True)
        return "ok"

    result = await retry_async(
        _operation,
        RetryPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0),
        on_retry=lambda attempt, exc, delay: retries.append(attempt),
        sleep=sleep,
    )

    assert result == "ok"
    assert len(attempts) == 3
    assert sleep.delays == [1.0, 2.0]
    assert retries == [1, 2]


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts() -> None:
    sleep = _SleepRecorder()
    attempts: list[int] = []

    async def _operation() -> str:
        attempts.append(1)
        raise ModelCallError("rate limited", code="rate_limit", retryable=True)

    with pytest.raises(ModelCallError):
        await retry_async(_operation, RetryPolicy(max_attempts=2, base_delay=0.1), sleep=sleep)

    assert len(attempts) == 2
    assert sleep.delays == [0.1]


@pytest.mark.asyncio
async def test_non_retryable_error_is_raised_immediately() -> None:
    sleep = _SleepRecorder()
    attempts: list[int] = []

    async def _operation() -> str:
        attempts.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await retry_async(_operation, RetryPolicy(max_attempts=5), sleep=sleep)

    assert len(attempts) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_custom_predicate() -> None:
    sleep = _SleepRecorder()
    attempts: list[int] = []

    async def _operation() -> str:
        attempts.append(1)
        if len(attempts) == 1:
            raise KeyError("flaky")
        return "done"

    result = await retry_async(
        _operation,
        RetryPolicy(max_attempts=2, base_delay=0.0),
        is_retryable=lambda exc: isinstance(exc, KeyError),
        sleep=sleep,
    )

    assert result == "done"
    assert sleep.delays == [0.0]


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (asyncio.TimeoutError(), "timeout"),
        ("Request timed out", "timeout"),
        ("429 Too Many Requests", "rate_limit"),
        (ConnectionResetError("reset"), "network"),
        ("socket hang up", "network"),
        ("invalid model name", "api"),
        (ModelCallError("x", code="rate_limit"), "rate_limit"),
    ],
)
def test_classify_error(error, expected: str) -> None:
    assert classify_error(error) == expected


def test_retryable_errors() -> None:
    assert is_retryable_error("503 Service Unavailable")
    assert is_retryable_error("model is overloaded")
    assert is_retryable_error(ToolTimeoutError())
    assert not is_retryable_error(ToolValidationError())
    assert not is_retryable_error("invalid api key")
    assert not is_retryable_error(ModelCallError("nope", retryable=False))
