"""Bounded retry policy shared by model calls and tool execution."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from openai import APIConnectionError, APITimeoutError, InternalServerError, RateLimitError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from ..tools.errors import ToolError
from .errors import ModelCallError

__all__ = [
    "RetryPolicy",
    "retry_async",
    "is_retryable_error",
    "classify_error",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_TIMEOUT_PATTERN = re.compile(r"timeout|timed out|etimedout", re.IGNORECASE)
_RATE_LIMIT_PATTERN = re.compile(r"rate.?limit|\b429\b|too many requests", re.IGNORECASE)
_NETWORK_PATTERN = re.compile(r"network|connection|econnreset|econnrefused|socket hang up", re.IGNORECASE)
_SERVER_PATTERN = re.compile(r"\b5\d\d\b|overloaded|unavailable", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """How many times to try an operation and how long to wait in between.

    ``backoff`` is ``exponential`` (``base_delay * multiplier ** (n - 1)``) or
    ``linear`` (``base_delay * n``), where ``n`` is the attempt that just
    failed. Delays are capped at ``max_delay``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 1.5
    max_delay: float = 30.0
    backoff: str = "exponential"

    def delay_for(self, attempt: int) -> float:
        attempt = max(1, attempt)
        if self.backoff == "linear":
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay * (self.multiplier ** (attempt - 1))
        return max(0.0, min(delay, self.max_delay))


RetryCallback = Callable[[int, BaseException, float], Any]


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_retryable: Callable[[BaseException], bool] | None = None,
    on_retry: RetryCallback | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Only exceptions accepted by ``is_retryable`` (default
    :func:`is_retryable_error`) are retried. The last exception is re-raised
    once attempts are exhausted.
    """
    predicate = is_retryable or is_retryable_error

    def _wait(state: RetryCallState) -> float:
        return policy.delay_for(state.attempt_number)

    def _before_sleep(state: RetryCallState) -> None:
        outcome = state.outcome
        exc = outcome.exception() if outcome is not None else None
        delay = state.next_action.sleep if state.next_action is not None else 0.0
        LOGGER.info("Attempt %d failed (%s); retrying in %.2fs", state.attempt_number, exc, delay)
        if on_retry is not None and exc is not None:
            on_retry(state.attempt_number, exc, delay)

    retrying = AsyncRetrying(
        sleep=sleep,
        reraise=True,
        stop=stop_after_attempt(max(1, policy.max_attempts)),
        wait=_wait,
        retry=retry_if_exception(predicate),
        before_sleep=_before_sleep,
    )
    async for attempt in retrying:
        with attempt:
            result = await operation()
    return result


def classify_error(error: BaseException | str) -> str:
    """Return ``timeout``, ``rate_limit``, ``network`` or ``api``."""
    if isinstance(error, ModelCallError) and error.code:
        return error.code
    if isinstance(error, (asyncio.TimeoutError, APITimeoutError, httpx.TimeoutException)):
        return "timeout"
    if isinstance(error, RateLimitError):
        return "rate_limit"
    if isinstance(error, (APIConnectionError, httpx.NetworkError, ConnectionError)):
        return "network"
    message = error if isinstance(error, str) else str(error)
    if _TIMEOUT_PATTERN.search(message):
        return "timeout"
    if _RATE_LIMIT_PATTERN.search(message):
        return "rate_limit"
    if _NETWORK_PATTERN.search(message):
        return "network"
    return "api"


def is_retryable_error(error: BaseException | str) -> bool:
    """Whether ``error`` is transient: timeout, rate limit, network or overload."""
    if isinstance(error, ModelCallError):
        return error.retryable
    if isinstance(error, ToolError):
        return type(error).retryable
    if isinstance(error, InternalServerError):
        return True
    if classify_error(error) != "api":
        return True
    message = error if isinstance(error, str) else str(error)
    return bool(_SERVER_PATTERN.search(message))
