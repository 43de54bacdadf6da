"""
Bounded exponential backoff for Gemini calls.
Only rate limiting (HTTP 429 / RESOURCE_EXHAUSTED) is retried; every other error is
treated as permanent (bad request, schema violation, auth) and propagates unchanged.
"""
import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_MARKERS = ("429", "RESOURCE_EXHAUSTED")


class UpstreamError(RuntimeError):
    """A call to the AI provider failed."""


class UpstreamExhaustedError(UpstreamError):
    """Rate limited on every attempt."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"AI provider still rate limited after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def is_rate_limit_error(error: BaseException) -> bool:
    if getattr(error, "code", None) == 429:
        return True
    text = f"{type(error).__name__}: {error}"
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def backoff_delay(attempt: int, initial_delay_ms: int, jitter: float = 0.0) -> float:
    """Seconds to wait after failed attempt `attempt` (0-based)."""
    delay = initial_delay_ms * (2 ** attempt) / 1000.0
    if jitter > 0:
        delay += random.uniform(0, delay * jitter)
    return delay


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay_ms: int = 1000,
    *,
    jitter: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await call() up to max_attempts times.
    Rate limited: wait initial_delay_ms * 2^attempt and retry; after the last attempt
    raise UpstreamExhaustedError chained to the provider error.
    Anything else: re-raise immediately.
    """
    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        try:
            return await call()
        except Exception as e:
            if not is_rate_limit_error(e):
                raise
            if attempt == attempts - 1:
                raise UpstreamExhaustedError(attempts, e) from e
            delay = backoff_delay(attempt, initial_delay_ms, jitter)
            logger.warning(
                "AI provider rate limited (attempt %s/%s), retrying in %.2fs", attempt + 1, attempts, delay
            )
            await sleep(delay)
