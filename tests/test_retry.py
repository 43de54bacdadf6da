from __future__ import annotations

import asyncio

import pytest

from conftest import RateLimited
from healthlens.services.retry import (
    UpstreamExhaustedError,
    backoff_delay,
    call_with_retry,
    is_rate_limit_error,
)


class _Flaky:
    """Raises the given errors in order, then returns 'ok'."""

    def __init__(self, *errors: Exception):
        self.errors = list(errors)
        self.attempts = 0

    async def __call__(self):
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def _run(call, sleeps, **kwargs):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return asyncio.run(call_with_retry(call, sleep=fake_sleep, **kwargs))


def test_rate_limited_twice_then_success_takes_three_attempts():
    call = _Flaky(RateLimited(), RateLimited())
    sleeps: list[float] = []
    assert _run(call, sleeps, max_attempts=3, initial_delay_ms=1000) == "ok"
    assert call.attempts == 3
    assert sleeps == [1.0, 2.0]


def test_non_rate_limit_error_is_not_retried():
    call = _Flaky(ValueError("400 INVALID_ARGUMENT: bad schema"))
    sleeps: list[float] = []
    with pytest.raises(ValueError, match="INVALID_ARGUMENT"):
        _run(call, sleeps)
    assert call.attempts == 1
    assert sleeps == []


def test_exhaustion_wraps_last_rate_limit_error():
    last = RateLimited("429 third")
    call = _Flaky(RateLimited(), RateLimited(), last)
    sleeps: list[float] = []
    with pytest.raises(UpstreamExhaustedError) as exc_info:
        _run(call, sleeps, max_attempts=3, initial_delay_ms=500)
    assert call.attempts == 3
    assert exc_info.value.attempts == 3
    assert exc_info.value.__cause__ is last
    assert exc_info.value.last_error is last
    # no wait after the final attempt
    assert sleeps == [0.5, 1.0]


def test_single_attempt_budget_exhausts_immediately():
    call = _Flaky(RateLimited())
    with pytest.raises(UpstreamExhaustedError):
        _run(call, [], max_attempts=1)
    assert call.attempts == 1


def test_rate_limit_classification():
    class ApiError(Exception):
        code = 429

    assert is_rate_limit_error(ApiError("quota"))
    assert is_rate_limit_error(RuntimeError("RESOURCE_EXHAUSTED"))
    assert is_rate_limit_error(RuntimeError("HTTP 429 Too Many Requests"))
    assert not is_rate_limit_error(RuntimeError("403 PERMISSION_DENIED"))
    assert not is_rate_limit_error(ValueError("invalid request"))


def test_backoff_delay_doubles_and_jitter_stays_bounded():
    assert [backoff_delay(i, 1000) for i in range(3)] == [1.0, 2.0, 4.0]
    for _ in range(20):
        assert 2.0 <= backoff_delay(1, 1000, jitter=0.5) <= 3.0
