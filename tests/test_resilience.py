from __future__ import annotations

import asyncio

import httpx
import pytest

from infergate.resilience import (
    BackoffPolicy,
    CircuitBreaker,
    is_retryable_exception,
    is_retryable_http_status,
    retry_async,
)
from support import FakeClock


def test_breaker_opens_and_half_opens() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout_s=30, clock=clock)
    assert breaker.allow()

    breaker.record_failure()
    assert breaker.state == CircuitBreaker.CLOSED
    breaker.record_failure()
    assert breaker.state == CircuitBreaker.OPEN
    assert breaker.allow() is False

    clock.advance(31)
    assert breaker.allow() is True
    assert breaker.state == CircuitBreaker.HALF_OPEN

    breaker.record_failure()
    assert breaker.state == CircuitBreaker.OPEN

    clock.advance(31)
    assert breaker.allow()
    breaker.record_success()
    assert breaker.state == CircuitBreaker.CLOSED


def test_retry_async_retries_transient_errors() -> None:
    attempts = []

    async def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("reset")
        return "ok"

    policy = BackoffPolicy(max_retries=3, base_delay_s=0.0, jitter=0.0)
    result = asyncio.run(retry_async(flaky, policy=policy, is_retryable=is_retryable_exception))
    assert result == "ok"
    assert len(attempts) == 3


def test_retry_async_stops_on_non_retryable() -> None:
    attempts = []

    async def broken() -> None:
        attempts.append(1)
        raise ValueError("bad payload")

    policy = BackoffPolicy(max_retries=3, base_delay_s=0.0, jitter=0.0)
    with pytest.raises(ValueError):
        asyncio.run(retry_async(broken, policy=policy, is_retryable=is_retryable_exception))
    assert len(attempts) == 1


def test_retry_async_respects_deadline_on_injected_clock() -> None:
    clock = FakeClock(start=50.0)
    attempts = []

    async def flaky() -> None:
        attempts.append(1)
        raise ConnectionError("reset")

    policy = BackoffPolicy(max_retries=5, base_delay_s=10.0, jitter=0.0)
    with pytest.raises(ConnectionError):
        asyncio.run(
            retry_async(
                flaky,
                policy=policy,
                is_retryable=is_retryable_exception,
                deadline=clock.now + 5.0,
                clock=clock,
            )
        )
    assert len(attempts) == 1


def test_retry_async_retries_while_injected_clock_is_before_deadline() -> None:
    clock = FakeClock(start=50.0)
    attempts = []

    async def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 2:
            raise ConnectionError("reset")
        return "ok"

    policy = BackoffPolicy(max_retries=2, base_delay_s=0.0, jitter=0.0)
    result = asyncio.run(
        retry_async(
            flaky,
            policy=policy,
            is_retryable=is_retryable_exception,
            deadline=clock.now + 1.0,
            clock=clock,
        )
    )
    assert result == "ok"
    assert len(attempts) == 2

    clock.advance(5.0)
    attempts.clear()
    with pytest.raises(ConnectionError):
        asyncio.run(
            retry_async(
                flaky,
                policy=policy,
                is_retryable=is_retryable_exception,
                deadline=51.0,
                clock=clock,
            )
        )
    assert len(attempts) == 1


def test_retryable_classification() -> None:
    request = httpx.Request("POST", "http://executor/v1/workflows/run")
    assert is_retryable_http_status(503)
    assert not is_retryable_http_status(404)
    assert is_retryable_exception(httpx.ConnectError("down", request=request))
    assert not is_retryable_exception(httpx.ReadTimeout("slow", request=request))
    throttled = httpx.HTTPStatusError(
        "throttled", request=request, response=httpx.Response(429, request=request)
    )
    assert is_retryable_exception(throttled)
    missing = httpx.HTTPStatusError(
        "missing", request=request, response=httpx.Response(404, request=request)
    )
    assert not is_retryable_exception(missing)
