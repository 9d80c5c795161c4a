"""Tests for council/retry.py."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from council.circuit_breaker import CircuitBreakerRegistry, CircuitState
from council.providers.base import ProviderError
from council.retry import CallFailure, ResilientCaller, is_retryable
from tests.conftest import terminal_error, transient_error

KEY = "openrouter:openai/gpt-4o-mini"


@pytest.fixture
def breakers(fake_clock) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(failure_threshold=5, reset_timeout=60.0, clock=fake_clock)


@pytest.fixture
def caller(breakers, recording_sleep) -> ResilientCaller:
    return ResilientCaller(
        breakers,
        max_retries=3,
        initial_delay=1.0,
        max_delay=3.0,
        backoff_multiplier=2.0,
        sleep=recording_sleep,
    )


@pytest.mark.parametrize(
    "exc, expected",
    [
        (TimeoutError(), True),
        (ConnectionResetError(), True),
        (ProviderError("x", "rate limited", status_code=429), True),
        (ProviderError("x", "bad gateway", status_code=502), True),
        (ProviderError("x", "reset", transient=True), True),
        (ProviderError("x", "unauthorized", status_code=401), False),
        (ProviderError("x", "bad request", status_code=400), False),
        (ProviderError("x", "empty response"), False),
        (ValueError("boom"), False),
    ],
)
def test_is_retryable(exc, expected):
    assert is_retryable(exc) is expected


async def test_success_first_try(caller, breakers, recording_sleep):
    op = AsyncMock(return_value="ok")
    assert await caller.call(KEY, op) == "ok"
    assert op.await_count == 1
    assert recording_sleep.delays == []
    assert breakers.get(KEY).snapshot().failures == 0


async def test_transient_then_success(caller, recording_sleep):
    op = AsyncMock(side_effect=[transient_error(), transient_error(), "ok"])
    assert await caller.call(KEY, op) == "ok"
    assert op.await_count == 3
    assert recording_sleep.delays == [1.0, 2.0]


async def test_exhaustion_returns_failure_and_records_one_breaker_failure(caller, breakers, recording_sleep):
    op = AsyncMock(side_effect=transient_error())
    result = await caller.call(KEY, op)

    assert isinstance(result, CallFailure)
    assert result.kind == "exhausted"
    assert result.attempts == 4
    assert op.await_count == 4
    # 1, 2, 4 -> capped at 3
    assert recording_sleep.delays == [1.0, 2.0, 3.0]
    assert breakers.get(KEY).snapshot().failures == 1


async def test_terminal_error_is_not_retried(caller, breakers, recording_sleep):
    op = AsyncMock(side_effect=terminal_error(401))
    result = await caller.call(KEY, op)

    assert isinstance(result, CallFailure)
    assert result.kind == "terminal"
    assert result.attempts == 1
    assert op.await_count == 1
    assert recording_sleep.delays == []
    assert breakers.get(KEY).snapshot().failures == 1


async def test_open_breaker_short_circuits(caller, breakers):
    breaker = breakers.get(KEY)
    for _ in range(5):
        breaker.record_failure()
    assert breaker.state is CircuitState.OPEN

    op = AsyncMock(return_value="ok")
    result = await caller.call(KEY, op)

    assert isinstance(result, CallFailure)
    assert result.kind == "circuit_open"
    op.assert_not_awaited()


async def test_breaker_opens_after_repeated_failed_calls(breakers, recording_sleep):
    caller = ResilientCaller(breakers, max_retries=0, sleep=recording_sleep)
    op = AsyncMock(side_effect=terminal_error(500))
    for _ in range(5):
        await caller.call(KEY, op)
    assert breakers.get(KEY).state is CircuitState.OPEN
    assert op.await_count == 5

    result = await caller.call(KEY, op)
    assert result.kind == "circuit_open"
    assert op.await_count == 5


async def test_timeout_is_per_attempt_and_retryable(breakers, recording_sleep):
    caller = ResilientCaller(breakers, max_retries=1, initial_delay=0.5, sleep=recording_sleep)
    attempts = 0

    async def slow_then_fast():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            await asyncio.sleep(1)
        return "fast"

    assert await caller.call(KEY, slow_then_fast, timeout=0.05) == "fast"
    assert attempts == 2
    assert recording_sleep.delays == [0.5]


async def test_timeout_exhaustion_reason(breakers, recording_sleep):
    caller = ResilientCaller(breakers, max_retries=0, sleep=recording_sleep)

    async def hang():
        await asyncio.sleep(1)

    result = await caller.call(KEY, hang, timeout=0.01)
    assert isinstance(result, CallFailure)
    assert result.kind == "exhausted"
    assert "timed out" in result.reason


async def test_call_failure_never_raises_for_unexpected_exception(caller):
    op = AsyncMock(side_effect=RuntimeError("unexpected"))
    result = await caller.call(KEY, op)
    assert isinstance(result, CallFailure)
    assert result.kind == "terminal"
    assert "unexpected" in result.reason
