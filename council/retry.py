"""Retry with exponential backoff behind a per-key circuit breaker.

ResilientCaller is the boundary between the deliberation pipeline and the
model endpoints: whatever goes wrong below it comes back as a CallFailure
value, never as an exception.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from config.config_loader import RetryConfig
from council.circuit_breaker import CircuitBreakerRegistry
from council.providers.base import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CallFailure:
    """A call that produced no answer. Treat as "no answer", not as fatal."""

    key: str
    kind: str          # "circuit_open", "terminal" or "exhausted"
    reason: str
    attempts: int = 0


def is_retryable(exc: BaseException) -> bool:
    """Transient errors (timeout, connection reset, 429/5xx) are retried; the rest are terminal."""
    if isinstance(exc, TimeoutError):
        return True
    if isinstance(exc, ProviderError):
        return exc.retryable
    return isinstance(exc, ConnectionError)


class ResilientCaller:
    """Runs one logical call with per-attempt timeout, backoff and circuit breaking."""

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 10.0,
        backoff_multiplier: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.breakers = breakers
        self._max_retries = max_retries
        self._initial_delay = initial_delay
        self._max_delay = max_delay
        self._backoff_multiplier = backoff_multiplier
        self._sleep = sleep

    @classmethod
    def from_config(cls, breakers: CircuitBreakerRegistry, retry: RetryConfig) -> "ResilientCaller":
        return cls(
            breakers,
            max_retries=retry.max_retries,
            initial_delay=retry.initial_delay,
            max_delay=retry.max_delay,
            backoff_multiplier=retry.backoff_multiplier,
        )

    async def call(
        self,
        key: str,
        operation: Callable[[], Awaitable[T]],
        timeout: float | None = None,
    ) -> T | CallFailure:
        """Invoke ``operation`` until it succeeds, fails terminally or runs out of retries.

        Args:
            key: Logical endpoint identity, e.g. "openrouter:openai/gpt-4o-mini".
            operation: Zero-argument coroutine factory; called once per attempt.
            timeout: Per-attempt timeout in seconds. Exceeding it is retryable.

        Returns:
            The operation's result, or CallFailure. Never raises (cancellation aside).
        """
        breaker = self.breakers.get(key)
        if not breaker.can_execute():
            logger.warning("Circuit breaker is open for %s, skipping execution", key)
            return CallFailure(key, "circuit_open", "circuit breaker open")

        delay = self._initial_delay
        attempts = self._max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                if timeout is None:
                    result = await operation()
                else:
                    result = await asyncio.wait_for(operation(), timeout=timeout)
            except Exception as exc:
                reason = f"Request timed out after {timeout}s" if isinstance(exc, TimeoutError) else str(exc)

                if not is_retryable(exc):
                    logger.error("Non-retryable error for %s: %s", key, reason)
                    breaker.record_failure()
                    return CallFailure(key, "terminal", reason, attempt)

                if attempt == attempts:
                    logger.error("Max retries (%d) reached for %s: %s", self._max_retries, key, reason)
                    breaker.record_failure()
                    return CallFailure(key, "exhausted", reason, attempt)

                wait = min(delay, self._max_delay)
                logger.warning(
                    "Attempt %d/%d failed for %s, retrying in %.1fs: %s",
                    attempt, attempts, key, wait, reason,
                )
                await self._sleep(wait)
                delay *= self._backoff_multiplier
            else:
                breaker.record_success()
                return result

        # unreachable: the loop always returns on its last attempt
        raise AssertionError("retry loop exited without a result")
