"""Per-endpoint circuit breakers.

A breaker stops calls to an endpoint that keeps failing. Failures are
weighted: each success while closed takes one failure back off the counter,
so isolated errors decay instead of piling up towards the threshold.

    closed --(failures >= threshold)--> open
    open --(reset_timeout elapsed)--> half_open   (one trial call admitted)
    half_open --(trial succeeds)--> closed
    half_open --(trial fails)--> open
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitSnapshot:
    state: CircuitState
    failures: int
    last_failure_time: float


class CircuitBreaker:
    """Circuit breaker for a single call key."""

    def __init__(
        self,
        key: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.key = key
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    def can_execute(self) -> bool:
        """Return True if a call may be issued now.

        Moving from open to half-open hands out the single trial slot, so the
        caller that gets True here must report back with record_success or
        record_failure.
        """
        if self._state is CircuitState.CLOSED:
            return True

        if self._state is CircuitState.OPEN:
            if self._clock() - self._last_failure_time >= self._reset_timeout:
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                logger.info("Circuit breaker %s: transitioning to half-open", self.key)
                return True
            return False

        # half-open: only the one trial call
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def record_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._trial_in_flight = False
            logger.info("Circuit breaker %s: recovered, transitioning to closed", self.key)
        elif self._state is CircuitState.CLOSED:
            self._failures = max(0, self._failures - 1)

    def record_failure(self) -> None:
        self._failures += 1
        self._last_failure_time = self._clock()

        if self._state is CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            self._trial_in_flight = False
            logger.warning("Circuit breaker %s: trial call failed, reopening", self.key)
        elif self._state is CircuitState.CLOSED and self._failures >= self._failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning("Circuit breaker %s: opened after %d failures", self.key, self._failures)

    def snapshot(self) -> CircuitSnapshot:
        return CircuitSnapshot(
            state=self._state,
            failures=self._failures,
            last_failure_time=self._last_failure_time,
        )


class CircuitBreakerRegistry:
    """Lazily creates one CircuitBreaker per key; breakers are never shared across keys."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, key: str) -> CircuitBreaker:
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(key, self._failure_threshold, self._reset_timeout, self._clock)
            self._breakers[key] = breaker
        return breaker

    def can_execute(self, key: str) -> bool:
        return self.get(key).can_execute()

    def snapshots(self) -> dict[str, CircuitSnapshot]:
        return {key: breaker.snapshot() for key, breaker in self._breakers.items()}

    def __len__(self) -> int:
        return len(self._breakers)
