"""
Circuit breaker for calls to upstreams the gateway depends on.

After ``failure_threshold`` consecutive failures the breaker opens and
rejects calls for ``recovery_timeout`` seconds. It then lets exactly one
trial call through; its result closes or re-opens the circuit.
"""

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenException(Exception):
    """Raised instead of calling an upstream whose circuit is open."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker '{name}' is open")
        self.name = name
        self.retry_after = retry_after


def _always(exc: BaseException) -> bool:
    return True


class CircuitBreaker:
    """Consecutive-failure circuit breaker for async callables.

    ``is_failure`` decides which exceptions count against the upstream;
    the rest propagate without touching the failure count.
    """

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 name: str = "default",
                 is_failure: Callable[[BaseException], bool] = _always,
                 clock: Optional[Callable[[], float]] = None):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self.is_failure = is_failure
        self.logger = get_logger(f"circuit_breaker.{name}")
        self._clock = clock or time.monotonic

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def _admit(self) -> None:
        if self._state == CircuitBreakerState.CLOSED:
            return

        if self._state == CircuitBreakerState.OPEN:
            remaining = self.recovery_timeout - (self._clock() - self._opened_at)
            if remaining > 0:
                raise CircuitBreakerOpenException(self.name, remaining)
            self._state = CircuitBreakerState.HALF_OPEN
            self.logger.info("Circuit breaker half-open, sending trial call")

        if self._trial_in_flight:
            raise CircuitBreakerOpenException(self.name, 0.0)
        self._trial_in_flight = True

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await ``func`` unless the circuit is open."""
        self._admit()
        trial = self._state == CircuitBreakerState.HALF_OPEN

        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            if self.is_failure(exc):
                self._on_failure(trial)
            elif trial:
                self._on_success()
            raise
        finally:
            if trial:
                self._trial_in_flight = False

        self._on_success()
        return result

    def _on_success(self) -> None:
        if self._state != CircuitBreakerState.CLOSED:
            self.logger.info("Circuit breaker closed after successful trial call")
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0

    def _on_failure(self, trial: bool) -> None:
        self._failure_count += 1
        if trial or self._failure_count >= self.failure_threshold:
            self._state = CircuitBreakerState.OPEN
            self._opened_at = self._clock()
            self.logger.warning(
                "Circuit breaker opened",
                failure_count=self._failure_count,
                threshold=self.failure_threshold,
                trial_failed=trial,
            )

    def get_state(self) -> Dict[str, Any]:
        """Snapshot for health and debug output."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }

    def is_open(self) -> bool:
        return self._state == CircuitBreakerState.OPEN
