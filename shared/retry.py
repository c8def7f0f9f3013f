"""
Bounded retries with backoff for idempotent operations.

Only wrap calls that are safe to repeat, such as keyed ledger writes.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Iterator, Optional, Tuple, Type

from shared.logging import get_logger

ExceptionTypes = Tuple[Type[BaseException], ...]


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True,
                 backoff_strategy: str = "exponential"):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if backoff_strategy not in ("exponential", "linear", "fixed"):
            raise ValueError(f"Unknown backoff strategy: {backoff_strategy}")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy

    def delays(self) -> Iterator[float]:
        """Sleep before each retry; one fewer than ``max_attempts``."""
        for attempt in range(1, self.max_attempts):
            yield _calculate_delay(attempt, self)


class RetryError(Exception):
    """All attempts failed; ``last_exception`` is the final cause."""

    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


async def call_with_retry(func: Callable[..., Awaitable[Any]],
                          *args,
                          exceptions: ExceptionTypes = (Exception,),
                          give_up_on: ExceptionTypes = (),
                          config: Optional[RetryConfig] = None,
                          **kwargs) -> Any:
    """Await ``func`` until it succeeds or attempts run out.

    Exceptions listed in ``give_up_on`` are raised immediately, as are
    exceptions outside ``exceptions``. Exhausting the attempts raises
    ``RetryError`` chained to the last failure.
    """
    config = config or RetryConfig()
    name = getattr(func, "__qualname__", getattr(func, "__name__", "call"))
    logger = get_logger("retry")
    delays = config.delays()
    attempt = 0

    while True:
        attempt += 1
        try:
            result = await func(*args, **kwargs)
        except give_up_on:
            raise
        except exceptions as e:
            delay = next(delays, None)
            if delay is None:
                logger.error("Retries exhausted", function=name, attempts=attempt, error=str(e))
                raise RetryError(f"{name} failed after {attempt} attempts", e, attempt) from e

            logger.warning("Attempt failed, retrying", function=name, attempt=attempt,
                           delay=round(delay, 3), error=str(e))
            await asyncio.sleep(delay)
            continue

        if attempt > 1:
            logger.info("Retry succeeded", function=name, attempt=attempt)
        return result


def _calculate_delay(attempt: int, config: RetryConfig) -> float:
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * attempt
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.9, 1.1)
    return max(0.0, delay)
