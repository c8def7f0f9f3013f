"""
Unit tests for retry and circuit breaker helpers.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException, CircuitBreakerState
from shared.retry import RetryConfig, RetryError, _calculate_delay, call_with_retry
from shared.test_helpers import FakeClock

NO_DELAY = RetryConfig(max_attempts=3, base_delay=0, jitter=False)


class TestRetry:
    """Test cases for call_with_retry."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        func = AsyncMock(side_effect=[OSError("reset"), OSError("reset"), "ok"])

        assert await call_with_retry(func, "arg", config=NO_DELAY) == "ok"
        assert func.await_count == 3
        func.assert_awaited_with("arg")

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_retry_error(self):
        error = OSError("reset")
        func = AsyncMock(side_effect=error)

        with pytest.raises(RetryError) as exc_info:
            await call_with_retry(func, config=NO_DELAY)

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_exception is error

    @pytest.mark.asyncio
    async def test_give_up_on_raises_immediately(self):
        func = AsyncMock(side_effect=ValueError("permanent"))

        with pytest.raises(ValueError):
            await call_with_retry(func, give_up_on=(ValueError,), config=NO_DELAY)

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_unlisted_exceptions_are_not_retried(self):
        func = AsyncMock(side_effect=KeyError("missing"))

        with pytest.raises(KeyError):
            await call_with_retry(func, exceptions=(OSError,), config=NO_DELAY)

        assert func.await_count == 1

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)
        with pytest.raises(ValueError):
            RetryConfig(backoff_strategy="random")

    def test_delays_between_attempts(self):
        config = RetryConfig(max_attempts=4, base_delay=0.5, jitter=False)

        assert list(config.delays()) == [0.5, 1.0, 2.0]

    def test_backoff_strategies(self):
        exponential = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        linear = RetryConfig(base_delay=1.0, jitter=False, backoff_strategy="linear")

        assert [_calculate_delay(n, exponential) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]
        assert _calculate_delay(3, linear) == 3.0


class TestCircuitBreaker:
    """Test cases for CircuitBreaker."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(failure_threshold=2, recovery_timeout=10, name="test", clock=clock)

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, breaker):
        failing = AsyncMock(side_effect=OSError("down"))

        for _ in range(2):
            with pytest.raises(OSError):
                await breaker.call(failing)

        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(failing)

        assert breaker.is_open()
        assert failing.await_count == 2
        assert breaker.get_state()["failure_count"] == 2

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self, breaker, clock):
        failing = AsyncMock(side_effect=OSError("down"))
        for _ in range(2):
            with pytest.raises(OSError):
                await breaker.call(failing)

        clock.advance(10)
        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"

        assert breaker.get_state()["state"] == "closed"
        assert breaker.get_state()["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, breaker, clock):
        failing = AsyncMock(side_effect=OSError("down"))
        for _ in range(2):
            with pytest.raises(OSError):
                await breaker.call(failing)

        clock.advance(10)
        with pytest.raises(OSError):
            await breaker.call(failing)

        assert breaker.is_open()

    @pytest.mark.asyncio
    async def test_open_circuit_reports_retry_after(self, breaker, clock):
        failing = AsyncMock(side_effect=OSError("down"))
        for _ in range(2):
            with pytest.raises(OSError):
                await breaker.call(failing)

        clock.advance(4)
        with pytest.raises(CircuitBreakerOpenException) as exc_info:
            await breaker.call(failing)

        assert exc_info.value.retry_after == 6

    @pytest.mark.asyncio
    async def test_half_open_admits_single_trial_call(self, breaker, clock):
        failing = AsyncMock(side_effect=OSError("down"))
        for _ in range(2):
            with pytest.raises(OSError):
                await breaker.call(failing)
        clock.advance(10)

        trial_started = asyncio.Event()
        release = asyncio.Event()

        async def slow_trial():
            trial_started.set()
            await release.wait()
            return "ok"

        trial = asyncio.create_task(breaker.call(slow_trial))
        await trial_started.wait()

        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(AsyncMock(return_value="ok"))

        release.set()
        assert await trial == "ok"
        assert breaker.state is CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_ignored_exceptions_do_not_count(self, clock):
        breaker = CircuitBreaker(
            failure_threshold=1,
            recovery_timeout=10,
            name="test",
            is_failure=lambda exc: not isinstance(exc, ValueError),
            clock=clock,
        )

        with pytest.raises(ValueError):
            await breaker.call(AsyncMock(side_effect=ValueError("bad input")))

        assert not breaker.is_open()
        assert breaker.get_state()["failure_count"] == 0
