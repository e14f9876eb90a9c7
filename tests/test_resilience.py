"""
Tests for circuit breaker and retry with jitter.
"""

from unittest.mock import AsyncMock, patch

import pytest

from topic_gateway.components.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
)
from topic_gateway.components.resilience.retry import (
    RetryConfig,
    calculate_delay_with_jitter,
    create_store_retry_config,
    retry_async,
)


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker("test", failure_threshold=2, recovery_timeout=60)

        for _ in range(2):
            with pytest.raises(ValueError):
                async with breaker:
                    raise ValueError("boom")

        assert breaker.is_open
        with pytest.raises(CircuitOpenError):
            async with breaker:
                pass
        assert breaker.get_stats()["rejected_calls"] == 1

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self):
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=0)

        with pytest.raises(ValueError):
            async with breaker:
                raise ValueError("boom")
        assert breaker.state == CircuitState.OPEN

        async with breaker:
            pass

        assert breaker.is_closed

    @pytest.mark.asyncio
    async def test_protect_decorator(self):
        breaker = CircuitBreaker("test")

        @breaker.protect
        async def fetch(value):
            return value * 2

        assert await fetch(21) == 42
        assert breaker.get_stats()["successful_calls"] == 1

    @pytest.mark.asyncio
    async def test_uncounted_errors_do_not_open(self):
        breaker = CircuitBreaker("test", failure_threshold=1, counted_errors=(ConnectionError,))

        with pytest.raises(KeyError):
            async with breaker:
                raise KeyError("answered, but wrong")

        assert breaker.is_closed
        assert breaker.get_stats()["failed_calls"] == 0

    @pytest.mark.asyncio
    async def test_retry_after_follows_clock(self, clock):
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=10, clock=clock)
        breaker.record_failure()

        clock.advance(4)
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.before_call()
        assert exc_info.value.retry_after == pytest.approx(6)

        clock.advance(6)
        breaker.before_call()
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, clock):
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=5, clock=clock)
        breaker.record_failure()
        clock.advance(5)

        with pytest.raises(ConnectionError):
            async with breaker:
                raise ConnectionError("still down")

        assert breaker.is_open
        assert breaker.get_stats()["times_opened"] == 2
        assert breaker.retry_after() == pytest.approx(5)

    def test_reset(self):
        breaker = CircuitBreaker("test", failure_threshold=1)
        breaker.record_failure()
        assert breaker.is_open

        breaker.reset()

        assert breaker.is_closed
        assert breaker.get_stats()["failure_count"] == 0


class TestRetry:
    def test_delay_grows_and_caps(self):
        config = RetryConfig(initial_delay=0.1, max_delay=0.4, jitter_factor=0)

        delays = [calculate_delay_with_jitter(i, config) for i in range(5)]

        assert delays == [0.1, 0.2, 0.4, 0.4, 0.4]

    def test_jitter_stays_in_range(self):
        config = RetryConfig(initial_delay=1.0, max_delay=1.0, jitter_factor=0.25)

        for _ in range(50):
            assert 0.75 <= calculate_delay_with_jitter(0, config) <= 1.25

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"initial_delay": 0},
            {"initial_delay": 1.0, "max_delay": 0.5},
            {"backoff_base": 0.5},
            {"jitter_factor": 2},
            {"max_attempts": 0},
        ],
    )
    def test_invalid_config_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)

    @pytest.mark.asyncio
    async def test_retries_listed_errors_until_success(self):
        operation = AsyncMock(side_effect=[ConnectionError("a"), ConnectionError("b"), "ok"])

        with patch("topic_gateway.components.resilience.retry.asyncio.sleep", new=AsyncMock()):
            result = await retry_async(
                operation,
                create_store_retry_config(max_attempts=3),
                retry_on=(ConnectionError,),
            )

        assert result == "ok"
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        operation = AsyncMock(side_effect=ConnectionError("down"))

        with patch("topic_gateway.components.resilience.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(ConnectionError):
                await retry_async(operation, RetryConfig(max_attempts=2), retry_on=(ConnectionError,))

        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        operation = AsyncMock(side_effect=KeyError("x"))

        with pytest.raises(KeyError):
            await retry_async(operation, RetryConfig(), retry_on=(ConnectionError,))

        assert operation.await_count == 1
