"""
Circuit breaker guarding membership store round trips.

While Redis is down, every join, leave and cascade would otherwise wait out
its full retry budget. Once `failure_threshold` consecutive backend failures
are seen, the breaker opens and store calls fail fast with CircuitOpenError
(surfaced by the store as TransientBackendError) until `recovery_timeout`
has passed. Then a few trial calls decide whether to close again.

Only exceptions listed in `counted_errors` count as backend failures. Any
other exception means the backend answered, so it counts as a success for
the breaker and is re-raised unchanged.
"""

from __future__ import annotations

import functools
import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Coroutine, TypeVar

from shared.config.logging import get_logger
from topic_gateway.components.core.constants import WSConstants

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"  # Calls pass, consecutive failures are counted
    OPEN = "open"  # Calls rejected until the recovery timeout elapses
    HALF_OPEN = "half_open"  # Up to half_open_max_calls trial calls allowed


_TRANSITION_LOG_LEVEL = {
    CircuitState.CLOSED: logging.INFO,
    CircuitState.HALF_OPEN: logging.WARNING,
    CircuitState.OPEN: logging.ERROR,
}


class CircuitOpenError(Exception):
    """
    The breaker rejected a call without running it.

    Attributes:
        name: Breaker name.
        retry_after: Seconds until the next trial call is allowed (0 while
            half-open trial calls are exhausted).
    """

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is open, retry in {retry_after:.1f}s")


class CircuitBreaker:
    """
    Thread-safe circuit breaker for async calls.

    Usage:
        breaker = CircuitBreaker("membership_redis", counted_errors=(RedisError,))

        async with breaker:
            return await redis.smembers("topic:room:42")

        @breaker.protect
        async def members(topic: str):
            return await redis.smembers(topic)
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = WSConstants.CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout: float = WSConstants.CIRCUIT_RECOVERY_TIMEOUT,
        half_open_max_calls: int = WSConstants.CIRCUIT_HALF_OPEN_MAX_CALLS,
        counted_errors: tuple[type[BaseException], ...] = (Exception,),
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            name: Used in logs, errors and stats.
            failure_threshold: Consecutive counted failures that open the circuit.
            recovery_timeout: Seconds in OPEN before trial calls are allowed.
            half_open_max_calls: Concurrent trial calls allowed in HALF_OPEN.
            counted_errors: Exception types that count as backend failures.
            clock: Monotonic time source.
        """
        self._name = name
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._half_open_max_calls = half_open_max_calls
        self._counted_errors = counted_errors
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self._last_failure_at: float | None = None
        self._trials_in_flight = 0

        # Never held across an await
        self._lock = threading.Lock()

        # Metrics
        self._successful_calls = 0
        self._failed_calls = 0
        self._rejected_calls = 0
        self._times_opened = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def retry_after(self) -> float:
        """Seconds until an OPEN circuit lets a trial call through (0 otherwise)."""
        with self._lock:
            return self._remaining_open_time()

    def _remaining_open_time(self) -> float:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._recovery_timeout - (self._clock() - self._opened_at))

    # =========================================================================
    # Call protocol
    # =========================================================================

    async def __aenter__(self) -> "CircuitBreaker":
        self.before_call()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        if exc_val is None or not isinstance(exc_val, self._counted_errors):
            self.record_success()
        else:
            self.record_failure(exc_val)
        return False

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: OPEN and still cooling down, or HALF_OPEN with
                every trial slot taken.
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                remaining = self._remaining_open_time()
                if remaining > 0:
                    self._rejected_calls += 1
                    raise CircuitOpenError(self._name, remaining)
                self._transition_to(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._trials_in_flight >= self._half_open_max_calls:
                    self._rejected_calls += 1
                    raise CircuitOpenError(self._name, 0.0)
                self._trials_in_flight += 1

    def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            self._failed_calls += 1
            self._failure_count += 1
            self._last_failure_at = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN, error)
            elif self._state == CircuitState.CLOSED and self._failure_count >= self._failure_threshold:
                self._transition_to(CircuitState.OPEN, error)

    def record_success(self) -> None:
        with self._lock:
            self._successful_calls += 1
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED)
            else:
                self._failure_count = 0

    def _transition_to(self, new_state: CircuitState, error: BaseException | None = None) -> None:
        """MUST be called with the lock held."""
        old_state = self._state
        if old_state == new_state:
            return

        self._state = new_state
        self._trials_in_flight = 0
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._times_opened += 1
        elif new_state == CircuitState.CLOSED:
            self._opened_at = None
            self._failure_count = 0

        logger.log(
            _TRANSITION_LOG_LEVEL[new_state],
            "Circuit breaker state change",
            name=self._name,
            from_state=old_state.value,
            to_state=new_state.value,
            failure_count=self._failure_count,
            error=str(error) if error is not None else None,
        )

    def protect(
        self,
        func: Callable[..., Coroutine[Any, Any, T]],
    ) -> Callable[..., Coroutine[Any, Any, T]]:
        """Decorator running an async function inside the breaker."""

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            async with self:
                return await func(*args, **kwargs)

        return wrapper

    def reset(self) -> None:
        """Force the circuit CLOSED, e.g. after an operator fixed the backend."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._failure_count = 0
        logger.info("Circuit breaker manually reset", name=self._name)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            return {
                "name": self._name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self._failure_threshold,
                "successful_calls": self._successful_calls,
                "failed_calls": self._failed_calls,
                "rejected_calls": self._rejected_calls,
                "times_opened": self._times_opened,
                "retry_after": round(self._remaining_open_time(), 3),
                "seconds_since_last_failure": (
                    now - self._last_failure_at if self._last_failure_at is not None else None
                ),
            }
