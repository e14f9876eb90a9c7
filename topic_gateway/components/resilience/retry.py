"""
Retry Utilities for the Topic Gateway.

Provides retry logic with exponential backoff and jitter so that many
gateway processes retrying against the same Redis do not stampede it.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Final, TypeVar

from shared.config.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


# =============================================================================
# Constants
# =============================================================================


# Default jitter range: ±25% of calculated delay
DEFAULT_JITTER_FACTOR: Final[float] = 0.25

# Default exponential backoff base
DEFAULT_BACKOFF_BASE: Final[float] = 2.0

# Default initial delay in seconds
DEFAULT_INITIAL_DELAY: Final[float] = 0.05


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        initial_delay: Base delay in seconds (default: 0.05).
        max_delay: Maximum delay cap in seconds (default: 1.0).
        backoff_base: Exponential backoff multiplier (default: 2.0).
        jitter_factor: Random jitter range as fraction (default: 0.25 = ±25%).
        max_attempts: Total attempts including the first one (default: 3).
    """

    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = 1.0
    backoff_base: float = DEFAULT_BACKOFF_BASE
    jitter_factor: float = DEFAULT_JITTER_FACTOR
    max_attempts: int = 3

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.initial_delay <= 0:
            raise ValueError("initial_delay must be positive")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.backoff_base < 1:
            raise ValueError("backoff_base must be >= 1")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be between 0 and 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


# =============================================================================
# Retry Functions
# =============================================================================


def calculate_delay_with_jitter(
    attempt: int,
    config: RetryConfig | None = None,
) -> float:
    """
    Calculate retry delay with exponential backoff and jitter.

    The delay is calculated as:
        base_delay = initial_delay * (backoff_base ^ attempt)
        capped_delay = min(base_delay, max_delay)
        final_delay = capped_delay * (1 ± jitter_factor)

    Args:
        attempt: Current attempt number (0-indexed).
        config: Retry configuration (uses defaults if None).

    Returns:
        Delay in seconds with jitter applied.

    Example:
        >>> config = RetryConfig(initial_delay=0.1, max_delay=1.0)
        >>> delay = calculate_delay_with_jitter(0, config)  # ~0.1s ± 25%
        >>> delay = calculate_delay_with_jitter(1, config)  # ~0.2s ± 25%
        >>> delay = calculate_delay_with_jitter(5, config)  # ~1.0s ± 25% (capped)
    """
    if config is None:
        config = RetryConfig()

    base_delay = config.initial_delay * (config.backoff_base ** attempt)
    capped_delay = min(base_delay, config.max_delay)

    jitter_range = capped_delay * config.jitter_factor
    jitter = random.uniform(-jitter_range, jitter_range)

    # Ensure delay is never negative
    return max(0.0, capped_delay + jitter)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retry_on: tuple[type[BaseException], ...],
    name: str = "operation",
    **log_context: Any,
) -> T:
    """
    Await `operation()` until it succeeds or attempts run out.

    Only exceptions in `retry_on` are retried; anything else propagates
    immediately. After the last attempt the final exception propagates.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        config: Retry configuration.
        retry_on: Exception types considered transient.
        name: Operation name for logging.
        **log_context: Extra structured fields for retry log lines.

    Returns:
        The result of the first successful attempt.
    """
    for attempt in range(config.max_attempts):
        try:
            return await operation()
        except retry_on as e:
            if attempt + 1 >= config.max_attempts:
                raise
            delay = calculate_delay_with_jitter(attempt, config)
            logger.warning(
                "Transient failure, retrying",
                operation=name,
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay=round(delay, 3),
                error=str(e),
                **log_context,
            )
            await asyncio.sleep(delay)
    # max_attempts >= 1 guarantees the loop returns or raises
    raise AssertionError("unreachable")


# =============================================================================
# Factory Functions
# =============================================================================


def create_store_retry_config(
    max_attempts: int = 3,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = 1.0,
) -> RetryConfig:
    """
    Create retry config for membership store round trips.

    Store operations sit on the connect/disconnect path, so delays are short
    and attempts few; a longer outage surfaces as TransientBackendError.

    Args:
        max_attempts: Total attempts per operation.
        initial_delay: Delay before the first retry.
        max_delay: Maximum delay between attempts.

    Returns:
        RetryConfig for store operations.
    """
    return RetryConfig(
        initial_delay=initial_delay,
        max_delay=max_delay,
        backoff_base=2.0,
        jitter_factor=0.25,
        max_attempts=max_attempts,
    )
