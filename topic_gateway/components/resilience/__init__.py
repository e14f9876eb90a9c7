"""
Resilience components: retry with jitter and circuit breaker.
"""

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

__all__ = [
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "RetryConfig",
    "calculate_delay_with_jitter",
    "create_store_retry_config",
    "retry_async",
]
