"""
Shared infrastructure: Redis pool and correlation IDs.
"""

from shared.infrastructure.redis_pool import (
    get_redis_pool,
    close_redis_pool,
    check_redis_health,
)
from shared.infrastructure.correlation import (
    CorrelationIdMiddleware,
    CorrelationIdFilter,
    bind_correlation_id,
    reset_correlation_id,
    get_correlation_id,
)

__all__ = [
    "get_redis_pool",
    "close_redis_pool",
    "check_redis_health",
    "CorrelationIdMiddleware",
    "CorrelationIdFilter",
    "bind_correlation_id",
    "reset_correlation_id",
    "get_correlation_id",
]
