"""
Redis Connection Pool Management.

A single async client (backed by its own connection pool) is shared by
every Redis consumer in the process.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any

import redis.asyncio as redis

from shared.config.settings import settings
from shared.config.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# Async Redis Pool
# =============================================================================

_redis_pool: redis.Redis | None = None
_redis_pool_lock: asyncio.Lock | None = None
_pool_lock_init = threading.Lock()


def _get_pool_lock() -> asyncio.Lock:
    """
    Get or create the pool lock (lazy initialization for event loop safety).

    Uses threading.Lock with double-check pattern so concurrent callers
    never create two different asyncio.Lock instances.
    """
    global _redis_pool_lock
    if _redis_pool_lock is None:
        with _pool_lock_init:
            if _redis_pool_lock is None:
                _redis_pool_lock = asyncio.Lock()
    return _redis_pool_lock


async def get_redis_pool() -> redis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool

    # Fast path: pool already initialized
    if _redis_pool is not None:
        return _redis_pool

    async with _get_pool_lock():
        # Double-check after acquiring lock
        if _redis_pool is None:
            _redis_pool = redis.from_url(
                settings.redis_url,
                max_connections=settings.redis_pool_max_connections,
                decode_responses=True,
                socket_connect_timeout=settings.redis_socket_timeout,
                socket_timeout=settings.redis_socket_timeout,
                health_check_interval=30,
            )
            logger.info(
                "Redis async pool initialized",
                max_connections=settings.redis_pool_max_connections,
                timeout=settings.redis_socket_timeout,
            )
    return _redis_pool


async def close_redis_pool() -> None:
    """Close all Redis connections on application shutdown."""
    global _redis_pool, _redis_pool_lock

    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
        logger.info("Redis async pool closed")
    _redis_pool_lock = None


async def check_redis_health(timeout: float = 3.0) -> dict[str, Any]:
    """
    Ping Redis with a timeout.

    Returns:
        Dict with "status" ("healthy" or "unhealthy") and pool details or error.
    """
    try:
        pool = await get_redis_pool()
        await asyncio.wait_for(pool.ping(), timeout=timeout)
        return {
            "status": "healthy",
            "max_connections": settings.redis_pool_max_connections,
        }
    except asyncio.TimeoutError:
        return {"status": "unhealthy", "error": f"timeout after {timeout}s"}
    except redis.RedisError as e:
        return {"status": "unhealthy", "error": str(e)}
