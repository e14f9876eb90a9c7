"""
Redis membership backend.

Key naming (with optional namespace prefix):
- <prefix>topic:<name>      -> SET of member client ids
- <prefix>member:<clientId> -> SET of topic names

Join and leave touch exactly these two keys inside one MULTI/EXEC, so the
two indices are consistent across every process sharing the Redis. Removing
all edges of a client uses WATCH on its member key with optimistic retry.

Every round trip goes through a circuit breaker and jittered retries on
connection errors and timeouts. Failures surface as TransientBackendError.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    RedisError,
    TimeoutError as RedisTimeoutError,
    WatchError,
)

from shared.config.logging import get_logger
from topic_gateway.components.connection.locks import LockManager
from topic_gateway.components.core.constants import StoreKeys, WSConstants
from topic_gateway.components.core.errors import TransientBackendError
from topic_gateway.components.membership.base import MembershipSnapshot, TopicMembershipStore
from topic_gateway.components.resilience.circuit_breaker import CircuitBreaker, CircuitOpenError
from topic_gateway.components.resilience.retry import (
    RetryConfig,
    create_store_retry_config,
    retry_async,
)

if TYPE_CHECKING:
    import redis.asyncio as redis

logger = get_logger(__name__)

T = TypeVar("T")

# Errors worth another attempt after a short backoff
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (RedisConnectionError, RedisTimeoutError)


class RedisMembershipStore(TopicMembershipStore):
    """
    Durable membership store shared by all gateway processes.

    Args:
        redis_client: `redis.asyncio.Redis` created with decode_responses=True.
        lock_manager: Source of edge locks (orders joins/leaves within this process).
        default_ttl: Seconds applied on every join without explicit ttl.
        key_prefix: Namespace prepended to every key.
        retry_config: Retry policy for transient errors.
        circuit_breaker: Breaker guarding all round trips.
        max_watch_retries: Optimistic retries of leave_all before giving up.
        owns_client: Close the client in `close()`. False for the shared pool.
    """

    backend_name = "redis"

    def __init__(
        self,
        redis_client: "redis.Redis",
        lock_manager: LockManager | None = None,
        default_ttl: float | None = None,
        key_prefix: str = "",
        retry_config: RetryConfig | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        max_watch_retries: int = WSConstants.MAX_WATCH_RETRIES,
        owns_client: bool = False,
    ) -> None:
        super().__init__(lock_manager=lock_manager, default_ttl=default_ttl)
        self._redis = redis_client
        self._prefix = key_prefix
        self._retry = retry_config or create_store_retry_config()
        self._breaker = circuit_breaker or CircuitBreaker(
            "membership_redis", counted_errors=RETRYABLE_ERRORS
        )
        self._max_watch_retries = max_watch_retries
        self._owns_client = owns_client

        # Metrics
        self._transient_errors = 0
        self._watch_conflicts = 0

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    def topic_key(self, topic: str) -> str:
        return f"{self._prefix}{StoreKeys.TOPIC_PREFIX}{topic}"

    def member_key(self, client_id: str) -> str:
        return f"{self._prefix}{StoreKeys.MEMBER_PREFIX}{client_id}"

    # =========================================================================
    # Round trip wrapper
    # =========================================================================

    async def _run(self, operation: str, fn: Callable[[], Awaitable[T]], **log_context: Any) -> T:
        """
        Run one store operation with circuit breaker and retries.

        Raises:
            TransientBackendError: Circuit open, retries exhausted, or any
                other Redis error.
        """

        async def attempt() -> T:
            async with self._breaker:
                return await fn()

        try:
            return await retry_async(
                attempt,
                self._retry,
                retry_on=RETRYABLE_ERRORS,
                name=operation,
                **log_context,
            )
        except CircuitOpenError as e:
            self._transient_errors += 1
            raise TransientBackendError(operation, str(e)) from e
        except RedisError as e:
            self._transient_errors += 1
            logger.error(
                "Membership store operation failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                **log_context,
            )
            raise TransientBackendError(operation) from e

    # =========================================================================
    # Mutations
    # =========================================================================

    async def _join(self, topic: str, client_id: str, ttl: float | None) -> None:
        topic_key = self.topic_key(topic)
        member_key = self.member_key(client_id)

        async def op() -> None:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.sadd(topic_key, client_id)
                pipe.sadd(member_key, topic)
                if ttl is not None:
                    expiry = timedelta(seconds=ttl)
                    pipe.pexpire(topic_key, expiry)
                    pipe.pexpire(member_key, expiry)
                await pipe.execute()

        await self._run("join", op, topic=topic, client_id=client_id)

    async def _leave(self, topic: str, client_id: str) -> None:
        topic_key = self.topic_key(topic)
        member_key = self.member_key(client_id)

        async def op() -> None:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.srem(topic_key, client_id)
                pipe.srem(member_key, topic)
                await pipe.execute()

        await self._run("leave", op, topic=topic, client_id=client_id)

    async def _refresh(self, client_id: str, ttl: float) -> int:
        member_key = self.member_key(client_id)

        async def op() -> int:
            topics = await self._redis.smembers(member_key)
            if not topics:
                return 0
            expiry = timedelta(seconds=ttl)
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.pexpire(member_key, expiry)
                for topic in topics:
                    pipe.pexpire(self.topic_key(topic), expiry)
                results = await pipe.execute()
            # PEXPIRE returns 0 for keys that expired in between
            return sum(1 for r in results if r)

        return await self._run("refresh", op, client_id=client_id)

    async def leave_all(self, client_id: str) -> set[str]:
        member_key = self.member_key(client_id)

        async def op() -> set[str]:
            async with self._redis.pipeline(transaction=True) as pipe:
                for _ in range(self._max_watch_retries):
                    try:
                        await pipe.watch(member_key)
                        topics = set(await pipe.smembers(member_key))
                        pipe.multi()
                        for topic in topics:
                            pipe.srem(self.topic_key(topic), client_id)
                        pipe.delete(member_key)
                        await pipe.execute()
                        return topics
                    except WatchError:
                        # Member key changed between WATCH and EXEC
                        self._watch_conflicts += 1
                        continue
            raise TransientBackendError(
                "leave_all",
                f"Member key of {client_id!r} kept changing "
                f"({self._max_watch_retries} optimistic retries)",
            )

        return await self._run("leave_all", op, client_id=client_id)

    # =========================================================================
    # Queries
    # =========================================================================

    async def members(self, topic: str) -> set[str]:
        key = self.topic_key(topic)

        async def op() -> set[str]:
            return set(await self._redis.smembers(key))

        return await self._run("members", op, topic=topic)

    async def topics_of(self, client_id: str) -> set[str]:
        key = self.member_key(client_id)

        async def op() -> set[str]:
            return set(await self._redis.smembers(key))

        return await self._run("topics_of", op, client_id=client_id)

    async def is_member(self, topic: str, client_id: str) -> bool:
        key = self.topic_key(topic)

        async def op() -> bool:
            return bool(await self._redis.sismember(key, client_id))

        return await self._run("is_member", op, topic=topic, client_id=client_id)

    async def snapshot(self) -> MembershipSnapshot:
        topic_prefix = self.topic_key("")
        member_prefix = self.member_key("")

        async def dump(prefix: str) -> dict[str, set[str]]:
            result: dict[str, set[str]] = {}
            async for key in self._redis.scan_iter(match=f"{prefix}*"):
                values = set(await self._redis.smembers(key))
                if values:
                    result[key[len(prefix):]] = values
            return result

        async def op() -> MembershipSnapshot:
            return MembershipSnapshot(
                topics=await dump(topic_prefix),
                members=await dump(member_prefix),
            )

        return await self._run("snapshot", op)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.warning("Membership store ping failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._owns_client:
            await self._redis.aclose()

    def get_stats(self) -> dict[str, Any]:
        stats = super().get_stats()
        stats.update(
            key_prefix=self._prefix,
            transient_errors=self._transient_errors,
            watch_conflicts=self._watch_conflicts,
            circuit_breaker=self._breaker.get_stats(),
        )
        return stats
