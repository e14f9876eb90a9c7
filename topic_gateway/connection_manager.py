"""
Topic Gateway Connection Manager.

Thin orchestrator that composes the membership subsystem:
- ConnectionRegistry: client identity <-> live connections
- TopicMembershipStore: topic <-> member indices (memory or Redis)
- ConnectionLifecycle: open/close coordination and cascade cleanup
- BroadcastEngine: topic fan-out with self-healing eviction

The manager is built once per application (FastAPI lifespan) and passed
explicitly to whoever needs it. There is no module-level instance.
"""

from __future__ import annotations

from typing import Any, Iterable, TYPE_CHECKING

from shared.config.logging import get_logger
from topic_gateway.components.connection.locks import LockManager
from topic_gateway.components.connection.registry import ConnectionRegistry, SessionPolicy
from topic_gateway.components.core.constants import WSConstants, connection_topic
from topic_gateway.components.membership.memory import InMemoryMembershipStore
from topic_gateway.components.membership.redis_store import RedisMembershipStore
from topic_gateway.components.metrics.collector import MetricsCollector
from topic_gateway.components.resilience.retry import create_store_retry_config
from topic_gateway.core.connection import (
    BroadcastEngine,
    CloseResult,
    ConnectionLifecycle,
    DeliveryReport,
    OpenResult,
)
from topic_gateway.core.connection.broadcaster import Message

if TYPE_CHECKING:
    from shared.config.settings import Settings
    from topic_gateway.components.connection.transport import BaseConnection
    from topic_gateway.components.membership.base import MembershipSnapshot, TopicMembershipStore

logger = get_logger(__name__)

__all__ = [
    "ConnectionManager",
    "create_membership_store",
    "create_connection_manager",
]


class ConnectionManager:
    """
    Upward API of the membership subsystem.

    None of the operations raise for not-found conditions. They raise only
    TransientBackendError (store unavailable) or RegistrationConflictError /
    ConnectionLimitError from on_open.
    """

    def __init__(
        self,
        store: "TopicMembershipStore",
        registry: ConnectionRegistry,
        lock_manager: LockManager,
        metrics: MetricsCollector | None = None,
        default_topics: Iterable[str] = (),
        track_connections_in_store: bool = True,
        restore_memberships: bool = True,
        send_timeout: float = WSConstants.SEND_TIMEOUT,
        evict_on_timeout: bool = False,
        broadcast_batch_size: int = WSConstants.BROADCAST_BATCH_SIZE,
    ) -> None:
        """
        Initialize the connection manager with composed components.

        Args:
            store: Membership store; must share `lock_manager`.
            registry: Connection registry.
            lock_manager: Client and edge locks.
            metrics: Metrics collector (a new one if omitted).
            default_topics: Topics every client joins on connect.
            track_connections_in_store: Record connection:<id> topics.
            restore_memberships: Refresh prior memberships on first connect.
            send_timeout: Per-send timeout during broadcast.
            evict_on_timeout: Treat send timeouts as hard failures.
            broadcast_batch_size: Members delivered to in parallel.
        """
        self._store = store
        self._registry = registry
        self._lock_manager = lock_manager
        self._metrics = metrics or MetricsCollector()

        self._lifecycle = ConnectionLifecycle(
            registry=registry,
            store=store,
            lock_manager=lock_manager,
            metrics=self._metrics,
            default_topics=default_topics,
            track_connections_in_store=track_connections_in_store,
            restore_memberships=restore_memberships,
        )
        self._broadcaster = BroadcastEngine(
            store=store,
            registry=registry,
            metrics=self._metrics,
            mark_dead_callback=self._lifecycle.mark_dead,
            send_timeout=send_timeout,
            evict_on_timeout=evict_on_timeout,
            batch_size=broadcast_batch_size,
        )
        self._track_connections = track_connections_in_store

    # =========================================================================
    # Components
    # =========================================================================

    @property
    def store(self) -> "TopicMembershipStore":
        return self._store

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def lifecycle(self) -> ConnectionLifecycle:
        return self._lifecycle

    @property
    def broadcaster(self) -> BroadcastEngine:
        return self._broadcaster

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def is_shutting_down(self) -> bool:
        return self._lifecycle.is_shutdown

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def on_open(self, client_id: str, connection: "BaseConnection") -> OpenResult:
        return await self._lifecycle.on_open(client_id, connection)

    async def on_close(self, connection_id: str) -> CloseResult:
        return await self._lifecycle.on_close(connection_id)

    # =========================================================================
    # Membership
    # =========================================================================

    async def join(self, topic: str, client_id: str, ttl: float | None = None) -> None:
        await self._store.join(topic, client_id, ttl)

    async def leave(self, topic: str, client_id: str) -> None:
        await self._store.leave(topic, client_id)

    # Aliases used by message handlers
    subscribe = join
    unsubscribe = leave

    async def members(self, topic: str) -> set[str]:
        return await self._store.members(topic)

    async def topics_of(self, client_id: str) -> set[str]:
        return await self._store.topics_of(client_id)

    async def is_member(self, topic: str, client_id: str) -> bool:
        return await self._store.is_member(topic, client_id)

    async def snapshot(self) -> "MembershipSnapshot":
        return await self._store.snapshot()

    # =========================================================================
    # Broadcast
    # =========================================================================

    async def publish(self, topic: str, message: Message) -> DeliveryReport:
        return await self._broadcaster.publish(topic, message)

    broadcast_to_topic = publish

    # =========================================================================
    # Lookups
    # =========================================================================

    def lookup(self, client_id: str) -> set["BaseConnection"]:
        """Live connections of a client in this process."""
        return self._registry.lookup(client_id)

    async def lookup_client_by_connection(self, connection_id: str) -> str | None:
        """
        Resolve a connection id to its client.

        Falls back to the reserved connection topic in the store, so ids
        registered by another process sharing the store resolve too.
        """
        client_id = self._registry.reverse_lookup(connection_id)
        if client_id is not None or not self._track_connections:
            return client_id
        members = await self._store.members(connection_topic(connection_id))
        return min(members) if members else None

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def run_maintenance(self) -> dict[str, int]:
        """
        One maintenance cycle: reap dead connections, refresh membership
        expiry of connected clients, retry deferred cascades and clean up
        unused client locks.
        """
        reaped = await self._lifecycle.reap_dead_connections()
        refreshed = await self._lifecycle.refresh_memberships()
        cascades = await self._lifecycle.retry_pending_cascades()
        locks = self._lock_manager.cleanup_stale_locks(self._registry.clients())
        if locks:
            self._metrics.add_locks_cleaned(locks)
        return {
            "reaped": reaped,
            "refreshed": refreshed,
            "cascades_retried": cascades,
            "locks_cleaned": locks,
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_connections": self._registry.connection_count,
            "clients_connected": self._registry.client_count,
            "dead_connections_pending": self._lifecycle.dead_connections_pending,
            "pending_cascades": len(self._lifecycle.pending_cascades),
            "registry": self._registry.get_stats(),
            "store": self._store.get_stats(),
            "locks": self._lock_manager.get_stats(),
            "metrics": self._metrics.get_snapshot(),
        }

    async def shutdown(self) -> int:
        """Close every connection; then release the store."""
        closed = await self._lifecycle.shutdown()
        await self._store.close()
        return closed


# =============================================================================
# Factories
# =============================================================================


async def create_membership_store(
    settings: "Settings",
    lock_manager: LockManager,
) -> "TopicMembershipStore":
    """Build the membership backend selected by settings.membership_backend."""
    if settings.membership_backend == "redis":
        from shared.infrastructure.redis_pool import get_redis_pool

        redis_client = await get_redis_pool()
        return RedisMembershipStore(
            redis_client,
            lock_manager=lock_manager,
            default_ttl=settings.default_ttl,
            key_prefix=settings.membership_key_prefix,
            retry_config=create_store_retry_config(
                max_attempts=settings.store_retry_attempts,
                initial_delay=settings.store_retry_initial_delay,
                max_delay=settings.store_retry_max_delay,
            ),
        )
    return InMemoryMembershipStore(lock_manager=lock_manager, default_ttl=settings.default_ttl)


async def create_connection_manager(
    settings: "Settings",
    store: "TopicMembershipStore | None" = None,
    lock_manager: LockManager | None = None,
) -> ConnectionManager:
    """
    Build a ConnectionManager from settings.

    Args:
        settings: Application settings.
        store: Pre-built store (tests); built from settings if omitted.
        lock_manager: Shared lock manager; required when `store` is given
            and was built with its own.
    """
    lock_manager = lock_manager or LockManager()
    if store is None:
        store = await create_membership_store(settings, lock_manager)

    registry = ConnectionRegistry(
        policy=SessionPolicy(settings.ws_session_policy),
        max_connections_per_client=settings.ws_max_connections_per_client,
    )
    manager = ConnectionManager(
        store=store,
        registry=registry,
        lock_manager=lock_manager,
        default_topics=settings.default_topics,
        track_connections_in_store=settings.ws_track_connections_in_store,
        restore_memberships=settings.ws_restore_memberships_on_open,
        send_timeout=settings.ws_send_timeout,
        evict_on_timeout=settings.ws_evict_on_timeout,
        broadcast_batch_size=settings.ws_broadcast_batch_size,
    )
    logger.info(
        "Connection manager created",
        backend=store.backend_name,
        session_policy=registry.policy.value,
        default_topics=len(settings.default_topics),
    )
    return manager
