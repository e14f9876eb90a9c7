"""
Connection Lifecycle Coordinator.

State machine per client: Unregistered -> Active(n connections) -> Unregistered.

- on_open registers the connection (session policy applied), closes replaced
  sessions, restores memberships on the client's first connection, seeds
  default topics and records the reserved connection topic.
- on_close unregisters the connection. When it was the client's last one,
  every membership of the client is removed in one atomic store operation
  (the cascade). A cascade that hits a backend outage is queued and retried
  by maintenance until it succeeds or the client reconnects.

All per-client steps run under the client lock, so an open and a close of
the same client never interleave.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

from shared.config.logging import audit_ws_connection, get_logger
from topic_gateway.components.core.constants import (
    WSCloseCode,
    WSConstants,
    connection_topic,
    is_connection_topic,
)
from topic_gateway.components.core.errors import (
    ConnectionLimitError,
    RegistrationConflictError,
    TransientBackendError,
)

if TYPE_CHECKING:
    from topic_gateway.components.connection.locks import LockManager
    from topic_gateway.components.connection.registry import ConnectionRegistry, RegistrationResult
    from topic_gateway.components.connection.transport import BaseConnection
    from topic_gateway.components.membership.base import TopicMembershipStore
    from topic_gateway.components.metrics.collector import MetricsCollector

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class OpenResult:
    """
    Outcome of on_open.

    Attributes:
        replaced: Connection ids closed by single-session policy.
        restored: Topics kept from a previous session of the client.
        seeded: Default topics joined on this open.
        is_first: The client had no connection before this one.
    """

    client_id: str
    connection_id: str
    replaced: tuple[str, ...] = ()
    restored: tuple[str, ...] = ()
    seeded: tuple[str, ...] = ()
    is_first: bool = False


@dataclass(frozen=True, slots=True)
class CloseResult:
    """
    Outcome of on_close.

    `client_id` is None when the connection id was unknown (duplicate close).
    `cascaded` lists the topics removed by the last-connection cleanup;
    `deferred` is True when that cleanup was queued for retry.
    """

    connection_id: str
    client_id: str | None = None
    was_last: bool = False
    cascaded: tuple[str, ...] = ()
    deferred: bool = False

    @property
    def was_registered(self) -> bool:
        return self.client_id is not None


class ConnectionLifecycle:
    """
    Coordinates the registry and the membership store across open/close.

    The registry is mutated only here.
    """

    def __init__(
        self,
        registry: "ConnectionRegistry",
        store: "TopicMembershipStore",
        lock_manager: "LockManager",
        metrics: "MetricsCollector",
        default_topics: Iterable[str] = (),
        track_connections_in_store: bool = True,
        restore_memberships: bool = True,
    ) -> None:
        """
        Initialize lifecycle coordinator with dependencies.

        Args:
            registry: Connection registry
            store: Topic membership store
            lock_manager: Source of client locks (shared with the store)
            metrics: Collects connection and cascade metrics
            default_topics: Topics every client joins on connect
            track_connections_in_store: Join the reserved connection topic
            restore_memberships: Refresh prior memberships on first connect
        """
        self._registry = registry
        self._store = store
        self._lock_manager = lock_manager
        self._metrics = metrics
        self._default_topics = tuple(t for t in default_topics if t)
        self._track_connections = track_connections_in_store
        self._restore = restore_memberships

        self._pending_cascades: set[str] = set()
        self._dead_connections: set[BaseConnection] = set()
        self._shutdown = False

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    @property
    def pending_cascades(self) -> frozenset[str]:
        return frozenset(self._pending_cascades)

    @property
    def dead_connections_pending(self) -> int:
        return len(self._dead_connections)

    # =========================================================================
    # Open
    # =========================================================================

    async def on_open(self, client_id: str, connection: "BaseConnection") -> OpenResult:
        """
        Register a new connection of a client.

        Raises:
            ValueError: Empty client id.
            ConnectionError: The gateway is shutting down.
            RegistrationConflictError: The connection id belongs to another client.
            ConnectionLimitError: Multi-session limit reached.
            TransientBackendError: The store failed; the registration is rolled back.
        """
        if not client_id:
            raise ValueError("client_id must be a non-empty string")
        if self._shutdown:
            raise ConnectionError("Gateway is shutting down")

        connection_id = connection.connection_id
        replaced: tuple[BaseConnection, ...] = ()

        try:
            async with self._lock_manager.client_lock(client_id):
                result = self._registry.register(client_id, connection)
                self._check_registration(client_id, connection_id, result)
                replaced = result.replaced

                if client_id in self._pending_cascades:
                    # Memberships of the previous session are still in the store
                    self._pending_cascades.discard(client_id)
                    self._metrics.record_cascade_cancelled()
                    logger.info("Pending cascade cancelled by reconnect", client_id=client_id)

                try:
                    restored = await self._prepare_memberships(
                        client_id, connection_id, replaced, result.is_first
                    )
                except TransientBackendError:
                    self._rollback_open(client_id, connection)
                    raise
        finally:
            # Replaced sessions are already unregistered; close them even on failure
            if replaced:
                await self._close_replaced(client_id, replaced)

        self._metrics.record_connection_opened()
        audit_ws_connection(
            "OPEN",
            client_id,
            connection_id,
            is_first=result.is_first,
            replaced=len(replaced),
            restored=len(restored),
        )
        return OpenResult(
            client_id=client_id,
            connection_id=connection_id,
            replaced=tuple(c.connection_id for c in replaced),
            restored=restored,
            seeded=self._default_topics,
            is_first=result.is_first,
        )

    def _check_registration(
        self,
        client_id: str,
        connection_id: str,
        result: "RegistrationResult",
    ) -> None:
        """Raise for a rejected registration."""
        if result.conflict:
            self._metrics.record_connection_rejected("conflict")
            owner = self._registry.reverse_lookup(connection_id) or "?"
            audit_ws_connection(
                "REJECTED", client_id, connection_id, reason="connection id conflict", owner=owner
            )
            raise RegistrationConflictError(connection_id, owner, client_id)

        if result.limit_reached:
            self._metrics.record_connection_rejected("limit")
            audit_ws_connection("REJECTED", client_id, connection_id, reason="connection limit")
            raise ConnectionLimitError(client_id, self._registry.max_connections_per_client)

    async def _prepare_memberships(
        self,
        client_id: str,
        connection_id: str,
        replaced: tuple["BaseConnection", ...],
        is_first: bool,
    ) -> tuple[str, ...]:
        """Store steps of on_open. MUST hold the client lock."""
        for old in replaced:
            self._dead_connections.discard(old)
            if self._track_connections:
                await self._store.leave(connection_topic(old.connection_id), client_id)

        restored: tuple[str, ...] = ()
        if is_first and self._restore:
            restored = await self._restore_memberships(client_id)

        for topic in self._default_topics:
            await self._store.join(topic, client_id)
        if self._track_connections:
            await self._store.join(connection_topic(connection_id), client_id)
        return restored

    async def _restore_memberships(self, client_id: str) -> tuple[str, ...]:
        """
        Reconcile memberships left by a previous session of the client.

        Runs on the client's first connection in this process. Complete edges
        are re-joined, refreshing their TTL. Half edges (one index expired)
        and reserved topics of dead connections are removed.
        """
        topics = await self._store.topics_of(client_id)
        if not topics:
            return ()

        restored: list[str] = []
        for topic in sorted(topics):
            if is_connection_topic(topic):
                await self._store.leave(topic, client_id)
            elif await self._store.is_member(topic, client_id):
                await self._store.join(topic, client_id)
                restored.append(topic)
            else:
                await self._store.leave(topic, client_id)

        if restored:
            logger.info("Restored memberships", client_id=client_id, topics=len(restored))
        return tuple(restored)

    def _rollback_open(self, client_id: str, connection: "BaseConnection") -> None:
        """Undo a registration whose store steps failed. MUST hold the client lock."""
        self._registry.unregister(connection.connection_id)
        self._metrics.record_connection_rejected("backend")
        self._metrics.record_store_error()
        if not self._registry.has_client(client_id):
            # Replaced sessions are gone too; memberships need cleanup later
            self._pending_cascades.add(client_id)
            self._metrics.record_cascade_deferred()
        audit_ws_connection(
            "REJECTED", client_id, connection.connection_id, reason="membership store unavailable"
        )

    async def _close_replaced(
        self,
        client_id: str,
        replaced: tuple["BaseConnection", ...],
    ) -> None:
        self._metrics.record_connections_replaced(len(replaced))
        await asyncio.gather(
            *[
                self._close_connection(old, WSCloseCode.SESSION_REPLACED, "Session replaced")
                for old in replaced
            ]
        )
        for old in replaced:
            audit_ws_connection("REPLACED", client_id, old.connection_id)

    @staticmethod
    async def _close_connection(connection: "BaseConnection", code: int, reason: str) -> None:
        try:
            await asyncio.wait_for(connection.close(code, reason), timeout=WSConstants.CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Timed out closing connection", connection_id=connection.connection_id)

    # =========================================================================
    # Close
    # =========================================================================

    async def on_close(self, connection_id: str) -> CloseResult:
        """
        Unregister a closed connection. Unknown ids are a no-op.

        Never raises for backend errors: a failed cascade is queued for
        retry_pending_cascades and reported with deferred=True.
        """
        client_id = self._registry.reverse_lookup(connection_id)
        if client_id is None:
            return CloseResult(connection_id=connection_id)

        async with self._lock_manager.client_lock(client_id):
            unregistered = self._registry.unregister(connection_id)
            if unregistered is None:
                # Closed concurrently while waiting for the lock
                return CloseResult(connection_id=connection_id)

            unregistered.connection.mark_closed()
            self._dead_connections.discard(unregistered.connection)
            self._metrics.record_connection_closed()
            audit_ws_connection("CLOSE", client_id, connection_id, was_last=unregistered.was_last)

            if not unregistered.was_last:
                await self._leave_connection_topic(client_id, connection_id)
                return CloseResult(connection_id=connection_id, client_id=client_id)

            cascaded, deferred = await self._cascade(client_id)

        if not deferred:
            self._lock_manager.discard_client_lock(client_id)
        return CloseResult(
            connection_id=connection_id,
            client_id=client_id,
            was_last=True,
            cascaded=cascaded,
            deferred=deferred,
        )

    async def _leave_connection_topic(self, client_id: str, connection_id: str) -> None:
        if not self._track_connections:
            return
        try:
            await self._store.leave(connection_topic(connection_id), client_id)
        except TransientBackendError as e:
            self._metrics.record_store_error()
            # Removed at the latest by the client's final cascade
            logger.warning(
                "Failed to remove connection topic",
                client_id=client_id,
                connection_id=connection_id,
                error=str(e),
            )

    async def _cascade(self, client_id: str) -> tuple[tuple[str, ...], bool]:
        """
        Remove every membership of a client. MUST hold the client lock.

        Returns:
            (topics removed, deferred flag)
        """
        try:
            topics = await self._store.leave_all(client_id)
        except TransientBackendError as e:
            self._metrics.record_store_error()
            self._pending_cascades.add(client_id)
            self._metrics.record_cascade_deferred()
            logger.warning(
                "Cascade cleanup deferred",
                client_id=client_id,
                operation=e.operation,
                error=str(e),
            )
            return (), True

        self._metrics.record_cascade_completed()
        audit_ws_connection("CASCADE", client_id, topics=len(topics))
        return tuple(sorted(topics)), False

    # =========================================================================
    # Maintenance
    # =========================================================================

    def mark_dead(self, connection: "BaseConnection") -> None:
        """
        Record a connection whose send failed hard, for reaping.

        Used as the broadcaster's mark_dead callback.
        """
        if connection in self._dead_connections:
            return
        if len(self._dead_connections) >= WSConstants.MAX_DEAD_CONNECTIONS:
            logger.warning(
                "Dead connections limit reached, deferring to next cycle",
                limit=WSConstants.MAX_DEAD_CONNECTIONS,
            )
            return
        self._dead_connections.add(connection)

    async def reap_dead_connections(self) -> int:
        """
        Close and unregister connections marked dead.

        Returns:
            Number of connections reaped.
        """
        if not self._dead_connections:
            return 0

        dead = list(self._dead_connections)
        self._dead_connections.clear()

        reaped = 0
        for connection in dead:
            await self._close_connection(connection, WSCloseCode.SERVER_ERROR, "Delivery failed")
            result = await self.on_close(connection.connection_id)
            if result.was_registered:
                reaped += 1

        if reaped:
            self._metrics.record_connections_reaped(reaped)
            logger.info("Reaped dead connections", count=reaped)
        return reaped

    async def refresh_memberships(self) -> int:
        """
        Reset membership expiry of every connected client.

        Expiry then only reaps memberships of clients that are gone. Stops
        at the first backend failure; the next cycle starts over.

        Returns:
            Number of clients refreshed.
        """
        if self._store.default_ttl is None:
            return 0

        refreshed = 0
        for client_id in sorted(self._registry.clients()):
            async with self._lock_manager.client_lock(client_id):
                if not self._registry.has_client(client_id):
                    continue
                try:
                    await self._store.refresh(client_id)
                except TransientBackendError as e:
                    self._metrics.record_store_error()
                    logger.warning(
                        "Membership refresh interrupted",
                        client_id=client_id,
                        refreshed=refreshed,
                        error=str(e),
                    )
                    break
            refreshed += 1

        return refreshed

    async def retry_pending_cascades(self) -> int:
        """
        Retry cascades deferred by backend errors.

        Stops at the first failure; the remaining clients stay queued for the
        next maintenance cycle.

        Returns:
            Number of cascades completed.
        """
        completed = 0
        for client_id in sorted(self._pending_cascades):
            async with self._lock_manager.client_lock(client_id):
                if client_id not in self._pending_cascades:
                    continue
                if self._registry.has_client(client_id):
                    # Reconnected; memberships belong to the new session
                    self._pending_cascades.discard(client_id)
                    continue
                try:
                    topics = await self._store.leave_all(client_id)
                except TransientBackendError as e:
                    self._metrics.record_store_error()
                    logger.warning(
                        "Pending cascade retry failed",
                        client_id=client_id,
                        pending=len(self._pending_cascades),
                        error=str(e),
                    )
                    break
                self._pending_cascades.discard(client_id)

            self._lock_manager.discard_client_lock(client_id)
            self._metrics.record_cascade_retried()
            audit_ws_connection("CASCADE", client_id, topics=len(topics), retried=True)
            completed += 1

        return completed

    async def shutdown(self) -> int:
        """
        Close every registered connection with GOING_AWAY.

        Memberships are left in the store: a durable backend keeps them (under
        TTL) for clients reconnecting after the restart.

        Returns:
            Number of connections closed.
        """
        self._shutdown = True
        connections = self._registry.all_connections()

        for connection in connections:
            connection_id = connection.connection_id
            client_id = self._registry.reverse_lookup(connection_id)
            self._registry.unregister(connection_id)
            connection.mark_closed()
            if client_id is not None:
                audit_ws_connection("CLOSE", client_id, connection_id, reason="shutdown")

        await asyncio.gather(
            *[
                self._close_connection(c, WSCloseCode.GOING_AWAY, "Server shutting down")
                for c in connections
            ]
        )
        self._dead_connections.clear()

        logger.info("Lifecycle shutdown complete", closed=len(connections))
        return len(connections)
