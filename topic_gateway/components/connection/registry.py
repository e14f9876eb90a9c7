"""
Connection Registry - client identity <-> live connections.

Purely in-process, volatile state. It is constructed once per application
and rebuilt from scratch as clients reconnect after a restart.

All methods are synchronous: bookkeeping completes without suspending, so a
registry update can never interleave with another coroutine. Mutations are
made only by the lifecycle coordinator, under the client lock of the
affected client.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING

from shared.config.logging import get_logger

if TYPE_CHECKING:
    from topic_gateway.components.connection.transport import BaseConnection

logger = get_logger(__name__)


class SessionPolicy(str, Enum):
    """How a new connection of an already-connected client is handled."""

    SINGLE = "single"  # the new connection replaces every existing one
    MULTI = "multi"  # connections accumulate up to a per-client limit


@dataclass(frozen=True, slots=True)
class RegistrationResult:
    """
    Outcome of `ConnectionRegistry.register`.

    Attributes:
        success: True when the connection is (now) registered to the client.
        conflict: The connection id is owned by a different client.
        limit_reached: Multi-session limit prevented the registration.
        replaced: Connections evicted by single-session policy. They are
            already unregistered and marked closed; the caller closes them
            on the wire.
        is_first: The client had no live registration before this call.
    """

    success: bool
    conflict: bool = False
    limit_reached: bool = False
    replaced: tuple["BaseConnection", ...] = ()
    is_first: bool = False


@dataclass(frozen=True, slots=True)
class UnregisterResult:
    """Owner of an unregistered connection and whether it was the last one."""

    client_id: str
    connection: "BaseConnection"
    was_last: bool


class ConnectionRegistry:
    """
    Indices maintained:
    - by_client: client_id -> set[BaseConnection]
    - by_id: connection_id -> BaseConnection

    Reverse mapping:
    - owner: connection_id -> client_id
    """

    def __init__(
        self,
        policy: SessionPolicy | str = SessionPolicy.SINGLE,
        max_connections_per_client: int = 5,
    ) -> None:
        self._policy = SessionPolicy(policy)
        self._max_per_client = max_connections_per_client

        self._by_client: dict[str, set[BaseConnection]] = {}
        self._by_id: dict[str, BaseConnection] = {}
        self._owner: dict[str, str] = {}

    @property
    def policy(self) -> SessionPolicy:
        return self._policy

    @property
    def max_connections_per_client(self) -> int:
        return self._max_per_client

    @property
    def by_client(self) -> MappingProxyType[str, set["BaseConnection"]]:
        """Connections indexed by client id (immutable view)."""
        return MappingProxyType(self._by_client)

    @property
    def connection_count(self) -> int:
        return len(self._by_id)

    @property
    def client_count(self) -> int:
        return len(self._by_client)

    # =========================================================================
    # Mutations (lifecycle coordinator only)
    # =========================================================================

    def register(self, client_id: str, connection: "BaseConnection") -> RegistrationResult:
        """
        Associate a connection with a client, applying the session policy.

        Re-registering a connection to its current owner is a no-op success.
        """
        connection_id = connection.connection_id
        owner = self._owner.get(connection_id)
        if owner is not None:
            if owner == client_id:
                return RegistrationResult(success=True)
            logger.warning(
                "Connection id already registered to another client",
                connection_id=connection_id,
                owner=owner,
                requested=client_id,
            )
            return RegistrationResult(success=False, conflict=True)

        existing = self._by_client.get(client_id, set())
        is_first = not existing
        replaced: tuple[BaseConnection, ...] = ()

        if self._policy == SessionPolicy.SINGLE:
            replaced = tuple(existing)
            for old in replaced:
                self._remove(old.connection_id)
                old.mark_closed()
        elif len(existing) >= self._max_per_client:
            return RegistrationResult(success=False, limit_reached=True)

        self._by_client.setdefault(client_id, set()).add(connection)
        self._by_id[connection_id] = connection
        self._owner[connection_id] = client_id

        return RegistrationResult(success=True, replaced=replaced, is_first=is_first)

    def unregister(self, connection_id: str) -> UnregisterResult | None:
        """
        Remove a connection from whichever client owns it.

        Returns:
            Owner and last-connection flag, or None if the id is unknown.
        """
        removed = self._remove(connection_id)
        if removed is None:
            return None
        client_id, connection = removed
        return UnregisterResult(
            client_id=client_id,
            connection=connection,
            was_last=client_id not in self._by_client,
        )

    def _remove(self, connection_id: str) -> tuple[str, "BaseConnection"] | None:
        client_id = self._owner.pop(connection_id, None)
        if client_id is None:
            return None
        connection = self._by_id.pop(connection_id)
        connections = self._by_client.get(client_id)
        if connections is not None:
            connections.discard(connection)
            if not connections:
                del self._by_client[client_id]
        return client_id, connection

    # =========================================================================
    # Queries (return copies)
    # =========================================================================

    def lookup(self, client_id: str) -> set["BaseConnection"]:
        """Live connections of a client (possibly empty)."""
        return {c for c in self._by_client.get(client_id, ()) if c.is_open}

    def reverse_lookup(self, connection_id: str) -> str | None:
        """Client id owning a connection id, or None."""
        return self._owner.get(connection_id)

    def get_connection(self, connection_id: str) -> "BaseConnection | None":
        return self._by_id.get(connection_id)

    def has_client(self, client_id: str) -> bool:
        """True while the client holds at least one registration."""
        return client_id in self._by_client

    def clients(self) -> set[str]:
        return set(self._by_client)

    def all_connections(self) -> list["BaseConnection"]:
        return list(self._by_id.values())

    def get_stats(self) -> dict[str, int | str]:
        return {
            "policy": self._policy.value,
            "clients": len(self._by_client),
            "connections": len(self._by_id),
            "max_connections_per_client": self._max_per_client,
        }
