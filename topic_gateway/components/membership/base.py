"""
Topic Membership Store contract.

Two indices are kept mutually consistent for every membership edge
(topic, client_id):

    c in members(t)  <=>  t in topics_of(c)

after every mutating operation. Backends differ only in where the indices
live (process memory or Redis); both run the same contract test suite.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from topic_gateway.components.connection.locks import LockManager


@dataclass(slots=True)
class MembershipSnapshot:
    """
    Full dump of both indices.

    Attributes:
        topics: topic -> member client ids
        members: client id -> topics
    """

    topics: dict[str, set[str]] = field(default_factory=dict)
    members: dict[str, set[str]] = field(default_factory=dict)

    def half_edges(self) -> list[tuple[str, str]]:
        """
        Edges present in only one index, as (topic, client_id) pairs.

        Empty for a consistent store.
        """
        broken: set[tuple[str, str]] = set()
        for topic, clients in self.topics.items():
            for client_id in clients:
                if topic not in self.members.get(client_id, ()):
                    broken.add((topic, client_id))
        for client_id, topics in self.members.items():
            for topic in topics:
                if client_id not in self.topics.get(topic, ()):
                    broken.add((topic, client_id))
        return sorted(broken)

    def is_consistent(self) -> bool:
        return not self.half_edges()

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly form with sorted lists."""
        return {
            "topics": {t: sorted(m) for t, m in sorted(self.topics.items())},
            "members": {c: sorted(t) for c, t in sorted(self.members.items())},
        }


class TopicMembershipStore(ABC):
    """
    Abstract membership store.

    `join` and `leave` take the edge lock of (topic, client_id) before
    calling the backend, so operations on the same edge are applied in the
    order they were issued. Backends implement the underscore methods.

    Args:
        lock_manager: Source of edge locks. Share the application's
            LockManager so the coordinator and store agree on lock identity.
        default_ttl: Seconds applied on every join when no explicit ttl is
            passed. None disables expiry.
    """

    backend_name: str = "abstract"

    def __init__(
        self,
        lock_manager: LockManager | None = None,
        default_ttl: float | None = None,
    ) -> None:
        self._locks = lock_manager or LockManager()
        self._default_ttl = default_ttl if default_ttl and default_ttl > 0 else None

    @property
    def default_ttl(self) -> float | None:
        return self._default_ttl

    def _resolve_ttl(self, ttl: float | None) -> float | None:
        if ttl is None:
            return self._default_ttl
        return ttl if ttl > 0 else None

    @staticmethod
    def _validate(topic: str, client_id: str) -> None:
        if not topic:
            raise ValueError("topic must be a non-empty string")
        if not client_id:
            raise ValueError("client_id must be a non-empty string")

    async def join(self, topic: str, client_id: str, ttl: float | None = None) -> None:
        """
        Add the edge (topic, client_id). Idempotent.

        When a TTL applies, expiry of both the topic and the member index is
        reset.

        Raises:
            TransientBackendError: The backend is unavailable.
        """
        self._validate(topic, client_id)
        async with self._locks.edge_lock(topic, client_id):
            await self._join(topic, client_id, self._resolve_ttl(ttl))

    async def leave(self, topic: str, client_id: str) -> None:
        """
        Remove the edge (topic, client_id). Removing a missing edge is a no-op.

        Raises:
            TransientBackendError: The backend is unavailable.
        """
        self._validate(topic, client_id)
        async with self._locks.edge_lock(topic, client_id):
            await self._leave(topic, client_id)

    async def refresh(self, client_id: str, ttl: float | None = None) -> int:
        """
        Reset expiry of a client's member index and of every topic it lists.

        Called periodically for connected clients: a member index must not
        expire while topic keys still list the client, or its cascade
        cannot find them.

        Returns:
            Number of keys whose expiry was reset (0 when no TTL applies).

        Raises:
            TransientBackendError: The backend is unavailable.
        """
        if not client_id:
            raise ValueError("client_id must be a non-empty string")
        resolved = self._resolve_ttl(ttl)
        if resolved is None:
            return 0
        return await self._refresh(client_id, resolved)

    @abstractmethod
    async def _join(self, topic: str, client_id: str, ttl: float | None) -> None:
        ...

    @abstractmethod
    async def _refresh(self, client_id: str, ttl: float) -> int:
        ...

    @abstractmethod
    async def _leave(self, topic: str, client_id: str) -> None:
        ...

    @abstractmethod
    async def members(self, topic: str) -> set[str]:
        """Member client ids of a topic (empty set if unknown)."""

    @abstractmethod
    async def topics_of(self, client_id: str) -> set[str]:
        """Topics of a client (empty set if unknown)."""

    @abstractmethod
    async def is_member(self, topic: str, client_id: str) -> bool:
        """Membership check without transferring the whole set."""

    @abstractmethod
    async def leave_all(self, client_id: str) -> set[str]:
        """
        Remove every edge of a client and its member index in one atomic step.

        Idempotent and safe to re-run after a failure.

        Returns:
            Topics the client was removed from.
        """

    @abstractmethod
    async def snapshot(self) -> MembershipSnapshot:
        """Dump of both indices, for diagnostics and invariant checks."""

    @abstractmethod
    async def ping(self) -> bool:
        """True if the backend is reachable."""

    async def close(self) -> None:
        """Release backend resources."""

    def get_stats(self) -> dict[str, Any]:
        return {"backend": self.backend_name, "default_ttl": self._default_ttl}
