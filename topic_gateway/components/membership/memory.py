"""
In-process membership backend.

Both indices live in plain dicts. A join or leave mutates both of them
without any suspension point in between, so no other coroutine can observe
a half-applied edge.

Expiry follows the Redis backend: each topic key and each member key has its
own optional deadline, reset by joins that carry a TTL and purged lazily
whenever the key is touched.
"""

from __future__ import annotations

import time
from typing import Callable

from shared.config.logging import get_logger
from topic_gateway.components.connection.locks import LockManager
from topic_gateway.components.membership.base import MembershipSnapshot, TopicMembershipStore

logger = get_logger(__name__)


class InMemoryMembershipStore(TopicMembershipStore):
    """
    Membership store for a single gateway process.

    Args:
        lock_manager: Source of edge locks.
        default_ttl: Seconds applied on every join without explicit ttl.
        clock: Monotonic clock, replaceable in tests.
    """

    backend_name = "memory"

    def __init__(
        self,
        lock_manager: LockManager | None = None,
        default_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(lock_manager=lock_manager, default_ttl=default_ttl)
        self._clock = clock
        self._topics: dict[str, set[str]] = {}
        self._members: dict[str, set[str]] = {}
        self._topic_expiry: dict[str, float] = {}
        self._member_expiry: dict[str, float] = {}

    # =========================================================================
    # Expiry
    # =========================================================================

    def _purge(
        self,
        index: dict[str, set[str]],
        expiry: dict[str, float],
        key: str,
    ) -> None:
        deadline = expiry.get(key)
        if deadline is not None and deadline <= self._clock():
            index.pop(key, None)
            del expiry[key]

    def _purge_all(self) -> None:
        now = self._clock()
        for index, expiry in (
            (self._topics, self._topic_expiry),
            (self._members, self._member_expiry),
        ):
            expired = [key for key, deadline in expiry.items() if deadline <= now]
            for key in expired:
                index.pop(key, None)
                del expiry[key]

    def _discard(
        self,
        index: dict[str, set[str]],
        expiry: dict[str, float],
        key: str,
        value: str,
    ) -> None:
        values = index.get(key)
        if values is None:
            return
        values.discard(value)
        if not values:
            # An emptied key disappears together with its expiry
            del index[key]
            expiry.pop(key, None)

    # =========================================================================
    # Mutations
    # =========================================================================

    async def _join(self, topic: str, client_id: str, ttl: float | None) -> None:
        self._purge(self._topics, self._topic_expiry, topic)
        self._purge(self._members, self._member_expiry, client_id)

        self._topics.setdefault(topic, set()).add(client_id)
        self._members.setdefault(client_id, set()).add(topic)

        if ttl is not None:
            deadline = self._clock() + ttl
            self._topic_expiry[topic] = deadline
            self._member_expiry[client_id] = deadline

    async def _leave(self, topic: str, client_id: str) -> None:
        self._purge(self._topics, self._topic_expiry, topic)
        self._purge(self._members, self._member_expiry, client_id)

        self._discard(self._topics, self._topic_expiry, topic, client_id)
        self._discard(self._members, self._member_expiry, client_id, topic)

    async def _refresh(self, client_id: str, ttl: float) -> int:
        self._purge(self._members, self._member_expiry, client_id)
        topics = self._members.get(client_id)
        if not topics:
            return 0

        deadline = self._clock() + ttl
        self._member_expiry[client_id] = deadline
        refreshed = 1
        for topic in topics:
            self._purge(self._topics, self._topic_expiry, topic)
            if topic in self._topics:
                self._topic_expiry[topic] = deadline
                refreshed += 1
        return refreshed

    async def leave_all(self, client_id: str) -> set[str]:
        self._purge(self._members, self._member_expiry, client_id)

        topics = self._members.pop(client_id, set())
        self._member_expiry.pop(client_id, None)
        for topic in topics:
            self._purge(self._topics, self._topic_expiry, topic)
            self._discard(self._topics, self._topic_expiry, topic, client_id)

        if topics:
            logger.debug("Removed all memberships", client_id=client_id, topics=len(topics))
        return topics

    # =========================================================================
    # Queries (return copies)
    # =========================================================================

    async def members(self, topic: str) -> set[str]:
        self._purge(self._topics, self._topic_expiry, topic)
        return set(self._topics.get(topic, ()))

    async def topics_of(self, client_id: str) -> set[str]:
        self._purge(self._members, self._member_expiry, client_id)
        return set(self._members.get(client_id, ()))

    async def is_member(self, topic: str, client_id: str) -> bool:
        self._purge(self._topics, self._topic_expiry, topic)
        return client_id in self._topics.get(topic, ())

    async def snapshot(self) -> MembershipSnapshot:
        self._purge_all()
        return MembershipSnapshot(
            topics={t: set(m) for t, m in self._topics.items()},
            members={c: set(t) for c, t in self._members.items()},
        )

    async def ping(self) -> bool:
        return True

    def get_stats(self) -> dict[str, int | float | str | None]:
        stats = super().get_stats()
        stats.update(topics=len(self._topics), members=len(self._members))
        return stats
