"""
Lock Manager for the Topic Gateway.

Hands out fine-grained asyncio locks instead of a global lock:

- Client locks: one per client id. Serialize on_open, on_close and the
  membership cascade of the same client, so a reconnect never races the
  cleanup of the previous session.
- Edge locks: one per (topic, client_id). Both membership backends take the
  edge lock before mutating an edge, so a join issued before a leave for the
  same pair is applied before it (asyncio.Lock wakes waiters FIFO).

LOCK ORDERING:
==============
client lock -> edge lock. Code holding an edge lock MUST NOT acquire a
client lock.

Every lock is reference counted while a task holds or waits on it. Cleanup
only removes locks with zero references, so a queued waiter can never end
up on a lock that a later caller no longer sees.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Hashable

from shared.config.logging import get_logger
from topic_gateway.components.core.constants import WSConstants

if TYPE_CHECKING:
    from collections.abc import Set

logger = get_logger(__name__)


@dataclass(slots=True)
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0  # tasks holding or waiting on the lock


class LockManager:
    """
    Manages asyncio locks for client and edge operations.

    Lock dictionaries are mutated without awaiting, so no meta-lock is
    needed on a single event loop. Edge locks are dropped as soon as no task
    references them; client locks are kept while the client is connected and
    dropped by `discard_client_lock` or by threshold cleanup.
    """

    def __init__(
        self,
        max_cached_locks: int = WSConstants.MAX_CACHED_LOCKS,
        cleanup_threshold: int = WSConstants.LOCK_CLEANUP_THRESHOLD,
    ):
        """
        Initialize the lock manager.

        Args:
            max_cached_locks: Soft cap reported in stats.
            cleanup_threshold: Number of cached client locks that triggers cleanup.
        """
        self._max_cached_locks = max_cached_locks
        self._cleanup_threshold = cleanup_threshold

        self._client_locks: dict[str, _LockEntry] = {}
        self._edge_locks: dict[tuple[str, str], _LockEntry] = {}

        # Metrics
        self._locks_cleaned = 0

    @property
    def client_lock_count(self) -> int:
        return len(self._client_locks)

    @property
    def edge_lock_count(self) -> int:
        return len(self._edge_locks)

    @property
    def locks_cleaned_total(self) -> int:
        """Total number of locks cleaned since startup."""
        return self._locks_cleaned

    @asynccontextmanager
    async def client_lock(self, client_id: str) -> AsyncIterator[None]:
        """
        Hold the lock of a client for the duration of the block.

        Usage:
            async with lock_manager.client_lock("clientA"):
                ...
        """
        entry = self._client_locks.get(client_id)
        if entry is None:
            entry = _LockEntry()
            self._client_locks[client_id] = entry
            if len(self._client_locks) > self._cleanup_threshold:
                self._cleanup_unheld_locks(self._client_locks)
        async with self._hold(entry):
            yield

    @asynccontextmanager
    async def edge_lock(self, topic: str, client_id: str) -> AsyncIterator[None]:
        """Hold the lock of one membership edge for the duration of the block."""
        key = (topic, client_id)
        entry = self._edge_locks.get(key)
        if entry is None:
            entry = _LockEntry()
            self._edge_locks[key] = entry
        try:
            async with self._hold(entry):
                yield
        finally:
            if entry.users == 0 and self._edge_locks.get(key) is entry:
                del self._edge_locks[key]

    @asynccontextmanager
    async def _hold(self, entry: _LockEntry) -> AsyncIterator[None]:
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1

    def is_client_locked(self, client_id: str) -> bool:
        entry = self._client_locks.get(client_id)
        return entry is not None and entry.lock.locked()

    def discard_client_lock(self, client_id: str) -> bool:
        """
        Drop the cached lock of a client if no task references it.

        Called after the client's last connection is cleaned up.

        Returns:
            True if the lock was removed.
        """
        entry = self._client_locks.get(client_id)
        if entry is not None and entry.users == 0:
            del self._client_locks[client_id]
            self._locks_cleaned += 1
            return True
        return False

    def _cleanup_unheld_locks(self, lock_dict: dict[Hashable, _LockEntry]) -> int:
        """
        Conservative cleanup that only removes unreferenced locks.

        Reduces the dictionary to LOCK_CLEANUP_HYSTERESIS_RATIO of the
        threshold, oldest entries first (dict insertion order).

        Returns:
            Number of locks cleaned.
        """
        target_count = int(self._cleanup_threshold * WSConstants.LOCK_CLEANUP_HYSTERESIS_RATIO)
        to_remove = len(lock_dict) - target_count
        if to_remove <= 0:
            return 0

        keys_to_remove = [
            key for key, entry in list(lock_dict.items()) if entry.users == 0
        ][:to_remove]
        for key in keys_to_remove:
            del lock_dict[key]

        cleaned = len(keys_to_remove)
        if cleaned:
            self._locks_cleaned += cleaned
            logger.debug("Lock cleanup completed", cleaned=cleaned, remaining=len(lock_dict))
        return cleaned

    def cleanup_stale_locks(self, active_clients: Set[str]) -> int:
        """
        Remove client locks of clients with no active connections.

        Args:
            active_clients: Client ids that currently hold connections.

        Returns:
            Number of locks cleaned up.
        """
        stale = [
            cid for cid, entry in self._client_locks.items()
            if cid not in active_clients and entry.users == 0
        ]
        for cid in stale:
            del self._client_locks[cid]

        if stale:
            self._locks_cleaned += len(stale)
            logger.info("Cleaned up stale locks", client_locks_cleaned=len(stale))
        return len(stale)

    def get_stats(self) -> dict[str, int]:
        """Get lock manager statistics."""
        return {
            "client_locks_count": len(self._client_locks),
            "edge_locks_count": len(self._edge_locks),
            "locks_cleaned_total": self._locks_cleaned,
            "max_cached_locks": self._max_cached_locks,
            "cleanup_threshold": self._cleanup_threshold,
        }
