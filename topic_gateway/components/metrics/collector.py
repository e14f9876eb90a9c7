"""
Metrics Collector for the Topic Gateway.

Centralizes counters for observability. Counter updates are synchronous and
guarded by a threading.Lock, so they are safe on the broadcast hot path and
from health-check threads alike.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from topic_gateway.core.connection.report import DeliveryReport


@dataclass
class BroadcastMetrics:
    """Metrics for publish operations."""
    total: int = 0
    recipients: int = 0
    delivered: int = 0
    evicted: int = 0
    transient_failures: int = 0


@dataclass
class ConnectionMetrics:
    """Metrics for connection lifecycle."""
    opened: int = 0
    closed: int = 0
    replaced: int = 0
    reaped: int = 0
    rejected_conflict: int = 0
    rejected_limit: int = 0
    rejected_backend: int = 0


@dataclass
class CascadeMetrics:
    """Metrics for last-connection membership cleanup."""
    completed: int = 0
    deferred: int = 0
    retried: int = 0
    cancelled: int = 0


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Usage:
        metrics = MetricsCollector()
        metrics.record_connection_opened()
        stats = metrics.get_snapshot()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._broadcast = BroadcastMetrics()
        self._connection = ConnectionMetrics()
        self._cascade = CascadeMetrics()
        self._store_errors = 0
        self._locks_cleaned = 0

    # ==========================================================================
    # Connection Metrics
    # ==========================================================================

    def record_connection_opened(self) -> None:
        with self._lock:
            self._connection.opened += 1

    def record_connection_closed(self) -> None:
        with self._lock:
            self._connection.closed += 1

    def record_connections_replaced(self, count: int) -> None:
        """Connections closed because a newer session of the same client took over."""
        with self._lock:
            self._connection.replaced += count

    def record_connections_reaped(self, count: int) -> None:
        with self._lock:
            self._connection.reaped += count

    def record_connection_rejected(self, reason: str) -> None:
        """
        Count a rejected connection.

        Args:
            reason: One of "conflict", "limit", "backend".
        """
        with self._lock:
            attr = f"rejected_{reason}"
            setattr(self._connection, attr, getattr(self._connection, attr) + 1)

    # ==========================================================================
    # Broadcast Metrics
    # ==========================================================================

    def record_broadcast(self, report: "DeliveryReport") -> None:
        with self._lock:
            self._broadcast.total += 1
            self._broadcast.recipients += report.recipients
            self._broadcast.delivered += report.delivered
            self._broadcast.evicted += len(report.evicted)
            self._broadcast.transient_failures += len(report.transient_failures)

    # ==========================================================================
    # Cascade Metrics
    # ==========================================================================

    def record_cascade_completed(self) -> None:
        with self._lock:
            self._cascade.completed += 1

    def record_cascade_deferred(self) -> None:
        """Cascade failed on a transient backend error and was queued for retry."""
        with self._lock:
            self._cascade.deferred += 1

    def record_cascade_retried(self) -> None:
        with self._lock:
            self._cascade.retried += 1

    def record_cascade_cancelled(self) -> None:
        """A pending cascade was dropped because the client reconnected."""
        with self._lock:
            self._cascade.cancelled += 1

    # ==========================================================================
    # Other Metrics
    # ==========================================================================

    def record_store_error(self) -> None:
        with self._lock:
            self._store_errors += 1

    def add_locks_cleaned(self, count: int) -> None:
        with self._lock:
            self._locks_cleaned += count

    # ==========================================================================
    # Snapshot
    # ==========================================================================

    def get_snapshot(self) -> dict[str, Any]:
        """
        Get a snapshot of all metrics.

        Metric names follow the pattern {category}_{metric} where category is
        plural (broadcasts, connections, cascades).
        """
        with self._lock:
            snapshot: dict[str, Any] = {}
            for category, values in (
                ("broadcasts", self._broadcast),
                ("connections", self._connection),
                ("cascades", self._cascade),
            ):
                for key, value in asdict(values).items():
                    snapshot[f"{category}_{key}"] = value
            snapshot["store_errors"] = self._store_errors
            snapshot["locks_cleaned"] = self._locks_cleaned
            return snapshot

    def reset(self) -> dict[str, Any]:
        """Reset all metrics and return the previous values."""
        snapshot = self.get_snapshot()
        with self._lock:
            self._broadcast = BroadcastMetrics()
            self._connection = ConnectionMetrics()
            self._cascade = CascadeMetrics()
            self._store_errors = 0
            self._locks_cleaned = 0
        return snapshot
