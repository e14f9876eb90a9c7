"""
Prometheus Metrics Export for the Topic Gateway.

Formats internal metrics in Prometheus text exposition format.
No external dependencies required.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from topic_gateway.connection_manager import ConnectionManager


# =============================================================================
# Metric Types
# =============================================================================


class MetricType(str, Enum):
    """Prometheus metric types."""

    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass(frozen=True)
class MetricDefinition:
    """
    Definition of a metric for Prometheus output.

    `source` is a dotted path into the stats dict returned by
    ConnectionManager.get_stats(), e.g. "metrics.broadcasts_total".
    """

    name: str
    help_text: str
    metric_type: MetricType
    source: str


# =============================================================================
# Metric Definitions
# =============================================================================

METRIC_DEFINITIONS: list[MetricDefinition] = [
    # Connection gauges
    MetricDefinition(
        "topicgw_connections_active", "Current number of registered connections",
        MetricType.GAUGE, "total_connections",
    ),
    MetricDefinition(
        "topicgw_clients_connected", "Number of unique clients connected",
        MetricType.GAUGE, "clients_connected",
    ),
    MetricDefinition(
        "topicgw_dead_connections_pending", "Connections marked dead awaiting reaping",
        MetricType.GAUGE, "dead_connections_pending",
    ),
    MetricDefinition(
        "topicgw_cascades_pending", "Clients whose membership cleanup awaits retry",
        MetricType.GAUGE, "pending_cascades",
    ),

    # Connection counters
    MetricDefinition(
        "topicgw_connections_opened_total", "Connections opened",
        MetricType.COUNTER, "metrics.connections_opened",
    ),
    MetricDefinition(
        "topicgw_connections_closed_total", "Connections closed",
        MetricType.COUNTER, "metrics.connections_closed",
    ),
    MetricDefinition(
        "topicgw_connections_replaced_total", "Connections replaced by a newer session",
        MetricType.COUNTER, "metrics.connections_replaced",
    ),
    MetricDefinition(
        "topicgw_connections_reaped_total", "Dead connections reaped by maintenance",
        MetricType.COUNTER, "metrics.connections_reaped",
    ),

    # Broadcast counters
    MetricDefinition(
        "topicgw_broadcasts_total", "Publish operations",
        MetricType.COUNTER, "metrics.broadcasts_total",
    ),
    MetricDefinition(
        "topicgw_broadcast_recipients_total", "Members targeted across all publishes",
        MetricType.COUNTER, "metrics.broadcasts_recipients",
    ),
    MetricDefinition(
        "topicgw_broadcast_deliveries_total", "Connections that accepted a message",
        MetricType.COUNTER, "metrics.broadcasts_delivered",
    ),
    MetricDefinition(
        "topicgw_broadcast_evictions_total", "Stale members evicted during publish",
        MetricType.COUNTER, "metrics.broadcasts_evicted",
    ),
    MetricDefinition(
        "topicgw_broadcast_transient_failures_total", "Delivery failures that did not evict",
        MetricType.COUNTER, "metrics.broadcasts_transient_failures",
    ),

    # Cascade counters
    MetricDefinition(
        "topicgw_cascades_completed_total", "Last-connection membership cleanups completed",
        MetricType.COUNTER, "metrics.cascades_completed",
    ),
    MetricDefinition(
        "topicgw_cascades_deferred_total", "Cleanups deferred after a backend error",
        MetricType.COUNTER, "metrics.cascades_deferred",
    ),
    MetricDefinition(
        "topicgw_cascades_retried_total", "Deferred cleanups completed by maintenance",
        MetricType.COUNTER, "metrics.cascades_retried",
    ),

    # Store and locks
    MetricDefinition(
        "topicgw_store_errors_total", "Membership store operations that failed",
        MetricType.COUNTER, "metrics.store_errors",
    ),
    MetricDefinition(
        "topicgw_locks_cleaned_total", "Locks cleaned up",
        MetricType.COUNTER, "locks.locks_cleaned_total",
    ),
    MetricDefinition(
        "topicgw_client_locks", "Current client locks",
        MetricType.GAUGE, "locks.client_locks_count",
    ),
    MetricDefinition(
        "topicgw_edge_locks", "Current edge locks",
        MetricType.GAUGE, "locks.edge_locks_count",
    ),
]

REJECTION_REASONS: tuple[str, ...] = ("conflict", "limit", "backend")


def _resolve(stats: dict[str, Any], path: str) -> Any:
    value: Any = stats
    for part in path.split("."):
        if not isinstance(value, dict):
            return 0
        value = value.get(part, 0)
    return value


# =============================================================================
# Prometheus Formatter
# =============================================================================


class PrometheusFormatter:
    """
    Formats metrics in Prometheus text exposition format.

    Reference: https://prometheus.io/docs/instrumenting/exposition_formats/

    Usage:
        formatter = PrometheusFormatter()
        output = formatter.format_all_metrics(stats)
    """

    def format_metric(
        self,
        name: str,
        value: float | int,
        help_text: str,
        metric_type: MetricType,
        labels: dict[str, str] | None = None,
    ) -> str:
        """
        Format a single metric in Prometheus format.

        Args:
            name: Metric name.
            value: Metric value.
            help_text: Help text description.
            metric_type: Prometheus metric type.
            labels: Optional label key-value pairs.

        Returns:
            Prometheus-formatted metric string.
        """
        lines = [
            f"# HELP {name} {help_text}",
            f"# TYPE {name} {metric_type.value}",
        ]
        if labels:
            label_str = ",".join(f'{k}="{v}"' for k, v in labels.items())
            lines.append(f"{name}{{{label_str}}} {value}")
        else:
            lines.append(f"{name} {value}")
        return "\n".join(lines)

    def format_all_metrics(self, stats: dict[str, Any]) -> str:
        """
        Format all metrics from ConnectionManager stats.

        Args:
            stats: Stats dictionary from ConnectionManager.get_stats().

        Returns:
            Complete Prometheus exposition format string.
        """
        lines: list[str] = []

        for definition in METRIC_DEFINITIONS:
            lines.append(self.format_metric(
                definition.name,
                _resolve(stats, definition.source),
                definition.help_text,
                definition.metric_type,
            ))

        # Connection rejection counters with labels
        metrics = stats.get("metrics", {})
        lines.append("# HELP topicgw_connections_rejected_total Rejected connections by reason")
        lines.append("# TYPE topicgw_connections_rejected_total counter")
        for reason in REJECTION_REASONS:
            value = metrics.get(f"connections_rejected_{reason}", 0)
            lines.append(f'topicgw_connections_rejected_total{{reason="{reason}"}} {value}')

        # Circuit breaker state as 0 (closed) / 1 (half open) / 2 (open)
        breaker = _resolve(stats, "store.circuit_breaker")
        if isinstance(breaker, dict):
            state_value = {"closed": 0, "half_open": 1, "open": 2}.get(breaker.get("state"), 0)
            lines.append(self.format_metric(
                "topicgw_store_circuit_state",
                state_value,
                "Membership store circuit breaker state (0 closed, 1 half open, 2 open)",
                MetricType.GAUGE,
            ))

        lines.append(self.format_metric(
            "topicgw_scrape_timestamp",
            int(time.time()),
            "Timestamp of metrics scrape",
            MetricType.GAUGE,
        ))

        return "\n".join(lines) + "\n"


# =============================================================================
# Singleton formatter
# =============================================================================

_formatter: PrometheusFormatter | None = None


def get_prometheus_formatter() -> PrometheusFormatter:
    """Get singleton Prometheus formatter."""
    global _formatter
    if _formatter is None:
        _formatter = PrometheusFormatter()
    return _formatter


def generate_prometheus_metrics(manager: "ConnectionManager") -> str:
    """
    Generate Prometheus metrics from a ConnectionManager.

    Returns:
        Prometheus exposition format string.
    """
    return get_prometheus_formatter().format_all_metrics(manager.get_stats())
