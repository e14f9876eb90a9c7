"""
Metrics components: counters and Prometheus export.
"""

from topic_gateway.components.metrics.collector import MetricsCollector
from topic_gateway.components.metrics.prometheus import (
    PrometheusFormatter,
    generate_prometheus_metrics,
    get_prometheus_formatter,
)

__all__ = [
    "MetricsCollector",
    "PrometheusFormatter",
    "generate_prometheus_metrics",
    "get_prometheus_formatter",
]
