"""
Tests for the metrics collector and Prometheus exposition.
"""

import pytest

from topic_gateway.components.metrics.collector import MetricsCollector
from topic_gateway.components.metrics.prometheus import (
    MetricType,
    PrometheusFormatter,
    generate_prometheus_metrics,
)
from topic_gateway.core.connection import DeliveryReport

from tests.fakes import FakeConnection


class TestMetricsCollector:
    def test_connection_counters(self):
        metrics = MetricsCollector()
        metrics.record_connection_opened()
        metrics.record_connection_opened()
        metrics.record_connection_closed()
        metrics.record_connections_replaced(2)
        metrics.record_connection_rejected("limit")

        snapshot = metrics.get_snapshot()

        assert snapshot["connections_opened"] == 2
        assert snapshot["connections_closed"] == 1
        assert snapshot["connections_replaced"] == 2
        assert snapshot["connections_rejected_limit"] == 1
        assert snapshot["connections_rejected_conflict"] == 0

    def test_broadcast_counters(self):
        metrics = MetricsCollector()
        report = DeliveryReport(topic="room:42", recipients=3, delivered=2, evicted=["ghost"])

        metrics.record_broadcast(report)

        snapshot = metrics.get_snapshot()
        assert snapshot["broadcasts_total"] == 1
        assert snapshot["broadcasts_recipients"] == 3
        assert snapshot["broadcasts_delivered"] == 2
        assert snapshot["broadcasts_evicted"] == 1

    def test_reset_returns_previous_values(self):
        metrics = MetricsCollector()
        metrics.record_cascade_completed()

        previous = metrics.reset()

        assert previous["cascades_completed"] == 1
        assert metrics.get_snapshot()["cascades_completed"] == 0


class TestPrometheus:
    def test_format_metric(self):
        text = PrometheusFormatter().format_metric(
            "topicgw_test", 3, "A test metric", MetricType.GAUGE, labels={"backend": "redis"}
        )

        assert text.splitlines() == [
            "# HELP topicgw_test A test metric",
            "# TYPE topicgw_test gauge",
            'topicgw_test{backend="redis"} 3',
        ]

    @pytest.mark.asyncio
    async def test_manager_exposition(self, manager):
        await manager.on_open("clientA", FakeConnection("c1"))
        await manager.join("room:42", "clientA")
        await manager.publish("room:42", "x")

        output = generate_prometheus_metrics(manager)

        assert "topicgw_connections_active 1" in output
        assert "topicgw_broadcasts_total 1" in output
        assert "topicgw_broadcast_deliveries_total 1" in output
        assert 'topicgw_connections_rejected_total{reason="limit"} 0' in output
        assert "# TYPE topicgw_cascades_completed_total counter" in output
