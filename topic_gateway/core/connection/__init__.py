"""
Connection Management Module.

Modular components composed by ConnectionManager:
- lifecycle.py: Open/close coordination and membership cascade
- broadcaster.py: Topic fan-out with self-healing eviction
- report.py: Delivery report types
"""

from topic_gateway.core.connection.broadcaster import BroadcastEngine, encode_message
from topic_gateway.core.connection.lifecycle import CloseResult, ConnectionLifecycle, OpenResult
from topic_gateway.core.connection.report import DeliveryFailure, DeliveryOutcome, DeliveryReport

__all__ = [
    "BroadcastEngine",
    "encode_message",
    "ConnectionLifecycle",
    "OpenResult",
    "CloseResult",
    "DeliveryFailure",
    "DeliveryOutcome",
    "DeliveryReport",
]
