"""
Topic Gateway Core Module.

- connection/: lifecycle coordination, broadcasting, delivery reports
"""

from topic_gateway.core.connection import (
    BroadcastEngine,
    CloseResult,
    ConnectionLifecycle,
    DeliveryFailure,
    DeliveryOutcome,
    DeliveryReport,
    OpenResult,
)

__all__ = [
    "BroadcastEngine",
    "CloseResult",
    "ConnectionLifecycle",
    "DeliveryFailure",
    "DeliveryOutcome",
    "DeliveryReport",
    "OpenResult",
]
