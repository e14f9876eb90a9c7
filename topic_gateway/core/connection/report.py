"""
Delivery report types returned by BroadcastEngine.publish.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DeliveryOutcome(str, Enum):
    """Result of handing a message to one connection."""

    DELIVERED = "delivered"
    FAILED = "failed"  # transport raised while sending
    TIMEOUT = "timeout"  # send did not complete within send_timeout
    CLOSED = "closed"  # connection closed before or during the send
    EVICTION_FAILED = "eviction_failed"  # stale member could not be removed


@dataclass(frozen=True, slots=True)
class DeliveryFailure:
    """One delivery problem that did not lead to eviction."""

    client_id: str
    connection_id: str | None
    outcome: DeliveryOutcome
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "clientId": self.client_id,
            "connectionId": self.connection_id,
            "outcome": self.outcome.value,
            "error": self.error,
        }


@dataclass(slots=True)
class DeliveryReport:
    """
    Outcome of one publish.

    Attributes:
        topic: Topic published to.
        recipients: Members in the snapshot taken at call start.
        delivered: Connections that accepted the message.
        evicted: Client ids pruned from the topic during this publish.
        transient_failures: Failures that left the membership in place.
        duration_ms: Wall time of the publish.
    """

    topic: str
    recipients: int = 0
    delivered: int = 0
    evicted: list[str] = field(default_factory=list)
    transient_failures: list[DeliveryFailure] = field(default_factory=list)
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "recipients": self.recipients,
            "delivered": self.delivered,
            "evicted": list(self.evicted),
            "transientFailures": [f.to_dict() for f in self.transient_failures],
            "durationMs": round(self.duration_ms, 2),
        }
