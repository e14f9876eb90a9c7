"""
Broadcast Engine.

Fans a message out to every live connection subscribed to a topic and prunes
stale members as a side effect of delivery.

Algorithm per publish:
1. Snapshot members(topic); later joins/leaves do not affect this fan-out.
2. Resolve each member's live connections through the registry.
3. Send to every connection independently, in bounded batches, each send
   bounded by send_timeout and abandoned the moment its connection closes.
4. Members with no live connection, or whose every connection failed hard,
   are evicted with store.leave(topic, client_id).

Delivery is at-most-once per connection and unordered across members. A
member counts as delivered when at least one of its connections accepted
the message.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from shared.config.logging import get_logger
from topic_gateway.components.core.constants import WSConstants
from topic_gateway.components.core.errors import ConnectionClosedError, TransientBackendError
from topic_gateway.core.connection.report import DeliveryFailure, DeliveryOutcome, DeliveryReport

if TYPE_CHECKING:
    from topic_gateway.components.connection.registry import ConnectionRegistry
    from topic_gateway.components.connection.transport import BaseConnection
    from topic_gateway.components.membership.base import TopicMembershipStore
    from topic_gateway.components.metrics.collector import MetricsCollector

logger = get_logger(__name__)

Message = str | bytes | dict[str, Any] | list[Any]


def encode_message(message: Message) -> str | bytes:
    """Encode a message once per publish. dicts and lists become JSON text."""
    if isinstance(message, (str, bytes)):
        return message
    if isinstance(message, (dict, list)):
        return json.dumps(message, default=str, separators=(",", ":"))
    raise TypeError(f"Unsupported message type: {type(message).__name__}")


@dataclass(slots=True)
class _MemberResult:
    client_id: str
    delivered: int = 0
    evict: bool = False
    failures: list[DeliveryFailure] = field(default_factory=list)


class BroadcastEngine:
    """
    Publishes messages to topic members.

    Reads the store and the registry; writes only evictions back to the store.
    Hard send failures on connections that still look open are reported via
    `mark_dead_callback` so the lifecycle coordinator can reap them.
    """

    def __init__(
        self,
        store: "TopicMembershipStore",
        registry: "ConnectionRegistry",
        metrics: "MetricsCollector | None" = None,
        mark_dead_callback: Callable[["BaseConnection"], None] | None = None,
        send_timeout: float = WSConstants.SEND_TIMEOUT,
        evict_on_timeout: bool = False,
        batch_size: int = WSConstants.BROADCAST_BATCH_SIZE,
    ) -> None:
        """
        Initialize broadcaster with dependencies.

        Args:
            store: Membership store (members snapshot, evictions).
            registry: Connection registry (live connections per member).
            metrics: Collects broadcast metrics.
            mark_dead_callback: Receives connections whose send failed hard.
            send_timeout: Seconds before a single send counts as TIMEOUT.
            evict_on_timeout: Treat TIMEOUT as a hard failure.
            batch_size: Members delivered to in parallel.
        """
        self._store = store
        self._registry = registry
        self._metrics = metrics
        self._mark_dead = mark_dead_callback
        self._send_timeout = send_timeout
        self._evict_on_timeout = evict_on_timeout
        self._batch_size = max(1, batch_size)

    async def publish(self, topic: str, message: Message) -> DeliveryReport:
        """
        Deliver a message to every live member of a topic.

        Per-member failures are absorbed into the returned report.

        Raises:
            TransientBackendError: The members snapshot could not be read.
        """
        start = time.perf_counter()
        payload = encode_message(message)
        members = sorted(await self._store.members(topic))
        report = DeliveryReport(topic=topic, recipients=len(members))

        for i in range(0, len(members), self._batch_size):
            batch = members[i : i + self._batch_size]
            results = await asyncio.gather(
                *[self._deliver_to_member(topic, client_id, payload) for client_id in batch]
            )
            for result in results:
                report.delivered += result.delivered
                if result.evict:
                    report.evicted.append(result.client_id)
                report.transient_failures.extend(result.failures)

        report.duration_ms = (time.perf_counter() - start) * 1000
        if self._metrics is not None:
            self._metrics.record_broadcast(report)

        if report.evicted or report.transient_failures:
            logger.info(
                "Broadcast completed with failures",
                topic=topic,
                recipients=report.recipients,
                delivered=report.delivered,
                evicted=len(report.evicted),
                transient_failures=len(report.transient_failures),
            )
        else:
            logger.debug(
                "Broadcast completed",
                topic=topic,
                recipients=report.recipients,
                delivered=report.delivered,
            )
        return report

    async def _deliver_to_member(
        self,
        topic: str,
        client_id: str,
        payload: str | bytes,
    ) -> _MemberResult:
        result = _MemberResult(client_id=client_id)
        connections = list(self._registry.lookup(client_id))

        if connections:
            outcomes = await asyncio.gather(
                *[self._send(connection, payload) for connection in connections]
            )
            hard_failures = 0
            transient: list[DeliveryFailure] = []
            for connection, (outcome, error) in zip(connections, outcomes):
                if outcome == DeliveryOutcome.DELIVERED:
                    result.delivered += 1
                elif outcome == DeliveryOutcome.TIMEOUT and not self._evict_on_timeout:
                    transient.append(
                        DeliveryFailure(client_id, connection.connection_id, outcome, error)
                    )
                else:
                    hard_failures += 1
                    if connection.is_open:
                        self._report_dead(connection)

            result.failures.extend(transient)
            if result.delivered or transient:
                return result
            reason = "all connections failed"
        else:
            reason = "no live connection"

        try:
            await self._store.leave(topic, client_id)
        except TransientBackendError as e:
            if self._metrics is not None:
                self._metrics.record_store_error()
            logger.warning(
                "Failed to evict stale member",
                topic=topic,
                client_id=client_id,
                error=str(e),
            )
            result.failures.append(
                DeliveryFailure(client_id, None, DeliveryOutcome.EVICTION_FAILED, str(e))
            )
            return result

        result.evict = True
        logger.debug("Evicted stale member", topic=topic, client_id=client_id, reason=reason)
        return result

    async def _send(
        self,
        connection: "BaseConnection",
        payload: str | bytes,
    ) -> tuple[DeliveryOutcome, str | None]:
        """
        Send to one connection, racing the send against close and timeout.

        Returns:
            (outcome, error message or None)
        """
        if not connection.is_open:
            return DeliveryOutcome.CLOSED, None

        send_task = asyncio.ensure_future(connection.send(payload))
        closed_task = asyncio.ensure_future(connection.wait_closed())
        try:
            await asyncio.wait(
                {send_task, closed_task},
                timeout=self._send_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            closed_task.cancel()
            if not send_task.done():
                send_task.cancel()

        if send_task.done() and not send_task.cancelled():
            error = send_task.exception()
            if error is None:
                return DeliveryOutcome.DELIVERED, None
            if isinstance(error, ConnectionClosedError):
                return DeliveryOutcome.CLOSED, None
            return DeliveryOutcome.FAILED, f"{type(error).__name__}: {error}"

        if not connection.is_open:
            return DeliveryOutcome.CLOSED, None
        return DeliveryOutcome.TIMEOUT, f"send exceeded {self._send_timeout}s"

    def _report_dead(self, connection: "BaseConnection") -> None:
        if self._mark_dead is not None:
            self._mark_dead(connection)
