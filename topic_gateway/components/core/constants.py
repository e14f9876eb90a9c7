"""
Topic Gateway Constants.

Centralized constants with the rationale for each value. Values marked as
configurable are defaults; at runtime the components read the corresponding
field from `shared.config.settings`.
"""

from enum import IntEnum
from typing import Final

__all__ = [
    "WSCloseCode",
    "WSConstants",
    "StoreKeys",
    "MSG_CONNECTED",
    "MSG_PONG",
    "CONNECTION_TOPIC_PREFIX",
    "connection_topic",
    "is_connection_topic",
]


class WSCloseCode(IntEnum):
    """
    WebSocket close codes used by the gateway.

    Standard codes (1000-1999) from RFC 6455.
    Custom codes (4000-4999) for application-specific errors.
    """

    # Standard codes (RFC 6455)
    NORMAL = 1000  # Normal closure
    GOING_AWAY = 1001  # Server shutting down or client navigating away
    UNSUPPORTED_DATA = 1003  # Binary frame on a text-only protocol
    MESSAGE_TOO_BIG = 1009
    SERVER_ERROR = 1011
    SERVER_OVERLOADED = 1013  # Store unavailable, try again later

    # Custom application codes (4000-4999)
    MISSING_CLIENT_ID = 4000  # No ?client_id= on the handshake
    CONNECTION_CONFLICT = 4008  # Connection id already owned by another client
    SESSION_REPLACED = 4009  # A newer connection of the same client took over
    CONNECTION_LIMIT = 4029  # Multi-session limit per client reached


class WSConstants:
    """
    Gateway operational constants.

    Configurable via settings.py:
    - SEND_TIMEOUT -> settings.ws_send_timeout
    - BROADCAST_BATCH_SIZE -> settings.ws_broadcast_batch_size
    - MAINTENANCE_INTERVAL -> settings.ws_maintenance_interval

    Not configurable (internal implementation details):
    - Lock management thresholds
    - Circuit breaker parameters
    - Transaction retry bounds
    """

    # ==========================================================================
    # Timeout Constants
    # ==========================================================================

    # SEND_TIMEOUT: 5 seconds
    # Rationale: A healthy socket drains a frame in milliseconds. A send that
    # takes 5s points at a stalled peer; the broadcast moves on without it.
    SEND_TIMEOUT: Final[float] = 5.0

    # CLOSE_TIMEOUT: 2 seconds
    # Rationale: Closing a replaced or dead socket must not block the
    # lifecycle path that triggered it.
    CLOSE_TIMEOUT: Final[float] = 2.0

    # MAINTENANCE_INTERVAL: 30 seconds
    MAINTENANCE_INTERVAL: Final[float] = 30.0

    # ==========================================================================
    # Broadcast Constants
    # ==========================================================================

    # BROADCAST_BATCH_SIZE: 50
    # Rationale: Bounds the number of concurrent sends per publish so a topic
    # with thousands of members does not create thousands of tasks at once.
    BROADCAST_BATCH_SIZE: Final[int] = 50

    # ==========================================================================
    # Lock Management Constants
    # ==========================================================================

    # MAX_CACHED_LOCKS: 5000
    # Rationale: One lock per active client plus one per recently touched
    # (topic, client) edge. Each lock is ~200 bytes, so 5000 locks is ~1MB.
    MAX_CACHED_LOCKS: Final[int] = 5000

    # LOCK_CLEANUP_THRESHOLD: 80% of MAX_CACHED_LOCKS
    LOCK_CLEANUP_THRESHOLD: Final[int] = 4000

    # LOCK_CLEANUP_HYSTERESIS_RATIO: 0.8
    # Rationale: After cleanup the lock count drops to 80% of threshold,
    # leaving a buffer so cleanup does not run on every new lock.
    LOCK_CLEANUP_HYSTERESIS_RATIO: Final[float] = 0.8

    # ==========================================================================
    # Circuit Breaker Constants
    # ==========================================================================

    # CIRCUIT_FAILURE_THRESHOLD: 5 consecutive failures before opening
    CIRCUIT_FAILURE_THRESHOLD: Final[int] = 5

    # CIRCUIT_RECOVERY_TIMEOUT: 30 seconds in OPEN before a test call
    CIRCUIT_RECOVERY_TIMEOUT: Final[float] = 30.0

    # CIRCUIT_HALF_OPEN_MAX_CALLS: 3 test calls in HALF_OPEN
    CIRCUIT_HALF_OPEN_MAX_CALLS: Final[int] = 3

    # ==========================================================================
    # Store Transaction Constants
    # ==========================================================================

    # MAX_WATCH_RETRIES: 10
    # Rationale: leave_all races only with joins/leaves of the same client.
    # Ten optimistic retries absorb any realistic contention; beyond that
    # the operation is reported as transient and retried by maintenance.
    MAX_WATCH_RETRIES: Final[int] = 10

    # ==========================================================================
    # Dead Connections Limit
    # ==========================================================================

    # MAX_DEAD_CONNECTIONS: 500
    # Rationale: Bounds the set of connections awaiting reaping. When the
    # limit is reached the broadcaster stops recording new ones until the
    # next maintenance cycle.
    MAX_DEAD_CONNECTIONS: Final[int] = 500


class StoreKeys:
    """Key naming for the Redis membership backend."""

    TOPIC_PREFIX: Final[str] = "topic:"
    MEMBER_PREFIX: Final[str] = "member:"


# Outbound control messages
MSG_CONNECTED: Final[str] = "connected"
MSG_PONG: Final[str] = "pong"


# ==========================================================================
# Reserved connection topic
# ==========================================================================

# Each live connection owns a topic "connection:<connectionId>" whose only
# member is its client, so any process sharing the store can resolve it.
CONNECTION_TOPIC_PREFIX: Final[str] = "connection:"


def connection_topic(connection_id: str) -> str:
    """Return the reserved topic name for a connection id."""
    return f"{CONNECTION_TOPIC_PREFIX}{connection_id}"


def is_connection_topic(topic: str) -> bool:
    return topic.startswith(CONNECTION_TOPIC_PREFIX)
