"""
Connection management components.

Handles connection bookkeeping: transport handles, registry, locks.
"""

from topic_gateway.components.connection.locks import LockManager
from topic_gateway.components.connection.registry import (
    ConnectionRegistry,
    RegistrationResult,
    SessionPolicy,
    UnregisterResult,
)
from topic_gateway.components.connection.transport import (
    BaseConnection,
    WebSocketConnection,
    is_ws_connected,
)

__all__ = [
    "LockManager",
    "ConnectionRegistry",
    "RegistrationResult",
    "SessionPolicy",
    "UnregisterResult",
    "BaseConnection",
    "WebSocketConnection",
    "is_ws_connected",
]
