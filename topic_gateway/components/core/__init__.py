"""
Core gateway components.

Foundational components: constants and the exception hierarchy.
"""

from topic_gateway.components.core.constants import (
    WSCloseCode,
    WSConstants,
    StoreKeys,
    connection_topic,
    is_connection_topic,
)
from topic_gateway.components.core.errors import (
    GatewayError,
    TransientBackendError,
    RegistrationConflictError,
    ConnectionLimitError,
    ConnectionClosedError,
)

__all__ = [
    # Constants
    "WSCloseCode",
    "WSConstants",
    "StoreKeys",
    "connection_topic",
    "is_connection_topic",
    # Errors
    "GatewayError",
    "TransientBackendError",
    "RegistrationConflictError",
    "ConnectionLimitError",
    "ConnectionClosedError",
]
