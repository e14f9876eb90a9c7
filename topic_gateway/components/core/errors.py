"""
Gateway exception hierarchy.

Not-found is never an exception: lookups return empty sets or None.
Delivery failures are values inside a DeliveryReport, never raised.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all gateway errors."""


class TransientBackendError(GatewayError):
    """
    A membership store round trip failed or timed out.

    Raised after the store's bounded retries are exhausted, or immediately
    while its circuit breaker is open. No state is assumed to have been
    mutated; callers may retry the operation.

    Attributes:
        operation: Store operation that failed (e.g. "join", "leave_all").
    """

    def __init__(self, operation: str, message: str | None = None):
        self.operation = operation
        super().__init__(message or f"Membership store operation '{operation}' failed")


class RegistrationConflictError(GatewayError):
    """A connection id is already registered to a different client."""

    def __init__(self, connection_id: str, owner: str, requested: str):
        self.connection_id = connection_id
        self.owner = owner
        self.requested = requested
        super().__init__(
            f"Connection {connection_id} is owned by client {owner!r}, "
            f"cannot register it to {requested!r}"
        )


class ConnectionLimitError(GatewayError, ConnectionError):
    """The client already holds the maximum number of connections."""

    def __init__(self, client_id: str, limit: int):
        self.client_id = client_id
        self.limit = limit
        super().__init__(f"Client {client_id!r} reached the limit of {limit} connections")


class ConnectionClosedError(GatewayError):
    """A send was attempted on a connection that is already closed."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Connection {connection_id} is closed")
