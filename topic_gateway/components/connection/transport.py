"""
Connection abstraction.

A BaseConnection is one live transport channel with a gateway-unique
connection_id. It becomes invalid the instant the transport reports close
(`mark_closed()`), which also aborts any send still in flight through the
broadcaster.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from starlette.websockets import WebSocketState

from shared.config.logging import get_logger
from topic_gateway.components.core.constants import WSCloseCode
from topic_gateway.components.core.errors import ConnectionClosedError

if TYPE_CHECKING:
    from fastapi import WebSocket

logger = get_logger(__name__)


def is_ws_connected(ws: "WebSocket") -> bool:
    """
    Check if WebSocket is in connected state before sending.

    Starlette WebSockets have limited state visibility:
    - CONNECTING: Initial state (not observable here)
    - CONNECTED: Active connection
    - DISCONNECTED: Closed connection

    Transitional states are not exposed, so connections may appear
    connected briefly after disconnect initiated.
    """
    return (
        ws.client_state == WebSocketState.CONNECTED
        and ws.application_state == WebSocketState.CONNECTED
    )


class BaseConnection(ABC):
    """
    Transport-agnostic connection handle.

    Subclasses implement `_send` and `_close` for their transport. Instances
    hash by identity, so they can be kept in sets by the registry.
    """

    def __init__(self, connection_id: str | None = None) -> None:
        self._connection_id = connection_id or uuid.uuid4().hex
        self._closed = asyncio.Event()
        self._close_sent = False

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def is_open(self) -> bool:
        """False once the connection was marked closed."""
        return not self._closed.is_set()

    def mark_closed(self) -> None:
        """Invalidate the connection. Idempotent."""
        self._closed.set()

    async def wait_closed(self) -> None:
        """Block until the connection is marked closed."""
        await self._closed.wait()

    async def send(self, data: str | bytes) -> None:
        """
        Send one frame.

        Raises:
            ConnectionClosedError: If the connection is already closed.
            Exception: Whatever the transport raises on a failed send.
        """
        if not self.is_open:
            raise ConnectionClosedError(self._connection_id)
        await self._send(data)

    async def close(
        self,
        code: int = WSCloseCode.NORMAL,
        reason: str = "",
    ) -> None:
        """
        Close the transport once and mark the connection closed.

        Safe to call on a connection that was already marked closed by the
        registry (e.g. a replaced session): the close frame is still sent.
        Transport errors while closing are logged, not raised.
        """
        self.mark_closed()
        if self._close_sent:
            return
        self._close_sent = True
        try:
            await self._close(code, reason)
        except Exception as e:
            logger.debug(
                "Error closing connection",
                connection_id=self._connection_id,
                code=int(code),
                error=str(e),
            )

    @abstractmethod
    async def _send(self, data: str | bytes) -> None:
        ...

    @abstractmethod
    async def _close(self, code: int, reason: str) -> None:
        ...

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"<{type(self).__name__} {self._connection_id} {state}>"


class WebSocketConnection(BaseConnection):
    """Connection backed by a Starlette/FastAPI WebSocket."""

    def __init__(self, websocket: "WebSocket", connection_id: str | None = None) -> None:
        super().__init__(connection_id)
        self._websocket = websocket

    @property
    def websocket(self) -> "WebSocket":
        return self._websocket

    @property
    def is_open(self) -> bool:
        return super().is_open and is_ws_connected(self._websocket)

    async def _send(self, data: str | bytes) -> None:
        if isinstance(data, bytes):
            await self._websocket.send_bytes(data)
        else:
            await self._websocket.send_text(data)

    async def _close(self, code: int, reason: str) -> None:
        if self._websocket.application_state == WebSocketState.DISCONNECTED:
            return
        await self._websocket.close(code=code, reason=reason)
