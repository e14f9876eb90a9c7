"""
Topic WebSocket endpoint.

Runs one client socket end to end:
1. Register the connection with the ConnectionManager (on_open)
2. Announce the connection id to the client
3. Message loop: subscribe / unsubscribe / publish / ping
4. Unregister on disconnect (on_close), always

Frames are JSON objects validated by ClientMessage. Replies echo the
caller's requestId so clients can match responses to requests.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any, Literal

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from shared.config.logging import get_logger
from shared.config.settings import settings
from shared.infrastructure.correlation import bind_correlation_id, reset_correlation_id
from topic_gateway.components.connection.transport import WebSocketConnection
from topic_gateway.components.core.constants import (
    MSG_CONNECTED,
    MSG_PONG,
    WSCloseCode,
    is_connection_topic,
)
from topic_gateway.components.core.errors import (
    ConnectionClosedError,
    ConnectionLimitError,
    RegistrationConflictError,
    TransientBackendError,
)

if TYPE_CHECKING:
    from topic_gateway.connection_manager import ConnectionManager

logger = get_logger(__name__)


# =============================================================================
# Message schemas
# =============================================================================

MessageType = Literal["subscribe", "unsubscribe", "publish", "ping"]


class ClientMessage(BaseModel):
    """Inbound frame sent by a client."""

    type: MessageType
    topic: str | None = Field(default=None, min_length=1, max_length=256)
    data: Any = None
    requestId: str | None = None


class TopicEndpoint:
    """
    Handler for one `/ws` socket.

    Usage:
        endpoint = TopicEndpoint(websocket, manager, client_id)
        await endpoint.run()
    """

    def __init__(
        self,
        websocket: WebSocket,
        manager: "ConnectionManager",
        client_id: str,
        receive_timeout: float | None = None,
        max_message_size: int | None = None,
        publish_requires_membership: bool | None = None,
    ):
        self.websocket = websocket
        self.manager = manager
        self.client_id = client_id
        self.receive_timeout = (
            receive_timeout if receive_timeout is not None else settings.ws_receive_timeout
        )
        self.max_message_size = (
            max_message_size if max_message_size is not None else settings.ws_max_message_size
        )
        self.publish_requires_membership = (
            publish_requires_membership
            if publish_requires_membership is not None
            else settings.ws_publish_requires_membership
        )
        self.connection = WebSocketConnection(websocket)

    @property
    def connection_id(self) -> str:
        return self.connection.connection_id

    async def run(self) -> None:
        """
        Main entry point. The socket must already be accepted.

        Registration failures close the socket with a specific code:
        4008 (conflict), 4029 (limit), 1013 (store unavailable).
        """
        token = bind_correlation_id(self.connection_id)
        try:
            if not await self._open():
                return
            try:
                await self._message_loop()
            except (WebSocketDisconnect, ConnectionClosedError):
                logger.info("Client disconnected", client_id=self.client_id)
            finally:
                self.connection.mark_closed()
                await self._close()
        finally:
            reset_correlation_id(token)

    async def _open(self) -> bool:
        try:
            await self.manager.on_open(self.client_id, self.connection)
        except RegistrationConflictError as e:
            await self._reject(WSCloseCode.CONNECTION_CONFLICT, "Connection conflict", e)
            return False
        except ConnectionLimitError as e:
            await self._reject(WSCloseCode.CONNECTION_LIMIT, "Connection limit reached", e)
            return False
        except TransientBackendError as e:
            await self._reject(WSCloseCode.SERVER_OVERLOADED, "Try again later", e)
            return False
        except ConnectionError as e:
            await self._reject(WSCloseCode.GOING_AWAY, "Server shutting down", e)
            return False

        try:
            await self.connection.send(
                json.dumps(
                    {
                        "type": MSG_CONNECTED,
                        "clientId": self.client_id,
                        "connectionId": self.connection_id,
                    }
                )
            )
        except (ConnectionClosedError, ConnectionError, RuntimeError, OSError) as e:
            # Socket died during the handshake; on_close still has to run
            logger.debug("Failed to announce connection", error=str(e))
            self.connection.mark_closed()
            await self._close()
            return False
        return True

    async def _reject(self, code: WSCloseCode, reason: str, error: Exception) -> None:
        logger.warning(
            "Connection rejected",
            client_id=self.client_id,
            code=int(code),
            error=str(error),
        )
        await self.connection.close(code=code, reason=reason)

    async def _close(self) -> None:
        try:
            await self.manager.on_close(self.connection_id)
        except TransientBackendError as e:
            # The cascade is queued for retry by maintenance
            logger.warning(
                "Close completed with deferred cleanup",
                client_id=self.client_id,
                error=str(e),
            )

    # =========================================================================
    # Message loop
    # =========================================================================

    async def _message_loop(self) -> None:
        while self.connection.is_open:
            data = await self._receive_with_timeout()
            if isinstance(data, bytes):
                logger.warning(
                    "Binary frame rejected",
                    client_id=self.client_id,
                    size=len(data),
                )
                await self._reply_error(None, "invalid_message", "binary frames are not supported")
                await self.connection.close(WSCloseCode.UNSUPPORTED_DATA, "Text frames only")
                return

            if data is None:
                logger.info(
                    "Connection timed out (no messages)",
                    client_id=self.client_id,
                    timeout=self.receive_timeout,
                )
                await self.connection.close(WSCloseCode.NORMAL, "Connection timeout")
                return

            if len(data) > self.max_message_size:
                logger.warning(
                    "Message size exceeded limit",
                    client_id=self.client_id,
                    size=len(data),
                    max_size=self.max_message_size,
                )
                await self.connection.close(WSCloseCode.MESSAGE_TOO_BIG, "Message too large")
                return

            await self.handle_message(data)

    async def _receive_with_timeout(self) -> str | bytes | None:
        """
        Receive one frame, or None on timeout.

        Text frames come back as str, binary frames as bytes.

        Raises:
            WebSocketDisconnect: The client closed the socket.
        """
        try:
            message = await asyncio.wait_for(
                self.websocket.receive(),
                timeout=self.receive_timeout,
            )
        except asyncio.TimeoutError:
            return None

        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", WSCloseCode.NORMAL))
        if message.get("text") is not None:
            return message["text"]
        return message.get("bytes") or b""

    async def handle_message(self, data: str) -> None:
        """Decode one frame and dispatch it. Invalid frames get an error reply."""
        try:
            message = ClientMessage.model_validate_json(data)
        except ValidationError as e:
            await self._reply_error(None, "invalid_message", e.errors()[0]["msg"])
            return

        if message.type == "ping":
            await self._reply(message, MSG_PONG)
            return

        if message.topic is None:
            await self._reply_error(message.requestId, "missing_topic", "topic is required")
            return
        if is_connection_topic(message.topic):
            await self._reply_error(message.requestId, "reserved_topic", "topic is reserved")
            return

        try:
            if message.type == "subscribe":
                await self.manager.join(message.topic, self.client_id)
                await self._reply(message, "subscribed", topic=message.topic)
            elif message.type == "unsubscribe":
                await self.manager.leave(message.topic, self.client_id)
                await self._reply(message, "unsubscribed", topic=message.topic)
            else:
                await self._publish(message)
        except TransientBackendError as e:
            self.manager.metrics.record_store_error()
            logger.warning(
                "Store unavailable while handling message",
                client_id=self.client_id,
                message_type=message.type,
                operation=e.operation,
            )
            await self._reply_error(message.requestId, "unavailable", "try again later")

    async def _publish(self, message: ClientMessage) -> None:
        topic = message.topic
        if self.publish_requires_membership and not await self.manager.is_member(
            topic, self.client_id
        ):
            await self._reply_error(message.requestId, "not_subscribed", "subscribe first")
            return

        report = await self.manager.publish(
            topic,
            {"type": "message", "topic": topic, "from": self.client_id, "data": message.data},
        )
        await self._reply(
            message,
            "published",
            topic=topic,
            delivered=report.delivered,
            recipients=report.recipients,
        )

    # =========================================================================
    # Replies
    # =========================================================================

    async def _reply(self, message: ClientMessage, reply_type: str, **fields: Any) -> None:
        payload: dict[str, Any] = {"type": reply_type, **fields}
        if message.requestId is not None:
            payload["requestId"] = message.requestId
        await self._send(payload)

    async def _reply_error(self, request_id: str | None, code: str, detail: str) -> None:
        payload: dict[str, Any] = {"type": "error", "code": code, "detail": detail}
        if request_id is not None:
            payload["requestId"] = request_id
        await self._send(payload)

    async def _send(self, payload: dict[str, Any]) -> None:
        await self.connection.send(json.dumps(payload, separators=(",", ":")))
