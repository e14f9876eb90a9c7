"""
WebSocket endpoint handlers.
"""

from topic_gateway.components.endpoints.handler import ClientMessage, TopicEndpoint

__all__ = [
    "ClientMessage",
    "TopicEndpoint",
]
