"""Adapter modules for network transports."""

from .errors import EventStreamError, TransportError
from .event_stream import (
    EventStreamLink,
    EventStreamParser,
    EventStreamTransport,
    ServerSentEvent,
)
from .websocket import WebSocketLink, WebSocketTransport

__all__ = [
    "EventStreamError",
    "EventStreamLink",
    "EventStreamParser",
    "EventStreamTransport",
    "ServerSentEvent",
    "TransportError",
    "WebSocketLink",
    "WebSocketTransport",
]
