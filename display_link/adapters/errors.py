"""Transport error types."""

from __future__ import annotations


class TransportError(RuntimeError):
    """Raised when a transport cannot be opened or written to."""


class EventStreamError(TransportError):
    """Raised when an event-stream endpoint answers with an unusable response."""
