"""Protocol definitions for transports, timers and output collaborators."""

from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Any,
    AsyncContextManager,
    AsyncIterator,
    Callable,
    Protocol,
)

if TYPE_CHECKING:
    from ..config import DisplayConfig


class TransportLink(Protocol):
    """An open transport yielding raw text frames until the peer closes."""

    def __aiter__(self) -> AsyncIterator[str]:
        ...

    async def send(self, data: str) -> None:
        """Write one text frame.

        Raises:
            TransportError: If the transport is receive-only or closed.
        """
        ...


class Transport(Protocol):
    """Factory for transport links.

    Entering the returned context manager performs the open handshake and
    raises on failure; leaving it closes the link.
    """

    def open(self, url: str) -> AsyncContextManager[TransportLink]:
        ...

    async def aclose(self) -> None:
        """Release pooled resources (HTTP sessions and the like)."""
        ...


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Timer port used for retry backoff and message expiry."""

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle:
        ...


class SoundPlayer(Protocol):
    """Audio collaborator; receives sound tokens such as ``"alert"``."""

    def play(self, sound: str) -> None:
        ...


class DisplayConfigStore(Protocol):
    """Persistence for the display preferences record."""

    def load(self) -> "DisplayConfig":
        ...

    def save(self, config: "DisplayConfig") -> None:
        ...
