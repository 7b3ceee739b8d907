"""Core primitives for display-link."""

from .models import (
    DisplayMessage,
    MessageDecodeError,
    MessageKind,
    MessageStyle,
    PowerReading,
    build_hello,
    is_client_announcement,
)
from .observers import ChannelClosed, ObserverChannel, Observers
from .protocols import (
    DisplayConfigStore,
    Scheduler,
    SoundPlayer,
    TimerHandle,
    Transport,
    TransportLink,
)
from .scheduling import LoopScheduler

__all__ = [
    "ChannelClosed",
    "DisplayConfigStore",
    "DisplayMessage",
    "LoopScheduler",
    "MessageDecodeError",
    "MessageKind",
    "MessageStyle",
    "ObserverChannel",
    "Observers",
    "PowerReading",
    "Scheduler",
    "SoundPlayer",
    "TimerHandle",
    "Transport",
    "TransportLink",
    "build_hello",
    "is_client_announcement",
]
