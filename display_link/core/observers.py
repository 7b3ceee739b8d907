"""Observer fan-out with optional bounded channels."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Generic, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Handler = Callable[[T], None]


class ChannelClosed(Exception):
    """Raised by :meth:`ObserverChannel.get` once the channel is closed and drained."""


_CLOSED = object()


class ObserverChannel(Generic[T]):
    """Bounded per-subscriber queue fed by an :class:`Observers` set.

    When the consumer falls behind, the oldest pending value is dropped so
    the latest state is always delivered. Closing the channel wakes every
    waiting consumer once the values queued before the close are drained.
    """

    def __init__(self, observers: "Observers[T]", maxsize: int) -> None:
        self._observers = observers
        # One extra slot keeps room for the close marker.
        self._maxsize = max(1, maxsize)
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self._maxsize + 1)
        self._unsubscribe: Optional[Callable[[], None]] = observers.add(self.push)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, value: T) -> None:
        if self._closed:
            return
        if self._queue.qsize() >= self._maxsize:
            with contextlib.suppress(asyncio.QueueEmpty):
                self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(value)

    async def get(self) -> T:
        value = await self._queue.get()
        if value is _CLOSED:
            # Leave the marker in place for other waiters.
            self._queue.put_nowait(_CLOSED)
            raise ChannelClosed("Observer channel is closed")
        return value

    def pending(self) -> int:
        return self._queue.qsize() - (1 if self._closed else 0)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "ObserverChannel[T]":
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except ChannelClosed:
            raise StopAsyncIteration from None


class Observers(Generic[T]):
    """Ordered set of handlers notified synchronously.

    Emission iterates over a snapshot, so handlers may subscribe or
    unsubscribe while being notified.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._handlers: list[Handler[T]] = []

    def __len__(self) -> int:
        return len(self._handlers)

    def add(self, handler: Handler[T]) -> Callable[[], None]:
        if handler in self._handlers:
            raise ValueError("Handler already registered")
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            self.remove(handler)

        return _unsubscribe

    def remove(self, handler: Handler[T]) -> None:
        with contextlib.suppress(ValueError):
            self._handlers.remove(handler)

    def clear(self) -> None:
        self._handlers.clear()

    def emit(self, value: T) -> None:
        for handler in tuple(self._handlers):
            try:
                handler(value)
            except Exception:
                LOGGER.exception("%s observer failed", self._name)

    def channel(self, maxsize: int = 16) -> ObserverChannel[T]:
        return ObserverChannel(self, maxsize)
