"""Reconnecting transport state machine.

A :class:`ConnectionStateMachine` owns one transport and drives it through
``disconnected -> connecting -> connected`` and back, retrying on its own
while the caller wants it connected. Retry timers go through an injectable
scheduler so backoff can be exercised without waiting on the wall clock.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

from .core import Observers, Scheduler, TimerHandle, Transport, TransportLink
from .core.observers import ObserverChannel
from .core.scheduling import LoopScheduler
from .logging import connection_logger

T = TypeVar("T")


class ConnectionState(str, Enum):
    """Current state of a transport connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class RetryPolicy:
    """Computes the delay before retry number ``attempt`` (zero based)."""

    def next_delay(self, attempt: int) -> Optional[float]:
        """Return the delay in seconds, or ``None`` when retries are exhausted."""
        raise NotImplementedError


@dataclass(frozen=True)
class ExponentialBackoff(RetryPolicy):
    initial: float = 1.0
    growth: float = 1.5
    maximum: float = 30.0
    max_attempts: Optional[int] = 20

    def next_delay(self, attempt: int) -> Optional[float]:
        if self.max_attempts is not None and attempt >= self.max_attempts:
            return None
        return min(self.initial * self.growth**attempt, self.maximum)


@dataclass(frozen=True)
class FixedDelay(RetryPolicy):
    delay: float = 5.0
    max_attempts: Optional[int] = None

    def next_delay(self, attempt: int) -> Optional[float]:
        if self.max_attempts is not None and attempt >= self.max_attempts:
            return None
        return self.delay


class ConnectionStateMachine(Generic[T]):
    """Keeps one transport connected for as long as the caller desires.

    Subclasses implement :meth:`decode` to turn raw frames into values for
    message observers and may override :meth:`on_open` to greet the peer.
    Every connection attempt carries a generation number; callbacks from a
    superseded attempt, or arriving after :meth:`stop`, are ignored.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        url: str = "",
        policy: Optional[RetryPolicy] = None,
        scheduler: Optional[Scheduler] = None,
        name: str = "connection",
    ) -> None:
        self._transport = transport
        self._url = (url or "").strip()
        self._policy = policy or ExponentialBackoff()
        self._scheduler: Scheduler = scheduler or LoopScheduler()
        self.name = name
        self._log = connection_logger(__name__, name)

        self._state = ConnectionState.DISCONNECTED
        self._desired = False
        self._visible = True
        self._attempts = 0
        self._generation = 0
        self._task: Optional[asyncio.Task[None]] = None
        self._link: Optional[TransportLink] = None
        self._retry_handle: Optional[TimerHandle] = None
        self._retired: set[asyncio.Task[None]] = set()

        self._state_observers: Observers[ConnectionState] = Observers(f"{name} state")
        self._message_observers: Observers[T] = Observers(f"{name} message")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def url(self) -> str:
        return self._url

    @property
    def desired(self) -> bool:
        """Whether the caller currently wants this connection up."""
        return self._desired

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def retry_pending(self) -> bool:
        return self._retry_handle is not None

    def on_state_change(
        self, handler: Callable[[ConnectionState], None]
    ) -> Callable[[], None]:
        """Register a state observer; it is called at once with the current state."""

        unsubscribe = self._state_observers.add(handler)
        try:
            handler(self._state)
        except Exception:
            self._log.exception("state observer failed")
        return unsubscribe

    def on_message(self, handler: Callable[[T], None]) -> Callable[[], None]:
        return self._message_observers.add(handler)

    def state_channel(self, maxsize: int = 16) -> ObserverChannel[ConnectionState]:
        channel = self._state_observers.channel(maxsize)
        channel.push(self._state)
        return channel

    def message_channel(self, maxsize: int = 64) -> ObserverChannel[T]:
        return self._message_observers.channel(maxsize)

    def set_desired_endpoint(self, url: Optional[str]) -> None:
        """Point the machine at a new endpoint.

        Any attempt in flight is torn down. When the machine was wanted
        connected, a fresh attempt starts against the new URL; an empty URL
        leaves it disarmed.
        """

        was_desired = self._desired
        self.stop()
        self._url = (url or "").strip()
        if was_desired and self._url:
            self.start()

    def start(self) -> None:
        if not self._url:
            self._log.warning("no endpoint configured")
            return

        self._desired = True
        self._attempts = 0
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        self._cancel_retry()
        self._open()

    def stop(self) -> None:
        self._desired = False
        self._cancel_retry()
        self._generation += 1

        task = self._task
        self._task = None
        self._link = None
        if task is not None and not task.done():
            task.cancel()
            self._retired.add(task)
            task.add_done_callback(self._retired.discard)

        self._set_state(ConnectionState.DISCONNECTED)

    def set_visibility(self, visible: bool) -> None:
        """Report host visibility; becoming visible kicks a stalled connection."""

        was_visible = self._visible
        self._visible = visible
        if not visible or was_visible:
            return
        if self._desired and self._state is ConnectionState.DISCONNECTED:
            self._log.info("host visible again, reconnecting")
            self._cancel_retry()
            self._open()

    async def send(self, payload: Any) -> bool:
        """Serialise ``payload`` as JSON and write it if connected."""

        link = self._link
        if link is None or self._state is not ConnectionState.CONNECTED:
            return False
        await link.send(json.dumps(payload))
        return True

    async def aclose(self) -> None:
        """Stop, wait for the transport task to unwind and release the transport."""

        self.stop()
        retired = list(self._retired)
        for task in retired:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._transport.aclose()

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------
    def decode(self, raw: str) -> Optional[T]:
        """Decode one frame; ``None`` skips it, ``ValueError`` marks it malformed."""
        raise NotImplementedError

    async def on_open(self, link: TransportLink) -> None:
        """Called once per successful open, before frames are read."""

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _is_current(self, generation: int) -> bool:
        return self._desired and generation == self._generation

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._log.debug("%s -> %s", self._state.value, state.value)
        self._state = state
        self._state_observers.emit(state)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _open(self) -> None:
        self._generation += 1
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)
        self._log.info("connecting to %s", self._url)
        self._task = asyncio.get_running_loop().create_task(
            self._run(generation, self._url)
        )

    async def _run(self, generation: int, url: str) -> None:
        try:
            async with self._transport.open(url) as link:
                if not self._is_current(generation):
                    return
                self._link = link
                self._attempts = 0
                self._set_state(ConnectionState.CONNECTED)
                self._log.info("connected to %s", url)
                await self.on_open(link)

                async for raw in link:
                    if not self._is_current(generation):
                        break
                    self._handle_frame(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._is_current(generation):
                self._log.warning("connection to %s failed: %s", url, exc)
        else:
            if self._is_current(generation):
                self._log.info("connection to %s closed", url)

        if generation == self._generation:
            self._link = None
            self._task = None
            self._set_state(ConnectionState.DISCONNECTED)
            if self._desired:
                self._schedule_retry()

    def _handle_frame(self, raw: str) -> None:
        try:
            value = self.decode(raw)
        except ValueError as exc:
            self._log.warning("dropping malformed payload: %s", exc)
            return
        if value is None:
            return
        self._message_observers.emit(value)

    def _schedule_retry(self) -> None:
        if self._retry_handle is not None:
            return

        delay = self._policy.next_delay(self._attempts)
        if delay is None:
            self._log.warning(
                "giving up after %d reconnect attempts; call start() to resume",
                self._attempts,
            )
            return

        self._log.info("reconnecting in %.1fs (attempt %d)", delay, self._attempts + 1)
        self._retry_handle = self._scheduler.call_later(delay, self._on_retry_timer)

    def _on_retry_timer(self) -> None:
        self._retry_handle = None
        if not self._desired or self._state is not ConnectionState.DISCONNECTED:
            return
        self._attempts += 1
        self._open()
