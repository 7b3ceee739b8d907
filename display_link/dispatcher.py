"""Turns inbound directives and readings into the current display state."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from . import constants
from .connection import ConnectionState
from .core import (
    DisplayMessage,
    MessageKind,
    Observers,
    PowerReading,
    Scheduler,
    SoundPlayer,
    TimerHandle,
)
from .core.observers import ObserverChannel
from .core.scheduling import LoopScheduler

LOGGER = logging.getLogger(__name__)

ALERT_SOUND = "alert"
SILENT_SOUND = "none"


@dataclass(slots=True, frozen=True)
class DisplayState:
    initialized: bool = False
    ws_state: ConnectionState = ConnectionState.DISCONNECTED
    sse_state: ConnectionState = ConnectionState.DISCONNECTED
    brightness_mode: str = constants.DEFAULT_BRIGHTNESS_MODE
    current_message: Optional[DisplayMessage] = None
    current_power: Optional[PowerReading] = None
    power_alert: bool = False

    @property
    def active(self) -> Union[PowerReading, DisplayMessage, None]:
        """What rendering should show: a power reading wins over a message."""
        if self.current_power is not None:
            return self.current_power
        return self.current_message

    @property
    def connection(self) -> ConnectionState:
        """Indicator state: the power feed when it is up or trying, else the push channel."""
        if self.sse_state is not ConnectionState.DISCONNECTED:
            return self.sse_state
        return self.ws_state

    def as_dict(self) -> Dict[str, Any]:
        return {
            "initialized": self.initialized,
            "wsState": self.ws_state.value,
            "sseState": self.sse_state.value,
            "brightnessMode": self.brightness_mode,
            "currentMessage": (
                self.current_message.as_dict() if self.current_message else None
            ),
            "currentPower": self.current_power.as_dict() if self.current_power else None,
            "powerAlert": self.power_alert,
        }


class LoggingSoundPlayer:
    """Stand-in audio collaborator that records cues in the log."""

    def play(self, sound: str) -> None:
        LOGGER.info("Sound cue: %s", sound)


class MessageDispatcher:
    """Applies precedence and expiry rules and publishes :class:`DisplayState`.

    At most one expiry timer is pending. Arming a timer returns a generation
    token; when a timer fires with a token that is no longer current, the
    message it belonged to has been superseded and nothing happens.
    """

    def __init__(
        self,
        *,
        scheduler: Optional[Scheduler] = None,
        sound_player: Optional[SoundPlayer] = None,
        alert_threshold_watts: float = constants.DEFAULT_ALERT_THRESHOLD_WATTS,
        brightness_mode: str = constants.DEFAULT_BRIGHTNESS_MODE,
    ) -> None:
        self._scheduler: Scheduler = scheduler or LoopScheduler()
        self._sound_player: SoundPlayer = sound_player or LoggingSoundPlayer()
        self._alert_threshold = alert_threshold_watts
        self._state = DisplayState(brightness_mode=brightness_mode)
        self._observers: Observers[DisplayState] = Observers("display state")
        self._expiry_handle: Optional[TimerHandle] = None
        self._expiry_generation = 0
        self._previous_watts: Optional[float] = None

    @property
    def state(self) -> DisplayState:
        return self._state

    @property
    def alert_threshold_watts(self) -> float:
        return self._alert_threshold

    @property
    def expiry_pending(self) -> bool:
        return self._expiry_handle is not None

    def on_state_change(self, handler: Callable[[DisplayState], None]) -> Callable[[], None]:
        """Register a state observer; it is called at once with the current state."""

        unsubscribe = self._observers.add(handler)
        try:
            handler(self._state)
        except Exception:
            LOGGER.exception("display state observer failed")
        return unsubscribe

    def state_channel(self, maxsize: int = 16) -> ObserverChannel[DisplayState]:
        channel = self._observers.channel(maxsize)
        channel.push(self._state)
        return channel

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------
    def handle_message(self, message: DisplayMessage) -> None:
        if message.kind is MessageKind.CONFIG:
            LOGGER.debug("Ignoring config directive")
            return

        self._cancel_expiry()

        if message.kind is MessageKind.CLEAR:
            LOGGER.info("Clearing display")
            self._update(force=True, current_message=None)
            return

        LOGGER.info("Showing %s message", message.kind.value)
        if message.sound and message.sound != SILENT_SOUND:
            self._play(message.sound)
        if message.expires:
            self._arm_expiry(message.duration_ms / 1000.0)
        self._update(force=True, current_message=message)

    def handle_reading(self, reading: PowerReading) -> None:
        previous = self._previous_watts
        self._previous_watts = reading.watts

        crossed = reading.watts >= self._alert_threshold and (
            previous is None or previous < self._alert_threshold
        )
        if crossed:
            LOGGER.warning(
                "Power draw %.0f W reached alert threshold %.0f W",
                reading.watts,
                self._alert_threshold,
            )
            self._play(ALERT_SOUND)

        self._update(
            force=True,
            current_power=reading,
            power_alert=reading.watts >= self._alert_threshold,
        )

    # ------------------------------------------------------------------
    # Settings and connection state
    # ------------------------------------------------------------------
    def set_connection_state(self, channel: str, state: ConnectionState) -> None:
        if channel == "ws":
            self._update(ws_state=state)
        elif channel == "sse":
            self._update(sse_state=state)
        else:
            raise ValueError(f"Unknown channel: {channel!r}")

    def set_brightness_mode(self, mode: str) -> None:
        self._update(brightness_mode=mode)

    def set_alert_threshold(self, watts: float) -> None:
        self._alert_threshold = watts
        power = self._state.current_power
        self._update(power_alert=power is not None and power.watts >= watts)

    def mark_initialized(self) -> None:
        self._update(initialized=True)

    def reset(self) -> None:
        """Cancel the pending expiry timer."""
        self._cancel_expiry()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _play(self, sound: str) -> None:
        try:
            self._sound_player.play(sound)
        except Exception:
            LOGGER.exception("Sound player failed for %r", sound)

    def _arm_expiry(self, delay: float) -> int:
        self._expiry_generation += 1
        token = self._expiry_generation
        self._expiry_handle = self._scheduler.call_later(delay, lambda: self._expire(token))
        return token

    def _cancel_expiry(self) -> None:
        self._expiry_generation += 1
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None

    def _expire(self, token: int) -> None:
        if token != self._expiry_generation:
            return
        self._expiry_handle = None
        LOGGER.info("Message expired")
        self._update(current_message=None)

    def _update(self, *, force: bool = False, **changes: Any) -> None:
        state = dataclasses.replace(self._state, **changes)
        if not force and state == self._state:
            return
        self._state = state
        self._observers.emit(state)
