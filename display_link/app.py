"""Application entry-points for display-link."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Callable, Optional

from .clients import MessageClient, PowerFeedClient
from .config import AppConfig, DisplayConfig, FileDisplayConfigStore, ResilienceConfig, load_config
from .connection import ConnectionState
from .core import (
    DisplayConfigStore,
    DisplayMessage,
    MessageKind,
    PowerReading,
    Scheduler,
    SoundPlayer,
)
from .dispatcher import DisplayState, MessageDispatcher
from .logging import configure_logging
from .relay import RelayServer

LOGGER = logging.getLogger(__name__)


def describe_state(state: DisplayState) -> str:
    """Render a :class:`DisplayState` as one log-friendly line."""

    parts = [f"[{state.connection.value}]"]
    active = state.active
    if isinstance(active, PowerReading):
        parts.append(f"{active.nickname or active.appliance_id}: {active.watts:.0f} W")
        if state.power_alert:
            parts.append("ALERT")
    elif isinstance(active, DisplayMessage):
        if active.kind is MessageKind.IMAGE:
            parts.append(f"image {active.image_url}")
        else:
            text = active.content or active.body or ""
            if active.title:
                text = f"{active.title}: {text}" if text else active.title
            parts.append(f"{active.kind.value} {text!r}")
    else:
        parts.append("idle")
    return " ".join(parts)


class DisplayController:
    """Composition root for one display.

    Owns the push-channel client, the power-feed client and the dispatcher,
    and keeps the persisted :class:`DisplayConfig` in step with them.
    """

    def __init__(
        self,
        config: Optional[DisplayConfig] = None,
        *,
        store: Optional[DisplayConfigStore] = None,
        message_client: Optional[MessageClient] = None,
        power_client: Optional[PowerFeedClient] = None,
        dispatcher: Optional[MessageDispatcher] = None,
        sound_player: Optional[SoundPlayer] = None,
        scheduler: Optional[Scheduler] = None,
        resilience: Optional[ResilienceConfig] = None,
    ) -> None:
        self._store = store
        if config is None:
            config = store.load() if store is not None else DisplayConfig()
        self._config = config

        self.message_client = message_client or MessageClient(
            config.ws_url,
            resilience=resilience,
            scheduler=scheduler,
            client_name=config.client_name,
        )
        self.power_client = power_client or PowerFeedClient(
            config.sse_url, resilience=resilience, scheduler=scheduler
        )
        self.dispatcher = dispatcher or MessageDispatcher(
            scheduler=scheduler,
            sound_player=sound_player,
            alert_threshold_watts=config.alert_threshold_watts,
            brightness_mode=config.brightness_mode,
        )

        self._subscriptions: list[Callable[[], None]] = [
            self.message_client.on_state_change(self._on_ws_state),
            self.power_client.on_state_change(self._on_sse_state),
            self.message_client.on_message(self.dispatcher.handle_message),
            self.power_client.on_message(self.dispatcher.handle_reading),
        ]

    @property
    def config(self) -> DisplayConfig:
        return self._config

    @property
    def state(self) -> DisplayState:
        return self.dispatcher.state

    def on_state_change(self, handler: Callable[[DisplayState], None]) -> Callable[[], None]:
        return self.dispatcher.on_state_change(handler)

    def initialize(self) -> None:
        """Start every configured connection; later calls are no-ops."""

        if self.dispatcher.state.initialized:
            return
        LOGGER.info("Initialising display")
        if self.message_client.url:
            self.message_client.start()
        if self.power_client.url:
            self.power_client.start()
        self.dispatcher.mark_initialized()

    def update_config(
        self,
        *,
        ws_url: Optional[str] = None,
        sse_url: Optional[str] = None,
        brightness_mode: Optional[str] = None,
        alert_threshold_watts: Optional[float] = None,
    ) -> DisplayConfig:
        """Apply a partial settings change, reconnect as needed and persist it."""

        record = self._config.as_dict()
        if ws_url is not None:
            record["wsUrl"] = ws_url
        if sse_url is not None:
            record["sseUrl"] = sse_url
        if brightness_mode is not None:
            record["brightnessMode"] = brightness_mode
        if alert_threshold_watts is not None:
            record["alertThresholdWatts"] = alert_threshold_watts
        updated = DisplayConfig.from_mapping(record)

        initialized = self.dispatcher.state.initialized
        if updated.ws_url != self.message_client.url:
            self._retarget(self.message_client, updated.ws_url, initialized)
        if updated.sse_url != self.power_client.url:
            self._retarget(self.power_client, updated.sse_url, initialized)

        self.dispatcher.set_brightness_mode(updated.brightness_mode)
        self.dispatcher.set_alert_threshold(updated.alert_threshold_watts)

        self._config = updated
        if self._store is not None:
            self._store.save(updated)
        return updated

    def set_visibility(self, visible: bool) -> None:
        self.message_client.set_visibility(visible)
        self.power_client.set_visibility(visible)

    def resume(self) -> None:
        """Treat the host as having just woken up."""

        self.set_visibility(False)
        self.set_visibility(True)

    async def aclose(self) -> None:
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()
        self.dispatcher.reset()
        await self.message_client.aclose()
        await self.power_client.aclose()

    @staticmethod
    def _retarget(client: MessageClient | PowerFeedClient, url: str, initialized: bool) -> None:
        client.set_desired_endpoint(url)
        if initialized and url and not client.desired:
            client.start()

    def _on_ws_state(self, state: ConnectionState) -> None:
        self.dispatcher.set_connection_state("ws", state)

    def _on_sse_state(self, state: ConnectionState) -> None:
        self.dispatcher.set_connection_state("sse", state)


def _install_signal_handlers(
    shutdown: asyncio.Event, resume: Optional[Callable[[], None]] = None
) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, shutdown.set)
    if resume is not None and hasattr(signal, "SIGCONT"):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGCONT, resume)


class DisplayApp:
    """Runs a headless display that logs what it would render."""

    def __init__(self, config: Optional[AppConfig] = None) -> None:
        self._config = config or load_config()
        self._shutdown_event: Optional[asyncio.Event] = None
        self.controller: Optional[DisplayController] = None

    async def run(self) -> None:
        self._shutdown_event = asyncio.Event()
        self.controller = DisplayController(
            self._config.display,
            store=FileDisplayConfigStore(self._config.path),
            resilience=self._config.resilience,
        )
        _install_signal_handlers(self._shutdown_event, self.controller.resume)

        LOGGER.info("display-link client starting with config: %s", self._config.path)
        unsubscribe = self.controller.on_state_change(
            lambda state: LOGGER.info("Display: %s", describe_state(state))
        )
        self.controller.initialize()
        try:
            await self._shutdown_event.wait()
        finally:
            unsubscribe()
            await self.controller.aclose()
            LOGGER.info("display-link client stopped")

    def stop(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[AppConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("display-link client received shutdown signal")


class RelayApp:
    """Runs the broadcast relay until interrupted."""

    def __init__(self, config: Optional[AppConfig] = None) -> None:
        self._config = config or load_config()
        self._shutdown_event: Optional[asyncio.Event] = None
        self.server = RelayServer(
            self._config.relay.host,
            self._config.relay.port,
            heartbeat_seconds=self._config.relay.heartbeat_seconds,
        )

    async def run(self) -> None:
        self._shutdown_event = asyncio.Event()
        _install_signal_handlers(self._shutdown_event)
        await self.server.start()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.server.stop()
            LOGGER.info("Relay stopped")

    def stop(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[AppConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("Relay received shutdown signal")
