"""Display-side clients for the push channel and the power feed."""

from __future__ import annotations

import json
import logging
from typing import Optional

from . import constants
from .adapters import EventStreamTransport, WebSocketTransport
from .config import ResilienceConfig
from .connection import ConnectionStateMachine, ExponentialBackoff, FixedDelay
from .core import (
    DisplayMessage,
    PowerReading,
    Scheduler,
    Transport,
    TransportLink,
    build_hello,
)
from .core.models import POWER_READING_TYPE

LOGGER = logging.getLogger(__name__)


class MessageClient(ConnectionStateMachine[DisplayMessage]):
    """Receives display directives over a websocket.

    Announces itself with a hello frame on every successful open.
    """

    def __init__(
        self,
        url: str = "",
        *,
        transport: Optional[Transport] = None,
        resilience: Optional[ResilienceConfig] = None,
        scheduler: Optional[Scheduler] = None,
        client_name: str = constants.DEFAULT_CLIENT_NAME,
    ) -> None:
        resilience = resilience or ResilienceConfig()
        super().__init__(
            transport
            or WebSocketTransport(
                open_timeout=resilience.open_timeout_seconds,
                heartbeat=resilience.ws_heartbeat_seconds,
            ),
            url=url,
            policy=ExponentialBackoff(
                initial=resilience.ws_reconnect_initial_seconds,
                growth=resilience.ws_reconnect_growth,
                maximum=resilience.ws_reconnect_max_seconds,
                max_attempts=resilience.ws_max_reconnect_attempts,
            ),
            scheduler=scheduler,
            name="message-client",
        )
        self.client_name = client_name

    def decode(self, raw: str) -> Optional[DisplayMessage]:
        message = DisplayMessage.from_dict(json.loads(raw))
        LOGGER.debug("Received %s message", message.kind.value)
        return message

    async def on_open(self, link: TransportLink) -> None:
        await link.send(json.dumps(build_hello(self.client_name)))


class PowerFeedClient(ConnectionStateMachine[PowerReading]):
    """Receives power readings from a Server-Sent Events stream.

    Events of any other ``type`` are skipped silently.
    """

    def __init__(
        self,
        url: str = "",
        *,
        transport: Optional[Transport] = None,
        resilience: Optional[ResilienceConfig] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        resilience = resilience or ResilienceConfig()
        super().__init__(
            transport
            or EventStreamTransport(open_timeout=resilience.open_timeout_seconds),
            url=url,
            policy=FixedDelay(resilience.sse_reconnect_seconds),
            scheduler=scheduler,
            name="power-feed",
        )

    def decode(self, raw: str) -> Optional[PowerReading]:
        payload = json.loads(raw)
        if not isinstance(payload, dict) or payload.get("type") != POWER_READING_TYPE:
            return None
        reading = PowerReading.from_dict(payload)
        LOGGER.debug("Received power reading: %.0f W", reading.watts)
        return reading
