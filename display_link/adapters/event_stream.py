"""Server-Sent Events transport built on aiohttp.

The transport is receive-only. It remembers the last event id seen on any
link it opened and replays it as ``Last-Event-ID`` when reopening, so a
server with last-value semantics can resend the most recent reading.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import aiohttp

from .errors import EventStreamError, TransportError

LOGGER = logging.getLogger(__name__)

EVENT_STREAM_CONTENT_TYPE = "text/event-stream"
DEFAULT_EVENT_TYPE = "message"


@dataclass(slots=True, frozen=True)
class ServerSentEvent:
    data: str
    event: str = DEFAULT_EVENT_TYPE
    id: Optional[str] = None


class EventStreamParser:
    """Incremental line parser for the ``text/event-stream`` format."""

    def __init__(self, last_event_id: Optional[str] = None) -> None:
        self.last_event_id = last_event_id
        self._data: list[str] = []
        self._event = ""
        self._first_line = True

    def feed_line(self, line: str) -> Optional[ServerSentEvent]:
        """Consume one line (without its terminator).

        Returns the completed event when ``line`` is the blank line that ends
        an event carrying data; comment-only blocks yield nothing.
        """

        if self._first_line:
            self._first_line = False
            line = line.lstrip("\ufeff")

        if not line:
            return self._dispatch()

        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            if "\0" not in value:
                self.last_event_id = value
        return None

    def _dispatch(self) -> Optional[ServerSentEvent]:
        data, event = self._data, self._event
        self._data = []
        self._event = ""
        if not data:
            return None
        return ServerSentEvent(
            data="\n".join(data),
            event=event or DEFAULT_EVENT_TYPE,
            id=self.last_event_id,
        )


class EventStreamLink:
    """An open event-stream response yielding default-type event payloads."""

    def __init__(
        self, transport: "EventStreamTransport", response: aiohttp.ClientResponse
    ) -> None:
        self._transport = transport
        self._response = response
        self._parser = EventStreamParser(transport.last_event_id)

    async def send(self, data: str) -> None:
        raise TransportError("Event streams are receive-only")

    async def events(self) -> AsyncIterator[ServerSentEvent]:
        async for raw_line in self._response.content:
            line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
            event = self._parser.feed_line(line)
            self._transport.last_event_id = self._parser.last_event_id
            if event is not None:
                yield event

    async def __aiter__(self) -> AsyncIterator[str]:
        async for event in self.events():
            if event.event == DEFAULT_EVENT_TYPE:
                yield event.data
            else:
                LOGGER.debug("Ignoring named event %r", event.event)


class EventStreamTransport:
    """Opens ``text/event-stream`` responses, sharing one HTTP session."""

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        open_timeout: float = 10.0,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._open_timeout = open_timeout
        self.last_event_id: Optional[str] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=None)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    @contextlib.asynccontextmanager
    async def open(self, url: str) -> AsyncIterator[EventStreamLink]:
        session = await self._ensure_session()
        headers = {"Accept": EVENT_STREAM_CONTENT_TYPE, "Cache-Control": "no-cache"}
        if self.last_event_id:
            headers["Last-Event-ID"] = self.last_event_id

        async with asyncio.timeout(self._open_timeout):
            response = await session.get(url, headers=headers)
        try:
            if response.status != 200:
                raise EventStreamError(
                    f"Event stream {url} answered with status {response.status}"
                )
            if response.content_type != EVENT_STREAM_CONTENT_TYPE:
                raise EventStreamError(
                    f"Event stream {url} answered with content type {response.content_type!r}"
                )
            yield EventStreamLink(self, response)
        finally:
            response.close()

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
