"""WebSocket transport built on aiohttp."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Optional

import aiohttp

from .errors import TransportError

LOGGER = logging.getLogger(__name__)


class WebSocketLink:
    """An open aiohttp client websocket exposed as a stream of text frames."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send(self, data: str) -> None:
        if self._ws.closed:
            raise TransportError("Websocket is closed")
        await self._ws.send_str(data)

    async def __aiter__(self) -> AsyncIterator[str]:
        async for message in self._ws:
            if message.type == aiohttp.WSMsgType.TEXT:
                yield message.data
            elif message.type == aiohttp.WSMsgType.BINARY:
                LOGGER.debug("Ignoring binary websocket frame (%d bytes)", len(message.data))
            elif message.type == aiohttp.WSMsgType.ERROR:
                raise self._ws.exception() or TransportError("Websocket error")


class WebSocketTransport:
    """Opens websocket links, sharing one HTTP session across attempts."""

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        open_timeout: float = 10.0,
        heartbeat: Optional[float] = 30.0,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._open_timeout = open_timeout
        self._heartbeat = heartbeat or None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=None)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    @contextlib.asynccontextmanager
    async def open(self, url: str) -> AsyncIterator[WebSocketLink]:
        session = await self._ensure_session()
        async with asyncio.timeout(self._open_timeout):
            ws = await session.ws_connect(url, heartbeat=self._heartbeat)
        LOGGER.debug("Websocket handshake completed for %s", url)
        try:
            yield WebSocketLink(ws)
        finally:
            await ws.close()

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
