"""Broadcast relay fanning operator messages out to connected displays."""

from __future__ import annotations

import contextlib
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterator, Mapping, Optional

from aiohttp import WSMsgType, web

from .core import DisplayMessage, MessageDecodeError, is_client_announcement

LOGGER = logging.getLogger(__name__)

STARTED_AT_KEY = web.AppKey("started_at", float)
HEARTBEAT_KEY = web.AppKey("heartbeat", float)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class ClientSession:
    """One connected display and its liveness bookkeeping."""

    ws: web.WebSocketResponse
    remote: Optional[str] = None
    connected_at: datetime = field(default_factory=_utcnow)
    last_seen: datetime = field(default_factory=_utcnow)
    client_name: Optional[str] = None
    messages_received: int = 0

    @property
    def ready(self) -> bool:
        return self.ws.prepared and not self.ws.closed

    def touch(self) -> None:
        self.last_seen = _utcnow()
        self.messages_received += 1

    def as_dict(self) -> Dict[str, object]:
        return {
            "remote": self.remote,
            "client": self.client_name,
            "connectedAt": self.connected_at.isoformat(timespec="seconds"),
            "lastSeen": self.last_seen.isoformat(timespec="seconds"),
            "messagesReceived": self.messages_received,
        }


class ClientRegistry:
    """Tracks live sessions; only the relay's connection handlers mutate it."""

    def __init__(self) -> None:
        self._sessions: set[ClientSession] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[ClientSession]:
        return iter(list(self._sessions))

    def __contains__(self, session: object) -> bool:
        return session in self._sessions

    def add(self, session: ClientSession) -> None:
        self._sessions.add(session)
        LOGGER.info(
            "Client connected from %s (%d connected)", session.remote, len(self._sessions)
        )

    def discard(self, session: ClientSession) -> None:
        if session not in self._sessions:
            return
        self._sessions.discard(session)
        LOGGER.info(
            "Client %s disconnected (%d connected)", session.remote, len(self._sessions)
        )

    async def broadcast(
        self,
        message: Mapping[str, Any],
        *,
        exclude: Optional[ClientSession] = None,
    ) -> int:
        """Send ``message`` to every session ready right now.

        The recipient list is fixed before the first write, so sessions that
        connect while the broadcast is in progress do not receive it.
        """

        data = json.dumps(message)
        targets = [
            session
            for session in self._sessions
            if session is not exclude and session.ready
        ]
        LOGGER.info("Broadcasting %s to %d clients", message.get("type"), len(targets))

        delivered = 0
        for session in targets:
            try:
                await session.ws.send_str(data)
            except (ConnectionError, RuntimeError) as exc:
                LOGGER.warning("Dropping client %s after failed write: %s", session.remote, exc)
                self.discard(session)
            else:
                delivered += 1
        return delivered


REGISTRY_KEY = web.AppKey("registry", ClientRegistry)


def _json_error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


@web.middleware
async def _cors_middleware(
    request: web.Request, handler: Callable[[web.Request], Awaitable[web.StreamResponse]]
) -> web.StreamResponse:
    if request.method == "OPTIONS":
        return web.Response(status=204, headers=CORS_HEADERS)

    try:
        response = await handler(request)
    except web.HTTPNotFound:
        response = _json_error(404, "Not found")
    except web.HTTPMethodNotAllowed:
        response = _json_error(405, "Method not allowed")

    if not response.prepared:
        response.headers.update(CORS_HEADERS)
    return response


async def _handle_index(request: web.Request) -> web.StreamResponse:
    if request.headers.get("Upgrade", "").lower() == "websocket":
        return await _handle_websocket(request)
    return web.json_response(
        {
            "service": "display-link relay",
            "endpoints": {
                "GET /": "websocket upgrade for displays",
                "GET /ws": "websocket upgrade for displays",
                "GET /status": "connected client count and uptime",
                "POST /send": "broadcast one display message",
            },
        }
    )


async def _handle_websocket(request: web.Request) -> web.StreamResponse:
    registry = request.app[REGISTRY_KEY]
    heartbeat = request.app[HEARTBEAT_KEY] or None
    ws = web.WebSocketResponse(heartbeat=heartbeat)
    await ws.prepare(request)

    session = ClientSession(ws=ws, remote=request.remote)
    registry.add(session)
    try:
        async for frame in ws:
            if frame.type == WSMsgType.TEXT:
                await _handle_client_frame(registry, session, frame.data)
            elif frame.type == WSMsgType.ERROR:
                LOGGER.warning("Websocket error from %s: %s", session.remote, ws.exception())
    finally:
        registry.discard(session)
    return ws


async def _handle_client_frame(
    registry: ClientRegistry, session: ClientSession, raw: str
) -> None:
    session.touch()
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        LOGGER.warning("Invalid message from %s: %s", session.remote, exc)
        return
    if not isinstance(payload, dict):
        LOGGER.warning("Ignoring non-object message from %s", session.remote)
        return

    if is_client_announcement(payload):
        client = payload.get("client")
        if isinstance(client, str) and client:
            session.client_name = client
        LOGGER.debug("Client %s announced itself: %s", session.remote, payload)
        return

    await registry.broadcast(payload, exclude=session)


async def _handle_send(request: web.Request) -> web.Response:
    registry = request.app[REGISTRY_KEY]
    try:
        payload = json.loads(await request.text())
    except ValueError:
        return _json_error(400, "Invalid JSON")

    try:
        DisplayMessage.from_dict(payload)
    except MessageDecodeError as exc:
        return _json_error(400, f"Invalid message: {exc}")

    await registry.broadcast(payload)
    return web.json_response({"ok": True, "clients": len(registry)})


async def _handle_status(request: web.Request) -> web.Response:
    registry = request.app[REGISTRY_KEY]
    uptime = time.monotonic() - request.app[STARTED_AT_KEY]
    return web.json_response(
        {
            "clients": len(registry),
            "uptimeSeconds": round(uptime, 3),
            "sessions": [session.as_dict() for session in registry],
        }
    )


def create_app(
    registry: Optional[ClientRegistry] = None, *, heartbeat_seconds: float = 30.0
) -> web.Application:
    app = web.Application(middlewares=[_cors_middleware])
    app[REGISTRY_KEY] = registry or ClientRegistry()
    app[STARTED_AT_KEY] = time.monotonic()
    app[HEARTBEAT_KEY] = heartbeat_seconds
    app.router.add_get("/", _handle_index)
    app.router.add_get("/ws", _handle_websocket)
    app.router.add_get("/status", _handle_status)
    app.router.add_post("/send", _handle_send)
    return app


class RelayServer:
    """HTTP and websocket server hosting a :class:`ClientRegistry`."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        registry: Optional[ClientRegistry] = None,
        heartbeat_seconds: float = 30.0,
    ) -> None:
        self.registry = registry or ClientRegistry()
        self._host = host
        self._port = port
        self._heartbeat = heartbeat_seconds
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        app = create_app(self.registry, heartbeat_seconds=self._heartbeat)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info("Relay listening on http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        for session in self.registry:
            with contextlib.suppress(Exception):
                await session.ws.close()
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def broadcast(self, message: Mapping[str, Any]) -> int:
        return await self.registry.broadcast(message)
