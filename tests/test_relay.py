import asyncio
import json

import aiohttp
import pytest
import pytest_asyncio

from display_link.relay import ClientRegistry, ClientSession, RelayServer


class FakeSocket:
    def __init__(self, *, closed=False, fail=False, on_send=None):
        self.prepared = True
        self.closed = closed
        self.fail = fail
        self.sent = []
        self._on_send = on_send

    async def send_str(self, data):
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(json.loads(data))
        if self._on_send is not None:
            self._on_send()

    async def close(self):
        self.closed = True


@pytest_asyncio.fixture
async def relay(unused_tcp_port):
    server = RelayServer("127.0.0.1", unused_tcp_port, heartbeat_seconds=0)
    await server.start()
    server.base_url = f"http://127.0.0.1:{unused_tcp_port}"
    try:
        yield server
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_broadcast_reaches_only_ready_sessions():
    registry = ClientRegistry()
    open_session = ClientSession(ws=FakeSocket())
    closed_session = ClientSession(ws=FakeSocket(closed=True))
    registry.add(open_session)
    registry.add(closed_session)

    delivered = await registry.broadcast({"type": "text", "content": "hi"})

    assert delivered == 1
    assert open_session.ws.sent == [{"type": "text", "content": "hi"}]
    assert closed_session.ws.sent == []


@pytest.mark.asyncio
async def test_broadcast_skips_sessions_joining_mid_broadcast():
    registry = ClientRegistry()
    late = ClientSession(ws=FakeSocket())
    first = ClientSession(ws=FakeSocket(on_send=lambda: registry.add(late)))
    registry.add(first)

    delivered = await registry.broadcast({"type": "clear"})

    assert delivered == 1
    assert late in registry
    assert late.ws.sent == []


@pytest.mark.asyncio
async def test_failed_write_drops_session():
    registry = ClientRegistry()
    healthy = ClientSession(ws=FakeSocket())
    broken = ClientSession(ws=FakeSocket(fail=True))
    registry.add(healthy)
    registry.add(broken)

    delivered = await registry.broadcast({"type": "clear"})

    assert delivered == 1
    assert broken not in registry
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_broadcast_excludes_sender():
    registry = ClientRegistry()
    sender = ClientSession(ws=FakeSocket())
    other = ClientSession(ws=FakeSocket())
    registry.add(sender)
    registry.add(other)

    await registry.broadcast({"type": "clear"}, exclude=sender)

    assert sender.ws.sent == []
    assert other.ws.sent == [{"type": "clear"}]


def test_discard_is_idempotent():
    registry = ClientRegistry()
    session = ClientSession(ws=FakeSocket())
    registry.add(session)

    registry.discard(session)
    registry.discard(session)

    assert len(registry) == 0


@pytest.mark.asyncio
async def test_post_send_fans_out_to_websocket_clients(relay, wait_for):
    message = {"type": "text", "content": "Dinner is ready", "duration": 3000}

    async with aiohttp.ClientSession() as session:
        first = await session.ws_connect(relay.base_url + "/ws")
        second = await session.ws_connect(relay.base_url + "/")
        await wait_for(lambda: len(relay.registry) == 2)

        async with session.post(relay.base_url + "/send", json=message) as response:
            assert response.status == 200
            assert await response.json() == {"ok": True, "clients": 2}

        assert await first.receive_json(timeout=2) == message
        assert await second.receive_json(timeout=2) == message

        await first.close()
        await second.close()

    await wait_for(lambda: len(relay.registry) == 0)


@pytest.mark.asyncio
async def test_client_messages_go_to_other_clients(relay, wait_for):
    async with aiohttp.ClientSession() as session:
        sender = await session.ws_connect(relay.base_url + "/ws")
        receiver = await session.ws_connect(relay.base_url + "/ws")
        await wait_for(lambda: len(relay.registry) == 2)

        await sender.send_json({"type": "hello", "client": "kitchen"})
        await wait_for(
            lambda: any(s.client_name == "kitchen" for s in relay.registry)
        )

        await sender.send_str("{broken")
        await sender.send_json({"type": "clear"})

        assert await receiver.receive_json(timeout=2) == {"type": "clear"}
        with pytest.raises(asyncio.TimeoutError):
            await sender.receive(timeout=0.2)

        await sender.close()
        await receiver.close()


@pytest.mark.asyncio
async def test_send_rejects_invalid_bodies(relay):
    async with aiohttp.ClientSession() as session:
        async with session.post(relay.base_url + "/send", data="{nope") as response:
            assert response.status == 400
            assert await response.json() == {"error": "Invalid JSON"}

        async with session.post(
            relay.base_url + "/send", json={"type": "fireworks"}
        ) as response:
            assert response.status == 400
            body = await response.json()
            assert body["error"].startswith("Invalid message")

        async with session.post(
            relay.base_url + "/send",
            data=b"\xff\xfe\x00not utf-8",
            headers={"Content-Type": "application/json; charset=utf-8"},
        ) as response:
            assert response.status == 400
            assert await response.json() == {"error": "Invalid JSON"}

        async with session.post(
            relay.base_url + "/send", data='{"type": "text", "duration": 1e400}'
        ) as response:
            assert response.status == 400
            body = await response.json()
            assert "duration" in body["error"]


@pytest.mark.asyncio
async def test_status_and_index(relay):
    async with aiohttp.ClientSession() as session:
        async with session.get(relay.base_url + "/status") as response:
            assert response.status == 200
            assert response.headers["Access-Control-Allow-Origin"] == "*"
            status = await response.json()
            assert status["clients"] == 0
            assert status["uptimeSeconds"] >= 0

        async with session.get(relay.base_url + "/") as response:
            assert response.status == 200
            index = await response.json()
            assert "POST /send" in index["endpoints"]


@pytest.mark.asyncio
async def test_cors_preflight_and_unknown_paths(relay):
    async with aiohttp.ClientSession() as session:
        async with session.options(relay.base_url + "/send") as response:
            assert response.status == 204
            assert "POST" in response.headers["Access-Control-Allow-Methods"]

        async with session.get(relay.base_url + "/missing") as response:
            assert response.status == 404
            assert response.headers["Access-Control-Allow-Origin"] == "*"
            assert await response.json() == {"error": "Not found"}
