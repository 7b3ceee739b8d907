import json

import pytest

from display_link.clients import MessageClient, PowerFeedClient
from display_link.connection import (
    ConnectionState,
    ConnectionStateMachine,
    ExponentialBackoff,
    FixedDelay,
)
from display_link.core import DisplayMessage, MessageKind, PowerReading

D = ConnectionState.DISCONNECTED
CONNECTING = ConnectionState.CONNECTING
CONNECTED = ConnectionState.CONNECTED


class TextMachine(ConnectionStateMachine[str]):
    def decode(self, raw: str):
        if raw == "skip":
            return None
        if raw == "bad":
            raise ValueError("bad frame")
        return raw


def make_machine(transport, scheduler, url="ws://display.local/ws", **kwargs):
    return TextMachine(transport, url=url, scheduler=scheduler, **kwargs)


def test_exponential_backoff_delays():
    policy = ExponentialBackoff()

    delays = [policy.next_delay(n) for n in range(20)]

    assert delays[0] == 1.0
    assert delays[1] == pytest.approx(1.5)
    assert delays[2] == pytest.approx(2.25)
    assert delays == [pytest.approx(min(1.5**n, 30.0)) for n in range(20)]
    assert delays[-1] == 30.0
    assert policy.next_delay(20) is None


def test_fixed_delay_never_exhausts():
    policy = FixedDelay(5.0)

    assert {policy.next_delay(n) for n in range(100)} == {5.0}


@pytest.mark.asyncio
async def test_connection_walks_state_grammar(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    states = []
    machine.on_state_change(states.append)

    machine.start()
    assert machine.state is CONNECTING
    await settle()
    transport.last.accept()
    await settle()
    assert machine.state is CONNECTED

    transport.last.link.drop()
    await settle()

    assert states == [D, CONNECTING, CONNECTED, D]
    assert [h.delay for h in scheduler.pending] == [1.0]

    scheduler.fire_next()
    await settle()
    transport.last.accept()
    await settle()

    assert states == [D, CONNECTING, CONNECTED, D, CONNECTING, CONNECTED]
    assert machine.attempts == 0
    await machine.aclose()


@pytest.mark.asyncio
async def test_retries_stop_after_twenty_attempts(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    machine.start()

    for attempt in range(20):
        await settle()
        transport.last.fail()
        await settle()
        assert len(scheduler.pending) == 1
        assert scheduler.pending[0].delay == pytest.approx(min(1.5**attempt, 30.0))
        scheduler.fire_next()

    await settle()
    transport.last.fail()
    await settle()

    assert scheduler.pending == []
    assert len(transport.attempts) == 21
    assert machine.state is D
    assert machine.desired is True

    machine.start()
    await settle()
    assert machine.state is CONNECTING
    assert machine.attempts == 0
    assert len(transport.attempts) == 22
    await machine.aclose()


@pytest.mark.asyncio
async def test_successful_open_resets_retry_counter(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    machine.start()

    for _ in range(3):
        await settle()
        transport.last.fail()
        await settle()
        scheduler.fire_next()

    await settle()
    transport.last.accept()
    await settle()
    transport.last.link.drop()
    await settle()

    assert scheduler.pending[-1].delay == 1.0
    await machine.aclose()


@pytest.mark.asyncio
async def test_stop_twice_leaves_disconnected_without_retry(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    states = []
    machine.on_state_change(states.append)
    machine.start()
    await settle()
    transport.last.accept()
    await settle()

    machine.stop()
    machine.stop()
    await settle()

    assert machine.state is D
    assert machine.desired is False
    assert scheduler.pending == []
    assert transport.last.exited is True
    assert states == [D, CONNECTING, CONNECTED, D]


@pytest.mark.asyncio
async def test_stop_cancels_pending_retry(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    machine.start()
    await settle()
    transport.last.fail()
    await settle()
    handle = scheduler.pending[0]

    machine.stop()

    assert handle.cancelled is True
    assert machine.retry_pending is False


@pytest.mark.asyncio
async def test_late_retry_timer_after_stop_is_ignored(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    machine.start()
    await settle()
    transport.last.fail()
    await settle()
    handle = scheduler.pending[0]
    machine.stop()

    handle.fire()
    await settle()

    assert machine.state is D
    assert len(transport.attempts) == 1


@pytest.mark.asyncio
async def test_late_failure_from_superseded_attempt_is_ignored(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    machine.start()
    await settle()
    first = transport.last

    machine.set_desired_endpoint("ws://other.local/ws")
    await settle()
    first.fail()
    await settle()

    assert machine.state is CONNECTING
    assert transport.last.url == "ws://other.local/ws"
    assert scheduler.pending == []
    await machine.aclose()


@pytest.mark.asyncio
async def test_timer_firing_while_connecting_does_not_open_twice(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    machine.start()
    await settle()
    transport.last.fail()
    await settle()
    handle = scheduler.pending[0]

    machine.start()
    await settle()
    handle.fire()
    await settle()

    assert len(transport.attempts) == 2
    await machine.aclose()


@pytest.mark.asyncio
async def test_visibility_resume_reconnects_immediately(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    machine.start()
    await settle()
    transport.last.fail()
    await settle()
    handle = scheduler.pending[0]

    machine.set_visibility(False)
    assert machine.state is D

    machine.set_visibility(True)
    await settle()

    assert handle.cancelled is True
    assert machine.state is CONNECTING
    assert len(transport.attempts) == 2
    await machine.aclose()


@pytest.mark.asyncio
async def test_visibility_resume_respects_stopped_machine(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)

    machine.set_visibility(False)
    machine.set_visibility(True)
    await settle()

    assert transport.attempts == []
    assert machine.state is D


@pytest.mark.asyncio
async def test_set_desired_endpoint_reconnects_when_desired(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    machine.start()
    await settle()
    transport.last.accept()
    await settle()
    first = transport.last

    machine.set_desired_endpoint("ws://second.local/ws")
    await settle()

    assert first.exited is True
    assert machine.url == "ws://second.local/ws"
    assert transport.last.url == "ws://second.local/ws"
    assert machine.state is CONNECTING
    await machine.aclose()


@pytest.mark.asyncio
async def test_set_desired_endpoint_empty_disarms(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    machine.start()
    await settle()

    machine.set_desired_endpoint("")
    await settle()

    assert machine.state is D
    assert machine.desired is False
    assert scheduler.pending == []
    assert len(transport.attempts) == 1


@pytest.mark.asyncio
async def test_set_desired_endpoint_when_idle_does_not_connect(transport, scheduler, settle):
    machine = make_machine(transport, scheduler, url="")

    machine.set_desired_endpoint("ws://display.local/ws")
    await settle()

    assert transport.attempts == []
    assert machine.url == "ws://display.local/ws"


@pytest.mark.asyncio
async def test_start_without_url_does_nothing(transport, scheduler, settle, caplog):
    machine = make_machine(transport, scheduler, url="")

    machine.start()
    await settle()

    assert machine.state is D
    assert machine.desired is False
    assert transport.attempts == []
    assert "no endpoint configured" in caplog.text


@pytest.mark.asyncio
async def test_state_observer_receives_current_state_immediately(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    machine.start()
    await settle()
    transport.last.accept()
    await settle()

    seen = []
    machine.on_state_change(seen.append)

    assert seen == [CONNECTED]
    await machine.aclose()


@pytest.mark.asyncio
async def test_failing_observer_does_not_block_others(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    seen = []

    def broken(state):
        raise RuntimeError("observer broke")

    machine.on_state_change(broken)
    machine.on_state_change(seen.append)
    machine.start()
    await settle()

    assert seen == [D, CONNECTING]
    await machine.aclose()


@pytest.mark.asyncio
async def test_unsubscribe_stops_notifications(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    seen = []
    unsubscribe = machine.on_state_change(seen.append)

    unsubscribe()
    machine.start()
    await settle()

    assert seen == [D]
    await machine.aclose()


@pytest.mark.asyncio
async def test_malformed_payload_is_dropped(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    received = []
    machine.on_message(received.append)
    machine.start()
    await settle()
    transport.last.accept()
    await settle()

    for raw in ("bad", "skip", "ok"):
        transport.last.link.feed(raw)
    await settle()

    assert received == ["ok"]
    assert machine.state is CONNECTED
    await machine.aclose()


@pytest.mark.asyncio
async def test_channels_deliver_state_and_messages(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    states = machine.state_channel()
    messages = machine.message_channel(maxsize=2)

    machine.start()
    await settle()
    transport.last.accept()
    await settle()
    for raw in ("one", "two", "three"):
        transport.last.link.feed(raw)
    await settle()

    assert [await states.get() for _ in range(3)] == [D, CONNECTING, CONNECTED]
    assert [await messages.get() for _ in range(2)] == ["two", "three"]
    assert messages.dropped == 1

    messages.close()
    assert [item async for item in messages] == []
    await machine.aclose()


@pytest.mark.asyncio
async def test_send_only_when_connected(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)

    assert await machine.send({"type": "status"}) is False

    machine.start()
    await settle()
    transport.last.accept()
    await settle()

    assert await machine.send({"type": "status"}) is True
    assert json.loads(transport.last.link.sent[-1]) == {"type": "status"}
    await machine.aclose()


@pytest.mark.asyncio
async def test_aclose_releases_transport(transport, scheduler, settle):
    machine = make_machine(transport, scheduler)
    machine.start()
    await settle()
    transport.last.accept()
    await settle()

    await machine.aclose()

    assert transport.closed is True
    assert transport.last.exited is True
    assert machine.state is D


@pytest.mark.asyncio
async def test_message_client_sends_hello_and_decodes(transport, scheduler, settle):
    client = MessageClient(
        "ws://relay.local/ws",
        transport=transport,
        scheduler=scheduler,
        client_name="kitchen",
    )
    received = []
    client.on_message(received.append)
    client.start()
    await settle()
    transport.last.accept()
    await settle()

    link = transport.last.link
    assert [json.loads(raw) for raw in link.sent] == [{"type": "hello", "client": "kitchen"}]

    link.feed("{not json")
    link.feed(json.dumps({"type": "bogus"}))
    link.feed('{"type": "text", "content": "x", "duration": Infinity}')
    link.feed('{"type": "text", "content": "x", "duration": 1e400}')
    link.feed(json.dumps({"type": "text", "content": "Dinner", "duration": 3000}))
    await settle()

    assert received == [
        DisplayMessage(kind=MessageKind.TEXT, content="Dinner", duration_ms=3000)
    ]
    assert client.state is CONNECTED
    assert client.retry_pending is False
    assert len(transport.attempts) == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_power_feed_retries_at_fixed_interval(transport, scheduler, settle):
    client = PowerFeedClient(
        "http://meter.local/events", transport=transport, scheduler=scheduler
    )
    client.start()

    for _ in range(25):
        await settle()
        transport.last.fail()
        await settle()
        assert [h.delay for h in scheduler.pending] == [5.0]
        scheduler.fire_next()

    assert client.desired is True
    await client.aclose()


@pytest.mark.asyncio
async def test_power_feed_skips_other_event_types(transport, scheduler, settle):
    client = PowerFeedClient(
        "http://meter.local/events", transport=transport, scheduler=scheduler
    )
    readings = []
    client.on_message(readings.append)
    client.start()
    await settle()
    transport.last.accept()
    await settle()

    link = transport.last.link
    link.feed(json.dumps({"type": "heartbeat"}))
    link.feed(json.dumps(["not", "an", "object"]))
    link.feed(
        json.dumps(
            {
                "type": "power.reading",
                "timestamp": "2024-05-01T12:00:00Z",
                "watts": 1234.5,
                "applianceId": "oven",
                "nickname": "Oven",
            }
        )
    )
    await settle()

    assert len(readings) == 1
    assert isinstance(readings[0], PowerReading)
    assert readings[0].watts == 1234.5
    assert link.sent == []
    await client.aclose()
