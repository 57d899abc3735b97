import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosedOK

from peerdrop.share.client import SignalingClient
from peerdrop.share.errors import RoomExists, TransportError


class FakeWebSocket:
    def __init__(self):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.closed = False

    async def send(self, data):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(json.loads(data))

    async def recv(self):
        item = await self.incoming.get()
        if item is None:
            raise ConnectionClosedOK(None, None)
        return item

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def feed(self, **message):
        self.incoming.put_nowait(json.dumps(message))

    def drop(self):
        self.closed = True
        self.incoming.put_nowait(None)

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)

    def types(self):
        return [m["type"] for m in self.sent]


class Dialer:
    """Hands out the given sockets in order; exceptions are raised instead."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("unreachable")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _client(dialer, **kwargs):
    kwargs.setdefault("reconnect_delay", 0)
    return SignalingClient("ws://broker/ws", connector=dialer, **kwargs)


def test_create_room_waits_for_confirmation():
    async def scenario():
        ws = FakeWebSocket()
        client = _client(Dialer(ws))
        await client.connect()
        ws.feed(type="room-created", roomId="abc")
        await client.create_room("abc", {"maxDownloads": 1})
        await client.close()
        return client, ws

    client, ws = asyncio.run(scenario())
    assert ws.sent[0] == {"type": "create-room", "roomId": "abc", "options": {"maxDownloads": 1}}
    assert client.hosting


def test_create_room_error_becomes_policy_error():
    async def scenario():
        ws = FakeWebSocket()
        client = _client(Dialer(ws))
        await client.connect()
        ws.feed(type="error", message="Room already exists", code="RoomExists")
        try:
            await client.create_room("abc")
        finally:
            await client.close()

    with pytest.raises(RoomExists):
        asyncio.run(scenario())


def test_create_room_times_out():
    async def scenario():
        client = _client(Dialer(FakeWebSocket()))
        await client.connect()
        try:
            await client.create_room("abc", timeout=0.05)
        finally:
            await client.close()

    with pytest.raises(TransportError):
        asyncio.run(scenario())


def test_connect_failure_is_a_transport_error():
    async def scenario():
        await _client(Dialer(OSError("refused"))).connect()

    with pytest.raises(TransportError):
        asyncio.run(scenario())


def test_broker_ping_is_answered_and_not_queued():
    async def scenario():
        ws = FakeWebSocket()
        client = _client(Dialer(ws))
        await client.connect()
        ws.feed(type="ping")
        ws.feed(type="room-joined", roomId="r")
        msg = await client.next_message(timeout=1)
        await client.close()
        return ws, msg

    ws, msg = asyncio.run(scenario())
    assert ws.types() == ["pong"]
    assert msg.TYPE == "room-joined"


def test_host_sends_keepalive_pings():
    async def scenario():
        ws = FakeWebSocket()
        client = _client(Dialer(ws), keepalive_interval=0.01)
        await client.connect()
        ws.feed(type="room-created", roomId="abc")
        await client.create_room("abc")
        await asyncio.sleep(0.05)
        await client.close()
        return ws

    ws = asyncio.run(scenario())
    assert ws.types().count("ping") >= 2


def test_host_reconnects_and_recreates_room():
    async def scenario():
        first, second = FakeWebSocket(), FakeWebSocket()
        dialer = Dialer(first, OSError("still down"), second)
        client = _client(dialer)
        await client.connect()
        first.feed(type="room-created", roomId="abc")
        await client.create_room("abc", {"password": "pw"})
        second.feed(type="room-created", roomId="abc")
        first.drop()
        msg = await client.next_message(timeout=1)
        await client.close()
        return client, dialer, second, msg

    client, dialer, second, msg = asyncio.run(scenario())
    assert dialer.calls == 3
    assert client.reconnects == 1
    assert client.failure is None
    assert second.sent[0] == {"type": "create-room", "roomId": "abc", "options": {"password": "pw"}}
    assert msg.TYPE == "room-created"


def test_refused_room_counts_as_a_failed_reconnect():
    async def scenario():
        first, stale, fresh = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
        dialer = Dialer(first, stale, fresh)
        client = _client(dialer)
        await client.connect()
        first.feed(type="room-created", roomId="abc")
        await client.create_room("abc")
        # the broker still holds the old socket on the second try
        stale.feed(type="error", message="Room already exists", code="RoomExists")
        fresh.feed(type="room-created", roomId="abc")
        first.drop()
        msg = await client.next_message(timeout=1)
        await client.close()
        return client, dialer, stale, msg

    client, dialer, stale, msg = asyncio.run(scenario())
    assert dialer.calls == 3
    assert client.reconnects == 1
    assert client.failure is None
    assert stale.closed
    assert msg.TYPE == "room-created"


def test_host_fails_when_every_reconnect_is_refused():
    async def scenario():
        first = FakeWebSocket()
        refusing = [FakeWebSocket(), FakeWebSocket()]
        for ws in refusing:
            ws.feed(type="error", message="Room already exists", code="RoomExists")
        client = _client(Dialer(first, *refusing), reconnect_attempts=2)
        await client.connect()
        first.feed(type="room-created", roomId="abc")
        await client.create_room("abc")
        first.drop()
        try:
            await client.next_message(timeout=1)
        finally:
            await client.close()
            assert client.reconnects == 0

    with pytest.raises(TransportError, match="2 reconnect attempts"):
        asyncio.run(scenario())


def test_host_gives_up_after_reconnect_attempts():
    async def scenario():
        ws = FakeWebSocket()
        dialer = Dialer(ws)
        client = _client(dialer, reconnect_attempts=3)
        await client.connect()
        ws.feed(type="room-created", roomId="abc")
        await client.create_room("abc")
        ws.drop()
        try:
            await client.next_message(timeout=1)
        finally:
            await client.close()
            assert dialer.calls == 4

    with pytest.raises(TransportError, match="3 reconnect attempts"):
        asyncio.run(scenario())


def test_receiver_does_not_reconnect():
    async def scenario():
        ws = FakeWebSocket()
        dialer = Dialer(ws, FakeWebSocket())
        client = _client(dialer)
        await client.connect()
        await client.join_room("abc")
        ws.drop()
        try:
            await client.next_message(timeout=1)
        finally:
            await client.close()
            assert dialer.calls == 1

    with pytest.raises(TransportError, match="lost"):
        asyncio.run(scenario())
