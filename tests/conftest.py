import asyncio
import json
from collections import deque

import pytest

from peerdrop.core.interfaces import ChannelAdapter
from peerdrop.share.broker import Broker
from peerdrop.share.room import Connection


class FakeConnection(Connection):
    """Connection that records what the broker sends it."""

    def __init__(self, name="peer"):
        super().__init__(peer=name)
        self.sent = []

    def deliver(self, data):
        self.sent.append(data)

    def types(self):
        return [m["type"] for m in self.sent]

    def last(self):
        return self.sent[-1] if self.sent else None

    def of_type(self, type_):
        return [m for m in self.sent if m["type"] == type_]


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class LoopbackChannel(ChannelAdapter):
    """
    In-memory channel: frames are buffered on send and only handed to the
    receiving side when the sender waits for a drain (or on flush()).
    """

    def __init__(self, deliver, drain_bytes=64 * 1024 * 3):
        self.deliver = deliver
        self.drain_bytes = drain_bytes
        self.queue = deque()
        self.buffered = 0
        self.max_buffered = 0
        self.drain_waits = 0

    @staticmethod
    def _size(data):
        return len(data.encode()) if isinstance(data, str) else len(data)

    def send(self, data):
        self.queue.append(data)
        self.buffered += self._size(data)
        self.max_buffered = max(self.max_buffered, self.buffered)

    @property
    def buffered_amount(self):
        return self.buffered

    async def wait_for_drain(self, timeout):
        self.drain_waits += 1
        await asyncio.sleep(0)
        self._drain(self.drain_bytes)

    def _drain(self, limit):
        moved = 0
        while self.queue and moved < limit:
            data = self.queue.popleft()
            size = self._size(data)
            self.buffered -= size
            moved += size
            self.deliver(data)

    def flush(self):
        self._drain(float("inf"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker(clock):
    return Broker(clock=clock)


@pytest.fixture
def connect(broker):
    """Register a new fake connection with the broker."""
    def _connect(name="peer"):
        conn = FakeConnection(name)
        broker.register(conn)
        return conn
    return _connect


@pytest.fixture
def send(broker):
    """Deliver a message dict to the broker as a JSON text frame."""
    def _send(conn, **message):
        broker.handle(conn, json.dumps(message))
    return _send


@pytest.fixture
def loopback():
    return LoopbackChannel
