import asyncio

import pytest

from peerdrop.share.errors import IncorrectPassword, PolicyError, RoomNotFound, TransportError
from peerdrop.share.messages import (
    Answer, Error, Offer, PasswordRequired, PeerJoined, PeerLeft, RoomClosed, RoomJoined,
)
from peerdrop.share.models import FileEntry
from peerdrop.share.session import HostSession, ReceiverSession
from peerdrop.share.transfer import DirectorySink, FileReceiver


class FakeClient:
    """Stands in for SignalingClient; messages are fed by the test."""

    def __init__(self):
        self.room_id = None
        self.options = None
        self.sent = []
        self.inbox = asyncio.Queue()

    def feed(self, *messages):
        for msg in messages:
            self.inbox.put_nowait(msg)

    async def create_room(self, room_id, options=None):
        self.room_id, self.options = room_id, options

    async def join_room(self, room_id):
        self.room_id = room_id
        self.sent.append(("join", room_id))

    async def verify_password(self, password):
        self.sent.append(("verify", password))

    async def transfer_complete(self):
        self.sent.append(("complete", self.room_id))

    async def send(self, message):
        self.sent.append(("signal", message))

    async def next_message(self, timeout=None):
        return await self.inbox.get()


class FakeLink:
    def __init__(self, role, channel=None):
        self.role = role
        self.channel = channel
        self.on_message = None
        self.failed = asyncio.Event()
        self.failure = None
        self.completed = False
        self.closed = False
        self.calls = []

    async def create_offer(self):
        self.calls.append("create-offer")

    async def handle_offer(self, sdp):
        self.calls.append(("offer", sdp))

    async def handle_answer(self, sdp):
        self.calls.append(("answer", sdp))

    async def add_remote_candidate(self, candidate):
        self.calls.append(("candidate", candidate))

    async def wait_open(self, timeout=30):
        if self.failure is not None:
            raise self.failure
        return self.channel

    def mark_complete(self):
        self.completed = True

    async def close(self):
        self.closed = True


class RecordingStats:
    def __init__(self):
        self.posted = []

    def post(self, stats):
        self.posted.append(stats)
        return True


async def _until(condition):
    for _ in range(300):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition never became true")


def _file(tmp_path, name, data):
    path = tmp_path / "src" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return FileEntry.from_path(str(path))


def test_host_needs_files():
    with pytest.raises(ValueError):
        HostSession(FakeClient(), [])


def test_host_serves_a_paired_receiver(tmp_path, loopback):
    entry = _file(tmp_path, "a.txt", b"hello")
    received = FileReceiver(DirectorySink(tmp_path / "out"))
    links, stats_client = [], RecordingStats()

    def factory(role, room_id, send, ice_servers, on_state=None):
        links.append(FakeLink(role, loopback(received.handle_message)))
        return links[-1]

    async def scenario():
        client = FakeClient()
        session = HostSession(client, [entry], options={"maxDownloads": 1}, room_id="r1",
                              stats_client=stats_client, link_factory=factory)
        await session.start()
        serving = asyncio.ensure_future(session.serve())
        client.feed(PeerJoined(room_id="r1", role="host"), Answer(room_id="r1", sdp="v=0 answer"))
        await _until(lambda: stats_client.posted)
        client.feed(RoomClosed(reason="Download limit reached"))
        return await serving, client

    completed, client = asyncio.run(scenario())
    links[0].channel.flush()

    assert client.options == {"maxDownloads": 1}
    assert links[0].role == "host"
    assert links[0].calls == ["create-offer", ("answer", "v=0 answer")]
    assert links[0].completed and links[0].closed
    assert [s.files for s in completed] == [1]
    assert stats_client.posted == completed
    assert (tmp_path / "out" / "a.txt").read_bytes() == b"hello"


def test_host_keeps_serving_after_peer_leaves(tmp_path):
    entry = _file(tmp_path, "a.txt", b"x")
    links = []

    def factory(role, room_id, send, ice_servers, on_state=None):
        link = FakeLink(role)
        link.failure = TransportError("Connection interrupted")
        links.append(link)
        return link

    async def scenario():
        client = FakeClient()
        session = HostSession(client, [entry], room_id="r1", link_factory=factory)
        await session.start()
        client.feed(
            PeerJoined(room_id="r1", role="host"),
            PeerLeft(message="Receiver disconnected"),
            PeerJoined(room_id="r1", role="host"),
            RoomClosed(reason="Room expired"),
        )
        return await session.serve()

    assert asyncio.run(scenario()) == []
    assert len(links) == 2
    assert all(link.closed for link in links)


def test_receiver_saves_files_and_reports_completion(tmp_path):
    links = []

    def factory(role, room_id, send, ice_servers, on_state=None):
        links.append(FakeLink(role))
        return links[-1]

    async def scenario():
        client = FakeClient()
        session = ReceiverSession(client, "r1", DirectorySink(tmp_path), link_factory=factory)
        client.feed(
            RoomJoined(room_id="r1"),
            PeerJoined(room_id="r1", role="receiver"),
            Offer(room_id="r1", sdp="v=0 offer"),
        )
        running = asyncio.ensure_future(session.run())
        await _until(lambda: links and ("offer", "v=0 offer") in links[0].calls)
        for frame in ('{"type": "file-info", "name": "a.txt", "size": 5}', b"hello",
                      '{"type": "file-complete"}', '{"type": "all-complete"}'):
            links[0].on_message(frame)
        return await running, client

    stats, client = asyncio.run(scenario())

    assert (stats.files, stats.bytes) == (1, 5)
    assert (tmp_path / "a.txt").read_bytes() == b"hello"
    assert client.sent == [("join", "r1"), ("complete", "r1")]
    assert len(links) == 1
    assert links[0].role == "receiver"
    assert links[0].completed and links[0].closed


def test_receiver_reprompts_after_wrong_password(tmp_path):
    clients = []

    async def scenario():
        client = FakeClient()
        clients.append(client)
        session = ReceiverSession(client, "r1", DirectorySink(tmp_path), password="wrong",
                                  prompt_password=lambda: "secret")
        client.feed(
            PasswordRequired(room_id="r1"),
            Error(message="Incorrect password.", code="IncorrectPassword"),
            RoomClosed(reason="Room expired"),
        )
        await session.run()

    with pytest.raises(TransportError, match="Room expired"):
        asyncio.run(scenario())
    assert clients[0].sent == [("join", "r1"), ("verify", "wrong"), ("verify", "secret")]


def test_receiver_without_prompt_stops_on_wrong_password(tmp_path):
    async def scenario():
        client = FakeClient()
        session = ReceiverSession(client, "r1", DirectorySink(tmp_path), password="wrong")
        client.feed(PasswordRequired(room_id="r1"), Error(message="Incorrect password.", code="IncorrectPassword"))
        await session.run()

    with pytest.raises(IncorrectPassword):
        asyncio.run(scenario())


def test_receiver_needs_a_password_for_protected_rooms(tmp_path):
    async def scenario():
        client = FakeClient()
        session = ReceiverSession(client, "r1", DirectorySink(tmp_path))
        client.feed(PasswordRequired(room_id="r1"))
        await session.run()

    with pytest.raises(PolicyError, match="password protected"):
        asyncio.run(scenario())


def test_receiver_surfaces_policy_errors(tmp_path):
    async def scenario():
        client = FakeClient()
        session = ReceiverSession(client, "missing", DirectorySink(tmp_path))
        client.feed(Error(message="Room not found.", code="RoomNotFound"))
        await session.run()

    with pytest.raises(RoomNotFound):
        asyncio.run(scenario())


def test_receiver_fails_when_the_link_fails(tmp_path):
    links = []

    def factory(role, room_id, send, ice_servers, on_state=None):
        links.append(FakeLink(role))
        return links[-1]

    async def scenario():
        client = FakeClient()
        session = ReceiverSession(client, "r1", DirectorySink(tmp_path), link_factory=factory)
        client.feed(PeerJoined(room_id="r1", role="receiver"))
        running = asyncio.ensure_future(session.run())
        await _until(lambda: links)
        await asyncio.sleep(0.02)
        links[0].failure = TransportError("P2P connection failed")
        links[0].failed.set()
        await running

    with pytest.raises(TransportError, match="P2P connection failed"):
        asyncio.run(scenario())
    assert links[0].closed


class BadAnswerLink(FakeLink):
    async def handle_answer(self, sdp):
        self.calls.append(("answer", sdp))
        raise TransportError("Answer failed: bad sdp")


class RecordingBus:
    def __init__(self):
        self.commands = []

    def handle(self, command):
        self.commands.append(command)


def test_bad_answer_drops_only_that_receiver(tmp_path):
    entry = _file(tmp_path, "a.txt", b"x")
    links, bus = [], RecordingBus()

    def factory(role, room_id, send, ice_servers, on_state=None):
        link = BadAnswerLink(role)
        link.failure = TransportError("Connection interrupted")
        links.append(link)
        return link

    async def scenario():
        client = FakeClient()
        session = HostSession(client, [entry], room_id="r1", link_factory=factory, bus=bus)
        await session.start()
        client.feed(
            PeerJoined(room_id="r1", role="host"),
            Answer(room_id="r1", sdp="garbage"),
            PeerLeft(message="Receiver disconnected"),
            PeerJoined(room_id="r1", role="host"),
            RoomClosed(reason="Download limit reached"),
        )
        return await session.serve()

    assert asyncio.run(scenario()) == []
    assert len(links) == 2
    assert links[0].closed
    assert links[1].calls == ["create-offer"]
    errors = [c.message for c in bus.commands if getattr(c, "is_error", False)]
    assert "Answer failed: bad sdp" in errors


def test_failed_offer_keeps_the_room_open(tmp_path):
    entry = _file(tmp_path, "a.txt", b"x")
    links = []

    class NoOfferLink(FakeLink):
        async def create_offer(self):
            raise TransportError("Offer failed: no codecs")

    def factory(role, room_id, send, ice_servers, on_state=None):
        links.append(NoOfferLink(role))
        return links[-1]

    async def scenario():
        client = FakeClient()
        session = HostSession(client, [entry], room_id="r1", link_factory=factory)
        await session.start()
        client.feed(PeerJoined(room_id="r1", role="host"), RoomClosed(reason="Room expired"))
        return await session.serve()

    assert asyncio.run(scenario()) == []
    assert links[0].closed


def test_receiver_ignores_a_stray_answer(tmp_path):
    links = []

    def factory(role, room_id, send, ice_servers, on_state=None):
        links.append(FakeLink(role))
        return links[-1]

    async def scenario():
        client = FakeClient()
        session = ReceiverSession(client, "r1", DirectorySink(tmp_path), link_factory=factory)
        client.feed(
            PeerJoined(room_id="r1", role="receiver"),
            Answer(room_id="r1", sdp="v=0 answer"),
            RoomClosed(reason="Room expired"),
        )
        await session.run()

    with pytest.raises(TransportError, match="Room expired"):
        asyncio.run(scenario())
    assert links[0].calls == []
