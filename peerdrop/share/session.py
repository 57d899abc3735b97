"""
Host and receiver sides of a share, driven by broker messages.

Both sessions read the broker link in a loop and bring up a PeerLink when
the broker pairs them. The host offers and streams files; the receiver
answers, reassembles and reports ``transfer-complete`` once ``all-complete``
arrives.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from peerdrop.app.commands import ShareNotify, TransferProgress
from peerdrop.core.interfaces import FileSink

from .client import SignalingClient
from .errors import IncorrectPassword, LocalIOError, PolicyError, TransportError, policy_error_from_code
from .link import PeerLink
from .messages import (
    Answer, Error, IceCandidate, Offer, PasswordRequired, PeerJoined, PeerLeft,
    RoomClosed, RoomCreated, RoomJoined,
)
from .models import FileEntry, TransferSession, TransferStats
from .room import HOST, RECEIVER, Room
from .stats import StatsClient
from .transfer import FileReceiver, FileSender

logger = logging.getLogger(__name__)

LinkFactory = Callable[..., PeerLink]


class _Session:
    def __init__(self, client: SignalingClient, bus=None,
                 ice_servers: Optional[List[Dict]] = None,
                 link_factory: LinkFactory = PeerLink):
        self.client = client
        self.bus = bus
        self.ice_servers = ice_servers
        self.link_factory = link_factory
        self.link: Optional[PeerLink] = None

    def _notify(self, msg: str, is_error: bool = False):
        """Send notification via bus."""
        if self.bus is None:
            (logger.error if is_error else logger.info)(msg)
            return
        self.bus.handle(ShareNotify(message=msg, is_error=is_error))

    def _progress(self, direction: str, session: TransferSession):
        if self.bus is None:
            return
        self.bus.handle(TransferProgress(
            direction=direction,
            name=session.name,
            index=session.index,
            total_files=session.total_files,
            bytes_done=session.bytes_moved,
            size=session.size,
            percent=session.progress,
            speed=session.speed(),
            eta=session.eta(),
        ))

    def _new_link(self, role: str) -> PeerLink:
        return self.link_factory(role, self.client.room_id, self.client.send,
                                 self.ice_servers, on_state=self._notify)

    async def _drop_link(self):
        link, self.link = self.link, None
        if link is not None:
            await link.close()


class HostSession(_Session):
    """
    Creates the room and serves every receiver the broker pairs with it,
    until the room is closed (download limit) or the broker link is lost.
    """

    def __init__(self, client: SignalingClient, entries: List[FileEntry],
                 options: Optional[Dict] = None, room_id: Optional[str] = None,
                 stats_client: Optional[StatsClient] = None, **kwargs):
        super().__init__(client, **kwargs)
        if not entries:
            raise ValueError("Nothing to send")
        self.entries = entries
        self.options = options or {}
        self.room_id = room_id or Room.generate_room_id()
        self.stats_client = stats_client
        self.completed: List[TransferStats] = []
        self._transfer: Optional[asyncio.Task] = None

    async def start(self):
        """Register the room with the broker."""
        await self.client.create_room(self.room_id, self.options)

    async def serve(self) -> List[TransferStats]:
        try:
            while True:
                msg = await self.client.next_message()
                if isinstance(msg, PeerJoined):
                    await self._handshake(self._on_peer_joined(msg))
                elif isinstance(msg, Answer):
                    if self.link is not None:
                        await self._handshake(self.link.handle_answer(msg.sdp))
                elif isinstance(msg, IceCandidate):
                    if self.link is not None:
                        await self.link.add_remote_candidate(msg.candidate)
                elif isinstance(msg, PeerLeft):
                    self._notify(msg.message)
                    await self._end_transfer()
                elif isinstance(msg, RoomClosed):
                    self._notify(msg.reason)
                    break
                elif isinstance(msg, RoomCreated):
                    self._notify("Reconnected to broker")
                elif isinstance(msg, Error):
                    self._notify(msg.message, is_error=True)
                else:
                    logger.debug(f"Host ignoring {msg.TYPE}")
        finally:
            await self._end_transfer()
        return self.completed

    async def _handshake(self, step):
        """Run one handshake step; a failure drops this receiver, not the room."""
        try:
            await step
        except TransportError as e:
            self._notify(str(e), is_error=True)
            await self._end_transfer()

    async def _on_peer_joined(self, msg: PeerJoined):
        if msg.role != HOST:
            logger.warning(f"peer-joined names us {msg.role}, expected host")
        await self._end_transfer()
        self._notify("Receiver connected! Establishing connection...")
        self.link = self._new_link(HOST)
        await self.link.create_offer()
        self._transfer = asyncio.ensure_future(self._send_files(self.link))

    async def _send_files(self, link: PeerLink):
        try:
            channel = await link.wait_open()
            sender = FileSender(channel, on_progress=lambda s: self._progress("send", s))
            stats = await sender.send_batch(self.entries)
        except (TransportError, LocalIOError) as e:
            self._notify(str(e), is_error=True)
            return
        link.mark_complete()
        self.completed.append(stats)
        self._notify(f"Sent {stats.files} file(s), {stats.bytes} bytes")
        if self.stats_client is not None:
            await asyncio.to_thread(self.stats_client.post, stats)

    async def _end_transfer(self):
        task, self._transfer = self._transfer, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._drop_link()


class ReceiverSession(_Session):
    """Joins a room, answers the host's offer and saves what arrives."""

    def __init__(self, client: SignalingClient, room_id: str, sink: FileSink,
                 password: Optional[str] = None,
                 prompt_password: Optional[Callable[[], Optional[str]]] = None,
                 **kwargs):
        super().__init__(client, **kwargs)
        self.room_id = room_id
        self.password = password
        self.prompt_password = prompt_password
        self.receiver = FileReceiver(sink, on_progress=lambda s: self._progress("receive", s))
        self.done = asyncio.Event()

    async def run(self) -> TransferStats:
        await self.client.join_room(self.room_id)
        try:
            while not self.done.is_set():
                msg = await self._next()
                if msg is not None:
                    await self._dispatch(msg)
            if self.receiver.failure is not None:
                raise self.receiver.failure
            if self.link is not None:
                self.link.mark_complete()
            await self.client.transfer_complete()
            self._notify(f"Received {self.receiver.stats.files} file(s)")
            return self.receiver.stats
        finally:
            await self._drop_link()

    async def _next(self):
        waiters = {asyncio.ensure_future(self.done.wait())}
        if self.link is not None:
            waiters.add(asyncio.ensure_future(self.link.failed.wait()))
        get = asyncio.ensure_future(self.client.next_message())
        try:
            await asyncio.wait(waiters | {get}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                w.cancel()
        if get.done():
            return get.result()
        get.cancel()
        if self.link is not None and self.link.failure is not None and not self.done.is_set():
            raise self.link.failure
        return None

    async def _dispatch(self, msg):
        if isinstance(msg, PasswordRequired):
            await self._send_password(self.password)
        elif isinstance(msg, Error):
            if msg.code == IncorrectPassword.__name__:
                if self.prompt_password is None:
                    raise IncorrectPassword(msg.message)
                self._notify(msg.message, is_error=True)
                await self._send_password(None)
            else:
                raise policy_error_from_code(msg.code, msg.message)
        elif isinstance(msg, RoomJoined):
            self._notify("Joined room, waiting for sender...")
        elif isinstance(msg, PeerJoined):
            if msg.role != RECEIVER:
                logger.warning(f"peer-joined names us {msg.role}, expected receiver")
            self._ensure_link()
        elif isinstance(msg, Offer):
            await self._ensure_link().handle_offer(msg.sdp)
        elif isinstance(msg, IceCandidate):
            await self._ensure_link().add_remote_candidate(msg.candidate)
        elif isinstance(msg, PeerLeft):
            raise TransportError(msg.message)
        elif isinstance(msg, RoomClosed):
            raise TransportError(msg.reason)
        else:
            logger.debug(f"Receiver ignoring {msg.TYPE}")

    async def _send_password(self, password: Optional[str]):
        if not password and self.prompt_password is not None:
            password = await asyncio.to_thread(self.prompt_password)
        if not password:
            raise PolicyError("This room is password protected")
        await self.client.verify_password(password)

    def _ensure_link(self) -> PeerLink:
        if self.link is None:
            self.link = self._new_link(RECEIVER)
            self.link.on_message = self._on_channel_message
        return self.link

    def _on_channel_message(self, message):
        self.receiver.handle_message(message)
        if self.receiver.finished or self.receiver.failure is not None:
            self.done.set()
