"""
Client side of the broker link.

Wraps one websocket to the broker, turns inbound frames into messages on a
queue and keeps a hosted room alive: the host pings every
``KEEPALIVE_INTERVAL`` seconds and, when the socket drops, reconnects and
re-issues ``create-room`` with the same id and options. An attempt only
counts once the broker confirms with ``room-created``. Receivers do not
reconnect.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import ProtocolError, TransportError, policy_error_from_code
from .messages import (
    CreateRoom, Error, JoinRoom, Message, Ping, Pong, RoomCreated, TransferComplete,
    VerifyPassword, parse_signal,
)

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 25
RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY = 2
ROOM_CREATED_TIMEOUT = 10

_CONNECT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class SignalingClient:
    def __init__(self, url: str,
                 connector: Optional[Callable[[], Awaitable[Any]]] = None,
                 connect_timeout: float = CONNECT_TIMEOUT,
                 keepalive_interval: float = KEEPALIVE_INTERVAL,
                 reconnect_attempts: int = RECONNECT_ATTEMPTS,
                 reconnect_delay: float = RECONNECT_DELAY,
                 on_status: Optional[Callable[[str], None]] = None):
        self.url = url
        self._connector = connector or self._open_websocket
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.on_status = on_status

        self.ws = None
        self.messages: "asyncio.Queue[Optional[Message]]" = asyncio.Queue()
        self.room_id: Optional[str] = None
        self.room_options: Optional[Dict[str, Any]] = None
        self.hosting = False
        self.closed = False
        self.failure: Optional[TransportError] = None
        self.reconnects = 0
        self._reader: Optional[asyncio.Task] = None
        self._keepalive: Optional[asyncio.Task] = None

    async def _open_websocket(self):
        return await ws_connect(self.url, open_timeout=self.connect_timeout)

    async def _dial(self):
        return await asyncio.wait_for(self._connector(), self.connect_timeout)

    async def connect(self):
        try:
            self.ws = await self._dial()
        except _CONNECT_ERRORS as e:
            raise TransportError(f"Could not reach broker at {self.url}: {e}") from e
        logger.info(f"Connected to broker {self.url}")
        self._reader = asyncio.ensure_future(self._read_loop(self.ws))

    # --- outbound ---

    async def send(self, message: Union[Message, Dict[str, Any]]):
        """Send a message; frames sent while the link is down are dropped."""
        if self.ws is None:
            raise TransportError("Not connected to broker")
        data = message.to_json() if isinstance(message, Message) else json.dumps(message)
        try:
            await self.ws.send(data)
        except ConnectionClosed:
            logger.warning(f"Broker link down, dropped {data[:40]}")

    async def create_room(self, room_id: str, options: Optional[Dict[str, Any]] = None,
                          timeout: float = ROOM_CREATED_TIMEOUT):
        """Register a room and wait for ``room-created``; starts the keepalive."""
        self.room_id = room_id
        self.room_options = options
        await self.send(CreateRoom(room_id=room_id, options=options))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            msg = await self.next_message(max(0.0, deadline - loop.time()))
            if isinstance(msg, RoomCreated) and msg.room_id == room_id:
                break
            if isinstance(msg, Error):
                self.room_id = None
                raise policy_error_from_code(msg.code, msg.message)
            logger.debug(f"Ignoring {msg.TYPE} while waiting for room-created")

        self.hosting = True
        self._keepalive = asyncio.ensure_future(self._keepalive_loop())
        logger.info(f"Room created: {room_id}")

    async def join_room(self, room_id: str):
        self.room_id = room_id
        await self.send(JoinRoom(room_id=room_id))

    async def verify_password(self, password: str):
        await self.send(VerifyPassword(room_id=self.room_id, password=password))

    async def transfer_complete(self):
        await self.send(TransferComplete(room_id=self.room_id))

    # --- inbound ---

    async def next_message(self, timeout: Optional[float] = None) -> Message:
        """Next broker message; raises TransportError once the link is gone."""
        try:
            msg = await asyncio.wait_for(self.messages.get(), timeout)
        except asyncio.TimeoutError:
            raise TransportError("Timed out waiting for the broker") from None
        if msg is None:
            self.messages.put_nowait(None)
            raise self.failure or TransportError("Broker connection closed")
        return msg

    async def _read_loop(self, ws):
        try:
            async for raw in ws:
                try:
                    msg = parse_signal(raw)
                except ProtocolError as e:
                    logger.warning(f"Ignoring broker frame: {e}")
                    continue
                if isinstance(msg, Ping):
                    await self.send(Pong())
                    continue
                if isinstance(msg, Pong):
                    continue
                await self.messages.put(msg)
        except ConnectionClosed as e:
            logger.info(f"Broker connection closed: {e}")

        if self.closed or ws is not self.ws:
            return
        if self.hosting and self.room_id:
            if await self._reconnect():
                return
            self._fail(TransportError(
                f"Lost connection to broker after {self.reconnect_attempts} reconnect attempts"))
        else:
            self._fail(TransportError("Connection to broker lost"))

    # --- keepalive / reconnect ---

    async def _keepalive_loop(self):
        while not self.closed:
            await asyncio.sleep(self.keepalive_interval)
            await self.send(Ping())

    async def _reconnect(self) -> bool:
        for attempt in range(1, self.reconnect_attempts + 1):
            self._status(f"Connection lost, reconnecting ({attempt}/{self.reconnect_attempts})...")
            await asyncio.sleep(self.reconnect_delay)
            if self.closed:
                return True
            try:
                ws = await self._dial()
            except _CONNECT_ERRORS as e:
                logger.warning(f"Reconnect attempt {attempt} failed: {e}")
                continue
            self.ws = ws
            try:
                created = await self._recreate_room(ws)
            except (asyncio.TimeoutError, ConnectionClosed) as e:
                logger.warning(f"Reconnect attempt {attempt}: no room-created from broker ({e!r})")
                created = False
            if not created:
                await ws.close()
                continue
            self.reconnects += 1
            self._reader = asyncio.ensure_future(self._read_loop(ws))
            await self.messages.put(RoomCreated(room_id=self.room_id))
            logger.info(f"Reconnected to broker, room {self.room_id} re-registered")
            return True
        return False

    async def _recreate_room(self, ws, timeout: float = ROOM_CREATED_TIMEOUT) -> bool:
        """
        Re-issue ``create-room`` on a fresh socket and read until the broker
        answers. Returns False when the broker refuses, e.g. with
        ``RoomExists`` while it still holds the old, half-open connection.
        """
        await self.send(CreateRoom(room_id=self.room_id, options=self.room_options))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            raw = await asyncio.wait_for(ws.recv(), max(0.0, deadline - loop.time()))
            try:
                msg = parse_signal(raw)
            except ProtocolError as e:
                logger.warning(f"Ignoring broker frame: {e}")
                continue
            if isinstance(msg, Ping):
                await self.send(Pong())
            elif isinstance(msg, RoomCreated) and msg.room_id == self.room_id:
                return True
            elif isinstance(msg, Error):
                logger.warning(f"Broker refused room {self.room_id}: {msg.message} ({msg.code})")
                return False
            elif not isinstance(msg, Pong):
                await self.messages.put(msg)

    def _fail(self, error: TransportError):
        if self.failure is None:
            self.failure = error
            logger.error(str(error))
            self._status(str(error))
        if self._keepalive:
            self._keepalive.cancel()
        self.messages.put_nowait(None)

    def _status(self, text: str):
        if self.on_status:
            self.on_status(text)

    async def close(self):
        self.closed = True
        for task in (self._keepalive, self._reader):
            if task and task is not asyncio.current_task():
                task.cancel()
        if self.ws is not None:
            await self.ws.close()
