"""
Session broker: pairs a host and a receiver per room and relays their
handshake messages without interpreting them.

Every inbound frame is handled to completion without awaiting; replies are
queued on the target connection. The only other activities are the liveness
round and the inactivity sweep, both driven by ``run_maintenance``.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from .errors import PolicyError, ProtocolError, QuotaExhausted, RoomExpired, RoomNotFound, IncorrectPassword
from .messages import (
    Answer, CreateRoom, Error, IceCandidate, JoinRoom, Offer, PasswordRequired, PeerJoined,
    PeerLeft, Ping, Pong, RoomClosed, RoomCreated, RoomJoined, TransferComplete,
    VerifyPassword, parse_signal,
)
from .policy import AccessPolicy, check_password, evaluate_join, quota_reached
from .registry import RoomRegistry
from .room import HOST, RECEIVER, Connection, Room

logger = logging.getLogger(__name__)

INACTIVITY_TIMEOUT = 30 * 60
SWEEP_INTERVAL = 5 * 60
LIVENESS_INTERVAL = 30


class Broker:
    def __init__(self, registry: Optional[RoomRegistry] = None,
                 inactivity_timeout: float = INACTIVITY_TIMEOUT,
                 clock: Callable[[], float] = time.time):
        self.registry = registry or RoomRegistry()
        self.inactivity_timeout = inactivity_timeout
        self.clock = clock
        self.connections: Dict[str, Connection] = {}
        self._handlers = {
            CreateRoom: self._on_create_room,
            JoinRoom: self._on_join_room,
            VerifyPassword: self._on_verify_password,
            Offer: self._on_relay,
            Answer: self._on_relay,
            IceCandidate: self._on_relay,
            TransferComplete: self._on_transfer_complete,
            Ping: self._on_ping,
            Pong: self._on_pong,
        }

    # --- connection lifecycle ---

    def register(self, conn: Connection):
        conn.update_heartbeat(self.clock())
        self.connections[conn.conn_id] = conn
        logger.info(f"New connection: {conn}")

    def handle(self, conn: Connection, raw) -> None:
        """Process one inbound frame. Never raises."""
        conn.update_heartbeat(self.clock())
        try:
            message = parse_signal(raw)
            handler = self._handlers.get(type(message))
            if handler is None:
                raise ProtocolError(f"'{message.TYPE}' is not accepted from clients")
            handler(conn, message)
        except PolicyError as e:
            logger.info(f"{conn}: {e.code}: {e.message}")
            conn.send(Error(message=e.message, code=e.code))
        except ProtocolError as e:
            logger.warning(f"Ignoring message from {conn}: {e}")
        except Exception:
            logger.exception(f"Unexpected error handling message from {conn}")

    def disconnect(self, conn: Connection) -> None:
        """Tear down whatever the connection held. Safe to call repeatedly."""
        self.connections.pop(conn.conn_id, None)
        conn.closed = True

        pending_room = self.registry.get(conn.pending_room_id)
        if pending_room is not None:
            pending_room.remove_pending(conn)

        room = self.registry.get(conn.room_id)
        if room is None or not room.is_member(conn):
            conn.unbind()
            return

        if conn is room.host:
            if room.receiver is not None:
                room.receiver.send(PeerLeft(message="Sender disconnected"))
            self._close_room(room)
            logger.info(f"Host {conn} left, room {room.room_id} closed")
        else:
            room.clear_receiver()
            room.host.send(PeerLeft(message="Receiver disconnected"))
            logger.info(f"Receiver {conn} left room {room.room_id}")
        conn.unbind()

    # --- handlers ---

    def _on_create_room(self, conn: Connection, msg: CreateRoom):
        if conn.room_id:
            raise ProtocolError(f"Connection already bound to room {conn.room_id}")
        try:
            policy = AccessPolicy.from_options(msg.options)
        except ProtocolError as e:
            conn.send(Error(message=str(e), code="InvalidOptions"))
            raise

        now = self.clock()
        room = Room(room_id=msg.room_id, host=conn, policy=policy, created_at=now)
        self.registry.add(room)
        self._leave_pending(conn)
        conn.role = HOST
        conn.room_id = room.room_id
        conn.send(RoomCreated(room_id=room.room_id))
        room.announced = True
        logger.info(f"Room created: {room.room_id} by {conn}")

    def _on_join_room(self, conn: Connection, msg: JoinRoom):
        if conn.room_id:
            raise ProtocolError(f"Connection already bound to room {conn.room_id}")
        room = self.registry.get(msg.room_id)
        if room is None:
            raise RoomNotFound()

        needs_password = self._evaluate(room)
        self._leave_pending(conn)
        if needs_password:
            room.add_pending(conn)
            conn.send(PasswordRequired(room_id=room.room_id))
            logger.info(f"{conn} waiting on password for room {room.room_id}")
            return
        self._pair(room, conn)

    def _on_verify_password(self, conn: Connection, msg: VerifyPassword):
        room = self.registry.get(msg.room_id)
        if room is None:
            raise RoomNotFound()
        if conn not in room.pending:
            raise ProtocolError(f"verify-password without a pending join on {room.room_id}")
        if not check_password(room.policy, msg.password):
            raise IncorrectPassword()
        try:
            self._evaluate(room)
        except PolicyError:
            room.remove_pending(conn)
            raise
        self._pair(room, conn)

    def _on_relay(self, conn: Connection, msg):
        room = self.registry.get(msg.room_id)
        if room is None:
            raise ProtocolError(f"{msg.TYPE} for unknown room {msg.room_id}")
        if not room.is_member(conn):
            raise ProtocolError(f"{conn} is not part of room {msg.room_id}")
        target = room.counterpart(conn)
        if target is None:
            logger.debug(f"Dropping {msg.TYPE} in {room.room_id}: no counterpart")
            return
        room.touch(self.clock())
        target.send_raw(msg.to_dict())
        logger.debug(f"{msg.TYPE} forwarded in room {room.room_id}")

    def _on_transfer_complete(self, conn: Connection, msg: TransferComplete):
        room = self.registry.get(msg.room_id)
        if room is None:
            raise ProtocolError(f"transfer-complete for unknown room {msg.room_id}")
        if not room.is_member(conn):
            raise ProtocolError(f"{conn} is not part of room {msg.room_id}")
        room.download_count += 1
        room.touch(self.clock())
        logger.info(f"Room {room.room_id}: download {room.download_count}/{room.policy.max_downloads or 'unlimited'}")
        if quota_reached(room):
            room.host.send(RoomClosed(reason="Download limit reached"))
            self._close_room(room)

    def _on_ping(self, conn: Connection, msg: Ping):
        room = self.registry.get(conn.room_id)
        if room is not None and room.is_member(conn):
            room.touch(self.clock())
        conn.send(Pong())

    def _on_pong(self, conn: Connection, msg: Pong):
        pass  # liveness already recorded in handle()

    # --- helpers ---

    def _evaluate(self, room: Room) -> bool:
        try:
            return evaluate_join(room, self.clock())
        except (RoomExpired, QuotaExhausted):
            self._close_room(room)
            raise

    def _pair(self, room: Room, conn: Connection):
        room.bind_receiver(conn, self.clock())
        conn.send(RoomJoined(room_id=room.room_id))
        room.host.send(PeerJoined(room_id=room.room_id, role=HOST))
        conn.send(PeerJoined(room_id=room.room_id, role=RECEIVER))
        logger.info(f"Receiver {conn} joined room: {room.room_id}")

    def _leave_pending(self, conn: Connection):
        room = self.registry.get(conn.pending_room_id)
        if room is not None:
            room.remove_pending(conn)
        conn.pending_room_id = None

    def _close_room(self, room: Room):
        for member in (room.host, room.receiver):
            if member is not None and member.room_id == room.room_id:
                member.unbind()
        self.registry.remove(room)

    # --- maintenance ---

    def sweep_inactive(self, now: Optional[float] = None) -> List[str]:
        """Delete rooms idle past the inactivity window, silently."""
        now = self.clock() if now is None else now
        swept = []
        for room in self.registry.rooms():
            if room.is_idle(now, self.inactivity_timeout):
                logger.info(f"Cleaning up inactive room: {room.room_id}")
                self._close_room(room)
                swept.append(room.room_id)
        return swept

    def check_liveness(self) -> List[Connection]:
        """Terminate connections silent since the last round, ping the rest."""
        dead = []
        for conn in list(self.connections.values()):
            if not conn.is_alive:
                logger.info(f"Terminating unresponsive connection {conn}")
                conn.terminate()
                self.disconnect(conn)
                dead.append(conn)
                continue
            conn.is_alive = False
            conn.send(Ping())
        return dead

    async def run_maintenance(self, sweep_interval: float = SWEEP_INTERVAL,
                              liveness_interval: float = LIVENESS_INTERVAL):
        """Run the liveness and sweep timers until cancelled."""
        async def every(interval, action):
            while True:
                await asyncio.sleep(interval)
                try:
                    action()
                except Exception:
                    logger.exception(f"Maintenance task {action.__name__} failed")

        await asyncio.gather(
            every(liveness_interval, self.check_liveness),
            every(sweep_interval, self.sweep_inactive),
        )
