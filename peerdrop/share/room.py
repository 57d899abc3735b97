"""Room and Connection models for the signaling broker."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import secrets
import string
import time
import uuid

from .messages import Message
from .policy import AccessPolicy

HOST = "host"
RECEIVER = "receiver"


class RoomState(Enum):
    CREATED = "CREATED"
    WAITING_FOR_PEER = "WAITING_FOR_PEER"
    PASSWORD_PENDING = "PASSWORD_PENDING"
    PAIRED = "PAIRED"
    CLOSED = "CLOSED"


@dataclass(eq=False)
class Connection:
    """A registered broker endpoint. Subclasses decide how frames leave."""
    conn_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    peer: str = "unknown"
    role: Optional[str] = None  # host, receiver
    room_id: Optional[str] = None
    pending_room_id: Optional[str] = None  # waiting on verify-password
    is_alive: bool = True
    closed: bool = False
    last_seen: float = field(default_factory=time.time)

    def update_heartbeat(self, now: Optional[float] = None):
        """Record proof of liveness."""
        self.is_alive = True
        self.last_seen = now if now is not None else time.time()

    def send(self, message: Message) -> None:
        """Queue a message for the peer; never suspends."""
        if self.closed:
            return
        self.deliver(message.to_dict())

    def send_raw(self, data: Dict[str, Any]) -> None:
        if self.closed:
            return
        self.deliver(data)

    def deliver(self, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    def terminate(self) -> None:
        """Mark closed; subclasses also tear down the socket."""
        self.closed = True

    def unbind(self):
        self.role = None
        self.room_id = None
        self.pending_room_id = None

    def __str__(self):
        return f"{self.conn_id}@{self.peer}"


@dataclass
class Room:
    """Pairs one host with at most one receiver under an access policy."""
    room_id: str
    host: Connection
    policy: AccessPolicy = field(default_factory=AccessPolicy)
    created_at: float = field(default_factory=time.time)
    last_activity: float = 0.0
    receiver: Optional[Connection] = None
    pending: List[Connection] = field(default_factory=list)
    download_count: int = 0
    closed: bool = False
    announced: bool = False  # room-created sent

    def __post_init__(self):
        if not self.last_activity:
            self.last_activity = self.created_at

    @staticmethod
    def generate_room_id(length: int = 12) -> str:
        """Generate a random lowercase room id (e.g. k3x9q0a7m2bz)."""
        chars = string.ascii_lowercase + string.digits
        return ''.join(secrets.choice(chars) for _ in range(length))

    @property
    def state(self) -> RoomState:
        if self.closed:
            return RoomState.CLOSED
        if self.receiver is not None:
            return RoomState.PAIRED
        if self.pending:
            return RoomState.PASSWORD_PENDING
        if self.announced:
            return RoomState.WAITING_FOR_PEER
        return RoomState.CREATED

    def touch(self, now: float):
        self.last_activity = now

    def is_idle(self, now: float, timeout: float) -> bool:
        return now - self.last_activity > timeout

    def counterpart(self, conn: Connection) -> Optional[Connection]:
        """The other bound peer, or None if conn is not bound here."""
        if conn is self.host:
            return self.receiver
        if conn is self.receiver:
            return self.host
        return None

    def is_member(self, conn: Connection) -> bool:
        return conn is self.host or conn is self.receiver

    def add_pending(self, conn: Connection):
        if conn not in self.pending:
            self.pending.append(conn)
        conn.pending_room_id = self.room_id

    def remove_pending(self, conn: Connection) -> bool:
        if conn in self.pending:
            self.pending.remove(conn)
            conn.pending_room_id = None
            return True
        return False

    def bind_receiver(self, conn: Connection, now: float):
        self.remove_pending(conn)
        conn.role = RECEIVER
        conn.room_id = self.room_id
        self.receiver = conn
        self.touch(now)

    def clear_receiver(self):
        self.receiver = None

    def close(self):
        """Release every handle; the room is terminal afterwards."""
        self.closed = True
        for conn in list(self.pending):
            self.remove_pending(conn)
        self.receiver = None
