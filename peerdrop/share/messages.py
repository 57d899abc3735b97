"""Wire messages for the signaling link and the data channel.

Every message is a small dataclass tagged by ``TYPE``. Fields map to the
camelCase JSON keys used on the wire through their ``wire`` metadata, and
``from_dict`` validates presence and type before anything reaches the broker
or the transfer engine. Unknown tags raise ``ProtocolError``.
"""

import json
from dataclasses import MISSING, dataclass, field, fields
from typing import Any, ClassVar, Dict, Optional, Type, Union

from .errors import ProtocolError

MAX_ROOM_ID_LENGTH = 64


def _wire(key: str, kind=str, default=MISSING):
    """Declare a field serialised as ``key`` and validated against ``kind``."""
    return field(default=default, metadata={"wire": key, "kind": kind})


def _check_kind(name: str, value: Any, kind) -> None:
    kinds = kind if isinstance(kind, tuple) else (kind,)
    # bool is an int subclass; never accept it for numeric fields
    if isinstance(value, bool) and bool not in kinds:
        raise ProtocolError(f"Field '{name}' has wrong type")
    if not isinstance(value, kinds):
        raise ProtocolError(f"Field '{name}' has wrong type")


@dataclass
class Message:
    TYPE: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": self.TYPE}
        for f in fields(self):
            key = f.metadata.get("wire")
            if not key:
                continue
            value = getattr(self, f.name)
            if value is None and f.default is None:
                continue
            data[key] = value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        kwargs = {}
        for f in fields(cls):
            key = f.metadata.get("wire")
            if not key:
                continue
            if data.get(key) is None:
                if f.default is not MISSING:
                    continue
                raise ProtocolError(f"'{cls.TYPE}' is missing '{key}'")
            _check_kind(key, data[key], f.metadata["kind"])
            kwargs[f.name] = data[key]
        message = cls(**kwargs)
        message.validate()
        return message

    def validate(self) -> None:
        """Hook for per-message semantic checks."""


@dataclass
class RoomMessage(Message):
    room_id: str = _wire("roomId")

    def validate(self) -> None:
        if not self.room_id or len(self.room_id) > MAX_ROOM_ID_LENGTH:
            raise ProtocolError("Invalid room id")


# --- client -> broker ---

@dataclass
class CreateRoom(RoomMessage):
    TYPE: ClassVar[str] = "create-room"
    options: Dict[str, Any] = _wire("options", dict, default=None)


@dataclass
class JoinRoom(RoomMessage):
    TYPE: ClassVar[str] = "join-room"


@dataclass
class VerifyPassword(RoomMessage):
    TYPE: ClassVar[str] = "verify-password"
    password: str = _wire("password", default="")


@dataclass
class RelayMessage(RoomMessage):
    """Handshake payload forwarded verbatim to the counterpart."""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelayMessage":
        message = super().from_dict(data)
        message.raw = dict(data)
        return message

    def to_dict(self) -> Dict[str, Any]:
        if self.raw:
            return dict(self.raw)
        return super().to_dict()


@dataclass
class SessionDescription(RelayMessage):
    """Base for offer and answer; not a wire type of its own."""
    sdp: str = _wire("sdp", default="")

    def validate(self) -> None:
        super().validate()
        if not self.sdp:
            raise ProtocolError(f"'{self.TYPE}' is missing 'sdp'")


@dataclass
class Offer(SessionDescription):
    TYPE: ClassVar[str] = "offer"


@dataclass
class Answer(SessionDescription):
    TYPE: ClassVar[str] = "answer"


@dataclass
class IceCandidate(RelayMessage):
    TYPE: ClassVar[str] = "ice-candidate"
    # None signals end-of-candidates
    candidate: Optional[Dict[str, Any]] = _wire("candidate", dict, default=None)


@dataclass
class TransferComplete(RoomMessage):
    TYPE: ClassVar[str] = "transfer-complete"


@dataclass
class Ping(Message):
    TYPE: ClassVar[str] = "ping"


@dataclass
class Pong(Message):
    TYPE: ClassVar[str] = "pong"


# --- broker -> client ---

@dataclass
class RoomCreated(RoomMessage):
    TYPE: ClassVar[str] = "room-created"


@dataclass
class RoomJoined(RoomMessage):
    TYPE: ClassVar[str] = "room-joined"


@dataclass
class PeerJoined(RoomMessage):
    """Sent to both peers on pairing; ``role`` is the recipient's own role."""
    TYPE: ClassVar[str] = "peer-joined"
    role: str = _wire("role", default="host")
    offerer: str = _wire("offerer", default="host")


@dataclass
class PeerLeft(Message):
    TYPE: ClassVar[str] = "peer-left"
    message: str = _wire("message", default="Peer disconnected")


@dataclass
class PasswordRequired(RoomMessage):
    TYPE: ClassVar[str] = "password-required"


@dataclass
class RoomClosed(Message):
    TYPE: ClassVar[str] = "room-closed"
    reason: str = _wire("reason", default="Room closed")


@dataclass
class Error(Message):
    TYPE: ClassVar[str] = "error"
    message: str = _wire("message", default="")
    code: Optional[str] = _wire("code", default=None)


# --- data channel control frames ---

@dataclass
class FileInfo(Message):
    TYPE: ClassVar[str] = "file-info"
    name: str = _wire("name")
    size: int = _wire("size", int)
    mime_type: str = _wire("mimeType", default="application/octet-stream")
    current_index: int = _wire("currentIndex", int, default=1)
    total_files: int = _wire("totalFiles", int, default=1)

    def validate(self) -> None:
        if self.size < 0:
            raise ProtocolError("Negative file size")
        if not 1 <= self.current_index <= self.total_files:
            raise ProtocolError("File index out of range")


@dataclass
class FileComplete(Message):
    TYPE: ClassVar[str] = "file-complete"


@dataclass
class AllComplete(Message):
    TYPE: ClassVar[str] = "all-complete"


SIGNAL_TYPES: Dict[str, Type[Message]] = {
    cls.TYPE: cls
    for cls in (
        CreateRoom, JoinRoom, VerifyPassword, Offer, Answer, IceCandidate,
        TransferComplete, Ping, Pong, RoomCreated, RoomJoined, PeerJoined,
        PeerLeft, PasswordRequired, RoomClosed, Error,
    )
}

CONTROL_TYPES: Dict[str, Type[Message]] = {
    cls.TYPE: cls for cls in (FileInfo, FileComplete, AllComplete)
}


def _parse(raw: Union[str, bytes, Dict[str, Any]], registry: Dict[str, Type[Message]]) -> Message:
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Invalid JSON: {e}") from e
    else:
        data = raw
    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")
    kind = data.get("type")
    cls = registry.get(kind) if isinstance(kind, str) else None
    if cls is None:
        raise ProtocolError(f"Unknown message type: {kind!r}")
    return cls.from_dict(data)


def parse_signal(raw) -> Message:
    """Parse a signaling frame into its message class."""
    return _parse(raw, SIGNAL_TYPES)


def parse_control(raw) -> Message:
    """Parse a data channel control frame."""
    return _parse(raw, CONTROL_TYPES)
