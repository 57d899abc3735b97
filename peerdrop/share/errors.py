"""Error taxonomy for the share broker and transfer engine."""


class ShareError(Exception):
    """Base class for every peerdrop share failure."""


class ProtocolError(ShareError):
    """Malformed payload, unknown message type or reference to an unknown room.

    Logged and ignored by the broker; the connection stays open.
    """


class PolicyError(ShareError):
    """A room's access policy rejected the request.

    Reported to the requesting peer only, as ``error{message, code}``.
    """
    default_message = "Request rejected"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    @property
    def code(self) -> str:
        return type(self).__name__


class RoomExists(PolicyError):
    default_message = "Room already exists"


class RoomNotFound(PolicyError):
    default_message = "Room not found. The sender may have closed their session."


class RoomExpired(PolicyError):
    default_message = "This share link has expired. Ask the sender for a new one."


class QuotaExhausted(PolicyError):
    default_message = "This share link reached its download limit."


class RoomFull(PolicyError):
    default_message = "Room is full."


class IncorrectPassword(PolicyError):
    default_message = "Incorrect password."


POLICY_ERRORS = {
    cls.__name__: cls
    for cls in (RoomExists, RoomNotFound, RoomExpired, QuotaExhausted, RoomFull, IncorrectPassword)
}


def policy_error_from_code(code: str, message: str = None) -> PolicyError:
    """Rebuild a policy error received from the broker as ``error{message, code}``."""
    cls = POLICY_ERRORS.get(code, PolicyError)
    return cls(message)


class TransportError(ShareError):
    """Handshake or connectivity failure; the session must be restarted."""


class LocalIOError(ShareError):
    """A local file could not be read (sending) or written (receiving)."""

    def __init__(self, path, cause: Exception):
        super().__init__(f"Local file error on {path}: {cause}")
        self.path = path
        self.cause = cause
