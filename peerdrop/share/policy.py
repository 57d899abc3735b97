import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional, TYPE_CHECKING

from .errors import ProtocolError, QuotaExhausted, RoomExpired, RoomFull

if TYPE_CHECKING:
    from .room import Room

DEFAULT_EXPIRY_HOURS = 24


@dataclass
class AccessPolicy:
    """Password, expiry and download quota attached to a room."""
    password: Optional[str] = None
    expiry_hours: float = DEFAULT_EXPIRY_HOURS
    max_downloads: int = 0  # 0 = unlimited

    @classmethod
    def from_options(cls, options: Optional[Dict[str, Any]]) -> "AccessPolicy":
        """Build a policy from ``create-room`` options, rejecting bad values."""
        options = options or {}

        password = options.get("password")
        if password == "":
            password = None
        if password is not None and not isinstance(password, str):
            raise ProtocolError("password must be a string")

        expiry = options.get("expiryHours")
        if expiry is None:
            expiry = DEFAULT_EXPIRY_HOURS
        if isinstance(expiry, bool) or not isinstance(expiry, (int, float)) or expiry <= 0:
            raise ProtocolError("expiryHours must be a positive number")

        max_downloads = options.get("maxDownloads")
        if max_downloads is None:
            max_downloads = 0
        if isinstance(max_downloads, bool) or not isinstance(max_downloads, int) or max_downloads < 0:
            raise ProtocolError("maxDownloads must be a non-negative integer")

        return cls(password=password, expiry_hours=expiry, max_downloads=max_downloads)

    def to_options(self) -> Dict[str, Any]:
        options = {"maxDownloads": self.max_downloads, "expiryHours": self.expiry_hours}
        if self.password:
            options["password"] = self.password
        return options

    @property
    def requires_password(self) -> bool:
        return self.password is not None

    def expires_at(self, created_at: float) -> float:
        return created_at + self.expiry_hours * 3600


def is_expired(room: "Room", now: float) -> bool:
    return now >= room.policy.expires_at(room.created_at)


def quota_reached(room: "Room") -> bool:
    limit = room.policy.max_downloads
    return limit > 0 and room.download_count >= limit


def check_password(policy: AccessPolicy, candidate) -> bool:
    """Exact match; no attempt limiting."""
    if not policy.requires_password:
        return True
    if not isinstance(candidate, str):
        return False
    return secrets.compare_digest(candidate.encode(), policy.password.encode())


def evaluate_join(room: "Room", now: float) -> bool:
    """
    Check a join attempt against the room's policy.

    Raises RoomExpired, QuotaExhausted or RoomFull (in that order). The first
    two mean the caller must delete the room.

    Returns:
        True if the joiner must verify a password before pairing.
    """
    if is_expired(room, now):
        raise RoomExpired()
    if quota_reached(room):
        raise QuotaExhausted()
    if room.receiver is not None:
        raise RoomFull()
    return room.policy.requires_password
