"""In-memory room registry owned by the broker."""

from typing import Dict, Iterator, List, Optional
import logging

from .errors import RoomExists
from .room import Room

logger = logging.getLogger(__name__)


class RoomRegistry:
    """
    Single store of live rooms, keyed by room id.

    Only the broker touches it, from one event loop, so operations are plain
    dict lookups with no locking.
    """

    def __init__(self):
        self._rooms: Dict[str, Room] = {}

    def add(self, room: Room) -> Room:
        if room.room_id in self._rooms:
            raise RoomExists()
        self._rooms[room.room_id] = room
        return room

    def get(self, room_id: Optional[str]) -> Optional[Room]:
        if not room_id:
            return None
        return self._rooms.get(room_id)

    def remove(self, room: Room) -> bool:
        """Delete ``room`` if it is still the registered one. Idempotent."""
        current = self._rooms.get(room.room_id)
        if current is not room:
            return False
        del self._rooms[room.room_id]
        room.close()
        logger.info(f"Room closed: {room.room_id}")
        return True

    def rooms(self) -> List[Room]:
        return list(self._rooms.values())

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    def __iter__(self) -> Iterator[Room]:
        return iter(self.rooms())
