"""Room membership registry for the signaling relay.

Rooms are created implicitly on first join and discarded as soon as their last
member leaves. Every participant is in at most one room.

All mutating methods must be called while holding the locks of the rooms they
touch (see ``RoomRegistry.locked``). The registry itself never awaits, so each
mutation is atomic with respect to other coroutines; the locks extend that
atomicity over the sends that announce the change.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from meshcall.protocol import Participant

logger = logging.getLogger(__name__)


@dataclass
class Room:
    """A set of participants keyed by participant id."""

    room_id: str
    members: Dict[str, Participant] = field(default_factory=dict)

    def others(self, participant_id: str) -> List[Participant]:
        """Members of the room other than ``participant_id``."""
        return [p for pid, p in self.members.items() if pid != participant_id]


@dataclass
class Departure:
    """Result of removing a participant from a room.

    Attributes:
        room_id: Room the participant left.
        remaining: Members still in the room (empty if the room was discarded).
    """

    room_id: str
    remaining: List[Participant]

    @property
    def room_discarded(self) -> bool:
        return not self.remaining


class RoomRegistry:
    """Tracks which participant is in which room.

    Attributes:
        rooms: room_id -> Room, only non-empty rooms.
    """

    def __init__(self):
        self.rooms: Dict[str, Room] = {}
        self._membership: Dict[str, str] = {}  # participant_id -> room_id
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def locked(self, *room_ids: Optional[str]):
        """Hold the exclusive locks of the given rooms.

        Locks are taken in sorted order so two concurrent room switches in
        opposite directions cannot deadlock. A lock is dropped once no
        coroutine uses it and its room no longer exists.
        """
        ids = sorted({rid for rid in room_ids if rid})
        for rid in ids:
            self._lock_users[rid] = self._lock_users.get(rid, 0) + 1
        locks = [self._locks.setdefault(rid, asyncio.Lock()) for rid in ids]
        acquired = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for rid in ids:
                self._lock_users[rid] -= 1
                if self._lock_users[rid] == 0:
                    del self._lock_users[rid]
                    if rid not in self.rooms:
                        self._locks.pop(rid, None)

    def room_of(self, participant_id: str) -> Optional[str]:
        """Return the id of the room ``participant_id`` is in, if any."""
        return self._membership.get(participant_id)

    def members(self, room_id: str) -> List[Participant]:
        """Return the current members of ``room_id`` (empty if it does not exist)."""
        room = self.rooms.get(room_id)
        return list(room.members.values()) if room else []

    def same_room(self, a: str, b: str) -> bool:
        room_id = self._membership.get(a)
        return room_id is not None and self._membership.get(b) == room_id

    def join(self, participant: Participant, room_id: str) -> Optional[Departure]:
        """Move ``participant`` into ``room_id``.

        Removal from the previous room and insertion into the new one happen
        in one step. Caller must hold the locks of both rooms.

        Returns:
            The departure from the previous room, or None if there was none.
        """
        departure = self.remove(participant.id)
        room = self.rooms.get(room_id)
        if room is None:
            room = Room(room_id)
            self.rooms[room_id] = room
            logger.info(f"Room created: {room_id}")
        room.members[participant.id] = participant
        self._membership[participant.id] = room_id
        return departure

    def remove(self, participant_id: str) -> Optional[Departure]:
        """Remove ``participant_id`` from its room, discarding the room if empty.

        Caller must hold the room's lock.

        Returns:
            The departure, or None if the participant was not in a room.
        """
        room_id = self._membership.pop(participant_id, None)
        if room_id is None:
            return None
        room = self.rooms[room_id]
        del room.members[participant_id]
        if not room.members:
            del self.rooms[room_id]
            logger.info(f"Room discarded: {room_id}")
        return Departure(room_id=room_id, remaining=list(room.members.values()))
