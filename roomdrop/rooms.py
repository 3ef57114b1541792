from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from .locking import KeyedLocks
from .models import Peer

logger = logging.getLogger(__name__)


@dataclass
class Departure:
    """A peer leaving ``room_id``; ``remaining`` are the members still there."""
    room_id: str
    peer: Peer
    remaining: List[Peer] = field(default_factory=list)

    @property
    def room_removed(self) -> bool:
        return not self.remaining


@dataclass
class MembershipSnapshot:
    room_id: str
    peer: Peer
    others: List[Peer]
    members: List[Peer]
    joined: bool = True
    departure: Optional[Departure] = None


class RoomDirectory:
    """Process-wide registry of rooms and the peers currently inside them.

    Each room is guarded by its own lock; a peer moving between rooms
    holds both. Empty rooms are deleted on the spot.
    """

    def __init__(self):
        # room_id -> {connection_id -> Peer}, insertion ordered
        self.rooms: Dict[str, Dict[str, Peer]] = {}
        # connection_id -> room_id
        self.locations: Dict[str, str] = {}
        self._locks = KeyedLocks()

    def join(self, room_id: str, connection_id: str, peer_address: str = "") -> MembershipSnapshot:
        while True:
            previous = self.locations.get(connection_id)
            with self._locks.hold(room_id, previous):
                if self.locations.get(connection_id) != previous:
                    # Moved by a concurrent call between the read and the lock
                    continue
                return self._join_locked(room_id, connection_id, peer_address, previous)

    def _join_locked(self, room_id, connection_id, peer_address, previous) -> MembershipSnapshot:
        if previous == room_id:
            room = self.rooms[room_id]
            peer = room[connection_id]
            peer.peer_address = peer_address or peer.peer_address
            logger.debug(f"🔁 {connection_id} re-joined {room_id}, address refreshed")
            return MembershipSnapshot(
                room_id=room_id,
                peer=peer.model_copy(),
                others=self._others(room, connection_id),
                members=self._copy(room),
                joined=False,
            )

        departure = None
        if previous is not None:
            departure = self._remove_locked(previous, connection_id)

        room = self.rooms.setdefault(room_id, {})
        peer = Peer(connection_id=connection_id, peer_address=peer_address, room_id=room_id)
        room[connection_id] = peer
        self.locations[connection_id] = room_id

        logger.info(f"🏠 {connection_id} joined room {room_id} ({len(room)} members)")
        return MembershipSnapshot(
            room_id=room_id,
            peer=peer.model_copy(),
            others=self._others(room, connection_id),
            members=self._copy(room),
            departure=departure,
        )

    def leave(self, connection_id: str) -> Optional[Departure]:
        """Remove the connection from its room. Returns None if it was in none."""
        while True:
            room_id = self.locations.get(connection_id)
            if room_id is None:
                return None
            with self._locks.hold(room_id):
                if self.locations.get(connection_id) != room_id:
                    continue
                return self._remove_locked(room_id, connection_id)

    def _remove_locked(self, room_id: str, connection_id: str) -> Departure:
        room = self.rooms.get(room_id, {})
        peer = room.pop(connection_id)
        self.locations.pop(connection_id, None)
        peer.room_id = None

        if not room:
            self.rooms.pop(room_id, None)
            logger.info(f"🗑️ Removed empty room {room_id}")
        logger.info(f"🚪 {connection_id} left room {room_id}")
        return Departure(room_id=room_id, peer=peer, remaining=self._copy(room))

    def members_of(self, room_id: str) -> List[Peer]:
        with self._locks.hold(room_id):
            return self._copy(self.rooms.get(room_id, {}))

    def room_of(self, connection_id: str) -> Optional[str]:
        return self.locations.get(connection_id)

    def share_room(self, a: str, b: str) -> bool:
        room_id = self.locations.get(a)
        return room_id is not None and room_id == self.locations.get(b)

    def get_debug_info(self) -> dict:
        return {
            room_id: [p.model_dump() for p in self.members_of(room_id)]
            for room_id in list(self.rooms)
        }

    @staticmethod
    def _copy(room: Dict[str, Peer]) -> List[Peer]:
        return [p.model_copy() for p in room.values()]

    @staticmethod
    def _others(room: Dict[str, Peer], connection_id: str) -> List[Peer]:
        return [p.model_copy() for cid, p in room.items() if cid != connection_id]
