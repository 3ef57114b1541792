from dataclasses import dataclass
from typing import Dict, Iterable, Optional
import logging

from .errors import RelayDeliveryError
from .rooms import RoomDirectory

logger = logging.getLogger(__name__)


@dataclass
class Envelope:
    """An outbound message addressed to one connection or to a room."""
    message: dict
    target: Optional[str] = None
    room_id: Optional[str] = None
    exclude: Optional[str] = None

    @classmethod
    def to(cls, target: str, message: dict) -> "Envelope":
        return cls(message=message, target=target)

    @classmethod
    def room(cls, room_id: str, message: dict, exclude: Optional[str] = None) -> "Envelope":
        return cls(message=message, room_id=room_id, exclude=exclude)


class SignalingRelay:
    """Routes control messages between live connections.

    Every connection registers an outbox: any object with a non-blocking
    ``push(message)``. One outbox per connection drained in order gives
    FIFO delivery per sender/receiver pair.
    """

    def __init__(self, directory: RoomDirectory):
        self.directory = directory
        self.active_connections: Dict[str, object] = {}

    def register(self, connection_id: str, outbox):
        self.active_connections[connection_id] = outbox
        logger.info(f"🔌 Connection registered: {connection_id}")
        logger.info(f"📊 Total connections: {len(self.active_connections)}")

    def unregister(self, connection_id: str) -> bool:
        removed = self.active_connections.pop(connection_id, None) is not None
        if removed:
            logger.info(f"❌ Connection unregistered: {connection_id}")
            logger.info(f"📊 Total connections: {len(self.active_connections)}")
        return removed

    def is_connected(self, connection_id: str) -> bool:
        outbox = self.active_connections.get(connection_id)
        return outbox is not None and not getattr(outbox, "closed", False)

    def deliver(self, target: str, message: dict):
        """Push ``message`` to ``target`` or raise RelayDeliveryError."""
        outbox = self.active_connections.get(target)
        if outbox is None:
            raise RelayDeliveryError(f"connection {target} is not connected")
        try:
            outbox.push(message)
        except RuntimeError as e:
            raise RelayDeliveryError(f"outbox of {target} is closed: {e}")
        logger.debug(f"✅ Queued {message.get('type', 'unknown')} for {target}")

    def send_to(self, target: str, message: dict) -> bool:
        try:
            self.deliver(target, message)
        except RelayDeliveryError as e:
            logger.warning(f"❌ Dropped {message.get('type', 'unknown')}: {e}")
            return False
        return True

    def broadcast_to_room(self, room_id: str, message: dict, exclude: Optional[str] = None) -> int:
        """Best-effort delivery to every member but ``exclude``."""
        sent = 0
        for peer in self.directory.members_of(room_id):
            if peer.connection_id == exclude:
                continue
            if self.send_to(peer.connection_id, message):
                sent += 1
        logger.debug(f"📡 Broadcast {message.get('type')} to room {room_id}: {sent} sends")
        return sent

    def send_all(self, envelopes: Iterable[Envelope]):
        for envelope in envelopes:
            if envelope.target is not None:
                self.send_to(envelope.target, envelope.message)
            elif envelope.room_id is not None:
                self.broadcast_to_room(envelope.room_id, envelope.message, envelope.exclude)
