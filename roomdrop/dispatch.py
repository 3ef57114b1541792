"""
Message dispatch.

``Hub`` owns all coordination state for one process. Inbound frames are
routed through ``HANDLERS``, a table keyed by the frame's ``type``; each
handler applies the frame to the hub and returns the envelopes to deliver.
"""

import base64
import binascii
import logging
from typing import Callable, Dict, List, NamedTuple, Optional, Type

from pydantic import BaseModel, ValidationError

from .config import Settings
from .errors import (
    ConflictError,
    CorruptionError,
    InvalidMessageError,
    NotFoundError,
    RoomDropError,
    SizeLimitError,
    StaleStateError,
)
from .models import (
    FileCancel,
    FileChunk,
    FileOffer,
    FilePayload,
    JoinRoom,
    SessionRef,
    Signal,
    TransferStart,
)
from .reassembly import ChunkReassemblyBuffer
from .relay import Envelope, SignalingRelay
from .rooms import Departure, RoomDirectory
from .transfers import TransferSessionManager

logger = logging.getLogger(__name__)


class Route(NamedTuple):
    model: Optional[Type[BaseModel]]
    handler: Callable
    # Offer-time failures go back to the initiator; everything else is absorbed
    reply_errors: bool = False


HANDLERS: Dict[str, Route] = {}


def handles(message_type: str, model: Optional[Type[BaseModel]] = None, reply_errors: bool = False):
    def register(func):
        HANDLERS[message_type] = Route(model, func, reply_errors)
        return func
    return register


class Hub:
    """Process-wide state owner: rooms, relay, sessions and chunk buffers."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.directory = RoomDirectory()
        self.relay = SignalingRelay(self.directory)
        self.buffer = ChunkReassemblyBuffer()
        self.transfers = TransferSessionManager(self.relay, self.buffer, self.settings)

    def connect(self, connection_id: str, outbox):
        self.relay.register(connection_id, outbox)
        self.relay.send_to(connection_id, {"type": "connected", "connection_id": connection_id})

    def disconnect(self, connection_id: str) -> List[Envelope]:
        """Abort the connection's sessions and leave its room in one step."""
        was_connected = self.relay.unregister(connection_id)
        envelopes = self.depart(connection_id, "peer disconnected")
        if was_connected:
            logger.info(f"🔌 Cleaned up {connection_id}")
        self.relay.send_all(envelopes)
        return envelopes

    def depart(self, connection_id: str, reason: str) -> List[Envelope]:
        envelopes = self.transfers.abort_all_for(connection_id, reason)
        departure = self.directory.leave(connection_id)
        if departure is not None:
            envelopes += departure_events(departure)
        return envelopes

    def dispatch(self, connection_id: str, frame: dict) -> List[Envelope]:
        """Apply one inbound frame, deliver the resulting envelopes, return them."""
        envelopes = self.handle(connection_id, frame)
        self.relay.send_all(envelopes)
        return envelopes

    def handle(self, connection_id: str, frame: dict) -> List[Envelope]:
        message_type = frame.get("type") if isinstance(frame, dict) else None
        route = HANDLERS.get(message_type)
        if route is None:
            logger.warning(f"⚠️ Unknown message type {message_type!r} from {connection_id}")
            error = InvalidMessageError(f"unknown message type {message_type!r}")
            return [Envelope.to(connection_id, error.to_frame())]

        logger.debug(f"📨 {message_type} from {connection_id}")
        try:
            message = None
            if route.model is not None:
                payload = {k: v for k, v in frame.items() if k != "type"}
                message = route.model.model_validate(payload)
            return route.handler(self, connection_id, message)
        except ValidationError as e:
            logger.warning(f"⚠️ Invalid {message_type} from {connection_id}: {e.error_count()} errors")
            error = InvalidMessageError(f"invalid {message_type}: {e.errors(include_url=False)[0]['msg']}")
            return [Envelope.to(connection_id, error.to_frame())]
        except CorruptionError as e:
            return self.transfers.mark_corrupt(e.session_id, e) if e.session_id else []
        except (SizeLimitError, InvalidMessageError) as e:
            logger.warning(f"❌ {message_type} from {connection_id} refused: {e.message}")
            return [Envelope.to(connection_id, e.to_frame())]
        except (ConflictError, NotFoundError, StaleStateError) as e:
            logger.warning(f"⚠️ Dropped {message_type} from {connection_id}: {e.message}")
            if route.reply_errors:
                return [Envelope.to(connection_id, e.to_frame())]
            return []
        except RoomDropError as e:
            logger.error(f"❌ {message_type} from {connection_id} failed: {e.message}")
            return []

    def get_debug_info(self) -> dict:
        return {
            "rooms": self.directory.get_debug_info(),
            "active_connections": list(self.relay.active_connections.keys()),
            "total_connections": len(self.relay.active_connections),
            "transfers": self.transfers.get_debug_info(),
        }


def peer_view(peer) -> dict:
    return {"connection_id": peer.connection_id, "peer_address": peer.peer_address}


def membership_event(room_id: str, members) -> dict:
    return {
        "type": "membership-changed",
        "room_id": room_id,
        "members": [peer_view(p) for p in members],
    }


def departure_events(departure: Departure) -> List[Envelope]:
    if departure.room_removed:
        return []
    room_id = departure.room_id
    return [
        Envelope.room(room_id, {"type": "user-disconnected", "connection_id": departure.peer.connection_id}),
        Envelope.room(room_id, membership_event(room_id, departure.remaining)),
    ]


# --- handlers ---------------------------------------------------------

@handles("join-room", JoinRoom)
def handle_join_room(hub: Hub, connection_id: str, message: JoinRoom) -> List[Envelope]:
    if not message.room_id:
        raise InvalidMessageError("join-room needs a room_id")

    envelopes = []
    previous = hub.directory.room_of(connection_id)
    if previous is not None and previous != message.room_id:
        # Sessions never outlive the room both peers shared
        envelopes += hub.transfers.abort_all_for(connection_id, "peer changed rooms")

    snapshot = hub.directory.join(message.room_id, connection_id, message.peer_address)
    if snapshot.departure is not None:
        envelopes += departure_events(snapshot.departure)

    envelopes.append(Envelope.to(connection_id, {
        "type": "room-users",
        "room_id": snapshot.room_id,
        "users": [peer_view(p) for p in snapshot.others],
    }))
    if snapshot.joined:
        envelopes.append(Envelope.room(
            snapshot.room_id,
            {"type": "user-connected", **peer_view(snapshot.peer)},
            exclude=connection_id,
        ))
        envelopes.append(Envelope.room(snapshot.room_id, membership_event(snapshot.room_id, snapshot.members)))
    return envelopes


@handles("leave")
def handle_leave(hub: Hub, connection_id: str, message: None) -> List[Envelope]:
    return hub.depart(connection_id, "peer left the room")


@handles("file-offer", FileOffer, reply_errors=True)
def handle_file_offer(hub: Hub, connection_id: str, message: FileOffer) -> List[Envelope]:
    _, envelopes = hub.transfers.offer(connection_id, message.to, message.file, message.session_id)
    return envelopes


@handles("file-accept", SessionRef)
def handle_file_accept(hub: Hub, connection_id: str, message: SessionRef) -> List[Envelope]:
    return hub.transfers.respond(message.session_id, True, responder=connection_id)


@handles("file-reject", SessionRef)
def handle_file_reject(hub: Hub, connection_id: str, message: SessionRef) -> List[Envelope]:
    return hub.transfers.respond(message.session_id, False, responder=connection_id)


@handles("file-cancel", FileCancel)
def handle_file_cancel(hub: Hub, connection_id: str, message: FileCancel) -> List[Envelope]:
    return hub.transfers.abort(message.session_id, message.reason, caller=connection_id)


@handles("file-payload", FilePayload)
def handle_file_payload(hub: Hub, connection_id: str, message: FilePayload) -> List[Envelope]:
    return hub.transfers.begin_direct_transfer(message.session_id, message.encoded_payload, caller=connection_id)


@handles("file-transfer-start", TransferStart)
def handle_transfer_start(hub: Hub, connection_id: str, message: TransferStart) -> List[Envelope]:
    return hub.transfers.begin_chunked_transfer(
        message.session_id, message.total_size, message.chunk_size, caller=connection_id
    )


@handles("file-chunk", FileChunk)
def handle_file_chunk(hub: Hub, connection_id: str, message: FileChunk) -> List[Envelope]:
    # Only participants may poison a session with a bad chunk
    hub.transfers.active(message.session_id, connection_id)
    try:
        payload = base64.b64decode(message.payload, validate=True)
    except (binascii.Error, ValueError):
        raise CorruptionError(f"chunk at offset {message.offset} is not valid base64", message.session_id)
    return hub.transfers.push_chunk(message.session_id, message.offset, payload, caller=connection_id)


@handles("file-complete", SessionRef)
def handle_file_complete(hub: Hub, connection_id: str, message: SessionRef) -> List[Envelope]:
    return hub.transfers.finish_chunked(message.session_id, caller=connection_id)


@handles("signal", Signal)
def handle_signal(hub: Hub, connection_id: str, message: Signal) -> List[Envelope]:
    if not hub.directory.share_room(connection_id, message.to):
        raise NotFoundError(f"signal target {message.to} is not in your room")
    signal_type = message.data.get("type", "unknown")
    logger.info(f"🔄 WebRTC signal: {connection_id} -> {message.to} ({signal_type})")
    return [Envelope.to(message.to, {"type": "signal", "from": connection_id, "data": message.data})]
