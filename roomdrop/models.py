from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum


class TransferMode(str, Enum):
    DIRECT = "direct"
    CHUNKED = "chunked"


class TransferState(str, Enum):
    OFFERED = "offered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"


TRANSITIONS = {
    TransferState.OFFERED: {TransferState.ACCEPTED, TransferState.REJECTED, TransferState.CANCELLED},
    TransferState.ACCEPTED: {TransferState.TRANSFERRING, TransferState.CANCELLED},
    TransferState.TRANSFERRING: {TransferState.COMPLETED, TransferState.FAILED},
    TransferState.REJECTED: set(),
    TransferState.CANCELLED: set(),
    TransferState.COMPLETED: set(),
    TransferState.FAILED: set(),
}

TERMINAL_STATES = frozenset(state for state, nxt in TRANSITIONS.items() if not nxt)


class Peer(BaseModel):
    connection_id: str
    peer_address: str = ""
    room_id: Optional[str] = None


class FileMeta(BaseModel):
    file_name: str = Field(min_length=1)
    file_size: int = Field(ge=0)
    mime_type: str = "application/octet-stream"
    mode: TransferMode = TransferMode.DIRECT


class TransferSession(BaseModel):
    session_id: str
    sender_connection_id: str
    receiver_connection_id: str
    file_name: str
    file_size: int
    mime_type: str
    mode: TransferMode
    state: TransferState = TransferState.OFFERED
    bytes_transferred: int = 0
    chunk_size: Optional[int] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def progress(self) -> int:
        """Whole percentage of bytes moved, 100 once completed."""
        if self.state == TransferState.COMPLETED:
            return 100
        if self.file_size == 0:
            return 0
        return min(100, self.bytes_transferred * 100 // self.file_size)

    def participants(self) -> List[str]:
        return [self.sender_connection_id, self.receiver_connection_id]

    def conflict_key(self):
        return (self.sender_connection_id, self.receiver_connection_id, self.file_name)

    def public_view(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["progress"] = self.progress
        return data


# Inbound frames. Each carries the ``type`` it is dispatched on.

class JoinRoom(BaseModel):
    room_id: Optional[str] = Field(default=None, min_length=1)
    peer_address: str = ""


class FileOffer(BaseModel):
    to: str
    file: FileMeta
    session_id: Optional[str] = Field(default=None, min_length=1)


class SessionRef(BaseModel):
    session_id: str


class FileCancel(SessionRef):
    reason: str = "cancelled by peer"


class FilePayload(SessionRef):
    encoded_payload: str


class TransferStart(SessionRef):
    total_size: int = Field(ge=0)
    chunk_size: Optional[int] = Field(default=None, gt=0)


class FileChunk(SessionRef):
    offset: int = Field(ge=0)
    payload: str


class Signal(BaseModel):
    to: str
    data: Dict[str, Any]
