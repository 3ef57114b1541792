"""Error taxonomy for room coordination and file transfers."""

from typing import Optional


class RoomDropError(Exception):
    """Base class. ``code`` is the stable identifier sent in error frames."""

    code = "error"

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id

    def to_frame(self) -> dict:
        frame = {"type": "error", "code": self.code, "message": self.message}
        if self.session_id:
            frame["session_id"] = self.session_id
        return frame


class ConflictError(RoomDropError):
    """An active offer already exists for the same sender, receiver and file."""
    code = "conflict"


class NotFoundError(RoomDropError):
    """Unknown or expired session or connection."""
    code = "not-found"


class StaleStateError(RoomDropError):
    """Operation is not valid for the session's current state."""
    code = "stale-state"


class CorruptionError(RoomDropError):
    """Chunk offsets, sizes or payload encoding are inconsistent."""
    code = "corruption"


class SizeLimitError(RoomDropError):
    code = "size-limit"


class RelayDeliveryError(RoomDropError):
    """Target connection is not reachable at send time."""
    code = "relay-delivery"


class InvalidMessageError(RoomDropError):
    code = "invalid-message"
