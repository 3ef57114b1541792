import pytest

from roomdrop.config import Settings
from roomdrop.dispatch import Hub


class MemoryOutbox:
    """Collects everything the relay pushes to one connection."""

    def __init__(self):
        self.messages = []
        self.closed = False

    def push(self, message):
        if self.closed:
            raise RuntimeError("outbox closed")
        self.messages.append(message)

    def of_type(self, message_type):
        return [m for m in self.messages if m["type"] == message_type]

    def states(self, session_id):
        return [
            m["state"] for m in self.of_type("transfer-state-changed")
            if m["session_id"] == session_id
        ]

    def clear(self):
        self.messages.clear()


@pytest.fixture
def settings():
    return Settings(
        max_direct_size=4096,
        max_file_size=65536,
        max_message_size=8192,
        archive_size=8,
    )


@pytest.fixture
def hub(settings):
    return Hub(settings)


@pytest.fixture
def connect(hub):
    def _connect(connection_id):
        outbox = MemoryOutbox()
        hub.connect(connection_id, outbox)
        return outbox
    return _connect


def join(hub, connection_id, room_id="r1"):
    return hub.dispatch(connection_id, {
        "type": "join-room",
        "room_id": room_id,
        "peer_address": f"peer-{connection_id}",
    })


@pytest.fixture
def pair(hub, connect):
    """A and B connected and sitting in room r1."""
    a, b = connect("A"), connect("B")
    join(hub, "A")
    join(hub, "B")
    a.clear()
    b.clear()
    return a, b
