"""
Transfer Session Manager

Owns every file transfer from offer to a terminal state. A session moves
bytes in one of two modes:

- direct:  the whole base64 payload is relayed in a single message
- chunked: offset-addressed chunks are reassembled by the
           ChunkReassemblyBuffer until the file is complete

State machine:

    offered ──► accepted ──► transferring ──► completed
       │           │                 └──────► failed
       ├──► rejected
       └──► cancelled ◄── (abort from offered/accepted)

Operations return the envelopes to deliver instead of sending them, so the
same calls drive the WebSocket service and the unit tests. The one
exception is the finished file: it is pushed to the receiver before the
session may complete, and an undeliverable file fails the session.
"""

import base64
import binascii
import logging
import threading
import uuid
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from .config import Settings
from .errors import (
    ConflictError,
    CorruptionError,
    InvalidMessageError,
    NotFoundError,
    RelayDeliveryError,
    SizeLimitError,
    StaleStateError,
)
from .locking import KeyedLocks
from .models import (
    FileMeta,
    TRANSITIONS,
    TransferMode,
    TransferSession,
    TransferState,
)
from .reassembly import ChunkReassemblyBuffer
from .relay import Envelope, SignalingRelay

logger = logging.getLogger(__name__)


def state_event(session: TransferSession) -> dict:
    event = {
        "type": "transfer-state-changed",
        "session_id": session.session_id,
        "state": session.state.value,
        "progress": session.progress,
    }
    if session.reason:
        event["reason"] = session.reason
    return event


class TransferSessionManager:
    def __init__(self, relay: SignalingRelay, buffer: ChunkReassemblyBuffer, settings: Settings):
        self.relay = relay
        self.buffer = buffer
        self.settings = settings
        self.sessions: Dict[str, TransferSession] = {}
        self.archive: "OrderedDict[str, TransferSession]" = OrderedDict()
        # (sender, receiver, file_name) -> session_id for non-terminal sessions
        self.active_keys: Dict[Tuple[str, str, str], str] = {}
        self._locks = KeyedLocks()
        # Leaf lock for active_keys; never held while taking another lock
        self._index_lock = threading.Lock()

    # --- lookup -------------------------------------------------------

    def get(self, session_id: str) -> Optional[TransferSession]:
        return self.sessions.get(session_id) or self.archive.get(session_id)

    def progress(self, session_id: str) -> int:
        session = self.get(session_id)
        if session is None:
            raise NotFoundError(f"unknown session {session_id}", session_id)
        return session.progress

    def sessions_of(self, connection_id: str) -> List[TransferSession]:
        return [s for s in list(self.sessions.values()) if connection_id in s.participants()]

    def active(self, session_id: str, caller: Optional[str] = None) -> TransferSession:
        session = self.sessions.get(session_id)
        if session is None:
            if session_id in self.archive:
                raise StaleStateError(
                    f"session {session_id} already {self.archive[session_id].state.value}", session_id
                )
            raise NotFoundError(f"unknown session {session_id}", session_id)
        if caller is not None and caller not in session.participants():
            raise NotFoundError(f"{caller} is not part of session {session_id}", session_id)
        return session

    # --- state plumbing -----------------------------------------------

    def _transition(self, session: TransferSession, new_state: TransferState,
                    reason: Optional[str] = None) -> List[Envelope]:
        if new_state not in TRANSITIONS[session.state]:
            raise StaleStateError(
                f"session {session.session_id} cannot go from {session.state.value} to {new_state.value}",
                session.session_id,
            )
        logger.info(f"📁 Session {session.session_id}: {session.state.value} -> {new_state.value}")
        session.state = new_state
        if reason:
            session.reason = reason
        if session.is_terminal:
            self._finish(session)
        return self._notify(session)

    def _notify(self, session: TransferSession) -> List[Envelope]:
        event = state_event(session)
        return [Envelope.to(cid, dict(event)) for cid in session.participants()]

    def _finish(self, session: TransferSession):
        self.sessions.pop(session.session_id, None)
        key = session.conflict_key()
        with self._index_lock:
            if self.active_keys.get(key) == session.session_id:
                del self.active_keys[key]
        self.buffer.discard(session.session_id)

        self.archive[session.session_id] = session
        while len(self.archive) > self.settings.archive_size:
            self.archive.popitem(last=False)

    def _fail(self, session: TransferSession, error: CorruptionError) -> List[Envelope]:
        """Corruption fails the session and is reported to both sides."""
        logger.error(f"❌ Session {session.session_id} corrupted: {error.message}")
        envelopes = []
        if session.state == TransferState.ACCEPTED:
            envelopes += self._transition(session, TransferState.TRANSFERRING)
        envelopes += self._transition(session, TransferState.FAILED, reason=error.message)
        frame = error.to_frame()
        frame["session_id"] = session.session_id
        envelopes += [Envelope.to(cid, dict(frame)) for cid in session.participants()]
        return envelopes

    def _complete(self, session: TransferSession, payload: bytes,
                  pending: Optional[List[Envelope]] = None) -> List[Envelope]:
        """Hand the file to the receiver; only a delivered file completes.

        ``pending`` envelopes are flushed first so the receiver still sees
        events in order ahead of the payload.
        """
        self.relay.send_all(pending or [])
        ready = {
            "type": "transfer-ready-for-download",
            "session_id": session.session_id,
            "file_name": session.file_name,
            "mime_type": session.mime_type,
            "file_size": len(payload),
            "data": base64.b64encode(payload).decode("ascii"),
        }
        try:
            self.relay.deliver(session.receiver_connection_id, ready)
        except RelayDeliveryError as e:
            logger.warning(f"❌ Session {session.session_id} payload undeliverable: {e.message}")
            return self._transition(session, TransferState.FAILED, reason="receiver unreachable")
        session.bytes_transferred = session.file_size
        return self._transition(session, TransferState.COMPLETED)

    # --- operations ---------------------------------------------------

    def check_size(self, meta: FileMeta):
        limit = self.settings.max_direct_size if meta.mode == TransferMode.DIRECT else self.settings.max_file_size
        if meta.file_size > limit:
            raise SizeLimitError(
                f"{meta.file_name} is {meta.file_size} bytes, {meta.mode.value} mode allows at most {limit}"
            )

    def offer(self, sender: str, receiver: str, meta: FileMeta,
              session_id: Optional[str] = None) -> Tuple[TransferSession, List[Envelope]]:
        self.check_size(meta)
        if sender == receiver:
            raise InvalidMessageError("cannot offer a file to yourself")
        if not self.relay.is_connected(receiver) or not self.relay.directory.share_room(sender, receiver):
            raise NotFoundError(f"peer {receiver} is not in your room")

        session_id = session_id or str(uuid.uuid4())
        key = (sender, receiver, meta.file_name)
        with self._locks.hold(key, session_id), self._index_lock:
            if session_id in self.sessions or session_id in self.archive:
                raise ConflictError(f"session id {session_id} already in use", session_id)
            if key in self.active_keys:
                raise ConflictError(
                    f"{meta.file_name} is already being offered to {receiver}", self.active_keys[key]
                )
            session = TransferSession(
                session_id=session_id,
                sender_connection_id=sender,
                receiver_connection_id=receiver,
                file_name=meta.file_name,
                file_size=meta.file_size,
                mime_type=meta.mime_type,
                mode=meta.mode,
            )
            self.sessions[session_id] = session
            self.active_keys[key] = session_id

        logger.info(f"📁 Offer {session_id}: {sender} -> {receiver} "
                    f"({meta.file_name}, {meta.file_size} bytes, {meta.mode.value})")
        event = {"type": "transfer-offered", "from": sender, "to": receiver, **session.public_view()}
        envelopes = [Envelope.to(receiver, event), Envelope.to(sender, dict(event))]
        return session, envelopes

    def respond(self, session_id: str, accept: bool, responder: Optional[str] = None) -> List[Envelope]:
        with self._locks.hold(session_id):
            session = self.active(session_id)
            if responder is not None and responder != session.receiver_connection_id:
                raise NotFoundError(f"session {session_id} was not offered to {responder}", session_id)
            if session.state != TransferState.OFFERED:
                raise StaleStateError(
                    f"session {session_id} is {session.state.value}, not offered", session_id
                )
            new_state = TransferState.ACCEPTED if accept else TransferState.REJECTED
            return self._transition(session, new_state)

    def begin_direct_transfer(self, session_id: str, encoded_payload: str,
                              caller: Optional[str] = None) -> List[Envelope]:
        with self._locks.hold(session_id):
            session = self.active(session_id)
            self._check_sender(session, caller)
            self._check_ready(session, TransferMode.DIRECT)

            try:
                payload = base64.b64decode(encoded_payload, validate=True)
            except (binascii.Error, ValueError):
                return self._fail(session, CorruptionError("payload is not valid base64", session_id))
            if len(payload) != session.file_size:
                return self._fail(session, CorruptionError(
                    f"payload is {len(payload)} bytes, offer announced {session.file_size}", session_id
                ))

            envelopes = self._transition(session, TransferState.TRANSFERRING)
            return self._complete(session, payload, envelopes)

    def begin_chunked_transfer(self, session_id: str, total_size: int, chunk_size: Optional[int] = None,
                               caller: Optional[str] = None) -> List[Envelope]:
        with self._locks.hold(session_id):
            session = self.active(session_id)
            self._check_sender(session, caller)
            self._check_ready(session, TransferMode.CHUNKED)
            return self._start_chunked(session, total_size, chunk_size)

    def _start_chunked(self, session: TransferSession, total_size: int,
                       chunk_size: Optional[int]) -> List[Envelope]:
        if total_size != session.file_size:
            return self._fail(session, CorruptionError(
                f"stream announces {total_size} bytes, offer announced {session.file_size}",
                session.session_id,
            ))
        session.chunk_size = chunk_size or self.settings.default_chunk_size
        self.buffer.open(session.session_id, total_size)
        return self._transition(session, TransferState.TRANSFERRING)

    def push_chunk(self, session_id: str, offset: int, payload: bytes,
                   caller: Optional[str] = None) -> List[Envelope]:
        with self._locks.hold(session_id):
            session = self.active(session_id, caller)
            if session.mode != TransferMode.CHUNKED:
                raise StaleStateError(f"session {session_id} is not a chunked transfer", session_id)

            envelopes = []
            if session.state == TransferState.ACCEPTED:
                envelopes += self._start_chunked(session, session.file_size, None)
            if session.state != TransferState.TRANSFERRING:
                if session.is_terminal:
                    return envelopes
                raise StaleStateError(f"session {session_id} is {session.state.value}", session_id)

            before = session.progress
            try:
                self.buffer.add_chunk(session_id, offset, payload)
                # Byte count never decreases: the buffer only ever adds
                session.bytes_transferred = self.buffer.received_bytes(session_id)
                data = self.buffer.try_finalize(session_id)
            except CorruptionError as e:
                return envelopes + self._fail(session, e)

            if data is not None:
                return self._complete(session, data, envelopes)
            if session.progress > before:
                envelopes += self._notify(session)
            return envelopes

    def finish_chunked(self, session_id: str, caller: Optional[str] = None) -> List[Envelope]:
        """End-of-stream marker: everything must be present now."""
        with self._locks.hold(session_id):
            session = self.active(session_id, caller)
            if session.mode != TransferMode.CHUNKED or session.state != TransferState.TRANSFERRING:
                raise StaleStateError(f"session {session_id} is not streaming chunks", session_id)
            try:
                data = self.buffer.try_finalize(session_id)
                if data is None:
                    raise CorruptionError(
                        f"stream ended after {session.bytes_transferred} of {session.file_size} bytes",
                        session_id,
                    )
            except CorruptionError as e:
                return self._fail(session, e)
            return self._complete(session, data)

    def mark_corrupt(self, session_id: str, error: CorruptionError) -> List[Envelope]:
        with self._locks.hold(session_id):
            session = self.sessions.get(session_id)
            if session is None or session.state not in (TransferState.ACCEPTED, TransferState.TRANSFERRING):
                logger.warning(f"⚠️ Corruption reported for inactive session {session_id}: {error.message}")
                return []
            return self._fail(session, error)

    def abort(self, session_id: str, reason: str, caller: Optional[str] = None) -> List[Envelope]:
        """Cancel before bytes move, fail afterwards. Terminal sessions are left alone."""
        with self._locks.hold(session_id):
            session = self.sessions.get(session_id)
            if session is None:
                if session_id in self.archive:
                    logger.debug(f"Abort of finished session {session_id} ignored")
                    return []
                raise NotFoundError(f"unknown session {session_id}", session_id)
            if caller is not None and caller not in session.participants():
                raise NotFoundError(f"{caller} is not part of session {session_id}", session_id)

            if session.state == TransferState.TRANSFERRING:
                return self._transition(session, TransferState.FAILED, reason=reason)
            return self._transition(session, TransferState.CANCELLED, reason=reason)

    def abort_all_for(self, connection_id: str, reason: str) -> List[Envelope]:
        envelopes = []
        for session in self.sessions_of(connection_id):
            try:
                envelopes += self.abort(session.session_id, reason)
            except NotFoundError:
                # Finished and evicted from the archive since the snapshot
                continue
        return envelopes

    def get_debug_info(self) -> dict:
        states = {}
        for session in list(self.sessions.values()):
            states[session.state.value] = states.get(session.state.value, 0) + 1
        return {
            "active_sessions": len(self.sessions),
            "archived_sessions": len(self.archive),
            "states": states,
        }

    # --- guards -------------------------------------------------------

    @staticmethod
    def _check_sender(session: TransferSession, caller: Optional[str]):
        if caller is not None and caller != session.sender_connection_id:
            raise NotFoundError(
                f"{caller} is not the sender of session {session.session_id}", session.session_id
            )

    @staticmethod
    def _check_ready(session: TransferSession, mode: TransferMode):
        if session.mode != mode:
            raise StaleStateError(
                f"session {session.session_id} was offered in {session.mode.value} mode", session.session_id
            )
        if session.state != TransferState.ACCEPTED:
            raise StaleStateError(
                f"session {session.session_id} is {session.state.value}, not accepted", session.session_id
            )
