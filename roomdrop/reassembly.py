"""
Chunk Reassembly

Rebuilds a file from offset-addressed chunks that may arrive in any order.
Completion is size based: once the received byte count reaches the
expected size the stored ranges must tile ``[0, expected_size)`` exactly.
"""

import bisect
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import CorruptionError, NotFoundError
from .locking import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass
class ChunkSet:
    session_id: str
    expected_size: int
    received_bytes: int = 0
    # Parallel lists kept sorted by offset
    offsets: List[int] = field(default_factory=list)
    payloads: List[bytes] = field(default_factory=list)

    def overlaps(self, offset: int, end: int) -> bool:
        i = bisect.bisect_left(self.offsets, offset)
        if i < len(self.offsets) and self.offsets[i] < end:
            return True
        if i > 0 and self.offsets[i - 1] + len(self.payloads[i - 1]) > offset:
            return True
        return False

    def insert(self, offset: int, payload: bytes):
        i = bisect.bisect_left(self.offsets, offset)
        self.offsets.insert(i, offset)
        self.payloads.insert(i, payload)
        self.received_bytes += len(payload)


class ChunkReassemblyBuffer:
    def __init__(self):
        self.chunk_sets: Dict[str, ChunkSet] = {}
        self._locks = KeyedLocks()

    def open(self, session_id: str, expected_size: int) -> ChunkSet:
        with self._locks.hold(session_id):
            chunk_set = self.chunk_sets.get(session_id)
            if chunk_set is None:
                chunk_set = self.chunk_sets[session_id] = ChunkSet(session_id, expected_size)
                logger.debug(f"🧩 Opened chunk set {session_id} ({expected_size} bytes)")
            return chunk_set

    def discard(self, session_id: str):
        with self._locks.hold(session_id):
            if self.chunk_sets.pop(session_id, None) is not None:
                logger.debug(f"🧩 Discarded chunk set {session_id}")

    def received_bytes(self, session_id: str) -> int:
        chunk_set = self.chunk_sets.get(session_id)
        return chunk_set.received_bytes if chunk_set else 0

    def add_chunk(self, session_id: str, offset: int, payload: bytes) -> int:
        """Store one chunk and return the running byte total."""
        with self._locks.hold(session_id):
            chunk_set = self._get(session_id)
            end = offset + len(payload)
            if offset < 0 or end > chunk_set.expected_size:
                raise CorruptionError(
                    f"chunk [{offset}, {end}) exceeds expected size {chunk_set.expected_size}",
                    session_id,
                )
            if not payload:
                return chunk_set.received_bytes
            if chunk_set.overlaps(offset, end):
                raise CorruptionError(f"chunk [{offset}, {end}) overlaps stored data", session_id)
            chunk_set.insert(offset, payload)
            return chunk_set.received_bytes

    def try_finalize(self, session_id: str) -> Optional[bytes]:
        """Return the whole file once every byte is present, else None.

        A full byte count whose ranges leave a gap raises CorruptionError;
        either outcome other than None destroys the chunk set.
        """
        with self._locks.hold(session_id):
            chunk_set = self._get(session_id)
            if chunk_set.received_bytes < chunk_set.expected_size:
                return None

            self.chunk_sets.pop(session_id, None)
            cursor = 0
            for offset, payload in zip(chunk_set.offsets, chunk_set.payloads):
                if offset != cursor:
                    raise CorruptionError(
                        f"chunk ranges do not tile the file: expected offset {cursor}, found {offset}",
                        session_id,
                    )
                cursor += len(payload)
            if cursor != chunk_set.expected_size:
                raise CorruptionError(
                    f"reassembled {cursor} bytes, expected {chunk_set.expected_size}", session_id
                )

            logger.info(f"🧩 Reassembled {session_id}: {len(chunk_set.offsets)} chunks, {cursor} bytes")
            return b"".join(chunk_set.payloads)

    def _get(self, session_id: str) -> ChunkSet:
        chunk_set = self.chunk_sets.get(session_id)
        if chunk_set is None:
            raise NotFoundError(f"no chunk set for session {session_id}", session_id)
        return chunk_set
