import threading
from contextlib import contextmanager
from typing import Dict, Hashable, List


class KeyedLocks:
    """One lock per key, so work on different keys never contends.

    Entries are reference counted and vanish once nobody holds or waits
    on them, so short-lived keys (rooms, sessions) do not accumulate.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, List] = {}

    def _checkout(self, key: Hashable) -> threading.RLock:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = [threading.RLock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: Hashable):
        with self._guard:
            entry = self._entries[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, *keys: Hashable):
        # Sorted acquisition keeps multi-key holders deadlock free
        ordered = sorted({k for k in keys if k is not None}, key=repr)
        acquired = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                acquired.append((key, lock))
                lock.acquire()
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    def __len__(self):
        return len(self._entries)
