"""
Per-key mutexes for in-process serialization of read-modify-write cycles.

Locks are created on first use and dropped once nobody holds or waits on
them, so the map only ever contains keys currently in contention.
"""

from contextlib import contextmanager
from threading import Lock
from typing import Hashable, Iterator


class KeyedLocks:
    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[Hashable, list] = {}  # key -> [Lock, users]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
