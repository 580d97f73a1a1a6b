"""
Thread-safe in-memory TTL map.

Backs the journey search cache and the notification delivery cache.  Each
instance owns its entries and its lock; nothing here is module-global.
The clock is injectable so expiry can be tested without sleeping.
"""

import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Hashable, Optional


@dataclass
class _Entry:
    inserted_at: float
    value: Any


class TTLCache:
    def __init__(
        self,
        *,
        ttl_s: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_s <= 0:
            raise ValueError("ttl_s must be positive")
        self._ttl_s = float(ttl_s)
        self._clock = clock
        self._lock = Lock()
        self._items: dict[Hashable, _Entry] = {}

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def ttl_s(self) -> float:
        return self._ttl_s

    def _is_expired(self, entry: _Entry, now: float) -> bool:
        return (now - entry.inserted_at) >= self._ttl_s

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._is_expired(entry, self._clock()):
                del self._items[key]
                self._evictions += 1
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def put(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._items[key] = _Entry(inserted_at=self._clock(), value=value)

    def claim(self, key: Hashable, value: Any = True) -> bool:
        """
        Insert key only if no live entry exists.  Returns True when this
        caller won the claim; check and insert happen under one lock.
        """
        with self._lock:
            now = self._clock()
            entry = self._items.get(key)
            if entry is not None and not self._is_expired(entry, now):
                return False
            self._items[key] = _Entry(inserted_at=now, value=value)
            return True

    def discard(self, key: Hashable) -> None:
        with self._lock:
            self._items.pop(key, None)

    def evict_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._items.items() if self._is_expired(e, now)]
            for k in expired:
                del self._items[k]
            self._evictions += len(expired)
            return len(expired)

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._items)
            self._items.clear()
            return cleared

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            return {
                "size": len(self._items),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "ttl_s": self._ttl_s,
            }
