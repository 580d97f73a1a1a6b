"""
Short-lived cache of journey search results.

Keyed on (from_stop_id, to_stop_id, max_transfers, avoid_incidents).
Entries expire by time only; publishing or resolving an incident does not
invalidate them, so results may lag the incident set by up to the TTL.
"""

import logging
from typing import Callable, Optional

from cache.ttl import TTLCache
from config import PATH_CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)


class PathCache:
    def __init__(self, ttl_s: float = PATH_CACHE_TTL_SECONDS, clock: Optional[Callable[[], float]] = None):
        kwargs = {"ttl_s": ttl_s}
        if clock is not None:
            kwargs["clock"] = clock
        self._cache = TTLCache(**kwargs)

    @staticmethod
    def key(from_stop_id: str, to_stop_id: str, options) -> tuple:
        return (from_stop_id, to_stop_id, options.max_transfers, options.avoid_incidents)

    def get(self, from_stop_id: str, to_stop_id: str, options):
        result = self._cache.get(self.key(from_stop_id, to_stop_id, options))
        if result is not None:
            logger.debug("Path cache hit for %s → %s.", from_stop_id, to_stop_id)
        return result

    def put(self, from_stop_id: str, to_stop_id: str, options, result) -> None:
        self._cache.put(self.key(from_stop_id, to_stop_id, options), result)

    def evict_expired(self) -> int:
        return self._cache.evict_expired()

    def clear(self) -> int:
        return self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
