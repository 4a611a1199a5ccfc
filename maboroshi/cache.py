"""
Bounded, time-expiring cache of resolved stream URLs.
"""
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from maboroshi.logging_config import get_logger
from maboroshi.models import ResolvedStream

logger = get_logger('cache')


@dataclass
class CacheEntry:
    stream: ResolvedStream
    expires_at: float


class StreamCache:
    """LRU mapping of track identifier to resolved stream.

    Entries expire ``ttl`` seconds after insertion. With ``sliding`` enabled a
    hit re-arms the expiry instead. The first item of the ordered mapping is
    always the least recently used entry.
    """

    def __init__(
        self,
        capacity: int = 30,
        ttl: float = 7200.0,
        clock: Callable[[], float] = time.monotonic,
        sliding: bool = False,
    ):
        if capacity < 1:
            raise ValueError(f"Cache capacity must be positive, got {capacity}")
        if ttl <= 0:
            raise ValueError(f"Cache TTL must be positive, got {ttl}")
        self.capacity = capacity
        self.ttl = ttl
        self.sliding = sliding
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, track_id: str) -> Optional[ResolvedStream]:
        """Return the cached stream, or None on a miss or an expired entry."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(track_id)
            if entry is None:
                return None
            if now >= entry.expires_at:
                del self._entries[track_id]
                logger.debug(f"Expired cached URL for {track_id}")
                return None
            self._entries.move_to_end(track_id)
            if self.sliding:
                entry.expires_at = now + self.ttl
            return entry.stream

    def put(self, track_id: str, stream: ResolvedStream) -> None:
        """Insert or replace the entry for ``track_id`` and evict past capacity."""
        now = self._clock()
        with self._lock:
            self._entries[track_id] = CacheEntry(stream, now + self.ttl)
            self._entries.move_to_end(track_id)
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted cached URL for {evicted}")

    def invalidate(self, track_id: str) -> bool:
        with self._lock:
            return self._entries.pop(track_id, None) is not None

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, track_id: object) -> bool:
        # Membership checks do not count as a use.
        now = self._clock()
        with self._lock:
            entry = self._entries.get(track_id)
            return entry is not None and now < entry.expires_at
