"""Bounded result cache keyed by query hash, with read-time TTL expiry."""
import copy
import time
from collections import OrderedDict
from typing import Callable, Optional

from bookmark_query.models import CacheEntry, SearchResult


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class QueryCache:
    """Insertion-ordered cache of first-page search results.

    Empty results are never stored. When full, the oldest inserted entry is
    evicted. Expiry is checked when an entry is read. Results are copied on
    the way in and out, so callers never share a cached object.
    """

    def __init__(self, max_entries: int = 100, ttl_ms: float = 300000, clock: Callable[[], float] = _monotonic_ms):
        self.max_entries = max_entries
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, query_hash: str) -> bool:
        return query_hash in self._entries

    def get(self, query_hash: str) -> Optional[SearchResult]:
        """Return a copy of the cached result, or None if missing or expired."""
        entry = self._entries.get(query_hash)
        if entry is None:
            self.misses += 1
            return None

        if self._clock() - entry.inserted_at_ms >= self.ttl_ms:
            del self._entries[query_hash]
            self.misses += 1
            return None

        self.hits += 1
        return copy.deepcopy(entry.result)

    def put(self, query_hash: str, result: SearchResult) -> bool:
        """Store a copy of a result.

        Args:
            query_hash: Cache key from QueryParser.generate_query_hash
            result: Result to cache

        Returns:
            True if stored, False if the result was empty and skipped
        """
        if not result.bookmarks or self.max_entries <= 0:
            return False

        # Re-inserting a key makes it the newest entry
        self._entries.pop(query_hash, None)
        self._evict(self.max_entries - 1)
        self._entries[query_hash] = CacheEntry(query_hash, copy.deepcopy(result), self._clock())
        return True

    def resize(self, max_entries: int, ttl_ms: Optional[float] = None) -> None:
        self.max_entries = max_entries
        if ttl_ms is not None:
            self.ttl_ms = ttl_ms
        self._evict(max_entries)

    def _evict(self, keep: int) -> None:
        while self._entries and len(self._entries) > max(keep, 0):
            self._entries.popitem(last=False)

    def clear(self) -> None:
        """Drop every entry. Hit/miss counters are kept."""
        self._entries.clear()

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0
