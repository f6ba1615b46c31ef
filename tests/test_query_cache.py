"""Tests for query_cache module."""
import pytest

from bookmark_query.models import BookmarkRecord, ScoredBookmark, SearchResult
from bookmark_query.query_cache import QueryCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def result_with(*ids):
    bookmarks = [
        ScoredBookmark(BookmarkRecord(id=i, text=f"post {i}", author="a", created_at="2024-01-01T00:00:00Z"))
        for i in ids
    ]
    return SearchResult(bookmarks=bookmarks, total_count=len(bookmarks))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return QueryCache(max_entries=3, ttl_ms=1000, clock=clock)


class TestQueryCache:
    def test_get_returns_stored_result(self, cache):
        result = result_with("1")
        assert cache.put("k", result) is True
        cached = cache.get("k")
        assert [s.bookmark.id for s in cached.bookmarks] == ["1"]
        assert cached.total_count == 1
        assert "k" in cache

    def test_callers_get_independent_copies(self, cache):
        result = result_with("1", "2")
        cache.put("k", result)
        result.bookmarks.clear()

        first = cache.get("k")
        assert first is not result
        first.bookmarks.pop()
        first.pagination.has_more = True

        second = cache.get("k")
        assert [s.bookmark.id for s in second.bookmarks] == ["1", "2"]
        assert second.pagination.has_more is False

    def test_missing_key(self, cache):
        assert cache.get("nope") is None
        assert cache.misses == 1

    def test_empty_results_are_not_stored(self, cache):
        assert cache.put("k", SearchResult.empty()) is False
        assert len(cache) == 0
        assert cache.get("k") is None

    def test_entry_expires_at_ttl(self, cache, clock):
        cache.put("k", result_with("1"))
        clock.now = 999
        assert cache.get("k") is not None
        clock.now = 1000
        assert cache.get("k") is None
        assert "k" not in cache

    def test_oldest_inserted_is_evicted(self, cache):
        for key in ("a", "b", "c"):
            cache.put(key, result_with(key))
        cache.put("d", result_with("d"))
        assert len(cache) == 3
        assert "a" not in cache
        assert all(key in cache for key in ("b", "c", "d"))

    def test_hits_do_not_refresh_position(self, cache):
        for key in ("a", "b", "c"):
            cache.put(key, result_with(key))
        cache.get("a")
        cache.put("d", result_with("d"))
        assert "a" not in cache

    def test_reinsert_moves_to_newest(self, cache, clock):
        for key in ("a", "b", "c"):
            cache.put(key, result_with(key))
        clock.now = 500
        cache.put("a", result_with("a2"))
        cache.put("d", result_with("d"))
        assert "a" in cache
        assert "b" not in cache
        # Re-insertion also restarts the TTL
        clock.now = 1200
        assert cache.get("a").bookmarks[0].bookmark.id == "a2"

    def test_hit_rate(self, cache):
        assert cache.hit_rate == 0.0
        cache.put("k", result_with("1"))
        cache.get("k")
        cache.get("other")
        assert cache.hit_rate == 0.5

    def test_clear_keeps_counters(self, cache):
        cache.put("k", result_with("1"))
        cache.get("k")
        cache.clear()
        assert len(cache) == 0
        assert cache.hits == 1

    def test_resize_evicts_oldest(self, cache):
        for key in ("a", "b", "c"):
            cache.put(key, result_with(key))
        cache.resize(1, ttl_ms=50)
        assert len(cache) == 1
        assert "c" in cache
        assert cache.ttl_ms == 50

    def test_zero_capacity_stores_nothing(self, clock):
        cache = QueryCache(max_entries=0, clock=clock)
        assert cache.put("k", result_with("1")) is False
        assert len(cache) == 0
