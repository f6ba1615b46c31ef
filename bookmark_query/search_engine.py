"""Search engine: public entry point that caches, parses and executes queries."""
import re
import sys
import time
from collections import defaultdict, deque
from typing import Any, Dict, List, Mapping, Optional

from bookmark_query.bookmarks_store import BookmarkStore
from bookmark_query.config import SearchEngineConfig
from bookmark_query.models import SearchAnalytics, SearchQuery, SearchResult, SortBy, TagSuggestion
from bookmark_query.query_cache import QueryCache
from bookmark_query.query_parser import QueryParser
from bookmark_query.search_executor import SearchExecutor

QUICK_SEARCH_LIMIT = 20
AUTHOR_SEARCH_LIMIT = 50
RECENT_LIMIT = 50
MAX_TRACKED_TERMS = 500


def _now_ms() -> float:
    return time.perf_counter() * 1000


def _log(message: str) -> None:
    print(f"[SearchEngine] {message}", file=sys.stderr)


class SearchStatistics:
    """Running statistics across searches made through one engine."""

    def __init__(self, window: int = 1000, max_terms: int = MAX_TRACKED_TERMS):
        self._window = window
        self._max_terms = max_terms
        self.reset()

    def reset(self) -> None:
        self.total_searches = 0
        self.cache_hits = 0
        self.cache_misses = 0
        self.failed_searches = 0
        self.slow_operations = 0
        self.query_times: deque = deque(maxlen=self._window)
        self.popular_terms: Dict[str, int] = defaultdict(int)
        self.indexes_used: Dict[str, int] = defaultdict(int)

    def record(self, query: SearchQuery, query_time_ms: float, analytics: SearchAnalytics) -> None:
        self.total_searches += 1
        self.query_times.append(query_time_ms)

        if analytics.cache_hit:
            self.cache_hits += 1
        else:
            self.cache_misses += 1
            self.slow_operations += len(analytics.slow_operations)
            for index in analytics.indexes_used:
                self.indexes_used[index] += 1

        if query.text:
            for word in re.findall(r"\b\w+\b", query.text.lower()):
                if len(word) > 2:
                    self.popular_terms[word] += 1
            if len(self.popular_terms) > self._max_terms:
                self._prune_terms()

    def _prune_terms(self) -> None:
        """Keep the most frequent half of the tracked terms."""
        keep = sorted(self.popular_terms.items(), key=lambda kv: (-kv[1], kv[0]))[:self._max_terms // 2]
        self.popular_terms = defaultdict(int, keep)

    def to_dict(self) -> Dict[str, Any]:
        times = list(self.query_times)
        return {
            "total_searches": self.total_searches,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "failed_searches": self.failed_searches,
            "slow_operations": self.slow_operations,
            "avg_query_time_ms": sum(times) / len(times) if times else 0.0,
            "popular_terms": dict(sorted(self.popular_terms.items(), key=lambda kv: (-kv[1], kv[0]))[:10]),
            "indexes_used": dict(self.indexes_used),
        }


class SearchEngine:
    """Orchestrates query parsing, execution and result caching.

    ``search`` never raises; a failure anywhere below it becomes an empty
    SearchResult carrying the elapsed time.
    """

    def __init__(self, store: BookmarkStore, config: Optional[SearchEngineConfig] = None):
        self.store = store
        self.config = config or SearchEngineConfig()
        self.parser = QueryParser(self.config.text_search, self.config.heuristics)
        self.executor = SearchExecutor(store, self.config)
        self.cache = QueryCache(self.config.caching.max_entries, self.config.caching.ttl_ms)
        self.stats = SearchStatistics()

    async def search(self, query: Optional[SearchQuery] = None) -> SearchResult:
        """Search bookmarks.

        Args:
            query: Search request; None means "most recent bookmarks"

        Returns:
            SearchResult (never raises)
        """
        start = _now_ms()
        query = query or SearchQuery()
        # Keep one parser/executor pair even if update_config runs meanwhile
        parser = self.parser
        executor = self.executor

        try:
            query_hash = parser.generate_query_hash(query)
            use_cache = self.config.caching.enabled and query.offset == 0

            if use_cache:
                cached = self.cache.get(query_hash)
                if cached is not None:
                    self.stats.record(query, _now_ms() - start, SearchAnalytics(cache_hit=True))
                    return cached

            parsed = parser.parse(query)
            outcome = await executor.execute(parsed)
            result = outcome.result
            result.suggested_queries = parser.extract_suggestions(query)

            if use_cache:
                self.cache.put(query_hash, result)

            self.stats.record(query, _now_ms() - start, outcome.analytics)
            return result

        except Exception as e:
            _log(f"Search engine error: {e}")
            self.stats.failed_searches += 1
            return SearchResult.empty(_now_ms() - start)

    # ------------------------------------------------------------------
    # Convenience wrappers
    # ------------------------------------------------------------------

    async def quick_tag_search(self, tag: str) -> SearchResult:
        return await self.search(SearchQuery(tags=[tag], limit=QUICK_SEARCH_LIMIT))

    async def quick_text_search(self, text: str) -> SearchResult:
        return await self.search(SearchQuery(text=text, limit=QUICK_SEARCH_LIMIT))

    async def search_by_author(self, author: str) -> SearchResult:
        return await self.search(SearchQuery(author=author, limit=AUTHOR_SEARCH_LIMIT))

    async def get_recent(self, **filters: Any) -> SearchResult:
        """Newest bookmarks first, optionally narrowed by SearchQuery fields."""
        filters["sort_by"] = SortBy.DATE
        filters["limit"] = filters.get("limit") or RECENT_LIMIT
        return await self.search(SearchQuery(**filters))

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    def get_search_suggestions(self, query: SearchQuery) -> List[str]:
        return self.parser.extract_suggestions(query)

    async def suggest_tags(self, partial: str, limit: int = 10) -> List[TagSuggestion]:
        """Autocomplete tag names from the store's tag index.

        Prefix matches rank above matches elsewhere in the tag; then by usage.

        Args:
            partial: What the user has typed so far (a leading # is ignored)
            limit: Maximum suggestions

        Returns:
            List of TagSuggestion; empty on store failure
        """
        start = _now_ms()
        fragment = partial.strip().lstrip("#").lower()
        if not fragment:
            return []

        try:
            rows = await self.store.search_tags(fragment, limit=limit * 2)
        except Exception as e:
            _log(f"Tag suggestion lookup failed: {e}")
            return []

        suggestions = [
            TagSuggestion(
                tag=row["tag"],
                usage_count=row["usage_count"],
                relevance_score=1.0 if row["tag"].startswith(fragment) else 0.5,
            )
            for row in rows
        ]
        suggestions.sort(key=lambda s: (-s.relevance_score, -s.usage_count, s.tag))

        duration = _now_ms() - start
        if duration > self.config.performance_targets.autocomplete:
            _log(f"Slow tag autocomplete: {duration:.2f}ms")

        return suggestions[:limit]

    # ------------------------------------------------------------------
    # Cache and configuration
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        self.cache.clear()
        _log("Search cache cleared")

    def get_cache_stats(self) -> Dict[str, float]:
        return {"size": len(self.cache), "hit_rate": self.cache.hit_rate}

    def get_search_stats(self) -> Dict[str, Any]:
        stats = self.stats.to_dict()
        stats["cache"] = self.get_cache_stats()
        return stats

    def update_config(self, overrides: Mapping[str, Any]) -> None:
        """Apply a partial configuration and rebuild parser and executor.

        Args:
            overrides: See SearchEngineConfig.merged

        Raises:
            ValueError: If a section or setting is unknown
        """
        self.config = self.config.merged(overrides)
        self.parser = QueryParser(self.config.text_search, self.config.heuristics)
        self.executor = SearchExecutor(self.store, self.config)
        self.cache.resize(self.config.caching.max_entries, self.config.caching.ttl_ms)
        _log("Search engine configuration updated")
