"""Search executor: runs a parsed query plan against the bookmark store.

The most selective filter is resolved through its store index; every other
filter is applied in memory to the shrinking candidate set. Text tokens are
then checked with an AND-across-tokens substring pass, excluded tags are
dropped, and the list is sorted and paginated.

A failing lookup only empties the filter it belongs to. ``execute`` never
raises.
"""
import math
import sys
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple

from bookmark_query.bookmarks_store import BookmarkStore
from bookmark_query.config import SearchEngineConfig
from bookmark_query.models import (
    AuthorFilter,
    BookmarkRecord,
    DateRangeFilter,
    FilterKind,
    HasMediaFilter,
    Pagination,
    ParsedQuery,
    QueryFilter,
    ScoredBookmark,
    ScoringFactors,
    SearchAnalytics,
    SearchResult,
    SortBy,
    SortOrder,
    TagFilter,
    TextTokenFilter,
)


def _now_ms() -> float:
    return time.perf_counter() * 1000


def _log(message: str) -> None:
    print(f"[SearchExecutor] {message}", file=sys.stderr)


@dataclass
class ExecutionOutcome:
    result: SearchResult
    analytics: SearchAnalytics


class SearchExecutor:
    """Executes query plans produced by QueryParser."""

    def __init__(self, store: BookmarkStore, config: Optional[SearchEngineConfig] = None):
        self.store = store
        self.config = config or SearchEngineConfig()

    async def execute(self, parsed: ParsedQuery) -> ExecutionOutcome:
        """Run a parsed query.

        Args:
            parsed: Output of QueryParser.parse

        Returns:
            ExecutionOutcome with the paginated result and run analytics
        """
        start = _now_ms()
        analytics = SearchAnalytics()

        try:
            if self._pages_in_store(parsed):
                return await self._recent_page(parsed, analytics, start)

            candidates = await self._collect(parsed, analytics)
            candidates = self._apply_phrases(candidates, parsed.exact_phrases)
            candidates = self._apply_exclusions(candidates, parsed.excluded_tags)
            candidates = self._sort(candidates, parsed.sort_by, parsed.sort_order)

            query_time = _now_ms() - start
            analytics.query_time_ms = query_time
            analytics.results_returned = len(candidates)

            if query_time > self.config.performance_targets.combined_search:
                analytics.slow_operations.append(f"Total query: {query_time:.2f}ms")
                _log(f"Slow search query: {query_time:.2f}ms (plan primary: {self._describe(parsed.plan.primary_filter)})")

            return ExecutionOutcome(self._paginate(candidates, parsed, query_time), analytics)

        except Exception as e:
            _log(f"Search execution error: {e}")
            analytics.query_time_ms = _now_ms() - start
            return ExecutionOutcome(SearchResult.empty(analytics.query_time_ms), analytics)

    async def _collect(self, parsed: ParsedQuery, analytics: SearchAnalytics) -> List[BookmarkRecord]:
        """Primary retrieval, secondary narrowing and the text pass."""
        plan = parsed.plan
        primary = plan.primary_filter

        if primary is not None:
            candidates = await self.execute_single_filter(primary, analytics)
        else:
            candidates = await self._recent(analytics)

        index_missed = isinstance(primary, TextTokenFilter) and not candidates
        candidates = self.narrow(candidates, plan.secondary_filters, analytics)

        if not parsed.text_tokens:
            return candidates

        if candidates:
            return self.apply_text_search(candidates, parsed.text_tokens, analytics)

        if index_missed:
            # The token index missed (or failed): fall back to a bounded
            # substring scan, then re-apply the non-text filters
            scanned = await self._text_scan(parsed.text_tokens, analytics)
            others = [f for f in plan.secondary_filters if not isinstance(f, TextTokenFilter)]
            return self.narrow(scanned, others, analytics)

        return candidates

    # ------------------------------------------------------------------
    # Primary retrieval (index lookups)
    # ------------------------------------------------------------------

    async def execute_single_filter(self, query_filter: QueryFilter, analytics: SearchAnalytics) -> List[BookmarkRecord]:
        """Resolve one filter through the store.

        Any lookup failure is logged and yields an empty list.
        """
        index_name, lookup = self._lookup_for(query_filter)
        start = _now_ms()

        try:
            result = await lookup()
        except Exception as e:
            _log(f"Filter execution error for {query_filter.kind.value}: {e}")
            return []

        if index_name:
            analytics.indexes_used.append(index_name)
        analytics.index_hits += 1
        self._track(analytics, query_filter.kind, _now_ms() - start, query_filter.kind.value)
        return result

    def _lookup_for(self, query_filter: QueryFilter) -> Tuple[Optional[str], Callable[[], Awaitable[List[BookmarkRecord]]]]:
        """Pick the store lookup for a filter kind: (index name, coroutine factory)."""
        store = self.store
        limits = self.config.limits

        if isinstance(query_filter, TagFilter):
            return "tags", lambda: store.get_by_tag_equals(query_filter.value, limit=limits.tag_lookup)
        if isinstance(query_filter, AuthorFilter):
            return "author", lambda: store.get_by_author_equals(
                query_filter.value, case_insensitive=True, limit=limits.author_lookup
            )
        if isinstance(query_filter, DateRangeFilter):
            return "bookmarked_at", lambda: store.get_by_date_range(
                query_filter.value.start, query_filter.value.end, limit=limits.date_range_lookup
            )
        if isinstance(query_filter, TextTokenFilter):
            return "text_tokens", lambda: store.get_by_token_equals(
                query_filter.value, case_insensitive=True, limit=limits.token_lookup
            )
        if isinstance(query_filter, HasMediaFilter):
            # No media index: bounded scan with an in-memory predicate
            predicate = self.predicate_for(query_filter)
            return None, lambda: store.scan_recent(predicate, limit=limits.media_scan)
        raise TypeError(f"Unhandled filter kind: {query_filter!r}")

    async def _recent(self, analytics: SearchAnalytics) -> List[BookmarkRecord]:
        """Candidate set for a query with no filters: newest bookmarks."""
        try:
            records = await self.store.get_recent_by_time(limit=self.config.limits.recent_scan)
        except Exception as e:
            _log(f"Recent bookmarks lookup failed: {e}")
            return []
        if len(records) >= self.config.limits.recent_scan:
            _log(f"Recent bookmarks capped at {len(records)} rows for in-memory filtering")
        analytics.indexes_used.append("created_at")
        return records

    @staticmethod
    def _pages_in_store(parsed: ParsedQuery) -> bool:
        """True when a query has nothing to filter and wants store order (newest first)."""
        if parsed.plan.primary_filter is not None or parsed.exact_phrases or parsed.excluded_tags:
            return False
        if parsed.sort_by == SortBy.RELEVANCE:
            return True
        return parsed.sort_by == SortBy.DATE and parsed.sort_order == SortOrder.DESC

    async def _recent_page(self, parsed: ParsedQuery, analytics: SearchAnalytics, start: float) -> ExecutionOutcome:
        """One page of the newest bookmarks, paged by the store itself."""
        try:
            page = await self.store.get_recent_by_time(limit=parsed.limit, offset=parsed.offset)
            total = await self.store.count()
        except Exception as e:
            _log(f"Recent bookmarks lookup failed: {e}")
            page, total = [], 0
        else:
            analytics.indexes_used.append("created_at")

        query_time = _now_ms() - start
        analytics.query_time_ms = query_time
        analytics.results_returned = total
        if query_time > self.config.performance_targets.combined_search:
            analytics.slow_operations.append(f"Total query: {query_time:.2f}ms")
        return ExecutionOutcome(self._build_result(page, total, parsed, query_time), analytics)

    async def _text_scan(self, tokens: Sequence[str], analytics: SearchAnalytics) -> List[BookmarkRecord]:
        start = _now_ms()
        try:
            records = await self.store.scan_recent(
                lambda record: self.matches_all_tokens(record, tokens),
                limit=self.config.limits.text_scan,
            )
        except Exception as e:
            _log(f"Text scan failed: {e}")
            return []
        self._track(analytics, FilterKind.TEXT_TOKEN, _now_ms() - start, "Text scan")
        return records

    # ------------------------------------------------------------------
    # In-memory narrowing
    # ------------------------------------------------------------------

    def narrow(
        self,
        candidates: List[BookmarkRecord],
        filters: Iterable[QueryFilter],
        analytics: SearchAnalytics,
    ) -> List[BookmarkRecord]:
        """Apply filters as predicates in order, stopping once nothing is left."""
        for query_filter in filters:
            if not candidates:
                break
            start = _now_ms()
            predicate = self.predicate_for(query_filter)
            candidates = [record for record in candidates if predicate(record)]
            self._track(analytics, query_filter.kind, _now_ms() - start, f"{query_filter.kind.value} filter")
        return candidates

    @staticmethod
    def predicate_for(query_filter: QueryFilter) -> Callable[[BookmarkRecord], bool]:
        """In-memory equivalent of a filter's index lookup."""
        if isinstance(query_filter, TagFilter):
            tag = query_filter.value
            return lambda record: tag in record.tags
        if isinstance(query_filter, AuthorFilter):
            author = query_filter.value.lower()
            return lambda record: record.author.lower() == author
        if isinstance(query_filter, DateRangeFilter):
            date_range = query_filter.value
            return lambda record: date_range.contains(record.bookmarked_at)
        if isinstance(query_filter, HasMediaFilter):
            wanted = query_filter.value
            return lambda record: record.has_media == wanted
        if isinstance(query_filter, TextTokenFilter):
            tokens = (query_filter.value,)
            return lambda record: SearchExecutor.matches_all_tokens(record, tokens)
        raise TypeError(f"Unhandled filter kind: {query_filter!r}")

    @staticmethod
    def matches_all_tokens(record: BookmarkRecord, tokens: Sequence[str]) -> bool:
        """True when every token is a substring of the text, the author or a tag."""
        text = record.text.lower()
        author = record.author.lower()
        return all(
            token in text or token in author or any(token in tag for tag in record.tags)
            for token in tokens
        )

    def apply_text_search(
        self,
        candidates: List[BookmarkRecord],
        tokens: Sequence[str],
        analytics: SearchAnalytics,
    ) -> List[BookmarkRecord]:
        start = _now_ms()
        filtered = [record for record in candidates if self.matches_all_tokens(record, tokens)]
        self._track(analytics, FilterKind.TEXT_TOKEN, _now_ms() - start, "Text search")
        return filtered

    @staticmethod
    def _apply_phrases(candidates: List[BookmarkRecord], phrases: Sequence[str]) -> List[BookmarkRecord]:
        if not phrases:
            return candidates
        return [record for record in candidates if all(phrase in record.text.lower() for phrase in phrases)]

    @staticmethod
    def _apply_exclusions(candidates: List[BookmarkRecord], excluded: Sequence[str]) -> List[BookmarkRecord]:
        if not excluded:
            return candidates
        excluded_set = set(excluded)
        return [record for record in candidates if excluded_set.isdisjoint(record.tags)]

    # ------------------------------------------------------------------
    # Sorting and pagination
    # ------------------------------------------------------------------

    @staticmethod
    def _sort(candidates: List[BookmarkRecord], sort_by: SortBy, sort_order: SortOrder) -> List[BookmarkRecord]:
        """Sort by the requested key; relevance keeps retrieval order.

        Ties are broken by id in the same direction, so output is stable
        across runs.
        """
        if sort_by == SortBy.RELEVANCE:
            return candidates

        if sort_by == SortBy.DATE:
            key = lambda record: (record.created_at, record.id)
        elif sort_by == SortBy.BOOKMARKED:
            key = lambda record: (record.bookmarked_at, record.id)
        elif sort_by == SortBy.AUTHOR:
            key = lambda record: (record.author.casefold(), record.id)
        else:
            raise TypeError(f"Unhandled sort key: {sort_by!r}")

        return sorted(candidates, key=key, reverse=sort_order == SortOrder.DESC)

    @staticmethod
    def _paginate(candidates: List[BookmarkRecord], parsed: ParsedQuery, query_time_ms: float) -> SearchResult:
        page = candidates[parsed.offset:parsed.offset + parsed.limit]
        return SearchExecutor._build_result(page, len(candidates), parsed, query_time_ms)

    @staticmethod
    def _build_result(
        page: List[BookmarkRecord], total: int, parsed: ParsedQuery, query_time_ms: float
    ) -> SearchResult:
        limit = parsed.limit
        offset = parsed.offset
        has_more = offset + limit < total

        return SearchResult(
            bookmarks=[ScoredBookmark(record, 1.0, ScoringFactors()) for record in page],
            total_count=total,
            query_time_ms=query_time_ms,
            pagination=Pagination(
                has_more=has_more,
                total_pages=math.ceil(total / limit) if total else 0,
                next_offset=offset + limit if has_more else None,
            ),
        )

    # ------------------------------------------------------------------
    # Performance tracking
    # ------------------------------------------------------------------

    def performance_target(self, kind: FilterKind) -> float:
        targets = self.config.performance_targets
        if kind == FilterKind.TAG:
            return targets.single_tag_search
        if kind == FilterKind.TEXT_TOKEN:
            return targets.text_search
        if kind in (FilterKind.AUTHOR, FilterKind.DATE_RANGE):
            return targets.multi_tag_search
        return targets.combined_search

    def _track(self, analytics: SearchAnalytics, kind: FilterKind, duration_ms: float, label: str) -> None:
        if duration_ms > self.performance_target(kind):
            analytics.slow_operations.append(f"{label}: {duration_ms:.2f}ms")

    @staticmethod
    def _describe(query_filter: Optional[QueryFilter]) -> str:
        if query_filter is None:
            return "none"
        return f"{query_filter.kind.value}={query_filter.value!r}"
