"""Tests for search_executor module."""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from bookmark_query.bookmarks_store import BookmarkStore
from bookmark_query.config import PerformanceTargets, SearchEngineConfig
from bookmark_query.models import BookmarkRecord, DateRange, SearchQuery
from bookmark_query.query_parser import QueryParser
from bookmark_query.search_executor import SearchExecutor


def record(id, text, author="someone", created="2024-01-01T00:00:00Z", tags=(), media=()):
    return BookmarkRecord(id=id, text=text, author=author, created_at=created, tags=tags, media_urls=media)


async def run(store, config=None, **query_fields):
    config = config or SearchEngineConfig()
    parser = QueryParser(config.text_search, config.heuristics)
    executor = SearchExecutor(store, config)
    return await executor.execute(parser.parse(SearchQuery(**query_fields)))


def ids(outcome):
    return [scored.bookmark.id for scored in outcome.result.bookmarks]


@pytest.mark.asyncio
class TestWorkedExample:
    async def test_tag_search(self, populated_store):
        outcome = await run(populated_store, tags=["react"])
        assert sorted(ids(outcome)) == ["1", "2"]
        assert outcome.analytics.indexes_used == ["tags"]

    async def test_text_with_excluded_tag(self, populated_store):
        outcome = await run(populated_store, text="react", exclude_tags=["vue"])
        assert ids(outcome) == ["1"]

    async def test_author_search_is_case_insensitive(self, populated_store):
        outcome = await run(populated_store, author="WesBos")
        assert ids(outcome) == ["1"]

    async def test_has_media_without_media_urls(self, populated_store):
        outcome = await run(populated_store, has_media=True)
        assert ids(outcome) == []
        assert outcome.result.total_count == 0

    async def test_without_media_scans(self, populated_store):
        outcome = await run(populated_store, has_media=False)
        assert ids(outcome) == ["2", "1", "3"]


@pytest.mark.asyncio
class TestFilterComposition:
    async def test_empty_query_returns_recent(self, populated_store):
        outcome = await run(populated_store)
        assert ids(outcome) == ["2", "1", "3"]
        assert outcome.analytics.indexes_used == ["created_at"]

    async def test_empty_text_behaves_like_empty_query(self, populated_store):
        assert ids(await run(populated_store, text="")) == ids(await run(populated_store))

    async def test_multi_token_text_is_and(self, store):
        await store.put_many([
            record("a", "alpha only", created="2024-01-03T00:00:00Z"),
            record("b", "beta only", created="2024-01-02T00:00:00Z"),
            record("c", "alpha and beta", created="2024-01-01T00:00:00Z"),
        ])
        outcome = await run(store, text="alpha beta")
        assert ids(outcome) == ["c"]

    async def test_token_matches_author_and_tags_in_text_pass(self, store):
        await store.put_many([
            record("a", "great thread on hooks", author="reactjs", tags=("frontend",)),
            record("b", "hooks in depth", author="someone", tags=("backend",)),
        ])
        # "hooks" comes from the token index; "frontend" only appears as a tag
        outcome = await run(store, text="hooks frontend")
        assert ids(outcome) == ["a"]

    async def test_secondary_filter_narrows(self, populated_store):
        outcome = await run(populated_store, tags=["react"], author="x")
        assert ids(outcome) == ["2"]

    async def test_stops_when_candidates_run_out(self, populated_store):
        outcome = await run(populated_store, tags=["food"], author="wesbos", text="pasta")
        assert ids(outcome) == []

    async def test_date_range_uses_bookmark_time(self, populated_store):
        window = DateRange.from_iso("2024-03-04T00:00:00Z", "2024-03-11T00:00:00Z")
        outcome = await run(populated_store, date_range=window)
        assert ids(outcome) == ["3", "2"]
        assert outcome.analytics.indexes_used == ["bookmarked_at"]

    async def test_date_range_as_secondary_filter(self, populated_store):
        window = DateRange.from_iso("2024-03-01T00:00:00Z", "2024-03-03T00:00:00Z")
        outcome = await run(populated_store, tags=["react"], date_range=window)
        assert ids(outcome) == ["1"]

    async def test_media_filter_as_secondary(self, store):
        await store.put_many([
            record("a", "chart screenshot", tags=("data",), media=("https://img/1.png",)),
            record("b", "chart description", tags=("data",)),
        ])
        outcome = await run(store, tags=["data"], has_media=True)
        assert ids(outcome) == ["a"]

    async def test_exclusion_applies_in_any_mode(self, populated_store):
        outcome = await run(populated_store, text="@x react", exclude_tags=["vue"])
        assert "2" not in ids(outcome)

    async def test_exact_phrase_must_appear(self, populated_store):
        outcome = await run(populated_store, text='"vue vs"')
        assert ids(outcome) == ["2"]


@pytest.mark.asyncio
class TestTextFallback:
    async def test_partial_word_found_by_substring_scan(self, populated_store):
        # "tuto" is not a stored token; the bounded scan finds it inside "tutorial"
        outcome = await run(populated_store, text="tuto")
        assert ids(outcome) == ["1"]
        assert "text_tokens" in outcome.analytics.indexes_used

    async def test_fallback_reapplies_other_filters(self, populated_store):
        # The token filter (0.1) outranks the media filter, so it is the primary
        outcome = await run(populated_store, text="tuto", has_media=True)
        assert ids(outcome) == []
        outcome = await run(populated_store, text="tuto", has_media=False)
        assert ids(outcome) == ["1"]

    async def test_no_fallback_when_tag_primary_misses(self, populated_store):
        outcome = await run(populated_store, tags=["missing"], text="react")
        assert ids(outcome) == []

    async def test_fallback_scan_is_bounded(self, store):
        await store.put_many([
            record("old", "ancient wisdom", created="2020-01-01T00:00:00Z"),
            record("new", "fresh news", created="2024-01-01T00:00:00Z"),
        ])
        config = SearchEngineConfig()
        config.limits.text_scan = 1
        outcome = await run(store, config=config, text="wisd")
        assert ids(outcome) == []


@pytest.mark.asyncio
class TestSortingAndPagination:
    @pytest.mark.parametrize("sort_by,sort_order,expected", [
        ("author", "asc", ["1", "2", "3"]),
        ("author", "desc", ["3", "2", "1"]),
        ("date", "asc", ["3", "1", "2"]),
        ("date", "desc", ["2", "1", "3"]),
        ("bookmarked", "desc", ["3", "2", "1"]),
        ("bookmarked", "asc", ["1", "2", "3"]),
    ])
    async def test_sort_keys(self, populated_store, sort_by, sort_order, expected):
        outcome = await run(populated_store, sort_by=sort_by, sort_order=sort_order)
        assert ids(outcome) == expected

    async def test_ties_broken_by_id(self, store):
        await store.put_many([
            record("b", "same author two", author="dup"),
            record("a", "same author one", author="dup"),
            record("c", "same author three", author="dup"),
        ])
        outcome = await run(store, sort_by="author", sort_order="asc")
        assert ids(outcome) == ["a", "b", "c"]

    async def test_first_page(self, populated_store):
        outcome = await run(populated_store, limit=2)
        result = outcome.result
        assert ids(outcome) == ["2", "1"]
        assert result.total_count == 3
        assert result.pagination.has_more is True
        assert result.pagination.total_pages == 2
        assert result.pagination.next_offset == 2

    async def test_last_page(self, populated_store):
        outcome = await run(populated_store, limit=2, offset=2)
        assert ids(outcome) == ["3"]
        assert outcome.result.pagination.has_more is False
        assert outcome.result.pagination.next_offset is None

    async def test_offset_past_end(self, populated_store):
        outcome = await run(populated_store, offset=10)
        assert ids(outcome) == []
        assert outcome.result.total_count == 3

    async def test_recent_pages_past_scan_cap(self, populated_store):
        config = SearchEngineConfig()
        config.limits.recent_scan = 2

        outcome = await run(populated_store, config=config, offset=2, limit=1)
        assert ids(outcome) == ["3"]
        assert outcome.result.total_count == 3
        assert outcome.result.pagination.has_more is False

        outcome = await run(populated_store, config=config, limit=1)
        assert ids(outcome) == ["2"]
        assert outcome.result.pagination.next_offset == 1

    async def test_recent_paging_is_done_by_store(self):
        store = MagicMock()
        store.get_recent_by_time = AsyncMock(return_value=[record("b", "second")])
        store.count = AsyncMock(return_value=5)

        outcome = await run(store, limit=1, offset=1)

        store.get_recent_by_time.assert_awaited_once_with(limit=1, offset=1)
        assert ids(outcome) == ["b"]
        assert outcome.result.total_count == 5
        assert outcome.result.pagination.total_pages == 5

    async def test_other_sorts_still_filter_in_memory(self, populated_store):
        config = SearchEngineConfig()
        config.limits.recent_scan = 2
        outcome = await run(populated_store, config=config, sort_by="author", sort_order="asc")
        assert ids(outcome) == ["1", "2"]

    async def test_scores_are_placeholders(self, populated_store):
        outcome = await run(populated_store, tags=["react"])
        for scored in outcome.result.bookmarks:
            assert 0.0 <= scored.score <= 1.0
            assert scored.matching_factors.text_relevance == 0.0
            assert scored.matching_factors.exact_match is False


@pytest.mark.asyncio
class TestFailureHandling:
    async def test_uninitialized_store_returns_empty(self, db_path):
        outcome = await run(BookmarkStore(db_path), tags=["react"])
        assert ids(outcome) == []
        assert outcome.result.query_time_ms >= 0

    async def test_failed_lookup_only_empties_that_filter(self, capsys):
        store = MagicMock()
        store.get_by_token_equals = AsyncMock(side_effect=RuntimeError("disk I/O error"))
        store.scan_recent = AsyncMock(return_value=[record("a", "react rocks")])

        outcome = await run(store, text="react")

        assert ids(outcome) == ["a"]
        assert "Filter execution error for textToken" in capsys.readouterr().err

    async def test_missing_store_never_raises(self):
        outcome = await run(None, author="anyone")
        assert outcome.result.bookmarks == []
        assert outcome.result.total_count == 0

    async def test_recent_lookup_failure(self):
        store = MagicMock()
        store.get_recent_by_time = AsyncMock(side_effect=RuntimeError("closed"))
        outcome = await run(store)
        assert ids(outcome) == []


@pytest.mark.asyncio
class TestAnalytics:
    async def test_records_index_hits(self, populated_store):
        outcome = await run(populated_store, tags=["react"], author="x")
        assert outcome.analytics.index_hits == 1
        assert outcome.analytics.results_returned == 1
        assert outcome.analytics.query_time_ms >= 0

    async def test_slow_operations_reported(self, populated_store):
        targets = PerformanceTargets(
            single_tag_search=-1, multi_tag_search=-1, text_search=-1, combined_search=-1, autocomplete=-1
        )
        config = SearchEngineConfig(performance_targets=targets)
        outcome = await run(populated_store, config=config, tags=["react"], text="react")
        slow = outcome.analytics.slow_operations
        assert any(op.startswith("tag:") for op in slow)
        assert any(op.startswith("Text search:") for op in slow)
        assert any(op.startswith("Total query:") for op in slow)

    async def test_fast_operations_not_reported(self, populated_store):
        targets = PerformanceTargets(
            single_tag_search=1e9, multi_tag_search=1e9, text_search=1e9, combined_search=1e9
        )
        outcome = await run(populated_store, config=SearchEngineConfig(performance_targets=targets), tags=["react"])
        assert outcome.analytics.slow_operations == []


class TestPredicates:
    def test_predicate_rejects_unknown_filter(self):
        with pytest.raises(TypeError):
            SearchExecutor.predicate_for(object())

    def test_matches_all_tokens(self):
        rec = record("a", "Building a Parser", author="DevAuthor", tags=("compilers",))
        assert SearchExecutor.matches_all_tokens(rec, ["pars", "devauthor", "compil"])
        assert not SearchExecutor.matches_all_tokens(rec, ["pars", "lexer"])

    def test_records_are_not_mutated(self):
        rec = record("a", "text here", created=datetime(2024, 1, 1, tzinfo=timezone.utc))
        before = rec.to_dict()
        SearchExecutor.matches_all_tokens(rec, ["text"])
        assert rec.to_dict() == before
