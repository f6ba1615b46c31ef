"""Tests for config module."""
import pytest

from bookmark_query import config as config_module
from bookmark_query.config import (
    CachingConfig,
    Config,
    PerformanceTargets,
    SearchEngineConfig,
    get_config,
)


class TestConfig:
    def test_default_values(self):
        config = SearchEngineConfig()
        assert config.performance_targets.single_tag_search == 5.0
        assert config.performance_targets.combined_search == 50.0
        assert config.caching.enabled is True
        assert config.caching.max_entries == 100
        assert config.caching.ttl_ms == 300000
        assert config.text_search.min_token_length == 3
        assert config.text_search.max_tokens == 10
        assert config.limits.tag_lookup == 1000
        assert config.limits.text_scan == 5000

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("BOOKMARKS_SEARCH_CACHE_ENABLED", "false")
        monkeypatch.setenv("BOOKMARKS_SEARCH_CACHE_SIZE", "10")
        monkeypatch.setenv("BOOKMARKS_SEARCH_MIN_TOKEN_LENGTH", "4")
        monkeypatch.setenv("BOOKMARKS_SEARCH_DB", "/tmp/test.db")

        config = Config.from_env()
        assert config.engine.caching.enabled is False
        assert config.engine.caching.max_entries == 10
        assert config.engine.text_search.min_token_length == 4
        assert str(config.db_path) == "/tmp/test.db"

    def test_db_path_default(self, monkeypatch):
        monkeypatch.delenv("BOOKMARKS_SEARCH_DB", raising=False)
        assert Config.from_env().db_path is None

    def test_get_config_is_cached(self, monkeypatch):
        monkeypatch.setattr(config_module, "_config", None)
        assert get_config() is get_config()


class TestMerged:
    def test_partial_section_update(self):
        base = SearchEngineConfig()
        merged = base.merged({"caching": {"ttl_ms": 1000}})
        assert merged.caching.ttl_ms == 1000
        assert merged.caching.max_entries == 100
        assert base.caching.ttl_ms == 300000

    def test_whole_section_replacement(self):
        targets = PerformanceTargets(combined_search=1)
        assert SearchEngineConfig().merged({"performance_targets": targets}).performance_targets is targets

    def test_unknown_section(self):
        with pytest.raises(ValueError, match="Unknown config section: scoring"):
            SearchEngineConfig().merged({"scoring": {}})

    def test_unknown_field(self):
        with pytest.raises(ValueError, match="Unknown caching settings: size"):
            SearchEngineConfig().merged({"caching": {"size": 1}})

    def test_heuristics_can_be_replaced(self):
        merged = SearchEngineConfig().merged({"heuristics": {"token_selectivity": 0.5}})
        assert merged.heuristics.token_selectivity == 0.5
        assert CachingConfig().enabled is True
