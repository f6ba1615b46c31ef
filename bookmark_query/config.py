"""Configuration for the bookmark query engine."""
import os
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, FrozenSet, Mapping, Optional

from bookmark_query.tokenizer import DEFAULT_STOP_WORDS


@dataclass
class PerformanceTargets:
    """Per-operation latency targets in milliseconds (observed, never enforced)."""
    single_tag_search: float = 5.0
    multi_tag_search: float = 20.0
    text_search: float = 30.0
    combined_search: float = 50.0
    autocomplete: float = 10.0


@dataclass
class CachingConfig:
    enabled: bool = True
    max_entries: int = 100  # Cached queries
    ttl_ms: float = 5 * 60 * 1000

    @classmethod
    def from_env(cls) -> "CachingConfig":
        """Create caching config from environment variables."""
        return cls(
            enabled=os.environ.get("BOOKMARKS_SEARCH_CACHE_ENABLED", "true").lower() not in ("0", "false", "no"),
            max_entries=int(os.environ.get("BOOKMARKS_SEARCH_CACHE_SIZE", "100")),
            ttl_ms=float(os.environ.get("BOOKMARKS_SEARCH_CACHE_TTL_MS", str(5 * 60 * 1000))),
        )


@dataclass
class TextSearchConfig:
    """Text tokenization settings.

    The fuzzy, stemming, synonym and proximity flags are accepted but not
    acted on.
    """
    enable_fuzzy_matching: bool = False
    enable_stemming: bool = False
    enable_synonyms: bool = False
    proximity_boost: bool = False
    min_token_length: int = 3
    max_tokens: int = 10  # Tokens kept per query

    @classmethod
    def from_env(cls) -> "TextSearchConfig":
        return cls(
            min_token_length=int(os.environ.get("BOOKMARKS_SEARCH_MIN_TOKEN_LENGTH", "3")),
            max_tokens=int(os.environ.get("BOOKMARKS_SEARCH_MAX_TOKENS", "10")),
        )


@dataclass
class RelevanceWeights:
    """Weights reserved for relevance scoring; results currently carry a fixed score."""
    text_match: float = 0.4
    tag_match: float = 0.3
    recency: float = 0.15
    interaction: float = 0.1
    author: float = 0.05


@dataclass
class QueryLimits:
    """Row caps for store lookups, bounding worst-case latency."""
    tag_lookup: int = 1000
    author_lookup: int = 1000
    date_range_lookup: int = 5000
    token_lookup: int = 2000
    media_scan: int = 5000
    recent_scan: int = 2000  # Candidate set when a query has no filters
    text_scan: int = 5000  # Substring fallback when the token index misses


@dataclass(frozen=True)
class SelectivityHeuristics:
    """Selectivity priors and vocabularies used to order filters.

    These are guesses about the corpus, not measured statistics. Tests can
    substitute their own table.
    """
    common_words: FrozenSet[str] = frozenset({"react", "javascript", "web", "app", "code"})
    common_word_selectivity: float = 0.2
    long_token_length: int = 8
    long_token_selectivity: float = 0.05
    token_selectivity: float = 0.1
    token_cost_ms: float = 10.0

    popular_tags: FrozenSet[str] = frozenset({"javascript", "python", "ai", "web", "tutorial"})
    popular_tag_selectivity: float = 0.15
    tag_selectivity: float = 0.05
    tag_cost_ms: float = 5.0

    author_selectivity: float = 0.05
    author_cost_ms: float = 8.0

    # (max span in days, selectivity), checked in order
    date_span_selectivity: tuple = ((1, 0.02), (7, 0.1), (30, 0.3))
    wide_date_selectivity: float = 0.8
    date_range_cost_ms: float = 15.0

    with_media_selectivity: float = 0.3
    without_media_selectivity: float = 0.7
    media_cost_ms: float = 5.0

    assumed_corpus_size: int = 10000
    no_filter_estimate: int = 1000

    stop_words: FrozenSet[str] = DEFAULT_STOP_WORDS
    tag_like_terms: FrozenSet[str] = frozenset({
        "react", "vue", "angular", "python", "javascript", "js",
        "ai", "ml", "css", "html", "node", "npm",
    })
    tag_like_min_length: int = 7
    max_suggestions: int = 3


@dataclass
class SearchEngineConfig:
    """All settings consumed by the parser, executor and engine."""
    performance_targets: PerformanceTargets = field(default_factory=PerformanceTargets)
    caching: CachingConfig = field(default_factory=CachingConfig)
    text_search: TextSearchConfig = field(default_factory=TextSearchConfig)
    relevance_weights: RelevanceWeights = field(default_factory=RelevanceWeights)
    limits: QueryLimits = field(default_factory=QueryLimits)
    heuristics: SelectivityHeuristics = field(default_factory=SelectivityHeuristics)

    @classmethod
    def from_env(cls) -> "SearchEngineConfig":
        """Create engine config from environment variables."""
        return cls(
            caching=CachingConfig.from_env(),
            text_search=TextSearchConfig.from_env(),
        )

    def merged(self, overrides: Mapping[str, Any]) -> "SearchEngineConfig":
        """Return a copy with some sections replaced or partially updated.

        Args:
            overrides: Section name to either a replacement section object or a
                mapping of field overrides, e.g. ``{"caching": {"enabled": False}}``

        Returns:
            New SearchEngineConfig; self is left untouched

        Raises:
            ValueError: If a section or field name is unknown
        """
        sections = {f.name for f in fields(self)}
        changes = {}
        for name, value in overrides.items():
            if name not in sections:
                raise ValueError(f"Unknown config section: {name}")
            current = getattr(self, name)
            if isinstance(value, Mapping) and is_dataclass(current):
                known = {f.name for f in fields(current)}
                unknown = set(value) - known
                if unknown:
                    raise ValueError(f"Unknown {name} settings: {', '.join(sorted(unknown))}")
                changes[name] = replace(current, **value)
            else:
                changes[name] = value
        return replace(self, **changes)


@dataclass
class Config:
    """Main configuration for the bookmark query engine."""
    engine: SearchEngineConfig = field(default_factory=SearchEngineConfig.from_env)
    db_path: Optional[Path] = None  # None = use default

    @classmethod
    def from_env(cls) -> "Config":
        """Create config from environment variables."""
        db_path_str = os.environ.get("BOOKMARKS_SEARCH_DB")
        db_path = Path(db_path_str) if db_path_str else None

        return cls(
            engine=SearchEngineConfig.from_env(),
            db_path=db_path,
        )


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global config instance.

    Returns:
        Config loaded from environment
    """
    global _config

    if _config is None:
        _config = Config.from_env()

    return _config
