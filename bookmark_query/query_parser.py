"""Query parser: turns a SearchQuery into tokens, filters and an execution plan."""
import hashlib
import json
import math
import re
from typing import List, Optional, Tuple

from bookmark_query.config import SelectivityHeuristics, TextSearchConfig
from bookmark_query.models import (
    DEFAULT_LIMIT,
    AuthorFilter,
    DateRange,
    DateRangeFilter,
    HasMediaFilter,
    IntersectionMode,
    ParsedQuery,
    QueryExecutionPlan,
    QueryFilter,
    SearchQuery,
    SortBy,
    TagFilter,
    TextTokenFilter,
    format_timestamp,
)
from bookmark_query.tokenizer import tokenize, unique

_PHRASE = re.compile(r'"([^"]*)"')
_HASHTAG = re.compile(r"#(\w+)")
_MENTION = re.compile(r"@(\w+)")


class QueryParser:
    """Parses search queries and orders their filters by estimated selectivity.

    The parser is a pure function of its input and the injected settings; a
    single instance can be shared between concurrent searches.
    """

    def __init__(
        self,
        text_config: Optional[TextSearchConfig] = None,
        heuristics: Optional[SelectivityHeuristics] = None,
    ):
        self.text_config = text_config or TextSearchConfig()
        self.heuristics = heuristics or SelectivityHeuristics()

    def parse(self, query: SearchQuery) -> ParsedQuery:
        """Parse a search query into an optimized execution plan.

        Args:
            query: Caller-supplied query

        Returns:
            Immutable ParsedQuery
        """
        required_tags = [tag.strip().lower() for tag in query.tags if tag and tag.strip()]
        excluded_tags = [tag.strip().lower() for tag in query.exclude_tags if tag and tag.strip()]
        text_tokens: List[str] = []
        exact_phrases: List[str] = []
        optional_tags: List[str] = []

        if query.text:
            text_tokens, exact_phrases, hashtags, optional_tags = self._parse_text(query.text)
            required_tags.extend(hashtags)

        required_tags = unique(required_tags)
        filters = self._build_filters(query, text_tokens, required_tags)
        plan = self._optimize_plan(filters, text_tokens, required_tags, optional_tags)

        return ParsedQuery(
            text_tokens=tuple(text_tokens),
            exact_phrases=tuple(exact_phrases),
            required_tags=tuple(required_tags),
            optional_tags=tuple(unique(optional_tags)),
            excluded_tags=tuple(unique(excluded_tags)),
            filters=tuple(filters),
            plan=plan,
            original_query=query,
            sort_by=query.sort_by,
            sort_order=query.sort_order,
            limit=query.limit,
            offset=query.offset,
        )

    def _parse_text(self, text: str) -> Tuple[List[str], List[str], List[str], List[str]]:
        """Split free text into tokens, quoted phrases, hashtags and mentions."""
        phrases = [phrase.lower().strip() for phrase in _PHRASE.findall(text)]
        phrases = [phrase for phrase in phrases if phrase]
        text = _PHRASE.sub(" ", text)

        hashtags = [tag.lower() for tag in _HASHTAG.findall(text)]
        text = _HASHTAG.sub(" ", text)

        # Mentions stay in the text and can still match as plain tokens
        mentions = [mention.lower() for mention in _MENTION.findall(text)]

        return self._tokenize(text), phrases, hashtags, mentions

    def _tokenize(self, text: str) -> List[str]:
        tokens = tokenize(
            text,
            self.text_config.min_token_length,
            self.text_config.max_tokens,
            self.heuristics.stop_words,
        )
        return unique(tokens)

    # ------------------------------------------------------------------
    # Filters and plan
    # ------------------------------------------------------------------

    def _build_filters(self, query: SearchQuery, tokens: List[str], tags: List[str]) -> List[QueryFilter]:
        h = self.heuristics
        filters: List[QueryFilter] = []

        for token in tokens:
            filters.append(TextTokenFilter(token, self.estimate_token_selectivity(token), h.token_cost_ms))

        for tag in tags:
            filters.append(TagFilter(tag, self.estimate_tag_selectivity(tag), h.tag_cost_ms))

        if query.author:
            filters.append(AuthorFilter(query.author.strip(), h.author_selectivity, h.author_cost_ms))

        if query.date_range is not None:
            filters.append(DateRangeFilter(
                query.date_range,
                self.estimate_date_selectivity(query.date_range),
                h.date_range_cost_ms,
            ))

        if query.has_media is not None:
            selectivity = h.with_media_selectivity if query.has_media else h.without_media_selectivity
            filters.append(HasMediaFilter(bool(query.has_media), selectivity, h.media_cost_ms))

        return filters

    def _optimize_plan(
        self,
        filters: List[QueryFilter],
        tokens: List[str],
        required_tags: List[str],
        optional_tags: List[str],
    ) -> QueryExecutionPlan:
        # sorted() is stable: equal selectivities keep construction order
        ordered = sorted(filters, key=lambda f: f.selectivity)
        primary = ordered[0] if ordered else None

        if primary is not None:
            estimated_count = max(1, math.floor(self.heuristics.assumed_corpus_size * primary.selectivity))
        else:
            estimated_count = self.heuristics.no_filter_estimate

        if tokens and required_tags:
            mode = IntersectionMode.ALL
        elif optional_tags:
            mode = IntersectionMode.ANY
        else:
            mode = IntersectionMode.ALL

        return QueryExecutionPlan(
            primary_filter=primary,
            secondary_filters=tuple(ordered[1:]),
            intersection_mode=mode,
            estimated_result_count=estimated_count,
            estimated_time_ms=sum(f.estimated_cost_ms for f in ordered),
        )

    def estimate_token_selectivity(self, token: str) -> float:
        h = self.heuristics
        if token in h.common_words:
            return h.common_word_selectivity
        if len(token) > h.long_token_length:
            return h.long_token_selectivity
        return h.token_selectivity

    def estimate_tag_selectivity(self, tag: str) -> float:
        h = self.heuristics
        return h.popular_tag_selectivity if tag in h.popular_tags else h.tag_selectivity

    def estimate_date_selectivity(self, date_range: DateRange) -> float:
        span = date_range.span_days
        for max_days, selectivity in self.heuristics.date_span_selectivity:
            if span <= max_days:
                return selectivity
        return self.heuristics.wide_date_selectivity

    # ------------------------------------------------------------------
    # Suggestions and cache identity
    # ------------------------------------------------------------------

    def extract_suggestions(self, query: SearchQuery) -> List[str]:
        """Suggest refined queries: hashtag rewrites and author rewrites.

        Args:
            query: The query as the caller wrote it

        Returns:
            At most ``max_suggestions`` query strings
        """
        if not query.text:
            return []

        text = query.text
        suggestions = []
        for token in self._tokenize(text):
            if self._could_be_tag(token):
                suggestions.append(f"{text} #{token}")

        for match in _MENTION.finditer(text):
            remainder = text.replace(match.group(0), "", 1).strip()
            suggestions.append(f"author:{match.group(1)} {remainder}".strip())

        return suggestions[:self.heuristics.max_suggestions]

    def _could_be_tag(self, token: str) -> bool:
        return token in self.heuristics.tag_like_terms or len(token) >= self.heuristics.tag_like_min_length

    def generate_query_hash(self, query: SearchQuery) -> str:
        """Deterministic cache key for a query.

        Tag lists are sorted first so tag order never changes the key. Offset
        is not part of the key; only first pages are cached.
        """
        normalized = {
            "text": query.text.lower().strip() if query.text else None,
            "tags": sorted(query.tags) if query.tags else None,
            "exclude_tags": sorted(query.exclude_tags) if query.exclude_tags else None,
            "author": query.author.lower() if query.author else None,
            "date_range": [
                format_timestamp(query.date_range.start),
                format_timestamp(query.date_range.end),
            ] if query.date_range else None,
            "has_media": query.has_media,
            "sort_by": (query.sort_by or SortBy.RELEVANCE).value,
            "sort_order": query.sort_order.value,
            "limit": query.limit or DEFAULT_LIMIT,
        }
        encoded = json.dumps(normalized, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode()).hexdigest()[:16]
