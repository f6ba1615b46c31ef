"""Data model for bookmark records, search queries, plans and results."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from bookmark_query.tokenizer import tokenize_for_index


# Fixed-width UTC format so that string order equals time order in SQLite
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass a datetime through) as aware UTC.

    Naive values are taken to be UTC. A trailing ``Z`` is accepted.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as the fixed-width UTC string used for storage."""
    return parse_timestamp(value).strftime(_TIMESTAMP_FORMAT)


def normalize_tags(tags: Optional[Iterable[str]]) -> Tuple[str, ...]:
    """Lowercase, strip and de-duplicate tags; returned sorted."""
    if not tags:
        return ()
    return tuple(sorted({tag.strip().lower() for tag in tags if tag and tag.strip()}))


@dataclass
class BookmarkRecord:
    """A saved post as held by the record store."""
    id: str
    text: str
    author: str
    created_at: datetime
    bookmarked_at: Optional[datetime] = None
    tags: Tuple[str, ...] = ()
    media_urls: Tuple[str, ...] = ()
    text_tokens: Tuple[str, ...] = ()

    def __post_init__(self):
        self.text = self.text or ""
        self.author = self.author or ""
        self.created_at = parse_timestamp(self.created_at)
        if self.created_at is None:
            raise ValueError(f"Bookmark {self.id!r} has no created_at")
        # Bookmarks imported without a bookmark time use the post time
        self.bookmarked_at = parse_timestamp(self.bookmarked_at) or self.created_at
        self.tags = normalize_tags(self.tags)
        self.media_urls = tuple(url for url in (self.media_urls or ()) if url)
        if not self.text_tokens:
            self.text_tokens = tuple(tokenize_for_index(self.text))
        else:
            self.text_tokens = tuple(self.text_tokens)

    @property
    def has_media(self) -> bool:
        return len(self.media_urls) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "author": self.author,
            "created_at": format_timestamp(self.created_at),
            "bookmarked_at": format_timestamp(self.bookmarked_at),
            "tags": list(self.tags),
            "media_urls": list(self.media_urls),
            "text_tokens": list(self.text_tokens),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookmarkRecord":
        """Build a record from a plain dict (tokens are re-derived when absent).

        Accepts ``bookmark_timestamp`` as an alias of ``bookmarked_at``.
        """
        return cls(
            id=str(data["id"]),
            text=data.get("text", ""),
            author=data.get("author", ""),
            created_at=data.get("created_at"),
            bookmarked_at=data.get("bookmarked_at") or data.get("bookmark_timestamp"),
            tags=tuple(data.get("tags") or ()),
            media_urls=tuple(data.get("media_urls") or ()),
            text_tokens=tuple(data.get("text_tokens") or ()),
        )


@dataclass(frozen=True)
class DateRange:
    """Inclusive time window, applied to the bookmark timestamp."""
    start: datetime
    end: datetime

    def __post_init__(self):
        start = parse_timestamp(self.start)
        end = parse_timestamp(self.end)
        if start is None or end is None:
            raise ValueError("Date range needs both start and end")
        if start > end:
            raise ValueError(f"Date range start {start.isoformat()} is after end {end.isoformat()}")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @classmethod
    def from_iso(cls, start: str, end: str) -> "DateRange":
        return cls(parse_timestamp(start), parse_timestamp(end))

    @property
    def span_days(self) -> float:
        return (self.end - self.start).total_seconds() / 86400

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    def to_dict(self) -> Dict[str, str]:
        return {"start": format_timestamp(self.start), "end": format_timestamp(self.end)}


class SortBy(str, Enum):
    RELEVANCE = "relevance"
    DATE = "date"
    BOOKMARKED = "bookmarked"
    AUTHOR = "author"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


DEFAULT_LIMIT = 50


@dataclass
class SearchQuery:
    """Caller-supplied search request. An empty query means "most recent"."""
    text: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    exclude_tags: List[str] = field(default_factory=list)
    author: Optional[str] = None
    date_range: Optional[DateRange] = None
    has_media: Optional[bool] = None
    sort_by: SortBy = SortBy.RELEVANCE
    sort_order: SortOrder = SortOrder.DESC
    limit: int = DEFAULT_LIMIT
    offset: int = 0

    def __post_init__(self):
        self.tags = list(self.tags or [])
        self.exclude_tags = list(self.exclude_tags or [])
        self.sort_by = SortBy(self.sort_by)
        self.sort_order = SortOrder(self.sort_order)
        if self.limit is None or self.limit <= 0:
            self.limit = DEFAULT_LIMIT
        if self.offset is None or self.offset < 0:
            self.offset = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchQuery":
        """Build a query from JSON-style arguments.

        Args:
            data: Mapping with any of text, tags, exclude_tags (or excludeTags),
                author, date_range (or dateRange) as {start, end}, has_media
                (or hasMedia), sort_by (or sortBy), sort_order, limit, offset

        Returns:
            SearchQuery

        Raises:
            ValueError: On an invalid sort key or date range
        """
        date_range = data.get("date_range") or data.get("dateRange")
        has_media = data.get("has_media", data.get("hasMedia"))
        return cls(
            text=data.get("text"),
            tags=list(data.get("tags") or []),
            exclude_tags=list(data.get("exclude_tags") or data.get("excludeTags") or []),
            author=data.get("author") or None,
            date_range=DateRange.from_iso(date_range["start"], date_range["end"]) if date_range else None,
            has_media=has_media,
            sort_by=data.get("sort_by") or data.get("sortBy") or SortBy.RELEVANCE,
            sort_order=data.get("sort_order") or data.get("sortOrder") or SortOrder.DESC,
            limit=int(data.get("limit") or DEFAULT_LIMIT),
            offset=int(data.get("offset") or 0),
        )


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

class FilterKind(str, Enum):
    TAG = "tag"
    AUTHOR = "author"
    DATE_RANGE = "dateRange"
    HAS_MEDIA = "hasMedia"
    TEXT_TOKEN = "textToken"


@dataclass(frozen=True)
class TagFilter:
    value: str
    selectivity: float
    estimated_cost_ms: float
    kind = FilterKind.TAG


@dataclass(frozen=True)
class AuthorFilter:
    value: str
    selectivity: float
    estimated_cost_ms: float
    kind = FilterKind.AUTHOR


@dataclass(frozen=True)
class DateRangeFilter:
    value: DateRange
    selectivity: float
    estimated_cost_ms: float
    kind = FilterKind.DATE_RANGE


@dataclass(frozen=True)
class HasMediaFilter:
    value: bool
    selectivity: float
    estimated_cost_ms: float
    kind = FilterKind.HAS_MEDIA


@dataclass(frozen=True)
class TextTokenFilter:
    value: str
    selectivity: float
    estimated_cost_ms: float
    kind = FilterKind.TEXT_TOKEN


QueryFilter = Union[TagFilter, AuthorFilter, DateRangeFilter, HasMediaFilter, TextTokenFilter]


class IntersectionMode(str, Enum):
    ALL = "all"
    ANY = "any"


@dataclass(frozen=True)
class QueryExecutionPlan:
    primary_filter: Optional[QueryFilter]
    secondary_filters: Tuple[QueryFilter, ...]
    intersection_mode: IntersectionMode
    estimated_result_count: int
    estimated_time_ms: float


@dataclass(frozen=True)
class ParsedQuery:
    """Immutable, planned view of a SearchQuery."""
    text_tokens: Tuple[str, ...]
    exact_phrases: Tuple[str, ...]
    required_tags: Tuple[str, ...]
    optional_tags: Tuple[str, ...]
    excluded_tags: Tuple[str, ...]
    filters: Tuple[QueryFilter, ...]
    plan: QueryExecutionPlan
    original_query: SearchQuery
    sort_by: SortBy = SortBy.RELEVANCE
    sort_order: SortOrder = SortOrder.DESC
    limit: int = DEFAULT_LIMIT
    offset: int = 0


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ScoringFactors:
    text_relevance: float = 0.0
    tag_relevance: float = 0.0
    recency: float = 0.0
    author_popularity: float = 0.0
    user_interaction: float = 0.0
    exact_match: bool = False


@dataclass
class ScoredBookmark:
    bookmark: BookmarkRecord
    score: float = 1.0
    matching_factors: ScoringFactors = field(default_factory=ScoringFactors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bookmark": self.bookmark.to_dict(),
            "score": self.score,
            "matching_factors": vars(self.matching_factors).copy(),
        }


@dataclass
class Pagination:
    has_more: bool = False
    total_pages: int = 0
    next_offset: Optional[int] = None


@dataclass
class SearchResult:
    bookmarks: List[ScoredBookmark] = field(default_factory=list)
    total_count: int = 0
    query_time_ms: float = 0.0
    pagination: Pagination = field(default_factory=Pagination)
    suggested_queries: List[str] = field(default_factory=list)

    @classmethod
    def empty(cls, query_time_ms: float = 0.0) -> "SearchResult":
        return cls(query_time_ms=query_time_ms)

    @property
    def records(self) -> List[BookmarkRecord]:
        return [scored.bookmark for scored in self.bookmarks]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bookmarks": [scored.to_dict() for scored in self.bookmarks],
            "total_count": self.total_count,
            "query_time_ms": round(self.query_time_ms, 3),
            "pagination": vars(self.pagination).copy(),
            "suggested_queries": list(self.suggested_queries),
        }


@dataclass
class SearchAnalytics:
    """Per-run execution statistics."""
    query_time_ms: float = 0.0
    index_hits: int = 0
    results_returned: int = 0
    cache_hit: bool = False
    slow_operations: List[str] = field(default_factory=list)
    indexes_used: List[str] = field(default_factory=list)


@dataclass
class CacheEntry:
    query_hash: str
    result: SearchResult
    inserted_at_ms: float


@dataclass
class TagSuggestion:
    tag: str
    usage_count: int
    relevance_score: float
