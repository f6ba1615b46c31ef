"""Shared fixtures for tests."""
import pytest
import pytest_asyncio

from bookmark_query.bookmarks_store import BookmarkStore
from bookmark_query.models import BookmarkRecord
from bookmark_query.search_engine import SearchEngine


SAMPLE_BOOKMARKS = [
    {
        "id": "1",
        "text": "react tutorial for beginners",
        "author": "wesbos",
        "created_at": "2024-03-01T10:00:00Z",
        "bookmarked_at": "2024-03-02T10:00:00Z",
        "tags": ["react", "tutorial"],
    },
    {
        "id": "2",
        "text": "vue vs react",
        "author": "x",
        "created_at": "2024-03-05T10:00:00Z",
        "bookmarked_at": "2024-03-05T12:00:00Z",
        "tags": ["vue", "react"],
    },
    {
        "id": "3",
        "text": "cooking pasta",
        "author": "y",
        "created_at": "2024-02-20T10:00:00Z",
        "bookmarked_at": "2024-03-10T09:00:00Z",
        "tags": ["food"],
    },
]


@pytest.fixture
def db_path(tmp_path):
    """Return path for a temporary bookmarks database."""
    return tmp_path / "test_bookmarks.db"


@pytest.fixture
def sample_records():
    """R1/R2/R3 from the worked example: two react posts and one cooking post."""
    return [BookmarkRecord.from_dict(data) for data in SAMPLE_BOOKMARKS]


@pytest_asyncio.fixture
async def store(db_path):
    """Create and initialize an empty bookmark store."""
    s = BookmarkStore(db_path)
    await s.initialize()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def populated_store(store, sample_records):
    """Store holding the three sample records."""
    await store.put_many(sample_records)
    return store


@pytest_asyncio.fixture
async def engine(populated_store):
    """Search engine over the sample records."""
    return SearchEngine(populated_store)
