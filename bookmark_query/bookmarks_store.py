"""SQLite record store for saved posts, with secondary and multi-entry indexes.

The query engine only reads from this store. Writers (importers, the MCP
``add_bookmark`` tool) go through ``put_bookmark`` / ``update_bookmark`` /
``delete_bookmark``; each write keeps the multi-entry ``bookmark_tags`` and
``bookmark_tokens`` tables in step with the record.
"""
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import aiosqlite

from bookmark_query.models import BookmarkRecord, format_timestamp, parse_timestamp


# Default database location
DEFAULT_DB_PATH = Path.home() / ".bookmarks-search" / "bookmarks.db"

DEFAULT_LOOKUP_LIMIT = 1000

_NEWEST_FIRST = "ORDER BY b.created_at DESC, b.id DESC"


class StoreUnavailableError(RuntimeError):
    """Raised when the store is used before initialize() or after close()."""


class BookmarkStore:
    """Async SQLite store for bookmark records."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize the bookmark store.

        Args:
            db_path: Path to SQLite database. Defaults to ~/.bookmarks-search/bookmarks.db
        """
        self.db_path = db_path or DEFAULT_DB_PATH
        self._connection: Optional[aiosqlite.Connection] = None

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    async def initialize(self) -> None:
        """Open the database, creating tables and indexes if needed."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS bookmarks (
                id TEXT PRIMARY KEY,
                text TEXT NOT NULL DEFAULT '',
                author TEXT NOT NULL DEFAULT '' COLLATE NOCASE,
                created_at TEXT NOT NULL,
                bookmarked_at TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                media_urls TEXT NOT NULL DEFAULT '[]',
                text_tokens TEXT NOT NULL DEFAULT '[]'
            )
        """)
        await self._connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_bookmarks_author ON bookmarks(author COLLATE NOCASE)"
        )
        await self._connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_bookmarks_created_at ON bookmarks(created_at DESC)"
        )
        await self._connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_bookmarks_bookmarked_at ON bookmarks(bookmarked_at DESC)"
        )

        # Multi-entry indexes: one row per (bookmark, tag) and (bookmark, token)
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS bookmark_tags (
                bookmark_id TEXT NOT NULL REFERENCES bookmarks(id) ON DELETE CASCADE,
                tag TEXT NOT NULL,
                PRIMARY KEY (bookmark_id, tag)
            )
        """)
        await self._connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_bookmark_tags_tag ON bookmark_tags(tag)"
        )
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS bookmark_tokens (
                bookmark_id TEXT NOT NULL REFERENCES bookmarks(id) ON DELETE CASCADE,
                token TEXT NOT NULL,
                PRIMARY KEY (bookmark_id, token)
            )
        """)
        await self._connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_bookmark_tokens_token ON bookmark_tokens(token)"
        )

        await self._connection.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StoreUnavailableError("Database not initialized. Call initialize() first.")
        return self._connection

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _write_record(self, conn: aiosqlite.Connection, record: BookmarkRecord) -> None:
        await conn.execute("""
            INSERT OR REPLACE INTO bookmarks
                (id, text, author, created_at, bookmarked_at, tags, media_urls, text_tokens)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.id,
            record.text,
            record.author,
            format_timestamp(record.created_at),
            format_timestamp(record.bookmarked_at),
            json.dumps(list(record.tags)),
            json.dumps(list(record.media_urls)),
            json.dumps(list(record.text_tokens)),
        ))
        await conn.execute("DELETE FROM bookmark_tags WHERE bookmark_id = ?", (record.id,))
        await conn.execute("DELETE FROM bookmark_tokens WHERE bookmark_id = ?", (record.id,))
        await conn.executemany(
            "INSERT OR IGNORE INTO bookmark_tags (bookmark_id, tag) VALUES (?, ?)",
            [(record.id, tag) for tag in record.tags],
        )
        await conn.executemany(
            "INSERT OR IGNORE INTO bookmark_tokens (bookmark_id, token) VALUES (?, ?)",
            [(record.id, token) for token in record.text_tokens],
        )

    async def put_bookmark(self, record: BookmarkRecord) -> None:
        """Insert or replace a bookmark and its index entries.

        Args:
            record: The bookmark to store
        """
        conn = self._require_connection()
        await self._write_record(conn, record)
        await conn.commit()

    async def put_many(self, records: Iterable[BookmarkRecord]) -> int:
        """Insert or replace several bookmarks in one commit.

        Returns:
            Number of records written
        """
        conn = self._require_connection()
        count = 0
        for record in records:
            await self._write_record(conn, record)
            count += 1
        await conn.commit()
        return count

    async def update_bookmark(self, bookmark_id: str, **changes: Any) -> Optional[BookmarkRecord]:
        """Apply field changes to an existing bookmark.

        Tokens are re-derived when the text changes and no tokens are given.

        Args:
            bookmark_id: Primary key
            **changes: BookmarkRecord field values to replace

        Returns:
            The updated record, or None if no bookmark has that id
        """
        existing = await self.get_by_key(bookmark_id)
        if existing is None:
            print(f"[BookmarkStore] Bookmark not found for update: {bookmark_id}", file=sys.stderr)
            return None

        changes.pop("id", None)
        if "text" in changes and "text_tokens" not in changes:
            changes["text_tokens"] = ()
        updated = dataclasses.replace(existing, **changes)
        await self.put_bookmark(updated)
        return updated

    async def delete_bookmark(self, bookmark_id: str) -> bool:
        """Delete a bookmark and its index entries.

        Returns:
            True if deleted, False if not found
        """
        conn = self._require_connection()
        await conn.execute("DELETE FROM bookmark_tags WHERE bookmark_id = ?", (bookmark_id,))
        await conn.execute("DELETE FROM bookmark_tokens WHERE bookmark_id = ?", (bookmark_id,))
        cursor = await conn.execute("DELETE FROM bookmarks WHERE id = ?", (bookmark_id,))
        await conn.commit()

        return cursor.rowcount > 0

    async def clear(self) -> None:
        """Remove every bookmark."""
        conn = self._require_connection()
        await conn.execute("DELETE FROM bookmark_tags")
        await conn.execute("DELETE FROM bookmark_tokens")
        await conn.execute("DELETE FROM bookmarks")
        await conn.commit()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _fetch(self, sql: str, params: tuple) -> List[BookmarkRecord]:
        conn = self._require_connection()
        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def get_by_key(self, bookmark_id: str) -> Optional[BookmarkRecord]:
        records = await self._fetch("SELECT b.* FROM bookmarks b WHERE b.id = ?", (bookmark_id,))
        return records[0] if records else None

    async def get_recent_by_time(self, limit: int = DEFAULT_LOOKUP_LIMIT, offset: int = 0) -> List[BookmarkRecord]:
        """Most recent bookmarks by creation time, newest first."""
        return await self._fetch(
            f"SELECT b.* FROM bookmarks b {_NEWEST_FIRST} LIMIT ? OFFSET ?",
            (limit, offset),
        )

    async def get_by_tag_equals(self, tag: str, limit: int = DEFAULT_LOOKUP_LIMIT) -> List[BookmarkRecord]:
        """Bookmarks carrying ``tag``, via the multi-entry tag index."""
        return await self._fetch(
            f"""
            SELECT b.* FROM bookmark_tags t
            JOIN bookmarks b ON b.id = t.bookmark_id
            WHERE t.tag = ?
            {_NEWEST_FIRST} LIMIT ?
            """,
            (tag.strip().lower(), limit),
        )

    async def get_by_author_equals(
        self,
        author: str,
        case_insensitive: bool = True,
        limit: int = DEFAULT_LOOKUP_LIMIT,
    ) -> List[BookmarkRecord]:
        """Bookmarks by one author, newest first."""
        collation = "NOCASE" if case_insensitive else "BINARY"
        return await self._fetch(
            f"SELECT b.* FROM bookmarks b WHERE b.author = ? COLLATE {collation} {_NEWEST_FIRST} LIMIT ?",
            (author, limit),
        )

    async def get_by_date_range(self, start, end, limit: int = DEFAULT_LOOKUP_LIMIT) -> List[BookmarkRecord]:
        """Bookmarks whose bookmark time lies in [start, end], newest first.

        Args:
            start: Range start (datetime or ISO string)
            end: Range end (datetime or ISO string)
            limit: Maximum rows returned
        """
        return await self._fetch(
            """
            SELECT b.* FROM bookmarks b
            WHERE b.bookmarked_at BETWEEN ? AND ?
            ORDER BY b.bookmarked_at DESC, b.id DESC LIMIT ?
            """,
            (format_timestamp(parse_timestamp(start)), format_timestamp(parse_timestamp(end)), limit),
        )

    async def get_by_token_equals(
        self,
        token: str,
        case_insensitive: bool = True,
        limit: int = DEFAULT_LOOKUP_LIMIT,
    ) -> List[BookmarkRecord]:
        """Bookmarks whose text contains ``token`` as a whole token.

        Stored tokens are lowercase, so a case-insensitive lookup lowercases
        the probe.
        """
        probe = token.lower() if case_insensitive else token
        return await self._fetch(
            f"""
            SELECT b.* FROM bookmark_tokens k
            JOIN bookmarks b ON b.id = k.bookmark_id
            WHERE k.token = ?
            {_NEWEST_FIRST} LIMIT ?
            """,
            (probe, limit),
        )

    async def scan_recent(
        self,
        predicate: Callable[[BookmarkRecord], bool],
        limit: int = DEFAULT_LOOKUP_LIMIT,
    ) -> List[BookmarkRecord]:
        """Bounded full scan: test the ``limit`` most recent rows in memory.

        Args:
            predicate: Test applied to each record
            limit: Maximum rows scanned

        Returns:
            Matching records, newest first
        """
        conn = self._require_connection()
        matches = []
        async with conn.execute(f"SELECT b.* FROM bookmarks b {_NEWEST_FIRST} LIMIT ?", (limit,)) as cursor:
            async for row in cursor:
                record = self._row_to_record(row)
                if predicate(record):
                    matches.append(record)
        return matches

    async def count(self) -> int:
        conn = self._require_connection()
        cursor = await conn.execute("SELECT COUNT(*) FROM bookmarks")
        row = await cursor.fetchone()
        return row[0]

    async def get_popular_tags(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Tags ordered by how many bookmarks use them."""
        conn = self._require_connection()
        cursor = await conn.execute("""
            SELECT tag, COUNT(*) AS usage_count FROM bookmark_tags
            GROUP BY tag ORDER BY usage_count DESC, tag ASC LIMIT ?
        """, (limit,))
        rows = await cursor.fetchall()
        return [{"tag": row["tag"], "usage_count": row["usage_count"]} for row in rows]

    async def search_tags(self, partial: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Tags containing ``partial``, most used first.

        Args:
            partial: Fragment of a tag name (case-insensitive)
            limit: Maximum tags returned

        Returns:
            List of {"tag", "usage_count"} dicts
        """
        fragment = partial.strip().lower()
        if not fragment:
            return []

        conn = self._require_connection()
        escaped = fragment.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        cursor = await conn.execute("""
            SELECT tag, COUNT(*) AS usage_count FROM bookmark_tags
            WHERE tag LIKE ? ESCAPE '\\'
            GROUP BY tag ORDER BY usage_count DESC, tag ASC LIMIT ?
        """, (f"%{escaped}%", limit))
        rows = await cursor.fetchall()
        return [{"tag": row["tag"], "usage_count": row["usage_count"]} for row in rows]

    async def get_stats(self) -> Dict[str, int]:
        conn = self._require_connection()
        cursor = await conn.execute("""
            SELECT
                (SELECT COUNT(*) FROM bookmarks) AS total_bookmarks,
                (SELECT COUNT(DISTINCT tag) FROM bookmark_tags) AS total_tags,
                (SELECT COUNT(DISTINCT author) FROM bookmarks) AS total_authors
        """)
        row = await cursor.fetchone()
        return dict(row)

    def _row_to_record(self, row: aiosqlite.Row) -> BookmarkRecord:
        """Convert a database row to a BookmarkRecord.

        Args:
            row: SQLite row object

        Returns:
            BookmarkRecord with JSON columns decoded
        """
        data = dict(row)
        for column in ("tags", "media_urls", "text_tokens"):
            try:
                data[column] = tuple(json.loads(data[column] or "[]"))
            except json.JSONDecodeError:
                data[column] = ()
        return BookmarkRecord(**data)


# Global store instance
_bookmark_store: Optional[BookmarkStore] = None


async def get_bookmark_store(db_path: Optional[Path] = None) -> BookmarkStore:
    """Get or create the global bookmark store instance.

    Returns:
        Initialized BookmarkStore
    """
    global _bookmark_store

    if _bookmark_store is None:
        _bookmark_store = BookmarkStore(db_path)
        await _bookmark_store.initialize()

    return _bookmark_store
