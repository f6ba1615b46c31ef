"""MCP server exposing bookmark search and the bookmark write contract."""
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add project root to Python path for absolute imports
_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from bookmark_query.bookmarks_store import BookmarkStore, get_bookmark_store
from bookmark_query.config import get_config
from bookmark_query.models import BookmarkRecord, SearchQuery, SearchResult
from bookmark_query.search_engine import SearchEngine


# Global state
_search_engine: Optional[SearchEngine] = None


async def get_store() -> BookmarkStore:
    """Get the initialized global bookmark store."""
    return await get_bookmark_store(get_config().db_path)


async def get_search_engine() -> SearchEngine:
    """Get or create the global search engine.

    Returns:
        SearchEngine bound to the global store
    """
    global _search_engine

    if _search_engine is None:
        store = await get_store()
        _search_engine = SearchEngine(store, get_config().engine)

    return _search_engine


def _json_response(payload: Any) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2))]


def _result_response(result: SearchResult) -> List[TextContent]:
    return _json_response(result.to_dict())


# ============================================================================
# Tool handlers
# ============================================================================

async def search_bookmarks_tool(arguments: Dict[str, Any]) -> List[TextContent]:
    """Tool handler for search_bookmarks.

    Args:
        arguments: SearchQuery fields (text, tags, exclude_tags, author,
            date_range, has_media, sort_by, sort_order, limit, offset)

    Returns:
        List of TextContent with the JSON search result
    """
    try:
        query = SearchQuery.from_dict(arguments or {})
    except (ValueError, KeyError, TypeError) as e:
        return [TextContent(type="text", text=f"Error: invalid search query: {e}")]

    engine = await get_search_engine()
    return _result_response(await engine.search(query))


async def quick_tag_search_tool(tag: str) -> List[TextContent]:
    engine = await get_search_engine()
    return _result_response(await engine.quick_tag_search(tag))


async def search_by_author_tool(author: str) -> List[TextContent]:
    engine = await get_search_engine()
    return _result_response(await engine.search_by_author(author))


async def get_recent_bookmarks_tool(limit: Optional[int] = None) -> List[TextContent]:
    engine = await get_search_engine()
    return _result_response(await engine.get_recent(limit=limit))


async def suggest_tags_tool(partial: str, limit: int = 10) -> List[TextContent]:
    """Tool handler for suggest_tags."""
    engine = await get_search_engine()
    suggestions = await engine.suggest_tags(partial, limit=limit)
    return _json_response([vars(s) for s in suggestions])


async def add_bookmark_tool(bookmark: Dict[str, Any]) -> List[TextContent]:
    """Tool handler for add_bookmark: insert or replace one bookmark.

    Args:
        bookmark: Record fields; id, text, author and created_at are required

    Returns:
        List of TextContent with a JSON status
    """
    try:
        record = BookmarkRecord.from_dict(bookmark)
    except (ValueError, KeyError, TypeError) as e:
        return [TextContent(type="text", text=f"Error: invalid bookmark: {e}")]

    store = await get_store()
    await store.put_bookmark(record)

    # Cached pages may now be missing this bookmark
    engine = await get_search_engine()
    engine.clear_cache()

    return _json_response({"status": "added", "id": record.id, "text_tokens": list(record.text_tokens)})


async def delete_bookmark_tool(bookmark_id: str) -> List[TextContent]:
    store = await get_store()
    deleted = await store.delete_bookmark(bookmark_id)
    if not deleted:
        return [TextContent(type="text", text=f"Bookmark not found: {bookmark_id}")]

    engine = await get_search_engine()
    engine.clear_cache()
    return _json_response({"status": "deleted", "id": bookmark_id})


async def get_search_suggestions_tool(text: str) -> List[TextContent]:
    engine = await get_search_engine()
    return _json_response(engine.get_search_suggestions(SearchQuery(text=text)))


async def get_search_stats_tool() -> List[TextContent]:
    """Tool handler for get_search_stats: engine, cache and store statistics."""
    engine = await get_search_engine()
    stats = engine.get_search_stats()

    store = await get_store()
    stats["store"] = await store.get_stats()
    stats["popular_tags"] = await store.get_popular_tags(limit=10)
    return _json_response(stats)


async def clear_search_cache_tool() -> List[TextContent]:
    engine = await get_search_engine()
    engine.clear_cache()
    return _json_response({"status": "cleared", "cache": engine.get_cache_stats()})


# ============================================================================
# Server
# ============================================================================

_SEARCH_QUERY_SCHEMA = {
    "type": "object",
    "properties": {
        "text": {
            "type": "string",
            "description": "Free text. Supports \"exact phrases\", #tags (required) and @mentions",
        },
        "tags": {"type": "array", "items": {"type": "string"}, "description": "Tags every result must have"},
        "exclude_tags": {"type": "array", "items": {"type": "string"}, "description": "Tags no result may have"},
        "author": {"type": "string", "description": "Author handle (case-insensitive)"},
        "date_range": {
            "type": "object",
            "properties": {"start": {"type": "string"}, "end": {"type": "string"}},
            "required": ["start", "end"],
            "description": "Bookmark-time window as ISO-8601 timestamps",
        },
        "has_media": {"type": "boolean"},
        "sort_by": {"type": "string", "enum": ["relevance", "date", "bookmarked", "author"]},
        "sort_order": {"type": "string", "enum": ["asc", "desc"]},
        "limit": {"type": "integer", "minimum": 1},
        "offset": {"type": "integer", "minimum": 0},
    },
}


def create_server() -> Server:
    """Create and configure the MCP server.

    Returns:
        Configured Server instance
    """
    server = Server("bookmark-query-engine")

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List available tools."""
        return [
            Tool(
                name="search_bookmarks",
                description="Search saved posts by text, tags, author, date range and media. Returns ranked, paginated results with query suggestions.",
                inputSchema=_SEARCH_QUERY_SCHEMA,
            ),
            Tool(
                name="quick_tag_search",
                description="Up to 20 bookmarks carrying a tag.",
                inputSchema={
                    "type": "object",
                    "properties": {"tag": {"type": "string"}},
                    "required": ["tag"],
                },
            ),
            Tool(
                name="search_by_author",
                description="Bookmarks saved from one author.",
                inputSchema={
                    "type": "object",
                    "properties": {"author": {"type": "string"}},
                    "required": ["author"],
                },
            ),
            Tool(
                name="get_recent_bookmarks",
                description="Most recent bookmarks, newest first.",
                inputSchema={
                    "type": "object",
                    "properties": {"limit": {"type": "integer", "minimum": 1}},
                },
            ),
            Tool(
                name="suggest_tags",
                description="Autocomplete tag names from a partial string.",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "partial": {"type": "string"},
                        "limit": {"type": "integer", "minimum": 1},
                    },
                    "required": ["partial"],
                },
            ),
            Tool(
                name="add_bookmark",
                description="Insert or replace a saved post in the local index.",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "text": {"type": "string"},
                        "author": {"type": "string"},
                        "created_at": {"type": "string", "description": "ISO-8601 post time"},
                        "bookmarked_at": {"type": "string", "description": "ISO-8601 bookmark time"},
                        "tags": {"type": "array", "items": {"type": "string"}},
                        "media_urls": {"type": "array", "items": {"type": "string"}},
                    },
                    "required": ["id", "text", "author", "created_at"],
                },
            ),
            Tool(
                name="delete_bookmark",
                description="Remove a saved post from the local index.",
                inputSchema={
                    "type": "object",
                    "properties": {"id": {"type": "string"}},
                    "required": ["id"],
                },
            ),
            Tool(
                name="get_search_suggestions",
                description="Suggested refinements of a free-text query (hashtag and author rewrites).",
                inputSchema={
                    "type": "object",
                    "properties": {"text": {"type": "string"}},
                    "required": ["text"],
                },
            ),
            Tool(
                name="get_search_stats",
                description="Search and cache statistics for this session, with store totals and the most used tags.",
                inputSchema={"type": "object", "properties": {}},
            ),
            Tool(
                name="clear_search_cache",
                description="Drop all cached search results.",
                inputSchema={"type": "object", "properties": {}},
            ),
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: Any) -> list[TextContent]:
        """Handle tool calls."""
        arguments = arguments or {}
        if name == "search_bookmarks":
            return await search_bookmarks_tool(arguments)
        elif name == "quick_tag_search":
            tag = arguments.get("tag", "")
            if not tag:
                return [TextContent(type="text", text="Error: 'tag' parameter is required")]
            return await quick_tag_search_tool(tag)
        elif name == "search_by_author":
            author = arguments.get("author", "")
            if not author:
                return [TextContent(type="text", text="Error: 'author' parameter is required")]
            return await search_by_author_tool(author)
        elif name == "get_recent_bookmarks":
            return await get_recent_bookmarks_tool(arguments.get("limit"))
        elif name == "suggest_tags":
            return await suggest_tags_tool(arguments.get("partial", ""), arguments.get("limit", 10))
        elif name == "add_bookmark":
            return await add_bookmark_tool(arguments)
        elif name == "delete_bookmark":
            bookmark_id = arguments.get("id", "")
            if not bookmark_id:
                return [TextContent(type="text", text="Error: 'id' parameter is required")]
            return await delete_bookmark_tool(bookmark_id)
        elif name == "get_search_suggestions":
            return await get_search_suggestions_tool(arguments.get("text", ""))
        elif name == "get_search_stats":
            return await get_search_stats_tool()
        elif name == "clear_search_cache":
            return await clear_search_cache_tool()
        else:
            raise ValueError(f"Unknown tool: {name}")

    return server


async def main():
    """Main entry point for the MCP server."""
    server = create_server()

    async with stdio_server() as (read_stream, write_stream):
        initialization_options = server.create_initialization_options()
        await server.run(read_stream, write_stream, initialization_options)
