"""Local query planning and execution engine for saved social-media bookmarks."""
