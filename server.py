#!/usr/bin/env python3
# Copyright (c) 2026 ngpestelos
# Licensed under the MIT License - see LICENSE file for details
"""
Readwise Highlights MCP Server
Pick a book from your Readwise library and drop its highlights into a vault note
"""

import asyncio
import os
import re
import sys
import logging
from pathlib import Path
from typing import Optional, Dict

from mcp.server.fastmcp import FastMCP

from highlights_app import HighlightsApp, StaticEnvironment
from page_document import MarkdownPageDocument, book_title
from readwise_sync import JsonFileStore, ReadwiseSource, READWISE_API_URL, REQUEST_TIMEOUT, PAGE_SIZE

# Configure logging to stderr
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stderr
)
logger = logging.getLogger(__name__)

# Configuration from environment variables
READWISE_TOKEN = os.environ.get("READWISE_TOKEN")
VAULT_PATH = Path(os.environ.get("VAULT_PATH", Path.home() / "Notes"))
STORE_FILE = Path(os.environ.get("READWISE_STORE_FILE", VAULT_PATH / ".claude/state/readwise-highlights.json"))
BOOKS_DIR = Path(os.environ.get("READWISE_BOOKS_DIR", VAULT_PATH / "2 Resources/Readwise/Books"))
API_URL = os.environ.get("READWISE_API_URL", READWISE_API_URL)
COLOR_SCHEME = os.environ.get("READWISE_COLOR_SCHEME", "light")

# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def sanitize_filename(title: str, book: Optional[Dict] = None) -> str:
    """
    Sanitize book title for filename with fallback for invalid names.

    Args:
        title: The book title to sanitize
        book: Optional book dict for fallback metadata (author, id)

    Returns:
        Sanitized filename ending in .md
    """
    # Replace special characters
    filename = title.replace('/', '-').replace(':', ' -')
    # Remove invalid characters
    filename = re.sub(r'[<>"\\\|?*]', '', filename)
    # Trim to 100 characters
    filename = filename[:100].strip()

    if not any(c.isalnum() for c in filename):
        if book:
            author = re.sub(r'[<>"\\\|?*/:]', '', book.get('author') or 'Unknown')[:30].strip()
            filename = f"Book {book.get('id', '')} by {author}".strip()
        else:
            filename = "Untitled Book"

    return filename + ".md"


def resolve_page(aggregate: Dict, page: Optional[str] = None) -> Path:
    """Target note for an insert: explicit page (relative to the vault) or one note per book"""
    if page:
        path = Path(page)
        return path if path.is_absolute() else VAULT_PATH / path
    return BOOKS_DIR / sanitize_filename(book_title(aggregate), aggregate.get("book"))

# ============================================================================
# APPLICATION
# ============================================================================

_app: Optional[HighlightsApp] = None


def get_app() -> HighlightsApp:
    """Create and start the application on first use"""
    global _app
    if _app is None:
        _app = HighlightsApp(
            store=JsonFileStore(STORE_FILE),
            source=ReadwiseSource(base_url=API_URL, timeout=REQUEST_TIMEOUT, page_size=PAGE_SIZE),
            environment=StaticEnvironment(COLOR_SCHEME),
            default_token=READWISE_TOKEN,
        )
        _app.start()
    return _app

# ============================================================================
# MCP SERVER INITIALIZATION
# ============================================================================

mcp = FastMCP("readwise-highlights")

# ============================================================================
# MCP TOOLS
# ============================================================================

@mcp.tool()
async def readwise_set_token(token: str) -> dict:
    """Save the Readwise access token used for syncing"""
    try:
        widget = get_app().token_widget
        widget.open()
        widget.change(token.strip())
        widget.save()
        return {"status": "success", "has_token": bool(get_app().state.token)}

    except Exception as e:
        logger.error(f"Error saving token: {e}")
        return {"status": "error", "message": str(e)}

@mcp.tool()
async def readwise_sync() -> dict:
    """Fetch books and highlights from Readwise and refresh the local cache"""
    try:
        app = get_app()
        if app.is_syncing():
            return {"status": "busy", "message": "Sync already in progress"}

        loop = asyncio.get_running_loop()
        books = await loop.run_in_executor(None, app.fetch_data)

        if books is None:
            return {"status": "error", "message": app.state.error or "Sync did not complete"}

        result = {
            "status": "success",
            "books": len(books),
            "highlights": sum(len(b["highlights"]) for b in books.values()),
        }
        if app.state.error:
            result["warning"] = app.state.error
        return result

    except Exception as e:
        logger.error(f"Error syncing: {e}")
        return {"status": "error", "message": str(e)}

@mcp.tool()
async def readwise_list_books(limit: int = 50) -> dict:
    """List cached books, most highlighted first"""
    try:
        app = get_app()
        rows = app.render_book_list()
        return {
            "status": "success",
            "count": len(rows),
            "books": rows[:limit],
            "error": app.state.error,
        }

    except Exception as e:
        logger.error(f"Error listing books: {e}")
        return {"status": "error", "message": str(e)}

@mcp.tool()
async def readwise_insert_book(book_id: int, page: Optional[str] = None) -> dict:
    """Insert a book's highlights into a vault note (default: one note per book)"""
    try:
        app = get_app()
        aggregate = app.get_book(book_id)
        if aggregate is None:
            return {"status": "error", "message": f"Unknown book id: {book_id}"}

        filepath = resolve_page(aggregate, page)
        result = app.insert_book(book_id, MarkdownPageDocument(filepath))
        result["file"] = str(filepath)
        return result

    except Exception as e:
        logger.error(f"Error inserting highlights: {e}")
        return {"status": "error", "message": str(e)}

@mcp.tool()
async def readwise_status() -> dict:
    """Show token, cache and sync state"""
    try:
        app = get_app()
        state = app.state
        return {
            "status": "success",
            "loading": state.loading or app.is_syncing(),
            "error": state.error,
            "has_token": bool(state.token),
            "books_cached": len(state.books or {}),
            "imported": sum(1 for b in (state.books or {}).values() if b["imported"]),
            "color_scheme": app.environment.color_scheme,
            "store_file": str(STORE_FILE),
        }

    except Exception as e:
        logger.error(f"Error getting status: {e}")
        return {"status": "error", "message": str(e)}

@mcp.tool()
async def readwise_reset_cache() -> dict:
    """Clear cached books and imported flags (token is kept)"""
    try:
        get_app().reset_cache()
        return {"status": "success", "message": "Cache cleared"}

    except Exception as e:
        logger.error(f"Error resetting cache: {e}")
        return {"status": "error", "message": str(e)}

@mcp.tool()
async def readwise_set_color_scheme(scheme: str) -> dict:
    """Switch list rendering between light and dark"""
    try:
        app = get_app()
        app.environment.set_color_scheme(scheme)
        return {"status": "success", "dark_mode": app.state.dark_mode}

    except Exception as e:
        logger.error(f"Error setting color scheme: {e}")
        return {"status": "error", "message": str(e)}

# ============================================================================
# SERVER STARTUP
# ============================================================================

def main():
    logger.info("Starting Readwise Highlights MCP Server")
    logger.info(f"Vault path: {VAULT_PATH}")
    logger.info(f"Store file: {STORE_FILE}")
    if not READWISE_TOKEN:
        logger.info("READWISE_TOKEN not set, using stored token if any")
    get_app()
    mcp.run()


if __name__ == "__main__":
    main()
