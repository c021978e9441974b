# Copyright (c) 2026 ngpestelos
# Licensed under the MIT License - see LICENSE file for details
"""
Readwise books + highlights sync.

Fetches books and highlights from the Readwise v2 API, folds them into
per-book aggregates and keeps the last result in a small JSON key-value store.
"""

import json
import logging
import threading
from contextlib import nullcontext
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypedDict

import requests

logger = logging.getLogger(__name__)

READWISE_API_URL = "https://readwise.io/api/v2"
REQUEST_TIMEOUT = 30  # seconds
PAGE_SIZE = 1000  # single page, larger accounts are truncated

# Store keys
TOKEN_KEY = "api_token"
HIGHLIGHTS_KEY = "readwise_highlights"

# ============================================================================
# ERRORS
# ============================================================================

class ReadwiseError(Exception):
    """Base class for everything this module reports to the user"""


class AuthOrFetchError(ReadwiseError):
    """A Readwise request failed (bad token, HTTP error, network, timeout)"""


class NetworkOrAuthError(AuthOrFetchError):
    """The books request failed"""


class HighlightsFetchError(AuthOrFetchError):
    """The highlights request failed"""


class CacheReadError(ReadwiseError):
    """Cached aggregate entry exists but cannot be parsed"""


class NoTokenError(ReadwiseError):
    """A fetch was attempted without a token"""

    def __init__(self, message: str = "No token."):
        super().__init__(message)


class InsertionConflictError(ReadwiseError):
    """The target page already has content"""

# ============================================================================
# DATA TYPES
# ============================================================================

class Book(TypedDict, total=False):
    id: int
    title: str
    author: str
    cover_image_url: str
    source: str
    source_url: Optional[str]
    asin: Optional[str]
    highlights_url: str
    num_highlights: int
    tags: List[str]
    last_highlight_at: str
    updated: str


class Highlight(TypedDict, total=False):
    id: int
    book_id: int
    text: str
    note: str
    color: str
    location: int
    location_type: str
    tags: List[str]
    highlighted_at: str
    updated: str
    url: Optional[str]


class Aggregate(TypedDict):
    id: int
    book: Optional[Book]
    highlights: List[Highlight]
    imported: bool


# book id (as str) -> Aggregate
AggregateMap = Dict[str, Aggregate]

ErrorCallback = Callable[[Optional[str]], None]

# ============================================================================
# KEY-VALUE STORE
# ============================================================================

class JsonFileStore:
    """String key-value store persisted as a single JSON file"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path, 'r') as f:
            return json.load(f)

    def _write(self, entries: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(entries, f, indent=2)

    def get(self, key: str) -> Optional[Dict[str, str]]:
        with self._lock:
            entries = self._read()
        if key not in entries:
            return None
        return {"data": entries[key]}

    def put(self, key: str, value: str) -> None:
        with self._lock:
            entries = self._read()
            entries[key] = value
            self._write(entries)

    def delete(self, key: str) -> None:
        with self._lock:
            entries = self._read()
            if entries.pop(key, None) is not None:
                self._write(entries)

# ============================================================================
# CACHE ACCESSOR
# ============================================================================

def load_cached(store) -> Optional[AggregateMap]:
    """
    Read the last persisted Aggregate Map.

    Returns None when nothing is cached. Raises CacheReadError when the
    store cannot be read or the entry is not a map of aggregates.
    """
    try:
        cached = store.get(HIGHLIGHTS_KEY)
        if not cached or not cached.get("data"):
            return None
        books = json.loads(cached["data"])
    except (OSError, ValueError) as e:
        raise CacheReadError(str(e)) from e

    if books is None:
        return None
    if not isinstance(books, dict):
        raise CacheReadError(f"expected an object, got {type(books).__name__}")
    for key, aggregate in books.items():
        if not isinstance(aggregate, dict) or not isinstance(aggregate.get("highlights"), list):
            raise CacheReadError(f"malformed entry for book {key}")
    return books


def save_cached(store, books: AggregateMap) -> None:
    store.put(HIGHLIGHTS_KEY, json.dumps(books))


def clear_cached(store) -> None:
    store.delete(HIGHLIGHTS_KEY)


def load_token(store) -> Optional[str]:
    token = store.get(TOKEN_KEY)
    if token and token.get("data"):
        return token["data"]
    return None


def save_token(store, token: str) -> None:
    store.put(TOKEN_KEY, token)

# ============================================================================
# REMOTE HIGHLIGHTS SOURCE
# ============================================================================

def fetch_api(endpoint: str, token: str, params: Optional[Dict] = None,
              base_url: str = READWISE_API_URL, timeout: float = REQUEST_TIMEOUT) -> Dict:
    """
    Make authenticated GET call to the Readwise API.

    No retries: any HTTP, connection or timeout error is raised to the caller.

    Args:
        endpoint: API endpoint (e.g., "/books/" or "/highlights/")
        token: Readwise access token
        params: Query parameters
    """
    url = f"{base_url}{endpoint}"
    headers = {
        "Authorization": f"Token {token}"
    }

    response = requests.get(
        url,
        headers=headers,
        params=params,
        timeout=timeout
    )
    response.raise_for_status()
    return response.json()


class ReadwiseSource:
    """Books and highlights endpoints, one page each"""

    def __init__(self, base_url: str = READWISE_API_URL, timeout: float = REQUEST_TIMEOUT,
                 page_size: int = PAGE_SIZE):
        self.base_url = base_url
        self.timeout = timeout
        self.page_size = page_size

    def _results(self, endpoint: str, token: str, error_cls) -> List[Dict]:
        try:
            data = fetch_api(endpoint, token, params={"page_size": self.page_size},
                             base_url=self.base_url, timeout=self.timeout)
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Request error for {endpoint}: {e}")
            raise error_cls(str(e)) from e
        return data.get("results", [])

    def fetch_books(self, token: str) -> List[Book]:
        return self._results("/books/", token, NetworkOrAuthError)

    def fetch_highlights(self, token: str) -> List[Highlight]:
        return self._results("/highlights/", token, HighlightsFetchError)

# ============================================================================
# AGGREGATION ENGINE
# ============================================================================

def aggregate_highlights(books: Dict[str, Book], highlights: List[Highlight],
                         cached: Optional[AggregateMap] = None) -> AggregateMap:
    """
    Fold highlights into per-book aggregates.

    Highlights keep their arrival order. A book's imported flag is carried
    over from the previous snapshot. Highlights whose book is not in
    `books` still get an aggregate, with book set to None.
    """
    cached = cached or {}
    aggregated: AggregateMap = {}

    for highlight in highlights:
        key = str(highlight["book_id"])
        if key in aggregated:
            aggregated[key]["highlights"].append(highlight)
            continue

        previous = cached.get(key) or {}
        aggregated[key] = {
            "id": highlight["book_id"],
            "book": books.get(key),
            "highlights": [highlight],
            "imported": bool(previous.get("imported")),
        }

    return aggregated


def sync(token: str, on_error: ErrorCallback, store, source: ReadwiseSource,
         is_current: Optional[Callable[[], bool]] = None,
         lock=None) -> Optional[AggregateMap]:
    """
    Fetch books and highlights, merge them and persist the result.

    on_error is called with None first, then with a message if anything
    fails. Returns None (and leaves the cache untouched) when either request
    fails or when is_current reports that a newer sync has started.

    Imported flags are read from the cache after both requests finish, under
    `lock`, so flags set by anyone holding the same lock are never lost.
    """
    on_error(None)

    try:
        books = {str(book["id"]): book for book in source.fetch_books(token)}
        highlights = source.fetch_highlights(token)
    except AuthOrFetchError as e:
        on_error(str(e))
        return None

    with lock or nullcontext():
        try:
            cached = load_cached(store)
        except CacheReadError as e:
            logger.warning(f"Ignoring unreadable cache: {e}")
            cached = None

        aggregated = aggregate_highlights(books, highlights, cached)

        if is_current is not None and not is_current():
            logger.warning("Discarding stale sync result")
            return None

        try:
            save_cached(store, aggregated)
        except (OSError, ValueError) as e:
            logger.error(f"Error writing cache: {e}")
            on_error(f"Error writing cache {e}")

    logger.info(f"Synced {len(highlights)} highlights across {len(aggregated)} books")
    return aggregated
