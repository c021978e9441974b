# Copyright (c) 2026 ngpestelos
# Licensed under the MIT License - see LICENSE file for details
"""
Application state and selection logic for the highlights picker.

Owns the book list, token, loading and error state; drives the sync engine
and the insert action. The store, remote source, document and environment
are passed in so tests can substitute fakes.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from page_document import book_title, insert_highlights
from readwise_sync import (
    Aggregate, AggregateMap, CacheReadError, InsertionConflictError, NoTokenError,
    ReadwiseSource, clear_cached, load_cached, load_token, save_cached, save_token, sync
)

logger = logging.getLogger(__name__)

IMPORTED_OPACITY = 0.5


class StaticEnvironment:
    """Host environment that reports a color scheme to a single listener"""

    def __init__(self, color_scheme: str = "light"):
        self.color_scheme = color_scheme
        self._listener: Optional[Callable[[Dict], None]] = None

    def set_listener(self, listener: Callable[[Dict], None]) -> None:
        self._listener = listener
        listener({"colorScheme": self.color_scheme})

    def set_color_scheme(self, color_scheme: str) -> None:
        self.color_scheme = color_scheme
        if self._listener:
            self._listener({"colorScheme": color_scheme})


@dataclass
class AppState:
    books: Optional[AggregateMap] = None
    loading: bool = True
    token: Optional[str] = None
    error: Optional[str] = None
    dark_mode: bool = False


def carry_imported(books: AggregateMap, current: Optional[AggregateMap]) -> AggregateMap:
    """Keep imported flags already set in `current`; flags only ever go from False to True"""
    if not current:
        return books
    return {
        key: {**aggregate, "imported": True}
        if not aggregate["imported"] and (current.get(key) or {}).get("imported")
        else aggregate
        for key, aggregate in books.items()
    }


def sort_by_highlight_count(books: AggregateMap) -> List[Aggregate]:
    """Most highlighted first; ties keep their map order"""
    return sorted(books.values(), key=lambda book: len(book["highlights"]), reverse=True)


class TokenWidget:
    """Token entry: edits are saved to the store as they are typed"""

    def __init__(self, app: "HighlightsApp"):
        self.app = app
        self.is_open = False
        self.value = ""

    def open(self) -> None:
        self.is_open = True
        self.value = self.app.read_stored_token() or ""

    def change(self, value: str) -> None:
        self.value = value
        save_token(self.app.store, value)
        self.app.state.token = value or None

    def save(self) -> None:
        self.app.state.token = self.value or None
        self.is_open = False

    def cancel(self) -> None:
        self.is_open = False


class HighlightsApp:
    def __init__(self, store, source: Optional[ReadwiseSource] = None,
                 environment: Optional[StaticEnvironment] = None,
                 default_token: Optional[str] = None):
        self.store = store
        self.source = source or ReadwiseSource()
        self.environment = environment or StaticEnvironment()
        self.default_token = default_token
        self.state = AppState()
        self.token_widget = TokenWidget(self)
        self._sync_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._generation = 0

    # ------------------------------------------------------------------
    # startup
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Seed state from the store before any network call"""
        self.environment.set_listener(self._on_environment)

        try:
            books = load_cached(self.store)
            if books:
                self.state.books = books
            logger.info("Fetching from cache")
            self.state.error = None
        except (CacheReadError, OSError, ValueError) as e:
            self.state.error = f"Error fetching from cache {e}"

        self.state.token = self.read_stored_token() or self.default_token
        self.state.loading = False

    def read_stored_token(self) -> Optional[str]:
        try:
            return load_token(self.store)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read stored token: {e}")
            return None

    def _on_environment(self, env: Dict) -> None:
        self.state.dark_mode = env.get("colorScheme") == "dark"

    def set_error(self, error: Optional[str]) -> None:
        self.state.error = error

    # ------------------------------------------------------------------
    # sync
    # ------------------------------------------------------------------

    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    def fetch_data(self) -> Optional[AggregateMap]:
        """
        Refresh books from Readwise.

        Only one sync runs at a time; a call made while another is in flight
        returns None without touching state.
        """
        if not self._sync_lock.acquire(blocking=False):
            logger.warning("Sync already in progress, ignoring request")
            return None

        try:
            self.state.loading = True
            if not self.state.token:
                self.state.error = str(NoTokenError())
                return None

            self._generation += 1
            generation = self._generation

            books = sync(
                self.state.token,
                self.set_error,
                self.store,
                self.source,
                is_current=lambda: generation == self._generation,
                lock=self._state_lock,
            )
            if books is None:
                return None

            with self._state_lock:
                if generation != self._generation:
                    return None
                books = carry_imported(books, self.state.books)
                self.state.books = books
            return books
        finally:
            self.state.loading = False
            self._sync_lock.release()

    def reset_cache(self) -> None:
        """Forget cached books; a sync still in flight will not write them back"""
        with self._state_lock:
            self._generation += 1
            clear_cached(self.store)
            self.state.books = None

    # ------------------------------------------------------------------
    # list + insert
    # ------------------------------------------------------------------

    def sorted_books(self) -> List[Aggregate]:
        if not self.state.books:
            return []
        return sort_by_highlight_count(self.state.books)

    def render_book_list(self) -> List[Dict]:
        css_class = "btn dark" if self.state.dark_mode else "btn"
        rows = []
        for aggregate in self.sorted_books():
            book = aggregate.get("book") or {}
            rows.append({
                "id": aggregate["id"],
                "title": book_title(aggregate),
                "author": book.get("author"),
                "count": len(aggregate["highlights"]),
                "cover_image_url": book.get("cover_image_url"),
                "imported": aggregate["imported"],
                "opacity": IMPORTED_OPACITY if aggregate["imported"] else 1,
                "class": css_class,
            })
        return rows

    def get_book(self, book_id) -> Optional[Aggregate]:
        if not self.state.books:
            return None
        return self.state.books.get(str(book_id))

    def insert_book(self, book_id, document) -> Dict:
        """
        Insert one book's highlights into `document` and mark it imported.

        The imported flag is set even when the page already had content.
        """
        aggregate = self.get_book(book_id)
        if aggregate is None:
            raise KeyError(f"Unknown book id: {book_id}")

        result = {"id": aggregate["id"], "title": book_title(aggregate)}
        try:
            result["inserted"] = insert_highlights(document, aggregate)
            result["status"] = "inserted"
        except InsertionConflictError as e:
            result["inserted"] = 0
            result["status"] = "conflict"
            result["message"] = str(e)

        self._mark_imported(aggregate)
        return result

    def _mark_imported(self, aggregate: Aggregate) -> None:
        """Set the imported flag in state and in the stored map"""
        key = str(aggregate["id"])
        with self._state_lock:
            books = dict(self.state.books or {})
            books[key] = {**books.get(key, aggregate), "imported": True}
            self.state.books = books

            try:
                stored = load_cached(self.store)
            except CacheReadError as e:
                logger.warning(f"Ignoring unreadable cache: {e}")
                stored = None
            stored = dict(stored or books)
            stored[key] = {**stored.get(key, aggregate), "imported": True}

            try:
                save_cached(self.store, stored)
            except (OSError, ValueError) as e:
                logger.error(f"Error writing cache: {e}")
                self.state.error = f"Error writing cache {e}"
