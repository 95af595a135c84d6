"""Binary document cache with cache-first, streamed, progress-reporting resolution.

Two pieces live here:

* ``DocumentStore``: SQLite-backed binaries keyed by item id, plus the
  independent per-document scroll/zoom positions. Optional size cap with
  oldest-first eviction.
* ``DocumentResolver``: the per-document state machine
  ``idle -> loading -> (loaded | error | offline)``.

Concurrent ``resolve`` calls for the same id are not coalesced; two
simultaneous calls may both hit the network.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

import httpx
from platformdirs import user_data_dir

from arxiv_offline.connectivity import ConnectivityMonitor
from arxiv_offline.errors import StorageError, StreamError, SyncError, ValidationError
from arxiv_offline.models import (
    CONFIG_APP_NAME,
    DEFAULT_DOCUMENT_CONTENT_TYPE,
    CachedDocument,
    ScrollPosition,
)
from arxiv_offline.services.interfaces import DocumentSource

logger = logging.getLogger(__name__)

DOCUMENTS_DB_FILENAME = "documents.db"

# Resolution states
DOC_IDLE = "idle"
DOC_LOADING = "loading"
DOC_LOADED = "loaded"
DOC_ERROR = "error"
DOC_OFFLINE = "offline"

OFFLINE_DOCUMENT_MESSAGE = "You are offline and this PDF is not cached."

ProgressCallback = Callable[[int, int], None]

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS documents ("
    "  paper_id TEXT PRIMARY KEY,"
    "  data BLOB NOT NULL,"
    "  cached_at REAL NOT NULL,"
    "  file_size INTEGER NOT NULL,"
    "  content_type TEXT NOT NULL"
    ")",
    "CREATE TABLE IF NOT EXISTS scroll_positions ("
    "  paper_id TEXT PRIMARY KEY,"
    "  scroll_top REAL NOT NULL,"
    "  current_page INTEGER NOT NULL,"
    "  zoom REAL NOT NULL,"
    "  updated_at REAL NOT NULL"
    ")",
)


def get_documents_db_path(data_dir: Path | None = None) -> Path:
    """Get the path to the document cache database."""
    base = data_dir if data_dir is not None else Path(user_data_dir(CONFIG_APP_NAME))
    return base / DOCUMENTS_DB_FILENAME


@dataclass(slots=True)
class CacheStats:
    count: int = 0
    total_size: int = 0


class DocumentStore:
    """Cached binaries keyed by item id.

    ``max_bytes`` of 0 means unbounded. Otherwise each ``put`` evicts the
    oldest entries (by cached-at) until the total fits, never evicting the
    entry that was just written.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        max_bytes: int = 0,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = db_path
        self._max_bytes = max(0, max_bytes)
        self._now = now
        self._initialized = False

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._db_path))
        except (sqlite3.Error, OSError) as exc:
            raise StorageError(f"Could not open document cache: {exc}") from exc
        try:
            with conn:
                if not self._initialized:
                    for statement in _SCHEMA:
                        conn.execute(statement)
                    self._initialized = True
                yield conn
        except sqlite3.Error as exc:
            raise StorageError(f"Document cache operation failed: {exc}") from exc
        finally:
            conn.close()

    def get(self, paper_id: str) -> CachedDocument | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data, cached_at, file_size, content_type FROM documents "
                "WHERE paper_id = ?",
                (paper_id,),
            ).fetchone()
        if row is None:
            return None
        data, cached_at, file_size, content_type = row
        return CachedDocument(
            paper_id=paper_id,
            data=bytes(data),
            cached_at=cached_at,
            file_size=file_size,
            content_type=content_type,
        )

    def contains(self, paper_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM documents WHERE paper_id = ?", (paper_id,)
            ).fetchone()
        return row is not None

    def put(
        self,
        paper_id: str,
        data: bytes,
        content_type: str = DEFAULT_DOCUMENT_CONTENT_TYPE,
    ) -> CachedDocument:
        entry = CachedDocument(
            paper_id=paper_id,
            data=data,
            cached_at=self._now(),
            file_size=len(data),
            content_type=content_type or DEFAULT_DOCUMENT_CONTENT_TYPE,
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO documents "
                "(paper_id, data, cached_at, file_size, content_type) VALUES (?, ?, ?, ?, ?)",
                (
                    entry.paper_id,
                    sqlite3.Binary(entry.data),
                    entry.cached_at,
                    entry.file_size,
                    entry.content_type,
                ),
            )
            if self._max_bytes:
                self._evict(conn, self._max_bytes, keep=paper_id)
        logger.info(
            "Cached document %s (%.2f MB)", paper_id, entry.file_size / 1024 / 1024
        )
        return entry

    def delete(self, paper_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM documents WHERE paper_id = ?", (paper_id,))
        return cursor.rowcount > 0

    def clear(self) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM documents")
        return cursor.rowcount

    def stats(self) -> CacheStats:
        with self._connect() as conn:
            count, total = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(file_size), 0) FROM documents"
            ).fetchone()
        return CacheStats(count=count, total_size=total)

    def evict_to(self, max_bytes: int) -> list[str]:
        """Evict oldest entries until the total size is at most ``max_bytes``."""
        with self._connect() as conn:
            return self._evict(conn, max(0, max_bytes), keep=None)

    @staticmethod
    def _evict(conn: sqlite3.Connection, max_bytes: int, keep: str | None) -> list[str]:
        rows = conn.execute(
            "SELECT paper_id, file_size FROM documents ORDER BY cached_at ASC, paper_id"
        ).fetchall()
        total = sum(size for _, size in rows)
        evicted: list[str] = []
        for paper_id, size in rows:
            if total <= max_bytes:
                break
            if paper_id == keep:
                continue
            conn.execute("DELETE FROM documents WHERE paper_id = ?", (paper_id,))
            total -= size
            evicted.append(paper_id)
        if evicted:
            logger.info("Evicted %d cached documents to fit %d bytes", len(evicted), max_bytes)
        return evicted

    # ------------------------------------------------------------------
    # Scroll positions
    # ------------------------------------------------------------------

    def get_scroll_position(self, paper_id: str) -> ScrollPosition | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT scroll_top, current_page, zoom FROM scroll_positions "
                "WHERE paper_id = ?",
                (paper_id,),
            ).fetchone()
        if row is None:
            return None
        return ScrollPosition(scroll_top=row[0], current_page=row[1], zoom=row[2])

    def save_scroll_position(self, paper_id: str, position: ScrollPosition) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO scroll_positions "
                "(paper_id, scroll_top, current_page, zoom, updated_at) VALUES (?, ?, ?, ?, ?)",
                (
                    paper_id,
                    position.scroll_top,
                    position.current_page,
                    position.zoom,
                    self._now(),
                ),
            )


@dataclass(slots=True)
class DocumentState:
    """Resolution state for one document."""

    paper_id: str
    status: str = DOC_IDLE
    loaded: int = 0
    total: int = 0
    error: str | None = None
    from_cache: bool = False
    data: bytes | None = field(default=None, repr=False)

    @property
    def progress(self) -> float | None:
        """Fraction downloaded, or None when the total is unknown."""
        if self.total <= 0:
            return None
        return min(1.0, self.loaded / self.total)


def _validate_source_url(url: str) -> None:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValidationError(f"Unsupported document location: {url!r}")


def _describe_failure(exc: BaseException) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"Failed to fetch PDF: {exc.response.status_code}"
    if isinstance(exc, httpx.HTTPError):
        return f"Failed to fetch PDF: {exc.__class__.__name__}"
    if isinstance(exc, SyncError):
        return exc.message
    return f"Failed to fetch PDF: {exc}"


class DocumentResolver:
    """Cache-first resolution of documents by item id."""

    def __init__(
        self,
        store: DocumentStore,
        source: DocumentSource,
        monitor: ConnectivityMonitor,
    ) -> None:
        self._store = store
        self._source = source
        self._monitor = monitor
        self._states: dict[str, DocumentState] = {}

    @property
    def store(self) -> DocumentStore:
        return self._store

    def state(self, paper_id: str) -> DocumentState:
        return self._states.get(paper_id) or DocumentState(paper_id=paper_id)

    async def is_cached(self, paper_id: str) -> bool:
        try:
            return await asyncio.to_thread(self._store.contains, paper_id)
        except StorageError:
            logger.warning("Could not check cache for %s", paper_id, exc_info=True)
            return False

    async def resolve(
        self,
        paper_id: str,
        source_url: str,
        on_progress: ProgressCallback | None = None,
    ) -> DocumentState:
        """Return the document from cache, or stream it from ``source_url`` and cache it.

        Failures are reported on the returned state, never raised. Cancelling
        the awaiting task aborts the transfer and discards what was received.
        """
        state = DocumentState(paper_id=paper_id, status=DOC_LOADING)
        self._states[paper_id] = state

        try:
            cached = await asyncio.to_thread(self._store.get, paper_id)
        except StorageError:
            logger.warning("Cache read failed for %s, treating as miss", paper_id, exc_info=True)
            cached = None
        if cached is not None:
            logger.info("Using cached document for %s", paper_id)
            state.status = DOC_LOADED
            state.from_cache = True
            state.loaded = state.total = cached.file_size
            state.data = cached.data
            return state

        if not self._monitor.is_online:
            state.status = DOC_OFFLINE
            state.error = OFFLINE_DOCUMENT_MESSAGE
            return state

        try:
            _validate_source_url(source_url)
        except ValidationError as exc:
            state.status = DOC_ERROR
            state.error = exc.message
            return state

        chunks: list[bytes] = []
        try:
            data, content_type = await self._download(state, source_url, chunks, on_progress)
            await asyncio.to_thread(self._store.put, paper_id, data, content_type)
        except asyncio.CancelledError:
            chunks.clear()
            state.status = DOC_IDLE
            state.loaded = 0
            logger.info("Download of %s cancelled, partial data discarded", paper_id)
            raise
        except (httpx.HTTPError, OSError, StorageError, StreamError) as exc:
            chunks.clear()
            state.status = DOC_ERROR
            state.error = _describe_failure(exc)
            logger.warning("Document fetch failed for %s: %s", paper_id, state.error)
            return state

        state.status = DOC_LOADED
        state.data = data
        return state

    async def _download(
        self,
        state: DocumentState,
        source_url: str,
        chunks: list[bytes],
        on_progress: ProgressCallback | None,
    ) -> tuple[bytes, str]:
        logger.info("Fetching document %s from %s", state.paper_id, source_url)
        async with self._source.open_stream(source_url) as stream:
            state.total = stream.total
            content_type = stream.content_type
            async for chunk in stream.chunks:
                if not chunk:
                    continue
                chunks.append(chunk)
                state.loaded += len(chunk)
                if on_progress is not None:
                    on_progress(state.loaded, stream.total)
        if stream.total and state.loaded < stream.total:
            raise StreamError(
                f"Failed to fetch PDF: received {state.loaded} of {stream.total} bytes"
            )
        return b"".join(chunks), content_type

    async def delete(self, paper_id: str) -> bool:
        self._states.pop(paper_id, None)
        return await asyncio.to_thread(self._store.delete, paper_id)


__all__ = [
    "DOCUMENTS_DB_FILENAME",
    "DOC_ERROR",
    "DOC_IDLE",
    "DOC_LOADED",
    "DOC_LOADING",
    "DOC_OFFLINE",
    "OFFLINE_DOCUMENT_MESSAGE",
    "CacheStats",
    "DocumentResolver",
    "DocumentState",
    "DocumentStore",
    "ProgressCallback",
    "get_documents_db_path",
]
