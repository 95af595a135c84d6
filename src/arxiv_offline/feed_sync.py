"""Feed synchronization and merge engine.

Owns the in-memory view of one feed (a rebuildable cache of the record
store) and the rules for reconciling fresh upstream results with local
user state:

* a refresh keeps the incoming descriptive fields but never overwrites
  status, bookmark, or notes of a record that already exists locally;
* a record seen for the first time is inserted with default user state;
* only one fetch runs at a time, process-wide;
* when offline, the last snapshot keeps displaying and no request is made.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from functools import partial

from arxiv_offline.connectivity import ConnectivityMonitor
from arxiv_offline.errors import (
    OfflineError,
    StorageError,
    SyncError,
    ValidationError,
)
from arxiv_offline.fingerprint import query_fingerprint
from arxiv_offline.models import (
    DEFAULT_STATUS,
    READ_STATUSES,
    USER_STATE_FIELDS,
    VIEW_FEED,
    VIEW_MODES,
    VIEW_READING_LIST,
    FeedMeta,
    FeedQuery,
    Paper,
    UpsertResult,
)
from arxiv_offline.services.interfaces import FeedSource
from arxiv_offline.store import RecordStore

logger = logging.getLogger(__name__)

# Load / fetch statuses
STATUS_IDLE = "idle"
STATUS_LOADING_CACHE = "loading-cache"
STATUS_FETCHING = "fetching"
STATUS_READY = "ready"
STATUS_ERROR = "error"

# fetch_feed outcomes
FETCH_OK = "fetched"
FETCH_SKIPPED = "skipped"
FETCH_OFFLINE = "offline"
FETCH_INVALID = "invalid"
FETCH_FAILED = "failed"


@dataclass(slots=True)
class FetchOutcome:
    """What a ``fetch_feed`` call did."""

    result: str
    error: str | None = None
    count: int = 0

    @property
    def ok(self) -> bool:
        return self.result == FETCH_OK


@dataclass(slots=True)
class FeedState:
    """Observable state for a presentation layer."""

    query: FeedQuery = field(default_factory=FeedQuery)
    papers: list[Paper] = field(default_factory=list)
    # None until the reading list has been loaded once
    reading_list: list[Paper] | None = None
    visible: list[Paper] = field(default_factory=list)
    view_mode: str = VIEW_FEED
    local_filter: str = ""
    load_status: str = STATUS_IDLE
    fetch_status: str = STATUS_IDLE
    error: str | None = None
    error_kind: str | None = None
    last_refresh: float | None = None
    total_results: int = 0
    selected_id: str | None = None


def merge_user_state(existing: Paper | None, incoming: Paper, *, now: float) -> Paper:
    """Combine a fetched record with the stored one.

    Descriptive fields come from ``incoming``; user state comes from
    ``existing`` when there is one, otherwise it is reset to defaults.
    """
    if existing is None:
        return replace(
            incoming,
            status=DEFAULT_STATUS,
            bookmarked=False,
            bookmarked_at=None,
            notes="",
            created_at=incoming.created_at or now,
            updated_at=now,
        )
    return replace(
        incoming,
        **{name: getattr(existing, name) for name in USER_STATE_FIELDS},
        created_at=existing.created_at or incoming.created_at or now,
        updated_at=now,
    )


def filter_papers(papers: list[Paper], text: str) -> list[Paper]:
    """Case-insensitive substring match over title, abstract, and author names."""
    if not text.strip():
        return list(papers)
    query = text.casefold()
    return [
        paper
        for paper in papers
        if query in paper.title.casefold()
        or query in (paper.abstract or "").casefold()
        or any(query in author.casefold() for author in paper.authors)
    ]


StateListener = Callable[[FeedState], None]


class FeedSyncEngine:
    """Loads, fetches, merges, and annotates one feed at a time."""

    def __init__(
        self,
        store: RecordStore,
        source: FeedSource,
        monitor: ConnectivityMonitor,
        *,
        query: FeedQuery | None = None,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._source = source
        self._monitor = monitor
        self._now = now
        self._state = FeedState(query=query or FeedQuery())
        self._fetching = False
        # Commit count per fingerprint; a cache load that raced a commit for
        # the same fingerprint is discarded.
        self._commits: dict[str, int] = {}
        self._listeners: list[StateListener] = []
        monitor.add_listener(self._on_connectivity_change)
        if not monitor.is_online:
            self._set_error(OfflineError())

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def is_fetching(self) -> bool:
        return self._fetching

    @property
    def monitor(self) -> ConnectivityMonitor:
        return self._monitor

    @property
    def selected(self) -> Paper | None:
        if self._state.selected_id is None:
            return None
        return self._find_in_memory(self._state.selected_id)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a change callback; returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def close(self) -> None:
        self._monitor.remove_listener(self._on_connectivity_change)
        self._listeners.clear()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._state)

    def _set_error(self, exc: SyncError) -> None:
        self._state.error = exc.message
        self._state.error_kind = exc.kind

    def _clear_error(self) -> None:
        self._state.error = None
        self._state.error_kind = None

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            if self._state.error_kind == OfflineError.kind:
                self._clear_error()
        else:
            self._set_error(OfflineError())
        self._notify()

    # ------------------------------------------------------------------
    # Query / selection
    # ------------------------------------------------------------------

    def set_query(self, query: FeedQuery) -> None:
        """Change the active query. Does not load or fetch."""
        self._state.query = query
        self._notify()

    def select(self, item_id: str | None) -> None:
        self._state.selected_id = item_id
        self._notify()

    # ------------------------------------------------------------------
    # Load / fetch
    # ------------------------------------------------------------------

    async def load_cached_feed(self, query: FeedQuery | None = None) -> list[Paper]:
        """Show whatever is persisted for the query. Never touches the network."""
        if query is not None:
            self._state.query = query
        fp = query_fingerprint(self._state.query)
        commits = self._commits.get(fp, 0)
        self._state.load_status = STATUS_LOADING_CACHE
        self._notify()

        try:
            snapshot, papers = await asyncio.to_thread(self._store.load_feed, fp)
        except StorageError as exc:
            logger.warning("Failed to load cached feed %s", fp, exc_info=True)
            self._state.papers = []
            self._state.load_status = STATUS_ERROR
            self._set_error(StorageError(f"Failed to load cached feed: {exc.message}"))
            self._recompute_visible()
            self._notify()
            return []

        if commits != self._commits.get(fp, 0):
            # A fetch for this feed committed meanwhile; its result is newer.
            logger.debug("Discarding stale cache load for %s", fp)
            self._state.load_status = STATUS_READY
            self._notify()
            return list(self._state.papers)

        self._state.papers = papers
        self._state.last_refresh = snapshot.meta.last_refresh if snapshot else None
        self._state.total_results = snapshot.meta.total_results if snapshot else 0
        self._state.load_status = STATUS_READY
        self._recompute_visible()
        self._notify()
        logger.info("Loaded %d cached papers for %s", len(papers), fp)
        return papers

    async def fetch_feed(self, query: FeedQuery | None = None) -> FetchOutcome:
        """Fetch the query upstream, merge with local user state, replace the snapshot.

        Guards, in order: already in flight (skipped, nothing changes),
        offline (offline error, no request), empty category set
        (validation error, no request). Failures leave the stored
        snapshot untouched and are reported on the state.
        """
        if self._fetching:
            logger.info("Already fetching, skipping")
            return FetchOutcome(FETCH_SKIPPED)

        if query is not None:
            self._state.query = query
        q = self._state.query

        if not self._monitor.is_online:
            logger.info("Offline, skipping fetch")
            error = OfflineError()
            self._set_error(error)
            self._notify()
            return FetchOutcome(FETCH_OFFLINE, error=error.message)

        if not any(c.strip() for c in q.categories):
            error = ValidationError("Please select at least one category")
            self._set_error(error)
            self._notify()
            return FetchOutcome(FETCH_INVALID, error=error.message)

        fp = query_fingerprint(q)
        self._fetching = True
        self._state.fetch_status = STATUS_FETCHING
        self._clear_error()
        self._notify()

        try:
            page = await self._source.fetch_feed(q)
            now = self._now()
            meta = FeedMeta(
                categories=sorted({c.strip() for c in q.categories if c.strip()}),
                keywords=q.keywords.strip(),
                last_refresh=now,
                total_results=page.total_results,
            )
            merged = await asyncio.to_thread(
                self._store.merge_feed,
                fp,
                page.papers,
                meta,
                partial(merge_user_state, now=now),
            )
        except SyncError as exc:
            logger.warning("Feed fetch for %s failed: %s", fp, exc.message)
            self._state.fetch_status = STATUS_ERROR
            self._set_error(exc)
            self._notify()
            return FetchOutcome(FETCH_FAILED, error=exc.message)
        except BaseException:
            logger.warning("Feed fetch for %s aborted", fp, exc_info=True)
            self._state.fetch_status = STATUS_IDLE
            self._notify()
            raise
        finally:
            self._fetching = False

        self._commits[fp] = self._commits.get(fp, 0) + 1
        if query_fingerprint(self._state.query) == fp:
            self._state.papers = merged
            self._state.last_refresh = meta.last_refresh
            self._state.total_results = meta.total_results
        for paper in merged:
            self._echo_into_reading_list(paper)
        self._state.fetch_status = STATUS_READY
        self._clear_error()
        self._recompute_visible()
        self._notify()
        logger.info("Fetched %d papers for %s", len(merged), fp)
        return FetchOutcome(FETCH_OK, count=len(merged))

    async def refresh_feed(self, query: FeedQuery | None = None) -> FetchOutcome:
        """Show the cached snapshot first, then fetch fresh results."""
        await self.load_cached_feed(query)
        return await self.fetch_feed()

    async def last_refresh_for(self, query: FeedQuery) -> float | None:
        """Completion time of the last successful fetch for the query's fingerprint."""
        try:
            snapshot = await asyncio.to_thread(
                self._store.get_snapshot, query_fingerprint(query)
            )
        except StorageError:
            logger.warning("Could not read snapshot metadata", exc_info=True)
            return None
        return snapshot.meta.last_refresh if snapshot else None

    # ------------------------------------------------------------------
    # User state
    # ------------------------------------------------------------------

    async def toggle_bookmark(self, item_id: str) -> Paper | None:
        """Flip the bookmark on one item. Raises StorageError if it did not persist."""
        now = self._now()

        def _toggle(paper: Paper) -> Paper:
            bookmarked = not paper.bookmarked
            return replace(
                paper,
                bookmarked=bookmarked,
                bookmarked_at=now if bookmarked else None,
                updated_at=now,
            )

        return await self._update_user_state(item_id, _toggle)

    async def set_status(self, item_id: str, status: str) -> Paper | None:
        """Set the read status of one item."""
        if status not in READ_STATUSES:
            raise ValidationError(
                f"Unknown status {status!r}. Expected one of: {', '.join(READ_STATUSES)}"
            )
        now = self._now()
        return await self._update_user_state(
            item_id, lambda paper: replace(paper, status=status, updated_at=now)
        )

    async def set_note(self, item_id: str, notes: str) -> Paper | None:
        """Replace the free-text note of one item."""
        now = self._now()
        return await self._update_user_state(
            item_id, lambda paper: replace(paper, notes=notes, updated_at=now)
        )

    async def _update_user_state(
        self, item_id: str, mutate: Callable[[Paper], Paper]
    ) -> Paper | None:
        fallback = self._find_in_memory(item_id)
        result = await asyncio.to_thread(self._store.update_item, item_id, mutate, fallback)
        if result is None:
            logger.warning("Ignoring update for unknown item %s", item_id)
            return None
        updated, branch = result
        if branch is UpsertResult.INSERTED:
            logger.info("Persisted %s from the in-memory feed before updating", item_id)
        self._echo(updated)
        self._recompute_visible()
        self._notify()
        return updated

    def _find_in_memory(self, item_id: str) -> Paper | None:
        for paper in self._state.papers:
            if paper.id == item_id:
                return paper
        for paper in self._state.reading_list or []:
            if paper.id == item_id:
                return paper
        return None

    def _echo(self, updated: Paper) -> None:
        """Reflect one updated record in every materialized projection."""
        self._state.papers = [
            updated if p.id == updated.id else p for p in self._state.papers
        ]
        self._echo_into_reading_list(updated)

    def _echo_into_reading_list(self, updated: Paper) -> None:
        reading = self._state.reading_list
        if reading is None:
            return
        index = next((i for i, p in enumerate(reading) if p.id == updated.id), None)
        if not updated.bookmarked:
            if index is not None:
                del reading[index]
        elif index is not None:
            reading[index] = updated
        else:
            reading.insert(0, updated)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def _recompute_visible(self) -> None:
        if self._state.view_mode == VIEW_READING_LIST:
            source = self._state.reading_list or []
        else:
            source = self._state.papers
        self._state.visible = filter_papers(source, self._state.local_filter)

    def apply_local_filter(self, text: str) -> list[Paper]:
        """Filter the active source list; synchronous, no I/O."""
        self._state.local_filter = text
        self._recompute_visible()
        self._notify()
        return self._state.visible

    async def load_reading_list(self) -> list[Paper]:
        """Rebuild the reading-list projection from the store."""
        try:
            reading = await asyncio.to_thread(self._store.list_bookmarked)
        except StorageError as exc:
            logger.warning("Failed to load reading list", exc_info=True)
            self._set_error(exc)
            reading = []
        self._state.reading_list = reading
        self._recompute_visible()
        self._notify()
        return reading

    async def set_view_mode(self, mode: str) -> list[Paper]:
        """Switch between the feed and the reading list, clearing the local filter."""
        if mode not in VIEW_MODES:
            raise ValidationError(f"Unknown view mode {mode!r}")
        self._state.view_mode = mode
        self._state.local_filter = ""
        if mode == VIEW_READING_LIST:
            await self.load_reading_list()
        else:
            self._recompute_visible()
            self._notify()
        return self._state.visible


__all__ = [
    "FETCH_FAILED",
    "FETCH_INVALID",
    "FETCH_OFFLINE",
    "FETCH_OK",
    "FETCH_SKIPPED",
    "STATUS_ERROR",
    "STATUS_FETCHING",
    "STATUS_IDLE",
    "STATUS_LOADING_CACHE",
    "STATUS_READY",
    "FeedState",
    "FeedSyncEngine",
    "FetchOutcome",
    "filter_papers",
    "merge_user_state",
]
