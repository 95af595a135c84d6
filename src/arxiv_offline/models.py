"""Data models and constants for the offline arXiv feed engine."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime

# Application identity, used for platformdirs paths
CONFIG_APP_NAME = "arxiv-offline"

# Feed query defaults
DEFAULT_CATEGORIES = ["cs.AI", "cs.LG", "cs.CL"]
DEFAULT_MAX_RESULTS = 50
MAX_RESULTS_LIMIT = 200

# Background refresh
AUTO_REFRESH_INTERVAL_SECONDS = 15 * 60

# Read status values (user state)
READ_STATUSES = ("unread", "skimmed", "read", "deep")
DEFAULT_STATUS = "unread"

# Active source list for the presentation layer
VIEW_FEED = "feed"
VIEW_READING_LIST = "reading_list"
VIEW_MODES = (VIEW_FEED, VIEW_READING_LIST)

# Content type reported when the document source does not provide one
DEFAULT_DOCUMENT_CONTENT_TYPE = "application/pdf"

@dataclass(slots=True)
class Paper:
    """An item record: upstream descriptive fields plus local user state.

    ``created_at`` / ``updated_at`` are local epoch-second timestamps;
    ``published_at`` / ``revised_at`` are upstream ISO dates.
    """

    id: str
    title: str
    url: str | None = None
    arxiv_id: str = ""
    authors: list[str] = field(default_factory=list)
    abstract: str = ""
    published_at: str = ""
    revised_at: str = ""
    pdf_url: str = ""
    primary_category: str = ""
    categories: list[str] = field(default_factory=list)
    item_type: str = "paper"
    created_at: float = 0.0
    updated_at: float = 0.0
    # User state
    status: str = DEFAULT_STATUS
    bookmarked: bool = False
    bookmarked_at: float | None = None
    notes: str = ""


# Fields owned by the user; a feed refresh never overwrites them.
USER_STATE_FIELDS = ("status", "bookmarked", "bookmarked_at", "notes")


@dataclass(slots=True, frozen=True)
class FeedQuery:
    """Parameters for one feed request."""

    categories: tuple[str, ...] = tuple(DEFAULT_CATEGORIES)
    keywords: str = ""
    max_results: int = DEFAULT_MAX_RESULTS


@dataclass(slots=True)
class FeedMeta:
    """Metadata stored alongside a feed snapshot."""

    categories: list[str] = field(default_factory=list)
    keywords: str = ""
    last_refresh: float | None = None
    total_results: int = 0

    @property
    def last_refresh_iso(self) -> str | None:
        if self.last_refresh is None:
            return None
        return datetime.fromtimestamp(self.last_refresh, UTC).isoformat()


@dataclass(slots=True)
class FeedSnapshot:
    """Ordered item ids returned by the last successful fetch for a fingerprint."""

    fingerprint: str
    item_ids: list[str]
    meta: FeedMeta


@dataclass(slots=True)
class FeedPage:
    """Normalized result of one upstream feed request.

    The three counters are informational only.
    """

    papers: list[Paper]
    total_results: int = 0
    start_index: int = 0
    items_per_page: int = 0


@dataclass(slots=True)
class CachedDocument:
    """A cached binary document."""

    paper_id: str
    data: bytes
    cached_at: float
    file_size: int
    content_type: str = DEFAULT_DOCUMENT_CONTENT_TYPE


@dataclass(slots=True)
class ScrollPosition:
    """Reader position for a document, persisted independently of sync."""

    scroll_top: float = 0.0
    current_page: int = 1
    zoom: float = 1.0


class UpsertResult(enum.Enum):
    """Which branch an upsert took."""

    INSERTED = "inserted"
    UPDATED = "updated"


__all__ = [
    "AUTO_REFRESH_INTERVAL_SECONDS",
    "CONFIG_APP_NAME",
    "DEFAULT_CATEGORIES",
    "DEFAULT_DOCUMENT_CONTENT_TYPE",
    "DEFAULT_MAX_RESULTS",
    "DEFAULT_STATUS",
    "MAX_RESULTS_LIMIT",
    "READ_STATUSES",
    "USER_STATE_FIELDS",
    "VIEW_FEED",
    "VIEW_MODES",
    "VIEW_READING_LIST",
    "CachedDocument",
    "FeedMeta",
    "FeedPage",
    "FeedQuery",
    "FeedSnapshot",
    "Paper",
    "ScrollPosition",
    "UpsertResult",
]
