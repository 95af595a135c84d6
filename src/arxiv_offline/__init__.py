"""Local-first arXiv feed synchronization and PDF caching."""

from arxiv_offline.config import SyncConfig, load_config, save_config
from arxiv_offline.connectivity import ConnectivityMonitor
from arxiv_offline.document_cache import DocumentResolver, DocumentState, DocumentStore
from arxiv_offline.errors import (
    OfflineError,
    StorageError,
    StreamError,
    SyncError,
    UpstreamError,
    ValidationError,
)
from arxiv_offline.feed_sync import FeedState, FeedSyncEngine, FetchOutcome
from arxiv_offline.fingerprint import fingerprint, query_fingerprint
from arxiv_offline.models import FeedQuery, Paper, ScrollPosition
from arxiv_offline.scheduler import RefreshScheduler
from arxiv_offline.store import RecordStore

__version__ = "0.1.0"

__all__ = [
    "ConnectivityMonitor",
    "DocumentResolver",
    "DocumentState",
    "DocumentStore",
    "FeedQuery",
    "FeedState",
    "FeedSyncEngine",
    "FetchOutcome",
    "OfflineError",
    "Paper",
    "RecordStore",
    "RefreshScheduler",
    "ScrollPosition",
    "StorageError",
    "StreamError",
    "SyncConfig",
    "SyncError",
    "UpstreamError",
    "ValidationError",
    "fingerprint",
    "load_config",
    "query_fingerprint",
    "save_config",
]
