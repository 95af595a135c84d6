"""Error taxonomy for feed synchronization and document caching."""

from __future__ import annotations

OFFLINE_MESSAGE = "You are offline. Showing cached results."


class SyncError(Exception):
    """Base class for errors reported to the presentation layer."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(SyncError):
    """Request rejected before any I/O (e.g. empty category set)."""

    kind = "validation"


class OfflineError(SyncError):
    """Network access was required while the connectivity monitor reports offline."""

    kind = "offline"

    def __init__(self, message: str = OFFLINE_MESSAGE) -> None:
        super().__init__(message)


class UpstreamError(SyncError):
    """Non-success response or malformed payload from the upstream source."""

    kind = "upstream"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(SyncError):
    """A local read or write failed; the user action did not persist."""

    kind = "storage"


class StreamError(SyncError):
    """A streamed document fetch failed; partial data was discarded."""

    kind = "stream"


__all__ = [
    "OFFLINE_MESSAGE",
    "OfflineError",
    "StorageError",
    "StreamError",
    "SyncError",
    "UpstreamError",
    "ValidationError",
]
