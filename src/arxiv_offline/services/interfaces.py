"""Service interfaces + default adapters for engine-level dependency injection."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx

from arxiv_offline.models import FeedPage, FeedQuery
from arxiv_offline.services import arxiv_feed_service as _feed
from arxiv_offline.services import document_service as _documents
from arxiv_offline.services.document_service import DocumentStream


@runtime_checkable
class FeedSource(Protocol):
    """Produces an ordered list of item records for a query."""

    async def fetch_feed(self, query: FeedQuery) -> FeedPage:
        """Fetch one page of results. Raises UpstreamError/ValidationError."""
        ...


@runtime_checkable
class DocumentSource(Protocol):
    """Opens a byte stream for a document location."""

    def open_stream(self, url: str) -> AbstractAsyncContextManager[DocumentStream]:
        """Open a stream; closing the context aborts the transfer."""
        ...


class DefaultFeedSource:
    """Default adapter that delegates to the function-based arXiv feed service."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout_seconds: int = _feed.ARXIV_API_TIMEOUT,
        user_agent: str = _feed.ARXIV_API_USER_AGENT,
    ) -> None:
        self._client = client
        self._timeout_seconds = timeout_seconds
        self._user_agent = user_agent

    async def fetch_feed(self, query: FeedQuery) -> FeedPage:
        return await _feed.fetch_feed_page(
            client=self._client,
            query=query,
            timeout_seconds=self._timeout_seconds,
            user_agent=self._user_agent,
        )


class DefaultDocumentSource:
    """Default adapter that delegates to the function-based document service."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout_seconds: int = _documents.DOCUMENT_TIMEOUT,
        user_agent: str = _documents.DOCUMENT_USER_AGENT,
    ) -> None:
        self._client = client
        self._timeout_seconds = timeout_seconds
        self._user_agent = user_agent

    def open_stream(self, url: str) -> AbstractAsyncContextManager[DocumentStream]:
        return _documents.open_document_stream(
            client=self._client,
            url=url,
            timeout_seconds=self._timeout_seconds,
            user_agent=self._user_agent,
        )


@dataclass(slots=True)
class AppServices:
    """Aggregated network collaborators consumed by the engine layer."""

    feed: FeedSource
    documents: DocumentSource


def build_default_app_services(
    client: httpx.AsyncClient | None = None,
    *,
    timeout_seconds: int = _feed.ARXIV_API_TIMEOUT,
    user_agent: str = _feed.ARXIV_API_USER_AGENT,
) -> AppServices:
    """Build default services sharing one HTTP client."""
    return AppServices(
        feed=DefaultFeedSource(client, timeout_seconds=timeout_seconds, user_agent=user_agent),
        documents=DefaultDocumentSource(client, user_agent=user_agent),
    )


__all__ = [
    "AppServices",
    "DefaultDocumentSource",
    "DefaultFeedSource",
    "DocumentSource",
    "FeedSource",
    "build_default_app_services",
]
