"""Shared test fixtures for arxiv-offline tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import pytest

from arxiv_offline.connectivity import ConnectivityMonitor
from arxiv_offline.document_cache import DocumentStore
from arxiv_offline.models import FeedPage, FeedQuery, Paper
from arxiv_offline.services.document_service import DocumentStream
from arxiv_offline.store import RecordStore


@pytest.fixture
def make_paper():
    """Factory fixture for creating Paper instances with sensible defaults."""

    def _make(
        arxiv_id: str = "2401.12345",
        title: str = "Test Paper",
        authors: list[str] | None = None,
        abstract: str = "Test abstract content.",
        categories: list[str] | None = None,
        **overrides,
    ) -> Paper:
        url = f"https://arxiv.org/abs/{arxiv_id}"
        return Paper(
            id=f"arxiv:{arxiv_id}",
            title=title,
            url=url,
            arxiv_id=arxiv_id,
            authors=authors if authors is not None else ["Test Author"],
            abstract=abstract,
            pdf_url=f"https://arxiv.org/pdf/{arxiv_id}.pdf",
            categories=categories if categories is not None else ["cs.AI"],
            primary_category=(categories or ["cs.AI"])[0],
            **overrides,
        )

    return _make


@pytest.fixture
def record_store(tmp_path) -> RecordStore:
    return RecordStore(tmp_path / "records.db")


@pytest.fixture
def document_store(tmp_path) -> DocumentStore:
    return DocumentStore(tmp_path / "documents.db")


@pytest.fixture
def monitor() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=True)


class FakeFeedSource:
    """In-memory FeedSource that records every query it was asked for.

    Set ``gate`` to an ``asyncio.Event`` to hold fetches until it is set.
    """

    def __init__(self, papers: list[Paper] | None = None, total_results: int = 0) -> None:
        self.papers = list(papers or [])
        self.total_results = total_results
        self.calls: list[FeedQuery] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def fetch_feed(self, query: FeedQuery) -> FeedPage:
        self.calls.append(query)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return FeedPage(papers=list(self.papers), total_results=self.total_results)


@pytest.fixture
def feed_source() -> FakeFeedSource:
    return FakeFeedSource()


class FakeDocumentSource:
    """In-memory DocumentSource yielding fixed chunks.

    ``total`` defaults to the sum of chunk sizes; pass 0 for an unknown length.
    ``fail_after`` raises ``error`` after that many chunks were yielded.
    """

    def __init__(
        self,
        chunks: list[bytes],
        *,
        total: int | None = None,
        content_type: str = "application/pdf",
        error: Exception | None = None,
        fail_after: int | None = None,
    ) -> None:
        self.chunks = chunks
        self.total = sum(len(c) for c in chunks) if total is None else total
        self.content_type = content_type
        self.error = error
        self.fail_after = fail_after
        self.opened: list[str] = []
        self.gate: asyncio.Event | None = None

    @asynccontextmanager
    async def open_stream(self, url: str) -> AsyncIterator[DocumentStream]:
        self.opened.append(url)
        if self.error is not None and self.fail_after is None:
            raise self.error
        yield DocumentStream(
            total=self.total, content_type=self.content_type, chunks=self._iter()
        )

    async def _iter(self) -> AsyncIterator[bytes]:
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index == self.fail_after:
                raise self.error or OSError("connection reset")
            if self.gate is not None and index > 0:
                await self.gate.wait()
            yield chunk
