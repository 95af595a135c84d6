"""Tests for the document cache and cache-first resolver."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import httpx
import pytest
from conftest import FakeDocumentSource

from arxiv_offline.connectivity import ConnectivityMonitor
from arxiv_offline.document_cache import (
    DOC_ERROR,
    DOC_IDLE,
    DOC_LOADED,
    DOC_OFFLINE,
    OFFLINE_DOCUMENT_MESSAGE,
    DocumentResolver,
    DocumentStore,
    get_documents_db_path,
)
from arxiv_offline.errors import StorageError
from arxiv_offline.models import ScrollPosition
from arxiv_offline.services.interfaces import DocumentSource

PDF_URL = "https://arxiv.org/pdf/2401.12345.pdf"


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.value = start

    def __call__(self) -> float:
        self.value += 1
        return self.value


# ── DocumentStore ────────────────────────────────────────────────────


def test_get_documents_db_path(tmp_path) -> None:
    assert get_documents_db_path(tmp_path) == tmp_path / "documents.db"


def test_put_get_delete(document_store) -> None:
    entry = document_store.put("arxiv:1", b"%PDF-1.4 data", "application/pdf")
    assert entry.file_size == len(b"%PDF-1.4 data")

    cached = document_store.get("arxiv:1")
    assert cached.data == b"%PDF-1.4 data"
    assert cached.content_type == "application/pdf"
    assert document_store.contains("arxiv:1")

    assert document_store.delete("arxiv:1") is True
    assert document_store.delete("arxiv:1") is False
    assert document_store.get("arxiv:1") is None


def test_missing_content_type_defaults(document_store) -> None:
    assert document_store.put("arxiv:1", b"x", "").content_type == "application/pdf"


def test_stats_and_clear(document_store) -> None:
    document_store.put("a", b"12345")
    document_store.put("b", b"123")
    stats = document_store.stats()
    assert (stats.count, stats.total_size) == (2, 8)

    assert document_store.clear() == 2
    assert document_store.stats().count == 0


def test_size_cap_evicts_oldest_first(tmp_path) -> None:
    store = DocumentStore(tmp_path / "docs.db", max_bytes=10, now=FakeClock())
    store.put("old", b"1234")
    store.put("mid", b"1234")
    store.put("new", b"1234")

    assert not store.contains("old")
    assert store.contains("mid")
    assert store.contains("new")


def test_size_cap_never_evicts_entry_just_written(tmp_path) -> None:
    store = DocumentStore(tmp_path / "docs.db", max_bytes=4, now=FakeClock())
    store.put("small", b"12")
    store.put("huge", b"123456789")

    assert store.contains("huge")
    assert not store.contains("small")


def test_unbounded_by_default(tmp_path) -> None:
    store = DocumentStore(tmp_path / "docs.db", now=FakeClock())
    for i in range(5):
        store.put(f"p{i}", b"x" * 1000)
    assert store.stats().count == 5


def test_evict_to(tmp_path) -> None:
    store = DocumentStore(tmp_path / "docs.db", now=FakeClock())
    store.put("a", b"xxxx")
    store.put("b", b"xxxx")
    store.put("c", b"xxxx")

    assert store.evict_to(5) == ["a", "b"]
    assert store.stats().total_size == 4


def test_scroll_positions_are_independent(document_store) -> None:
    assert document_store.get_scroll_position("arxiv:1") is None
    document_store.save_scroll_position("arxiv:1", ScrollPosition(320.5, 4, 1.25))
    document_store.put("arxiv:1", b"data")
    document_store.delete("arxiv:1")

    assert document_store.get_scroll_position("arxiv:1") == ScrollPosition(320.5, 4, 1.25)


# ── DocumentResolver ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_resolve_cache_first_single_network_access(document_store, monitor) -> None:
    source = FakeDocumentSource([b"%PDF", b"-1.4"])
    resolver = DocumentResolver(document_store, source, monitor)
    progress: list[tuple[int, int]] = []

    first = await resolver.resolve("arxiv:1", PDF_URL, lambda a, b: progress.append((a, b)))
    second = await resolver.resolve("arxiv:1", PDF_URL, lambda a, b: progress.append((a, b)))

    assert first.status == second.status == DOC_LOADED
    assert first.data == second.data == b"%PDF-1.4"
    assert first.from_cache is False
    assert second.from_cache is True
    assert source.opened == [PDF_URL]
    # Progress only for the network fetch.
    assert progress == [(4, 8), (8, 8)]


@pytest.mark.asyncio
async def test_resolve_unknown_length_reports_zero_total(document_store, monitor) -> None:
    source = FakeDocumentSource([b"ab", b"cd"], total=0)
    resolver = DocumentResolver(document_store, source, monitor)
    progress: list[tuple[int, int]] = []

    state = await resolver.resolve("arxiv:1", PDF_URL, lambda a, b: progress.append((a, b)))

    assert state.status == DOC_LOADED
    assert progress == [(2, 0), (4, 0)]
    assert state.progress is None


@pytest.mark.asyncio
async def test_resolve_offline_miss(document_store) -> None:
    source = FakeDocumentSource([b"data"])
    resolver = DocumentResolver(document_store, source, ConnectivityMonitor(online=False))

    state = await resolver.resolve("arxiv:1", PDF_URL)

    assert state.status == DOC_OFFLINE
    assert state.error == OFFLINE_DOCUMENT_MESSAGE
    assert source.opened == []


@pytest.mark.asyncio
async def test_resolve_offline_hit_still_served(document_store, monitor) -> None:
    document_store.put("arxiv:1", b"cached")
    monitor.set_online(False)
    resolver = DocumentResolver(document_store, FakeDocumentSource([]), monitor)

    state = await resolver.resolve("arxiv:1", PDF_URL)

    assert state.status == DOC_LOADED
    assert state.data == b"cached"


@pytest.mark.asyncio
async def test_resolve_http_error_reports_status(document_store, monitor) -> None:
    request = httpx.Request("GET", PDF_URL)
    response = httpx.Response(404, request=request)
    error = httpx.HTTPStatusError("not found", request=request, response=response)
    resolver = DocumentResolver(document_store, FakeDocumentSource([], error=error), monitor)

    state = await resolver.resolve("arxiv:1", PDF_URL)

    assert state.status == DOC_ERROR
    assert state.error == "Failed to fetch PDF: 404"
    assert not document_store.contains("arxiv:1")


@pytest.mark.asyncio
async def test_stream_failure_discards_partial_data_and_retries(document_store, monitor) -> None:
    source = FakeDocumentSource(
        [b"part1", b"part2"], error=httpx.ReadError("connection reset"), fail_after=1
    )
    resolver = DocumentResolver(document_store, source, monitor)

    state = await resolver.resolve("arxiv:1", PDF_URL)
    assert state.status == DOC_ERROR
    assert state.data is None
    assert not document_store.contains("arxiv:1")

    source.error = None
    source.fail_after = None
    retry = await resolver.resolve("arxiv:1", PDF_URL)
    assert retry.status == DOC_LOADED
    assert retry.data == b"part1part2"


@pytest.mark.asyncio
async def test_truncated_stream_is_not_cached(document_store, monitor) -> None:
    source = FakeDocumentSource([b"only half"], total=100)
    resolver = DocumentResolver(document_store, source, monitor)

    state = await resolver.resolve("arxiv:1", PDF_URL)

    assert state.status == DOC_ERROR
    assert "received 9 of 100 bytes" in state.error
    assert not document_store.contains("arxiv:1")


@pytest.mark.asyncio
async def test_storage_failure_on_write_is_error_state(document_store, monitor) -> None:
    resolver = DocumentResolver(document_store, FakeDocumentSource([b"data"]), monitor)

    with patch.object(document_store, "put", side_effect=StorageError("disk full")):
        state = await resolver.resolve("arxiv:1", PDF_URL)

    assert state.status == DOC_ERROR
    assert state.error == "disk full"


@pytest.mark.asyncio
async def test_non_http_location_rejected(document_store, monitor) -> None:
    source = FakeDocumentSource([b"data"])
    resolver = DocumentResolver(document_store, source, monitor)

    state = await resolver.resolve("arxiv:1", "file:///etc/passwd")

    assert state.status == DOC_ERROR
    assert source.opened == []


@pytest.mark.asyncio
async def test_cancellation_discards_partial_download(document_store, monitor) -> None:
    source = FakeDocumentSource([b"first", b"second"])
    source.gate = asyncio.Event()
    resolver = DocumentResolver(document_store, source, monitor)
    progress: list[tuple[int, int]] = []

    task = asyncio.create_task(
        resolver.resolve("arxiv:1", PDF_URL, lambda a, b: progress.append((a, b)))
    )
    for _ in range(200):
        if progress:
            break
        await asyncio.sleep(0.01)
    assert progress == [(5, 11)]

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert resolver.state("arxiv:1").status == DOC_IDLE
    assert resolver.state("arxiv:1").loaded == 0
    assert not document_store.contains("arxiv:1")


@pytest.mark.asyncio
async def test_concurrent_resolves_are_not_coalesced(document_store, monitor) -> None:
    source = FakeDocumentSource([b"a", b"b"])
    source.gate = asyncio.Event()
    resolver = DocumentResolver(document_store, source, monitor)

    tasks = [asyncio.create_task(resolver.resolve("arxiv:1", PDF_URL)) for _ in range(2)]
    for _ in range(200):
        if len(source.opened) == 2:
            break
        await asyncio.sleep(0.01)
    source.gate.set()
    await asyncio.gather(*tasks)

    assert len(source.opened) == 2
    assert document_store.get("arxiv:1").data == b"ab"


@pytest.mark.asyncio
async def test_is_cached_and_delete(document_store, monitor) -> None:
    resolver = DocumentResolver(document_store, FakeDocumentSource([b"x"]), monitor)
    assert await resolver.is_cached("arxiv:1") is False
    await resolver.resolve("arxiv:1", PDF_URL)
    assert await resolver.is_cached("arxiv:1") is True
    assert await resolver.delete("arxiv:1") is True
    assert await resolver.is_cached("arxiv:1") is False


def test_fake_source_satisfies_protocol() -> None:
    assert isinstance(FakeDocumentSource([]), DocumentSource)
