"""Streamed document fetch primitive."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx

from arxiv_offline.models import DEFAULT_DOCUMENT_CONTENT_TYPE

DOCUMENT_TIMEOUT = 60
DOCUMENT_USER_AGENT = "arxiv-offline/1.0 (research tool)"


@dataclass(slots=True)
class DocumentStream:
    """An open byte stream. ``total`` is 0 when the length is unknown."""

    total: int
    content_type: str
    chunks: AsyncIterator[bytes]


def _content_length(headers: httpx.Headers) -> int:
    raw = headers.get("content-length")
    if not raw:
        return 0
    try:
        return max(0, int(raw))
    except ValueError:
        return 0


@asynccontextmanager
async def open_document_stream(
    *,
    client: httpx.AsyncClient | None,
    url: str,
    timeout_seconds: int = DOCUMENT_TIMEOUT,
    user_agent: str = DOCUMENT_USER_AGENT,
) -> AsyncIterator[DocumentStream]:
    """Open a GET stream for ``url``; the connection closes when the block exits.

    Raises ``httpx.HTTPStatusError`` for non-success responses.
    """

    @asynccontextmanager
    async def _open(active_client: httpx.AsyncClient) -> AsyncIterator[DocumentStream]:
        async with active_client.stream(
            "GET",
            url,
            headers={"User-Agent": user_agent},
            timeout=timeout_seconds,
            follow_redirects=True,
        ) as response:
            response.raise_for_status()
            yield DocumentStream(
                total=_content_length(response.headers),
                content_type=response.headers.get("content-type")
                or DEFAULT_DOCUMENT_CONTENT_TYPE,
                chunks=response.aiter_bytes(),
            )

    if client is not None:
        async with _open(client) as stream:
            yield stream
    else:
        async with httpx.AsyncClient() as tmp_client, _open(tmp_client) as stream:
            yield stream


__all__ = [
    "DOCUMENT_TIMEOUT",
    "DOCUMENT_USER_AGENT",
    "DocumentStream",
    "open_document_stream",
]
