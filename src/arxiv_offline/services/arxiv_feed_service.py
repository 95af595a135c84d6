"""arXiv API feed source: query construction, page fetch, and Atom normalization."""

from __future__ import annotations

import logging
import re
import time
import xml.etree.ElementTree as ET
from collections.abc import Callable, Iterable

import httpx

from arxiv_offline.errors import UpstreamError, ValidationError
from arxiv_offline.models import DEFAULT_STATUS, FeedPage, FeedQuery, Paper

logger = logging.getLogger(__name__)

ARXIV_API_URL = "https://export.arxiv.org/api/query"
ARXIV_API_TIMEOUT = 30
ARXIV_API_USER_AGENT = "arxiv-offline/1.0 (research tool)"

ATOM_NS = {
    "atom": "http://www.w3.org/2005/Atom",
    "arxiv": "http://arxiv.org/schemas/atom",
    "opensearch": "http://a9.com/-/spec/opensearch/1.1/",
}

_ARXIV_ABS_ID_PATTERN = re.compile(r"arxiv\.org/abs/([^\s?]+)")
_WHITESPACE = re.compile(r"\s+")


def clean_text(text: str) -> str:
    """Collapse runs of whitespace and trim."""
    return _WHITESPACE.sub(" ", text).strip()


def extract_arxiv_id(url: str) -> str:
    """Extract the versioned arXiv id from an abs URL.

    "http://arxiv.org/abs/2312.12345v1" -> "2312.12345v1". Anything that
    does not look like an abs URL is returned unchanged.
    """
    match = _ARXIV_ABS_ID_PATTERN.search(url)
    return match.group(1) if match else url


def derive_pdf_url(abs_url: str) -> str:
    """Build the PDF URL for an abs URL."""
    return abs_url.replace("/abs/", "/pdf/") + ".pdf"


def _keyword_terms(keywords: str) -> list[str]:
    terms = []
    for raw in keywords.split(","):
        term = raw.strip().replace('"', "")
        if not term:
            continue
        terms.append(f'all:"{term}"' if " " in term else f"all:{term}")
    return terms


def build_arxiv_query(categories: Iterable[str], keywords: str = "") -> str:
    """Build the ``search_query`` value for a category set and keyword list.

    Categories are OR-ed, comma-separated keywords are OR-ed, and the two
    groups are AND-ed. Multi-word keywords become phrase searches.
    """
    parts: list[str] = []

    cats = [c.strip() for c in categories if c and c.strip()]
    if cats:
        cat_query = " OR ".join(f"cat:{c}" for c in cats)
        parts.append(f"({cat_query})" if len(cats) > 1 else cat_query)

    terms = _keyword_terms(keywords or "")
    if terms:
        kw_query = " OR ".join(terms)
        parts.append(f"({kw_query})" if len(terms) > 1 else kw_query)

    return " AND ".join(parts)


def build_request_params(query: FeedQuery) -> dict[str, str | int]:
    """Request parameters for the first page of a feed query."""
    return {
        "search_query": build_arxiv_query(query.categories, query.keywords),
        "start": 0,
        "max_results": query.max_results,
        "sortBy": "submittedDate",
        "sortOrder": "descending",
    }


def _atom_text(node: ET.Element, path: str) -> str:
    found = node.find(path, ATOM_NS)
    if found is None or found.text is None:
        return ""
    return found.text.strip()


def _parse_int(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        return 0


def _pdf_link(entry: ET.Element) -> str:
    for link in entry.findall("atom:link", ATOM_NS):
        if link.get("title") == "pdf" or link.get("type") == "application/pdf":
            href = link.get("href") or ""
            if href:
                return href
    return ""


def _normalize_entry(entry: ET.Element, now: float) -> Paper | None:
    abs_url = _atom_text(entry, "atom:id")
    if not abs_url:
        return None
    arxiv_id = extract_arxiv_id(abs_url)

    authors = [
        clean_text(name.text)
        for name in entry.findall("atom:author/atom:name", ATOM_NS)
        if name.text and name.text.strip()
    ]

    categories: list[str] = []
    for category in entry.findall("atom:category", ATOM_NS):
        term = (category.get("term") or "").strip()
        if term and term not in categories:
            categories.append(term)

    primary_node = entry.find("arxiv:primary_category", ATOM_NS)
    primary = (primary_node.get("term") or "").strip() if primary_node is not None else ""

    return Paper(
        id=f"arxiv:{arxiv_id}",
        title=clean_text(_atom_text(entry, "atom:title")),
        url=abs_url,
        arxiv_id=arxiv_id,
        authors=authors,
        abstract=clean_text(_atom_text(entry, "atom:summary")),
        published_at=_atom_text(entry, "atom:published"),
        revised_at=_atom_text(entry, "atom:updated"),
        pdf_url=_pdf_link(entry) or derive_pdf_url(abs_url),
        primary_category=primary or (categories[0] if categories else ""),
        categories=categories,
        created_at=now,
        updated_at=now,
        status=DEFAULT_STATUS,
        bookmarked=False,
    )


def parse_feed(xml_text: str, *, now: float | None = None) -> FeedPage:
    """Normalize an arXiv Atom response into a FeedPage.

    Raises:
        UpstreamError: The payload is not an Atom feed.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise UpstreamError("Invalid response from arXiv API") from exc
    if root.tag != f"{{{ATOM_NS['atom']}}}feed":
        raise UpstreamError("Invalid response from arXiv API")

    stamp = time.time() if now is None else now
    papers: list[Paper] = []
    seen_ids: set[str] = set()
    for entry in root.findall("atom:entry", ATOM_NS):
        paper = _normalize_entry(entry, stamp)
        if paper is None or paper.id in seen_ids:
            continue
        seen_ids.add(paper.id)
        papers.append(paper)

    return FeedPage(
        papers=papers,
        total_results=_parse_int(_atom_text(root, "opensearch:totalResults")),
        start_index=_parse_int(_atom_text(root, "opensearch:startIndex")),
        items_per_page=_parse_int(_atom_text(root, "opensearch:itemsPerPage")),
    )


async def fetch_feed_page(
    *,
    client: httpx.AsyncClient | None,
    query: FeedQuery,
    timeout_seconds: int = ARXIV_API_TIMEOUT,
    user_agent: str = ARXIV_API_USER_AGENT,
    now: Callable[[], float] = time.time,
) -> FeedPage:
    """Fetch and normalize the first page of results for a feed query.

    Raises:
        ValidationError: The category set is empty (no request is made).
        UpstreamError: Transport failure, non-success status, or bad payload.
    """
    if not any(c.strip() for c in query.categories):
        raise ValidationError("Please select at least one category")

    params = build_request_params(query)
    headers = {"User-Agent": user_agent}
    logger.info("Fetching arXiv feed: %s", params["search_query"])

    try:
        if client is not None:
            response = await client.get(
                ARXIV_API_URL, params=params, headers=headers, timeout=timeout_seconds
            )
        else:
            async with httpx.AsyncClient() as tmp_client:
                response = await tmp_client.get(
                    ARXIV_API_URL, params=params, headers=headers, timeout=timeout_seconds
                )
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code
        raise UpstreamError(f"arXiv API returned {status}", status_code=status) from exc
    except httpx.HTTPError as exc:
        raise UpstreamError(f"Failed to fetch from arXiv: {exc}") from exc

    return parse_feed(response.text, now=now())


__all__ = [
    "ARXIV_API_TIMEOUT",
    "ARXIV_API_URL",
    "ARXIV_API_USER_AGENT",
    "build_arxiv_query",
    "build_request_params",
    "clean_text",
    "derive_pdf_url",
    "extract_arxiv_id",
    "fetch_feed_page",
    "parse_feed",
]
