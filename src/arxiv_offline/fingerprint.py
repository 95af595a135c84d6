"""Deterministic cache keys for feed queries."""

from __future__ import annotations

from collections.abc import Iterable

from arxiv_offline.models import FeedQuery

FINGERPRINT_PREFIX = "arxiv"


def fingerprint(categories: Iterable[str], keywords: str | None = None) -> str:
    """Derive the snapshot key for a category set and keyword string.

    Categories are de-duplicated and sorted, so input order never matters.
    Keywords are trimmed and case-folded; a blank string is the same as
    no keywords at all.

    >>> fingerprint({"cs.LG", "cs.AI"}, " Foo ")
    'arxiv:cs.AI,cs.LG:foo'
    """
    cats = ",".join(sorted({c.strip() for c in categories if c and c.strip()}))
    kw = (keywords or "").strip().casefold()
    return f"{FINGERPRINT_PREFIX}:{cats}:{kw}"


def query_fingerprint(query: FeedQuery) -> str:
    """Fingerprint a FeedQuery (max_results does not affect the key)."""
    return fingerprint(query.categories, query.keywords)


__all__ = [
    "fingerprint",
    "query_fingerprint",
]
