"""Durable SQLite storage for item records and feed snapshots.

The store is deliberately dumb: ``put_item`` is a whole-record replace and
merging of user state is the caller's job (see ``feed_sync``). Every
SQLite or filesystem failure surfaces as ``StorageError``; nothing is
retried here.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any

from platformdirs import user_data_dir

from arxiv_offline.errors import StorageError
from arxiv_offline.models import (
    CONFIG_APP_NAME,
    FeedMeta,
    FeedSnapshot,
    Paper,
    UpsertResult,
)

logger = logging.getLogger(__name__)

RECORDS_DB_FILENAME = "records.db"

_PAPER_FIELDS = frozenset(f.name for f in fields(Paper))

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS items ("
    "  id TEXT PRIMARY KEY,"
    "  payload_json TEXT NOT NULL,"
    "  bookmarked INTEGER NOT NULL DEFAULT 0,"
    "  bookmarked_at REAL,"
    "  updated_at REAL NOT NULL DEFAULT 0"
    ")",
    "CREATE INDEX IF NOT EXISTS items_by_updated ON items (updated_at)",
    "CREATE TABLE IF NOT EXISTS feed_snapshots ("
    "  fingerprint TEXT PRIMARY KEY,"
    "  item_ids_json TEXT NOT NULL,"
    "  meta_json TEXT NOT NULL,"
    "  last_refresh REAL"
    ")",
)


def get_records_db_path(data_dir: Path | None = None) -> Path:
    """Get the path to the record store database."""
    base = data_dir if data_dir is not None else Path(user_data_dir(CONFIG_APP_NAME))
    return base / RECORDS_DB_FILENAME


def _paper_to_json(paper: Paper) -> str:
    """Serialize a Paper to a JSON string."""
    return json.dumps(asdict(paper), ensure_ascii=False)


def _json_to_paper(payload: str) -> Paper | None:
    """Deserialize a JSON string to a Paper, ignoring unknown keys."""
    try:
        data = json.loads(payload)
        return Paper(**{k: v for k, v in data.items() if k in _PAPER_FIELDS})
    except (TypeError, AttributeError, json.JSONDecodeError):
        logger.warning("Failed to deserialize item record", exc_info=True)
        return None


def _meta_to_json(meta: FeedMeta) -> str:
    return json.dumps(
        {
            "categories": meta.categories,
            "keywords": meta.keywords,
            "last_refresh": meta.last_refresh,
            "total_results": meta.total_results,
        },
        ensure_ascii=False,
    )


def _json_to_meta(payload: str) -> FeedMeta:
    try:
        d: dict[str, Any] = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Failed to deserialize feed metadata", exc_info=True)
        return FeedMeta()
    if not isinstance(d, dict):
        return FeedMeta()
    last_refresh = d.get("last_refresh")
    total = d.get("total_results")
    categories = d.get("categories")
    keywords = d.get("keywords")
    return FeedMeta(
        categories=[c for c in categories if isinstance(c, str)]
        if isinstance(categories, list)
        else [],
        keywords=keywords if isinstance(keywords, str) else "",
        last_refresh=float(last_refresh) if isinstance(last_refresh, int | float) else None,
        total_results=total if isinstance(total, int) else 0,
    )


class RecordStore:
    """Item records keyed by id and feed snapshots keyed by fingerprint."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._initialized = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, always close.

        ``immediate`` takes the write lock before the first read so a
        read-modify-write cannot interleave with another writer.
        """
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._db_path))
        except (sqlite3.Error, OSError) as exc:
            raise StorageError(f"Could not open record store: {exc}") from exc
        try:
            with conn:
                if not self._initialized:
                    for statement in _SCHEMA:
                        conn.execute(statement)
                    self._initialized = True
                if immediate:
                    conn.execute("BEGIN IMMEDIATE")
                yield conn
        except sqlite3.Error as exc:
            raise StorageError(f"Record store operation failed: {exc}") from exc
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def get_item(self, item_id: str) -> Paper | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM items WHERE id = ?", (item_id,)
            ).fetchone()
        if row is None:
            return None
        return _json_to_paper(row[0])

    def get_items(self, item_ids: Iterable[str]) -> dict[str, Paper]:
        """Load several records at once; missing ids are simply absent."""
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return {}
        result: dict[str, Paper] = {}
        with self._connect() as conn:
            # Chunk to stay under SQLite's bound-parameter limit.
            for i in range(0, len(ids), 500):
                chunk = ids[i : i + 500]
                placeholders = ",".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT id, payload_json FROM items WHERE id IN ({placeholders})",
                    chunk,
                ).fetchall()
                for item_id, payload in rows:
                    paper = _json_to_paper(payload)
                    if paper is not None:
                        result[item_id] = paper
        return result

    @staticmethod
    def _write_item(conn: sqlite3.Connection, record: Paper) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO items "
            "(id, payload_json, bookmarked, bookmarked_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                record.id,
                _paper_to_json(record),
                int(record.bookmarked),
                record.bookmarked_at,
                record.updated_at,
            ),
        )

    def put_item(self, record: Paper) -> None:
        """Replace the whole record (last write wins)."""
        with self._connect() as conn:
            self._write_item(conn, record)

    def upsert_item(self, record: Paper) -> UpsertResult:
        """Write the record and report whether it replaced an existing one."""
        with self._connect() as conn:
            exists = (
                conn.execute("SELECT 1 FROM items WHERE id = ?", (record.id,)).fetchone()
                is not None
            )
            self._write_item(conn, record)
        return UpsertResult.UPDATED if exists else UpsertResult.INSERTED

    def update_item(
        self,
        item_id: str,
        mutate: Callable[[Paper], Paper],
        fallback: Paper | None = None,
    ) -> tuple[Paper, UpsertResult] | None:
        """Apply ``mutate`` to the stored record and write the result.

        When no record exists, ``fallback`` (e.g. the in-memory copy of a
        feed item) is mutated and inserted instead. Returns None when
        there is neither.
        """
        with self._connect(immediate=True) as conn:
            row = conn.execute(
                "SELECT payload_json FROM items WHERE id = ?", (item_id,)
            ).fetchone()
            current = _json_to_paper(row[0]) if row is not None else None
            if current is not None:
                branch = UpsertResult.UPDATED
            elif fallback is not None:
                current = fallback
                branch = UpsertResult.INSERTED
            else:
                return None
            updated = mutate(current)
            self._write_item(conn, updated)
        return updated, branch

    def delete_item(self, item_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM items WHERE id = ?", (item_id,))
        return cursor.rowcount > 0

    def list_items(self) -> list[Paper]:
        """All records, most recently updated first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT payload_json FROM items ORDER BY updated_at DESC, id"
            ).fetchall()
        return [p for (payload,) in rows if (p := _json_to_paper(payload)) is not None]

    def list_bookmarked(self) -> list[Paper]:
        """Bookmarked records, most recently bookmarked first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT payload_json FROM items WHERE bookmarked = 1 "
                "ORDER BY COALESCE(bookmarked_at, 0) DESC, updated_at DESC, id"
            ).fetchall()
        return [p for (payload,) in rows if (p := _json_to_paper(payload)) is not None]

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def get_snapshot(self, fingerprint: str) -> FeedSnapshot | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT item_ids_json, meta_json FROM feed_snapshots WHERE fingerprint = ?",
                (fingerprint,),
            ).fetchone()
        if row is None:
            return None
        ids_json, meta_json = row
        try:
            ids = json.loads(ids_json)
        except json.JSONDecodeError:
            logger.warning("Corrupt snapshot ids for %s", fingerprint, exc_info=True)
            ids = []
        if not isinstance(ids, list):
            ids = []
        return FeedSnapshot(
            fingerprint=fingerprint,
            item_ids=[i for i in ids if isinstance(i, str)],
            meta=_json_to_meta(meta_json),
        )

    @staticmethod
    def _write_snapshot(
        conn: sqlite3.Connection, fingerprint: str, item_ids: list[str], meta: FeedMeta
    ) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO feed_snapshots "
            "(fingerprint, item_ids_json, meta_json, last_refresh) VALUES (?, ?, ?, ?)",
            (fingerprint, json.dumps(item_ids), _meta_to_json(meta), meta.last_refresh),
        )

    def put_snapshot(self, fingerprint: str, item_ids: list[str], meta: FeedMeta) -> None:
        """Replace the snapshot for a fingerprint."""
        with self._connect() as conn:
            self._write_snapshot(conn, fingerprint, list(item_ids), meta)

    def merge_feed(
        self,
        fingerprint: str,
        incoming: list[Paper],
        meta: FeedMeta,
        merge: Callable[[Paper | None, Paper], Paper],
    ) -> list[Paper]:
        """Merge fetched records against stored ones and replace the snapshot.

        ``merge(existing, incoming)`` decides the written record; it runs
        inside one write transaction together with the reads, so a user
        action written concurrently is never lost.
        """
        with self._connect(immediate=True) as conn:
            existing: dict[str, Paper] = {}
            ids = [p.id for p in incoming]
            for i in range(0, len(ids), 500):
                chunk = ids[i : i + 500]
                placeholders = ",".join("?" for _ in chunk)
                for item_id, payload in conn.execute(
                    f"SELECT id, payload_json FROM items WHERE id IN ({placeholders})",
                    chunk,
                ):
                    paper = _json_to_paper(payload)
                    if paper is not None:
                        existing[item_id] = paper
            merged = [merge(existing.get(p.id), p) for p in incoming]
            for record in merged:
                self._write_item(conn, record)
            self._write_snapshot(conn, fingerprint, [r.id for r in merged], meta)
        logger.debug(
            "Merged snapshot %s: %d items, %d already stored",
            fingerprint,
            len(merged),
            len(existing),
        )
        return merged

    def load_feed(self, fingerprint: str) -> tuple[FeedSnapshot | None, list[Paper]]:
        """Read a snapshot and hydrate its records in snapshot order."""
        snapshot = self.get_snapshot(fingerprint)
        if snapshot is None:
            return None, []
        by_id = self.get_items(snapshot.item_ids)
        missing = [i for i in snapshot.item_ids if i not in by_id]
        if missing:
            logger.info(
                "Snapshot %s references %d missing records", fingerprint, len(missing)
            )
        return snapshot, [by_id[i] for i in snapshot.item_ids if i in by_id]


__all__ = [
    "RECORDS_DB_FILENAME",
    "RecordStore",
    "get_records_db_path",
]
