"""CRUD operations for the ``crawled_pages`` table.

Plain synchronous functions over an open connection.  The async
:class:`~brokercrawl.db.store.PageStore` calls these from a worker thread.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Any, Iterable, Optional

from brokercrawl.db.models import PageRecord
from brokercrawl.scraper.models import utc_now_iso

# SQLite's default limit on bound parameters is 999 on older builds.
_IN_CHUNK = 500


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _row_to_record(row: sqlite3.Row) -> PageRecord:
    return PageRecord(
        id=row["id"],
        url=row["url"],
        status=row["status"],
        fetched_at=row["fetched_at"],
        sha256=row["sha256"],
        html=row["html"],
        text_content=row["text_content"],
        meta=json.loads(row["meta"] or "{}"),
        data=json.loads(row["data"] or "{}"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _chunks(items: list[str], size: int) -> Iterable[list[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_page(conn: sqlite3.Connection, url: str) -> Optional[PageRecord]:
    """Fetch a page by URL.  Returns ``None`` if not found."""
    row = conn.execute(
        "SELECT * FROM crawled_pages WHERE url = ?", (url,)
    ).fetchone()
    return _row_to_record(row) if row else None


def get_page_hash(conn: sqlite3.Connection, url: str) -> Optional[tuple[int, Optional[str]]]:
    """Return ``(id, sha256)`` for *url*, or ``None`` when absent."""
    row = conn.execute(
        "SELECT id, sha256 FROM crawled_pages WHERE url = ?", (url,)
    ).fetchone()
    return (row["id"], row["sha256"]) if row else None


def existing_urls(conn: sqlite3.Connection, urls: Iterable[str]) -> set[str]:
    """Subset of *urls* already stored."""
    found: set[str] = set()
    for chunk in _chunks(list(dict.fromkeys(urls)), _IN_CHUNK):
        placeholders = ", ".join("?" for _ in chunk)
        rows = conn.execute(
            f"SELECT url FROM crawled_pages WHERE url IN ({placeholders})", chunk
        ).fetchall()
        found.update(r["url"] for r in rows)
    return found


def search_pages(
    conn: sqlite3.Connection,
    query: Optional[str] = None,
    status: Optional[int] = None,
    page_type: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[PageRecord]:
    """Filter pages, newest ``fetched_at`` first.

    Args:
        query: Case-insensitive substring of the URL or the stored title.
        status: Exact HTTP status.
        page_type: ``meta.page_type`` value, e.g. ``broker_review``.
        date_from: Inclusive lower bound on ``fetched_at`` (ISO-8601).
        date_to: Inclusive upper bound on ``fetched_at`` (ISO-8601).
    """
    clauses: list[str] = []
    params: list[Any] = []
    if query:
        clauses.append("(url LIKE ? OR json_extract(meta, '$.title') LIKE ?)")
        like = f"%{query}%"
        params.extend([like, like])
    if status is not None:
        clauses.append("status = ?")
        params.append(status)
    if page_type:
        clauses.append("json_extract(meta, '$.page_type') = ?")
        params.append(page_type)
    if date_from:
        clauses.append("fetched_at >= ?")
        params.append(date_from)
    if date_to:
        clauses.append("fetched_at <= ?")
        params.append(date_to)

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT * FROM crawled_pages {where} ORDER BY fetched_at DESC, id DESC LIMIT ? OFFSET ?",
        (*params, limit, offset),
    ).fetchall()
    return [_row_to_record(r) for r in rows]


def count_pages(conn: sqlite3.Connection) -> int:
    return conn.execute("SELECT COUNT(*) FROM crawled_pages").fetchone()[0]


def status_counts(conn: sqlite3.Connection) -> dict[str, int]:
    rows = conn.execute(
        "SELECT status, COUNT(*) AS n FROM crawled_pages GROUP BY status ORDER BY status"
    ).fetchall()
    return {str(r["status"]): r["n"] for r in rows}


def count_fetched_since(conn: sqlite3.Connection, since: str) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM crawled_pages WHERE fetched_at >= ?", (since,)
    ).fetchone()[0]


def count_page_type(conn: sqlite3.Connection, page_type: str) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM crawled_pages WHERE json_extract(meta, '$.page_type') = ?",
        (page_type,),
    ).fetchone()[0]


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def write_page(conn: sqlite3.Connection, record: PageRecord) -> int:
    """Insert *record*, or overwrite every column of the row with its URL.

    Returns:
        The row id.
    """
    now = utc_now_iso()
    with conn:
        conn.execute(
            """
            INSERT INTO crawled_pages
                (url, status, fetched_at, sha256, html, text_content, meta, data, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(url) DO UPDATE SET
                status       = excluded.status,
                fetched_at   = excluded.fetched_at,
                sha256       = excluded.sha256,
                html         = excluded.html,
                text_content = excluded.text_content,
                meta         = excluded.meta,
                data         = excluded.data,
                updated_at   = excluded.updated_at
            """,
            (
                record.url,
                record.status,
                record.fetched_at,
                record.sha256,
                record.html,
                record.text_content,
                record.meta_json(),
                record.data_json(),
                now,
            ),
        )
    row = conn.execute(
        "SELECT id FROM crawled_pages WHERE url = ?", (record.url,)
    ).fetchone()
    return row["id"]


def touch_page(conn: sqlite3.Connection, url: str, fetched_at: str) -> None:
    """Update only ``fetched_at`` (and ``updated_at``) for *url*."""
    with conn:
        conn.execute(
            "UPDATE crawled_pages SET fetched_at = ?, updated_at = ? WHERE url = ?",
            (fetched_at, utc_now_iso(), url),
        )


def delete_pages(conn: sqlite3.Connection, urls: Iterable[str]) -> int:
    """Delete the rows for *urls*.  Returns the number of rows removed."""
    deleted = 0
    with conn:
        for chunk in _chunks(list(dict.fromkeys(urls)), _IN_CHUNK):
            placeholders = ", ".join("?" for _ in chunk)
            cur = conn.execute(
                f"DELETE FROM crawled_pages WHERE url IN ({placeholders})", chunk
            )
            deleted += cur.rowcount
    return deleted
