"""Async page store: idempotent upserts keyed by URL, deduplicated by content hash.

Upsert decision table (``force=False``):

    existing row?  same hash?  skip_if_exists?  action
    -------------  ----------  ---------------  -------------------------
    no             -           -                insert
    yes            yes         yes              skip (no write)
    yes            yes         no               update fetched_at only
    yes            no          -                full upsert

With ``force=True`` the existence check is bypassed and a full upsert is
always performed.

All SQLite work runs in a worker thread (``asyncio.to_thread``) behind a
lock, so the event loop never blocks and the shared connection is used by
one thread at a time.  Each decision (lookup + write) runs under a single
lock acquisition.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence, TypeVar, Union

from brokercrawl.config import settings
from brokercrawl.db import pages
from brokercrawl.db.connection import get_connection
from brokercrawl.db.migrations import init_db, table_exists
from brokercrawl.db.models import (
    BatchUpsertResult,
    PageLookup,
    PageRecord,
    UpsertResult,
    UpsertStats,
)
from brokercrawl.errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

REVIEW_PAGE_TYPE = "broker_review"


def _upsert_sync(
    conn: sqlite3.Connection,
    record: PageRecord,
    force: bool,
    skip_if_exists: bool,
) -> UpsertResult:
    if not force:
        existing = pages.get_page_hash(conn, record.url)
        if existing is not None:
            row_id, stored_hash = existing
            if stored_hash == record.sha256:
                if skip_if_exists:
                    return UpsertResult(url=record.url, success=True, skipped=True, id=row_id)
                pages.touch_page(conn, record.url, record.fetched_at)
                return UpsertResult(url=record.url, success=True, updated=True, id=row_id)

    row_id = pages.write_page(conn, record)
    return UpsertResult(url=record.url, success=True, upserted=True, id=row_id)


class PageStore:
    """Owns the store connection and the session upsert counters.

    Args:
        conn: An open, initialised connection.  When omitted, one is
            opened against *db_path* and the schema is created.
        db_path: Database path used when *conn* is not given.
        batch_size: Pages per batch in :meth:`upsert_pages`.
        batch_delay: Pause in seconds between batches.
    """

    def __init__(
        self,
        conn: Optional[sqlite3.Connection] = None,
        *,
        db_path: Optional[Union[Path, str]] = None,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
    ) -> None:
        if conn is None:
            try:
                conn = get_connection(db_path)
                init_db(conn)
            except (sqlite3.Error, OSError) as exc:
                raise StoreUnavailable(f"Cannot open page store: {exc}") from exc
        self._conn = conn
        self._lock = threading.Lock()
        self.batch_size = max(1, batch_size or settings.db_batch_size)
        self.batch_delay = settings.db_batch_delay if batch_delay is None else batch_delay
        self.stats = UpsertStats()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Thread hand-off
    # ------------------------------------------------------------------

    def _locked(self, fn: Callable[..., T], *args: Any) -> T:
        with self._lock:
            return fn(self._conn, *args)

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(self._locked, fn, *args)

    # ------------------------------------------------------------------
    # Health / lookups
    # ------------------------------------------------------------------

    async def check_table_exists(self) -> bool:
        """True when the store answers and ``crawled_pages`` exists."""
        try:
            return await self._run(table_exists)
        except sqlite3.Error as exc:
            logger.error("[db] Store check failed: %s", exc)
            return False

    async def get_page_by_url(self, url: str) -> PageLookup:
        try:
            record = await self._run(pages.get_page, url)
        except sqlite3.Error as exc:
            logger.warning("[db] Lookup failed for %s: %s", url, exc)
            return PageLookup(success=False, error=str(exc))
        return PageLookup(success=True, exists=record is not None, record=record)

    async def existing_urls(self, urls: Iterable[str]) -> set[str]:
        """Bulk existence check.  Store errors propagate."""
        return await self._run(pages.existing_urls, list(urls))

    # ------------------------------------------------------------------
    # Upserts
    # ------------------------------------------------------------------

    async def upsert_page(
        self,
        record: PageRecord,
        *,
        force: bool = False,
        skip_if_exists: bool = True,
    ) -> UpsertResult:
        """Store *record* per the decision table.  Failures are returned, not raised."""
        try:
            result = await self._run(_upsert_sync, record, force, skip_if_exists)
        except sqlite3.Error as exc:
            logger.error("[db] Upsert failed for %s: %s", record.url, exc)
            result = UpsertResult(url=record.url, success=False, error=str(exc))
        else:
            logger.debug("[db] %s %s (id=%s)", result.action, record.url, result.id)
        self.stats.record(result)
        return result

    async def upsert_pages(
        self,
        records: Sequence[PageRecord],
        *,
        force: bool = False,
        skip_if_exists: bool = True,
        batch_size: Optional[int] = None,
    ) -> BatchUpsertResult:
        """Upsert *records* in batches, pausing between batches."""
        size = max(1, batch_size or self.batch_size)
        results: list[UpsertResult] = []
        batches = 0
        for start in range(0, len(records), size):
            if batches and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)
            batch = records[start:start + size]
            results.extend(
                await asyncio.gather(
                    *(self.upsert_page(r, force=force, skip_if_exists=skip_if_exists) for r in batch)
                )
            )
            batches += 1
            self.stats.total_batches += 1
            logger.info("[db] Batch %d: %d page(s) processed", batches, len(batch))
        return BatchUpsertResult(results=results, batches=batches)

    # ------------------------------------------------------------------
    # Maintenance / reporting
    # ------------------------------------------------------------------

    async def search_pages(self, **filters: Any) -> list[PageRecord]:
        """See :func:`brokercrawl.db.pages.search_pages` for the filters."""
        return await self._run(lambda conn: pages.search_pages(conn, **filters))

    async def delete_pages(self, urls: Iterable[str]) -> int:
        deleted = await self._run(pages.delete_pages, list(urls))
        logger.info("[db] Deleted %d page(s)", deleted)
        return deleted

    async def get_crawling_stats(self) -> dict[str, Any]:
        """Store-wide totals plus this session's upsert counters."""
        since = (datetime.now(timezone.utc) - timedelta(hours=24)).isoformat()

        def _collect(conn: sqlite3.Connection) -> dict[str, Any]:
            return {
                "total_pages": pages.count_pages(conn),
                "status_counts": pages.status_counts(conn),
                "recent_24h": pages.count_fetched_since(conn, since),
                "review_pages": pages.count_page_type(conn, REVIEW_PAGE_TYPE),
            }

        summary = await self._run(_collect)
        summary["session"] = self.get_stats()
        return summary

    def get_stats(self) -> dict[str, int]:
        return self.stats.as_dict()

    def reset_stats(self) -> None:
        self.stats = UpsertStats()
