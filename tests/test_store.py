"""Tests for the page store (schema, decision table, counters, queries).

All tests use an in-memory SQLite database unless they exercise file paths.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Generator

import pytest

from brokercrawl.db.connection import get_connection
from brokercrawl.db.migrations import MIGRATIONS, current_version, init_db, table_exists
from brokercrawl.db.models import PageRecord
from brokercrawl.db.store import PageStore
from brokercrawl.errors import StoreUnavailable
from brokercrawl.scraper.models import BrokerReview, FetchResult, PageMetadata, ParsedPage

ORIGIN = "https://brokerchooser.com"


def _record(
    url: str = f"{ORIGIN}/broker-reviews/etoro/",
    sha: str = "hash-1",
    fetched_at: str = "2024-01-01T00:00:00+00:00",
    html: str = "<html>v1</html>",
    page_type: str = "broker_review",
    status: int = 200,
) -> PageRecord:
    return PageRecord(
        url=url,
        status=status,
        fetched_at=fetched_at,
        sha256=sha,
        html=html,
        text_content="text",
        meta={"title": "eToro review", "page_type": page_type},
        data={},
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def conn() -> Generator[sqlite3.Connection, None, None]:
    connection = get_connection(db_path=":memory:")
    init_db(connection)
    yield connection
    connection.close()


@pytest.fixture()
def store(conn: sqlite3.Connection) -> PageStore:
    return PageStore(conn, batch_delay=0)


def _row_count(conn: sqlite3.Connection) -> int:
    return conn.execute("SELECT COUNT(*) FROM crawled_pages").fetchone()[0]


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class TestSchema:
    def test_table_created(self, conn: sqlite3.Connection) -> None:
        assert table_exists(conn)

    def test_init_is_idempotent(self, conn: sqlite3.Connection) -> None:
        init_db(conn)
        init_db(conn)
        assert current_version(conn) == MIGRATIONS[-1][0]

    def test_url_is_unique(self, conn: sqlite3.Connection) -> None:
        conn.execute("INSERT INTO crawled_pages (url, fetched_at) VALUES ('u', 'now')")
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("INSERT INTO crawled_pages (url, fetched_at) VALUES ('u', 'now')")

    def test_file_store_created(self, tmp_path: Path) -> None:
        db_file = tmp_path / "nested" / "pages.db"
        store = PageStore(db_path=db_file)
        store.close()
        assert db_file.exists()

    def test_unopenable_store_raises(self, tmp_path: Path) -> None:
        with pytest.raises(StoreUnavailable):
            PageStore(db_path=tmp_path)


# ---------------------------------------------------------------------------
# Upsert decision table
# ---------------------------------------------------------------------------

class TestUpsertDecisions:
    async def test_new_page_is_inserted(self, store: PageStore, conn: sqlite3.Connection) -> None:
        result = await store.upsert_page(_record())
        assert result.success and result.upserted
        assert result.action == "upserted"
        assert isinstance(result.id, int)
        assert _row_count(conn) == 1

    async def test_same_hash_with_skip_writes_nothing(self, store: PageStore) -> None:
        first = await store.upsert_page(_record())
        second = await store.upsert_page(_record(fetched_at="2024-02-01T00:00:00+00:00"))

        assert second.success and second.skipped
        assert second.id == first.id
        lookup = await store.get_page_by_url(_record().url)
        assert lookup.record.fetched_at == "2024-01-01T00:00:00+00:00"

    async def test_same_hash_without_skip_touches_timestamp_only(self, store: PageStore) -> None:
        await store.upsert_page(_record())
        result = await store.upsert_page(
            _record(fetched_at="2024-02-01T00:00:00+00:00", html="<html>markup only</html>"),
            skip_if_exists=False,
        )

        assert result.updated and not result.upserted
        record = (await store.get_page_by_url(_record().url)).record
        assert record.fetched_at == "2024-02-01T00:00:00+00:00"
        assert record.html == "<html>v1</html>"

    async def test_changed_hash_is_full_upsert(self, store: PageStore, conn: sqlite3.Connection) -> None:
        first = await store.upsert_page(_record())
        result = await store.upsert_page(_record(sha="hash-2", html="<html>v2</html>"))

        assert result.upserted
        assert result.id == first.id
        record = (await store.get_page_by_url(_record().url)).record
        assert record.sha256 == "hash-2"
        assert record.html == "<html>v2</html>"
        assert _row_count(conn) == 1

    async def test_force_bypasses_existence_check(self, store: PageStore) -> None:
        await store.upsert_page(_record())
        result = await store.upsert_page(_record(html="<html>forced</html>"), force=True)

        assert result.upserted
        record = (await store.get_page_by_url(_record().url)).record
        assert record.html == "<html>forced</html>"

    async def test_repeated_upserts_never_duplicate(self, store: PageStore, conn: sqlite3.Connection) -> None:
        for _ in range(3):
            await store.upsert_page(_record())
            await store.upsert_page(_record(), skip_if_exists=False)
        assert _row_count(conn) == 1

    async def test_store_error_is_returned(self, store: PageStore, conn: sqlite3.Connection) -> None:
        conn.close()
        result = await store.upsert_page(_record())
        assert result.success is False
        assert result.error
        assert store.get_stats()["failed_upserts"] == 1


# ---------------------------------------------------------------------------
# Lookups, counters, batches
# ---------------------------------------------------------------------------

class TestLookupsAndStats:
    async def test_missing_page_is_not_an_error(self, store: PageStore) -> None:
        lookup = await store.get_page_by_url(f"{ORIGIN}/nothing")
        assert lookup.success is True
        assert lookup.exists is False
        assert lookup.record is None

    async def test_lookup_failure_is_reported(self, store: PageStore, conn: sqlite3.Connection) -> None:
        conn.close()
        lookup = await store.get_page_by_url(f"{ORIGIN}/x")
        assert lookup.success is False
        assert lookup.error

    async def test_check_table_exists(self, store: PageStore, conn: sqlite3.Connection) -> None:
        assert await store.check_table_exists() is True
        conn.close()
        assert await store.check_table_exists() is False

    async def test_existing_urls(self, store: PageStore) -> None:
        await store.upsert_page(_record(url=f"{ORIGIN}/a"))
        found = await store.existing_urls([f"{ORIGIN}/a", f"{ORIGIN}/b"])
        assert found == {f"{ORIGIN}/a"}

    async def test_counters_and_reset(self, store: PageStore) -> None:
        await store.upsert_page(_record())
        await store.upsert_page(_record())
        await store.upsert_page(_record(), skip_if_exists=False)

        stats = store.get_stats()
        assert stats["total_upserts"] == 3
        assert stats["successful_upserts"] == 2
        assert stats["skipped_upserts"] == 1
        assert stats["failed_upserts"] == 0

        store.reset_stats()
        assert store.get_stats()["total_upserts"] == 0

    async def test_batches(self, store: PageStore, conn: sqlite3.Connection) -> None:
        records = [_record(url=f"{ORIGIN}/p{i}") for i in range(5)]
        result = await store.upsert_pages(records, batch_size=2)

        assert result.batches == 3
        assert result.successful == 5
        assert store.get_stats()["total_batches"] == 3
        assert _row_count(conn) == 5

        again = await store.upsert_pages(records, batch_size=2)
        assert again.skipped == 5
        assert again.failed == 0


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

class TestQueries:
    async def _seed(self, store: PageStore) -> None:
        await store.upsert_page(_record(url=f"{ORIGIN}/broker-reviews/etoro/", fetched_at="2024-01-01T00:00:00+00:00"))
        await store.upsert_page(
            _record(url=f"{ORIGIN}/blog/intro/", page_type="blog", fetched_at="2024-01-03T00:00:00+00:00")
        )
        await store.upsert_page(
            _record(url=f"{ORIGIN}/old/", page_type="page", status=404, fetched_at="2024-01-02T00:00:00+00:00")
        )

    async def test_search_filters(self, store: PageStore) -> None:
        await self._seed(store)

        everything = await store.search_pages()
        assert [r.url for r in everything] == [
            f"{ORIGIN}/blog/intro/",
            f"{ORIGIN}/old/",
            f"{ORIGIN}/broker-reviews/etoro/",
        ]
        assert [r.url for r in await store.search_pages(query="blog")] == [f"{ORIGIN}/blog/intro/"]
        assert [r.url for r in await store.search_pages(page_type="broker_review")] == [
            f"{ORIGIN}/broker-reviews/etoro/"
        ]
        assert [r.url for r in await store.search_pages(status=404)] == [f"{ORIGIN}/old/"]
        ranged = await store.search_pages(date_from="2024-01-02", date_to="2024-01-02T23:59:59")
        assert [r.url for r in ranged] == [f"{ORIGIN}/old/"]
        assert len(await store.search_pages(limit=1, offset=1)) == 1

    async def test_delete(self, store: PageStore, conn: sqlite3.Connection) -> None:
        await self._seed(store)
        deleted = await store.delete_pages([f"{ORIGIN}/old/", f"{ORIGIN}/missing/"])
        assert deleted == 1
        assert _row_count(conn) == 2

    async def test_crawling_stats(self, store: PageStore) -> None:
        await self._seed(store)
        await store.upsert_page(_record(url=f"{ORIGIN}/fresh/", fetched_at="2999-01-01T00:00:00+00:00"))

        stats = await store.get_crawling_stats()
        assert stats["total_pages"] == 4
        assert stats["status_counts"] == {"200": 3, "404": 1}
        assert stats["review_pages"] == 2
        assert stats["recent_24h"] == 1
        assert stats["session"]["total_upserts"] == 4


# ---------------------------------------------------------------------------
# Record building
# ---------------------------------------------------------------------------

class TestPageRecordFromCrawl:
    def test_meta_and_data(self) -> None:
        url = f"{ORIGIN}/broker-reviews/etoro/"
        parsed = ParsedPage(
            url=url,
            title="eToro",
            page_type="broker_review",
            metadata=PageMetadata(title="eToro", page_type="broker_review"),
            text_content="body",
            content_hash="h",
            review=BrokerReview(broker_name="Etoro", broker_slug="etoro", rating=8.1),
        )
        fetched = FetchResult(
            url=url, success=True, status=200, attempts=1, duration=0.1,
            method="direct", content="<html>body</html>", content_hash="raw",
        )
        record = PageRecord.from_crawl(parsed, fetched)

        assert record.sha256 == "h"
        assert record.html == "<html>body</html>"
        assert record.status == 200
        assert record.fetched_at == fetched.fetched_at
        assert record.meta["page_type"] == "broker_review"
        assert record.meta["fetch_method"] == "direct"
        assert record.data["review"]["rating"] == 8.1
        assert record.summary()["title"] == "eToro"
