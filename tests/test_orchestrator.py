"""Tests for the crawl orchestrator (state machine, resume, failures, stop).

Collaborators are injected: a stub collector returns a fixed URL list, the
fetcher talks to ``respx`` routes and the store is in-memory SQLite.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Callable, Generator, Optional

import httpx
import pytest
import respx

from brokercrawl.config import CrawlOptions
from brokercrawl.crawler.orchestrator import BrokerCrawler, CrawlState
from brokercrawl.db.connection import get_connection
from brokercrawl.db.migrations import init_db
from brokercrawl.db.store import PageStore
from brokercrawl.errors import AlreadyRunning
from brokercrawl.scraper.fetcher import Fetcher
from brokercrawl.scraper.models import CrawlTask, SitemapResult
from brokercrawl.scraper.sitemap import categorize_urls
from brokercrawl.scraper.transports import DirectTransport, Transport

ORIGIN = "https://brokerchooser.com"
REVIEW = f"{ORIGIN}/broker-reviews/etoro-review/"
BLOG = f"{ORIGIN}/blog/first-steps/"
NEWS = f"{ORIGIN}/news/markets/"

REVIEW_HTML = """
<html><head><title>eToro review</title></head>
<body><main>
  <h1>eToro review</h1>
  <div class="rating-value">4.5</div>
  <h2>Fees</h2><p>Low stock fees.</p>
</main></body></html>
"""
BLOG_HTML = "<html><head><title>First steps</title></head><body><main><p>Start here.</p></main></body></html>"
NEWS_HTML = "<html><head><title>Markets</title></head><body><main><p>Markets moved.</p></main></body></html>"


class StubCollector:
    """Returns a fixed URL list, optionally running a hook first."""

    def __init__(self, urls: list[str], hook: Optional[Callable[[], None]] = None) -> None:
        self.urls = urls
        self.hook = hook
        self.calls = 0

    async def collect_all_urls(self, root_url: Optional[str] = None) -> SitemapResult:
        self.calls += 1
        if self.hook is not None:
            self.hook()
        return SitemapResult(
            urls=[CrawlTask(u) for u in self.urls],
            sitemaps_processed=1,
            categories=categorize_urls(self.urls, ORIGIN),
            duration=0.0,
        )


def _options(**overrides) -> CrawlOptions:
    base = {
        "concurrency": 2,
        "retries": 1,
        "delay_ms": 0,
        "sitemap_url": f"{ORIGIN}/sitemap.xml",
    }
    base.update(overrides)
    return CrawlOptions(**base)


def _mock_pages() -> None:
    respx.get(REVIEW).mock(return_value=httpx.Response(200, text=REVIEW_HTML))
    respx.get(BLOG).mock(return_value=httpx.Response(200, text=BLOG_HTML))
    respx.get(NEWS).mock(return_value=httpx.Response(200, text=NEWS_HTML))


class SlowTransport(Transport):
    """Answers every URL with ``BLOG_HTML`` after a short sleep, tracking overlap."""

    def __init__(self, latency: float = 0.02) -> None:
        self.latency = latency
        self.in_flight = 0
        self.peak = 0
        self.calls = 0

    @property
    def name(self) -> str:
        return "slow"

    async def send(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        self.calls += 1
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.latency)
        finally:
            self.in_flight -= 1
        return httpx.Response(200, text=BLOG_HTML)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def store() -> Generator[PageStore, None, None]:
    conn = get_connection(db_path=":memory:")
    init_db(conn)
    page_store = PageStore(conn, batch_delay=0)
    yield page_store
    page_store.close()


@pytest.fixture()
async def fetcher():
    fetcher = Fetcher([DirectTransport()], origin=ORIGIN, retries=1, base_delay=0, max_delay=0)
    yield fetcher
    await fetcher.aclose()


def _crawler(fetcher: Fetcher, store: PageStore, collector: StubCollector, **overrides) -> BrokerCrawler:
    return BrokerCrawler(_options(**overrides), fetcher=fetcher, collector=collector, store=store)


# ---------------------------------------------------------------------------
# Successful runs
# ---------------------------------------------------------------------------

class TestRun:
    async def test_completed_run(self, fetcher: Fetcher, store: PageStore) -> None:
        crawler = _crawler(fetcher, store, StubCollector([REVIEW, BLOG]))
        with respx.mock:
            _mock_pages()
            report = await crawler.run()

        assert report.state == "completed"
        assert report.ok
        assert crawler.state is CrawlState.COMPLETED
        summary = report.summary
        assert summary["total_urls"] == 2
        assert summary["crawled"] == 2
        assert summary["succeeded"] == 2
        assert summary["failed"] == 0
        assert summary["review_pages"] == 1
        assert report.categories["broker-reviews"] == 1
        assert report.db_stats["successful_upserts"] == 2

        lookup = await store.get_page_by_url(REVIEW)
        assert lookup.exists
        assert lookup.record.data["review"]["rating"] == 4.5
        assert lookup.record.meta["page_type"] == "broker_review"

    async def test_second_run_resumes(self, fetcher: Fetcher, store: PageStore) -> None:
        crawler = _crawler(fetcher, store, StubCollector([REVIEW, BLOG]))
        with respx.mock:
            _mock_pages()
            await crawler.run()
            report = await crawler.run()

        assert report.state == "completed"
        assert report.summary["already_stored"] == 2
        assert report.summary["queued_urls"] == 0
        assert report.summary["crawled"] == 0

    async def test_unchanged_pages_are_skipped_without_resume(self, fetcher: Fetcher, store: PageStore) -> None:
        crawler = _crawler(fetcher, store, StubCollector([REVIEW, BLOG]), resumable=False)
        with respx.mock:
            _mock_pages()
            await crawler.run()
            report = await crawler.run()

        assert report.summary["crawled"] == 2
        assert report.summary["skipped"] == 2
        assert report.summary["succeeded"] == 0

    async def test_force_rewrites_stored_pages(self, fetcher: Fetcher, store: PageStore) -> None:
        collector = StubCollector([REVIEW, BLOG])
        with respx.mock:
            _mock_pages()
            await _crawler(fetcher, store, collector).run()
            report = await _crawler(fetcher, store, collector, force=True).run()

        assert report.summary["already_stored"] == 0
        assert report.summary["succeeded"] == 2

    async def test_max_urls_caps_after_resume_filter(self, fetcher: Fetcher, store: PageStore) -> None:
        with respx.mock:
            _mock_pages()
            await _crawler(fetcher, store, StubCollector([REVIEW])).run()
            report = await _crawler(fetcher, store, StubCollector([REVIEW, BLOG, NEWS]), max_urls=1).run()

        assert report.summary["already_stored"] == 1
        assert report.summary["queued_urls"] == 1
        assert report.summary["crawled"] == 1
        assert (await store.get_page_by_url(BLOG)).exists
        assert not (await store.get_page_by_url(NEWS)).exists

    async def test_invalid_page_is_still_stored(self, fetcher: Fetcher, store: PageStore) -> None:
        crawler = _crawler(fetcher, store, StubCollector([BLOG]))
        with respx.mock:
            respx.get(BLOG).mock(return_value=httpx.Response(200, text="<html><body><p></p></body></html>"))
            report = await crawler.run()

        assert report.summary["invalid_pages"] == 1
        assert report.summary["succeeded"] == 1
        assert (await store.get_page_by_url(BLOG)).exists


# ---------------------------------------------------------------------------
# Per-URL failures
# ---------------------------------------------------------------------------

class TestPerUrlFailures:
    async def test_fetch_failure_is_recorded(self, fetcher: Fetcher, store: PageStore) -> None:
        crawler = _crawler(fetcher, store, StubCollector([REVIEW, BLOG]))
        with respx.mock:
            respx.get(REVIEW).mock(return_value=httpx.Response(200, text=REVIEW_HTML))
            respx.get(BLOG).mock(return_value=httpx.Response(404))
            report = await crawler.run()

        assert report.state == "completed"
        assert report.summary["crawled"] == 2
        assert report.summary["succeeded"] == 1
        assert report.summary["failed"] == 1
        assert [e.url for e in report.errors] == [BLOG]
        assert "http_404" in report.errors[0].error

    async def test_off_origin_url_is_recorded(self, fetcher: Fetcher, store: PageStore) -> None:
        crawler = _crawler(fetcher, store, StubCollector(["https://evil.example/page"]))
        report = await crawler.run()

        assert report.summary["failed"] == 1
        assert report.errors[0].url == "https://evil.example/page"

    async def test_unbuildable_url_does_not_abort_run(self, fetcher: Fetcher, store: PageStore) -> None:
        bad = f"{ORIGIN}/blog/a\x7fb/"
        crawler = _crawler(fetcher, store, StubCollector([bad, REVIEW]), concurrency=1)
        with respx.mock:
            review = respx.get(REVIEW).mock(return_value=httpx.Response(200, text=REVIEW_HTML))
            report = await crawler.run()

        assert report.state == "completed"
        assert report.summary["failed"] == 1
        assert report.summary["succeeded"] == 1
        assert report.errors[0].url == bad
        assert "invalid_url" in report.errors[0].error
        assert review.call_count == 1


# ---------------------------------------------------------------------------
# Concurrency and pacing
# ---------------------------------------------------------------------------

class TestConcurrency:
    async def test_in_flight_fetches_never_exceed_concurrency(self, store: PageStore) -> None:
        urls = [f"{ORIGIN}/blog/post-{i}/" for i in range(6)]
        transport = SlowTransport()
        async with Fetcher([transport], origin=ORIGIN, retries=1, base_delay=0, max_delay=0) as fetcher:
            report = await _crawler(fetcher, store, StubCollector(urls), concurrency=2).run()

        assert report.summary["succeeded"] == 6
        assert transport.calls == 6
        assert transport.peak == 2

    async def test_stop_cuts_inter_request_delay_short(self, store: PageStore) -> None:
        urls = [BLOG, NEWS]
        transport = SlowTransport(latency=0)
        async with Fetcher([transport], origin=ORIGIN, retries=1, base_delay=0, max_delay=0) as fetcher:
            crawler = _crawler(fetcher, store, StubCollector(urls), concurrency=1, delay_ms=30000)
            task = asyncio.create_task(crawler.run())
            while crawler.stats.crawled < 1:
                await asyncio.sleep(0.01)
            assert crawler.stop() is True
            report = await asyncio.wait_for(task, timeout=5)

        assert report.state == "stopped"
        assert report.summary["crawled"] == 1
        assert transport.calls == 1


# ---------------------------------------------------------------------------
# Run-level failures
# ---------------------------------------------------------------------------

class TestRunFailures:
    async def test_unreachable_store_fails_run(self, fetcher: Fetcher, store: PageStore) -> None:
        collector = StubCollector([REVIEW])
        store.close()
        report = await _crawler(fetcher, store, collector).run()

        assert report.state == "failed"
        assert not report.ok
        assert report.error
        assert collector.calls == 0

    async def test_empty_discovery_fails_run(self, fetcher: Fetcher, store: PageStore) -> None:
        report = await _crawler(fetcher, store, StubCollector([])).run()

        assert report.state == "failed"
        assert "No URLs" in report.error

    async def test_unexpected_worker_error_fails_run(
        self, fetcher: Fetcher, store: PageStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def _boom(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(store, "upsert_page", _boom)
        crawler = _crawler(fetcher, store, StubCollector([REVIEW]))
        with respx.mock:
            _mock_pages()
            report = await crawler.run()

        assert report.state == "failed"
        assert report.error == "RuntimeError: disk on fire"

    async def test_already_running_raises(self, fetcher: Fetcher, store: PageStore) -> None:
        crawler = _crawler(fetcher, store, StubCollector([REVIEW]))
        crawler.state = CrawlState.RUNNING
        with pytest.raises(AlreadyRunning):
            await crawler.run()


# ---------------------------------------------------------------------------
# Stop / signals
# ---------------------------------------------------------------------------

class TestStop:
    def test_stop_when_idle(self, store: PageStore) -> None:
        crawler = BrokerCrawler(_options(), store=store)
        assert crawler.stop() is False
        assert crawler.state is CrawlState.IDLE

    def test_signal_when_idle_terminates(self, store: PageStore) -> None:
        codes: list[int] = []
        crawler = BrokerCrawler(_options(), store=store, terminate=codes.append)
        crawler.handle_signal(signal.SIGINT)
        assert codes == [0]

    async def test_stop_during_discovery(self, fetcher: Fetcher, store: PageStore) -> None:
        codes: list[int] = []
        crawler = BrokerCrawler(_options(), fetcher=fetcher, store=store, terminate=codes.append)
        crawler._collector = StubCollector(
            [REVIEW, BLOG], hook=lambda: crawler.handle_signal(signal.SIGTERM)
        )
        report = await crawler.run()

        assert codes == []
        assert report.state == "stopped"
        assert report.ok
        assert report.summary["crawled"] == 0

    async def test_stop_finishes_in_flight_url(self, fetcher: Fetcher, store: PageStore) -> None:
        crawler = _crawler(fetcher, store, StubCollector([REVIEW, BLOG, NEWS]), concurrency=1)

        def _first_page(request: httpx.Request) -> httpx.Response:
            crawler.stop()
            return httpx.Response(200, text=REVIEW_HTML)

        with respx.mock:
            respx.get(REVIEW).mock(side_effect=_first_page)
            blog = respx.get(BLOG).mock(return_value=httpx.Response(200, text=BLOG_HTML))
            report = await crawler.run()

        assert crawler.state is CrawlState.STOPPED
        assert report.state == "stopped"
        assert report.summary["crawled"] == 1
        assert report.summary["succeeded"] == 1
        assert blog.call_count == 0
        assert (await store.get_page_by_url(REVIEW)).exists
