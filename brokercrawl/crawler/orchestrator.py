"""Crawl orchestrator — sitemap → resume filter → fetch/parse/persist workers.

State machine for one crawler instance::

    IDLE → RUNNING → COMPLETED
                   → STOPPING → STOPPED
                   → FAILED

Concurrency is a fixed pool of worker tasks pulling URLs from an
``asyncio.Queue``.  A per-instance ``asyncio.Event`` is the stop token:
workers check it before claiming the next URL, so a URL already in flight
is always finished.  All run state lives on the instance, so several
crawlers can coexist in one process.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from enum import Enum
from typing import Callable, Optional

from brokercrawl.config import CrawlOptions, settings
from brokercrawl.crawler.stats import CrawlReport, CrawlStats
from brokercrawl.db.models import PageRecord
from brokercrawl.db.store import PageStore
from brokercrawl.errors import (
    AlreadyRunning,
    CrawlerError,
    DiscoveryError,
    DomainViolation,
    StoreUnavailable,
)
from brokercrawl.scraper.fetcher import Fetcher
from brokercrawl.scraper.parser import parse_page, validate_parsed_data
from brokercrawl.scraper.sitemap import SitemapCollector

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 10


class CrawlState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"


class BrokerCrawler:
    """Drive one crawl at a time over the target site's sitemap.

    Collaborators can be injected (tests do); otherwise a :class:`Fetcher`,
    :class:`SitemapCollector` and :class:`PageStore` are built from the
    options and settings, and closed again when the run ends.

    Args:
        options: Resolved run options.  Defaults to ``CrawlOptions.resolve()``.
        fetcher: Fetch layer.
        collector: URL discovery.
        store: Page store.
        terminate: Called with an exit code when a stop signal arrives and
            no run is active.  Defaults to :func:`os._exit`.
    """

    def __init__(
        self,
        options: Optional[CrawlOptions] = None,
        *,
        fetcher: Optional[Fetcher] = None,
        collector: Optional[SitemapCollector] = None,
        store: Optional[PageStore] = None,
        terminate: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.options = options or CrawlOptions.resolve()
        self._fetcher = fetcher
        self._collector = collector
        self._store = store
        self._terminate = terminate or os._exit
        self.state = CrawlState.IDLE
        self.stats = CrawlStats(max_errors=settings.max_recorded_errors)
        self.categories: dict[str, int] = {}
        self._stop_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self.state in (CrawlState.RUNNING, CrawlState.STOPPING)

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> bool:
        """Ask an active run to stop after in-flight URLs finish.

        Returns:
            ``True`` if a run was active, ``False`` otherwise.
        """
        if not self.is_running:
            return False
        self._stop_event.set()
        if self.state is CrawlState.RUNNING:
            self.state = CrawlState.STOPPING
            logger.warning("[crawl] Stop requested; finishing in-flight pages")
        return True

    def handle_signal(self, signum: int) -> None:
        """SIGINT/SIGTERM handler: stop an active run, or exit when idle."""
        name = signal.Signals(signum).name
        if self.stop():
            logger.warning("[crawl] Received %s", name)
            return
        logger.warning("[crawl] Received %s with no active run; exiting", name)
        self._terminate(0)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self) -> CrawlReport:
        """Execute one crawl and return its report.

        Run failures (store unreachable, empty discovery, an unexpected
        error escaping a worker) are reported with state ``failed``.

        Raises:
            AlreadyRunning: This instance is already running.
        """
        if self.is_running:
            raise AlreadyRunning("A crawl is already running on this instance")

        self.state = CrawlState.RUNNING
        self._stop_event = asyncio.Event()
        self.stats = CrawlStats(max_errors=settings.max_recorded_errors)
        self.categories = {}
        self.stats.start()
        logger.info("[crawl] Starting run with options %s", self.options.to_dict())

        fetcher = self._fetcher or Fetcher(
            timeout=self.options.timeout, retries=self.options.retries
        )
        store: Optional[PageStore] = self._store
        error: Optional[str] = None

        try:
            if store is None:
                store = PageStore()
            await self._verify_store(store)

            urls = await self._discover(fetcher)
            if not self.stop_requested:
                urls = await self._filter_existing(store, urls)
            if self.options.max_urls is not None:
                urls = urls[: self.options.max_urls]
            self.stats.queued_urls = len(urls)

            if not self.stop_requested:
                await self._crawl_all(urls, fetcher, store)

            self.state = CrawlState.STOPPED if self.stop_requested else CrawlState.COMPLETED
        except CrawlerError as exc:
            error = str(exc)
            self.state = CrawlState.FAILED
            logger.error("[crawl] Run failed: %s", exc)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            self.state = CrawlState.FAILED
            logger.exception("[crawl] Run aborted by unexpected error")
        finally:
            self.stats.finish()
            if self._fetcher is None:
                await fetcher.aclose()

        report = CrawlReport(
            state=self.state.value,
            summary=self.stats.summary(),
            errors=list(self.stats.errors),
            db_stats=store.get_stats() if store is not None else {},
            options=self.options.to_dict(),
            categories=dict(self.categories),
            error=error,
        )
        if store is not None and self._store is None:
            store.close()

        logger.info(
            "[crawl] Run %s: %d crawled, %d succeeded, %d failed, %d skipped in %.1fs",
            report.state,
            self.stats.crawled,
            self.stats.succeeded,
            self.stats.failed,
            self.stats.skipped,
            self.stats.duration,
        )
        return report

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    async def _verify_store(self, store: PageStore) -> None:
        if not await store.check_table_exists():
            raise StoreUnavailable("Page store unreachable or crawled_pages table missing")

    async def _discover(self, fetcher: Fetcher) -> list[str]:
        collector = self._collector or SitemapCollector(fetcher)
        result = await collector.collect_all_urls(self.options.sitemap_url)
        self.stats.total_urls = result.total
        self.categories = dict(result.categories)
        if not result.urls:
            raise DiscoveryError(f"No URLs found in sitemap {self.options.sitemap_url}")
        return [task.url for task in result.urls]

    async def _filter_existing(self, store: PageStore, urls: list[str]) -> list[str]:
        """Drop URLs already stored when resuming.

        A failed lookup counts as "not stored" so the URL is crawled again.
        """
        if not self.options.resumable or self.options.force:
            return urls

        size = max(1, settings.resume_batch_size)
        remaining: list[str] = []
        for start in range(0, len(urls), size):
            batch = urls[start:start + size]
            lookups = await asyncio.gather(*(store.get_page_by_url(u) for u in batch))
            for url, lookup in zip(batch, lookups):
                if lookup.success and lookup.exists:
                    self.stats.already_stored += 1
                else:
                    remaining.append(url)

        logger.info(
            "[crawl] Resume: %d already stored, %d left to crawl",
            self.stats.already_stored, len(remaining),
        )
        return remaining

    async def _crawl_all(self, urls: list[str], fetcher: Fetcher, store: PageStore) -> None:
        queue: asyncio.Queue[str] = asyncio.Queue()
        for url in urls:
            queue.put_nowait(url)

        worker_count = min(self.options.concurrency, len(urls))
        logger.info("[crawl] Crawling %d URL(s) with %d worker(s)", len(urls), worker_count)
        workers = [
            asyncio.create_task(self._worker(queue, fetcher, store), name=f"crawl-worker-{i}")
            for i in range(worker_count)
        ]
        outcomes = await asyncio.gather(*workers, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    async def _worker(self, queue: "asyncio.Queue[str]", fetcher: Fetcher, store: PageStore) -> None:
        while not self.stop_requested:
            try:
                url = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._crawl_url(url, fetcher, store)
            except Exception:
                # Stop the other workers claiming; the error fails the run.
                self._stop_event.set()
                raise
            self._log_progress()
            if not queue.empty() and self.options.delay > 0:
                await self._pause(self.options.delay)

    async def _pause(self, seconds: float) -> None:
        """Sleep up to *seconds*, waking early if a stop is requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _crawl_url(self, url: str, fetcher: Fetcher, store: PageStore) -> None:
        """Fetch → parse → persist one URL.  Per-URL failures are recorded, not raised."""
        try:
            fetched = await fetcher.fetch(url)
        except DomainViolation as exc:
            self._record_failure(url, str(exc))
            return
        if not fetched.success:
            self._record_failure(url, f"Fetch failed ({fetched.error_code}): {fetched.error}")
            return

        try:
            parsed = parse_page(fetched.content, url)
        except Exception as exc:
            logger.exception("[crawl] Parse failed for %s", url)
            self._record_failure(url, f"Parse failed: {exc}")
            return

        validation = validate_parsed_data(parsed)
        if not validation.is_valid:
            self.stats.invalid_pages += 1
            logger.warning("[crawl] %s parsed with issues: %s", url, "; ".join(validation.errors))

        result = await store.upsert_page(
            PageRecord.from_crawl(parsed, fetched),
            force=self.options.force,
            skip_if_exists=self.options.skip_if_exists,
        )
        if not result.success:
            self._record_failure(url, f"Persist failed: {result.error}")
            return

        self.stats.crawled += 1
        if result.skipped:
            self.stats.skipped += 1
        else:
            self.stats.succeeded += 1
        if parsed.is_review:
            self.stats.review_pages += 1
        logger.debug("[crawl] %s -> %s", url, result.action)

    def _record_failure(self, url: str, message: str) -> None:
        self.stats.crawled += 1
        self.stats.failed += 1
        self.stats.record_error(url, message)
        logger.warning("[crawl] %s: %s", url, message)

    def _log_progress(self) -> None:
        done = self.stats.crawled
        if done and done % PROGRESS_EVERY == 0:
            total = self.stats.queued_urls or done
            logger.info(
                "[crawl] Progress %d/%d (%.1f%%): %d ok, %d failed, %d skipped, %d reviews",
                done,
                total,
                done / total * 100,
                self.stats.succeeded,
                self.stats.failed,
                self.stats.skipped,
                self.stats.review_pages,
            )


def install_signal_handlers(crawler: BrokerCrawler) -> None:
    """Route SIGINT/SIGTERM to ``crawler.handle_signal`` on the running loop."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, crawler.handle_signal, sig)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler.
            signal.signal(sig, lambda signum, _frame: crawler.handle_signal(signum))
