"""Sitemap traversal and URL discovery.

Starting from the root sitemap, :class:`SitemapCollector` walks sitemap
indexes depth-first, parses every url-set and returns the deduplicated,
filtered list of pages to crawl.

- Each sitemap URL is fetched at most once per collection, so cyclic indexes
  terminate.
- A child sitemap that fails to fetch or parse contributes zero URLs; its
  siblings are still processed.
- Sitemaps are fetched with a direct GET first.  A 403/429 or a connection
  reset hands the request to the fetch layer's unlocker transport.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
import xml.etree.ElementTree as ET
from collections import Counter
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import urlsplit

from brokercrawl.config import settings
from brokercrawl.errors import DomainViolation, SitemapError
from brokercrawl.scraper.fetcher import Fetcher, is_same_origin
from brokercrawl.scraper.models import (
    CrawlTask,
    SitemapEntry,
    SitemapNode,
    SitemapResult,
    utc_now_iso,
)
from brokercrawl.scraper.transports import (
    EMPTY_RESPONSE,
    REQUEST_ERRORS,
    WEB_UNLOCKER,
    AttemptFailure,
    DirectTransport,
    XML_ACCEPT,
    classify_exception,
    classify_status,
)

logger = logging.getLogger(__name__)

_ASSET_RE = re.compile(r"\.(pdf|jpe?g|png|gif|svg|webp|css|js|ico)$", re.IGNORECASE)

# Ordered (category, substrings) rules; first match wins.
CATEGORY_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("broker-reviews", ("/broker-reviews/",)),
    ("blog", ("/blog/",)),
    ("guides", ("/guide", "/how-to")),
    ("compare", ("/compare",)),
    ("news", ("/news/",)),
    ("tools", ("/tools/", "/calculator")),
    ("about", ("/about", "/team", "/contact")),
    ("legal", ("/legal", "/privacy", "/terms")),
)
CATEGORIES: tuple[str, ...] = tuple(name for name, _ in CATEGORY_RULES) + ("homepage", "other")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def _local_name(tag: str) -> str:
    """Strip any ``{namespace}`` prefix and lowercase an element tag."""
    return tag.rsplit("}", 1)[-1].lower()


def _child_text(element: ET.Element, name: str) -> Optional[str]:
    for child in element:
        if _local_name(child.tag) == name:
            text = (child.text or "").strip()
            return text or None
    return None


def _parse_priority(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def parse_sitemap_xml(text: str) -> SitemapNode:
    """Parse a sitemap document into an index or url-set node.

    Raises:
        SitemapError: The document is not well-formed XML, or its root is
            neither ``<sitemapindex>`` nor ``<urlset>``.
    """
    try:
        root = ET.fromstring(text.strip())
    except ET.ParseError as exc:
        raise SitemapError(f"Malformed sitemap XML: {exc}") from exc

    root_name = _local_name(root.tag)
    if root_name == "sitemapindex":
        kind, item_name = "index", "sitemap"
    elif root_name == "urlset":
        kind, item_name = "urlset", "url"
    else:
        raise SitemapError(f"Invalid sitemap format: unexpected root <{root_name}>")

    entries: list[SitemapEntry] = []
    for el in root:
        if _local_name(el.tag) != item_name:
            continue
        loc = _child_text(el, "loc")
        if not loc:
            continue
        if kind == "index":
            entries.append(SitemapEntry(loc=loc, lastmod=_child_text(el, "lastmod")))
        else:
            entries.append(
                SitemapEntry(
                    loc=loc,
                    lastmod=_child_text(el, "lastmod"),
                    changefreq=_child_text(el, "changefreq"),
                    priority=_parse_priority(_child_text(el, "priority")),
                )
            )
    return SitemapNode(kind=kind, entries=tuple(entries))


def is_crawlable_url(url: str, origin: Optional[str] = None) -> bool:
    """True for on-origin page URLs without fragments or asset extensions."""
    origin = (origin or settings.target_origin).rstrip("/")
    if "#" in url or not is_same_origin(url, origin):
        return False
    return not _ASSET_RE.search(urlsplit(url).path)


def categorize_url(url: str, origin: Optional[str] = None) -> str:
    """Assign *url* to exactly one category (see ``CATEGORY_RULES``)."""
    origin = (origin or settings.target_origin).rstrip("/")
    if url.rstrip("/") == origin:
        return "homepage"
    path = urlsplit(url).path.lower()
    for category, needles in CATEGORY_RULES:
        if any(needle in path for needle in needles):
            return category
    return "other"


def categorize_urls(urls: Iterable[str], origin: Optional[str] = None) -> dict[str, int]:
    """Count URLs per category.  Every category is present, possibly with 0."""
    counts = Counter(categorize_url(u, origin) for u in urls)
    return {name: counts.get(name, 0) for name in CATEGORIES}


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------

class SitemapCollector:
    """Walk the sitemap tree and collect crawlable URLs.

    Args:
        fetcher: Fetch layer, used for its HTTP client and as the fallback
            transport when the direct request is blocked.
        origin: Allowed origin for discovered URLs.
        retries: Direct GET attempts per sitemap.
        base_delay: Backoff base (seconds) between direct attempts.
        child_delay: Pause (seconds) between sibling child sitemaps.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        *,
        origin: Optional[str] = None,
        retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        child_delay: Optional[float] = None,
    ) -> None:
        self._fetcher = fetcher
        self.origin = (origin or fetcher.origin).rstrip("/")
        self.retries = max(1, retries if retries is not None else settings.retries)
        self.base_delay = base_delay if base_delay is not None else settings.retry_base_delay
        self.child_delay = child_delay if child_delay is not None else settings.sitemap_delay
        self._direct = DirectTransport(accept=XML_ACCEPT)
        self._processed: set[str] = set()
        self._collected: set[str] = set()

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch_sitemap(self, url: str) -> str:
        """Return the XML body of *url*.

        Raises:
            SitemapError: Every route failed.
        """
        failure: Optional[AttemptFailure] = None
        for attempt in range(1, self.retries + 1):
            try:
                response = await self._direct.send(self._fetcher.client, url)
            except REQUEST_ERRORS as exc:
                failure = classify_exception(exc)
            else:
                if response.is_success:
                    if response.text.strip():
                        logger.debug("[sitemap] Fetched %s directly (attempt %d)", url, attempt)
                        return response.text
                    failure = EMPTY_RESPONSE
                else:
                    failure = classify_status(response.status_code)

            logger.warning(
                "[sitemap] Direct attempt %d/%d for %s failed: %s",
                attempt, self.retries, url, failure.message,
            )
            if failure.status in (403, 429) or not failure.retryable:
                break
            if attempt < self.retries:
                await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))

        assert failure is not None
        if failure.blocked and self._fetcher.has_transport(WEB_UNLOCKER):
            logger.info("[sitemap] Falling back to %s for %s", WEB_UNLOCKER, url)
            try:
                result = await self._fetcher.fetch(url, start_with=WEB_UNLOCKER)
            except DomainViolation as exc:
                raise SitemapError(str(exc)) from exc
            if result.success:
                return result.content
            raise SitemapError(f"Sitemap {url} unavailable via proxy: {result.error}")

        raise SitemapError(f"Sitemap {url} unavailable: {failure.message}")

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    async def process_sitemap(self, url: str) -> list[CrawlTask]:
        """Process one sitemap (recursing into indexes) and return new tasks."""
        if url in self._processed:
            logger.debug("[sitemap] Already processed %s, skipping", url)
            return []
        self._processed.add(url)

        try:
            node = parse_sitemap_xml(await self.fetch_sitemap(url))
        except SitemapError as exc:
            logger.error("[sitemap] Skipping %s: %s", url, exc)
            return []

        if node.is_index:
            logger.info("[sitemap] Index %s lists %d child sitemap(s)", url, len(node.entries))
            tasks: list[CrawlTask] = []
            for i, entry in enumerate(node.entries):
                if i and self.child_delay > 0:
                    await asyncio.sleep(self.child_delay)
                tasks.extend(await self.process_sitemap(entry.loc))
            return tasks

        tasks = []
        for entry in node.entries:
            if entry.loc in self._collected or not is_crawlable_url(entry.loc, self.origin):
                continue
            self._collected.add(entry.loc)
            tasks.append(CrawlTask(url=entry.loc))
        logger.info("[sitemap] %s: %d new URL(s) of %d listed", url, len(tasks), len(node.entries))
        return tasks

    async def collect_all_urls(self, root_url: Optional[str] = None) -> SitemapResult:
        """Traverse from *root_url* (default: configured sitemap) and collect URLs."""
        root_url = root_url or settings.sitemap_url
        self._processed = set()
        self._collected = set()
        started = time.monotonic()

        logger.info("[sitemap] Collecting URLs from %s", root_url)
        tasks = await self.process_sitemap(root_url)
        result = SitemapResult(
            urls=tasks,
            sitemaps_processed=len(self._processed),
            categories=categorize_urls((t.url for t in tasks), self.origin),
            duration=time.monotonic() - started,
        )
        logger.info(
            "[sitemap] Collected %d URL(s) from %d sitemap(s) in %.1fs",
            result.total, result.sitemaps_processed, result.duration,
        )
        return result

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    def urls_by_category(self, tasks: Iterable[CrawlTask], category: str) -> list[CrawlTask]:
        """Filter *tasks* to those in *category*."""
        if category not in CATEGORIES:
            raise ValueError(f"Unknown category {category!r}; expected one of {CATEGORIES}")
        return [t for t in tasks if categorize_url(t.url, self.origin) == category]

    def save_urls_to_file(
        self, tasks: Iterable[CrawlTask], path: Path, collected_at: Optional[str] = None
    ) -> Path:
        """Write *tasks* to *path* as JSON (``collected_at``, ``total``, ``urls``)."""
        items = [t.to_dict() for t in tasks]
        payload = {"collected_at": collected_at or utc_now_iso(), "total": len(items), "urls": items}
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        logger.info("[sitemap] Saved %d URL(s) to %s", len(items), path)
        return path
