"""Data models for the fetch and discovery stages."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class CrawlTask:
    """A URL discovered for crawling."""

    url: str
    discovered_at: str = field(default_factory=utc_now_iso)
    source: str = "sitemap"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SitemapEntry:
    """A single ``<sitemap>`` or ``<url>`` element from a sitemap document.

    ``changefreq`` and ``priority`` are only present for url-set entries.
    """

    loc: str
    lastmod: Optional[str] = None
    changefreq: Optional[str] = None
    priority: Optional[float] = None


@dataclass(frozen=True)
class SitemapNode:
    """A parsed sitemap document: either an index of child sitemaps or a url-set."""

    kind: str  # "index" | "urlset"
    entries: tuple[SitemapEntry, ...] = ()

    @property
    def is_index(self) -> bool:
        return self.kind == "index"


@dataclass
class SitemapResult:
    """Outcome of a full sitemap traversal."""

    urls: list[CrawlTask]
    sitemaps_processed: int
    categories: dict[str, int]
    duration: float
    completed_at: str = field(default_factory=utc_now_iso)

    @property
    def total(self) -> int:
        return len(self.urls)


@dataclass(frozen=True)
class FetchResult:
    """Immutable outcome of one :meth:`Fetcher.fetch` call.

    On success ``content`` holds the raw body and ``content_hash`` its
    SHA-256.  On failure ``error`` / ``error_code`` describe the last attempt
    and ``status`` carries the last HTTP status seen (``None`` when no
    response was received).
    """

    url: str
    success: bool
    status: Optional[int]
    attempts: int
    duration: float
    method: str
    fetched_at: str = field(default_factory=utc_now_iso)
    content: str = ""
    content_hash: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def content_length(self) -> int:
        return len(self.content)


@dataclass
class BatchFetchResult:
    """Summary of :meth:`Fetcher.fetch_batch`."""

    results: list[FetchResult]
    duration: float

    @property
    def successful(self) -> list[FetchResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> list[FetchResult]:
        return [r for r in self.results if not r.success]

    @property
    def success_rate(self) -> float:
        if not self.results:
            return 0.0
        return len(self.successful) / len(self.results)


# ---------------------------------------------------------------------------
# Parse results
# ---------------------------------------------------------------------------

@dataclass
class PageMetadata:
    """Document-level metadata pulled from ``<head>`` and the first ``<h1>``.

    Absent fields are empty strings.
    """

    title: str = ""
    description: str = ""
    keywords: str = ""
    author: str = ""
    published_time: str = ""
    modified_time: str = ""
    canonical_url: str = ""
    og_title: str = ""
    og_description: str = ""
    og_image: str = ""
    twitter_title: str = ""
    twitter_description: str = ""
    lang: str = "en"
    page_type: str = "page"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BrokerReview:
    """Structured payload of a broker review page."""

    broker_name: str
    broker_slug: str
    rating: Optional[float] = None
    last_updated: Optional[str] = None
    pros: list[str] = field(default_factory=list)
    cons: list[str] = field(default_factory=list)
    sections: dict[str, str] = field(default_factory=dict)
    unmapped_sections: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ParsedPage:
    """Output of :func:`~brokercrawl.scraper.parser.parse_page`.

    ``content_hash`` is the SHA-256 of ``text_content``, so two fetches whose
    visible text is identical hash identically even if markup changed.
    """

    url: str
    title: str
    page_type: str
    metadata: PageMetadata
    text_content: str
    content_hash: str
    parsed_at: str = field(default_factory=utc_now_iso)
    review: Optional[BrokerReview] = None

    @property
    def is_review(self) -> bool:
        return self.review is not None


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
