"""Exception taxonomy shared by the fetch, parse, store and crawl layers.

Transport failures are *not* exceptions: the fetch layer reports them as
:class:`~brokercrawl.scraper.models.FetchResult` values.  The classes below
cover contract violations and conditions that abort a whole operation.
"""

from __future__ import annotations


class CrawlerError(Exception):
    """Base class for every error raised by brokercrawl."""


class DomainViolation(CrawlerError):
    """A URL outside the configured target origin was handed to the fetcher."""

    def __init__(self, url: str, origin: str) -> None:
        super().__init__(f"URL {url!r} is outside the allowed origin {origin!r}")
        self.url = url
        self.origin = origin


class InvalidPageKind(CrawlerError):
    """A review-only operation was invoked on a non-review page."""


class AlreadyRunning(CrawlerError):
    """``run()`` was called on a crawler that is already running."""


class StoreUnavailable(CrawlerError):
    """The page store could not be reached or its table is missing."""


class SitemapError(CrawlerError):
    """A sitemap document could not be fetched or has an unknown format."""


class DiscoveryError(CrawlerError):
    """URL discovery produced nothing to crawl."""
