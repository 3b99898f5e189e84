"""Run statistics and the final crawl report."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional

from brokercrawl.scraper.models import utc_now_iso


@dataclass
class CrawlError:
    url: str
    error: str
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "error": self.error, "timestamp": self.timestamp}


@dataclass
class CrawlStats:
    """Counters for one run.  ``crawled == succeeded + failed + skipped``.

    Only the first ``max_errors`` errors are kept; ``error_count`` keeps the
    true total.
    """

    max_errors: int = 1000
    total_urls: int = 0
    queued_urls: int = 0
    crawled: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    review_pages: int = 0
    invalid_pages: int = 0
    already_stored: int = 0
    error_count: int = 0
    errors: list[CrawlError] = field(default_factory=list)
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    _started: Optional[float] = field(default=None, repr=False)
    _ended: Optional[float] = field(default=None, repr=False)

    def start(self) -> None:
        self.started_at = utc_now_iso()
        self._started = time.monotonic()

    def finish(self) -> None:
        self.ended_at = utc_now_iso()
        self._ended = time.monotonic()

    @property
    def duration(self) -> float:
        if self._started is None:
            return 0.0
        end = self._ended if self._ended is not None else time.monotonic()
        return end - self._started

    def record_error(self, url: str, error: str) -> None:
        self.error_count += 1
        if len(self.errors) < self.max_errors:
            self.errors.append(CrawlError(url=url, error=error))

    def summary(self) -> dict[str, Any]:
        minutes = self.duration / 60.0
        return {
            "total_urls": self.total_urls,
            "queued_urls": self.queued_urls,
            "already_stored": self.already_stored,
            "crawled": self.crawled,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "review_pages": self.review_pages,
            "invalid_pages": self.invalid_pages,
            "errors": self.error_count,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_seconds": round(self.duration, 2),
            "duration_minutes": round(minutes, 2),
            "urls_per_minute": round(self.crawled / minutes, 2) if minutes > 0 else 0.0,
            "success_rate": round(self.succeeded / self.crawled * 100, 2) if self.crawled else 0.0,
        }


@dataclass
class CrawlReport:
    """What a run hands back: final state, summary, errors and store counters."""

    state: str
    summary: dict[str, Any]
    errors: list[CrawlError]
    db_stats: dict[str, Any]
    options: dict[str, Any]
    categories: dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state in ("completed", "stopped")

    def to_dict(self, max_errors: Optional[int] = None) -> dict[str, Any]:
        errors = self.errors if max_errors is None else self.errors[:max_errors]
        return {
            "state": self.state,
            "summary": self.summary,
            "categories": self.categories,
            "errors": [e.to_dict() for e in errors],
            "db_stats": self.db_stats,
            "options": self.options,
            "error": self.error,
        }
