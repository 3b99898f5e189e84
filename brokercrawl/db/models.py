"""Dataclass models representing DB rows and store call results.

These are plain Python objects – not ORM models.  The DB layer serialises /
deserialises to and from these types.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from brokercrawl.scraper.models import FetchResult, ParsedPage, utc_now_iso


@dataclass
class PageRecord:
    """One row of ``crawled_pages``.  ``url`` is the dedup key."""

    url: str
    status: Optional[int]
    fetched_at: str
    sha256: Optional[str]
    html: Optional[str] = None
    text_content: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_crawl(cls, parsed: ParsedPage, fetched: FetchResult) -> "PageRecord":
        """Build the row for a fetched and parsed page.

        ``meta`` holds document metadata plus page type and parse time;
        ``data`` holds the broker review payload when there is one.
        """
        meta = parsed.metadata.to_dict()
        meta["page_type"] = parsed.page_type
        meta["parsed_at"] = parsed.parsed_at
        meta["fetch_method"] = fetched.method
        data: dict[str, Any] = {}
        if parsed.review is not None:
            data["review"] = parsed.review.to_dict()
        return cls(
            url=parsed.url,
            status=fetched.status,
            fetched_at=fetched.fetched_at or utc_now_iso(),
            sha256=parsed.content_hash,
            html=fetched.content,
            text_content=parsed.text_content,
            meta=meta,
            data=data,
        )

    @property
    def page_type(self) -> Optional[str]:
        return self.meta.get("page_type")

    def meta_json(self) -> str:
        return json.dumps(self.meta)

    def data_json(self) -> str:
        return json.dumps(self.data)

    def summary(self) -> dict[str, Any]:
        """Row without the heavy ``html`` / ``text_content`` columns."""
        return {
            "id": self.id,
            "url": self.url,
            "status": self.status,
            "fetched_at": self.fetched_at,
            "sha256": self.sha256,
            "title": self.meta.get("title"),
            "page_type": self.page_type,
        }


@dataclass
class UpsertResult:
    """Outcome of :meth:`PageStore.upsert_page`.

    Exactly one of ``skipped`` / ``updated`` / ``upserted`` is true on
    success: *skipped* means no write, *updated* means only ``fetched_at``
    changed, *upserted* means a full insert or overwrite.
    """

    url: str
    success: bool
    skipped: bool = False
    updated: bool = False
    upserted: bool = False
    id: Optional[int] = None
    error: Optional[str] = None

    @property
    def action(self) -> str:
        if not self.success:
            return "failed"
        if self.skipped:
            return "skipped"
        if self.updated:
            return "updated"
        return "upserted"


@dataclass
class BatchUpsertResult:
    results: list[UpsertResult]
    batches: int

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success and not r.skipped)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)


@dataclass
class PageLookup:
    """Outcome of a point lookup.  ``success`` is false only on store errors."""

    success: bool
    exists: bool = False
    record: Optional[PageRecord] = None
    error: Optional[str] = None


@dataclass
class UpsertStats:
    """Session counters kept by the page store."""

    total_upserts: int = 0
    successful_upserts: int = 0
    failed_upserts: int = 0
    skipped_upserts: int = 0
    total_batches: int = 0

    def record(self, result: UpsertResult) -> None:
        self.total_upserts += 1
        if not result.success:
            self.failed_upserts += 1
        elif result.skipped:
            self.skipped_upserts += 1
        else:
            self.successful_upserts += 1

    def as_dict(self) -> dict[str, int]:
        return asdict(self)
