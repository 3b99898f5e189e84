"""Plain-text rendering of crawl reports and sitemap summaries."""

from __future__ import annotations

import json
from typing import Iterable, Optional

from brokercrawl.crawler.stats import CrawlReport
from brokercrawl.scraper.models import CrawlTask, ParsedPage, ValidationResult
from brokercrawl.scraper.sitemap import categorize_url

REPORT_ERROR_LIMIT = 10
_RULE = "=" * 72


def render_report(report: CrawlReport, error_limit: int = REPORT_ERROR_LIMIT) -> str:
    """Summary JSON, store counters and the first *error_limit* errors."""
    lines = [
        _RULE,
        f"Crawl {report.state.upper()}",
        _RULE,
        json.dumps(report.summary, indent=2),
    ]
    if report.error:
        lines.append(f"Error: {report.error}")
    if report.db_stats:
        lines.append("Store session: " + json.dumps(report.db_stats))

    total_errors = report.summary.get("errors", len(report.errors))
    if total_errors:
        lines.append("")
        lines.append(f"Errors ({total_errors}):")
        shown = report.errors[:error_limit]
        for err in shown:
            lines.append(f"  {err.url}: {err.error}")
        if total_errors > len(shown):
            lines.append(f"  ... and {total_errors - len(shown)} more errors")
    lines.append(_RULE)
    return "\n".join(lines)


def render_categories(
    categories: dict[str, int],
    tasks: Iterable[CrawlTask],
    samples: int = 3,
    origin: Optional[str] = None,
) -> str:
    """Per-category counts, each followed by up to *samples* example URLs."""
    by_category: dict[str, list[str]] = {}
    for task in tasks:
        bucket = by_category.setdefault(categorize_url(task.url, origin), [])
        if len(bucket) < samples:
            bucket.append(task.url)

    width = max((len(name) for name in categories), default=0)
    lines = []
    for name, count in categories.items():
        lines.append(f"  {name.ljust(width)}  {count:>6}")
        for url in by_category.get(name, []):
            lines.append(f"  {' ' * width}    {url}")
    return "\n".join(lines)


def render_parsed_page(page: ParsedPage, validation: ValidationResult) -> str:
    meta = page.metadata
    lines = [
        f"Title     : {page.title or '(none)'}",
        f"Type      : {page.page_type}",
        f"Language  : {meta.lang}",
        f"Words     : {len(page.text_content.split())}",
        f"Hash      : {page.content_hash}",
    ]
    if meta.description:
        lines.append(f"Desc      : {meta.description}")
    if page.review is not None:
        review = page.review
        filled = [k for k, v in review.sections.items() if v]
        lines.extend(
            [
                f"Broker    : {review.broker_name} ({review.broker_slug})",
                f"Rating    : {review.rating if review.rating is not None else '(none)'}",
                f"Updated   : {review.last_updated or '(unknown)'}",
                f"Pros/cons : {len(review.pros)} / {len(review.cons)}",
                f"Sections  : {', '.join(filled) or '(none)'}",
                f"Unmapped  : {', '.join(review.unmapped_sections) or '(none)'}",
            ]
        )
    status = "valid" if validation.is_valid else "invalid: " + "; ".join(validation.errors)
    lines.append(f"Validation: {status}")
    return "\n".join(lines)
