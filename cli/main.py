"""brokercrawl CLI — entry-point for crawl operations.

Usage:
    brokercrawl --help
    python cli/main.py --help

Commands:
    crawl     full sitemap → fetch → parse → store run
    sitemap   discover and categorise URLs without crawling
    parse     fetch and parse a single page
    db        store maintenance (init, stats, search, delete)
"""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure the project root is on sys.path so that `from brokercrawl.xxx import ...`
# works when the CLI is invoked as `python cli/main.py` from any directory.
_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

import asyncio
import json
import logging
from typing import Optional

import typer

from brokercrawl.config import CrawlOptions, settings
from brokercrawl.crawler import BrokerCrawler, CrawlReport, install_signal_handlers
from brokercrawl.db import PageStore
from brokercrawl.errors import DomainViolation, StoreUnavailable
from brokercrawl.scraper import Fetcher, SitemapCollector, parse_page, validate_parsed_data
from brokercrawl.scraper.models import SitemapResult
from cli.commands.db import db_app
from cli.rendering import render_categories, render_parsed_page, render_report

app = typer.Typer(
    name="brokercrawl",
    help="BrokerChooser sitemap crawler.",
    no_args_is_help=True,
)
app.add_typer(db_app, name="db")


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s  %(levelname)-7s  %(name)s  %(message)s",
        force=True,
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)


# ---------------------------------------------------------------------------
# crawl
# ---------------------------------------------------------------------------

async def _run_crawl(options: CrawlOptions) -> CrawlReport:
    crawler = BrokerCrawler(options)
    install_signal_handlers(crawler)
    return await crawler.run()


@app.command("crawl")
def crawl(
    force: bool = typer.Option(False, "--force", help="Rewrite every page, ignoring stored hashes."),
    no_resume: bool = typer.Option(False, "--no-resume", help="Crawl URLs that are already stored."),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging."),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", min=1, help="Parallel workers."),
    max_urls: Optional[int] = typer.Option(None, "--max-urls", min=1, help="Crawl at most N URLs."),
    timeout: Optional[int] = typer.Option(None, "--timeout", min=1, help="Per-request timeout (ms)."),
    delay: Optional[int] = typer.Option(None, "--delay", min=0, help="Delay between a worker's requests (ms)."),
    sitemap: Optional[str] = typer.Option(None, "--sitemap", help="Root sitemap URL."),
    as_json: bool = typer.Option(False, "--json", help="Print the run report as JSON."),
) -> None:
    """Crawl every sitemap URL and store parsed pages."""
    options = CrawlOptions.resolve(
        force=force or None,
        resumable=False if no_resume else None,
        debug=debug or None,
        concurrency=concurrency,
        max_urls=max_urls,
        timeout_ms=timeout,
        delay_ms=delay,
        sitemap_url=sitemap,
    )
    _configure_logging(options.debug)

    typer.echo(f"[crawl] Starting crawl of {options.sitemap_url} (db: {settings.db_path})")
    report = asyncio.run(_run_crawl(options))
    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        typer.echo(render_report(report))
    if not report.ok:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# sitemap
# ---------------------------------------------------------------------------

async def _collect(root_url: str, output: Optional[Path]) -> SitemapResult:
    async with Fetcher() as fetcher:
        collector = SitemapCollector(fetcher)
        result = await collector.collect_all_urls(root_url)
        if output is not None:
            collector.save_urls_to_file(result.urls, output, collected_at=result.completed_at)
        return result


@app.command("sitemap")
def sitemap_cmd(
    sitemap: Optional[str] = typer.Option(None, "--sitemap", help="Root sitemap URL."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Save URLs to a JSON file."),
    samples: int = typer.Option(3, "--samples", min=0, help="Example URLs per category."),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging."),
) -> None:
    """Collect and categorise sitemap URLs without crawling them."""
    _configure_logging(debug or settings.debug)
    root_url = sitemap or settings.sitemap_url

    typer.echo(f"[sitemap] Collecting from {root_url} …")
    result = asyncio.run(_collect(root_url, output))
    typer.echo(
        f"[sitemap] {result.total} URL(s) from {result.sitemaps_processed} sitemap(s) "
        f"in {result.duration:.1f}s"
    )
    typer.echo(render_categories(result.categories, result.urls, samples=samples))

    try:
        store = PageStore()
    except StoreUnavailable as exc:
        typer.echo(f"[sitemap] Store unavailable ({exc}); skipping stored-page check.")
    else:
        try:
            stored = asyncio.run(store.existing_urls(t.url for t in result.urls))
        finally:
            store.close()
        typer.echo(f"[sitemap] {len(stored)} already stored, {result.total - len(stored)} new.")

    if output is not None:
        typer.echo(f"[sitemap] Saved to {output}")

    if result.total == 0:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# parse
# ---------------------------------------------------------------------------

@app.command("parse")
def parse_cmd(
    url: str = typer.Option(..., help="Page URL on the target site."),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging."),
) -> None:
    """Fetch and parse one page, printing what would be stored."""
    _configure_logging(debug or settings.debug)

    async def _fetch():
        async with Fetcher() as fetcher:
            return await fetcher.fetch(url)

    typer.echo(f"[parse] Fetching {url!r} …")
    try:
        fetched = asyncio.run(_fetch())
    except DomainViolation as exc:
        typer.echo(f"[parse] {exc}", err=True)
        raise typer.Exit(1)
    if not fetched.success:
        typer.echo(f"[parse] Fetch failed after {fetched.attempts} attempt(s): {fetched.error}", err=True)
        raise typer.Exit(1)

    typer.echo(f"[parse] HTTP {fetched.status} via {fetched.method} ({fetched.content_length} chars)")
    page = parse_page(fetched.content, url)
    typer.echo(render_parsed_page(page, validate_parsed_data(page)))


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    app()
