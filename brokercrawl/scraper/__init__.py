"""Scraper package — fetch, sitemap discovery & content parsing."""

from brokercrawl.scraper.fetcher import Fetcher
from brokercrawl.scraper.models import CrawlTask, FetchResult, ParsedPage
from brokercrawl.scraper.parser import parse_broker_review, parse_page, validate_parsed_data
from brokercrawl.scraper.sitemap import SitemapCollector

__all__ = [
    "Fetcher",
    "SitemapCollector",
    "parse_page",
    "parse_broker_review",
    "validate_parsed_data",
    "CrawlTask",
    "FetchResult",
    "ParsedPage",
]
