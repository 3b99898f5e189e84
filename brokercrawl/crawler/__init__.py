"""Crawl orchestration package."""

from brokercrawl.crawler.orchestrator import BrokerCrawler, CrawlState, install_signal_handlers
from brokercrawl.crawler.stats import CrawlReport, CrawlStats

__all__ = ["BrokerCrawler", "CrawlState", "CrawlReport", "CrawlStats", "install_signal_handlers"]
