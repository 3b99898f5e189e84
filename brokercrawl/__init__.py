"""brokercrawl — sitemap-driven crawler for BrokerChooser broker reviews."""

__version__ = "0.1.0"
