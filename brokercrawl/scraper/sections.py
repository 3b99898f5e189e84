"""Lookup tables for broker-review extraction.

Everything here is data.  Order matters: section mapping and selector
probing both take the first match.
"""

from __future__ import annotations

# (section key, heading keywords).  A heading maps to the first key whose
# keyword appears in the lowercased heading text.
SECTION_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("fees", ("fee", "cost", "commission", "spread", "pricing")),
    ("non_trading_fees", ("non-trading", "withdrawal", "deposit", "inactivity")),
    ("platforms", ("platform", "trading platform", "software")),
    ("research", ("research", "analysis", "market research")),
    ("education", ("education", "learning", "tutorial", "course")),
    ("account_opening", ("account opening", "registration", "sign up")),
    ("deposits_withdrawals", ("deposit", "withdrawal", "funding")),
    ("customer_service", ("customer service", "customer support", "help center")),
    ("safety", ("safety", "security", "protection")),
    ("products", ("product", "instrument", "asset")),
    ("regulation", ("regulation", "license", "regulatory")),
    ("order_types", ("order", "execution")),
    ("mobile_app", ("mobile", "app", "smartphone")),
    ("desktop", ("desktop", "download")),
    ("web_trader", ("web", "browser", "online")),
    ("usability", ("usability", "user experience", "interface")),
    ("portfolio_analysis", ("portfolio", "analysis")),
    ("alerts", ("alert", "notification")),
    ("insights", ("insight", "recommendation")),
)

SECTION_KEYS: tuple[str, ...] = tuple(key for key, _ in SECTION_KEYWORDS)

PRO_KEYWORDS: tuple[str, ...] = ("pro", "advantage", "positive")
CON_KEYWORDS: tuple[str, ...] = ("con", "disadvantage", "negative")

PRO_CONTAINERS: tuple[str, ...] = (".pros", ".advantages", ".positive", ".pros-list")
CON_CONTAINERS: tuple[str, ...] = (".cons", ".disadvantages", ".negative", ".cons-list")

RATING_SELECTORS: tuple[str, ...] = (
    ".rating-value",
    ".score",
    ".rating-score",
    ".overall-rating",
    "[data-rating]",
    ".stars .rating",
    ".review-rating",
    ".broker-rating",
)
RATING_MIN = 0.0
RATING_MAX = 10.0

LAST_UPDATED_SELECTORS: tuple[str, ...] = (
    ".last-updated",
    ".updated-date",
    ".modified-date",
    "[datetime]",
    "time",
    ".date-updated",
)

# Boilerplate removed before text extraction.
NOISE_SELECTORS: tuple[str, ...] = (
    "script",
    "style",
    "noscript",
    "nav",
    "header",
    "footer",
    ".cookie-banner",
    ".advertisement",
)

MAIN_CONTENT_SELECTORS: tuple[str, ...] = (
    "main",
    ".main-content",
    ".content",
    "article",
    ".article",
)

# (page type, URL path fragment) in match order; reviews are detected first
# by pattern, anything unmatched is a plain "page".
PAGE_TYPE_RULES: tuple[tuple[str, str], ...] = (
    ("blog", "/blog/"),
    ("guide", "/guides/"),
    ("about", "/about"),
    ("contact", "/contact"),
)
