"""HTML → structured page data.

``parse_page(html, url)`` is the single entry point used by the crawler.
It always returns a :class:`ParsedPage`; broker review pages additionally
carry a :class:`BrokerReview` payload.

Extraction is heuristic and lives in small helpers so each part can be
tested on its own:

- ``extract_text_content`` — boilerplate-free visible text (hashed)
- ``extract_metadata``     — head tags, title, language, page type
- ``extract_rating``       — first valid 0–10 score from known selectors
- ``extract_pros_and_cons``— list items under pro/con containers or headings
- ``extract_sections``     — heading-delimited text mapped to section keys
- ``extract_last_updated`` — ISO date from known selectors or article meta
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, Tag

from brokercrawl.errors import InvalidPageKind
from brokercrawl.scraper.fetcher import sha256_hex
from brokercrawl.scraper.models import (
    BrokerReview,
    PageMetadata,
    ParsedPage,
    ValidationResult,
)
from brokercrawl.scraper.sections import (
    CON_CONTAINERS,
    CON_KEYWORDS,
    LAST_UPDATED_SELECTORS,
    MAIN_CONTENT_SELECTORS,
    NOISE_SELECTORS,
    PAGE_TYPE_RULES,
    PRO_CONTAINERS,
    PRO_KEYWORDS,
    RATING_MAX,
    RATING_MIN,
    RATING_SELECTORS,
    SECTION_KEYS,
    SECTION_KEYWORDS,
)

logger = logging.getLogger(__name__)

_REVIEW_URL_RE = re.compile(r"/broker-reviews/([^/]+)/?")
_HEADING_RE = re.compile(r"^h[1-6]$")
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
_LABEL_RE = re.compile(r"^[A-Za-z][A-Za-z ]*:\s*")
_ORDINAL_RE = re.compile(r"(\d)(st|nd|rd|th)\b", re.IGNORECASE)
_DATE_FORMATS = (
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%B %d %Y",
    "%Y-%m-%d",
    "%d/%m/%Y",
)

REVIEW_PAGE = "broker_review"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def clean_text(text: Optional[str]) -> str:
    """Collapse runs of whitespace and strip."""
    if not text:
        return ""
    return re.sub(r"\s+", " ", text).strip()


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def _text(el: Tag) -> str:
    return clean_text(el.get_text(" ", strip=True))


def _meta(soup: BeautifulSoup, *, name: Optional[str] = None, prop: Optional[str] = None) -> str:
    tag = None
    if prop:
        tag = soup.find("meta", attrs={"property": prop})
    if tag is None and name:
        tag = soup.find("meta", attrs={"name": name})
    if tag is None:
        return ""
    return clean_text(tag.get("content"))


def parse_date(raw: Optional[str]) -> Optional[str]:
    """Parse a human or ISO date string to ISO-8601 (UTC when naive).

    A leading label such as ``Last updated:`` is ignored.  Returns ``None``
    when nothing recognisable is found.
    """
    text = clean_text(raw)
    if not text:
        return None
    text = _LABEL_RE.sub("", text)
    text = _ORDINAL_RE.sub(r"\1", text)

    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.isoformat()


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------

def is_broker_review_url(url: str) -> bool:
    return _REVIEW_URL_RE.search(url) is not None


def detect_page_type(url: str) -> str:
    """Classify *url* as broker_review, blog, guide, about, contact or page."""
    if is_broker_review_url(url):
        return REVIEW_PAGE
    lowered = url.lower()
    for page_type, fragment in PAGE_TYPE_RULES:
        if fragment in lowered:
            return page_type
    return "page"


def broker_slug_from_url(url: str) -> str:
    """Last non-empty path segment of *url*."""
    segments = [s for s in urlsplit(url).path.split("/") if s]
    return segments[-1] if segments else ""


def broker_name_from_slug(slug: str) -> str:
    """``interactive-brokers`` → ``Interactive Brokers``."""
    spaced = slug.replace("-", " ")
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), spaced)


# ---------------------------------------------------------------------------
# Generic extraction
# ---------------------------------------------------------------------------

def extract_text_content(html: str) -> str:
    """Return the visible main-content text of *html*, whitespace-normalised.

    Scripts, styles, navigation, headers, footers, cookie banners and ads are
    removed first.  The first main-content container wins; the body (or the
    whole document) is the fallback.
    """
    soup = _soup(html)
    for selector in NOISE_SELECTORS:
        for tag in soup.select(selector):
            tag.decompose()

    container = soup.select_one(", ".join(MAIN_CONTENT_SELECTORS))
    if container is None:
        container = soup.body or soup
    return clean_text(container.get_text(" ", strip=True))


def extract_metadata(soup: BeautifulSoup, url: str) -> PageMetadata:
    title_tag = soup.find("title")
    title = _text(title_tag) if title_tag else ""
    if not title:
        h1 = soup.find("h1")
        title = _text(h1) if h1 else ""

    canonical = soup.find("link", rel="canonical")
    html_tag = soup.find("html")
    lang = clean_text(html_tag.get("lang")) if html_tag else ""

    return PageMetadata(
        title=title,
        description=_meta(soup, name="description"),
        keywords=_meta(soup, name="keywords"),
        author=_meta(soup, name="author"),
        published_time=_meta(soup, prop="article:published_time", name="article:published_time"),
        modified_time=_meta(soup, prop="article:modified_time", name="article:modified_time"),
        canonical_url=clean_text(canonical.get("href")) if canonical else "",
        og_title=_meta(soup, prop="og:title"),
        og_description=_meta(soup, prop="og:description"),
        og_image=_meta(soup, prop="og:image"),
        twitter_title=_meta(soup, name="twitter:title"),
        twitter_description=_meta(soup, name="twitter:description"),
        lang=lang or "en",
        page_type=detect_page_type(url),
    )


# ---------------------------------------------------------------------------
# Review extraction
# ---------------------------------------------------------------------------

def extract_rating(soup: BeautifulSoup) -> Optional[float]:
    """First numeric rating in ``[0, 10]`` found under the rating selectors.

    ``data-rating`` is tried before the element text; an unusable attribute
    falls through to the text.  Returns ``None`` rather than a default when
    nothing valid is found.
    """
    for selector in RATING_SELECTORS:
        el = soup.select_one(selector)
        if el is None:
            continue
        for raw in (el.get("data-rating"), _text(el)):
            if not raw:
                continue
            match = _NUMBER_RE.search(str(raw))
            if not match:
                continue
            value = float(match.group(0))
            if RATING_MIN <= value <= RATING_MAX:
                return value
    return None


def _add_unique(bucket: list[str], text: str) -> None:
    item = clean_text(text)
    if item and item not in bucket:
        bucket.append(item)


def extract_pros_and_cons(soup: BeautifulSoup) -> tuple[list[str], list[str]]:
    """Collect pros and cons from named containers and from headed lists.

    Both strategies feed the same lists; duplicates (exact text) are dropped
    and first-seen order is kept.
    """
    pros: list[str] = []
    cons: list[str] = []

    for selectors, bucket in ((PRO_CONTAINERS, pros), (CON_CONTAINERS, cons)):
        for selector in selectors:
            for li in soup.select(f"{selector} li"):
                _add_unique(bucket, li.get_text(" ", strip=True))

    for heading in soup.find_all(["h2", "h3", "h4"]):
        following = heading.find_next_sibling()
        if following is None or following.name not in ("ul", "ol"):
            continue
        label = _text(heading).lower()
        if any(k in label for k in PRO_KEYWORDS):
            bucket = pros
        elif any(k in label for k in CON_KEYWORDS):
            bucket = cons
        else:
            continue
        for li in following.find_all("li"):
            _add_unique(bucket, li.get_text(" ", strip=True))

    return pros, cons


def match_section(heading: str) -> Optional[str]:
    """Section key for a heading text, or ``None`` when no keyword matches."""
    lowered = heading.lower()
    for key, keywords in SECTION_KEYWORDS:
        if any(k in lowered for k in keywords):
            return key
    return None


def extract_sections(soup: BeautifulSoup) -> tuple[dict[str, str], dict[str, str]]:
    """Split the document at headings and map each block to a section key.

    Returns ``(sections, unmapped)``.  ``sections`` always has every key in
    ``SECTION_KEYS`` (empty string when nothing matched); repeated matches
    are appended.  Headings that match no key keep their text in *unmapped*.
    """
    sections = {key: "" for key in SECTION_KEYS}
    unmapped: dict[str, str] = {}

    for heading in soup.find_all(_HEADING_RE):
        title = _text(heading)
        if not title:
            continue
        parts: list[str] = []
        for sibling in heading.find_next_siblings():
            if _HEADING_RE.match(sibling.name or ""):
                break
            text = _text(sibling)
            if text:
                parts.append(text)
        content = " ".join(parts)
        if not content:
            continue

        key = match_section(title)
        if key is None:
            unmapped[title] = f"{unmapped[title]} {content}" if title in unmapped else content
        elif sections[key]:
            sections[key] = f"{sections[key]} {content}"
        else:
            sections[key] = content

    return sections, unmapped


def extract_last_updated(soup: BeautifulSoup, metadata: Optional[PageMetadata] = None) -> Optional[str]:
    for selector in LAST_UPDATED_SELECTORS:
        el = soup.select_one(selector)
        if el is None:
            continue
        parsed = parse_date(el.get("datetime") or _text(el))
        if parsed:
            return parsed
    if metadata is not None:
        return metadata.modified_time or metadata.published_time or None
    return None


def _extract_review(soup: BeautifulSoup, url: str, metadata: PageMetadata) -> BrokerReview:
    slug = broker_slug_from_url(url)
    pros, cons = extract_pros_and_cons(soup)
    sections, unmapped = extract_sections(soup)
    review = BrokerReview(
        broker_name=broker_name_from_slug(slug),
        broker_slug=slug,
        rating=extract_rating(soup),
        last_updated=extract_last_updated(soup, metadata),
        pros=pros,
        cons=cons,
        sections=sections,
        unmapped_sections=unmapped,
    )
    logger.debug(
        "[parse] %s: rating=%s pros=%d cons=%d sections=%d unmapped=%d",
        review.broker_name,
        review.rating,
        len(pros),
        len(cons),
        sum(1 for v in sections.values() if v),
        len(unmapped),
    )
    return review


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_page(html: str, url: str) -> ParsedPage:
    """Parse any page.  Review pages get a ``review`` payload attached."""
    soup = _soup(html)
    metadata = extract_metadata(soup, url)
    text = extract_text_content(html)

    review = None
    if metadata.page_type == REVIEW_PAGE:
        review = _extract_review(soup, url, metadata)

    return ParsedPage(
        url=url,
        title=metadata.title,
        page_type=metadata.page_type,
        metadata=metadata,
        text_content=text,
        content_hash=sha256_hex(text),
        review=review,
    )


def parse_broker_review(html: str, url: str) -> ParsedPage:
    """Parse a broker review page.

    Raises:
        InvalidPageKind: *url* is not a broker review URL.
    """
    if not is_broker_review_url(url):
        raise InvalidPageKind(f"Not a broker review page: {url}")
    return parse_page(html, url)


def validate_parsed_data(page: ParsedPage) -> ValidationResult:
    """Check the minimum fields a stored page needs.  Never raises."""
    errors: list[str] = []
    if not page.url:
        errors.append("Missing URL")
    if not page.title:
        errors.append("Missing title")
    if not page.text_content:
        errors.append("Missing text content")
    if not page.content_hash:
        errors.append("Missing content hash")

    if page.review is not None:
        if not page.review.broker_name:
            errors.append("Missing broker name")
        rating = page.review.rating
        if rating is not None and not (RATING_MIN <= rating <= RATING_MAX):
            errors.append("Invalid rating")

    return ValidationResult(is_valid=not errors, errors=errors)
