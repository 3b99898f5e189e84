"""Centralised settings for the brokercrawl pipeline.

All runtime configuration is resolved here in one place.  Values can be
overridden via environment variables or a `.env` file in the project root
(loaded automatically when this module is imported).

Per-run crawl options are built with :meth:`CrawlOptions.resolve`, which
layers explicit overrides (CLI flags, constructor arguments) on top of the
environment-backed :data:`settings`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

# Load .env from the project root (one level up from this package)
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path, override=False)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_optional_int(name: str) -> Optional[int]:
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else None


@dataclass
class Settings:
    # ------------------------------------------------------------------
    # Workspace / storage
    # ------------------------------------------------------------------
    workspace_dir: Path = field(
        default_factory=lambda: Path(
            os.environ.get("CRAWLER_WORKSPACE", Path.home() / ".brokercrawl")
        )
    )
    db_path_override: str = field(
        default_factory=lambda: os.environ.get("CRAWLER_DB_PATH", "")
    )

    @property
    def db_path(self) -> Path:
        """Absolute path to the SQLite database file."""
        if self.db_path_override:
            return Path(self.db_path_override)
        return self.workspace_dir / "crawled_pages.db"

    @property
    def schema_path(self) -> Path:
        """Absolute path to the schema SQL file bundled with the package."""
        return Path(__file__).resolve().parent / "db" / "schema.sql"

    db_batch_size: int = field(
        default_factory=lambda: int(os.environ.get("DB_BATCH_SIZE", "50"))
    )
    db_batch_delay: float = field(
        default_factory=lambda: float(os.environ.get("DB_BATCH_DELAY", "0.1"))
    )

    # ------------------------------------------------------------------
    # Target site
    # ------------------------------------------------------------------
    target_origin: str = field(
        default_factory=lambda: os.environ.get(
            "CRAWL_TARGET_ORIGIN", "https://brokerchooser.com"
        ).rstrip("/")
    )
    sitemap_url_override: str = field(
        default_factory=lambda: os.environ.get("CRAWL_SITEMAP_URL", "")
    )

    @property
    def sitemap_url(self) -> str:
        """Root sitemap URL; defaults to ``<origin>/sitemap.xml``."""
        return self.sitemap_url_override or f"{self.target_origin}/sitemap.xml"

    sitemap_delay: float = field(
        default_factory=lambda: float(os.environ.get("SITEMAP_DELAY", "0.5"))
    )

    # ------------------------------------------------------------------
    # Fetch layer
    # ------------------------------------------------------------------
    user_agent: str = field(
        default_factory=lambda: os.environ.get(
            "CRAWLER_USER_AGENT", "BrokerChooser-Crawler/1.0"
        )
    )
    timeout_ms: int = field(
        default_factory=lambda: int(os.environ.get("CRAWLER_TIMEOUT", "60000"))
    )
    retries: int = field(
        default_factory=lambda: int(os.environ.get("CRAWLER_RETRIES", "3"))
    )
    retry_base_delay: float = field(
        default_factory=lambda: float(os.environ.get("CRAWLER_RETRY_BASE_DELAY", "1.0"))
    )
    retry_max_delay: float = field(
        default_factory=lambda: float(os.environ.get("CRAWLER_RETRY_MAX_DELAY", "30.0"))
    )

    # Web Unlocker proxy (fallback transport)
    unlocker_api_key: str = field(
        default_factory=lambda: os.environ.get("BRIGHTDATA_API_KEY", "")
    )
    unlocker_zone: str = field(
        default_factory=lambda: os.environ.get("BRIGHTDATA_ZONE", "")
    )
    unlocker_endpoint: str = field(
        default_factory=lambda: os.environ.get(
            "BRIGHTDATA_ENDPOINT", "https://api.brightdata.com/request"
        )
    )

    @property
    def unlocker_configured(self) -> bool:
        """True when both the proxy API key and zone are present."""
        return bool(self.unlocker_api_key and self.unlocker_zone)

    # ------------------------------------------------------------------
    # Crawl orchestration
    # ------------------------------------------------------------------
    concurrency: int = field(
        default_factory=lambda: int(os.environ.get("CRAWLER_CONCURRENCY", "6"))
    )
    delay_ms: int = field(
        default_factory=lambda: int(os.environ.get("CRAWLER_DELAY", "1000"))
    )
    debug: bool = field(default_factory=lambda: _env_bool("CRAWLER_DEBUG", False))
    resumable: bool = field(default_factory=lambda: _env_bool("CRAWLER_RESUMABLE", True))
    skip_if_exists: bool = field(
        default_factory=lambda: _env_bool("CRAWLER_SKIP_IF_EXISTS", True)
    )
    max_urls: Optional[int] = field(
        default_factory=lambda: _env_optional_int("CRAWLER_MAX_URLS")
    )
    resume_batch_size: int = field(
        default_factory=lambda: int(os.environ.get("RESUME_BATCH_SIZE", "100"))
    )
    max_recorded_errors: int = field(
        default_factory=lambda: int(os.environ.get("CRAWLER_MAX_ERRORS", "1000"))
    )

    def ensure_workspace(self) -> None:
        """Create the workspace directory if it does not exist."""
        self.workspace_dir.mkdir(parents=True, exist_ok=True)


# Module-level singleton; import this everywhere:
#   from brokercrawl.config import settings
settings = Settings()


# ---------------------------------------------------------------------------
# Per-run crawl options
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CrawlOptions:
    """Effective options for one crawl run.

    Times are stored in the units the environment uses (milliseconds for
    ``timeout_ms`` / ``delay_ms``); use :attr:`timeout` and :attr:`delay` for
    seconds.
    """

    concurrency: int = 6
    timeout_ms: int = 60000
    retries: int = 3
    delay_ms: int = 1000
    debug: bool = False
    resumable: bool = True
    force: bool = False
    skip_if_exists: bool = True
    max_urls: Optional[int] = None
    sitemap_url: str = "https://brokerchooser.com/sitemap.xml"

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def delay(self) -> float:
        return self.delay_ms / 1000.0

    @classmethod
    def resolve(cls, source: Optional[Settings] = None, **overrides: Any) -> "CrawlOptions":
        """Build options with priority explicit override > environment > default.

        Overrides whose value is ``None`` are ignored so that unset CLI flags
        fall through to the environment.

        Raises:
            TypeError: If an override names an unknown option.
        """
        source = source or settings
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"Unknown crawl option(s): {', '.join(sorted(unknown))}")

        base = cls(
            concurrency=source.concurrency,
            timeout_ms=source.timeout_ms,
            retries=source.retries,
            delay_ms=source.delay_ms,
            debug=source.debug,
            resumable=source.resumable,
            skip_if_exists=source.skip_if_exists,
            max_urls=source.max_urls,
            sitemap_url=source.sitemap_url,
        )
        explicit = {k: v for k, v in overrides.items() if v is not None}
        options = replace(base, **explicit)
        if options.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if options.retries < 1:
            raise ValueError("retries must be at least 1")
        return options

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
