"""Schema creation and versioned migrations for the page store.

``init_db`` can run against a fresh or an existing database: ``schema.sql``
only uses ``IF NOT EXISTS`` and every migration runs once, tracked by
version number in ``schema_version``.
"""

from __future__ import annotations

import sqlite3

from brokercrawl.config import settings

PAGES_TABLE = "crawled_pages"

# (version, sql) pairs in ascending version order.
MIGRATIONS: list[tuple[int, str]] = [
    (1, "CREATE INDEX IF NOT EXISTS idx_crawled_pages_updated_at ON crawled_pages(updated_at)"),
]


def init_db(conn: sqlite3.Connection) -> None:
    """Create ``crawled_pages`` and its indexes, then apply pending migrations."""
    conn.executescript(settings.schema_path.read_text(encoding="utf-8"))
    with conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            " version INTEGER PRIMARY KEY,"
            " applied_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')))"
        )
    migrate(conn)


def table_exists(conn: sqlite3.Connection, table: str = PAGES_TABLE) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def current_version(conn: sqlite3.Connection) -> int:
    """Highest applied migration version, 0 on a fresh database."""
    return conn.execute("SELECT COALESCE(MAX(version), 0) FROM schema_version").fetchone()[0]


def migrate(conn: sqlite3.Connection) -> None:
    """Apply every migration newer than :func:`current_version`, one transaction each."""
    applied = current_version(conn)
    for version, sql in MIGRATIONS:
        if version <= applied:
            continue
        with conn:
            conn.execute(sql)
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
