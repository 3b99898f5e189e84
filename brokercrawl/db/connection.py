"""SQLite connection factory for the page store.

Example::

    from brokercrawl.db.connection import get_connection

    conn = get_connection()
    total = conn.execute("SELECT COUNT(*) FROM crawled_pages").fetchone()[0]
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Optional, Union

from brokercrawl.config import settings

MEMORY_DB = ":memory:"

# Milliseconds a writer waits on a locked database before raising.
_BUSY_TIMEOUT_MS = 5000


def get_connection(db_path: Optional[Union[Path, str]] = None) -> sqlite3.Connection:
    """Open the page database at *db_path* (default ``settings.db_path``).

    The connection is created with ``check_same_thread=False`` because the
    page store drives it from worker threads (always one at a time, under a
    lock).  WAL journal mode lets readers such as ``brokercrawl db stats``
    run while a crawl is writing.

    Returns:
        A connection whose rows are :class:`sqlite3.Row`, so columns can be
        read by name.
    """
    target = str(db_path or settings.db_path)
    if target != MEMORY_DB:
        Path(target).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(target, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {_BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn
