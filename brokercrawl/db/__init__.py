"""Database layer package.

Public re-exports so callers can write::

    from brokercrawl.db import get_connection, init_db, PageStore
"""

from brokercrawl.db.connection import get_connection
from brokercrawl.db.migrations import init_db
from brokercrawl.db.store import PageStore

__all__ = ["get_connection", "init_db", "PageStore"]
