"""Store maintenance commands: init, stats, search, delete."""

from __future__ import annotations

import asyncio
import json
from typing import Optional

import typer

from brokercrawl.config import settings
from brokercrawl.db import PageStore, get_connection, init_db
from brokercrawl.errors import StoreUnavailable

db_app = typer.Typer(help="Page store operations.", no_args_is_help=True)


def _open_store() -> PageStore:
    try:
        return PageStore()
    except StoreUnavailable as exc:
        typer.echo(f"[db] {exc}", err=True)
        raise typer.Exit(1)


@db_app.command("init")
def db_init() -> None:
    """Initialise the SQLite database (create tables if they do not exist)."""
    conn = get_connection()
    init_db(conn)
    conn.close()
    typer.echo(f"[db init] Database ready at {settings.db_path}")


@db_app.command("stats")
def db_stats() -> None:
    """Print page totals, status counts and review-page counts."""
    store = _open_store()
    try:
        stats = asyncio.run(store.get_crawling_stats())
    finally:
        store.close()
    typer.echo(json.dumps(stats, indent=2))


@db_app.command("search")
def db_search(
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Substring of URL or title."),
    page_type: Optional[str] = typer.Option(None, "--type", help="Page type, e.g. broker_review."),
    status: Optional[int] = typer.Option(None, "--status", help="HTTP status."),
    date_from: Optional[str] = typer.Option(None, "--from", help="fetched_at lower bound (ISO)."),
    date_to: Optional[str] = typer.Option(None, "--to", help="fetched_at upper bound (ISO)."),
    limit: int = typer.Option(20, "--limit", min=1),
    offset: int = typer.Option(0, "--offset", min=0),
) -> None:
    """List stored pages matching the filters, newest first."""
    store = _open_store()
    try:
        records = asyncio.run(
            store.search_pages(
                query=query,
                page_type=page_type,
                status=status,
                date_from=date_from,
                date_to=date_to,
                limit=limit,
                offset=offset,
            )
        )
    finally:
        store.close()

    if not records:
        typer.echo("[db search] No pages found.")
        return
    for record in records:
        typer.echo(
            f"  {record.id:>6}  [{record.page_type or '?'}]  {record.status}  "
            f"{record.fetched_at}  {record.url}"
        )


@db_app.command("delete")
def db_delete(
    urls: list[str] = typer.Argument(..., help="URLs to remove from the store."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Delete stored pages by URL."""
    if not yes:
        typer.confirm(f"Delete {len(urls)} page(s)?", abort=True)
    store = _open_store()
    try:
        deleted = asyncio.run(store.delete_pages(urls))
    finally:
        store.close()
    typer.echo(f"[db delete] Removed {deleted} page(s).")
