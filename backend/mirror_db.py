"""
Mirror store helpers.

IMPORTANT: The supabase-py client is SYNCHRONOUS (httpx.Client, not AsyncClient).
Every .execute() call blocks the thread. All Supabase calls made from async code
MUST go through `_db(fn)`, which runs them in a thread pool via asyncio.to_thread().
"""

import asyncio
import logging
from typing import Callable, Iterable, Iterator, Optional

from supabase import create_client, Client

logger = logging.getLogger(__name__)

# PostgREST returns at most this many rows per request by default
READ_PAGE_SIZE = 1000

# Keep `in.(...)` filters well below URL length limits
IN_FILTER_CHUNK = 200

CONTACTS_TABLE = "crm_contacts"
DEALS_TABLE = "crm_deals"
CALLS_TABLE = "crm_calls"
ASSOCIATIONS_TABLE = "crm_associations"
CURSORS_TABLE = "sync_cursors"
RUNS_TABLE = "sync_runs"
ATTRIBUTIONS_TABLE = "call_attributions"

OBJECT_TABLES = {
    "contacts": CONTACTS_TABLE,
    "deals": DEALS_TABLE,
    "calls": CALLS_TABLE,
}


def table_for(object_type: str) -> str:
    try:
        return OBJECT_TABLES[object_type]
    except KeyError:
        raise ValueError(f"No mirror table for object type {object_type!r}")


def get_supabase(url: str, key: str) -> Client:
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required")
    return create_client(url, key)


async def _db(fn):
    """Run a synchronous Supabase call in a thread pool to avoid blocking the event loop."""
    return await asyncio.to_thread(fn)


def chunked(items: list, size: int) -> Iterator[list]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


async def fetch_all(build_query: Callable, page_size: int = READ_PAGE_SIZE) -> list[dict]:
    """
    Read every row of a query, page by page.

    Args:
        build_query: Zero-arg callable returning a fresh, ordered select query
                     (a builder can only be executed once).
    """
    rows: list[dict] = []
    start = 0
    while True:
        result = await _db(lambda s=start: build_query().range(s, s + page_size - 1).execute())
        page = result.data or []
        rows.extend(page)
        if len(page) < page_size:
            return rows
        start += page_size


async def fetch_in(
    supabase,
    table: str,
    columns: str,
    column: str,
    values: Iterable,
    extra: Optional[Callable] = None,
    order: Optional[tuple] = None,
) -> list[dict]:
    """Select rows whose `column` is in `values`, chunking the IN filter.

    `order` must make the row order total, otherwise range paging can skip rows.
    """
    unique = list(dict.fromkeys(v for v in values if v is not None))
    rows: list[dict] = []
    for chunk in chunked(unique, IN_FILTER_CHUNK):
        def build(c=chunk):
            query = supabase.table(table).select(columns).in_(column, c)
            if extra:
                query = extra(query)
            for name in order or (column,):
                query = query.order(name)
            return query
        rows.extend(await fetch_all(build))
    return rows
