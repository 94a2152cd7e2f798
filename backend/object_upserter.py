"""
Object Upserter.
Normalizes raw CRM records through the adapter and writes them to the crm_*
mirror tables, keyed by CRM id.

Re-ingesting a record updates it in place. The JSONB property bag is merged
(stored keys kept, incoming keys overwrite), and rows whose mirrored values
did not change are not rewritten, so repeated runs over the same data leave
the table untouched.
"""

import logging
from typing import Optional

from crm_adapters import CRMAdapter
from mirror_db import _db, chunked, fetch_in, table_for
from models import UpsertResult, parse_datetime

logger = logging.getLogger(__name__)

# Batch size for upserts
UPSERT_BATCH_SIZE = 500

# Columns compared as instants rather than strings (Postgres reformats them)
_TIMESTAMP_COLUMNS = {"created_at", "updated_at", "close_date", "call_timestamp"}

# Local bookkeeping, never a reason to rewrite a row
_IGNORED_COLUMNS = {"synced_at"}


def _is_newer_or_same(candidate: dict, current: dict) -> bool:
    cand = parse_datetime(candidate.get("updated_at"))
    curr = parse_datetime(current.get("updated_at"))
    if cand is None:
        return curr is None
    return curr is None or cand >= curr


def _same_values(stored: dict, row: dict) -> bool:
    for key, value in row.items():
        if key in _IGNORED_COLUMNS:
            continue
        old = stored.get(key)
        if key in _TIMESTAMP_COLUMNS:
            if parse_datetime(old) != parse_datetime(value):
                return False
        elif old != value:
            return False
    return True


class ObjectUpserter:
    """Idempotent writer for contacts, deals and calls."""

    def __init__(self, supabase, adapter: CRMAdapter):
        self.supabase = supabase
        self.adapter = adapter

    async def upsert(self, object_type: str, items: list[dict]) -> UpsertResult:
        """
        Insert or update one page of raw CRM records.

        Args:
            object_type: 'contacts', 'deals' or 'calls'
            items: Raw records as returned by the adapter's fetch_page

        Returns:
            UpsertResult; `count` is the number of rows inserted or updated
        """
        table = table_for(object_type)
        result = UpsertResult()

        incoming: dict[str, dict] = {}
        for raw in items:
            row = self.adapter.normalize(object_type, raw)
            if not row:
                result.skipped += 1
                logger.warning(f"Skipping {object_type} record without an id: {str(raw)[:200]}")
                continue
            current = incoming.get(row["id"])
            if current is None or _is_newer_or_same(row, current):
                incoming[row["id"]] = row

        if not incoming:
            return result

        for row in incoming.values():
            updated = parse_datetime(row.get("updated_at"))
            if updated and (result.max_updated_at is None or updated > result.max_updated_at):
                result.max_updated_at = updated

        stored_rows = await fetch_in(self.supabase, table, "*", "id", incoming.keys())
        existing = {str(r["id"]): r for r in stored_rows}

        to_write = []
        new_ids = set()
        for row_id, row in incoming.items():
            stored = existing.get(row_id)
            if stored is None:
                to_write.append(row)
                new_ids.add(row_id)
                continue
            merged = self._merge(object_type, stored, row, result)
            if merged is None:
                result.unchanged += 1
            else:
                to_write.append(merged)

        failed_ids = await self._write(table, to_write)

        result.failed = len(failed_ids)
        result.count = len(to_write) - result.failed
        result.inserted = len(new_ids - failed_ids)
        result.updated = result.count - result.inserted

        logger.info(
            f"Upserted {object_type}: {result.inserted} inserted, {result.updated} updated, "
            f"{result.unchanged} unchanged, {result.skipped} skipped, {result.failed} failed"
        )
        return result

    def _merge(self, object_type: str, stored: dict, row: dict, result: UpsertResult) -> Optional[dict]:
        """Combine a stored row with an incoming one. Returns None when nothing changes."""
        stored_props = stored.get("properties") or {}
        incoming_props = row.get("properties") or {}
        stored_updated = parse_datetime(stored.get("updated_at"))
        incoming_updated = parse_datetime(row.get("updated_at"))

        if stored_updated and incoming_updated and incoming_updated < stored_updated:
            # Older copy: stored values and updated_at win, it may only fill gaps
            result.out_of_order += 1
            logger.warning(
                f"Out-of-order {object_type} {row['id']}: incoming updated_at "
                f"{incoming_updated.isoformat()} < stored {stored_updated.isoformat()}"
            )
            missing = {k: v for k, v in incoming_props.items() if k not in stored_props}
            if not missing:
                return None
            merged = {key: stored.get(key) for key in row}
            merged["properties"] = {**stored_props, **missing}
            merged["synced_at"] = row["synced_at"]
            return merged

        merged = dict(row)
        merged["properties"] = {**stored_props, **incoming_props}
        if incoming_updated is None:
            merged["updated_at"] = stored.get("updated_at")
        if _same_values(stored, merged):
            return None
        return merged

    async def _write(self, table: str, rows: list[dict]) -> set:
        """Upsert rows in batches. Returns the ids that could not be written."""
        failed_ids = set()
        for batch in chunked(rows, UPSERT_BATCH_SIZE):
            try:
                await _db(lambda b=batch: self.supabase.table(table).upsert(
                    b,
                    on_conflict="id"
                ).execute())
            except Exception as e:
                logger.error(f"Batch upsert failed for {table}: {e}")
                # Try one-by-one as fallback
                for row in batch:
                    try:
                        await _db(lambda r=row: self.supabase.table(table).upsert(
                            r,
                            on_conflict="id"
                        ).execute())
                    except Exception as inner_e:
                        failed_ids.add(row["id"])
                        logger.warning(f"Single upsert failed for {table} (id={row['id']}): {inner_e}")
        return failed_ids
