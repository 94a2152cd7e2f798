"""
Cursor Store.
Persists, per object type, the last successfully synced watermark and the
metadata of the latest run (sync_cursors), plus an append-only run history
(sync_runs).

The cursor row doubles as the per-object-type run lock: a run holds the
object type while last_run_status == 'running'. Acquisition is a conditional
UPDATE, so two processes racing for the same object type cannot both win.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from mirror_db import _db, CURSORS_TABLE, RUNS_TABLE
from models import ObjectSyncResult, SyncCursor, to_iso, utc_now
from sync_status import SyncStatus, SyncPhase

logger = logging.getLogger(__name__)

# Runs stuck in "running" longer than this (seconds) are considered dead
STALE_RUN_TIMEOUT = 3600

_COUNT_FIELDS = (
    "records_fetched", "records_upserted", "records_skipped",
    "associations_resolved", "attributions_computed",
)


class SyncAlreadyRunningError(Exception):
    """Another run currently holds this object type."""


def _counts(result: Optional[ObjectSyncResult]) -> dict:
    if result is None:
        return {}
    return {
        "records_fetched": result.fetched,
        "records_upserted": result.upserted,
        "records_skipped": result.skipped,
        "associations_resolved": result.associations_resolved,
        "attributions_computed": result.attributions_computed,
    }


class CursorStore:
    """Reads and writes sync_cursors / sync_runs for the orchestrator."""

    def __init__(self, supabase, stale_timeout_seconds: int = STALE_RUN_TIMEOUT):
        self.supabase = supabase
        self.stale_timeout = timedelta(seconds=stale_timeout_seconds)

    async def get(self, object_type: str) -> SyncCursor:
        """Current cursor for an object type (a fresh idle cursor if none exists)."""
        result = await _db(lambda: self.supabase.table(CURSORS_TABLE).select("*").eq(
            "object_type", object_type
        ).execute())
        if result.data:
            return SyncCursor.from_row(result.data[0])
        return SyncCursor(object_type=object_type)

    async def list_all(self) -> list[SyncCursor]:
        """Snapshot of every cursor row, for the run-status query."""
        result = await _db(lambda: self.supabase.table(CURSORS_TABLE).select("*").order(
            "object_type"
        ).execute())
        return [SyncCursor.from_row(r) for r in (result.data or [])]

    def _is_stale(self, cursor: SyncCursor, now: datetime) -> bool:
        started = cursor.run_started_at or cursor.last_run_at
        return started is None or now - started >= self.stale_timeout

    async def acquire(self, object_type: str, run_id: str) -> SyncCursor:
        """
        Claim the object type for `run_id`.

        Returns the cursor as it was before the run (its watermark is what the
        run should sync from). Raises SyncAlreadyRunningError if another live
        run holds it.
        """
        await _db(lambda: self.supabase.table(CURSORS_TABLE).upsert(
            {"object_type": object_type, "last_run_status": SyncStatus.IDLE, "phase": SyncPhase.IDLE},
            on_conflict="object_type",
            ignore_duplicates=True,
        ).execute())

        cursor = await self.get(object_type)
        now = utc_now()

        update = {
            "last_run_status": SyncStatus.RUNNING,
            "phase": SyncPhase.FETCHING,
            "run_id": run_id,
            "run_started_at": now.isoformat(),
            "run_finished_at": None,
            "last_run_at": now.isoformat(),
            "error_message": None,
            **{name: 0 for name in _COUNT_FIELDS},
        }

        query = self.supabase.table(CURSORS_TABLE).update(update).eq("object_type", object_type)
        if cursor.last_run_status == SyncStatus.RUNNING:
            if not self._is_stale(cursor, now):
                raise SyncAlreadyRunningError(
                    f"{object_type} sync already running (run_id={cursor.run_id})"
                )
            logger.warning(
                f"Taking over stale {object_type} run {cursor.run_id} "
                f"(started {to_iso(cursor.run_started_at)})"
            )
            if cursor.run_id:
                query = query.eq("run_id", cursor.run_id)
            else:
                query = query.is_("run_id", "null")
        else:
            query = query.neq("last_run_status", SyncStatus.RUNNING)

        result = await _db(query.execute)
        if not result.data:
            raise SyncAlreadyRunningError(f"{object_type} sync was claimed by another run")
        return cursor

    async def set_phase(self, object_type: str, run_id: str, phase: str, result: ObjectSyncResult = None):
        """Record progress. Non-fatal: a failed status write never aborts a run."""
        data = {"phase": phase, **_counts(result)}
        try:
            await _db(lambda: self.supabase.table(CURSORS_TABLE).update(data).eq(
                "object_type", object_type
            ).eq("run_id", run_id).execute())
        except Exception as e:
            logger.warning(f"Failed to update {object_type} phase to {phase}: {e}")

    async def complete(self, object_type: str, run_id: str, watermark: Optional[datetime], result: ObjectSyncResult):
        """Advance the watermark and mark the run successful.

        This write is the commit point of a run, so errors propagate.
        """
        now = utc_now().isoformat()
        data = {
            "last_run_status": SyncStatus.SUCCESS,
            "phase": SyncPhase.IDLE,
            "run_finished_at": now,
            "last_run_at": now,
            "error_message": None,
            **_counts(result),
        }
        if watermark is not None:
            data["last_synced_at"] = watermark.isoformat()

        written = await _db(lambda: self.supabase.table(CURSORS_TABLE).update(data).eq(
            "object_type", object_type
        ).eq("run_id", run_id).execute())
        if not written.data:
            raise SyncAlreadyRunningError(
                f"{object_type} run {run_id} lost its claim before the watermark could advance"
            )

    async def fail(self, object_type: str, run_id: str, error_message: str, result: ObjectSyncResult = None):
        """Mark the run failed without touching the watermark."""
        now = utc_now().isoformat()
        data = {
            "last_run_status": SyncStatus.FAILED,
            "phase": SyncPhase.IDLE,
            "run_finished_at": now,
            "last_run_at": now,
            "error_message": error_message[:1000],
            **_counts(result),
        }
        try:
            await _db(lambda: self.supabase.table(CURSORS_TABLE).update(data).eq(
                "object_type", object_type
            ).eq("run_id", run_id).execute())
        except Exception as e:
            logger.error(f"Failed to record failure for {object_type} run {run_id}: {e}")

    async def record_run(self, result: ObjectSyncResult, trigger: str, started_at: datetime):
        """Append the run to sync_runs. Non-fatal."""
        row = {
            "run_id": result.run_id,
            "object_type": result.object_type,
            "trigger": trigger,
            "status": result.status,
            "started_at": started_at.isoformat(),
            "finished_at": utc_now().isoformat(),
            "duration_ms": result.duration_ms,
            "pages": result.pages,
            "watermark": to_iso(result.watermark),
            "error_message": result.error,
            **_counts(result),
        }
        try:
            await _db(lambda: self.supabase.table(RUNS_TABLE).insert(row).execute())
        except Exception as e:
            logger.warning(f"Failed to record {result.object_type} run history: {e}")

    async def cleanup_stale(self) -> int:
        """Reset runs stuck in 'running' past the stale timeout to 'failed'.

        If the process died mid-run, the row would otherwise block its object
        type until the stale timeout lets a new run take it over.
        """
        result = await _db(lambda: self.supabase.table(CURSORS_TABLE).select("*").eq(
            "last_run_status", SyncStatus.RUNNING
        ).execute())

        now = utc_now()
        reset = 0
        for row in result.data or []:
            cursor = SyncCursor.from_row(row)
            if not self._is_stale(cursor, now):
                continue
            query = self.supabase.table(CURSORS_TABLE).update({
                "last_run_status": SyncStatus.FAILED,
                "phase": SyncPhase.IDLE,
                "run_finished_at": now.isoformat(),
                "error_message": "Reset after exceeding the stale-run timeout (process likely stopped)",
            }).eq("object_type", cursor.object_type)
            if cursor.run_id:
                query = query.eq("run_id", cursor.run_id)
            try:
                await _db(query.execute)
                reset += 1
            except Exception as e:
                logger.warning(f"Failed to reset stale {cursor.object_type} run: {e}")

        if reset:
            logger.info(f"Reset {reset} stale 'running' cursor rows to 'failed'")
        return reset
