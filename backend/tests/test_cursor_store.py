"""
Cursor Store tests: per-object-type run lock, watermark writes, stale takeover.
"""

import pytest
import sys
import os
from datetime import timedelta

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cursor_store import CursorStore, SyncAlreadyRunningError
from fake_supabase import FakeSupabase
from models import ObjectSyncResult, parse_datetime, utc_now
from sync_status import SyncPhase, SyncStatus


class TestAcquire:

    @pytest.mark.asyncio
    async def test_first_acquire_creates_row(self):
        db = FakeSupabase()
        store = CursorStore(db)

        cursor = await store.acquire("deals", "run-1")

        assert cursor.object_type == "deals"
        assert cursor.last_synced_at is None
        row = db.rows("sync_cursors")[0]
        assert row["last_run_status"] == SyncStatus.RUNNING
        assert row["run_id"] == "run-1"
        assert row["phase"] == SyncPhase.FETCHING

    @pytest.mark.asyncio
    async def test_second_acquire_is_rejected(self):
        store = CursorStore(FakeSupabase())
        await store.acquire("deals", "run-1")

        with pytest.raises(SyncAlreadyRunningError):
            await store.acquire("deals", "run-2")

    @pytest.mark.asyncio
    async def test_different_object_types_do_not_block(self):
        store = CursorStore(FakeSupabase())

        await store.acquire("deals", "run-1")
        await store.acquire("calls", "run-2")

    @pytest.mark.asyncio
    async def test_acquire_returns_previous_watermark(self):
        db = FakeSupabase({"sync_cursors": [{
            "object_type": "calls",
            "last_synced_at": "2025-09-01T00:00:00+00:00",
            "last_run_status": SyncStatus.SUCCESS,
        }]})

        cursor = await CursorStore(db).acquire("calls", "run-1")

        assert cursor.last_synced_at == parse_datetime("2025-09-01T00:00:00Z")
        assert db.rows("sync_cursors")[0]["last_synced_at"] == "2025-09-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_stale_run_is_taken_over(self):
        started = (utc_now() - timedelta(hours=2)).isoformat()
        db = FakeSupabase({"sync_cursors": [{
            "object_type": "calls",
            "last_run_status": SyncStatus.RUNNING,
            "run_id": "dead-run",
            "run_started_at": started,
        }]})

        await CursorStore(db, stale_timeout_seconds=3600).acquire("calls", "run-2")

        assert db.rows("sync_cursors")[0]["run_id"] == "run-2"

    @pytest.mark.asyncio
    async def test_recent_run_is_not_taken_over(self):
        db = FakeSupabase({"sync_cursors": [{
            "object_type": "calls",
            "last_run_status": SyncStatus.RUNNING,
            "run_id": "live-run",
            "run_started_at": utc_now().isoformat(),
        }]})

        with pytest.raises(SyncAlreadyRunningError):
            await CursorStore(db, stale_timeout_seconds=3600).acquire("calls", "run-2")
        assert db.rows("sync_cursors")[0]["run_id"] == "live-run"


class TestCompleteAndFail:

    @pytest.mark.asyncio
    async def test_complete_advances_watermark(self):
        db = FakeSupabase()
        store = CursorStore(db)
        await store.acquire("deals", "run-1")
        watermark = parse_datetime("2025-09-30T12:00:00Z")
        result = ObjectSyncResult(object_type="deals", status=SyncStatus.SUCCESS, run_id="run-1",
                                  fetched=10, upserted=7, skipped=1)

        await store.complete("deals", "run-1", watermark, result)

        cursor = await store.get("deals")
        assert cursor.last_run_status == SyncStatus.SUCCESS
        assert cursor.last_synced_at == watermark
        assert cursor.phase == SyncPhase.IDLE
        assert cursor.records_upserted == 7
        assert cursor.records_skipped == 1

    @pytest.mark.asyncio
    async def test_fail_keeps_watermark(self):
        db = FakeSupabase({"sync_cursors": [{
            "object_type": "deals",
            "last_synced_at": "2025-09-01T00:00:00+00:00",
            "last_run_status": SyncStatus.SUCCESS,
        }]})
        store = CursorStore(db)
        await store.acquire("deals", "run-1")

        await store.fail("deals", "run-1", "FatalError: API error 400")

        cursor = await store.get("deals")
        assert cursor.last_run_status == SyncStatus.FAILED
        assert cursor.error_message == "FatalError: API error 400"
        assert cursor.last_synced_at == parse_datetime("2025-09-01T00:00:00Z")

    @pytest.mark.asyncio
    async def test_complete_after_losing_claim_raises(self):
        db = FakeSupabase()
        store = CursorStore(db)
        await store.acquire("deals", "run-1")
        db.rows("sync_cursors")[0]["run_id"] = "someone-else"

        with pytest.raises(SyncAlreadyRunningError):
            await store.complete("deals", "run-1", utc_now(), ObjectSyncResult(object_type="deals", status="success"))

    @pytest.mark.asyncio
    async def test_status_write_failure_is_not_fatal(self):
        db = FakeSupabase()
        store = CursorStore(db)
        await store.acquire("deals", "run-1")
        db.fail("update", "sync_cursors")

        await store.set_phase("deals", "run-1", SyncPhase.UPSERTING)

    @pytest.mark.asyncio
    async def test_record_run_appends_history(self):
        db = FakeSupabase()
        store = CursorStore(db)
        result = ObjectSyncResult(object_type="calls", status=SyncStatus.FAILED, run_id="run-1",
                                  error="TransientError: timeout", fetched=3)

        await store.record_run(result, "scheduled", utc_now())

        row = db.rows("sync_runs")[0]
        assert row["run_id"] == "run-1"
        assert row["trigger"] == "scheduled"
        assert row["status"] == SyncStatus.FAILED
        assert row["records_fetched"] == 3


class TestListAndCleanup:

    @pytest.mark.asyncio
    async def test_list_all_sorted(self):
        db = FakeSupabase({"sync_cursors": [
            {"object_type": "deals", "last_run_status": SyncStatus.SUCCESS},
            {"object_type": "calls", "last_run_status": SyncStatus.FAILED, "error_message": "boom"},
        ]})

        cursors = await CursorStore(db).list_all()

        assert [c.object_type for c in cursors] == ["calls", "deals"]
        assert cursors[0].error_message == "boom"

    @pytest.mark.asyncio
    async def test_cleanup_resets_only_stale_runs(self):
        db = FakeSupabase({"sync_cursors": [
            {"object_type": "calls", "last_run_status": SyncStatus.RUNNING, "run_id": "old",
             "run_started_at": (utc_now() - timedelta(hours=3)).isoformat()},
            {"object_type": "deals", "last_run_status": SyncStatus.RUNNING, "run_id": "new",
             "run_started_at": utc_now().isoformat()},
        ]})

        reset = await CursorStore(db, stale_timeout_seconds=3600).cleanup_stale()

        assert reset == 1
        statuses = {r["object_type"]: r["last_run_status"] for r in db.rows("sync_cursors")}
        assert statuses == {"calls": SyncStatus.FAILED, "deals": SyncStatus.RUNNING}
