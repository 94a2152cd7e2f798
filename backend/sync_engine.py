"""
CRM Sync Engine.
Mirrors HubSpot contacts, deals and calls into Supabase and keeps the call
attributions current. No write-back to the CRM. Pure ETL pipeline.

Each object type runs its own state machine, concurrently with the others:

    idle -> fetching -> upserting -> resolving_associations
         -> attributing (deals only) -> advancing_cursor -> idle

A run that fails at any step records status 'failed' and leaves the watermark
where it was, so the next run re-reads the same window. Both triggers
(scheduled loop and on-demand) go through SyncEngine.run_sync.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Iterable, Optional

from association_resolver import AssociationResolver
from call_attribution import CallAttributionEngine
from crm_adapters import CRMAdapter, create_adapter
from cursor_store import CursorStore, SyncAlreadyRunningError
from hubspot_crm import HubSpotRateLimiter
from mirror_db import get_supabase
from models import ObjectSyncResult, SyncCursor, SyncReport, utc_now
from object_upserter import ObjectUpserter
from sync_config import SyncConfig
from sync_status import SyncPhase, SyncStatus, SyncTrigger

logger = logging.getLogger(__name__)

# Track active sync loops: {loop_key: asyncio.Task}
_active_syncs: dict[str, asyncio.Task] = {}

DEFAULT_LOOP_KEY = "hubspot"


class SyncWriteError(Exception):
    """Mirror rows could not be written; the run must not advance its cursor."""


def _summarize_error(error: BaseException) -> str:
    """One-line error summary for sync_cursors.error_message (never a traceback)."""
    text = str(error).strip().splitlines()
    message = f"{type(error).__name__}: {text[0]}" if text else type(error).__name__
    return message[:500]


class SyncEngine:
    """Runs incremental (or full) syncs for the configured object types."""

    def __init__(
        self,
        supabase,
        adapter: CRMAdapter,
        config: Optional[SyncConfig] = None,
        cursor_store: Optional[CursorStore] = None,
        upserter: Optional[ObjectUpserter] = None,
        resolver: Optional[AssociationResolver] = None,
        attribution: Optional[CallAttributionEngine] = None,
    ):
        self.supabase = supabase
        self.adapter = adapter
        self.config = config or SyncConfig()
        self.cursor_store = cursor_store or CursorStore(supabase, self.config.stale_timeout_seconds)
        self.upserter = upserter or ObjectUpserter(supabase, adapter)
        self.resolver = resolver or AssociationResolver(supabase, adapter, self.config.association_targets)
        self.attribution = attribution or CallAttributionEngine(supabase, self.config.closed_won_stages)

    async def run_sync(
        self,
        object_types: Optional[Iterable[str]] = None,
        trigger: str = SyncTrigger.ON_DEMAND,
        full: bool = False,
        since: Optional[datetime] = None,
    ) -> SyncReport:
        """
        Sync the given object types (default: all configured) concurrently.

        Args:
            object_types: Subset of the adapter's supported entities
            trigger: SyncTrigger.SCHEDULED or SyncTrigger.ON_DEMAND (recorded only)
            full: Ignore the stored watermark and read the full list
            since: Explicit lower bound overriding the stored watermark

        Returns:
            SyncReport; per-type failures are reported in it, not raised
        """
        types = list(dict.fromkeys(object_types or self.config.object_types))
        supported = self.adapter.supported_entities()
        unknown = [t for t in types if t not in supported]
        if unknown:
            raise ValueError(f"Unsupported object types: {unknown} (supported: {supported})")

        start = time.monotonic()
        logger.info(f"Sync started ({trigger}): {', '.join(types)}")

        # Different object types run in parallel; the shared rate limiter
        # keeps the combined request rate under the HubSpot ceiling.
        results = await asyncio.gather(*(
            self._sync_object(t, trigger, full=full, since=since) for t in types
        ))

        report = SyncReport(
            objects_synced=sum(r.upserted for r in results),
            associations_resolved=sum(r.associations_resolved for r in results),
            attributions_computed=sum(r.attributions_computed for r in results),
            duration_ms=int((time.monotonic() - start) * 1000),
            results={r.object_type: r for r in results},
        )
        failed = [r.object_type for r in results if r.status != SyncStatus.SUCCESS]
        if failed:
            logger.error(f"Sync finished with failures ({trigger}): {failed} in {report.duration_ms}ms")
        else:
            logger.info(
                f"Sync complete ({trigger}): {report.objects_synced} objects, "
                f"{report.associations_resolved} associations, "
                f"{report.attributions_computed} attributions in {report.duration_ms}ms"
            )
        return report

    async def last_runs(self) -> list[SyncCursor]:
        """Per-object-type watermark and last-run metadata."""
        return await self.cursor_store.list_all()

    async def _sync_object(self, object_type: str, trigger: str, full: bool = False, since: Optional[datetime] = None) -> ObjectSyncResult:
        run_id = uuid.uuid4().hex
        result = ObjectSyncResult(object_type=object_type, status=SyncStatus.RUNNING, run_id=run_id)
        started_at = utc_now()
        start = time.monotonic()

        try:
            cursor = await self.cursor_store.acquire(object_type, run_id)
        except SyncAlreadyRunningError as e:
            logger.warning(f"Skipping {object_type}: {e}")
            result.status = SyncStatus.FAILED
            result.error = _summarize_error(e)
            return result
        except Exception as e:
            # The run never held the object type, so there is no cursor to fail
            result.status = SyncStatus.FAILED
            result.error = _summarize_error(e)
            logger.error(f"Could not start {object_type} sync (run={run_id}): {result.error}")
            result.duration_ms = int((time.monotonic() - start) * 1000)
            await self.cursor_store.record_run(result, trigger, started_at)
            return result

        try:
            seen_max = await asyncio.wait_for(
                self._run_pipeline(cursor, result, full=full, since=since),
                timeout=self.config.run_timeout_seconds,
            )
            await self.cursor_store.set_phase(object_type, run_id, SyncPhase.ADVANCING_CURSOR, result)
            result.watermark = self._next_watermark(cursor, seen_max, started_at, explicit=full or since is not None)
            await self.cursor_store.complete(object_type, run_id, result.watermark, result)
            result.status = SyncStatus.SUCCESS
        except asyncio.TimeoutError:
            result.status = SyncStatus.FAILED
            result.error = f"Run exceeded the {self.config.run_timeout_seconds}s time budget"
            logger.error(f"Sync timed out for {object_type} (run={run_id}) after {result.pages} pages")
            await self.cursor_store.fail(object_type, run_id, result.error, result)
        except asyncio.CancelledError:
            await self.cursor_store.fail(object_type, run_id, "Run cancelled", result)
            raise
        except Exception as e:
            result.status = SyncStatus.FAILED
            result.error = _summarize_error(e)
            logger.error(f"Sync failed for {object_type} (run={run_id}): {result.error}")
            await self.cursor_store.fail(object_type, run_id, result.error, result)

        result.duration_ms = int((time.monotonic() - start) * 1000)
        await self.cursor_store.record_run(result, trigger, started_at)

        if result.status == SyncStatus.SUCCESS:
            logger.info(
                f"Synced {object_type}: {result.fetched} fetched, {result.upserted} upserted, "
                f"{result.skipped} skipped in {result.pages} pages ({result.duration_ms}ms)"
            )
        return result

    def _window(self, cursor: SyncCursor, full: bool, since: Optional[datetime]) -> Optional[datetime]:
        """Lower bound of the incremental read, or None for a full list read."""
        if since is not None:
            return since
        if full or cursor.last_synced_at is None:
            return None
        return cursor.last_synced_at - timedelta(seconds=self.config.overlap_seconds)

    def _next_watermark(
        self,
        cursor: SyncCursor,
        seen_max: Optional[datetime],
        started_at: datetime,
        explicit: bool = False,
    ) -> Optional[datetime]:
        """
        Max updated_at seen in the run, capped at the run start.

        Records modified while a run is in progress may sit on pages already
        read, so the watermark never passes the instant the run started. An
        incremental run never moves the watermark backwards; a full or
        explicit-window run replaces it.
        """
        previous = cursor.last_synced_at
        if seen_max is None:
            return previous
        candidate = min(seen_max, started_at)
        if previous is not None and not explicit:
            return max(previous, candidate)
        return candidate

    async def _run_pipeline(self, cursor: SyncCursor, result: ObjectSyncResult, full: bool = False, since: Optional[datetime] = None) -> Optional[datetime]:
        """Fetch, upsert, resolve and attribute. Returns the max updated_at seen."""
        object_type = cursor.object_type
        run_id = result.run_id
        window = self._window(cursor, full, since)
        if window is None:
            logger.info(f"Full sync: {object_type} (run={run_id})")
        else:
            logger.info(f"Incremental sync: {object_type} modified since {window.isoformat()} (run={run_id})")

        seen_max: Optional[datetime] = None
        synced_ids: list[str] = []
        page_cursor = None

        while True:
            await self.cursor_store.set_phase(object_type, run_id, SyncPhase.FETCHING, result)
            items, next_cursor = await self.adapter.fetch_page(
                object_type, cursor=page_cursor, page_size=self.config.page_size, since=window,
            )
            result.pages += 1
            result.fetched += len(items)

            await self.cursor_store.set_phase(object_type, run_id, SyncPhase.UPSERTING, result)
            upserted = await self.upserter.upsert(object_type, items)
            if upserted.failed:
                raise SyncWriteError(f"{upserted.failed} {object_type} rows failed to write")
            result.upserted += upserted.count
            result.skipped += upserted.skipped
            if upserted.max_updated_at and (seen_max is None or upserted.max_updated_at > seen_max):
                seen_max = upserted.max_updated_at
            synced_ids.extend(str(item["id"]) for item in items if item.get("id"))

            if not next_cursor or not items:
                break

            # HubSpot search stops paging at 10,000 results. Results are sorted
            # by last-modified ascending, so stopping here still yields a safe
            # watermark and the next run picks up the rest.
            if window is not None and result.pages >= self.config.max_search_pages:
                result.truncated = True
                logger.warning(
                    f"Hit max_search_pages ({self.config.max_search_pages}) for {object_type}; "
                    f"remaining records will be read by the next run"
                )
                break

            page_cursor = next_cursor

        if synced_ids and self.resolver.targets_for(object_type):
            await self.cursor_store.set_phase(object_type, run_id, SyncPhase.RESOLVING_ASSOCIATIONS, result)
            resolved = await self.resolver.resolve(object_type, synced_ids)
            if resolved.failed:
                raise SyncWriteError(f"{resolved.failed} {object_type} association rows failed to write")
            result.associations_resolved = resolved.links_written

        if object_type == "deals":
            await self.cursor_store.set_phase(object_type, run_id, SyncPhase.ATTRIBUTING, result)
            attribution = await self.attribution.recompute()
            result.attributions_computed = attribution.attributed

        return seen_max


# ==================== Engine construction and triggers ====================

def build_engine(config: Optional[SyncConfig] = None, supabase=None) -> SyncEngine:
    """Wire an engine from configuration: Supabase client, rate limiter, HubSpot adapter."""
    config = config or SyncConfig.from_env()
    if supabase is None:
        supabase = get_supabase(config.supabase_url, config.supabase_key)
    adapter = create_adapter(
        "hubspot",
        {"access_token": config.hubspot_access_token},
        {
            "max_retries": config.max_retries,
            "rate_limiter": HubSpotRateLimiter(max_requests=config.max_requests_per_second),
            "default_country_code": config.default_phone_country_code,
        },
    )
    return SyncEngine(supabase, adapter, config)


async def trigger_sync(
    engine: SyncEngine,
    object_types: Optional[Iterable[str]] = None,
    full: bool = False,
    since: Optional[datetime] = None,
) -> SyncReport:
    """On-demand trigger. Same code path as the scheduled loop."""
    return await engine.run_sync(object_types, trigger=SyncTrigger.ON_DEMAND, full=full, since=since)


async def start_sync_loop(
    engine: SyncEngine,
    interval: Optional[int] = None,
    loop_key: str = DEFAULT_LOOP_KEY,
    run_immediately: bool = True,
) -> asyncio.Task:
    """
    Start a scheduled sync loop.
    Stores the task in _active_syncs for lifecycle management.
    """
    interval = interval or engine.config.interval_seconds

    # Stop existing loop if any
    if loop_key in _active_syncs:
        _active_syncs[loop_key].cancel()
        del _active_syncs[loop_key]

    async def _loop():
        first = True
        while True:
            if not (first and run_immediately):
                await asyncio.sleep(interval)
            first = False
            try:
                await engine.run_sync(trigger=SyncTrigger.SCHEDULED)
            except asyncio.CancelledError:
                logger.info(f"Sync loop cancelled for {loop_key}")
                break
            except Exception as e:
                logger.error(f"Scheduled sync error for {loop_key}: {e}")
                # Continue loop; the next tick retries from the same cursors

    task = asyncio.create_task(_loop())
    _active_syncs[loop_key] = task
    logger.info(f"Started sync loop for {loop_key} (interval={interval}s)")
    return task


async def stop_sync_loop(loop_key: Optional[str] = None):
    """Stop one sync loop, or all of them."""
    keys_to_stop = [loop_key] if loop_key else list(_active_syncs)
    for key in keys_to_stop:
        if key in _active_syncs:
            _active_syncs[key].cancel()
            del _active_syncs[key]
            logger.info(f"Stopped sync loop for {key}")


def is_sync_active(loop_key: Optional[str] = None) -> bool:
    """Check if a sync loop is currently running."""
    for key, task in _active_syncs.items():
        if (loop_key is None or key == loop_key) and not task.done():
            return True
    return False


def get_active_syncs() -> dict:
    """Return info about active sync loops (for debugging/monitoring)."""
    return {
        key: {"running": not task.done(), "cancelled": task.cancelled()}
        for key, task in _active_syncs.items()
    }


async def cleanup_stale_runs(engine: SyncEngine) -> int:
    """Reset cursor rows stuck in 'running' from a previous crash. Called on startup."""
    try:
        return await engine.cursor_store.cleanup_stale()
    except Exception as e:
        logger.warning(f"Failed to cleanup stale runs: {e}")
        return 0

