"""
Command-line trigger for the HubSpot mirror sync.

    python run_sync.py                          # incremental, all object types
    python run_sync.py --object-type calls      # incremental, calls only
    python run_sync.py --all                    # full list read, ignores watermarks
    python run_sync.py --from 2024-01-01        # resync everything modified since a date
    python run_sync.py --last 7d                # resync the last 7 days
    python run_sync.py --status                 # show cursors, no sync
    python run_sync.py --loop                   # scheduled loop (SYNC_INTERVAL_SECONDS)
"""

import argparse
import asyncio
import logging
import re
import sys
from datetime import datetime, timedelta
from typing import Optional

from models import parse_datetime, to_iso, utc_now
from sync_config import SyncConfig
from sync_engine import (
    DEFAULT_LOOP_KEY, _active_syncs, build_engine, cleanup_stale_runs,
    start_sync_loop, trigger_sync,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

_LAST_RE = re.compile(r"^\s*(\d+)\s*([mhdw])\s*$", re.IGNORECASE)
_LAST_UNITS = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def parse_last(value: str, now: Optional[datetime] = None) -> datetime:
    """'7d' -> the instant seven days ago. Units: m, h, d, w."""
    match = _LAST_RE.match(value or "")
    if not match:
        raise argparse.ArgumentTypeError(f"Invalid --last value {value!r} (expected e.g. 30m, 12h, 7d, 2w)")
    amount, unit = int(match.group(1)), match.group(2).lower()
    return (now or utc_now()) - timedelta(**{_LAST_UNITS[unit]: amount})


def parse_from(value: str) -> datetime:
    parsed = parse_datetime(value)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"Invalid --from date {value!r} (expected ISO date or datetime)")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync HubSpot contacts, deals and calls into the mirror store")
    parser.add_argument("--object-type", action="append", dest="object_types",
                        choices=["contacts", "deals", "calls"],
                        help="Sync only this object type (repeatable; default: all configured)")
    window = parser.add_mutually_exclusive_group()
    window.add_argument("--all", action="store_true", dest="full",
                        help="Full list read, ignoring stored watermarks")
    window.add_argument("--from", type=parse_from, dest="since",
                        help="Resync records modified since this date")
    window.add_argument("--last", type=parse_last,
                        help="Resync records modified in the last period, e.g. 7d")
    parser.add_argument("--status", action="store_true", help="Show sync cursors and exit")
    parser.add_argument("--loop", action="store_true", help="Run the scheduled sync loop until interrupted")
    parser.add_argument("--interval", type=int, help="Loop interval in seconds (default: SYNC_INTERVAL_SECONDS)")
    return parser


def print_status(cursors) -> None:
    if not cursors:
        print("No sync has run yet.")
        return
    print("\nSync cursors:")
    for c in cursors:
        line = (
            f"  {c.object_type:<9} {c.last_run_status:<8} watermark={to_iso(c.last_synced_at) or '-'} "
            f"last_run={to_iso(c.last_run_at) or '-'} fetched={c.records_fetched} "
            f"upserted={c.records_upserted} skipped={c.records_skipped}"
        )
        if c.error_message:
            line += f" error={c.error_message}"
        print(line)


def print_report(report) -> None:
    print(f"\nSync finished in {report.duration_ms}ms")
    print(f"  Objects synced: {report.objects_synced}")
    print(f"  Associations resolved: {report.associations_resolved}")
    print(f"  Attributions computed: {report.attributions_computed}")
    for object_type, r in report.results.items():
        suffix = f" ({r.error})" if r.error else ""
        truncated = " [truncated]" if r.truncated else ""
        print(f"  {object_type:<9} {r.status}: {r.fetched} fetched, {r.upserted} upserted, "
              f"{r.skipped} skipped{truncated}{suffix}")


async def _run(args, config: SyncConfig) -> int:
    engine = build_engine(config)

    if args.status:
        print_status(await engine.last_runs())
        return 0

    await cleanup_stale_runs(engine)

    if args.loop:
        task = await start_sync_loop(engine, interval=args.interval)
        try:
            await task
        finally:
            _active_syncs.pop(DEFAULT_LOOP_KEY, None)
        return 0

    report = await trigger_sync(engine, args.object_types, full=args.full, since=args.since or args.last)
    print_report(report)
    return 0 if report.ok else 1


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = SyncConfig.from_env()

    if not config.hubspot_access_token:
        logger.error("HUBSPOT_ACCESS_TOKEN is not set")
        return 2
    if not config.supabase_url or not config.supabase_key:
        logger.error("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
        return 2

    try:
        return asyncio.run(_run(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main() or 0)
