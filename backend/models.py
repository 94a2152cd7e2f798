"""Shared pydantic models for the sync + attribution pipeline."""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from sync_status import SyncStatus, SyncPhase


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a CRM or database timestamp into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (with or without 'Z') and epoch
    milliseconds (int or digit string, as HubSpot returns for some fields).
    Returns None for empty or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        try:
            dt = datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SyncCursor(BaseModel):
    """Watermark + last-run metadata for one object type (row of sync_cursors)."""
    object_type: str
    last_synced_at: Optional[datetime] = None
    last_run_status: str = SyncStatus.IDLE
    last_run_at: Optional[datetime] = None
    phase: str = SyncPhase.IDLE
    run_id: Optional[str] = None
    run_started_at: Optional[datetime] = None
    run_finished_at: Optional[datetime] = None
    error_message: Optional[str] = None
    records_fetched: int = 0
    records_upserted: int = 0
    records_skipped: int = 0
    associations_resolved: int = 0
    attributions_computed: int = 0

    @classmethod
    def from_row(cls, row: dict) -> "SyncCursor":
        known = {k: v for k, v in row.items() if k in cls.model_fields and v is not None}
        return cls(**known)


class CallAttribution(BaseModel):
    """The closing call chosen for one deal (row of call_attributions)."""
    deal_id: str
    call_id: str
    owner_id: Optional[str] = None
    match_basis: str
    call_timestamp: datetime
    deal_close_date: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "CallAttribution":
        known = {k: v for k, v in row.items() if k in cls.model_fields and v is not None}
        return cls(**known)

    def to_row(self) -> dict:
        return {
            "deal_id": self.deal_id,
            "call_id": self.call_id,
            "owner_id": self.owner_id,
            "match_basis": self.match_basis,
            "call_timestamp": to_iso(self.call_timestamp),
            "deal_close_date": to_iso(self.deal_close_date),
            "computed_at": utc_now().isoformat(),
        }


class UpsertResult(BaseModel):
    count: int = 0          # rows inserted or updated
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0        # data-quality skips (missing id etc.)
    out_of_order: int = 0   # arrivals older than the stored row
    failed: int = 0         # write failures after row-by-row fallback
    max_updated_at: Optional[datetime] = None


class ResolveResult(BaseModel):
    requested: int = 0
    links_written: int = 0
    failed: int = 0


class AttributionResult(BaseModel):
    deals_evaluated: int = 0
    attributed: int = 0
    direct: int = 0
    phone_match: int = 0
    unattributed: int = 0
    removed: int = 0
    skipped: int = 0        # malformed phones, calls without timestamp


class ObjectSyncResult(BaseModel):
    object_type: str
    status: str
    run_id: Optional[str] = None
    pages: int = 0
    fetched: int = 0
    upserted: int = 0
    skipped: int = 0
    associations_resolved: int = 0
    attributions_computed: int = 0
    watermark: Optional[datetime] = None
    truncated: bool = False
    error: Optional[str] = None
    duration_ms: int = 0


class SyncReport(BaseModel):
    """Result of one on-demand or scheduled runSync() invocation."""
    objects_synced: int = 0
    associations_resolved: int = 0
    attributions_computed: int = 0
    duration_ms: int = 0
    results: dict[str, ObjectSyncResult] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(r.status == SyncStatus.SUCCESS for r in self.results.values())
