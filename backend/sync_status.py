"""
Canonical status values for the sync_cursors / sync_runs tables.

Single source of truth. Import this everywhere status or phase strings are written
or compared. Plain class constants (not Python Enum) so the values serialize to bare
strings for Supabase upserts without .value unwrapping.

Run status:
    (new row) IDLE → RUNNING → SUCCESS
                             → FAILED

Phase (per object type):
    idle → fetching → upserting → resolving_associations
         → attributing (deals only) → advancing_cursor → idle
"""


class SyncStatus:
    IDLE = "idle"         # row exists, no run has started yet
    RUNNING = "running"   # a run holds the object type
    SUCCESS = "success"   # last run finished and advanced the watermark
    FAILED = "failed"     # last run aborted; watermark left where it was

    ALL = frozenset({IDLE, RUNNING, SUCCESS, FAILED})

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL


class SyncPhase:
    IDLE = "idle"
    FETCHING = "fetching"
    UPSERTING = "upserting"
    RESOLVING_ASSOCIATIONS = "resolving_associations"
    ATTRIBUTING = "attributing"
    ADVANCING_CURSOR = "advancing_cursor"

    ORDER = (IDLE, FETCHING, UPSERTING, RESOLVING_ASSOCIATIONS, ATTRIBUTING, ADVANCING_CURSOR)
    ALL = frozenset(ORDER)

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL


class MatchBasis:
    DIRECT_ASSOCIATION = "direct_association"
    PHONE_MATCH = "phone_match"

    ALL = frozenset({DIRECT_ASSOCIATION, PHONE_MATCH})


class SyncTrigger:
    SCHEDULED = "scheduled"
    ON_DEMAND = "on_demand"
