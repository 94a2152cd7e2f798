"""
Sync configuration.
Reads environment variables (optionally from backend/.env) into a SyncConfig.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

DEFAULT_OBJECT_TYPES = ("contacts", "deals", "calls")


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_list(name: str, default: tuple) -> tuple:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass
class SyncConfig:
    """Runtime settings for the sync + attribution pipeline."""

    hubspot_access_token: str = ""
    supabase_url: str = ""
    supabase_key: str = ""

    object_types: tuple = DEFAULT_OBJECT_TYPES
    page_size: int = 100
    interval_seconds: int = 3600
    overlap_seconds: int = 300        # incremental window overlaps the previous watermark
    run_timeout_seconds: int = 1800
    stale_timeout_seconds: int = 3600
    max_search_pages: int = 100       # HubSpot search stops at 10,000 results

    max_retries: int = 5
    max_requests_per_second: int = 5

    default_phone_country_code: Optional[str] = None
    closed_won_stages: tuple = ("closedwon",)

    # object_type -> target object types whose links are mirrored
    association_targets: dict = field(default_factory=lambda: {
        "calls": ("contacts", "deals"),
        "deals": ("contacts", "calls"),
    })

    @classmethod
    def from_env(cls) -> "SyncConfig":
        country_code = (os.environ.get("DEFAULT_PHONE_COUNTRY_CODE") or "").strip().lstrip("+")
        return cls(
            hubspot_access_token=os.environ.get("HUBSPOT_ACCESS_TOKEN", ""),
            supabase_url=os.environ.get("SUPABASE_URL", ""),
            supabase_key=os.environ.get("SUPABASE_SERVICE_KEY", ""),
            object_types=_env_list("SYNC_OBJECT_TYPES", DEFAULT_OBJECT_TYPES),
            page_size=_env_int("SYNC_PAGE_SIZE", 100),
            interval_seconds=_env_int("SYNC_INTERVAL_SECONDS", 3600),
            overlap_seconds=_env_int("SYNC_OVERLAP_SECONDS", 300),
            run_timeout_seconds=_env_int("SYNC_RUN_TIMEOUT_SECONDS", 1800),
            stale_timeout_seconds=_env_int("SYNC_STALE_TIMEOUT_SECONDS", 3600),
            max_search_pages=_env_int("SYNC_MAX_SEARCH_PAGES", 100),
            max_retries=_env_int("HUBSPOT_MAX_RETRIES", 5),
            max_requests_per_second=_env_int("HUBSPOT_MAX_REQUESTS_PER_SECOND", 5),
            default_phone_country_code=country_code or None,
            closed_won_stages=_env_list("CLOSED_WON_STAGES", ("closedwon",)),
        )
