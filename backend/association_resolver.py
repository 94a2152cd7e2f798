"""
Association Resolver.
Mirrors the links the CRM reports between objects (call -> deal, call -> contact,
deal -> contact ...) into crm_associations. Links are never inferred here;
phone-based matching happens only inside the attribution engine.
"""

import logging
from typing import Optional

from crm_adapters import CRMAdapter
from mirror_db import _db, chunked, ASSOCIATIONS_TABLE
from models import ResolveResult, utc_now

logger = logging.getLogger(__name__)

ASSOCIATION_KEY = "source_type,source_id,target_type,target_id,association_type"

DEFAULT_TARGETS = {
    "calls": ("contacts", "deals"),
    "deals": ("contacts", "calls"),
}

# Rows per upsert request
WRITE_BATCH_SIZE = 500


class AssociationResolver:
    """Fetches CRM-reported associations for synced ids and upserts them."""

    def __init__(self, supabase, adapter: CRMAdapter, targets: Optional[dict] = None):
        self.supabase = supabase
        self.adapter = adapter
        self.targets = DEFAULT_TARGETS if targets is None else targets

    def targets_for(self, object_type: str) -> tuple:
        return tuple(self.targets.get(object_type, ()))

    async def resolve(self, object_type: str, ids: list[str]) -> ResolveResult:
        """
        Write association rows for `ids` against every configured target type.

        Re-resolving the same ids upserts the same tuples, so it is a no-op.
        API errors propagate to the caller (the run fails, cursor stays).
        """
        result = ResolveResult()
        ids = list(dict.fromkeys(str(i) for i in ids if i))
        targets = self.targets_for(object_type)
        if not ids or not targets:
            return result

        result.requested = len(ids)
        synced_at = utc_now().isoformat()

        for target in targets:
            links = await self.adapter.fetch_associations(object_type, ids, target)
            assoc_type = self.adapter.association_type(object_type, target)
            rows = [
                {
                    "source_type": object_type,
                    "source_id": str(source_id),
                    "target_type": target,
                    "target_id": str(target_id),
                    "association_type": assoc_type,
                    "synced_at": synced_at,
                }
                for source_id, target_ids in links.items()
                for target_id in dict.fromkeys(target_ids)
            ]
            written, failed = await self._write(rows)
            result.links_written += written
            result.failed += failed
            logger.info(f"Resolved {written} {object_type} -> {target} links for {len(ids)} ids")

        return result

    async def _write(self, rows: list[dict]) -> tuple[int, int]:
        written = 0
        failed = 0
        for batch in chunked(rows, WRITE_BATCH_SIZE):
            try:
                await _db(lambda b=batch: self.supabase.table(ASSOCIATIONS_TABLE).upsert(
                    b,
                    on_conflict=ASSOCIATION_KEY
                ).execute())
                written += len(batch)
            except Exception as e:
                failed += len(batch)
                logger.error(f"Association upsert failed ({len(batch)} rows): {e}")
        return written, failed
