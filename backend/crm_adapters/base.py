"""
Abstract CRM Adapter base class.
All CRM-specific details live behind this abstraction.
The sync pipeline and the attribution engine never see CRM-specific field names.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional


class CRMAdapter(ABC):
    """One implementation per CRM. Provides paged reads and normalization into mirror rows."""

    @abstractmethod
    def supported_entities(self) -> list[str]:
        """Return the object types this adapter can sync (e.g. ['contacts', 'deals', 'calls'])."""

    @abstractmethod
    async def fetch_page(
        self,
        entity: str,
        cursor: Optional[str] = None,
        page_size: int = 100,
        since: Optional[datetime] = None,
    ) -> tuple[list[dict], Optional[str]]:
        """
        Fetch one page of raw records from the CRM.

        Args:
            entity: Object type ('contacts', 'deals', 'calls')
            cursor: Opaque paging cursor from the previous page, None for the first page
            page_size: Requested page size (clamped to the CRM maximum)
            since: Only records modified at or after this instant (incremental sync)

        Returns:
            Tuple of (raw_records, next_cursor); next_cursor is None on the last page
        """

    @abstractmethod
    async def fetch_associations(self, entity: str, ids: list[str], target: str) -> dict[str, list[str]]:
        """Return {source_id: [target_id, ...]} for links the CRM reports explicitly."""

    @abstractmethod
    def normalize(self, entity: str, raw_record: dict) -> dict:
        """
        Transform a CRM-specific record into a mirror row.
        Output keys must match crm_* table columns exactly.
        Returns {} when the record cannot be mirrored (e.g. missing id).
        """

    def association_type(self, entity: str, target: str) -> str:
        """Label stored with association rows, e.g. 'call_to_deal'."""
        return f"{entity.rstrip('s')}_to_{target.rstrip('s')}"
