"""
HubSpot CRM Adapter.
Wraps HubSpotCRM with normalization of contacts, deals and calls into crm_* mirror rows.
"""

import logging
from datetime import datetime
from typing import Optional

from models import parse_datetime, to_iso, utc_now
from phone_utils import normalize_phone
from .base import CRMAdapter

logger = logging.getLogger(__name__)

CONTACT_PROPERTIES = [
    "email", "phone", "mobilephone", "firstname", "lastname",
    "createdate", "lastmodifieddate", "hs_lastmodifieddate",
    "lifecyclestage", "hubspot_owner_id", "hs_object_id",
    "sold_by_", "contact_stage", "sales_script_version", "qualified",
    "status", "stage", "hot_lead", "contact_source", "lost_reason",
]

DEAL_PROPERTIES = [
    "amount", "dealstage", "dealname", "pipeline",
    "createdate", "closedate", "hs_lastmodifieddate",
    "hubspot_owner_id", "qualified_status", "trial_status",
    "payment_status", "cancellation_reason", "is_refunded",
    "offer_given", "offer_accepted", "upfront_payment",
]

CALL_PROPERTIES = [
    "hs_timestamp", "hs_call_duration", "hs_call_direction",
    "hs_call_to_number", "hs_call_from_number", "hs_call_disposition",
    "hs_call_status", "hubspot_owner_id", "hs_createdate", "hs_lastmodifieddate",
]


class HubSpotAdapter(CRMAdapter):
    """Adapter for HubSpot CRM via a private-app access token."""

    def __init__(self, client, default_country_code: Optional[str] = None):
        """
        Args:
            client: HubSpotCRM instance (from hubspot_crm.py)
            default_country_code: Country code applied to national phone numbers
        """
        self.client = client
        self.default_country_code = default_country_code

    def supported_entities(self) -> list[str]:
        return ["contacts", "deals", "calls"]

    async def fetch_page(
        self,
        entity: str,
        cursor: Optional[str] = None,
        page_size: int = 100,
        since: Optional[datetime] = None,
    ) -> tuple[list[dict], Optional[str]]:
        if entity not in self.supported_entities():
            raise ValueError(f"Unsupported HubSpot entity: {entity}")
        return await self.client.fetch_page(
            entity, self._properties_for(entity), cursor=cursor, page_size=page_size, since=since,
        )

    async def fetch_associations(self, entity: str, ids: list[str], target: str) -> dict[str, list[str]]:
        return await self.client.fetch_associations(entity, ids, target)

    def normalize(self, entity: str, raw: dict) -> dict:
        normalizer = {
            "contacts": self._normalize_contact,
            "deals": self._normalize_deal,
            "calls": self._normalize_call,
        }
        fn = normalizer.get(entity)
        if not fn or not raw.get("id"):
            return {}
        row = self._base_row(raw)
        row.update(fn(raw.get("properties") or {}))
        return row

    def _properties_for(self, entity: str) -> list[str]:
        return {
            "contacts": CONTACT_PROPERTIES,
            "deals": DEAL_PROPERTIES,
            "calls": CALL_PROPERTIES,
        }.get(entity, [])

    def _base_row(self, raw: dict) -> dict:
        props = raw.get("properties") or {}
        created = props.get("createdate") or props.get("hs_createdate") or raw.get("createdAt")
        updated = props.get("hs_lastmodifieddate") or props.get("lastmodifieddate") or raw.get("updatedAt")
        return {
            "id": str(raw["id"]),
            "owner_id": props.get("hubspot_owner_id") or None,
            "properties": props,
            "archived": bool(raw.get("archived", False)),
            "created_at": to_iso(parse_datetime(created)),
            "updated_at": to_iso(parse_datetime(updated)),
            "synced_at": utc_now().isoformat(),
        }

    def _normalize_contact(self, props: dict) -> dict:
        phone = props.get("phone") or props.get("mobilephone")
        return {
            "email": props.get("email") or None,
            "phone": phone or None,
            "phone_normalized": normalize_phone(phone, self.default_country_code),
        }

    def _normalize_deal(self, props: dict) -> dict:
        amount = props.get("amount")
        try:
            amount_val = float(amount) if amount not in (None, "") else None
        except (ValueError, TypeError):
            amount_val = None
        return {
            "deal_name": props.get("dealname"),
            "deal_stage": props.get("dealstage"),
            "pipeline": props.get("pipeline"),
            "amount": amount_val,
            "close_date": to_iso(parse_datetime(props.get("closedate"))),
        }

    def _normalize_call(self, props: dict) -> dict:
        duration = props.get("hs_call_duration")
        try:
            duration_ms = int(float(duration)) if duration not in (None, "") else None
        except (ValueError, TypeError):
            duration_ms = None
        to_number = props.get("hs_call_to_number")
        return {
            "call_timestamp": to_iso(parse_datetime(props.get("hs_timestamp"))),
            "to_number": to_number or None,
            "to_number_normalized": normalize_phone(to_number, self.default_country_code),
            "from_number": props.get("hs_call_from_number") or None,
            "direction": props.get("hs_call_direction"),
            "disposition": props.get("hs_call_disposition"),
            "call_status": props.get("hs_call_status"),
            "duration_ms": duration_ms,
        }
