"""
Call Attribution Engine.
For every closed deal, finds the last call made before the close and credits
the deal to that call's owner.

Two candidate pools, tried in order:
    1. direct_association: calls linked to the deal, or to one of the deal's
       contacts, in crm_associations.
    2. phone_match: calls whose normalized to_number equals a normalized
       phone of one of the deal's contacts. Used only when the direct pool
       has nothing at or before the close.

Within a pool the latest call_timestamp <= close_date wins. Ties prefer the
call owned by the deal's current owner, then the lowest call id. A call after
the close is never attributed.

The engine reads the mirror tables and writes only call_attributions.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime
from typing import Iterable, Optional

from mirror_db import (
    _db, chunked, fetch_all, fetch_in,
    ASSOCIATIONS_TABLE, ATTRIBUTIONS_TABLE, CALLS_TABLE, CONTACTS_TABLE, DEALS_TABLE,
    IN_FILTER_CHUNK,
)
from models import AttributionResult, CallAttribution, parse_datetime
from sync_status import MatchBasis

logger = logging.getLogger(__name__)

DEFAULT_CLOSED_WON_STAGES = ("closedwon",)

_CALL_COLUMNS = "id,owner_id,call_timestamp,to_number,to_number_normalized"
_LINK_ORDER = ("source_id", "target_id", "association_type")


def _id_sort_key(call: dict) -> tuple:
    call_id = str(call["id"])
    if call_id.isdigit():
        return (0, int(call_id), call_id)
    return (1, 0, call_id)


def select_closing_call(calls: Iterable[dict], close_at: datetime, deal_owner_id: Optional[str] = None) -> Optional[dict]:
    """
    Pick the closing call from a candidate pool.

    Args:
        calls: Call rows with at least id, owner_id and call_timestamp
        close_at: Deal close instant; later calls are ignored
        deal_owner_id: Current deal owner, preferred on timestamp ties

    Returns:
        The winning call row, or None when no call is at or before close_at
    """
    eligible = []
    for call in calls:
        ts = parse_datetime(call.get("call_timestamp"))
        if ts is not None and ts <= close_at:
            eligible.append((ts, call))
    if not eligible:
        return None

    latest = max(ts for ts, _ in eligible)
    tied = [call for ts, call in eligible if ts == latest]
    if len(tied) > 1 and deal_owner_id:
        owned = [c for c in tied if str(c.get("owner_id") or "") == str(deal_owner_id)]
        if owned:
            tied = owned
    return min(tied, key=_id_sort_key)


def attribute_deal(deal: dict, direct_calls: Iterable[dict], phone_calls: Iterable[dict] = ()) -> Optional[CallAttribution]:
    """Attribute one deal. Direct candidates take precedence over phone matches.

    Direct calls placed only after the close do not qualify, so a deal with
    direct links can still end up with a phone_match attribution.
    """
    close_at = parse_datetime(deal.get("close_date"))
    if close_at is None:
        return None
    owner_id = deal.get("owner_id")

    basis = MatchBasis.DIRECT_ASSOCIATION
    call = select_closing_call(direct_calls, close_at, owner_id)
    if call is None:
        basis = MatchBasis.PHONE_MATCH
        call = select_closing_call(phone_calls, close_at, owner_id)
    if call is None:
        return None

    return CallAttribution(
        deal_id=str(deal["id"]),
        call_id=str(call["id"]),
        owner_id=call.get("owner_id"),
        match_basis=basis,
        call_timestamp=parse_datetime(call["call_timestamp"]),
        deal_close_date=close_at,
    )


class CallAttributionEngine:
    """Recomputes call_attributions from the mirror tables."""

    def __init__(self, supabase, closed_won_stages: Iterable[str] = DEFAULT_CLOSED_WON_STAGES):
        self.supabase = supabase
        self.closed_won_stages = tuple(closed_won_stages or ())

    async def recompute(self, deal_ids: Optional[Iterable[str]] = None) -> AttributionResult:
        """
        Recompute attributions for all closed deals, or only for `deal_ids`.

        Every evaluated deal ends with exactly its current attribution: the row
        is replaced when a closing call is found and deleted when none is.
        """
        result = AttributionResult()
        scope = None if deal_ids is None else [str(d) for d in dict.fromkeys(deal_ids)]

        deals = await self._load_closed_deals(scope)
        result.deals_evaluated = len(deals)
        deal_index = {str(d["id"]): d for d in deals}

        deal_contacts, deal_calls = await self._load_deal_links(list(deal_index))
        all_contacts = {c for ids in deal_contacts.values() for c in ids}
        contact_calls = await self._load_contact_calls(all_contacts)
        contacts = await self._load_contacts(all_contacts)

        direct_ids: dict[str, set] = {}
        for deal_id in deal_index:
            ids = set(deal_calls.get(deal_id, ()))
            for contact_id in deal_contacts.get(deal_id, ()):
                ids |= contact_calls.get(contact_id, set())
            direct_ids[deal_id] = ids

        calls = await self._load_calls_by_id({c for ids in direct_ids.values() for c in ids})
        untimed = {cid for cid, call in calls.items() if parse_datetime(call.get("call_timestamp")) is None}

        malformed_contacts = {
            cid for cid, contact in contacts.items()
            if contact.get("phone") and not contact.get("phone_normalized")
        }

        attributions: list[CallAttribution] = []
        needs_fallback: dict[str, set] = {}
        for deal_id, deal in deal_index.items():
            attribution = attribute_deal(deal, [calls[c] for c in direct_ids[deal_id] if c in calls])
            if attribution:
                attributions.append(attribution)
                continue
            phones = {
                contacts[c]["phone_normalized"]
                for c in deal_contacts.get(deal_id, ())
                if c in contacts and contacts[c].get("phone_normalized")
            }
            if phones:
                needs_fallback[deal_id] = phones

        if needs_fallback:
            by_phone = await self._load_calls_by_phone({p for ps in needs_fallback.values() for p in ps})
            for deal_id, phones in needs_fallback.items():
                pool = [call for p in phones for call in by_phone.get(p, ())]
                untimed |= {str(c["id"]) for c in pool if parse_datetime(c.get("call_timestamp")) is None}
                attribution = attribute_deal(deal_index[deal_id], (), pool)
                if attribution:
                    attributions.append(attribution)

        result.skipped = len(untimed) + len(malformed_contacts)
        result.attributed = len(attributions)
        result.direct = sum(1 for a in attributions if a.match_basis == MatchBasis.DIRECT_ASSOCIATION)
        result.phone_match = result.attributed - result.direct
        result.unattributed = result.deals_evaluated - result.attributed

        await self._write(attributions)
        result.removed = await self._remove_stale(scope, {a.deal_id for a in attributions})

        if result.skipped:
            logger.warning(
                f"Attribution skipped {len(untimed)} calls without a timestamp and "
                f"{len(malformed_contacts)} contacts with unusable phone numbers"
            )
        logger.info(
            f"Attribution: {result.deals_evaluated} closed deals, {result.direct} direct, "
            f"{result.phone_match} phone match, {result.unattributed} unattributed, "
            f"{result.removed} stale rows removed"
        )
        return result

    # ── Loading ──

    async def _load_closed_deals(self, scope: Optional[list[str]]) -> list[dict]:
        columns = "id,owner_id,deal_stage,close_date"

        def stage_filter(query):
            if self.closed_won_stages:
                query = query.in_("deal_stage", list(self.closed_won_stages))
            return query

        if scope is None:
            rows = await fetch_all(lambda: stage_filter(
                self.supabase.table(DEALS_TABLE).select(columns)
            ).order("id"))
        else:
            rows = await fetch_in(self.supabase, DEALS_TABLE, columns, "id", scope, extra=stage_filter)
        return [r for r in rows if parse_datetime(r.get("close_date")) is not None]

    async def _links(self, source_type: str, target_type: str, ids: Iterable[str], reverse: bool = False) -> list[tuple]:
        """(object, linked) pairs between two types in either stored direction."""
        if reverse:
            rows = await fetch_in(
                self.supabase, ASSOCIATIONS_TABLE, "source_id,target_id,association_type", "target_id", ids,
                extra=lambda q: q.eq("source_type", target_type).eq("target_type", source_type),
                order=("target_id", "source_id", "association_type"),
            )
            return [(str(r["target_id"]), str(r["source_id"])) for r in rows]
        rows = await fetch_in(
            self.supabase, ASSOCIATIONS_TABLE, "source_id,target_id,association_type", "source_id", ids,
            extra=lambda q: q.eq("source_type", source_type).eq("target_type", target_type),
            order=_LINK_ORDER,
        )
        return [(str(r["source_id"]), str(r["target_id"])) for r in rows]

    async def _load_deal_links(self, deal_ids: list[str]) -> tuple[dict, dict]:
        deal_contacts: dict[str, set] = defaultdict(set)
        deal_calls: dict[str, set] = defaultdict(set)
        if not deal_ids:
            return deal_contacts, deal_calls

        for deal_id, contact_id in await self._links("deals", "contacts", deal_ids):
            deal_contacts[deal_id].add(contact_id)
        for deal_id, contact_id in await self._links("deals", "contacts", deal_ids, reverse=True):
            deal_contacts[deal_id].add(contact_id)
        for deal_id, call_id in await self._links("deals", "calls", deal_ids):
            deal_calls[deal_id].add(call_id)
        for deal_id, call_id in await self._links("deals", "calls", deal_ids, reverse=True):
            deal_calls[deal_id].add(call_id)
        return deal_contacts, deal_calls

    async def _load_contact_calls(self, contact_ids: set) -> dict[str, set]:
        contact_calls: dict[str, set] = defaultdict(set)
        if not contact_ids:
            return contact_calls
        for contact_id, call_id in await self._links("contacts", "calls", contact_ids):
            contact_calls[contact_id].add(call_id)
        for contact_id, call_id in await self._links("contacts", "calls", contact_ids, reverse=True):
            contact_calls[contact_id].add(call_id)
        return contact_calls

    async def _load_contacts(self, contact_ids: set) -> dict[str, dict]:
        if not contact_ids:
            return {}
        rows = await fetch_in(self.supabase, CONTACTS_TABLE, "id,phone,phone_normalized", "id", contact_ids)
        return {str(r["id"]): r for r in rows}

    async def _load_calls_by_id(self, call_ids: set) -> dict[str, dict]:
        if not call_ids:
            return {}
        rows = await fetch_in(self.supabase, CALLS_TABLE, _CALL_COLUMNS, "id", call_ids)
        return {str(r["id"]): r for r in rows}

    async def _load_calls_by_phone(self, phones: set) -> dict[str, list[dict]]:
        rows = await fetch_in(
            self.supabase, CALLS_TABLE, _CALL_COLUMNS, "to_number_normalized", phones,
            order=("to_number_normalized", "id"),
        )
        by_phone: dict[str, list[dict]] = defaultdict(list)
        for row in rows:
            by_phone[row["to_number_normalized"]].append(row)
        return by_phone

    # ── Writing ──

    async def _write(self, attributions: list[CallAttribution]):
        rows = [a.to_row() for a in attributions]
        for batch in chunked(rows, 500):
            await _db(lambda b=batch: self.supabase.table(ATTRIBUTIONS_TABLE).upsert(
                b,
                on_conflict="deal_id"
            ).execute())

    async def _remove_stale(self, scope: Optional[list[str]], keep: set) -> int:
        """Delete attribution rows of deals in scope that no longer have a closing call."""
        if scope is None:
            rows = await fetch_all(lambda: self.supabase.table(ATTRIBUTIONS_TABLE).select("deal_id").order("deal_id"))
        else:
            rows = await fetch_in(self.supabase, ATTRIBUTIONS_TABLE, "deal_id", "deal_id", scope)

        stale = sorted({str(r["deal_id"]) for r in rows} - keep)
        for chunk in chunked(stale, IN_FILTER_CHUNK):
            await _db(lambda c=chunk: self.supabase.table(ATTRIBUTIONS_TABLE).delete().in_(
                "deal_id", c
            ).execute())
        return len(stale)


# ── Dashboard read side ──

async def list_attributions(
    supabase,
    owner_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> list[CallAttribution]:
    """Attributions filtered by owner and by deal close date (inclusive bounds)."""
    def build():
        query = supabase.table(ATTRIBUTIONS_TABLE).select("*")
        if owner_id:
            query = query.eq("owner_id", owner_id)
        if date_from:
            query = query.gte("deal_close_date", date_from.isoformat())
        if date_to:
            query = query.lte("deal_close_date", date_to.isoformat())
        return query.order("deal_id")

    rows = await fetch_all(build)
    return [CallAttribution.from_row(r) for r in rows]


async def closing_calls_by_owner(
    supabase,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> dict[Optional[str], int]:
    """Number of attributed closes per call owner, most first."""
    attributions = await list_attributions(supabase, date_from=date_from, date_to=date_to)
    counts = Counter(a.owner_id for a in attributions)
    return dict(sorted(counts.items(), key=lambda kv: (-kv[1], kv[0] or "")))
