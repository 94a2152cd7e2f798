"""
Call Attribution Engine tests.

Covers the closing-call rules end to end against seeded mirror tables:
direct associations first, phone matching as the fallback, never a call
after the close, deterministic tie-breaks, and stale-row cleanup.
"""

import pytest
import sys
import os
from datetime import datetime, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from call_attribution import (
    CallAttributionEngine,
    attribute_deal,
    closing_calls_by_owner,
    list_attributions,
    select_closing_call,
)
from fake_supabase import FakeSupabase
from models import parse_datetime
from sync_status import MatchBasis

CLOSE = "2025-09-30T12:00:00+00:00"
CLOSE_AT = datetime(2025, 9, 30, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# 1. Pure selection rules
# ---------------------------------------------------------------------------

class TestSelectClosingCall:

    def test_latest_call_before_close_wins(self):
        calls = [_call("1", "2025-09-30T09:00:00Z"), _call("2", "2025-09-30T11:00:00Z")]
        assert select_closing_call(calls, CLOSE_AT)["id"] == "2"

    def test_call_at_close_instant_counts(self):
        calls = [_call("1", CLOSE)]
        assert select_closing_call(calls, CLOSE_AT)["id"] == "1"

    def test_calls_after_close_ignored(self):
        calls = [_call("1", "2025-09-30T12:00:01Z"), _call("2", "2025-10-01T09:00:00Z")]
        assert select_closing_call(calls, CLOSE_AT) is None

    def test_calls_without_timestamp_ignored(self):
        calls = [_call("1", None), _call("2", "2025-09-29T10:00:00Z")]
        assert select_closing_call(calls, CLOSE_AT)["id"] == "2"

    def test_tie_prefers_deal_owner(self):
        calls = [_call("1", "2025-09-30T11:00:00Z", owner="O2"), _call("2", "2025-09-30T11:00:00Z", owner="O1")]
        assert select_closing_call(calls, CLOSE_AT, deal_owner_id="O1")["id"] == "2"

    def test_tie_falls_back_to_lowest_numeric_id(self):
        calls = [_call("20", "2025-09-30T11:00:00Z", owner="O1"), _call("9", "2025-09-30T11:00:00Z", owner="O1")]
        assert select_closing_call(calls, CLOSE_AT, deal_owner_id="O1")["id"] == "9"

    def test_result_independent_of_input_order(self):
        calls = [
            _call("3", "2025-09-30T11:00:00Z", owner="O2"),
            _call("1", "2025-09-30T11:00:00Z", owner="O2"),
            _call("2", "2025-09-30T10:00:00Z", owner="O1"),
        ]
        first = select_closing_call(calls, CLOSE_AT, "O1")
        second = select_closing_call(list(reversed(calls)), CLOSE_AT, "O1")
        assert first["id"] == second["id"] == "1"

    def test_empty_pool(self):
        assert select_closing_call([], CLOSE_AT) is None


class TestAttributeDeal:

    def test_direct_beats_later_phone_match(self):
        deal = {"id": "D", "owner_id": "O1", "close_date": CLOSE}
        direct = [_call("C2", "2025-09-30T11:00:00Z", owner="O1")]
        phone = [_call("C", "2025-09-30T11:45:00Z", owner="O3")]

        attribution = attribute_deal(deal, direct, phone)

        assert attribution.call_id == "C2"
        assert attribution.match_basis == MatchBasis.DIRECT_ASSOCIATION
        assert attribution.owner_id == "O1"

    def test_direct_after_close_falls_back_to_phone(self):
        deal = {"id": "D", "owner_id": "O1", "close_date": CLOSE}
        direct = [_call("C2", "2025-09-30T12:30:00Z")]
        phone = [_call("C", "2025-09-30T11:45:00Z")]

        attribution = attribute_deal(deal, direct, phone)

        assert attribution.call_id == "C"
        assert attribution.match_basis == MatchBasis.PHONE_MATCH

    def test_no_close_date_no_attribution(self):
        deal = {"id": "D", "owner_id": "O1", "close_date": None}
        assert attribute_deal(deal, [_call("1", "2025-09-30T11:00:00Z")]) is None


# ---------------------------------------------------------------------------
# 2. Engine over mirror tables
# ---------------------------------------------------------------------------

class TestEngineScenarios:

    @pytest.mark.asyncio
    async def test_phone_match_when_no_direct_association(self):
        """Deal D has no call links; its contact's phone matches call C."""
        db = _seed_scenario()

        result = await CallAttributionEngine(db).recompute()

        rows = db.rows("call_attributions")
        assert len(rows) == 1
        assert rows[0]["deal_id"] == "D"
        assert rows[0]["call_id"] == "C"
        assert rows[0]["match_basis"] == MatchBasis.PHONE_MATCH
        assert result.phone_match == 1
        assert result.direct == 0

    @pytest.mark.asyncio
    async def test_direct_association_takes_precedence(self):
        """Same deal plus a direct link to C2 at 11:50 by the deal owner."""
        db = _seed_scenario()
        db.rows("crm_calls").append(_call("C2", "2025-09-30T11:50:00+00:00", owner="O1"))
        db.rows("crm_associations").append(_link("calls", "C2", "deals", "D"))

        result = await CallAttributionEngine(db).recompute()

        row = db.rows("call_attributions")[0]
        assert row["call_id"] == "C2"
        assert row["match_basis"] == MatchBasis.DIRECT_ASSOCIATION
        assert row["owner_id"] == "O1"
        assert result.direct == 1

    @pytest.mark.asyncio
    async def test_call_linked_through_contact_is_direct(self):
        db = _seed_scenario()
        db.rows("crm_calls").append(_call("C3", "2025-09-30T10:00:00+00:00", owner="O2"))
        db.rows("crm_associations").append(_link("calls", "C3", "contacts", "K"))

        await CallAttributionEngine(db).recompute()

        row = db.rows("call_attributions")[0]
        assert row["call_id"] == "C3"
        assert row["match_basis"] == MatchBasis.DIRECT_ASSOCIATION

    @pytest.mark.asyncio
    async def test_deal_to_call_link_direction_also_counts(self):
        db = _seed_scenario()
        db.rows("crm_calls").append(_call("C4", "2025-09-30T09:00:00+00:00"))
        db.rows("crm_associations").append(_link("deals", "D", "calls", "C4"))

        await CallAttributionEngine(db).recompute()

        assert db.rows("call_attributions")[0]["call_id"] == "C4"

    @pytest.mark.asyncio
    async def test_only_future_calls_leaves_deal_unattributed(self):
        db = _seed_scenario(call_time="2025-09-30T12:15:00+00:00")

        result = await CallAttributionEngine(db).recompute()

        assert db.rows("call_attributions") == []
        assert result.unattributed == 1

    @pytest.mark.asyncio
    async def test_one_call_attributed_to_several_deals(self):
        db = _seed_scenario()
        db.rows("crm_deals").append(_deal("D2", owner="O2"))
        db.rows("crm_contacts").append({"id": "K2", "phone": "15550102030", "phone_normalized": "15550102030"})
        db.rows("crm_associations").append(_link("deals", "D2", "contacts", "K2"))

        result = await CallAttributionEngine(db).recompute()

        by_deal = {r["deal_id"]: r["call_id"] for r in db.rows("call_attributions")}
        assert by_deal == {"D": "C", "D2": "C"}
        assert result.attributed == 2


class TestEngineBookkeeping:

    @pytest.mark.asyncio
    async def test_recompute_is_deterministic(self):
        db = _seed_scenario()
        db.rows("crm_calls").extend([
            _call("11", "2025-09-30T11:00:00+00:00", owner="O2"),
            _call("10", "2025-09-30T11:00:00+00:00", owner="O2"),
        ])
        db.rows("crm_associations").extend([_link("calls", "11", "deals", "D"), _link("calls", "10", "deals", "D")])
        engine = CallAttributionEngine(db)

        await engine.recompute()
        first = _strip_computed(db.rows("call_attributions"))
        await engine.recompute()
        second = _strip_computed(db.rows("call_attributions"))

        assert first == second
        assert first[0]["call_id"] == "10"
        assert len(db.rows("call_attributions")) == 1

    @pytest.mark.asyncio
    async def test_stale_attribution_removed(self):
        db = _seed_scenario(call_time="2025-09-30T12:15:00+00:00")
        db.rows("call_attributions").append({
            "deal_id": "D", "call_id": "OLD", "owner_id": "O9",
            "match_basis": MatchBasis.PHONE_MATCH, "call_timestamp": "2025-09-01T00:00:00+00:00",
        })

        result = await CallAttributionEngine(db).recompute()

        assert db.rows("call_attributions") == []
        assert result.removed == 1

    @pytest.mark.asyncio
    async def test_reopened_deal_loses_attribution_on_full_recompute(self):
        db = _seed_scenario()
        engine = CallAttributionEngine(db)
        await engine.recompute()
        db.rows("crm_deals")[0]["deal_stage"] = "contractsent"

        result = await engine.recompute()

        assert db.rows("call_attributions") == []
        assert result.deals_evaluated == 0
        assert result.removed == 1

    @pytest.mark.asyncio
    async def test_scoped_recompute_leaves_other_deals(self):
        db = _seed_scenario()
        db.rows("call_attributions").append({
            "deal_id": "OTHER", "call_id": "X", "owner_id": "O9",
            "match_basis": MatchBasis.DIRECT_ASSOCIATION, "call_timestamp": "2025-09-01T00:00:00+00:00",
        })

        await CallAttributionEngine(db).recompute(deal_ids=["D"])

        assert {r["deal_id"] for r in db.rows("call_attributions")} == {"D", "OTHER"}

    @pytest.mark.asyncio
    async def test_open_stage_not_evaluated(self):
        db = _seed_scenario()
        db.rows("crm_deals")[0]["deal_stage"] = "appointmentscheduled"

        result = await CallAttributionEngine(db).recompute()

        assert result.deals_evaluated == 0

    @pytest.mark.asyncio
    async def test_empty_stage_set_means_any_closed_deal(self):
        db = _seed_scenario()
        db.rows("crm_deals")[0]["deal_stage"] = "custom_won_stage"

        result = await CallAttributionEngine(db, closed_won_stages=()).recompute()

        assert result.deals_evaluated == 1
        assert result.attributed == 1

    @pytest.mark.asyncio
    async def test_malformed_data_counted_as_skipped(self):
        db = _seed_scenario()
        db.rows("crm_contacts").append({"id": "K9", "phone": "n/a", "phone_normalized": None})
        db.rows("crm_associations").append(_link("deals", "D", "contacts", "K9"))
        db.rows("crm_calls").append(_call("C9", None))
        db.rows("crm_associations").append(_link("calls", "C9", "deals", "D"))

        result = await CallAttributionEngine(db).recompute()

        assert result.skipped == 2
        assert db.rows("call_attributions")[0]["call_id"] == "C"

    @pytest.mark.asyncio
    async def test_no_closed_deals(self):
        db = FakeSupabase()

        result = await CallAttributionEngine(db).recompute()

        assert result.deals_evaluated == 0
        assert db.rows("call_attributions") == []


# ---------------------------------------------------------------------------
# 3. Dashboard read side
# ---------------------------------------------------------------------------

class TestReadSide:

    @pytest.mark.asyncio
    async def test_list_attributions_filters(self):
        db = FakeSupabase({"call_attributions": [
            _attribution("D1", "O1", "2025-09-05T00:00:00+00:00"),
            _attribution("D2", "O1", "2025-09-20T00:00:00+00:00"),
            _attribution("D3", "O2", "2025-09-21T00:00:00+00:00"),
        ]})

        owned = await list_attributions(db, owner_id="O1")
        assert [a.deal_id for a in owned] == ["D1", "D2"]

        ranged = await list_attributions(
            db,
            date_from=datetime(2025, 9, 10, tzinfo=timezone.utc),
            date_to=datetime(2025, 9, 30, tzinfo=timezone.utc),
        )
        assert [a.deal_id for a in ranged] == ["D2", "D3"]
        assert ranged[0].deal_close_date == parse_datetime("2025-09-20T00:00:00Z")

    @pytest.mark.asyncio
    async def test_closing_calls_by_owner(self):
        db = FakeSupabase({"call_attributions": [
            _attribution("D1", "O1", "2025-09-05T00:00:00+00:00"),
            _attribution("D2", "O2", "2025-09-20T00:00:00+00:00"),
            _attribution("D3", "O2", "2025-09-21T00:00:00+00:00"),
        ]})

        counts = await closing_calls_by_owner(db)

        assert counts == {"O2": 2, "O1": 1}
        assert list(counts) == ["O2", "O1"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _call(call_id: str, timestamp, owner: str = None, to_number_normalized: str = None) -> dict:
    return {
        "id": call_id,
        "owner_id": owner,
        "call_timestamp": timestamp,
        "to_number": to_number_normalized,
        "to_number_normalized": to_number_normalized,
    }


def _deal(deal_id: str, owner: str = "O1", close: str = CLOSE, stage: str = "closedwon") -> dict:
    return {"id": deal_id, "owner_id": owner, "deal_stage": stage, "close_date": close}


def _link(source_type, source_id, target_type, target_id) -> dict:
    return {
        "source_type": source_type,
        "source_id": source_id,
        "target_type": target_type,
        "target_id": target_id,
        "association_type": f"{source_type.rstrip('s')}_to_{target_type.rstrip('s')}",
    }


def _attribution(deal_id, owner, close) -> dict:
    return {
        "deal_id": deal_id,
        "call_id": f"call-{deal_id}",
        "owner_id": owner,
        "match_basis": MatchBasis.DIRECT_ASSOCIATION,
        "call_timestamp": close,
        "deal_close_date": close,
    }


def _seed_scenario(call_time: str = "2025-09-30T11:45:00+00:00") -> FakeSupabase:
    """
    Deal D (owner O1) closes 2025-09-30T12:00Z and is linked to contact K,
    whose phone +1 (555) 010-2030 normalizes to 15550102030. Call C targets
    that number and has no CRM associations.
    """
    return FakeSupabase({
        "crm_deals": [_deal("D")],
        "crm_contacts": [{"id": "K", "phone": "+1 (555) 010-2030", "phone_normalized": "15550102030"}],
        "crm_calls": [_call("C", call_time, owner="O3", to_number_normalized="15550102030")],
        "crm_associations": [_link("deals", "D", "contacts", "K")],
        "call_attributions": [],
    })


def _strip_computed(rows: list[dict]) -> list[dict]:
    return [{k: v for k, v in r.items() if k != "computed_at"} for r in rows]
