"""Unit tests for ledgerline.services.projections.views."""
from datetime import UTC, datetime

import pytest

from ledgerline.core.errors import UnsupportedViewError
from ledgerline.db.models.entity import EntityDocument
from ledgerline.services.projections.views import (
    read_view,
    rebuild_rank,
    rebuild_view,
    supported_views,
    transaction_amount,
)

AT = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


async def _seed(components, *docs):
    async def _fn(session):
        for entity_type, entity_id, data in docs:
            session.add(
                EntityDocument(tenant_id="acme", entity_type=entity_type, id=entity_id, version=1, data=data)
            )

    await components.store.run_transaction(_fn)


async def _rebuild(components, view_name, tenant_id="acme"):
    async def _fn(session):
        return await rebuild_view(session, tenant_id, view_name, AT)

    return await components.store.run_transaction(_fn)


def test_supported_views():
    assert supported_views() == ["project_financials", "approval_inbox", "member_workload", "alerts"]


def test_alerts_rank_last():
    assert rebuild_rank("alerts") > rebuild_rank("approval_inbox")
    assert rebuild_rank("project_financials") == rebuild_rank("member_workload")


def test_transaction_amount_falls_back_to_bank_amount():
    assert transaction_amount({"amount": 12.5}) == 12.5
    assert transaction_amount({"amount": 0, "amounts": {"bankAmount": "40"}}) == 40.0
    assert transaction_amount({"amount": "nan"}) == 0.0
    assert transaction_amount({}) == 0.0


# ─── project_financials ───────────────────────────────────────────────────────

async def test_financials_sum_only_approved(components):
    await _seed(
        components,
        ("project", "p1", {"name": "Alpha"}),
        ("transaction", "t1", {"projectId": "p1", "state": "APPROVED", "direction": "IN", "amount": 1000}),
        ("transaction", "t2", {"projectId": "p1", "state": "APPROVED", "direction": "OUT", "amount": 300}),
        ("transaction", "t3", {"projectId": "p1", "state": "SUBMITTED", "direction": "OUT", "amount": 999}),
        ("transaction", "t4", {"projectId": "p1", "state": "DRAFT", "direction": "OUT", "amount": 5}),
    )
    view = await _rebuild(components, "project_financials")
    [entry] = view["projects"]
    assert entry["projectName"] == "Alpha"
    assert entry["totalIn"] == 1000
    assert entry["totalOut"] == 300
    assert entry["balance"] == 700
    assert entry["approvedTxCount"] == 2
    assert entry["submittedTxCount"] == 1
    assert view["updatedAt"] == "2024-06-01T12:00:00Z"


async def test_financials_include_orphan_project_ids(components):
    await _seed(components, ("transaction", "t1", {"projectId": "ghost", "state": "APPROVED", "direction": "IN", "amount": 5}))
    view = await _rebuild(components, "project_financials")
    assert view["projects"][0]["projectId"] == "ghost"
    assert view["projects"][0]["projectName"] == "ghost"


async def test_rebuild_overwrites_previous_view(components):
    await _seed(components, ("project", "p1", {"name": "Alpha"}))
    await _rebuild(components, "project_financials")
    await _seed(components, ("project", "p2", {"name": "Beta"}))
    view = await _rebuild(components, "project_financials")
    assert [p["projectId"] for p in view["projects"]] == ["p1", "p2"]
    async with components.store.session() as session:
        assert await read_view(session, "acme", "project_financials") == view


# ─── approval_inbox ───────────────────────────────────────────────────────────

async def test_inbox_lists_submitted_items_newest_first(components):
    await _seed(
        components,
        ("transaction", "t1", {"state": "SUBMITTED", "submittedAt": "2024-01-01T00:00:00Z", "amount": 10}),
        ("transaction", "t2", {"state": "SUBMITTED", "submittedAt": "2024-02-01T00:00:00Z", "amount": 20}),
        ("transaction", "t3", {"state": "APPROVED"}),
        ("change_request", "cr1", {"state": "SUBMITTED", "priority": "high", "requestedAt": "2024-03-01T00:00:00Z"}),
        ("expense_set", "es1", {"status": "SUBMITTED", "totalGross": "75.5", "submittedAt": "2023-12-01T00:00:00Z"}),
    )
    view = await _rebuild(components, "approval_inbox")
    assert view["totalPending"] == 4
    assert [i["itemId"] for i in view["items"]] == ["cr1", "t2", "t1", "es1"]
    assert view["items"][0]["priority"] == "HIGH"
    assert view["items"][-1]["amount"] == 75.5


# ─── member_workload ──────────────────────────────────────────────────────────

async def test_member_workload_counts(components):
    await _seed(
        components,
        ("member", "alice", {"name": "Alice", "role": "admin"}),
        ("transaction", "t1", {"submittedBy": "pm1", "approvedBy": "alice"}),
        ("transaction", "t2", {"submittedBy": "pm1"}),
    )
    view = await _rebuild(components, "member_workload")
    members = {m["memberId"]: m for m in view["members"]}
    assert members["alice"]["approvedTransactions"] == 1
    assert members["alice"]["role"] == "admin"
    assert members["pm1"]["submittedTransactions"] == 2
    assert members["pm1"]["role"] is None


# ─── alerts ───────────────────────────────────────────────────────────────────

async def test_alerts_derive_from_stored_views(components):
    await _seed(
        components,
        ("project", "p1", {"name": "Hot"}),
        ("transaction", "t1", {"projectId": "p1", "state": "APPROVED", "direction": "IN", "amount": 100}),
        ("transaction", "t2", {"projectId": "p1", "state": "APPROVED", "direction": "OUT", "amount": 90}),
        ("transaction", "t3", {"projectId": "p1", "state": "SUBMITTED", "amount": 1}),
    )
    await _rebuild(components, "project_financials")
    await _rebuild(components, "approval_inbox")
    alerts = await _rebuild(components, "alerts")
    assert alerts["approvalPending"] == 1
    assert alerts["highBurnProjects"] == 1
    assert alerts["hasBlockingAlert"] is True


async def test_alerts_without_sources_are_quiet(components):
    alerts = await _rebuild(components, "alerts")
    assert alerts["approvalPending"] == 0
    assert alerts["highBurnProjects"] == 0
    assert alerts["hasBlockingAlert"] is False


async def test_unknown_view_raises(components):
    with pytest.raises(UnsupportedViewError):
        await _rebuild(components, "nope")


async def test_views_are_tenant_scoped(components):
    await _seed(components, ("project", "p1", {"name": "Alpha"}))
    view = await _rebuild(components, "project_financials", tenant_id="globex")
    assert view["projects"] == []
