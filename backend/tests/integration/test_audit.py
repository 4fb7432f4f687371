"""Integration tests: audit log listing and hash-chain verification over HTTP."""
import pytest
from sqlalchemy import update

from ledgerline.db.models.audit import AuditEntry
from tests.conftest import TENANT, make_headers

pytestmark = pytest.mark.asyncio

READ = make_headers(idempotent=False)


async def _approval_flow(api):
    await api.project("p1")
    await api.ledger("l1", "p1")
    created = await api.transaction("t1")
    version = created["version"]
    submitted = await api.transition("t1", "SUBMITTED", version)
    assert submitted.status_code == 200
    approved = await api.transition("t1", "APPROVED", submitted.json()["version"], actor="fin", role="finance")
    assert approved.status_code == 200


# ─── Verification ─────────────────────────────────────────────────────────────

async def test_chain_verifies_after_approval_flow(client, api):
    await _approval_flow(api)
    resp = await client.get("/api/v1/audit-logs/verify", headers=READ)
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["checked"] >= 3
    assert body["lastSeq"] == body["checked"]


async def test_tampered_entry_breaks_verification(app, client, api):
    await _approval_flow(api)
    entries = (await client.get("/api/v1/audit-logs", headers=READ)).json()["items"]
    target = entries[1]["id"]

    async def _tamper(session):
        await session.execute(
            update(AuditEntry)
            .where(AuditEntry.tenant_id == TENANT, AuditEntry.id == target)
            .values(details="nothing to see here")
        )

    await app.state.components.store.run_transaction(_tamper)

    resp = await client.get("/api/v1/audit-logs/verify", headers=READ)
    assert resp.status_code == 409
    body = resp.json()
    assert body["ok"] is False
    assert body["reason"] == "hash_mismatch"
    assert body["brokenAtId"] == target
    assert body["checked"] == 1


async def test_empty_chain_verifies(client):
    resp = await client.get("/api/v1/audit-logs/verify", headers=READ)
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "checked": 0, "lastSeq": 0, "lastHash": None}


# ─── Listing ──────────────────────────────────────────────────────────────────

async def test_entries_are_chained_in_order(client, api):
    await _approval_flow(api)
    items = (await client.get("/api/v1/audit-logs", headers=READ)).json()["items"]
    assert [e["chainSeq"] for e in items] == list(range(1, len(items) + 1))
    assert items[0]["prevHash"] is None
    for prev, entry in zip(items, items[1:]):
        assert entry["prevHash"] == prev["hash"]
    assert items[-1]["action"] == "STATE_CHANGE:APPROVED"
    assert items[-1]["userId"] == "fin"


async def test_listing_pages_with_cursor(client, api):
    await _approval_flow(api)
    first = (await client.get("/api/v1/audit-logs?limit=2", headers=READ)).json()
    assert first["count"] == 2
    rest = (
        await client.get(f"/api/v1/audit-logs?limit=200&cursor={first['nextCursor']}", headers=READ)
    ).json()
    assert rest["items"][0]["chainSeq"] == 3
    assert rest["nextCursor"] is None


async def test_audit_is_tenant_scoped(client, api):
    await _approval_flow(api)
    resp = await client.get("/api/v1/audit-logs", headers=make_headers(tenant="globex", idempotent=False))
    assert resp.json()["count"] == 0


async def test_pm_cannot_read_audit(client):
    resp = await client.get("/api/v1/audit-logs", headers=make_headers("pm1", "pm", idempotent=False))
    assert resp.status_code == 403
    resp = await client.get("/api/v1/audit-logs/verify", headers=make_headers("pm1", "pm", idempotent=False))
    assert resp.status_code == 403


async def test_auditor_can_read(client, api):
    await api.project("p1")
    resp = await client.get("/api/v1/audit-logs", headers=make_headers("aud", "auditor", idempotent=False))
    assert resp.status_code == 200
    assert resp.json()["items"][0]["details"] == "Project created: Alpha"
