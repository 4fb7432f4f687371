"""
Unit tests for the hash-chained audit ledger.

Covers:
  - chain linkage and per-tenant sequencing
  - concurrent appends never sharing a sequence number
  - tamper detection (content, linkage, gaps)
  - PII: e-mail stored only as ciphertext
"""
import asyncio

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import delete, select, update

from ledgerline.core.identity import Identity
from ledgerline.db.models.audit import AuditEntry
from ledgerline.services.audit.ledger import AuditChainLedger, compute_entry_hash
from ledgerline.services.pii.protector import FernetPiiProtector

pytestmark = pytest.mark.asyncio

ACTOR = Identity(tenant_id="acme", actor_id="alice", actor_role="admin", actor_email="alice@example.com")


async def _append(ledger, n=3, tenant_id="acme"):
    results = []
    for i in range(n):
        results.append(
            await ledger.append(
                tenant_id=tenant_id,
                entity_type="project",
                entity_id=f"p{i}",
                action="CREATE",
                actor=ACTOR,
                details=f"Project created: P{i}",
                metadata={"version": 1},
            )
        )
    return results


async def _entries(components, tenant_id="acme"):
    async with components.store.session() as session:
        rows = await session.execute(
            select(AuditEntry).where(AuditEntry.tenant_id == tenant_id).order_by(AuditEntry.chain_seq)
        )
        return list(rows.scalars())


async def _tamper(components, entry_id, **values):
    async def _fn(session):
        await session.execute(update(AuditEntry).where(AuditEntry.id == entry_id).values(**values))

    await components.store.run_transaction(_fn)


# ─── Append ───────────────────────────────────────────────────────────────────

async def test_first_entry_has_no_prev_hash(components):
    first = (await _append(components.ledger, n=1))[0]
    assert first.chain_seq == 1
    assert first.prev_hash is None
    assert len(first.hash) == 64


async def test_entries_link_to_predecessor(components):
    results = await _append(components.ledger, n=3)
    assert [r.chain_seq for r in results] == [1, 2, 3]
    assert results[1].prev_hash == results[0].hash
    assert results[2].prev_hash == results[1].hash


async def test_stored_hash_matches_recomputed(components):
    await _append(components.ledger, n=2)
    for entry in await _entries(components):
        assert entry.hash == compute_entry_hash(entry)
        assert entry.hash_alg == "sha256"


async def test_chains_are_independent_per_tenant(components):
    await _append(components.ledger, n=2, tenant_id="acme")
    other = await _append(components.ledger, n=1, tenant_id="globex")
    assert other[0].chain_seq == 1
    assert other[0].prev_hash is None


async def test_concurrent_appends_get_distinct_contiguous_seqs(components):
    async def one(i):
        return await components.ledger.append(
            tenant_id="acme",
            entity_type="project",
            entity_id=f"c{i}",
            action="UPDATE",
            actor=ACTOR,
            details=f"concurrent {i}",
        )

    results = await asyncio.gather(*(one(i) for i in range(12)))
    assert sorted(r.chain_seq for r in results) == list(range(1, 13))
    verify = await components.ledger.verify("acme")
    assert verify.ok is True
    assert verify.checked == 12


# ─── Verify ───────────────────────────────────────────────────────────────────

async def test_verify_empty_chain(components):
    result = await components.ledger.verify("acme")
    assert result.ok is True
    assert result.checked == 0
    assert result.to_dict() == {"ok": True, "checked": 0, "lastSeq": 0, "lastHash": None}


async def test_verify_intact_chain(components):
    results = await _append(components.ledger, n=4)
    result = await components.ledger.verify("acme")
    assert result.ok is True
    assert result.checked == 4
    assert result.last_seq == 4
    assert result.last_hash == results[-1].hash


async def test_verify_respects_limit(components):
    await _append(components.ledger, n=5)
    result = await components.ledger.verify("acme", limit=2)
    assert result.ok is True
    assert result.checked == 2


async def test_tampered_details_detected_as_hash_mismatch(components):
    results = await _append(components.ledger, n=3)
    await _tamper(components, results[1].id, details="Project created: FORGED")

    result = await components.ledger.verify("acme")
    assert result.ok is False
    assert result.reason == "hash_mismatch"
    assert result.broken_at_id == results[1].id
    assert result.checked == 1


async def test_tampered_prev_hash_detected(components):
    results = await _append(components.ledger, n=3)
    await _tamper(components, results[2].id, prev_hash="0" * 64)

    result = await components.ledger.verify("acme")
    assert result.ok is False
    assert result.reason == "prev_hash_mismatch"
    assert result.broken_at_id == results[2].id
    assert result.checked == 2


async def test_rehashed_forgery_breaks_successor(components):
    """Recomputing a forged entry's hash still breaks the next link."""
    results = await _append(components.ledger, n=3)
    entries = await _entries(components)
    forged = entries[1]
    forged.details = "rewritten"
    await _tamper(components, forged.id, details="rewritten", hash=compute_entry_hash(forged))

    result = await components.ledger.verify("acme")
    assert result.ok is False
    assert result.reason == "prev_hash_mismatch"
    assert result.broken_at_id == results[2].id


async def test_deleted_entry_detected_as_sequence_gap(components):
    results = await _append(components.ledger, n=3)

    async def _delete(session):
        await session.execute(delete(AuditEntry).where(AuditEntry.id == results[1].id))

    await components.store.run_transaction(_delete)
    result = await components.ledger.verify("acme")
    assert result.ok is False
    assert result.reason == "sequence_gap: expected=2 actual=3"
    assert result.broken_at_id == results[2].id


async def test_broken_result_to_dict(components):
    results = await _append(components.ledger, n=2)
    await _tamper(components, results[0].id, action="DELETE")
    body = (await components.ledger.verify("acme")).to_dict()
    assert body == {"ok": False, "checked": 0, "brokenAtId": results[0].id, "reason": "hash_mismatch"}


# ─── Listing & PII ────────────────────────────────────────────────────────────

async def test_list_entries_pages_by_id(components):
    await _append(components.ledger, n=3)
    first = await components.ledger.list_entries("acme", limit=2)
    rest = await components.ledger.list_entries("acme", limit=2, cursor=first[-1]["id"])
    assert [e["chainSeq"] for e in first + rest] == [1, 2, 3]
    assert first[0]["hash"] and first[0]["hashAlg"] == "sha256"


async def test_email_is_never_stored_in_plaintext(components):
    protector = FernetPiiProtector(Fernet.generate_key())
    ledger = AuditChainLedger(components.store, protector)
    await _append(ledger, n=1)
    entry = (await _entries(components))[0]
    assert entry.user_email_enc.startswith("enc:fernet:")
    assert "alice@example.com" not in entry.user_email_enc
    assert protector.decrypt_text(entry.user_email_enc) == "alice@example.com"


async def test_without_key_email_is_dropped(components):
    await _append(components.ledger, n=1)
    entry = (await _entries(components))[0]
    assert entry.user_email_enc is None
