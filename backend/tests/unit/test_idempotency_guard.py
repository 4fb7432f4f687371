"""Unit tests for ledgerline.services.idempotency.guard."""
from datetime import timedelta

import pytest
from sqlalchemy import select, text

from ledgerline.core.canonical import utcnow
from ledgerline.db.models.idempotency import IdempotencyRecord, IdempotencyStatus
from ledgerline.services.idempotency.guard import BeginMode, idempotency_record_id

pytestmark = pytest.mark.asyncio

PATH = "/api/v1/projects"


async def _begin(guard, key="k-1", body=None, **kw):
    return await guard.begin(
        tenant_id=kw.pop("tenant_id", "acme"),
        idempotency_key=key,
        method="POST",
        path=kw.pop("path", PATH),
        body={"name": "Alpha"} if body is None else body,
        actor_id="alice",
        **kw,
    )


async def _record(components, key="k-1", tenant_id="acme"):
    async with components.store.session() as session:
        return await session.get(IdempotencyRecord, (tenant_id, idempotency_record_id(key)))


# ─── begin ────────────────────────────────────────────────────────────────────

async def test_first_begin_starts_and_writes_pending_record(components):
    result = await _begin(components.guard)
    assert result.mode == BeginMode.STARTED
    record = await _record(components)
    assert record.status == IdempotencyStatus.PENDING
    assert record.request_fingerprint == result.request_fingerprint


async def test_status_is_stored_as_lowercase_value(components):
    await _begin(components.guard)
    async with components.store.session() as session:
        stored = (await session.execute(text("SELECT status FROM idempotency_keys"))).scalar_one()
    assert stored == "pending"


async def test_pending_same_fingerprint_is_in_progress(components):
    await _begin(components.guard)
    result = await _begin(components.guard)
    assert result.mode == BeginMode.IN_PROGRESS


async def test_completed_same_fingerprint_replays_stored_bytes(components):
    started = await _begin(components.guard)
    await components.guard.complete(
        tenant_id="acme",
        idempotency_key="k-1",
        request_fingerprint=started.request_fingerprint,
        response_status=201,
        response_body='{"id":"p1","version":1}',
    )
    replay = await _begin(components.guard)
    assert replay.mode == BeginMode.REPLAY
    assert replay.response_status == 201
    assert replay.response_body == '{"id":"p1","version":1}'


async def test_different_payload_conflicts(components):
    await _begin(components.guard)
    result = await _begin(components.guard, body={"name": "Beta"})
    assert result.mode == BeginMode.CONFLICT


async def test_conflict_also_after_completion(components):
    started = await _begin(components.guard)
    await components.guard.complete(
        tenant_id="acme",
        idempotency_key="k-1",
        request_fingerprint=started.request_fingerprint,
        response_status=200,
        response_body="{}",
    )
    assert (await _begin(components.guard, path="/api/v1/ledgers")).mode == BeginMode.CONFLICT


async def test_body_key_order_does_not_conflict(components):
    await _begin(components.guard, body={"a": 1, "b": 2})
    result = await _begin(components.guard, body={"b": 2, "a": 1})
    assert result.mode == BeginMode.IN_PROGRESS


async def test_keys_are_scoped_per_tenant(components):
    await _begin(components.guard, tenant_id="acme")
    result = await _begin(components.guard, tenant_id="globex", body={"name": "Other"})
    assert result.mode == BeginMode.STARTED


async def test_expired_pending_is_rearmed(components):
    past = utcnow() - timedelta(hours=1)
    await _begin(components.guard, ttl_seconds=60, now=past)
    result = await _begin(components.guard)
    assert result.mode == BeginMode.STARTED


async def test_failed_record_is_rearmed_and_kept(components):
    started = await _begin(components.guard)
    await components.guard.fail(
        tenant_id="acme",
        idempotency_key="k-1",
        request_fingerprint=started.request_fingerprint,
        error=RuntimeError("boom"),
    )
    record = await _record(components)
    assert record.status == IdempotencyStatus.FAILED
    assert record.last_error == {"message": "boom"}

    again = await _begin(components.guard)
    assert again.mode == BeginMode.STARTED
    record = await _record(components)
    assert record.status == IdempotencyStatus.PENDING
    assert record.last_error is None


# ─── cleanup_expired ──────────────────────────────────────────────────────────

async def test_cleanup_deletes_only_expired(components):
    past = utcnow() - timedelta(days=2)
    for i in range(3):
        await _begin(components.guard, key=f"old-{i}", ttl_seconds=60, now=past)
    await _begin(components.guard, key="fresh")

    result = await components.guard.cleanup_expired(batch_size=2)
    assert result["deleted"] == 3
    assert result["dryRun"] is False

    async with components.store.session() as session:
        keys = (await session.execute(select(IdempotencyRecord.idempotency_key))).scalars().all()
    assert keys == ["fresh"]


async def test_cleanup_dry_run_counts_without_deleting(components):
    past = utcnow() - timedelta(days=2)
    await _begin(components.guard, key="old", ttl_seconds=60, now=past)

    result = await components.guard.cleanup_expired(dry_run=True)
    assert result == {"deleted": 1, "now": result["now"], "dryRun": True}
    assert await _record(components, key="old") is not None
