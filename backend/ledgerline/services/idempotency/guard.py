"""
Idempotency guard for mutating requests.

``begin`` decides, inside one transaction, whether a request carrying a
given ``Idempotency-Key`` should run, replay a stored response, or be
rejected:

  started      no usable record existed; a pending record now does
  replay       the key completed with the same fingerprint
  conflict     the key was used with a different fingerprint
  in_progress  a pending attempt with the same fingerprint has not expired

A pending record past its expiry (crashed worker) and a failed record with
the same fingerprint are re-armed as a new pending attempt. Records are
never deleted by ``fail``; only ``cleanup_expired`` garbage-collects them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.core.canonical import as_utc, isoformat, request_fingerprint, sha256_hex, utcnow
from ledgerline.core.metrics import idempotency_begins_total
from ledgerline.db.models.idempotency import IdempotencyRecord, IdempotencyStatus
from ledgerline.db.store import DocumentStore

_log = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 600


class BeginMode(StrEnum):
    STARTED = "started"
    REPLAY = "replay"
    CONFLICT = "conflict"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class BeginResult:
    mode: BeginMode
    request_fingerprint: str
    response_status: int | None = None
    response_body: str | None = None
    reason: str | None = None


def idempotency_record_id(idempotency_key: str) -> str:
    return f"ik_{sha256_hex(idempotency_key)[:40]}"


class IdempotencyGuard:
    """Deduplicates mutating requests per ``(tenant_id, idempotency_key)``."""

    def __init__(self, store: DocumentStore, *, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds

    async def begin(
        self,
        *,
        tenant_id: str,
        idempotency_key: str,
        method: str,
        path: str,
        body: Any,
        actor_id: str | None = None,
        request_id: str | None = None,
        ttl_seconds: int | None = None,
        now: datetime | None = None,
    ) -> BeginResult:
        fingerprint = request_fingerprint(method, path, body)
        record_id = idempotency_record_id(idempotency_key)
        ttl = ttl_seconds if ttl_seconds is not None else self._ttl_seconds

        async def _begin(session: AsyncSession) -> BeginResult:
            at = now or utcnow()
            expires_at = at + timedelta(seconds=ttl)
            record = await session.get(IdempotencyRecord, (tenant_id, record_id))

            if record is None:
                session.add(
                    IdempotencyRecord(
                        tenant_id=tenant_id,
                        id=record_id,
                        idempotency_key=idempotency_key,
                        request_fingerprint=fingerprint,
                        method=method.upper(),
                        path=path,
                        status=IdempotencyStatus.PENDING,
                        actor_id=actor_id,
                        request_id=request_id,
                        expires_at=expires_at,
                        created_at=at,
                        updated_at=at,
                    )
                )
                return BeginResult(BeginMode.STARTED, fingerprint)

            if record.request_fingerprint != fingerprint:
                return BeginResult(
                    BeginMode.CONFLICT,
                    fingerprint,
                    reason="Idempotency key was already used with different payload",
                )

            if record.status == IdempotencyStatus.COMPLETED:
                return BeginResult(
                    BeginMode.REPLAY,
                    fingerprint,
                    response_status=record.response_status or 200,
                    response_body=record.response_body,
                )

            if record.status == IdempotencyStatus.PENDING and as_utc(record.expires_at) > at:
                return BeginResult(
                    BeginMode.IN_PROGRESS,
                    fingerprint,
                    reason="Idempotent request is still being processed",
                )

            # Expired pending attempt or a failed attempt: re-arm.
            record.status = IdempotencyStatus.PENDING
            record.actor_id = actor_id
            record.request_id = request_id
            record.expires_at = expires_at
            record.last_error = None
            record.updated_at = at
            return BeginResult(BeginMode.STARTED, fingerprint)

        result = await self._store.run_transaction(_begin, name="idempotency_begin")
        idempotency_begins_total.labels(mode=result.mode.value).inc()
        _log.info(
            "idempotency_" + result.mode.value,
            tenant_id=tenant_id,
            record_id=record_id,
            request_id=request_id,
        )
        return result

    async def complete(
        self,
        *,
        tenant_id: str,
        idempotency_key: str,
        request_fingerprint: str,
        response_status: int,
        response_body: str,
        request_id: str | None = None,
    ) -> None:
        record_id = idempotency_record_id(idempotency_key)

        async def _complete(session: AsyncSession) -> None:
            at = utcnow()
            record = await session.get(IdempotencyRecord, (tenant_id, record_id))
            if record is None:
                return
            record.request_fingerprint = request_fingerprint
            record.status = IdempotencyStatus.COMPLETED
            record.response_status = response_status
            record.response_body = response_body
            record.request_id = request_id
            record.completed_at = at
            record.updated_at = at

        await self._store.run_transaction(_complete, name="idempotency_complete")
        _log.debug("idempotency_completed", tenant_id=tenant_id, record_id=record_id)

    async def fail(
        self,
        *,
        tenant_id: str,
        idempotency_key: str,
        request_fingerprint: str,
        error: BaseException | str,
        request_id: str | None = None,
    ) -> None:
        record_id = idempotency_record_id(idempotency_key)

        async def _fail(session: AsyncSession) -> None:
            at = utcnow()
            record = await session.get(IdempotencyRecord, (tenant_id, record_id))
            if record is None:
                return
            record.request_fingerprint = request_fingerprint
            record.status = IdempotencyStatus.FAILED
            record.request_id = request_id
            record.last_error = {"message": str(error)}
            record.failed_at = at
            record.updated_at = at

        await self._store.run_transaction(_fail, name="idempotency_fail")
        _log.info("idempotency_failed", tenant_id=tenant_id, record_id=record_id)

    async def cleanup_expired(
        self,
        *,
        now: datetime | None = None,
        batch_size: int = 200,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Delete records whose ``expires_at`` has passed, in batches."""
        at = now or utcnow()
        batch_size = min(max(batch_size, 1), 5000)
        deleted = 0

        while True:
            async def _sweep(session: AsyncSession) -> int:
                rows = (
                    await session.execute(
                        select(IdempotencyRecord.tenant_id, IdempotencyRecord.id)
                        .where(IdempotencyRecord.expires_at <= at)
                        .order_by(IdempotencyRecord.expires_at)
                        .limit(batch_size)
                    )
                ).all()
                if dry_run or not rows:
                    return len(rows)
                for tenant_id, record_id in rows:
                    await session.execute(
                        delete(IdempotencyRecord).where(
                            IdempotencyRecord.tenant_id == tenant_id,
                            IdempotencyRecord.id == record_id,
                            IdempotencyRecord.expires_at <= at,
                        )
                    )
                return len(rows)

            swept = await self._store.run_transaction(_sweep, name="idempotency_cleanup")
            deleted += swept
            if dry_run or swept < batch_size:
                break

        _log.info("idempotency_cleanup_done", deleted=deleted, dry_run=dry_run)
        return {"deleted": deleted, "now": isoformat(at), "dryRun": dry_run}
