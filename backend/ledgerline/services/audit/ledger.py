"""
Hash-chained audit ledger.

Every entry is SHA-256 hashed over its canonical content, including the
hash of the immediately preceding entry of the same tenant. This forms a
per-tenant hash chain that makes tampering with historical records
detectable.

Chain growth is serialised through the tenant's head pointer: an append
reads the head, writes the entry and advances the head in one
transaction. The head's ``last_seq`` is a version column, so concurrent
appends that read the same head cannot both commit; the loser is re-run
by the transaction runner against the new head. There is no in-process
lock and the guarantee holds across processes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.core.canonical import canonical_json, isoformat, sha256_hex, timestamped_id, utcnow
from ledgerline.core.metrics import audit_verifications_total
from ledgerline.core.identity import Identity
from ledgerline.db.models.audit import AuditChainHead, AuditEntry
from ledgerline.db.store import DocumentStore
from ledgerline.services.pii.protector import PiiProtector

_log = structlog.get_logger(__name__)

HASH_ALG = "sha256"
DEFAULT_VERIFY_LIMIT = 2000
MAX_VERIFY_LIMIT = 10000


@dataclass(frozen=True)
class AppendResult:
    id: str
    chain_seq: int
    hash: str
    prev_hash: str | None


@dataclass(frozen=True)
class VerifyResult:
    ok: bool
    checked: int
    last_seq: int | None = None
    last_hash: str | None = None
    broken_at_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {
                "ok": True,
                "checked": self.checked,
                "lastSeq": self.last_seq,
                "lastHash": self.last_hash,
            }
        return {
            "ok": False,
            "checked": self.checked,
            "brokenAtId": self.broken_at_id,
            "reason": self.reason,
        }


def hashed_content(entry: AuditEntry) -> dict[str, Any]:
    """The exact field set covered by an entry's hash."""
    return {
        "tenantId": entry.tenant_id,
        "id": entry.id,
        "chainSeq": entry.chain_seq,
        "prevHash": entry.prev_hash or None,
        "entityType": entry.entity_type,
        "entityId": entry.entity_id,
        "action": entry.action,
        "userId": entry.user_id,
        "userName": entry.user_name,
        "userRole": entry.user_role or None,
        "userEmailEnc": entry.user_email_enc or None,
        "requestId": entry.request_id,
        "details": entry.details,
        "metadata": entry.meta or None,
        "timestamp": entry.timestamp,
    }


def compute_entry_hash(entry: AuditEntry) -> str:
    return sha256_hex(canonical_json(hashed_content(entry)))


def entry_to_dict(entry: AuditEntry) -> dict[str, Any]:
    return {**hashed_content(entry), "hash": entry.hash, "hashAlg": entry.hash_alg}


class AuditChainLedger:
    """
    Service for appending to and verifying the per-tenant audit chain.

    Usage:
        ledger = AuditChainLedger(store, pii)
        await ledger.append(
            tenant_id="acme",
            entity_type="project",
            entity_id="p1",
            action="CREATE",
            actor=identity,
            details="Project updated: Alpha",
        )
    """

    def __init__(self, store: DocumentStore, pii: PiiProtector) -> None:
        self._store = store
        self._pii = pii

    async def append(
        self,
        *,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        action: str,
        actor: Identity,
        details: str,
        request_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> AppendResult:
        at = timestamp or utcnow()
        email_enc = self._pii.encrypt_text(actor.actor_email)

        async def _append(session: AsyncSession) -> AppendResult:
            head = await session.get(AuditChainHead, tenant_id)
            last_seq = head.last_seq if head is not None else 0
            prev_hash = head.last_hash if head is not None else None
            chain_seq = last_seq + 1

            entry = AuditEntry(
                tenant_id=tenant_id,
                id=timestamped_id("al", at),
                chain_seq=chain_seq,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                user_id=actor.actor_id,
                user_name=actor.actor_id,
                user_role=actor.actor_role or None,
                user_email_enc=email_enc,
                request_id=request_id,
                details=details,
                meta=metadata or None,
                timestamp=isoformat(at),
                prev_hash=prev_hash,
                hash_alg=HASH_ALG,
            )
            entry.hash = compute_entry_hash(entry)
            session.add(entry)

            if head is None:
                session.add(
                    AuditChainHead(tenant_id=tenant_id, last_seq=chain_seq, last_hash=entry.hash)
                )
            else:
                head.last_seq = chain_seq
                head.last_hash = entry.hash
                head.updated_at = at
            await session.flush()
            return AppendResult(entry.id, chain_seq, entry.hash, prev_hash)

        result = await self._store.run_transaction(_append, name="audit_append")
        _log.info(
            "audit_appended",
            tenant_id=tenant_id,
            audit_id=result.id,
            chain_seq=result.chain_seq,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        return result

    async def verify(self, tenant_id: str, limit: int = DEFAULT_VERIFY_LIMIT) -> VerifyResult:
        """
        Verify the first ``limit`` entries of a tenant's chain in seq order.

        Checks, in order: chain_seq present and positive, no gap from the
        previous entry, prev_hash equal to the previous entry's recomputed
        hash, stored hash equal to the recomputed hash.
        """
        safe_limit = min(max(int(limit), 1), MAX_VERIFY_LIMIT)
        previous_seq: int | None = None
        previous_hash: str | None = None
        checked = 0
        broken: VerifyResult | None = None

        async with self._store.session() as session:
            entries = await session.stream_scalars(
                select(AuditEntry)
                .where(AuditEntry.tenant_id == tenant_id)
                .order_by(AuditEntry.chain_seq.asc())
                .limit(safe_limit)
            )
            try:
                async for entry in entries:
                    seq = entry.chain_seq if isinstance(entry.chain_seq, int) else -1
                    reason: str | None = None
                    expected_hash = compute_entry_hash(entry)

                    if seq <= 0:
                        reason = "missing_or_invalid_chain_seq"
                    elif previous_seq is not None and seq != previous_seq + 1:
                        reason = f"sequence_gap: expected={previous_seq + 1} actual={seq}"
                    elif (entry.prev_hash or None) != previous_hash:
                        reason = "prev_hash_mismatch"
                    elif entry.hash != expected_hash:
                        reason = "hash_mismatch"

                    if reason is not None:
                        broken = VerifyResult(
                            ok=False, checked=checked, broken_at_id=entry.id, reason=reason
                        )
                        break

                    previous_seq = seq
                    previous_hash = expected_hash
                    checked += 1
            finally:
                await entries.close()

        if broken is not None:
            audit_verifications_total.labels(result="broken").inc()
            _log.error(
                "audit_chain_broken",
                tenant_id=tenant_id,
                audit_id=broken.broken_at_id,
                reason=broken.reason,
                checked=checked,
            )
            return broken

        audit_verifications_total.labels(result="ok").inc()
        _log.info("audit_chain_verified", tenant_id=tenant_id, checked=checked)
        return VerifyResult(ok=True, checked=checked, last_seq=previous_seq or 0, last_hash=previous_hash)

    async def list_entries(
        self, tenant_id: str, *, limit: int = 50, cursor: str | None = None
    ) -> list[dict[str, Any]]:
        """Entries in chain order; ``cursor`` is the id of the last entry already seen."""
        stmt = select(AuditEntry).where(AuditEntry.tenant_id == tenant_id)
        if cursor:
            after_seq = (
                select(AuditEntry.chain_seq)
                .where(AuditEntry.tenant_id == tenant_id, AuditEntry.id == cursor)
                .scalar_subquery()
            )
            stmt = stmt.where(AuditEntry.chain_seq > after_seq)
        stmt = stmt.order_by(AuditEntry.chain_seq.asc()).limit(limit)
        async with self._store.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [entry_to_dict(row) for row in rows]
