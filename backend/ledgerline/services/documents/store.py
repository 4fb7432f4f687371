"""
Versioned entity document store.

``upsert`` is the sole mutation primitive for entity documents:

  - creating requires ``expected_version`` to be ``None`` or ``0`` and
    yields version 1
  - updating requires ``expected_version`` (omitting it is an error) and
    it must equal the stored version; the new version is ``stored + 1``
  - the caller chooses ``WriteMode.MERGE`` or ``WriteMode.REPLACE``
  - an outbox event handed in is written in the same transaction

The version check is repeated by the database (``version_id_col``), so a
writer that read the same version as a concurrent winner loses at flush
time and re-runs against the new state, where it fails the check above.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.core.canonical import isoformat, utcnow
from ledgerline.core.errors import (
    DuplicateIdError,
    NotFoundError,
    VersionConflictError,
    VersionRequiredError,
)
from ledgerline.db.models.entity import EntityDocument
from ledgerline.db.models.outbox import OutboxEvent
from ledgerline.db.store import DocumentStore
from ledgerline.services.documents.state_policy import (
    TransactionState,
    assert_reason_for_rejected,
    assert_transition_allowed,
    parse_state,
)

_log = structlog.get_logger(__name__)

SERVER_MANAGED_FIELDS = frozenset(
    {
        "tenantId",
        "version",
        "createdBy",
        "createdAt",
        "updatedBy",
        "updatedAt",
        "submittedBy",
        "submittedAt",
        "approvedBy",
        "approvedAt",
        "rejectedReason",
        "uploadedBy",
        "uploadedAt",
        "authorId",
        "expectedVersion",
    }
)

# Fields owned by a dedicated workflow route; REPLACE writes carry them over.
WORKFLOW_FIELDS: dict[str, frozenset[str]] = {
    "transaction": frozenset({"state"}),
    "member": frozenset({"role", "roleChangedAt", "roleChangedBy", "roleChangeReason"}),
}


class WriteMode(StrEnum):
    MERGE = "merge"
    REPLACE = "replace"


@dataclass
class UpsertResult:
    tenant_id: str
    entity_type: str
    entity_id: str
    created: bool
    version: int
    data: dict[str, Any]
    before: dict[str, Any] | None = None
    changed_fields: list[str] = field(default_factory=list)

    @property
    def updated_at(self) -> str:
        return self.data["updatedAt"]


ExtraWrites = Callable[[AsyncSession, UpsertResult], Awaitable[None]]


# ── Payload helpers ───────────────────────────────────────────────────── #


def strip_server_managed_fields(payload: Mapping[str, Any] | None) -> dict[str, Any]:
    return {k: v for k, v in (payload or {}).items() if k not in SERVER_MANAGED_FIELDS}


def flatten_paths(value: Any, base: str = "") -> list[str]:
    """Dotted leaf paths of nested dicts; lists and scalars are leaves."""
    if not isinstance(value, Mapping) or not value:
        return [base] if base else []
    paths: list[str] = []
    for key, item in value.items():
        path = f"{base}.{key}" if base else str(key)
        if isinstance(item, Mapping) and item:
            paths.extend(flatten_paths(item, path))
        else:
            paths.append(path)
    return paths


def read_path(obj: Any, path: str) -> Any:
    for key in path.split("."):
        if not isinstance(obj, Mapping):
            return None
        obj = obj.get(key)
    return obj


def _same(a: Any, b: Any) -> bool:
    return json.dumps(a, sort_keys=True, default=str) == json.dumps(b, sort_keys=True, default=str)


def detect_changed_fields(current: Mapping[str, Any], patch: Mapping[str, Any]) -> list[str]:
    return [
        path for path in flatten_paths(patch) if not _same(read_path(current, path), read_path(patch, path))
    ]


# ── Store ─────────────────────────────────────────────────────────────── #


class VersionedDocumentStore:
    """Optimistically versioned entity documents on top of ``DocumentStore``."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    @property
    def store(self) -> DocumentStore:
        return self._store

    @staticmethod
    def to_document(row: EntityDocument) -> dict[str, Any]:
        return {**row.data, "id": row.id, "tenantId": row.tenant_id, "version": row.version}

    # ── Reads ──────────────────────────────────────────────────────────── #

    async def get(self, tenant_id: str, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        async with self._store.session() as session:
            row = await session.get(EntityDocument, (tenant_id, entity_type, entity_id))
            return self.to_document(row) if row is not None else None

    async def require(
        self, tenant_id: str, entity_type: str, entity_id: str, label: str | None = None
    ) -> dict[str, Any]:
        document = await self.get(tenant_id, entity_type, entity_id)
        if document is None:
            raise NotFoundError(label or entity_type.capitalize(), entity_id)
        return document

    async def query_in_session(
        self,
        session: AsyncSession,
        tenant_id: str,
        entity_type: str,
        *,
        filters: Mapping[str, str] | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> list[EntityDocument]:
        stmt = select(EntityDocument).where(
            EntityDocument.tenant_id == tenant_id,
            EntityDocument.entity_type == entity_type,
        )
        for key, value in (filters or {}).items():
            stmt = stmt.where(EntityDocument.data[key].as_string() == value)
        if cursor:
            stmt = stmt.where(EntityDocument.id > cursor)
        stmt = stmt.order_by(EntityDocument.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list((await session.execute(stmt)).scalars().all())

    async def list_documents(
        self,
        tenant_id: str,
        entity_type: str,
        *,
        filters: Mapping[str, str] | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> list[dict[str, Any]]:
        async with self._store.session() as session:
            rows = await self.query_in_session(
                session, tenant_id, entity_type, filters=filters, limit=limit, cursor=cursor
            )
            return [self.to_document(row) for row in rows]

    # ── Writes ─────────────────────────────────────────────────────────── #

    async def upsert_in_session(
        self,
        session: AsyncSession,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        payload: Mapping[str, Any],
        *,
        expected_version: int | None,
        actor_id: str,
        mode: WriteMode,
        now: datetime | None = None,
        server_fields: Mapping[str, Any] | None = None,
        outbox_event: OutboxEvent | None = None,
    ) -> UpsertResult:
        at = now or utcnow()
        timestamp = isoformat(at)
        patch = strip_server_managed_fields(payload)
        patch["id"] = entity_id

        row = await session.get(EntityDocument, (tenant_id, entity_type, entity_id))
        if row is None:
            if expected_version not in (None, 0):
                raise VersionConflictError(expected_version, 0)
            data = {
                **patch,
                **(server_fields or {}),
                "tenantId": tenant_id,
                "version": 1,
                "createdBy": actor_id,
                "createdAt": timestamp,
                "updatedBy": actor_id,
                "updatedAt": timestamp,
            }
            session.add(
                EntityDocument(
                    tenant_id=tenant_id,
                    entity_type=entity_type,
                    id=entity_id,
                    version=1,
                    data=data,
                    created_by=actor_id,
                    updated_by=actor_id,
                    created_at=at,
                    updated_at=at,
                )
            )
            result = UpsertResult(
                tenant_id=tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                created=True,
                version=1,
                data=data,
                changed_fields=detect_changed_fields({}, patch),
            )
        else:
            current_version = row.version
            if expected_version is None:
                raise VersionRequiredError(current_version)
            if expected_version != current_version:
                raise VersionConflictError(expected_version, current_version)

            before = dict(row.data)
            changed = detect_changed_fields(before, patch)
            if mode == WriteMode.MERGE:
                base = before
            else:
                kept = SERVER_MANAGED_FIELDS | WORKFLOW_FIELDS.get(entity_type, frozenset())
                base = {k: v for k, v in before.items() if k in kept}
                changed.extend(key for key in before if key not in kept and key not in patch)

            next_version = current_version + 1
            data = {
                **base,
                **patch,
                **(server_fields or {}),
                "tenantId": tenant_id,
                "version": next_version,
                "createdBy": before.get("createdBy") or actor_id,
                "createdAt": before.get("createdAt") or timestamp,
                "updatedBy": actor_id,
                "updatedAt": timestamp,
            }
            row.data = data
            row.version = next_version
            row.updated_by = actor_id
            row.updated_at = at
            result = UpsertResult(
                tenant_id=tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                created=False,
                version=next_version,
                data=data,
                before=before,
                changed_fields=changed,
            )

        if outbox_event is not None:
            outbox_event.payload = {
                **(outbox_event.payload or {}),
                "version": result.version,
                "changedFields": result.changed_fields,
            }
            session.add(outbox_event)
        await session.flush()
        return result

    async def upsert(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        payload: Mapping[str, Any],
        *,
        expected_version: int | None,
        actor_id: str,
        mode: WriteMode,
        now: datetime | None = None,
        server_fields: Mapping[str, Any] | None = None,
        outbox_event: OutboxEvent | None = None,
        extra_writes: ExtraWrites | None = None,
    ) -> UpsertResult:
        async def _upsert(session: AsyncSession) -> UpsertResult:
            result = await self.upsert_in_session(
                session,
                tenant_id,
                entity_type,
                entity_id,
                payload,
                expected_version=expected_version,
                actor_id=actor_id,
                mode=mode,
                now=now,
                server_fields=server_fields,
                outbox_event=outbox_event,
            )
            if extra_writes is not None:
                await extra_writes(session, result)
            return result

        result = await self._store.run_transaction(_upsert, name=f"upsert_{entity_type}")
        _log.info(
            "document_upserted",
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            version=result.version,
            created=result.created,
        )
        return result

    async def create_document(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        document: Mapping[str, Any],
        *,
        actor_id: str,
        now: datetime | None = None,
        server_fields: Mapping[str, Any] | None = None,
        outbox_event: OutboxEvent | None = None,
    ) -> dict[str, Any]:
        """Create-only write; an existing id fails with ``duplicate_id``."""

        async def _create(session: AsyncSession) -> dict[str, Any]:
            if await session.get(EntityDocument, (tenant_id, entity_type, entity_id)) is not None:
                raise DuplicateIdError(entity_type.capitalize(), entity_id)
            result = await self.upsert_in_session(
                session,
                tenant_id,
                entity_type,
                entity_id,
                document,
                expected_version=None,
                actor_id=actor_id,
                mode=WriteMode.REPLACE,
                now=now,
                server_fields=server_fields,
                outbox_event=outbox_event,
            )
            return result.data

        data = await self._store.run_transaction(_create, name=f"create_{entity_type}")
        _log.info("document_created", tenant_id=tenant_id, entity_type=entity_type, entity_id=entity_id)
        return data

    async def transition(
        self,
        tenant_id: str,
        entity_id: str,
        *,
        new_state: str,
        expected_version: int,
        actor_id: str,
        reason: str | None = None,
        now: datetime | None = None,
        outbox_event: OutboxEvent | None = None,
    ) -> UpsertResult:
        """Move a transaction through the approval workflow."""
        target = parse_state(new_state)
        assert_reason_for_rejected(target, reason)

        async def _transition(session: AsyncSession) -> UpsertResult:
            at = now or utcnow()
            timestamp = isoformat(at)
            row = await session.get(EntityDocument, (tenant_id, "transaction", entity_id))
            if row is None:
                raise NotFoundError("Transaction", entity_id)
            if expected_version != row.version:
                raise VersionConflictError(expected_version, row.version)
            assert_transition_allowed(row.data.get("state") or TransactionState.DRAFT, target)

            server_fields: dict[str, Any] = {}
            if target == TransactionState.SUBMITTED:
                server_fields = {"submittedBy": actor_id, "submittedAt": timestamp}
            elif target == TransactionState.APPROVED:
                server_fields = {"approvedBy": actor_id, "approvedAt": timestamp}
            elif target == TransactionState.REJECTED:
                server_fields = {"rejectedReason": (reason or "").strip()}

            return await self.upsert_in_session(
                session,
                tenant_id,
                "transaction",
                entity_id,
                {"state": target.value},
                expected_version=expected_version,
                actor_id=actor_id,
                mode=WriteMode.MERGE,
                now=at,
                server_fields=server_fields,
                outbox_event=outbox_event,
            )

        result = await self._store.run_transaction(_transition, name="transition_transaction")
        _log.info(
            "transaction_state_changed",
            tenant_id=tenant_id,
            entity_id=entity_id,
            state=target.value,
            version=result.version,
        )
        return result
