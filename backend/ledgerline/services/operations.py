"""
Route-level operations.

Each mutation performs its versioned write with the outbox event in one
transaction, then appends to the audit chain, and returns the response
body the idempotency runner will store. Reads go straight to the stores.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.core.canonical import isoformat, normalize_role, short_id, utcnow
from ledgerline.core.errors import (
    ConflictError,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from ledgerline.core.identity import Identity
from ledgerline.db.models.entity import EntityDocument
from ledgerline.db.models.outbox import OutboxEvent
from ledgerline.db.models.projection import ChangeEvent, Notification
from ledgerline.schemas.entities import (
    CommentCreateRequest,
    EvidenceCreateRequest,
    LedgerUpsertRequest,
    MemberRoleChangeRequest,
    ProjectUpsertRequest,
    ReplayRequest,
    StateChangeRequest,
    TransactionUpsertRequest,
    WriteRequest,
)
from ledgerline.services.container import Components
from ledgerline.services.documents.state_policy import TransactionState, normalize_state, parse_state
from ledgerline.services.documents.store import UpsertResult, WriteMode
from ledgerline.services.outbox.notifications import notification_to_dict
from ledgerline.services.outbox.relay import build_event
from ledgerline.services.pipeline import MutationOutcome
from ledgerline.services.projections.views import read_view, supported_views

_log = structlog.get_logger(__name__)

ENTITY_COLLECTIONS = {
    "project": "project",
    "projects": "project",
    "ledger": "ledger",
    "ledgers": "ledger",
    "transaction": "transaction",
    "transactions": "transaction",
    "expense_set": "expense_set",
    "expense_sets": "expense_set",
    "change_request": "change_request",
    "change_requests": "change_request",
    "member": "member",
    "members": "member",
}

STATE_PERMISSIONS = {
    TransactionState.SUBMITTED: "transaction:submit",
    TransactionState.APPROVED: "transaction:approve",
    TransactionState.REJECTED: "transaction:reject",
}

MAX_PAGE_SIZE = 200


def _page(items: list[dict[str, Any]], limit: int) -> dict[str, Any]:
    next_cursor = items[-1]["id"] if items and len(items) >= limit else None
    return {"items": items, "count": len(items), "nextCursor": next_cursor}


def _actor_payload(identity: Identity) -> dict[str, Any]:
    return {"actorId": identity.actor_id, "actorRole": identity.actor_role}


class LedgerOperations:
    """Coordinates documents, outbox, audit and queue for the HTTP routes."""

    def __init__(self, components: Components) -> None:
        self._c = components

    # ── Shared ─────────────────────────────────────────────────────────── #

    def _event(
        self,
        identity: Identity,
        event_type: str,
        entity_type: str,
        entity_id: str,
        request_id: str | None,
        **payload: Any,
    ) -> OutboxEvent:
        return build_event(
            tenant_id=identity.tenant_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            payload={**_actor_payload(identity), **payload},
            request_id=request_id,
        )

    async def _audit_upsert(
        self,
        identity: Identity,
        result: UpsertResult,
        *,
        label: str,
        request_id: str | None,
        event_id: str,
    ) -> None:
        verb = "created" if result.created else "updated"
        name = result.data.get("name") or result.data.get("counterparty") or result.entity_id
        await self._c.ledger.append(
            tenant_id=identity.tenant_id,
            entity_type=result.entity_type,
            entity_id=result.entity_id,
            action="CREATE" if result.created else "UPDATE",
            actor=identity,
            details=f"{label} {verb}: {name}",
            request_id=request_id,
            metadata={
                "version": result.version,
                "changedFields": result.changed_fields,
                "eventId": event_id,
            },
        )

    @staticmethod
    def _upsert_body(result: UpsertResult, **extra: Any) -> MutationOutcome:
        body = {
            "id": result.entity_id,
            "tenantId": result.tenant_id,
            "version": result.version,
            "updatedAt": result.updated_at,
            **extra,
        }
        return MutationOutcome(201 if result.created else 200, body)

    # ── Projects / ledgers / transactions ──────────────────────────────── #

    async def upsert_project(
        self, identity: Identity, body: ProjectUpsertRequest, *, request_id: str | None
    ) -> MutationOutcome:
        entity_id = body.id or short_id("prj")
        event = self._event(identity, "project.upsert", "project", entity_id, request_id)
        result = await self._c.documents.upsert(
            identity.tenant_id,
            "project",
            entity_id,
            body.document_payload(),
            expected_version=body.expected_version,
            actor_id=identity.actor_id,
            mode=WriteMode.MERGE,
            outbox_event=event,
        )
        await self._audit_upsert(
            identity, result, label="Project", request_id=request_id, event_id=event.id
        )
        return self._upsert_body(result)

    async def upsert_ledger(
        self, identity: Identity, body: LedgerUpsertRequest, *, request_id: str | None
    ) -> MutationOutcome:
        await self._c.documents.require(identity.tenant_id, "project", body.project_id, "Project")
        entity_id = body.id or short_id("ldg")
        event = self._event(identity, "ledger.upsert", "ledger", entity_id, request_id)
        result = await self._c.documents.upsert(
            identity.tenant_id,
            "ledger",
            entity_id,
            body.document_payload(),
            expected_version=body.expected_version,
            actor_id=identity.actor_id,
            mode=WriteMode.MERGE,
            outbox_event=event,
        )
        await self._audit_upsert(
            identity, result, label="Ledger", request_id=request_id, event_id=event.id
        )
        return self._upsert_body(result)

    async def upsert_transaction(
        self, identity: Identity, body: TransactionUpsertRequest, *, request_id: str | None
    ) -> MutationOutcome:
        tenant_id = identity.tenant_id
        existing = await self._c.documents.get(tenant_id, "transaction", body.id) if body.id else None
        payload = body.document_payload()
        requested_state = payload.pop("state", None)

        project_id = payload.get("projectId") or (existing or {}).get("projectId")
        ledger_id = payload.get("ledgerId") or (existing or {}).get("ledgerId")
        if not project_id or not ledger_id:
            raise ValidationError("projectId and ledgerId are required")
        await self._c.documents.require(tenant_id, "project", project_id, "Project")
        ledger = await self._c.documents.require(tenant_id, "ledger", ledger_id, "Ledger")
        if ledger.get("projectId") != project_id:
            raise ValidationError(
                "Ledger does not belong to project",
                detail={"ledgerId": ledger_id, "projectId": project_id},
            )

        server_fields: dict[str, Any] | None = None
        if existing is not None and requested_state is not None:
            raise ValidationError(
                "Transaction state changes go through PATCH /transactions/{id}/state",
                detail={"state": requested_state},
            )
        if existing is None:
            if requested_state is not None and normalize_state(requested_state) != TransactionState.DRAFT:
                raise ValidationError(
                    "New transactions start in DRAFT; use the state endpoint to change state",
                    detail={"state": requested_state},
                )
            server_fields = {"state": TransactionState.DRAFT.value}

        entity_id = body.id or short_id("tx")
        event = self._event(identity, "transaction.upsert", "transaction", entity_id, request_id)
        result = await self._c.documents.upsert(
            tenant_id,
            "transaction",
            entity_id,
            payload,
            expected_version=body.expected_version,
            actor_id=identity.actor_id,
            mode=WriteMode.MERGE,
            server_fields=server_fields,
            outbox_event=event,
        )
        await self._audit_upsert(
            identity, result, label="Transaction", request_id=request_id, event_id=event.id
        )
        return self._upsert_body(result, state=result.data.get("state"))

    # ── Approval workflow ──────────────────────────────────────────────── #

    def assert_can_transition(self, identity: Identity, new_state: str) -> None:
        permission = STATE_PERMISSIONS.get(parse_state(new_state))
        if permission is not None and not self._c.policy.has_permission(identity.actor_role, permission):
            raise ForbiddenError(f"Role {identity.actor_role or '-'} lacks permission {permission}")

    async def change_transaction_state(
        self,
        identity: Identity,
        transaction_id: str,
        body: StateChangeRequest,
        *,
        request_id: str | None,
    ) -> MutationOutcome:
        target = parse_state(body.new_state)
        reason = (body.reason or "").strip() or None
        event = self._event(
            identity,
            "transaction.state_changed",
            "transaction",
            transaction_id,
            request_id,
            nextState=target.value,
            reason=reason,
            expectedVersion=body.expected_version,
        )
        result = await self._c.documents.transition(
            identity.tenant_id,
            transaction_id,
            new_state=target.value,
            expected_version=body.expected_version,
            actor_id=identity.actor_id,
            reason=reason,
            outbox_event=event,
        )
        previous = (result.before or {}).get("state") or TransactionState.DRAFT.value
        await self._c.ledger.append(
            tenant_id=identity.tenant_id,
            entity_type="transaction",
            entity_id=transaction_id,
            action=f"STATE_CHANGE:{target.value}",
            actor=identity,
            details=f"Transaction {transaction_id}: {previous} -> {target.value}",
            request_id=request_id,
            metadata={
                "from": previous,
                "to": target.value,
                "version": result.version,
                "reason": reason,
                "eventId": event.id,
            },
        )
        return MutationOutcome(
            200,
            {
                "id": transaction_id,
                "state": target.value,
                "rejectedReason": result.data.get("rejectedReason"),
                "version": result.version,
                "updatedAt": result.updated_at,
            },
        )

    # ── Comments / evidences ───────────────────────────────────────────── #

    async def add_comment(
        self,
        identity: Identity,
        transaction_id: str,
        body: CommentCreateRequest,
        *,
        request_id: str | None,
    ) -> MutationOutcome:
        await self._c.documents.require(identity.tenant_id, "transaction", transaction_id, "Transaction")
        comment_id = body.id or short_id("c")
        document: dict[str, Any] = {
            "transactionId": transaction_id,
            "content": body.content,
            "authorNameMasked": self._c.pii.mask_name(identity.actor_id),
        }
        encrypted = self._c.pii.encrypt_text(identity.actor_id)
        if encrypted:
            document["authorNameEnc"] = encrypted
        else:
            document["authorName"] = identity.actor_id

        event = self._event(
            identity, "comment.created", "comment", comment_id, request_id, transactionId=transaction_id
        )
        data = await self._c.documents.create_document(
            identity.tenant_id,
            "comment",
            comment_id,
            document,
            actor_id=identity.actor_id,
            server_fields={"authorId": identity.actor_id},
            outbox_event=event,
        )
        await self._c.ledger.append(
            tenant_id=identity.tenant_id,
            entity_type="comment",
            entity_id=comment_id,
            action="CREATE",
            actor=identity,
            details=f"Comment added to transaction {transaction_id}",
            request_id=request_id,
            metadata={"transactionId": transaction_id, "eventId": event.id},
        )
        return MutationOutcome(
            201,
            {
                "id": comment_id,
                "transactionId": transaction_id,
                "version": 1,
                "createdAt": data["createdAt"],
            },
        )

    async def add_evidence(
        self,
        identity: Identity,
        transaction_id: str,
        body: EvidenceCreateRequest,
        *,
        request_id: str | None,
    ) -> MutationOutcome:
        await self._c.documents.require(identity.tenant_id, "transaction", transaction_id, "Transaction")
        evidence_id = body.id or short_id("ev")
        document = {**body.document_payload(), "transactionId": transaction_id}
        document["status"] = str(document.get("status") or "PENDING").strip().upper()
        at = utcnow()

        event = self._event(
            identity, "evidence.created", "evidence", evidence_id, request_id, transactionId=transaction_id
        )
        data = await self._c.documents.create_document(
            identity.tenant_id,
            "evidence",
            evidence_id,
            document,
            actor_id=identity.actor_id,
            now=at,
            server_fields={"uploadedBy": identity.actor_id, "uploadedAt": isoformat(at)},
            outbox_event=event,
        )
        await self._c.ledger.append(
            tenant_id=identity.tenant_id,
            entity_type="evidence",
            entity_id=evidence_id,
            action="CREATE",
            actor=identity,
            details=f"Evidence {data.get('fileName')} attached to transaction {transaction_id}",
            request_id=request_id,
            metadata={"transactionId": transaction_id, "eventId": event.id},
        )
        return MutationOutcome(
            201,
            {
                "id": evidence_id,
                "transactionId": transaction_id,
                "version": 1,
                "uploadedAt": data["uploadedAt"],
            },
        )

    # ── Members ────────────────────────────────────────────────────────── #

    async def change_member_role(
        self,
        identity: Identity,
        member_id: str,
        body: MemberRoleChangeRequest,
        *,
        request_id: str | None,
    ) -> MutationOutcome:
        policy = self._c.policy
        target_role = normalize_role(body.role)
        if target_role not in policy.roles:
            raise ValidationError(f"Unknown role: {body.role}", detail={"role": body.role})
        if not policy.can_assign_role(identity.actor_role, target_role):
            raise ForbiddenError(f"Role {identity.actor_role or '-'} cannot assign role {target_role}")

        reason = (body.reason or "").strip() or None
        at = utcnow()
        event = self._event(
            identity, "member.role_changed", "member", member_id, request_id, role=target_role, reason=reason
        )
        documents = self._c.documents

        async def _change(session: AsyncSession) -> tuple[str, UpsertResult]:
            row = await session.get(EntityDocument, (identity.tenant_id, "member", member_id))
            if row is None:
                raise NotFoundError("Member", member_id)
            previous = normalize_role(row.data.get("role"))
            if previous == "admin" and target_role != "admin":
                members = await documents.query_in_session(session, identity.tenant_id, "member")
                admins = [m for m in members if normalize_role(m.data.get("role")) == "admin"]
                if len(admins) <= 1:
                    raise ConflictError(
                        ErrorCode.LAST_ADMIN_LOCKOUT,
                        "Cannot remove the last admin of the tenant",
                        detail={"memberId": member_id},
                    )
            event.payload = {**event.payload, "previousRole": previous}
            result = await documents.upsert_in_session(
                session,
                identity.tenant_id,
                "member",
                member_id,
                {"role": target_role},
                expected_version=(
                    body.expected_version if body.expected_version is not None else row.version
                ),
                actor_id=identity.actor_id,
                mode=WriteMode.MERGE,
                now=at,
                server_fields={
                    "roleChangedAt": isoformat(at),
                    "roleChangedBy": identity.actor_id,
                    "roleChangeReason": reason,
                },
                outbox_event=event,
            )
            return previous, result

        previous, result = await self._c.store.run_transaction(_change, name="member_role_change")
        await self._c.ledger.append(
            tenant_id=identity.tenant_id,
            entity_type="member",
            entity_id=member_id,
            action="ROLE_CHANGE",
            actor=identity,
            details=f"Member {member_id} role {previous or '-'} -> {target_role}",
            request_id=request_id,
            metadata={
                "previousRole": previous,
                "role": target_role,
                "reason": reason,
                "eventId": event.id,
            },
        )
        _log.info("member_role_changed", member_id=member_id, previous_role=previous, role=target_role)
        return MutationOutcome(
            200,
            {
                "id": member_id,
                "previousRole": previous or None,
                "role": target_role,
                "version": result.version,
                "updatedAt": result.updated_at,
            },
        )

    # ── Generic write / replay ─────────────────────────────────────────── #

    async def _check_generic_write(self, identity: Identity, entity_type: str, body: WriteRequest) -> None:
        """Workflow state and member roles keep their dedicated routes once a document exists."""
        if entity_type == "transaction" and "state" in body.data:
            existing = await self._c.documents.get(identity.tenant_id, entity_type, body.entity_id)
            if existing is not None or normalize_state(body.data["state"]) != TransactionState.DRAFT:
                raise ValidationError(
                    "Transaction state changes go through PATCH /transactions/{id}/state",
                    detail={"state": body.data["state"]},
                )
        if entity_type == "member" and "role" in body.data:
            existing = await self._c.documents.get(identity.tenant_id, entity_type, body.entity_id)
            if existing is not None:
                if normalize_role(existing.get("role")) == normalize_role(body.data["role"]):
                    return
                raise ValidationError(
                    "Member roles change through PATCH /members/{id}/role",
                    detail={"role": body.data["role"]},
                )
            if not self._c.policy.can_assign_role(identity.actor_role, body.data["role"]):
                raise ForbiddenError(
                    f"Role {identity.actor_role or '-'} cannot assign role {body.data['role']}"
                )

    async def write_entity(
        self, identity: Identity, body: WriteRequest, *, request_id: str | None
    ) -> MutationOutcome:
        entity_type = ENTITY_COLLECTIONS.get(body.entity_type.strip().lower())
        if entity_type is None:
            raise ValidationError(
                f"Unsupported entityType: {body.entity_type}",
                detail={"supported": sorted(set(ENTITY_COLLECTIONS.values()))},
            )
        await self._check_generic_write(identity, entity_type, body)
        tenant_id = identity.tenant_id
        at = utcnow()
        event = build_event(
            tenant_id=tenant_id,
            event_type=f"{entity_type}.upsert",
            entity_type=entity_type,
            entity_id=body.entity_id,
            payload={**_actor_payload(identity), "source": "write"},
            request_id=request_id,
            now=at,
        )
        scheduled: dict[str, list[str]] = {}

        async def _schedule(session: AsyncSession, result: UpsertResult) -> None:
            views = await self._c.resolver.affected_views(
                session, tenant_id, entity_type, result.changed_fields
            )
            session.add(
                ChangeEvent(
                    tenant_id=tenant_id,
                    id=event.id,
                    request_id=request_id,
                    entity_type=entity_type,
                    entity_id=body.entity_id,
                    version=result.version,
                    changed_fields=result.changed_fields,
                    affected_views=views,
                    actor_id=identity.actor_id,
                    actor_role=identity.actor_role,
                    created_at=at,
                )
            )
            jobs = [
                self._c.work_queue.build_job(
                    tenant_id=tenant_id,
                    event_id=event.id,
                    entity_type=entity_type,
                    entity_id=body.entity_id,
                    view_name=view_name,
                    version=result.version,
                    payload={"eventType": event.event_type},
                    now=at,
                )
                for view_name in views
            ]
            scheduled["views"] = views
            scheduled["jobs"] = await self._c.work_queue.enqueue_in_session(session, jobs)

        result = await self._c.documents.upsert(
            tenant_id,
            entity_type,
            body.entity_id,
            body.data,
            expected_version=body.expected_version,
            actor_id=identity.actor_id,
            mode=body.mode,
            now=at,
            outbox_event=event,
            extra_writes=_schedule,
        )
        await self._audit_upsert(
            identity,
            result,
            label=entity_type.replace("_", " ").capitalize(),
            request_id=request_id,
            event_id=event.id,
        )

        if body.options.sync:
            queue: dict[str, Any] = await self._c.work_queue.process_batch(
                tenant_id=tenant_id, event_id=event.id
            )
        else:
            queue = {"queued": len(scheduled.get("jobs", []))}
        return MutationOutcome(
            201 if result.created else 200,
            {
                "eventId": event.id,
                "tenantId": tenant_id,
                "entityType": entity_type,
                "entityId": body.entity_id,
                "version": result.version,
                "changedFields": result.changed_fields,
                "affectedViews": scheduled.get("views", []),
                "queue": queue,
            },
        )

    async def replay_event(
        self, identity: Identity, event_id: str, body: ReplayRequest, *, request_id: str | None
    ) -> MutationOutcome:
        async with self._c.store.session() as session:
            change = await session.get(ChangeEvent, (identity.tenant_id, event_id))
            outbox = None if change is not None else await session.get(OutboxEvent, event_id)
        if change is not None:
            entity_type, entity_id = change.entity_type, change.entity_id
            stored_views = list(change.affected_views)
        elif outbox is not None and outbox.tenant_id == identity.tenant_id:
            entity_type, entity_id = outbox.entity_type, outbox.entity_id
            stored_views = []
        else:
            raise NotFoundError("Event", event_id)

        views = [v for v in (body.views or stored_views) if v]
        unsupported = [v for v in views if v not in supported_views()]
        if unsupported:
            raise ValidationError("Unsupported views", detail={"views": unsupported})

        queued = await self._c.work_queue.enqueue_replay(
            tenant_id=identity.tenant_id,
            event_id=event_id,
            entity_type=entity_type,
            entity_id=entity_id,
            views=views,
        )
        if body.options.sync:
            queue: dict[str, Any] = await self._c.work_queue.process_batch(
                tenant_id=identity.tenant_id, event_id=event_id
            )
        else:
            queue = {"queued": len(queued)}
        _log.info("event_replayed", event_id=event_id, jobs=len(queued), request_id=request_id)
        return MutationOutcome(
            200,
            {
                "eventId": event_id,
                "queued": queued,
                "affectedViews": [item["viewName"] for item in queued],
                "queue": queue,
            },
        )

    # ── Reads ──────────────────────────────────────────────────────────── #

    async def list_entities(
        self,
        identity: Identity,
        entity_type: str,
        *,
        filters: dict[str, str | None] | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> dict[str, Any]:
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        items = await self._c.documents.list_documents(
            identity.tenant_id,
            entity_type,
            filters={k: v for k, v in (filters or {}).items() if v},
            limit=limit,
            cursor=cursor,
        )
        return _page(items, limit)

    async def get_entity(self, identity: Identity, entity_type: str, entity_id: str) -> dict[str, Any]:
        return await self._c.documents.require(
            identity.tenant_id, entity_type, entity_id, entity_type.capitalize()
        )

    async def get_view(
        self,
        identity: Identity,
        view_name: str,
        *,
        project_id: str | None = None,
        member_id: str | None = None,
    ) -> dict[str, Any]:
        name = view_name.strip().lower()
        if name not in supported_views():
            raise NotFoundError("View", view_name)
        async with self._c.store.session() as session:
            data = await read_view(session, identity.tenant_id, name) or {}
        updated_at = data.get("updatedAt")

        if project_id:
            if name == "approval_inbox":
                items = [i for i in data.get("items", []) if i.get("projectId") == project_id]
                return {"view": name, "projectId": project_id, "items": items, "updatedAt": updated_at}
            match = next(
                (p for p in data.get("projects", []) if p.get("projectId") == project_id), None
            )
            return {"view": name, "projectId": project_id, "item": match, "updatedAt": updated_at}
        if member_id:
            match = next(
                (m for m in data.get("members", []) if m.get("memberId") == member_id), None
            )
            return {"view": name, "memberId": member_id, "item": match, "updatedAt": updated_at}
        return {"view": name, "data": data or None, "updatedAt": updated_at}

    async def list_audit_logs(
        self, identity: Identity, *, limit: int = 50, cursor: str | None = None
    ) -> dict[str, Any]:
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        items = await self._c.ledger.list_entries(identity.tenant_id, limit=limit, cursor=cursor)
        return _page(items, limit)

    async def list_notifications(self, identity: Identity, *, limit: int = 50) -> dict[str, Any]:
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        stmt = (
            select(Notification)
            .where(
                Notification.tenant_id == identity.tenant_id,
                Notification.recipient_id == identity.actor_id,
            )
            .order_by(Notification.created_at.desc())
            .limit(limit)
        )
        async with self._c.store.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        items = [notification_to_dict(row) for row in rows]
        return {"items": items, "count": len(items)}
