"""In-app notifications derived from transaction state changes."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.core.canonical import isoformat, sha1_hex
from ledgerline.db.models.entity import EntityDocument
from ledgerline.db.models.outbox import OutboxEvent
from ledgerline.db.models.projection import Notification
from ledgerline.services.documents.state_policy import TransactionState, normalize_state
from ledgerline.services.projections.views import transaction_amount

STATE_CHANGED_EVENT = "transaction.state_changed"
APPROVER_ROLES = frozenset({"admin", "finance"})

_TITLES = {
    TransactionState.SUBMITTED: "Approval requested: transaction submitted",
    TransactionState.APPROVED: "Approved: transaction approved",
    TransactionState.REJECTED: "Rejected: transaction rejected",
}

_SEVERITY = {
    TransactionState.SUBMITTED: "warning",
    TransactionState.APPROVED: "info",
    TransactionState.REJECTED: "critical",
}


def notification_id(event_id: str, recipient_id: str) -> str:
    return "ntf_" + sha1_hex(f"{event_id}|{recipient_id}")[:16]


def _description(tx: dict[str, Any], reason: str | None) -> str:
    parts = [str(tx.get("counterparty") or tx.get("id") or "transaction")]
    amount = transaction_amount(tx)
    if amount:
        parts.append(f"{amount:,.0f}")
    if reason:
        parts.append(reason)
    return " · ".join(parts)


async def _recipients(
    session: AsyncSession, tenant_id: str, state: str, tx: dict[str, Any], actor_id: str
) -> list[tuple[str, str | None]]:
    if state == TransactionState.SUBMITTED:
        members = (
            await session.execute(
                select(EntityDocument).where(
                    EntityDocument.tenant_id == tenant_id, EntityDocument.entity_type == "member"
                )
            )
        ).scalars()
        recipients: list[tuple[str, str | None]] = []
        for member in members:
            role = str(member.data.get("role") or "").lower()
            uid = str(member.data.get("uid") or member.id)
            if role in APPROVER_ROLES and uid != actor_id and all(uid != r for r, _ in recipients):
                recipients.append((uid, role))
        return recipients

    if state in (TransactionState.APPROVED, TransactionState.REJECTED):
        owner = str(tx.get("submittedBy") or tx.get("createdBy") or "")
        if owner and owner != actor_id:
            return [(owner, None)]
    return []


async def create_notifications_for_event(session: AsyncSession, event: OutboxEvent, at: datetime) -> int:
    """Create-if-absent notifications for one outbox event; returns how many were new."""
    if event.event_type != STATE_CHANGED_EVENT:
        return 0

    payload = event.payload or {}
    state = normalize_state(payload.get("nextState"))
    if state not in _TITLES:
        return 0

    tx_row = await session.get(EntityDocument, (event.tenant_id, "transaction", event.entity_id))
    tx = {**tx_row.data, "id": tx_row.id} if tx_row is not None else {"id": event.entity_id}
    actor_id = str(payload.get("actorId") or "")
    reason = payload.get("reason") or None

    created = 0
    for recipient_id, recipient_role in await _recipients(session, event.tenant_id, state, tx, actor_id):
        ntf_id = notification_id(event.id, recipient_id)
        if await session.get(Notification, (event.tenant_id, ntf_id)) is not None:
            continue
        session.add(
            Notification(
                tenant_id=event.tenant_id,
                id=ntf_id,
                recipient_id=recipient_id,
                recipient_role=recipient_role,
                event_id=event.id,
                event_type=event.event_type,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                project_id=tx.get("projectId"),
                ledger_id=tx.get("ledgerId"),
                state=state,
                title=_TITLES[TransactionState(state)],
                description=_description(tx, reason),
                severity=_SEVERITY[TransactionState(state)],
                reason=reason,
                actor_id=actor_id or None,
                actor_role=payload.get("actorRole"),
                created_at=at,
                updated_at=at,
            )
        )
        created += 1
    if created:
        await session.flush()
    return created


def notification_to_dict(row: Notification) -> dict[str, Any]:
    return {
        "id": row.id,
        "recipientId": row.recipient_id,
        "recipientRole": row.recipient_role,
        "eventId": row.event_id,
        "eventType": row.event_type,
        "entityType": row.entity_type,
        "entityId": row.entity_id,
        "projectId": row.project_id,
        "ledgerId": row.ledger_id,
        "state": row.state,
        "title": row.title,
        "description": row.description,
        "severity": row.severity,
        "reason": row.reason,
        "actorId": row.actor_id,
        "actorRole": row.actor_role,
        "readAt": isoformat(row.read_at),
        "createdAt": isoformat(row.created_at),
    }
