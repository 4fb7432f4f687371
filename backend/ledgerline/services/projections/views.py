"""
Read-view projections.

Each rebuilder re-scans the tenant's entity documents and fully
overwrites one ``read_views`` row. Nothing is patched incrementally, so a
rebuild after any number of missed events converges on the same result.
``alerts`` derives from the stored ``approval_inbox`` and
``project_financials`` views.
"""

from __future__ import annotations

import math
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.core.canonical import isoformat
from ledgerline.core.errors import UnsupportedViewError
from ledgerline.db.models.entity import EntityDocument
from ledgerline.db.models.projection import ReadView

HIGH_BURN_RATIO = 0.85
DERIVED_VIEWS = frozenset({"alerts"})


def _number(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _upper(value: Any, fallback: str = "") -> str:
    return value.strip().upper() if isinstance(value, str) else fallback


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def transaction_amount(tx: dict[str, Any]) -> float:
    direct = _number(tx.get("amount"))
    if direct > 0:
        return direct
    amounts = tx.get("amounts")
    return _number(amounts.get("bankAmount")) if isinstance(amounts, dict) else 0.0


async def _documents(session: AsyncSession, tenant_id: str, entity_type: str) -> list[dict[str, Any]]:
    rows = (
        await session.execute(
            select(EntityDocument)
            .where(EntityDocument.tenant_id == tenant_id, EntityDocument.entity_type == entity_type)
            .order_by(EntityDocument.id)
        )
    ).scalars()
    return [{**row.data, "id": row.id} for row in rows]


async def _write_view(
    session: AsyncSession, tenant_id: str, view_name: str, payload: dict[str, Any], at: datetime
) -> dict[str, Any]:
    row = await session.get(ReadView, (tenant_id, view_name))
    if row is None:
        session.add(ReadView(tenant_id=tenant_id, view_name=view_name, data=payload, updated_at=at))
    else:
        row.data = payload
        row.updated_at = at
    await session.flush()
    return payload


async def read_view(session: AsyncSession, tenant_id: str, view_name: str) -> dict[str, Any] | None:
    row = await session.get(ReadView, (tenant_id, view_name))
    return row.data if row is not None else None


# ── Rebuilders ────────────────────────────────────────────────────────── #


def _financials_entry(project_id: str, name: str, now_iso: str) -> dict[str, Any]:
    return {
        "projectId": project_id,
        "projectName": name,
        "totalIn": 0.0,
        "totalOut": 0.0,
        "balance": 0.0,
        "approvedTxCount": 0,
        "submittedTxCount": 0,
        "pendingExpenseSetCount": 0,
        "pendingChangeRequestCount": 0,
        "updatedAt": now_iso,
    }


async def rebuild_project_financials(
    session: AsyncSession, tenant_id: str, at: datetime
) -> dict[str, Any]:
    now_iso = isoformat(at)
    by_project: dict[str, dict[str, Any]] = {}
    for project in await _documents(session, tenant_id, "project"):
        by_project[project["id"]] = _financials_entry(
            project["id"], project.get("name") or project["id"], now_iso
        )

    for tx in await _documents(session, tenant_id, "transaction"):
        project_id = _text(tx.get("projectId"))
        if not project_id:
            continue
        entry = by_project.setdefault(project_id, _financials_entry(project_id, project_id, now_iso))
        state = _upper(tx.get("state"))
        direction = _upper(tx.get("direction"))
        if state == "APPROVED":
            amount = transaction_amount(tx)
            if direction == "IN":
                entry["totalIn"] += amount
            elif direction == "OUT":
                entry["totalOut"] += amount
            entry["approvedTxCount"] += 1
        elif state == "SUBMITTED":
            entry["submittedTxCount"] += 1

    for item in await _documents(session, tenant_id, "expense_set"):
        entry = by_project.get(_text(item.get("projectId")))
        if entry is not None and _upper(item.get("status")) == "SUBMITTED":
            entry["pendingExpenseSetCount"] += 1

    for item in await _documents(session, tenant_id, "change_request"):
        entry = by_project.get(_text(item.get("projectId")))
        if entry is not None and _upper(item.get("state")) == "SUBMITTED":
            entry["pendingChangeRequestCount"] += 1

    projects = [{**e, "balance": e["totalIn"] - e["totalOut"]} for e in by_project.values()]
    payload = {
        "tenantId": tenant_id,
        "view": "project_financials",
        "updatedAt": now_iso,
        "projects": projects,
    }
    return await _write_view(session, tenant_id, "project_financials", payload, at)


async def rebuild_approval_inbox(session: AsyncSession, tenant_id: str, at: datetime) -> dict[str, Any]:
    now_iso = isoformat(at)
    items: list[dict[str, Any]] = []

    for tx in await _documents(session, tenant_id, "transaction"):
        if _upper(tx.get("state")) != "SUBMITTED":
            continue
        items.append(
            {
                "itemType": "transaction",
                "itemId": tx["id"],
                "projectId": tx.get("projectId"),
                "title": tx.get("counterparty") or tx["id"],
                "amount": transaction_amount(tx),
                "priority": "MEDIUM",
                "submittedAt": tx.get("submittedAt") or tx.get("updatedAt") or now_iso,
                "state": "SUBMITTED",
            }
        )

    for expense_set in await _documents(session, tenant_id, "expense_set"):
        if _upper(expense_set.get("status")) != "SUBMITTED":
            continue
        items.append(
            {
                "itemType": "expense_set",
                "itemId": expense_set["id"],
                "projectId": expense_set.get("projectId"),
                "title": expense_set.get("title") or expense_set["id"],
                "amount": _number(expense_set.get("totalGross")),
                "priority": "MEDIUM",
                "submittedAt": expense_set.get("submittedAt") or expense_set.get("updatedAt") or now_iso,
                "state": "SUBMITTED",
            }
        )

    for request in await _documents(session, tenant_id, "change_request"):
        if _upper(request.get("state")) != "SUBMITTED":
            continue
        items.append(
            {
                "itemType": "change_request",
                "itemId": request["id"],
                "projectId": request.get("projectId"),
                "title": request.get("title") or request["id"],
                "amount": None,
                "priority": _upper(request.get("priority"), "MEDIUM") or "MEDIUM",
                "submittedAt": request.get("requestedAt") or request.get("updatedAt") or now_iso,
                "state": "SUBMITTED",
            }
        )

    items.sort(key=lambda item: str(item["submittedAt"]), reverse=True)
    payload = {
        "tenantId": tenant_id,
        "view": "approval_inbox",
        "updatedAt": now_iso,
        "totalPending": len(items),
        "items": items,
    }
    return await _write_view(session, tenant_id, "approval_inbox", payload, at)


def _workload_entry(member_id: str, name: str, role: str | None, now_iso: str) -> dict[str, Any]:
    return {
        "memberId": member_id,
        "name": name,
        "role": role,
        "submittedTransactions": 0,
        "approvedTransactions": 0,
        "requestedChanges": 0,
        "reviewedChanges": 0,
        "updatedAt": now_iso,
    }


async def rebuild_member_workload(session: AsyncSession, tenant_id: str, at: datetime) -> dict[str, Any]:
    now_iso = isoformat(at)
    by_member: dict[str, dict[str, Any]] = {}
    for member in await _documents(session, tenant_id, "member"):
        by_member[member["id"]] = _workload_entry(
            member["id"],
            member.get("name") or member.get("email") or member["id"],
            member.get("role"),
            now_iso,
        )

    def bump(member_id: str, counter: str) -> None:
        if member_id:
            entry = by_member.setdefault(member_id, _workload_entry(member_id, member_id, None, now_iso))
            entry[counter] += 1

    for tx in await _documents(session, tenant_id, "transaction"):
        bump(_text(tx.get("submittedBy")), "submittedTransactions")
        bump(_text(tx.get("approvedBy")), "approvedTransactions")

    for request in await _documents(session, tenant_id, "change_request"):
        bump(_text(request.get("requestedBy")), "requestedChanges")
        bump(_text(request.get("reviewedBy")), "reviewedChanges")

    payload = {
        "tenantId": tenant_id,
        "view": "member_workload",
        "updatedAt": now_iso,
        "members": list(by_member.values()),
    }
    return await _write_view(session, tenant_id, "member_workload", payload, at)


async def rebuild_alerts(session: AsyncSession, tenant_id: str, at: datetime) -> dict[str, Any]:
    now_iso = isoformat(at)
    inbox = await read_view(session, tenant_id, "approval_inbox") or {}
    financials = await read_view(session, tenant_id, "project_financials") or {}

    high_burn = 0
    for project in financials.get("projects") or []:
        total_in = _number(project.get("totalIn"))
        if total_in > 0 and _number(project.get("totalOut")) / total_in >= HIGH_BURN_RATIO:
            high_burn += 1

    pending = int(_number(inbox.get("totalPending")))
    payload = {
        "tenantId": tenant_id,
        "view": "alerts",
        "updatedAt": now_iso,
        "approvalPending": pending,
        "highBurnProjects": high_burn,
        "hasBlockingAlert": pending > 0 or high_burn > 0,
    }
    return await _write_view(session, tenant_id, "alerts", payload, at)


Rebuilder = Callable[[AsyncSession, str, datetime], Awaitable[dict[str, Any]]]

VIEW_REBUILDERS: dict[str, Rebuilder] = {
    "project_financials": rebuild_project_financials,
    "approval_inbox": rebuild_approval_inbox,
    "member_workload": rebuild_member_workload,
    "alerts": rebuild_alerts,
}


def supported_views() -> list[str]:
    return list(VIEW_REBUILDERS)


def rebuild_rank(view_name: str) -> int:
    """Views derived from other views rebuild after their sources within a batch."""
    return 1 if view_name in DERIVED_VIEWS else 0


async def rebuild_view(
    session: AsyncSession, tenant_id: str, view_name: str, at: datetime
) -> dict[str, Any]:
    rebuilder = VIEW_REBUILDERS.get((view_name or "").strip().lower())
    if rebuilder is None:
        raise UnsupportedViewError(view_name)
    return await rebuilder(session, tenant_id, at)
