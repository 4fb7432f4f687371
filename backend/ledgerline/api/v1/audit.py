"""Audit log endpoints."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from ledgerline.api.deps import AuditRead, ComponentsDep, OperationsDep
from ledgerline.services.audit.ledger import DEFAULT_VERIFY_LIMIT, MAX_VERIFY_LIMIT

router = APIRouter(prefix="/audit-logs", tags=["audit"])


@router.get("", summary="List audit entries")
async def list_audit_logs(
    identity: AuditRead,
    ops: OperationsDep,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    cursor: str | None = None,
) -> dict[str, Any]:
    return await ops.list_audit_logs(identity, limit=limit, cursor=cursor)


@router.get("/verify", summary="Verify the tenant's audit hash chain")
async def verify_chain(
    identity: AuditRead,
    components: ComponentsDep,
    limit: Annotated[int, Query(ge=1, le=MAX_VERIFY_LIMIT)] = DEFAULT_VERIFY_LIMIT,
) -> JSONResponse:
    """200 with ``{ok: true, ...}`` when intact, 409 with the break point otherwise."""
    result = await components.ledger.verify(identity.tenant_id, limit=limit)
    return JSONResponse(status_code=200 if result.ok else 409, content=result.to_dict())
