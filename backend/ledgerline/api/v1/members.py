"""Tenant member endpoints."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Query, Request, Response

from ledgerline.api.deps import (
    ComponentsDep,
    IdempotencyKey,
    MemberWrite,
    OperationsDep,
    ReadCore,
    idempotent_response,
    request_id_of,
)
from ledgerline.schemas.entities import MemberRoleChangeRequest

router = APIRouter(prefix="/members", tags=["members"])


@router.get("", summary="List members")
async def list_members(
    identity: ReadCore,
    ops: OperationsDep,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    cursor: str | None = None,
) -> dict[str, Any]:
    return await ops.list_entities(identity, "member", limit=limit, cursor=cursor)


@router.patch("/{member_id}/role", summary="Change a member's role")
async def change_member_role(
    request: Request,
    member_id: str,
    body: MemberRoleChangeRequest,
    identity: MemberWrite,
    idempotency_key: IdempotencyKey,
    components: ComponentsDep,
    ops: OperationsDep,
) -> Response:
    """
    The actor's role must be allowed to assign the target role by the
    role-change rules. Demoting the tenant's only admin is refused with
    ``last_admin_lockout`` (409).
    """
    return await idempotent_response(
        request,
        components,
        identity,
        idempotency_key,
        lambda: ops.change_member_role(identity, member_id, body, request_id=request_id_of(request)),
    )
