"""
Transaction endpoints.

State transitions go through ``PATCH /transactions/{id}/state`` only; the
upsert route keeps whatever state the document already has.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request, Response

from ledgerline.api.deps import (
    ComponentsDep,
    IdempotencyKey,
    OperationsDep,
    ReadCore,
    WriteCore,
    idempotent_response,
    request_id_of,
    require_permission,
)
from ledgerline.core.identity import Identity
from ledgerline.schemas.entities import (
    CommentCreateRequest,
    EvidenceCreateRequest,
    StateChangeRequest,
    TransactionUpsertRequest,
)

router = APIRouter(prefix="/transactions", tags=["transactions"])

CommentRead = Annotated[Identity, Depends(require_permission("comment:read"))]
CommentWrite = Annotated[Identity, Depends(require_permission("comment:write"))]
EvidenceRead = Annotated[Identity, Depends(require_permission("evidence:read"))]
EvidenceWrite = Annotated[Identity, Depends(require_permission("evidence:write"))]


@router.post("", summary="Create or update a transaction", status_code=201)
async def upsert_transaction(
    request: Request,
    body: TransactionUpsertRequest,
    identity: WriteCore,
    idempotency_key: IdempotencyKey,
    components: ComponentsDep,
    ops: OperationsDep,
) -> Response:
    """Project and ledger must exist and the ledger must belong to the project."""
    return await idempotent_response(
        request,
        components,
        identity,
        idempotency_key,
        lambda: ops.upsert_transaction(identity, body, request_id=request_id_of(request)),
    )


@router.get("", summary="List transactions")
async def list_transactions(
    identity: ReadCore,
    ops: OperationsDep,
    project_id: Annotated[str | None, Query(alias="projectId")] = None,
    ledger_id: Annotated[str | None, Query(alias="ledgerId")] = None,
    state: str | None = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    cursor: str | None = None,
) -> dict[str, Any]:
    filters = {
        "projectId": project_id,
        "ledgerId": ledger_id,
        "state": state.strip().upper() if state else None,
    }
    return await ops.list_entities(
        identity, "transaction", filters=filters, limit=limit, cursor=cursor
    )


@router.get("/{transaction_id}", summary="Get a transaction")
async def get_transaction(
    transaction_id: str, identity: ReadCore, ops: OperationsDep
) -> dict[str, Any]:
    return await ops.get_entity(identity, "transaction", transaction_id)


@router.patch("/{transaction_id}/state", summary="Transition a transaction")
async def change_state(
    request: Request,
    transaction_id: str,
    body: StateChangeRequest,
    identity: WriteCore,
    idempotency_key: IdempotencyKey,
    components: ComponentsDep,
    ops: OperationsDep,
) -> Response:
    """
    Apply ``{newState, expectedVersion, reason?}``.

    The role must hold the permission for the target state
    (``transaction:submit|approve|reject``). A rejection needs a reason.
    """
    ops.assert_can_transition(identity, body.new_state)
    return await idempotent_response(
        request,
        components,
        identity,
        idempotency_key,
        lambda: ops.change_transaction_state(
            identity, transaction_id, body, request_id=request_id_of(request)
        ),
    )


# ── Comments ──────────────────────────────────────────────────────────── #


@router.post("/{transaction_id}/comments", summary="Add a comment", status_code=201)
async def add_comment(
    request: Request,
    transaction_id: str,
    body: CommentCreateRequest,
    identity: CommentWrite,
    idempotency_key: IdempotencyKey,
    components: ComponentsDep,
    ops: OperationsDep,
) -> Response:
    return await idempotent_response(
        request,
        components,
        identity,
        idempotency_key,
        lambda: ops.add_comment(identity, transaction_id, body, request_id=request_id_of(request)),
    )


@router.get("/{transaction_id}/comments", summary="List comments")
async def list_comments(
    transaction_id: str,
    identity: CommentRead,
    ops: OperationsDep,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    cursor: str | None = None,
) -> dict[str, Any]:
    await ops.get_entity(identity, "transaction", transaction_id)
    return await ops.list_entities(
        identity, "comment", filters={"transactionId": transaction_id}, limit=limit, cursor=cursor
    )


# ── Evidences ─────────────────────────────────────────────────────────── #


@router.post("/{transaction_id}/evidences", summary="Attach evidence", status_code=201)
async def add_evidence(
    request: Request,
    transaction_id: str,
    body: EvidenceCreateRequest,
    identity: EvidenceWrite,
    idempotency_key: IdempotencyKey,
    components: ComponentsDep,
    ops: OperationsDep,
) -> Response:
    return await idempotent_response(
        request,
        components,
        identity,
        idempotency_key,
        lambda: ops.add_evidence(identity, transaction_id, body, request_id=request_id_of(request)),
    )


@router.get("/{transaction_id}/evidences", summary="List evidences")
async def list_evidences(
    transaction_id: str,
    identity: EvidenceRead,
    ops: OperationsDep,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    cursor: str | None = None,
) -> dict[str, Any]:
    await ops.get_entity(identity, "transaction", transaction_id)
    return await ops.list_entities(
        identity, "evidence", filters={"transactionId": transaction_id}, limit=limit, cursor=cursor
    )
