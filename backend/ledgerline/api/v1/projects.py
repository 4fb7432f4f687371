"""Project and ledger endpoints."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Query, Request, Response

from ledgerline.api.deps import (
    ComponentsDep,
    IdempotencyKey,
    OperationsDep,
    ReadCore,
    WriteCore,
    idempotent_response,
    request_id_of,
)
from ledgerline.schemas.entities import LedgerUpsertRequest, ProjectUpsertRequest

router = APIRouter(tags=["projects"])


@router.post("/projects", summary="Create or update a project", status_code=201)
async def upsert_project(
    request: Request,
    body: ProjectUpsertRequest,
    identity: WriteCore,
    idempotency_key: IdempotencyKey,
    components: ComponentsDep,
    ops: OperationsDep,
) -> Response:
    """Versioned upsert; ``expectedVersion`` is required once the project exists."""
    return await idempotent_response(
        request,
        components,
        identity,
        idempotency_key,
        lambda: ops.upsert_project(identity, body, request_id=request_id_of(request)),
    )


@router.get("/projects", summary="List projects")
async def list_projects(
    identity: ReadCore,
    ops: OperationsDep,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    cursor: str | None = None,
) -> dict[str, Any]:
    return await ops.list_entities(identity, "project", limit=limit, cursor=cursor)


@router.get("/projects/{project_id}", summary="Get a project")
async def get_project(project_id: str, identity: ReadCore, ops: OperationsDep) -> dict[str, Any]:
    return await ops.get_entity(identity, "project", project_id)


@router.post("/ledgers", summary="Create or update a ledger", status_code=201)
async def upsert_ledger(
    request: Request,
    body: LedgerUpsertRequest,
    identity: WriteCore,
    idempotency_key: IdempotencyKey,
    components: ComponentsDep,
    ops: OperationsDep,
) -> Response:
    """The referenced project must exist."""
    return await idempotent_response(
        request,
        components,
        identity,
        idempotency_key,
        lambda: ops.upsert_ledger(identity, body, request_id=request_id_of(request)),
    )


@router.get("/ledgers", summary="List ledgers")
async def list_ledgers(
    identity: ReadCore,
    ops: OperationsDep,
    project_id: Annotated[str | None, Query(alias="projectId")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    cursor: str | None = None,
) -> dict[str, Any]:
    return await ops.list_entities(
        identity, "ledger", filters={"projectId": project_id}, limit=limit, cursor=cursor
    )
