"""
Generic write, read-view and work-queue endpoints.

``POST /write`` is the entry point used by clients that do not need the
typed routes: it performs a versioned write, records a change event,
enqueues the affected read-view jobs in the same transaction and, unless
``options.sync`` is false, rebuilds those views before responding.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Body, Query, Request, Response

from ledgerline.api.deps import (
    ComponentsDep,
    IdempotencyKey,
    OperationsDep,
    ReadCore,
    WriteCore,
    idempotent_response,
    request_id_of,
)
from ledgerline.db.models.work_queue import JobStatus
from ledgerline.schemas.entities import ReplayRequest, WriteRequest

router = APIRouter(tags=["pipeline"])


@router.post("/write", summary="Versioned write with projection fan-out")
async def write_entity(
    request: Request,
    body: WriteRequest,
    identity: WriteCore,
    idempotency_key: IdempotencyKey,
    components: ComponentsDep,
    ops: OperationsDep,
) -> Response:
    return await idempotent_response(
        request,
        components,
        identity,
        idempotency_key,
        lambda: ops.write_entity(identity, body, request_id=request_id_of(request)),
    )


@router.get("/views/{view_name}", summary="Read a projection")
async def get_view(
    view_name: str,
    identity: ReadCore,
    ops: OperationsDep,
    project_id: Annotated[str | None, Query(alias="projectId")] = None,
    member_id: Annotated[str | None, Query(alias="memberId")] = None,
) -> dict[str, Any]:
    return await ops.get_view(identity, view_name, project_id=project_id, member_id=member_id)


@router.get("/queue/jobs", summary="Inspect work-queue jobs")
async def list_jobs(
    identity: ReadCore,
    components: ComponentsDep,
    status: JobStatus | None = None,
    event_id: Annotated[str | None, Query(alias="eventId")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> dict[str, Any]:
    items = await components.work_queue.list_jobs(
        identity.tenant_id, status=status, event_id=event_id, limit=limit
    )
    return {"items": items, "count": len(items)}


@router.post("/queue/replay/{event_id}", summary="Re-run projections for an event")
async def replay_event(
    request: Request,
    event_id: str,
    identity: WriteCore,
    idempotency_key: IdempotencyKey,
    components: ComponentsDep,
    ops: OperationsDep,
    body: Annotated[ReplayRequest | None, Body()] = None,
) -> Response:
    """Views default to the ones recorded on the change event."""
    replay = body or ReplayRequest()
    return await idempotent_response(
        request,
        components,
        identity,
        idempotency_key,
        lambda: ops.replay_event(identity, event_id, replay, request_id=request_id_of(request)),
    )
