"""
Internal worker triggers.

``/api/internal/workers/{outbox|work-queue|idempotency-cleanup}/run``
runs one batch and returns its counters. Callers authenticate with the
shared worker secret (``X-Worker-Secret`` or ``Authorization: Bearer``),
never with end-user identity.
"""

from __future__ import annotations

import json
from typing import Any

import pydantic
from fastapi import APIRouter, Depends, Request

from ledgerline.api.deps import ComponentsDep, require_worker_secret
from ledgerline.core.errors import ValidationError
from ledgerline.schemas.workers import WorkerRunRequest
from ledgerline.workers.runner import WorkerKind, run_worker_pass

router = APIRouter(
    prefix="/api/internal",
    tags=["internal"],
    dependencies=[Depends(require_worker_secret)],
)


async def _run_params(request: Request) -> WorkerRunRequest:
    """Merge query parameters with an optional JSON body; the body wins."""
    params: dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        raw = await request.body()
        if raw.strip():
            try:
                payload = json.loads(raw)
            except ValueError as exc:
                raise ValidationError("Request body is not valid JSON") from exc
            if not isinstance(payload, dict):
                raise ValidationError("Request body must be a JSON object")
            params.update(payload)
    try:
        return WorkerRunRequest.model_validate(params)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            "Invalid worker parameters",
            detail={"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
        ) from exc


@router.api_route("/workers/{kind}/run", methods=["GET", "POST"], summary="Run one worker batch")
async def run_worker(kind: WorkerKind, request: Request, components: ComponentsDep) -> dict[str, Any]:
    params = await _run_params(request)
    return await run_worker_pass(components, kind, params)
