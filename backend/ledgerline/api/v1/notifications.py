from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Query

from ledgerline.api.deps import CurrentIdentity, OperationsDep

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", summary="Notifications addressed to the calling actor")
async def list_notifications(
    identity: CurrentIdentity,
    ops: OperationsDep,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> dict[str, Any]:
    return await ops.list_notifications(identity, limit=limit)
