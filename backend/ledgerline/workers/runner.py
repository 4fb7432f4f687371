"""
One pass of a background worker.

Shared by the internal HTTP trigger and the polling process so both run
exactly the same batch logic with the same counters.
"""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Any

import structlog

from ledgerline.core.metrics import worker_pass_duration
from ledgerline.schemas.workers import WorkerRunRequest
from ledgerline.services.container import Components

_log = structlog.get_logger(__name__)


class WorkerKind(StrEnum):
    OUTBOX = "outbox"
    WORK_QUEUE = "work-queue"
    IDEMPOTENCY_CLEANUP = "idempotency-cleanup"


async def run_worker_pass(
    components: Components, kind: WorkerKind, params: WorkerRunRequest | None = None
) -> dict[str, Any]:
    """Run one batch of *kind* and return ``{ok, worker, ...counters}``."""
    params = params or WorkerRunRequest()
    start = time.perf_counter()

    if kind == WorkerKind.OUTBOX:
        counters = await components.relay.process_batch(
            limit=params.limit,
            max_attempts=params.max_attempts,
            tenant_id=params.tenant_id,
            event_id=params.event_id,
        )
    elif kind == WorkerKind.WORK_QUEUE:
        counters = await components.work_queue.process_batch(
            limit=params.limit,
            max_attempts=params.max_attempts,
            tenant_id=params.tenant_id,
            event_id=params.event_id,
        )
    else:
        counters = await components.guard.cleanup_expired(
            batch_size=params.limit or components.settings.idempotency_cleanup_batch,
            dry_run=params.dry_run,
        )

    elapsed = time.perf_counter() - start
    worker_pass_duration.labels(worker=kind.value).observe(elapsed)
    _log.info("worker_pass_done", worker=kind.value, duration_ms=int(elapsed * 1000), **counters)
    return {"ok": True, "worker": kind.value, **counters}
