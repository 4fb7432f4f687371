"""
Idempotent mutation runner.

Every mutating operation runs as:

    guard.begin -> handler (versioned write + outbox, then audit) -> guard.complete

The handler's response is rendered once to canonical JSON text and that
exact text is stored on the idempotency record, so a replay returns the
same bytes. A failing handler marks the record failed and re-raises.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from ledgerline.core.canonical import canonical_json
from ledgerline.core.errors import (
    IdempotencyConflictError,
    IdempotencyInProgressError,
    IdempotencyKeyRequiredError,
)
from ledgerline.core.identity import Identity
from ledgerline.services.idempotency.guard import BeginMode, IdempotencyGuard

_log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class MutationOutcome:
    status_code: int
    body: dict[str, Any]


@dataclass(frozen=True)
class PipelineResponse:
    status_code: int
    content: str
    replayed: bool = False


MutationHandler = Callable[[], Awaitable[MutationOutcome]]


async def run_idempotent(
    guard: IdempotencyGuard,
    *,
    identity: Identity,
    idempotency_key: str | None,
    method: str,
    path: str,
    body: Any,
    request_id: str | None,
    handler: MutationHandler,
) -> PipelineResponse:
    if not idempotency_key:
        raise IdempotencyKeyRequiredError()

    begin = await guard.begin(
        tenant_id=identity.tenant_id,
        idempotency_key=idempotency_key,
        method=method,
        path=path,
        body=body,
        actor_id=identity.actor_id,
        request_id=request_id,
    )
    if begin.mode == BeginMode.REPLAY:
        return PipelineResponse(begin.response_status or 200, begin.response_body or "null", replayed=True)
    if begin.mode == BeginMode.CONFLICT:
        raise IdempotencyConflictError()
    if begin.mode == BeginMode.IN_PROGRESS:
        raise IdempotencyInProgressError()

    try:
        outcome = await handler()
    except Exception as exc:
        await guard.fail(
            tenant_id=identity.tenant_id,
            idempotency_key=idempotency_key,
            request_fingerprint=begin.request_fingerprint,
            error=exc,
            request_id=request_id,
        )
        _log.info("mutation_failed", path=path, error_type=type(exc).__name__)
        raise

    content = canonical_json(outcome.body)
    await guard.complete(
        tenant_id=identity.tenant_id,
        idempotency_key=idempotency_key,
        request_fingerprint=begin.request_fingerprint,
        response_status=outcome.status_code,
        response_body=content,
        request_id=request_id,
    )
    return PipelineResponse(outcome.status_code, content)
