"""
FastAPI dependency providers.

All identity resolution and authorization logic lives here, not in routes.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Annotated, Any

import structlog
from fastapi import Depends, Header, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from ledgerline.config.logging_config import bind_log_context
from ledgerline.config.settings import AuthMode
from ledgerline.core.errors import (
    AuthError,
    ErrorCode,
    ForbiddenError,
    IdempotencyKeyRequiredError,
    ServiceUnavailableError,
    ValidationError,
)
from ledgerline.core.canonical import normalize_actor_id, normalize_role, normalize_tenant_id
from ledgerline.core.identity import Identity
from ledgerline.core.security import decode_token, safe_str_compare
from ledgerline.services.container import Components
from ledgerline.services.operations import LedgerOperations
from ledgerline.services.pipeline import MutationOutcome, run_idempotent
from ledgerline.services.policy.rbac import AUDIT_READ, MEMBER_WRITE, READ_CORE, WRITE_CORE

_log = structlog.get_logger(__name__)
_bearer = HTTPBearer(auto_error=False)

REPLAY_HEADER = "X-Idempotency-Replayed"
MAX_IDEMPOTENCY_KEY_LENGTH = 200


def get_components(request: Request) -> Components:
    return request.app.state.components


def get_operations(request: Request) -> LedgerOperations:
    return request.app.state.operations


ComponentsDep = Annotated[Components, Depends(get_components)]
OperationsDep = Annotated[LedgerOperations, Depends(get_operations)]


async def get_identity(
    request: Request,
    components: ComponentsDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)],
    x_tenant_id: Annotated[str | None, Header(alias="x-tenant-id")] = None,
    x_actor_id: Annotated[str | None, Header(alias="x-actor-id")] = None,
    x_actor_role: Annotated[str | None, Header(alias="x-actor-role")] = None,
    x_actor_email: Annotated[str | None, Header(alias="x-actor-email")] = None,
) -> Identity:
    """
    Resolve tenant and actor for the request.

    ``headers`` mode trusts gateway headers. ``jwt`` mode requires a valid
    HS256 bearer token; headers that contradict its claims are rejected.
    """
    settings = components.settings
    if settings.auth_mode == AuthMode.JWT:
        if credentials is None:
            raise AuthError("Authorization header missing or not Bearer type")
        try:
            claims = decode_token(settings, credentials.credentials)
        except JWTError as exc:
            raise AuthError("Token invalid or expired") from exc
        tenant_id = normalize_tenant_id(str(claims.get("tenant_id") or ""))
        actor_id = normalize_actor_id(str(claims.get("sub") or ""))
        role = normalize_role(str(claims.get("role") or ""))
        email = claims.get("email")
        if x_tenant_id and normalize_tenant_id(x_tenant_id) != tenant_id:
            raise ForbiddenError("x-tenant-id does not match token tenant")
        if x_actor_id and normalize_actor_id(x_actor_id) != actor_id:
            raise ForbiddenError("x-actor-id does not match token subject")
        if x_actor_role and normalize_role(x_actor_role) != role:
            raise ForbiddenError("x-actor-role does not match token role")
        source = "jwt"
    else:
        tenant_id = normalize_tenant_id(x_tenant_id)
        actor_id = normalize_actor_id(x_actor_id)
        role = normalize_role(x_actor_role)
        email = x_actor_email
        source = "headers"

    if not tenant_id:
        raise ValidationError("A valid tenant id is required (x-tenant-id)")
    if not actor_id:
        raise AuthError("Actor identity is required (x-actor-id)")

    bind_log_context(tenant_id=tenant_id, actor_id=actor_id)
    request.state.identity = Identity(
        tenant_id=tenant_id,
        actor_id=actor_id,
        actor_role=role,
        actor_email=str(email).strip() if email else None,
        source=source,
    )
    return request.state.identity


CurrentIdentity = Annotated[Identity, Depends(get_identity)]


def require_roles(roles: frozenset[str], gate: str):
    """Return a dependency callable that enforces role membership."""

    async def _check(identity: CurrentIdentity) -> Identity:
        if identity.actor_role not in roles:
            raise ForbiddenError(
                f"{gate} requires one of: {sorted(roles)}. Your role is: {identity.actor_role or '-'}"
            )
        return identity

    return _check


def require_permission(permission: str):
    """Return a dependency callable that checks the role policy for *permission*."""

    async def _check(identity: CurrentIdentity, components: ComponentsDep) -> Identity:
        if not components.policy.has_permission(identity.actor_role, permission):
            raise ForbiddenError(f"Role {identity.actor_role or '-'} lacks permission {permission}")
        return identity

    return _check


ReadCore = Annotated[Identity, Depends(require_roles(READ_CORE, "readCore"))]
WriteCore = Annotated[Identity, Depends(require_roles(WRITE_CORE, "writeCore"))]
AuditRead = Annotated[Identity, Depends(require_roles(AUDIT_READ, "auditRead"))]
MemberWrite = Annotated[Identity, Depends(require_roles(MEMBER_WRITE, "memberWrite"))]


async def get_idempotency_key(
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
) -> str:
    key = (idempotency_key or "").strip()
    if not key:
        raise IdempotencyKeyRequiredError()
    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationError(f"Idempotency-Key longer than {MAX_IDEMPOTENCY_KEY_LENGTH} characters")
    return key


IdempotencyKey = Annotated[str, Depends(get_idempotency_key)]


async def idempotent_response(
    request: Request,
    components: Components,
    identity: Identity,
    idempotency_key: str,
    handler: Callable[[], Awaitable[MutationOutcome]],
) -> Response:
    """Run *handler* under the idempotency guard and render its stored JSON text."""
    raw = await request.body()
    body: Any = json.loads(raw) if raw else None
    result = await run_idempotent(
        components.guard,
        identity=identity,
        idempotency_key=idempotency_key,
        method=request.method,
        path=request.url.path,
        body=body,
        request_id=getattr(request.state, "request_id", None),
        handler=handler,
    )
    headers = {REPLAY_HEADER: "1"} if result.replayed else {}
    return Response(
        content=result.content,
        status_code=result.status_code,
        media_type="application/json",
        headers=headers,
    )


def request_id_of(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


# ── Internal workers ──────────────────────────────────────────────────── #


async def require_worker_secret(
    components: ComponentsDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)],
    x_worker_secret: Annotated[str | None, Header(alias="X-Worker-Secret")] = None,
) -> None:
    configured = components.settings.worker_secret
    if configured is None:
        raise ServiceUnavailableError(
            ErrorCode.WORKER_SECRET_MISSING, "Worker secret is not configured"
        )
    presented = x_worker_secret or (credentials.credentials if credentials else "")
    if not presented or not safe_str_compare(presented, configured.get_secret_value()):
        _log.warning("worker_auth_rejected")
        raise AuthError("Invalid worker secret", code=ErrorCode.UNAUTHORIZED_WORKER)
