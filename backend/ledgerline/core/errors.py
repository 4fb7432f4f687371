"""
Structured error taxonomy for Ledgerline.

Every application error has:
  - A stable machine-readable code, distinct from the message
  - A category: client, concurrency or transient
  - An HTTP status code
  - An optional detail dict for machine consumers

Client errors are never retried by the system. Concurrency errors are
surfaced to the caller, who re-reads and retries. Transient failures are
unexpected faults; inside outbox/work-queue delivery they are retried with
backoff. No internal state is surfaced to clients.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    CLIENT = "client"
    CONCURRENCY = "concurrency"
    TRANSIENT = "transient"


class ErrorCode(StrEnum):
    """Stable error codes. Never reuse a retired code."""

    # Client
    VALIDATION_ERROR = "validation_error"
    INVALID_TRANSITION = "invalid_transition"
    IDEMPOTENCY_KEY_REQUIRED = "idempotency_key_required"
    NOT_FOUND = "not_found"
    DUPLICATE_ID = "duplicate_id"
    UNSUPPORTED_VIEW = "unsupported_view"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    LAST_ADMIN_LOCKOUT = "last_admin_lockout"
    WORKER_SECRET_MISSING = "worker_secret_missing"
    UNAUTHORIZED_WORKER = "unauthorized_worker"

    # Concurrency
    VERSION_CONFLICT = "version_conflict"
    VERSION_REQUIRED = "version_required"
    IDEMPOTENCY_CONFLICT = "idempotency_conflict"
    IDEMPOTENCY_IN_PROGRESS = "idempotency_in_progress"
    TRANSACTION_CONFLICT = "transaction_conflict"

    # Generic
    INTERNAL_ERROR = "internal_error"


class AppError(Exception):
    """Base class for all application errors."""

    category: ErrorCategory = ErrorCategory.CLIENT

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        http_status: int = 400,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code.value,
                "category": self.category.value,
                "message": self.message,
                "detail": self.detail,
            }
        }


# ── Client errors ─────────────────────────────────────────────────────── #


class ValidationError(AppError):
    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            http_status=400,
            detail=detail,
        )


class IdempotencyKeyRequiredError(AppError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.IDEMPOTENCY_KEY_REQUIRED,
            message="Idempotency-Key header is required for this request",
            http_status=400,
        )


class InvalidTransitionError(AppError):
    def __init__(self, current_state: str, next_state: str) -> None:
        super().__init__(
            code=ErrorCode.INVALID_TRANSITION,
            message=f"Invalid state transition: {current_state} -> {next_state}",
            http_status=400,
            detail={"from": current_state, "to": next_state},
        )


class NotFoundError(AppError):
    def __init__(self, entity: str, entity_id: str | None = None) -> None:
        detail = {"entity": entity}
        if entity_id:
            detail["id"] = entity_id
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{entity} not found" + (f": {entity_id}" if entity_id else ""),
            http_status=404,
            detail=detail,
        )


class DuplicateIdError(AppError):
    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            code=ErrorCode.DUPLICATE_ID,
            message=f"{entity} already exists: {entity_id}",
            http_status=409,
            detail={"entity": entity, "id": entity_id},
        )


class UnsupportedViewError(AppError):
    def __init__(self, view_name: str) -> None:
        super().__init__(
            code=ErrorCode.UNSUPPORTED_VIEW,
            message=f"Unsupported view: {view_name}",
            http_status=400,
            detail={"view": view_name},
        )


class AuthError(AppError):
    def __init__(self, message: str, code: ErrorCode = ErrorCode.UNAUTHORIZED) -> None:
        super().__init__(code=code, message=message, http_status=401)


class ForbiddenError(AppError):
    def __init__(
        self, message: str = "Insufficient permissions", code: ErrorCode = ErrorCode.FORBIDDEN
    ) -> None:
        super().__init__(code=code, message=message, http_status=403)


class ConflictError(AppError):
    """A client-side conflict that is not a concurrency race (e.g. last admin)."""

    def __init__(self, code: ErrorCode, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(code=code, message=message, http_status=409, detail=detail)


class ServiceUnavailableError(AppError):
    category = ErrorCategory.TRANSIENT

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(code=code, message=message, http_status=503)


# ── Concurrency errors ────────────────────────────────────────────────── #


class ConcurrencyError(AppError):
    category = ErrorCategory.CONCURRENCY

    def __init__(self, code: ErrorCode, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(code=code, message=message, http_status=409, detail=detail)


class VersionConflictError(ConcurrencyError):
    def __init__(self, expected: int | None, actual: int) -> None:
        super().__init__(
            ErrorCode.VERSION_CONFLICT,
            f"Version mismatch: expected {expected}, actual {actual}",
            detail={"expectedVersion": expected, "actualVersion": actual},
        )
        self.expected = expected
        self.actual = actual


class VersionRequiredError(ConcurrencyError):
    def __init__(self, actual: int) -> None:
        super().__init__(
            ErrorCode.VERSION_REQUIRED,
            f"expectedVersion is required for update (current={actual})",
            detail={"actualVersion": actual},
        )
        self.actual = actual


class IdempotencyConflictError(ConcurrencyError):
    def __init__(self, message: str = "Idempotency key was already used with different payload") -> None:
        super().__init__(ErrorCode.IDEMPOTENCY_CONFLICT, message)


class IdempotencyInProgressError(ConcurrencyError):
    def __init__(self, message: str = "Idempotent request is still being processed") -> None:
        super().__init__(ErrorCode.IDEMPOTENCY_IN_PROGRESS, message)


class TransactionConflictError(ConcurrencyError):
    def __init__(self, attempts: int) -> None:
        super().__init__(
            ErrorCode.TRANSACTION_CONFLICT,
            f"Transaction aborted after {attempts} contended attempts",
            detail={"attempts": attempts},
        )
