"""Transaction approval workflow: states and the allowed transition table."""

from __future__ import annotations

from enum import StrEnum

from ledgerline.core.errors import InvalidTransitionError, ValidationError


class TransactionState(StrEnum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


ALLOWED_TRANSITIONS: dict[TransactionState, frozenset[TransactionState]] = {
    TransactionState.DRAFT: frozenset({TransactionState.SUBMITTED}),
    TransactionState.SUBMITTED: frozenset({TransactionState.APPROVED, TransactionState.REJECTED}),
    TransactionState.REJECTED: frozenset({TransactionState.SUBMITTED}),
    TransactionState.APPROVED: frozenset(),
}


def normalize_state(raw: object) -> str:
    return raw.strip().upper() if isinstance(raw, str) else ""


def parse_state(raw: object) -> TransactionState:
    value = normalize_state(raw)
    try:
        return TransactionState(value)
    except ValueError:
        raise ValidationError(f"Unsupported transaction state: {raw!s}") from None


def assert_transition_allowed(
    current_state: object, next_state: object
) -> tuple[TransactionState, TransactionState]:
    """Return the parsed ``(from, to)`` pair or raise ``InvalidTransitionError``."""
    current = parse_state(current_state)
    target = parse_state(next_state)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)
    return current, target


def assert_reason_for_rejected(next_state: TransactionState, reason: str | None) -> None:
    if next_state == TransactionState.REJECTED and not (reason or "").strip():
        raise ValidationError("REJECTED transition requires a rejection reason")
