"""
Security utilities: JWT creation and verification, constant-time compare.

Secrets are never logged.
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime, timedelta

from jose import jwt

from ledgerline.config.settings import Settings


def _now_utc() -> datetime:
    return datetime.now(UTC)


def _signing_key(settings: Settings) -> str:
    if settings.jwt_secret_key is None:
        raise ValueError("jwt_secret_key is not configured")
    return settings.jwt_secret_key.get_secret_value()


def create_access_token(
    settings: Settings,
    *,
    subject: str,
    tenant_id: str,
    role: str,
    email: str | None = None,
    expires_minutes: int = 30,
) -> str:
    """
    Create a signed JWT access token.

    Args:
        settings: Application settings carrying the signing key.
        subject: The actor ID (``sub`` claim).
        tenant_id: Tenant the token is scoped to.
        role: The actor role name.
        email: Optional actor e-mail.
        expires_minutes: Token lifetime.

    Returns:
        Signed compact JWT string.
    """
    payload: dict[str, object] = {
        "sub": subject,
        "tenant_id": tenant_id,
        "role": role,
        "iat": _now_utc(),
        "exp": _now_utc() + timedelta(minutes=expires_minutes),
        "type": "access",
        "jti": secrets.token_hex(16),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, _signing_key(settings), algorithm=settings.jwt_algorithm)


def decode_token(settings: Settings, token: str) -> dict[str, object]:
    """
    Decode and validate a JWT.

    Raises:
        JWTError: If the token is invalid, expired, or tampered with.
    """
    return jwt.decode(  # type: ignore[return-value]
        token,
        _signing_key(settings),
        algorithms=[settings.jwt_algorithm],
    )


def safe_str_compare(a: str, b: str) -> bool:
    """Constant-time string comparison to prevent timing attacks."""
    return secrets.compare_digest(a.encode(), b.encode())
