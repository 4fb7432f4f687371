"""
PII protection for actor-identifying fields.

The audit ledger persists actor e-mails only as ciphertext, and comments
carry a masked author name next to the encrypted one. Key management is external:
a Fernet key arrives through settings, and without one the protector is
disabled and only masks.
"""

from __future__ import annotations

from typing import Protocol

import structlog
from cryptography.fernet import Fernet, InvalidToken

_log = structlog.get_logger(__name__)

_CIPHERTEXT_PREFIX = "enc:fernet:"


def mask_name(name: str | None) -> str | None:
    normalized = (name or "").strip()
    if not normalized:
        return None
    if len(normalized) <= 1:
        return f"{normalized}*"
    return f"{normalized[0]}**"


class PiiProtector(Protocol):
    enabled: bool

    def encrypt_text(self, plaintext: str | None) -> str | None: ...

    def decrypt_text(self, ciphertext: str | None) -> str | None: ...

    def mask_name(self, name: str | None) -> str | None: ...


class FernetPiiProtector:
    """Symmetric encryption with a single Fernet key."""

    enabled = True

    def __init__(self, key: str | bytes) -> None:
        self._fernet = Fernet(key)

    def encrypt_text(self, plaintext: str | None) -> str | None:
        if not plaintext:
            return None
        token = self._fernet.encrypt(plaintext.encode("utf-8"))
        return _CIPHERTEXT_PREFIX + token.decode("ascii")

    def decrypt_text(self, ciphertext: str | None) -> str | None:
        if not ciphertext or not ciphertext.startswith(_CIPHERTEXT_PREFIX):
            return None
        try:
            plain = self._fernet.decrypt(ciphertext[len(_CIPHERTEXT_PREFIX) :].encode("ascii"))
        except InvalidToken:
            _log.warning("pii_decrypt_failed")
            return None
        return plain.decode("utf-8")

    def mask_name(self, name: str | None) -> str | None:
        return mask_name(name)


class DisabledPiiProtector:
    """No key configured: nothing is encrypted, names are only masked."""

    enabled = False

    def encrypt_text(self, plaintext: str | None) -> str | None:
        return None

    def decrypt_text(self, ciphertext: str | None) -> str | None:
        return None

    def mask_name(self, name: str | None) -> str | None:
        return mask_name(name)


def build_pii_protector(key: str | None) -> PiiProtector:
    if key:
        return FernetPiiProtector(key)
    _log.info("pii_protection_disabled")
    return DisabledPiiProtector()
