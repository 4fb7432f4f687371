"""Unit tests for ledgerline.services.pii.protector."""
from cryptography.fernet import Fernet

from ledgerline.services.pii.protector import (
    DisabledPiiProtector,
    FernetPiiProtector,
    build_pii_protector,
    mask_name,
)


def test_mask_name():
    assert mask_name("alice") == "a**"
    assert mask_name("x") == "x*"
    assert mask_name("  ") is None


def test_fernet_round_trip_and_prefix():
    protector = FernetPiiProtector(Fernet.generate_key())
    token = protector.encrypt_text("alice@example.com")
    assert token.startswith("enc:fernet:")
    assert "alice" not in token
    assert protector.decrypt_text(token) == "alice@example.com"


def test_fernet_ciphertext_is_randomized():
    protector = FernetPiiProtector(Fernet.generate_key())
    assert protector.encrypt_text("same") != protector.encrypt_text("same")


def test_decrypt_with_wrong_key_returns_none():
    token = FernetPiiProtector(Fernet.generate_key()).encrypt_text("secret")
    assert FernetPiiProtector(Fernet.generate_key()).decrypt_text(token) is None


def test_decrypt_ignores_foreign_values():
    protector = FernetPiiProtector(Fernet.generate_key())
    assert protector.decrypt_text("plaintext") is None
    assert protector.encrypt_text("") is None


def test_build_without_key_is_disabled():
    protector = build_pii_protector(None)
    assert isinstance(protector, DisabledPiiProtector)
    assert protector.enabled is False
    assert protector.encrypt_text("alice@example.com") is None
    assert protector.mask_name("alice") == "a**"


def test_build_with_key_is_enabled():
    protector = build_pii_protector(Fernet.generate_key().decode())
    assert protector.enabled is True
