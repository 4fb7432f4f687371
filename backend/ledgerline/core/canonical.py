"""
Deterministic serialisation, hashing and identifier helpers.

Everything that feeds a hash (request fingerprints, audit entries, job
ids) goes through ``canonical_json`` so that key order never changes a
digest.
"""

from __future__ import annotations

import hashlib
import json
import re
import uuid
from datetime import UTC, datetime
from typing import Any

_TENANT_ID_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,30}[a-z0-9])?$")
_ACTOR_ID_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat().replace("+00:00", "Z")


def canonical_json(value: Any) -> str:
    """JSON with recursively sorted keys and compact separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def sha1_hex(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()  # noqa: S324


def request_fingerprint(method: str, path: str, body: Any) -> str:
    """Hash of METHOD|path|canonical(body) identifying one logical request."""
    return sha256_hex(f"{method.upper()}|{path}|{canonical_json(body)}")


def timestamped_id(prefix: str, at: datetime) -> str:
    """``<prefix>_<yyyymmddHHMMSS>_<10 hex>``; sorts roughly by creation time."""
    return f"{prefix}_{as_utc(at).strftime('%Y%m%d%H%M%S')}_{uuid.uuid4().hex[:10]}"


def short_id(prefix: str, length: int = 12) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:length]}"


def new_request_id() -> str:
    return f"req_{int(utcnow().timestamp() * 1000)}_{uuid.uuid4().hex[:12]}"


def normalize_tenant_id(value: str | None) -> str | None:
    """Lower-case and validate a tenant id; ``None`` when invalid."""
    tenant_id = (value or "").strip().lower()
    if not tenant_id or not _TENANT_ID_PATTERN.match(tenant_id):
        return None
    return tenant_id


def normalize_actor_id(value: str | None) -> str:
    raw = (value or "").strip()
    return _ACTOR_ID_UNSAFE.sub("_", re.sub(r"\s+", "_", raw))


def normalize_role(value: str | None) -> str:
    return (value or "").strip().lower()
