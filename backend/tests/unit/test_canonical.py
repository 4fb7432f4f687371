"""Unit tests for ledgerline.core.canonical."""
from datetime import UTC, datetime

from ledgerline.core.canonical import (
    as_utc,
    canonical_json,
    isoformat,
    normalize_actor_id,
    normalize_tenant_id,
    request_fingerprint,
    timestamped_id,
)


# ─── canonical_json ───────────────────────────────────────────────────────────

def test_canonical_json_sorts_nested_keys():
    a = {"b": 1, "a": {"y": 2, "x": [3, {"d": 4, "c": 5}]}}
    b = {"a": {"x": [3, {"c": 5, "d": 4}], "y": 2}, "b": 1}
    assert canonical_json(a) == canonical_json(b)
    assert canonical_json(a) == '{"a":{"x":[3,{"c":5,"d":4}],"y":2},"b":1}'


def test_canonical_json_keeps_unicode():
    assert canonical_json({"name": "Ünïcode"}) == '{"name":"Ünïcode"}'


# ─── Fingerprints ─────────────────────────────────────────────────────────────

def test_fingerprint_ignores_key_order():
    assert request_fingerprint("post", "/p", {"a": 1, "b": 2}) == request_fingerprint(
        "POST", "/p", {"b": 2, "a": 1}
    )


def test_fingerprint_differs_by_path_and_body():
    base = request_fingerprint("POST", "/api/v1/projects", {"name": "A"})
    assert base != request_fingerprint("POST", "/api/v1/ledgers", {"name": "A"})
    assert base != request_fingerprint("POST", "/api/v1/projects", {"name": "B"})
    assert base != request_fingerprint("PATCH", "/api/v1/projects", {"name": "A"})


# ─── Identifiers ──────────────────────────────────────────────────────────────

def test_timestamped_id_layout():
    at = datetime(2024, 3, 5, 7, 8, 9, tzinfo=UTC)
    value = timestamped_id("al", at)
    prefix, stamp, suffix = value.split("_")
    assert prefix == "al"
    assert stamp == "20240305070809"
    assert len(suffix) == 10


def test_timestamped_ids_are_unique():
    at = datetime(2024, 1, 1, tzinfo=UTC)
    assert len({timestamped_id("ob", at) for _ in range(50)}) == 50


def test_normalize_tenant_id():
    assert normalize_tenant_id(" ACME ") == "acme"
    assert normalize_tenant_id("team-42") == "team-42"
    assert normalize_tenant_id("-bad") is None
    assert normalize_tenant_id("bad_underscore") is None
    assert normalize_tenant_id("x" * 33) is None
    assert normalize_tenant_id(None) is None


def test_normalize_actor_id_replaces_unsafe_characters():
    assert normalize_actor_id("  jane doe ") == "jane_doe"
    assert normalize_actor_id("a/b:c") == "a_b_c"
    assert normalize_actor_id("user.name-1") == "user.name-1"


# ─── Datetimes ────────────────────────────────────────────────────────────────

def test_as_utc_attaches_tz_to_naive():
    naive = datetime(2024, 1, 1, 12, 0)
    assert as_utc(naive).tzinfo is UTC


def test_isoformat_uses_z_suffix():
    assert isoformat(datetime(2024, 1, 1, 12, 0, tzinfo=UTC)) == "2024-01-01T12:00:00Z"
    assert isoformat(None) is None
