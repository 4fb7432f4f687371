"""Integration tests: gateway-header and bearer-token identity resolution."""
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from ledgerline.core.security import create_access_token
from ledgerline.main import create_app
from tests.conftest import TEST_JWT_SECRET, make_headers, make_settings

pytestmark = pytest.mark.asyncio


@pytest.fixture
def jwt_settings(tmp_path):
    return make_settings(tmp_path, auth_mode="jwt", jwt_secret_key=TEST_JWT_SECRET)


@pytest_asyncio.fixture
async def jwt_client(jwt_settings):
    app = create_app(jwt_settings)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            yield c


def _bearer(settings, **claims):
    token = create_access_token(
        settings,
        subject=claims.get("subject", "alice"),
        tenant_id=claims.get("tenant_id", "acme"),
        role=claims.get("role", "admin"),
        email=claims.get("email"),
    )
    return {"Authorization": f"Bearer {token}"}


# ─── Header mode ──────────────────────────────────────────────────────────────

async def test_missing_tenant_is_400(client):
    resp = await client.get("/api/v1/projects", headers={"x-actor-id": "alice", "x-actor-role": "admin"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


async def test_invalid_tenant_is_400(client):
    resp = await client.get("/api/v1/projects", headers=make_headers(tenant="no/slashes", idempotent=False))
    assert resp.status_code == 400


async def test_missing_actor_is_401(client):
    resp = await client.get("/api/v1/projects", headers={"x-tenant-id": "acme", "x-actor-role": "admin"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


async def test_missing_role_is_forbidden(client):
    resp = await client.get("/api/v1/projects", headers={"x-tenant-id": "acme", "x-actor-id": "alice"})
    assert resp.status_code == 403


async def test_role_header_is_case_insensitive(client):
    resp = await client.get("/api/v1/projects", headers=make_headers(role="ADMIN", idempotent=False))
    assert resp.status_code == 200


async def test_tenant_header_is_normalized(client, api):
    await api.project("p1")
    resp = await client.get("/api/v1/projects/p1", headers=make_headers(tenant="ACME", idempotent=False))
    assert resp.status_code == 200


# ─── JWT mode ─────────────────────────────────────────────────────────────────

async def test_valid_token_is_accepted(jwt_client, jwt_settings):
    resp = await jwt_client.get("/api/v1/projects", headers=_bearer(jwt_settings))
    assert resp.status_code == 200


async def test_token_identity_is_used_for_writes(jwt_client, jwt_settings):
    headers = {**_bearer(jwt_settings, subject="fin", role="finance"), "Idempotency-Key": "k-1"}
    resp = await jwt_client.post("/api/v1/projects", json={"id": "p1"}, headers=headers)
    assert resp.status_code == 201
    project = (await jwt_client.get("/api/v1/projects/p1", headers=headers)).json()
    assert project["createdBy"] == "fin"


async def test_missing_token_is_401(jwt_client):
    resp = await jwt_client.get("/api/v1/projects", headers=make_headers(idempotent=False))
    assert resp.status_code == 401


async def test_token_signed_with_other_key_is_401(jwt_client):
    token = jwt.encode(
        {"sub": "alice", "tenant_id": "acme", "role": "admin"}, "some-other-signing-key", algorithm="HS256"
    )
    resp = await jwt_client.get("/api/v1/projects", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


async def test_expired_token_is_401(jwt_client):
    past = datetime.now(UTC) - timedelta(minutes=5)
    token = jwt.encode(
        {"sub": "alice", "tenant_id": "acme", "role": "admin", "exp": past},
        TEST_JWT_SECRET,
        algorithm="HS256",
    )
    resp = await jwt_client.get("/api/v1/projects", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


async def test_contradicting_tenant_header_is_403(jwt_client, jwt_settings):
    headers = {**_bearer(jwt_settings), "x-tenant-id": "globex"}
    resp = await jwt_client.get("/api/v1/projects", headers=headers)
    assert resp.status_code == 403


async def test_contradicting_role_header_is_403(jwt_client, jwt_settings):
    headers = {**_bearer(jwt_settings, role="viewer"), "x-actor-role": "admin"}
    resp = await jwt_client.get("/api/v1/projects", headers=headers)
    assert resp.status_code == 403


async def test_matching_headers_are_allowed(jwt_client, jwt_settings):
    headers = {**_bearer(jwt_settings), **make_headers(idempotent=False)}
    resp = await jwt_client.get("/api/v1/projects", headers=headers)
    assert resp.status_code == 200


async def test_token_without_tenant_is_400(jwt_client, jwt_settings):
    resp = await jwt_client.get("/api/v1/projects", headers=_bearer(jwt_settings, tenant_id=""))
    assert resp.status_code == 400


async def test_token_without_subject_is_401(jwt_client):
    token = jwt.encode({"tenant_id": "acme", "role": "admin"}, TEST_JWT_SECRET, algorithm="HS256")
    resp = await jwt_client.get("/api/v1/projects", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
