"""
Shared pytest fixtures for Ledgerline backend tests.

Provides:
  - per-test SQLite database file (schema created with ``create_all``)
  - wired service components for unit tests (no HTTP)
  - FastAPI app with its lifespan running, and an httpx AsyncClient
  - trusted-gateway header builders and a small API helper
"""
from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from ledgerline.config.settings import Settings, load_settings
from ledgerline.core.identity import Identity
from ledgerline.db.schema import create_all
from ledgerline.main import create_app
from ledgerline.services.container import Components, build_components

TENANT = "acme"
TEST_WORKER_SECRET = "test-worker-secret-value"
TEST_JWT_SECRET = "test-jwt-secret-key-not-for-production-use"


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "_env_file": None,
        "environment": "testing",
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'ledgerline-test.db'}",
        "run_migrations_on_startup": False,
        "worker_secret": TEST_WORKER_SECRET,
        "rate_limit_default": "100000/minute",
        "db_transaction_attempts": 50,
        "log_json": False,
    }
    values.update(overrides)
    return load_settings(**values)


def make_identity(actor: str = "alice", role: str = "admin", tenant: str = TENANT, **kw: Any) -> Identity:
    return Identity(tenant_id=tenant, actor_id=actor, actor_role=role, **kw)


def make_headers(
    actor: str = "alice",
    role: str = "admin",
    tenant: str = TENANT,
    *,
    key: str | None = None,
    idempotent: bool = True,
) -> dict[str, str]:
    """Gateway identity headers; a fresh Idempotency-Key unless one is given."""
    headers = {"x-tenant-id": tenant, "x-actor-id": actor, "x-actor-role": role}
    if idempotent:
        headers["Idempotency-Key"] = key or f"test-{uuid.uuid4().hex}"
    return headers


# ─── Settings & components ────────────────────────────────────────────────────

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest_asyncio.fixture
async def components(settings: Settings) -> AsyncGenerator[Components, None]:
    """Services wired to a fresh database file."""
    comps = build_components(settings)
    await create_all(comps.engine)
    yield comps
    await comps.dispose()


@pytest.fixture
def identity() -> Identity:
    return make_identity()


# ─── App & HTTP client ────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def app(settings: Settings) -> AsyncGenerator[FastAPI, None]:
    """FastAPI app with its lifespan (components, schema) running."""
    app_ = create_app(settings)
    async with app_.router.lifespan_context(app_):
        yield app_


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


class LedgerApi:
    """Thin helper over the HTTP API for arranging test data."""

    def __init__(self, client: AsyncClient) -> None:
        self.client = client

    async def write(self, entity_type: str, entity_id: str, data: dict[str, Any], **kw: Any) -> dict[str, Any]:
        body = {"entityType": entity_type, "entityId": entity_id, "data": data, **kw}
        resp = await self.client.post("/api/v1/write", json=body, headers=make_headers())
        assert resp.status_code in (200, 201), resp.text
        return resp.json()

    async def member(self, member_id: str, role: str) -> dict[str, Any]:
        return await self.write("member", member_id, {"role": role, "name": member_id})

    async def project(self, project_id: str = "p1", name: str = "Alpha") -> dict[str, Any]:
        resp = await self.client.post(
            "/api/v1/projects", json={"id": project_id, "name": name}, headers=make_headers()
        )
        assert resp.status_code == 201, resp.text
        return resp.json()

    async def ledger(self, ledger_id: str = "l1", project_id: str = "p1") -> dict[str, Any]:
        resp = await self.client.post(
            "/api/v1/ledgers",
            json={"id": ledger_id, "projectId": project_id, "name": "Main"},
            headers=make_headers(),
        )
        assert resp.status_code == 201, resp.text
        return resp.json()

    async def transaction(
        self,
        tx_id: str = "t1",
        *,
        amount: float = 100.0,
        direction: str = "OUT",
        project_id: str = "p1",
        ledger_id: str = "l1",
        actor: str = "alice",
        role: str = "admin",
    ) -> dict[str, Any]:
        resp = await self.client.post(
            "/api/v1/transactions",
            json={
                "id": tx_id,
                "projectId": project_id,
                "ledgerId": ledger_id,
                "amount": amount,
                "direction": direction,
                "counterparty": "Vendor",
            },
            headers=make_headers(actor, role),
        )
        assert resp.status_code == 201, resp.text
        return resp.json()

    async def transition(
        self,
        tx_id: str,
        new_state: str,
        expected_version: int,
        *,
        reason: str | None = None,
        actor: str = "alice",
        role: str = "admin",
    ):
        body: dict[str, Any] = {"newState": new_state, "expectedVersion": expected_version}
        if reason is not None:
            body["reason"] = reason
        return await self.client.patch(
            f"/api/v1/transactions/{tx_id}/state", json=body, headers=make_headers(actor, role)
        )

    async def run_worker(self, kind: str, **params: Any) -> dict[str, Any]:
        resp = await self.client.post(
            f"/api/internal/workers/{kind}/run",
            json=params,
            headers={"X-Worker-Secret": TEST_WORKER_SECRET},
        )
        assert resp.status_code == 200, resp.text
        return resp.json()


@pytest.fixture
def api(client: AsyncClient) -> LedgerApi:
    return LedgerApi(client)
