"""
Ledgerline: FastAPI application factory.

Application lifecycle:
  startup  → configure logging, build components, apply schema
  shutdown → dispose DB engine pool

Run with ``uvicorn ledgerline.main:create_app --factory``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import sqlalchemy as sa
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy.exc import SQLAlchemyError

from ledgerline.api.internal import router as internal_router
from ledgerline.api.v1.router import router as v1_router
from ledgerline.config.logging_config import configure_logging
from ledgerline.config.settings import Environment, Settings, load_settings
from ledgerline.core.errors import AppError
from ledgerline.core.middleware import (
    REQUEST_ID_HEADER,
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    app_error_handler,
    unhandled_exception_handler,
    validation_error_handler,
)
from ledgerline.db.schema import apply_migrations, create_all
from ledgerline.services.container import build_components
from ledgerline.services.operations import LedgerOperations

_log = structlog.get_logger(__name__)


def _create_limiter(settings: Settings) -> Limiter:
    return Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit_default],
    )


def _build_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(log_level=settings.log_level.value, json_logs=settings.log_json)
        _log.info(
            "ledgerline_starting",
            version=settings.app_version,
            environment=settings.environment.value,
            auth_mode=settings.auth_mode.value,
        )

        components = build_components(settings)
        if settings.run_migrations_on_startup:
            await apply_migrations(str(settings.database_url))
        else:
            await create_all(components.engine)

        app.state.components = components
        app.state.operations = LedgerOperations(components)
        _log.info("ledgerline_ready", host=settings.host, port=settings.port)
        try:
            yield
        finally:
            await components.dispose()
            _log.info("ledgerline_shutdown")

    return lifespan


def create_app(settings: Settings | None = None) -> FastAPI:
    """Application factory. Returns a configured FastAPI instance."""
    settings = settings or load_settings()
    is_production = settings.environment == Environment.PRODUCTION

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Ledgerline: multi-tenant project ledger with idempotent writes, "
            "hash-chained audit and outbox-driven projections."
        ),
        docs_url=None if is_production else "/docs",
        redoc_url=None if is_production else "/redoc",
        openapi_url=None if is_production else "/openapi.json",
        lifespan=_build_lifespan(settings),
    )

    # ── Rate Limiting ─────────────────────────────────────────────────── #
    app.state.limiter = _create_limiter(settings)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]
    app.add_middleware(SlowAPIMiddleware)

    # ── CORS ──────────────────────────────────────────────────────────── #
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER, "X-Idempotency-Replayed"],
    )

    # ── Custom Middleware (applied in reverse order) ───────────────────── #
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # ── Exception Handlers ────────────────────────────────────────────── #
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # ── Routes ────────────────────────────────────────────────────────── #
    app.include_router(v1_router)
    app.include_router(internal_router)

    # ── Health ────────────────────────────────────────────────────────── #
    @app.get("/health", tags=["health"], summary="Health check")
    async def health(request: Request) -> dict[str, object]:
        """Returns service health including database reachability."""
        db_ok = False
        try:
            async with request.app.state.components.session_factory() as session:
                await session.execute(sa.text("SELECT 1"))
            db_ok = True
        except SQLAlchemyError as exc:
            _log.warning("health_database_unavailable", error=str(exc))

        return {
            "status": "healthy" if db_ok else "degraded",
            "database": "ok" if db_ok else "unavailable",
            "version": settings.app_version,
        }

    # ── Metrics (Prometheus) ──────────────────────────────────────────── #
    @app.get("/metrics", tags=["observability"], summary="Prometheus metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
