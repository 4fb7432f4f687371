"""
Application configuration via Pydantic Settings.

All values are sourced from environment variables or an .env file.
Settings are built once at process start (``load_settings``) and passed
explicitly to the app factory and the worker entry points.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Annotated

from pydantic import (
    BeforeValidator,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    """Deployment environment identifiers."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class LogLevel(StrEnum):
    """Structured log level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AuthMode(StrEnum):
    """How request identity is resolved."""

    HEADERS = "headers"
    JWT = "jwt"


def _parse_cors_origins(value: str | list[str]) -> list[str]:
    """Accept comma-separated string or list for CORS origins."""
    if isinstance(value, list):
        return value
    return [origin.strip() for origin in value.split(",") if origin.strip()]


class Settings(BaseSettings):
    """
    Centralised, type-validated application configuration.

    Reads from environment variables with an optional .env file.
    All secrets are Pydantic SecretStr to prevent accidental logging.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="forbid",
    )

    # ── Application ────────────────────────────────────────────────────── #
    app_name: str = Field(default="Ledgerline", description="Human-readable application name")
    app_version: str = Field(default="1.0.0", description="Semantic version string")
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development|testing|production)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode. Must be False in production.",
    )

    # ── Server ─────────────────────────────────────────────────────────── #
    host: str = Field(default="127.0.0.1", description="Bind host. Default local-only.")
    port: int = Field(default=8000, ge=1024, le=65535, description="Bind port")

    # ── CORS ───────────────────────────────────────────────────────────── #
    cors_origins: Annotated[list[str], BeforeValidator(_parse_cors_origins)] = Field(
        default=["http://127.0.0.1:5173", "http://localhost:5173"],
        description="Comma-separated list of allowed CORS origins",
    )

    # ── Database ───────────────────────────────────────────────────────── #
    database_url: str = Field(
        default="sqlite+aiosqlite:///./ledgerline.db",
        description=(
            "Async SQLAlchemy connection string. "
            "Use sqlite+aiosqlite:// for local or postgresql+asyncpg:// for production."
        ),
    )
    db_pool_size: int = Field(default=5, ge=1, le=50, description="Connection pool size")
    db_max_overflow: int = Field(default=10, ge=0, le=100, description="Pool max overflow")
    db_echo: bool = Field(default=False, description="Log all SQL statements (debug only)")
    db_transaction_attempts: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Attempts per document-store transaction before giving up on contention",
    )
    run_migrations_on_startup: bool = Field(
        default=True,
        description="Apply Alembic migrations when the API starts",
    )

    # ── Auth ───────────────────────────────────────────────────────────── #
    auth_mode: AuthMode = Field(
        default=AuthMode.HEADERS,
        description="headers (trusted gateway headers) or jwt (HS256 bearer token)",
    )
    jwt_secret_key: SecretStr | None = Field(
        default=None,
        description="HS256 verification secret. Required when auth_mode=jwt.",
    )
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    worker_secret: SecretStr | None = Field(
        default=None,
        description="Shared secret for internal worker endpoints",
    )

    # ── Rate Limiting ──────────────────────────────────────────────────── #
    rate_limit_default: str = Field(
        default="300/minute",
        description="Default rate limit string (slowapi format)",
    )

    # ── Logging ────────────────────────────────────────────────────────── #
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Minimum log level")
    log_json: bool = Field(default=True, description="Emit logs as JSON (False for dev console)")

    # ── Idempotency ────────────────────────────────────────────────────── #
    idempotency_ttl_seconds: int = Field(
        default=600,
        ge=1,
        le=7 * 24 * 3600,
        description="Lifetime of an idempotency record; stuck pending attempts expire after it",
    )
    idempotency_cleanup_batch: int = Field(default=200, ge=1, le=5000)

    # ── Outbox ─────────────────────────────────────────────────────────── #
    outbox_batch_size: int = Field(default=50, ge=1, le=500)
    outbox_max_attempts: int = Field(default=8, ge=1, le=50)

    # ── Work queue ─────────────────────────────────────────────────────── #
    work_queue_batch_size: int = Field(default=100, ge=1, le=500)
    work_queue_max_attempts: int = Field(default=6, ge=1, le=50)

    # ── Workers ────────────────────────────────────────────────────────── #
    claim_lease_seconds: int = Field(
        default=300,
        ge=10,
        le=24 * 3600,
        description="PROCESSING items older than this are reclaimed by the next batch",
    )
    worker_poll_interval_seconds: float = Field(default=5.0, ge=1.0, le=3600.0)

    # ── Policies ───────────────────────────────────────────────────────── #
    rbac_policy_path: Path | None = Field(
        default=None,
        description="YAML/JSON role policy file. Built-in policy when unset.",
    )
    relation_rules_path: Path | None = Field(
        default=None,
        description="YAML/JSON relation rules file. Built-in rules when unset.",
    )

    # ── PII ────────────────────────────────────────────────────────────── #
    pii_encryption_key: SecretStr | None = Field(
        default=None,
        description="Fernet key for actor-identifying fields. Masking only when unset.",
    )

    # ── Validators ─────────────────────────────────────────────────────── #

    @field_validator("jwt_secret_key")
    @classmethod
    def jwt_secret_must_be_strong(cls, v: SecretStr | None) -> SecretStr | None:
        if v is not None and len(v.get_secret_value()) < 32:
            raise ValueError("jwt_secret_key must be at least 32 characters")
        return v

    @model_validator(mode="after")
    def jwt_mode_requires_secret(self) -> Settings:
        if self.auth_mode == AuthMode.JWT and self.jwt_secret_key is None:
            raise ValueError("jwt_secret_key is required when auth_mode=jwt")
        return self

    @model_validator(mode="after")
    def production_safety_checks(self) -> Settings:
        if self.environment == Environment.PRODUCTION:
            if self.debug:
                raise ValueError("debug must be False in production")
            if self.db_echo:
                raise ValueError("db_echo must be False in production")
            if self.auth_mode != AuthMode.JWT:
                raise ValueError("auth_mode must be jwt in production")
            if self.worker_secret is None:
                raise ValueError("worker_secret is required in production")
        return self


def load_settings(**overrides: object) -> Settings:
    """
    Build Settings from the environment.

    Call once at process start and hand the result to ``create_app`` or a
    worker; keyword overrides take precedence over the environment.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
