"""Read-view, change-event, notification and relation-rule models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ledgerline.db.base import Base, TenantScopedMixin, TimestampMixin


class ReadView(Base, TimestampMixin):
    """Materialised projection; always fully overwritten by its rebuilder."""

    __tablename__ = "read_views"

    tenant_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    view_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    data: Mapped[dict] = mapped_column(nullable=False)


class ChangeEvent(Base, TenantScopedMixin):
    """Record of one generic write, kept so its view jobs can be replayed."""

    __tablename__ = "change_events"

    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    changed_fields: Mapped[list] = mapped_column(nullable=False, default=list)
    affected_views: Mapped[list] = mapped_column(nullable=False, default=list)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    actor_role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Notification(Base, TenantScopedMixin, TimestampMixin):
    """In-app notification derived from an outbox event."""

    __tablename__ = "notifications"

    recipient_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    recipient_role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    project_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    ledger_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class RelationRuleRecord(Base, TenantScopedMixin, TimestampMixin):
    """Tenant-specific relation rule; any row overrides the file/default rule set."""

    __tablename__ = "relation_rules"

    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False, default="*")
    changed_fields: Mapped[list] = mapped_column(nullable=False, default=list)
    affects: Mapped[list] = mapped_column(nullable=False, default=list)
