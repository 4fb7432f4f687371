"""Outbox event and delivery receipt models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime, Enum as SAEnum, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledgerline.db.base import Base, RetryableWorkMixin, TenantScopedMixin, TimestampMixin


class OutboxStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"
    DEAD = "DEAD"


class OutboxEvent(Base, RetryableWorkMixin, TimestampMixin):
    """
    Durable "event occurred" marker.

    Written in the same transaction as the entity mutation it describes.
    The table is global (not per tenant) so one sweep schedules delivery
    for every tenant. Only OutboxRelay transitions ``status``.
    """

    __tablename__ = "outbox_events"
    __table_args__ = (Index("ix_outbox_events_due", "status", "next_attempt_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict] = mapped_column(nullable=False, default=dict)
    status: Mapped[OutboxStatus] = mapped_column(
        SAEnum(OutboxStatus, name="outbox_status"),
        default=OutboxStatus.PENDING,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<OutboxEvent {self.id} {self.event_type} {self.status}>"


class OutboxDelivery(Base, TenantScopedMixin):
    """Delivery receipt; ``id`` equals the outbox event id (create-if-absent)."""

    __tablename__ = "outbox_deliveries"

    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict] = mapped_column(nullable=False, default=dict)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    delivered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
