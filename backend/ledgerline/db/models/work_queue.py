"""Work-queue job model."""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Enum as SAEnum, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledgerline.db.base import Base, RetryableWorkMixin, TimestampMixin


class JobStatus(StrEnum):
    READY = "READY"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"
    DEAD = "DEAD"


class WorkQueueJob(Base, RetryableWorkMixin, TimestampMixin):
    """
    A deduplicated "rebuild view V for tenant T" job.

    ``id`` is derived from ``(event_id, view_name, dedupe_key, nonce)`` so
    enqueueing the same logical job twice is a no-op. Only WorkQueue
    transitions ``status``.
    """

    __tablename__ = "work_queue_jobs"
    __table_args__ = (
        Index("ix_work_queue_jobs_due", "status", "next_attempt_at"),
        Index("ix_work_queue_jobs_tenant_event", "tenant_id", "event_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(32), nullable=False)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    view_name: Mapped[str] = mapped_column(String(64), nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(512), nullable=False)
    payload: Mapped[dict] = mapped_column(nullable=False, default=dict)
    status: Mapped[JobStatus] = mapped_column(
        SAEnum(JobStatus, name="job_status"),
        default=JobStatus.READY,
        nullable=False,
    )
    last_result: Mapped[dict | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<WorkQueueJob {self.id} {self.view_name} {self.status}>"
