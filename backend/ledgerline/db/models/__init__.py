"""Database model registry. Import all models here so Alembic can discover them."""

from ledgerline.db.models.audit import AuditChainHead, AuditEntry
from ledgerline.db.models.entity import EntityDocument
from ledgerline.db.models.idempotency import IdempotencyRecord, IdempotencyStatus
from ledgerline.db.models.outbox import OutboxDelivery, OutboxEvent, OutboxStatus
from ledgerline.db.models.projection import (
    ChangeEvent,
    Notification,
    ReadView,
    RelationRuleRecord,
)
from ledgerline.db.models.work_queue import JobStatus, WorkQueueJob

__all__ = [
    "AuditChainHead",
    "AuditEntry",
    "ChangeEvent",
    "EntityDocument",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "JobStatus",
    "Notification",
    "OutboxDelivery",
    "OutboxEvent",
    "OutboxStatus",
    "ReadView",
    "RelationRuleRecord",
    "WorkQueueJob",
]
