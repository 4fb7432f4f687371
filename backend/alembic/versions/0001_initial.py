"""Initial schema: documents, idempotency, audit chain, outbox, work queue, projections.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | None = None
depends_on: str | None = None

OUTBOX_STATUSES = ("PENDING", "PROCESSING", "DONE", "FAILED", "DEAD")
JOB_STATUSES = ("READY", "PROCESSING", "DONE", "FAILED", "DEAD")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _retry_columns() -> list[sa.Column]:
    return [
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.JSON, nullable=True),
    ]


def upgrade() -> None:
    # entity_documents
    op.create_table(
        "entity_documents",
        sa.Column("tenant_id", sa.String(32), primary_key=True),
        sa.Column("entity_type", sa.String(32), primary_key=True),
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("data", sa.JSON, nullable=False),
        sa.Column("created_by", sa.String(128), nullable=True),
        sa.Column("updated_by", sa.String(128), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_entity_documents_tenant_type", "entity_documents", ["tenant_id", "entity_type"])

    # idempotency_keys
    op.create_table(
        "idempotency_keys",
        sa.Column("tenant_id", sa.String(32), primary_key=True),
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("request_fingerprint", sa.String(64), nullable=False),
        sa.Column("method", sa.String(10), nullable=False),
        sa.Column("path", sa.String(512), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "failed", name="idempotency_status"),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(128), nullable=True),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("response_status", sa.Integer, nullable=True),
        sa.Column("response_body", sa.Text, nullable=True),
        sa.Column("last_error", sa.JSON, nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_idempotency_keys_status", "idempotency_keys", ["status"])
    op.create_index("ix_idempotency_keys_expires_at", "idempotency_keys", ["expires_at"])

    # audit_logs (hash-chained, append-only)
    op.create_table(
        "audit_logs",
        sa.Column("tenant_id", sa.String(32), primary_key=True),
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("chain_seq", sa.Integer, nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("user_name", sa.String(128), nullable=False),
        sa.Column("user_role", sa.String(32), nullable=True),
        sa.Column("user_email_enc", sa.Text, nullable=True),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("details", sa.Text, nullable=False),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("timestamp", sa.String(40), nullable=False),
        sa.Column("prev_hash", sa.String(64), nullable=True),
        sa.Column("hash", sa.String(64), nullable=False),
        sa.Column("hash_alg", sa.String(16), nullable=False),
        sa.UniqueConstraint("tenant_id", "chain_seq", name="uq_audit_logs_tenant_seq"),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["tenant_id", "entity_type", "entity_id"])

    op.create_table(
        "audit_chain_heads",
        sa.Column("tenant_id", sa.String(32), primary_key=True),
        sa.Column("last_seq", sa.Integer, nullable=False),
        sa.Column("last_hash", sa.String(64), nullable=True),
        *_timestamps(),
    )

    # outbox_events (global)
    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(32), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("status", sa.Enum(*OUTBOX_STATUSES, name="outbox_status"), nullable=False),
        *_retry_columns(),
        *_timestamps(),
    )
    op.create_index("ix_outbox_events_due", "outbox_events", ["status", "next_attempt_at"])
    op.create_index("ix_outbox_events_tenant_id", "outbox_events", ["tenant_id"])
    op.create_index("ix_outbox_events_next_attempt_at", "outbox_events", ["next_attempt_at"])

    op.create_table(
        "outbox_deliveries",
        sa.Column("tenant_id", sa.String(32), primary_key=True),
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=False),
    )

    # work_queue_jobs (global)
    op.create_table(
        "work_queue_jobs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(32), nullable=False),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("view_name", sa.String(64), nullable=False),
        sa.Column("dedupe_key", sa.String(512), nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("status", sa.Enum(*JOB_STATUSES, name="job_status"), nullable=False),
        sa.Column("last_result", sa.JSON, nullable=True),
        *_retry_columns(),
        *_timestamps(),
    )
    op.create_index("ix_work_queue_jobs_due", "work_queue_jobs", ["status", "next_attempt_at"])
    op.create_index("ix_work_queue_jobs_tenant_event", "work_queue_jobs", ["tenant_id", "event_id"])
    op.create_index("ix_work_queue_jobs_next_attempt_at", "work_queue_jobs", ["next_attempt_at"])

    # projections
    op.create_table(
        "read_views",
        sa.Column("tenant_id", sa.String(32), primary_key=True),
        sa.Column("view_name", sa.String(64), primary_key=True),
        sa.Column("data", sa.JSON, nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "change_events",
        sa.Column("tenant_id", sa.String(32), primary_key=True),
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("changed_fields", sa.JSON, nullable=False),
        sa.Column("affected_views", sa.JSON, nullable=False),
        sa.Column("actor_id", sa.String(128), nullable=False),
        sa.Column("actor_role", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "notifications",
        sa.Column("tenant_id", sa.String(32), primary_key=True),
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("recipient_id", sa.String(128), nullable=False),
        sa.Column("recipient_role", sa.String(32), nullable=True),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("project_id", sa.String(128), nullable=True),
        sa.Column("ledger_id", sa.String(128), nullable=True),
        sa.Column("state", sa.String(16), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("actor_id", sa.String(128), nullable=True),
        sa.Column("actor_role", sa.String(32), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_notifications_recipient_id", "notifications", ["recipient_id"])

    op.create_table(
        "relation_rules",
        sa.Column("tenant_id", sa.String(32), primary_key=True),
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("entity_type", sa.String(32), nullable=False, server_default="*"),
        sa.Column("changed_fields", sa.JSON, nullable=False),
        sa.Column("affects", sa.JSON, nullable=False),
        *_timestamps(),
    )


def downgrade() -> None:
    op.drop_table("relation_rules")
    op.drop_index("ix_notifications_recipient_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_table("change_events")
    op.drop_table("read_views")
    op.drop_index("ix_work_queue_jobs_next_attempt_at", table_name="work_queue_jobs")
    op.drop_index("ix_work_queue_jobs_tenant_event", table_name="work_queue_jobs")
    op.drop_index("ix_work_queue_jobs_due", table_name="work_queue_jobs")
    op.drop_table("work_queue_jobs")
    op.drop_table("outbox_deliveries")
    op.drop_index("ix_outbox_events_next_attempt_at", table_name="outbox_events")
    op.drop_index("ix_outbox_events_tenant_id", table_name="outbox_events")
    op.drop_index("ix_outbox_events_due", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_table("audit_chain_heads")
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_idempotency_keys_expires_at", table_name="idempotency_keys")
    op.drop_index("ix_idempotency_keys_status", table_name="idempotency_keys")
    op.drop_table("idempotency_keys")
    op.drop_index("ix_entity_documents_tenant_type", table_name="entity_documents")
    op.drop_table("entity_documents")
    sa.Enum(name="job_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="outbox_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="idempotency_status").drop(op.get_bind(), checkfirst=True)
