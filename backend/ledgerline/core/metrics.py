"""Prometheus metrics."""

from prometheus_client import Counter, Histogram

# Outbox
outbox_events_total = Counter(
    "ledgerline_outbox_events_total",
    "Outbox events processed, by outcome",
    ["outcome"],
)

# Work queue
work_queue_jobs_total = Counter(
    "ledgerline_work_queue_jobs_total",
    "Work-queue jobs processed, by view and outcome",
    ["view", "outcome"],
)

# Idempotency
idempotency_begins_total = Counter(
    "ledgerline_idempotency_begins_total",
    "Idempotency guard decisions",
    ["mode"],
)

# Audit
audit_verifications_total = Counter(
    "ledgerline_audit_verifications_total",
    "Audit chain verifications, by result",
    ["result"],
)

# Workers
worker_pass_duration = Histogram(
    "ledgerline_worker_pass_duration_seconds",
    "Duration of one worker pass",
    ["worker"],
)
