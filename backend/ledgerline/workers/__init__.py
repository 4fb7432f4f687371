"""Background worker processes: outbox relay, work queue and idempotency cleanup."""
