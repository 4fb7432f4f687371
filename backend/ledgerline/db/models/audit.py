"""
Append-only audit ledger models.

Entries form a per-tenant hash chain: each entry records the SHA-256 hash
of the previous entry and its own hash over its canonical content. The
head pointer is the single serialization point for chain growth; its
``last_seq`` doubles as the optimistic-concurrency column, so two appends
that read the same head cannot both advance it.

The chain can be verified via AuditChainLedger.verify().
"""

from __future__ import annotations

from sqlalchemy import Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledgerline.db.base import Base, TenantScopedMixin, TimestampMixin


class AuditEntry(Base, TenantScopedMixin):
    """Single immutable audit entry."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        UniqueConstraint("tenant_id", "chain_seq", name="uq_audit_logs_tenant_seq"),
        Index("ix_audit_logs_entity", "tenant_id", "entity_type", "entity_id"),
    )

    chain_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)

    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    user_name: Mapped[str] = mapped_column(String(128), nullable=False)
    user_role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # Ciphertext only; plaintext e-mail is never stored
    user_email_enc: Mapped[str | None] = mapped_column(Text, nullable=True)

    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict | None] = mapped_column("metadata", nullable=True)
    # ISO-8601 text so the hashed value never depends on driver datetime handling
    timestamp: Mapped[str] = mapped_column(String(40), nullable=False)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
    hash_alg: Mapped[str] = mapped_column(String(16), nullable=False, default="sha256")

    def __repr__(self) -> str:
        return f"<AuditEntry {self.tenant_id}#{self.chain_seq} {self.action}>"


class AuditChainHead(Base, TimestampMixin):
    """Per-tenant chain head pointer: ``(last_seq, last_hash)``."""

    __tablename__ = "audit_chain_heads"

    tenant_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    last_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __mapper_args__ = {"version_id_col": last_seq, "version_id_generator": False}
