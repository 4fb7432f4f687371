"""
Versioned entity document model.

Projects, ledgers, transactions, members, comments and evidences share one
table keyed by ``(tenant_id, entity_type, id)``. Domain fields live in the
JSON ``data`` column; ``version`` is promoted so the ORM can use it as the
optimistic-concurrency column. Updates are issued as
``UPDATE ... WHERE version = <read version>`` and a lost race surfaces as
``StaleDataError`` instead of a silent overwrite.
"""

from __future__ import annotations

from sqlalchemy import Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ledgerline.db.base import Base, TimestampMixin


class EntityDocument(Base, TimestampMixin):
    """One entity document of one tenant."""

    __tablename__ = "entity_documents"
    __table_args__ = (Index("ix_entity_documents_tenant_type", "tenant_id", "entity_type"),)

    tenant_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(32), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    data: Mapped[dict] = mapped_column(nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    def __repr__(self) -> str:
        return f"<EntityDocument {self.entity_type}/{self.id} v{self.version}>"
