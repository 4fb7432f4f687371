"""
Service wiring.

``build_components`` is called once per process (API lifespan or worker
entry point) and the result is passed explicitly to whoever needs it.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ledgerline.config.settings import Settings
from ledgerline.db.session import build_engine, build_session_factory
from ledgerline.db.store import DocumentStore
from ledgerline.services.audit.ledger import AuditChainLedger
from ledgerline.services.documents.store import VersionedDocumentStore
from ledgerline.services.idempotency.guard import IdempotencyGuard
from ledgerline.services.outbox.relay import OutboxRelay
from ledgerline.services.pii.protector import PiiProtector, build_pii_protector
from ledgerline.services.policy.rbac import RolePolicy, load_role_policy
from ledgerline.services.queue.relation_rules import RelationRuleResolver, load_rules_file
from ledgerline.services.queue.work_queue import WorkQueue


@dataclass
class Components:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    store: DocumentStore
    documents: VersionedDocumentStore
    guard: IdempotencyGuard
    ledger: AuditChainLedger
    pii: PiiProtector
    policy: RolePolicy
    resolver: RelationRuleResolver
    work_queue: WorkQueue
    relay: OutboxRelay

    async def dispose(self) -> None:
        await self.engine.dispose()


def build_components(settings: Settings, engine: AsyncEngine | None = None) -> Components:
    """Load policies eagerly and wire every service to one session factory."""
    engine = engine or build_engine(settings)
    session_factory = build_session_factory(engine)
    store = DocumentStore(session_factory, max_attempts=settings.db_transaction_attempts)

    pii_key = settings.pii_encryption_key.get_secret_value() if settings.pii_encryption_key else None
    pii = build_pii_protector(pii_key)
    resolver = RelationRuleResolver(load_rules_file(settings.relation_rules_path))
    work_queue = WorkQueue(
        store,
        max_attempts=settings.work_queue_max_attempts,
        batch_size=settings.work_queue_batch_size,
        lease_seconds=settings.claim_lease_seconds,
    )
    relay = OutboxRelay(
        store,
        work_queue,
        resolver,
        max_attempts=settings.outbox_max_attempts,
        batch_size=settings.outbox_batch_size,
        lease_seconds=settings.claim_lease_seconds,
    )
    return Components(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=store,
        documents=VersionedDocumentStore(store),
        guard=IdempotencyGuard(store, ttl_seconds=settings.idempotency_ttl_seconds),
        ledger=AuditChainLedger(store, pii),
        pii=pii,
        policy=load_role_policy(settings.rbac_policy_path),
        resolver=resolver,
        work_queue=work_queue,
        relay=relay,
    )
