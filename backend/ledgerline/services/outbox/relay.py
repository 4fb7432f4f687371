"""
Outbox relay.

Outbox events are written by the mutation that caused them, in the same
transaction. The relay is a pull loop over due PENDING/FAILED events:

  1. reclaim events stuck in PROCESSING past the claim lease
  2. claim each due event (conditional update, attempts + 1)
  3. run the delivery handler outside the claim transaction
  4. mark DONE, or FAILED with backoff, or DEAD at the attempt ceiling

Delivery is at-least-once. A crash between 3 and 4 delivers again, so
the default handler only ever creates rows with deterministic ids.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.core.canonical import timestamped_id, utcnow
from ledgerline.core.metrics import outbox_events_total
from ledgerline.db.models.outbox import OutboxDelivery, OutboxEvent, OutboxStatus
from ledgerline.db.store import DocumentStore
from ledgerline.services import retry
from ledgerline.services.outbox.notifications import create_notifications_for_event
from ledgerline.services.queue.relation_rules import RelationRuleResolver
from ledgerline.services.queue.work_queue import WorkQueue

_log = structlog.get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 8
DEFAULT_BATCH_SIZE = 50
DEFAULT_LEASE_SECONDS = 300

_CLAIMABLE = (OutboxStatus.PENDING, OutboxStatus.FAILED)

EventHandler = Callable[[OutboxEvent], Awaitable[Any]]


def build_event(
    *,
    tenant_id: str,
    event_type: str,
    entity_type: str,
    entity_id: str,
    payload: dict[str, Any] | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
    event_id: str | None = None,
) -> OutboxEvent:
    """A PENDING event due immediately; add it in the mutation's transaction."""
    at = now or utcnow()
    return OutboxEvent(
        id=event_id or timestamped_id("ob", at),
        tenant_id=tenant_id,
        request_id=request_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        status=OutboxStatus.PENDING,
        attempts=0,
        next_attempt_at=at,
        created_at=at,
        updated_at=at,
    )


class OutboxRelay:
    """
    Delivers committed outbox events.

    Usage:
        relay = OutboxRelay(store, work_queue, resolver)
        counters = await relay.process_batch(limit=50)
    """

    def __init__(
        self,
        store: DocumentStore,
        work_queue: WorkQueue,
        resolver: RelationRuleResolver,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
    ) -> None:
        self._store = store
        self._work_queue = work_queue
        self._resolver = resolver
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds

    # ── Default delivery ───────────────────────────────────────────────── #

    async def deliver(self, event: OutboxEvent) -> dict[str, Any]:
        """Receipt, notifications and view jobs for one event, in one transaction."""
        at = utcnow()

        async def _deliver(session: AsyncSession) -> dict[str, Any]:
            if await session.get(OutboxDelivery, (event.tenant_id, event.id)) is None:
                session.add(
                    OutboxDelivery(
                        tenant_id=event.tenant_id,
                        id=event.id,
                        event_type=event.event_type,
                        entity_type=event.entity_type,
                        entity_id=event.entity_id,
                        payload=event.payload,
                        request_id=event.request_id,
                        delivered_at=at,
                    )
                )
                await session.flush()

            notifications = await create_notifications_for_event(session, event, at)

            payload = event.payload or {}
            changed_fields = payload.get("changedFields") or []
            views = await self._resolver.affected_views(
                session, event.tenant_id, event.entity_type, changed_fields
            )
            jobs = [
                self._work_queue.build_job(
                    tenant_id=event.tenant_id,
                    event_id=event.id,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    view_name=view_name,
                    version=payload.get("version"),
                    payload={"eventType": event.event_type},
                    now=at,
                )
                for view_name in views
            ]
            created = await self._work_queue.enqueue_in_session(session, jobs)
            return {"notifications": notifications, "jobs": created}

        return await self._store.run_transaction(_deliver, name="outbox_deliver")

    # ── Processing ─────────────────────────────────────────────────────── #

    async def _claim(self, event_id: str, now: datetime) -> OutboxEvent | None:
        async def _claim_fn(session: AsyncSession) -> OutboxEvent | None:
            won = await retry.claim(
                session,
                OutboxEvent,
                event_id,
                claimable=_CLAIMABLE,
                processing=OutboxStatus.PROCESSING,
                now=now,
            )
            return await session.get(OutboxEvent, event_id) if won else None

        return await self._store.run_transaction(_claim_fn, name="outbox_claim")

    async def process_batch(
        self,
        *,
        limit: int | None = None,
        max_attempts: int | None = None,
        now: datetime | None = None,
        tenant_id: str | None = None,
        event_id: str | None = None,
        handler: EventHandler | None = None,
    ) -> dict[str, Any]:
        at = now or utcnow()
        safe_limit = retry.clamp(limit if limit is not None else self.batch_size, 1, 500, self.batch_size)
        ceiling = retry.clamp(
            max_attempts if max_attempts is not None else self.max_attempts, 1, 50, self.max_attempts
        )
        deliver = handler or self.deliver
        counters = retry.BatchCounters(at=at)

        async def _prepare(session: AsyncSession) -> tuple[int, list[str]]:
            reclaimed = await retry.reclaim_stale(
                session,
                OutboxEvent,
                processing=OutboxStatus.PROCESSING,
                failed=OutboxStatus.FAILED,
                dead=OutboxStatus.DEAD,
                lease_seconds=self.lease_seconds,
                max_attempts=ceiling,
                now=at,
            )
            criteria = []
            if tenant_id:
                criteria.append(OutboxEvent.tenant_id == tenant_id)
            if event_id:
                criteria.append(OutboxEvent.id == event_id)
            ids = await retry.due_ids(
                session, OutboxEvent, statuses=_CLAIMABLE, now=at, limit=safe_limit, criteria=criteria
            )
            return reclaimed, ids

        counters.reclaimed, due = await self._store.run_transaction(_prepare, name="outbox_scan")
        counters.scanned = len(due)
        if counters.reclaimed:
            _log.warning("outbox_events_reclaimed", count=counters.reclaimed)

        for candidate in due[:safe_limit]:
            event = await self._claim(candidate, at)
            if event is None:
                continue
            counters.processed += 1
            log = _log.bind(
                event_id=event.id,
                tenant_id=event.tenant_id,
                event_type=event.event_type,
                attempts=event.attempts,
            )
            try:
                await deliver(event)
            except Exception as exc:  # noqa: BLE001
                counters.failed += 1

                async def _fail(session: AsyncSession, event: OutboxEvent = event, exc: Exception = exc) -> bool:
                    return await retry.mark_failed(
                        session,
                        OutboxEvent,
                        event.id,
                        attempts=event.attempts,
                        max_attempts=ceiling,
                        processing=OutboxStatus.PROCESSING,
                        failed=OutboxStatus.FAILED,
                        dead=OutboxStatus.DEAD,
                        now=at,
                        error=exc,
                    )

                if await self._store.run_transaction(_fail, name="outbox_fail"):
                    counters.dead += 1
                    outbox_events_total.labels(outcome="dead").inc()
                    log.error("outbox_event_dead", error=str(exc))
                else:
                    outbox_events_total.labels(outcome="failed").inc()
                    log.warning("outbox_event_failed", error=str(exc))
                continue

            async def _done(session: AsyncSession, event: OutboxEvent = event) -> bool:
                return await retry.mark_done(
                    session,
                    OutboxEvent,
                    event.id,
                    processing=OutboxStatus.PROCESSING,
                    done=OutboxStatus.DONE,
                    now=at,
                )

            if not await self._store.run_transaction(_done, name="outbox_done"):
                outbox_events_total.labels(outcome="claim_lost").inc()
                log.warning("outbox_claim_lost")
                continue
            counters.succeeded += 1
            outbox_events_total.labels(outcome="done").inc()
            log.info("outbox_event_done")

        summary = counters.to_dict()
        _log.info("outbox_batch_done", **summary)
        return summary
