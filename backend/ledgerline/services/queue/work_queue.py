"""
Work queue for read-view rebuild jobs.

Jobs are keyed deterministically by ``(event_id, view_name, dedupe_key,
nonce)``, so enqueueing the same logical job twice before it is claimed
leaves one row. Replays add a random nonce to force a fresh job.

Processing mirrors the outbox relay: claim due READY/FAILED jobs with a
conditional update, run the handler outside the claim transaction, then
mark DONE, or FAILED with capped exponential backoff, or DEAD once the
attempt ceiling is reached.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.core.canonical import isoformat, sha1_hex, utcnow
from ledgerline.core.metrics import work_queue_jobs_total
from ledgerline.db.models.work_queue import JobStatus, WorkQueueJob
from ledgerline.db.store import DocumentStore
from ledgerline.services import retry
from ledgerline.services.projections.views import rebuild_rank, rebuild_view

_log = structlog.get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 6
DEFAULT_BATCH_SIZE = 100
DEFAULT_LEASE_SECONDS = 300
DEFAULT_REPLAY_VIEWS = ("alerts",)

_CLAIMABLE = (JobStatus.READY, JobStatus.FAILED)

JobHandler = Callable[[WorkQueueJob], Awaitable[dict[str, Any] | None]]


def build_job_id(event_id: str, view_name: str, dedupe_key: str, nonce: str = "") -> str:
    return "wq_" + sha1_hex(f"{event_id}|{view_name}|{dedupe_key}|{nonce}")[:16]


def default_dedupe_key(
    tenant_id: str, view_name: str, entity_type: str, entity_id: str, version: int | None = None
) -> str:
    key = f"{tenant_id}:{view_name}:{entity_type}:{entity_id}"
    return f"{key}:v{version}" if version is not None else key


def job_to_dict(job: WorkQueueJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "tenantId": job.tenant_id,
        "eventId": job.event_id,
        "entityType": job.entity_type,
        "entityId": job.entity_id,
        "viewName": job.view_name,
        "dedupeKey": job.dedupe_key,
        "payload": job.payload,
        "status": job.status.value,
        "attempts": job.attempts,
        "nextAttemptAt": isoformat(job.next_attempt_at),
        "processingStartedAt": isoformat(job.processing_started_at),
        "processedAt": isoformat(job.processed_at),
        "lastError": job.last_error,
        "lastResult": job.last_result,
        "createdAt": isoformat(job.created_at),
        "updatedAt": isoformat(job.updated_at),
    }


def _total_items(view: dict[str, Any]) -> int | None:
    for key in ("items", "projects", "members"):
        if isinstance(view.get(key), list):
            return len(view[key])
    return None


class WorkQueue:
    """Deduplicated view-rebuild jobs with claim based processing."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
    ) -> None:
        self._store = store
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds

    # ── Enqueue ────────────────────────────────────────────────────────── #

    @staticmethod
    def build_job(
        *,
        tenant_id: str,
        event_id: str,
        entity_type: str,
        entity_id: str,
        view_name: str,
        version: int | None = None,
        dedupe_key: str | None = None,
        payload: dict[str, Any] | None = None,
        nonce: str = "",
        now: datetime | None = None,
    ) -> WorkQueueJob:
        at = now or utcnow()
        key = dedupe_key or default_dedupe_key(tenant_id, view_name, entity_type, entity_id, version)
        return WorkQueueJob(
            id=build_job_id(event_id, view_name, key, nonce),
            tenant_id=tenant_id,
            event_id=event_id,
            entity_type=entity_type,
            entity_id=entity_id,
            view_name=view_name,
            dedupe_key=key,
            payload=payload or {},
            status=JobStatus.READY,
            attempts=0,
            next_attempt_at=at,
            created_at=at,
            updated_at=at,
        )

    async def enqueue_in_session(self, session: AsyncSession, jobs: Iterable[WorkQueueJob]) -> list[str]:
        """First write wins: ids that already exist are left untouched."""
        created: list[str] = []
        for job in jobs:
            if job.id in created or await session.get(WorkQueueJob, job.id) is not None:
                continue
            session.add(job)
            created.append(job.id)
        await session.flush()
        return created

    async def enqueue(self, jobs: Sequence[WorkQueueJob]) -> list[str]:
        async def _enqueue(session: AsyncSession) -> list[str]:
            return await self.enqueue_in_session(session, jobs)

        created = await self._store.run_transaction(_enqueue, name="work_queue_enqueue")
        _log.info("work_queue_enqueued", requested=len(jobs), created=len(created))
        return created

    async def enqueue_replay(
        self,
        *,
        tenant_id: str,
        event_id: str,
        entity_type: str,
        entity_id: str,
        views: Sequence[str],
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Fresh jobs for ``views`` even when identical jobs already ran."""
        at = now or utcnow()
        jobs: list[WorkQueueJob] = []
        for view_name in views or DEFAULT_REPLAY_VIEWS:
            nonce = f"replay_{uuid.uuid4().hex[:8]}"
            jobs.append(
                self.build_job(
                    tenant_id=tenant_id,
                    event_id=event_id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    view_name=view_name,
                    dedupe_key=f"{tenant_id}:{view_name}:{entity_type}:{entity_id}:{event_id}:{nonce}",
                    payload={"replay": True},
                    nonce=nonce,
                    now=at,
                )
            )
        await self.enqueue(jobs)
        return [{"jobId": job.id, "viewName": job.view_name, "dedupeKey": job.dedupe_key} for job in jobs]

    # ── Inspection ─────────────────────────────────────────────────────── #

    async def list_jobs(
        self,
        tenant_id: str,
        *,
        status: JobStatus | None = None,
        event_id: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        stmt = select(WorkQueueJob).where(WorkQueueJob.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(WorkQueueJob.status == status)
        if event_id:
            stmt = stmt.where(WorkQueueJob.event_id == event_id)
        stmt = stmt.order_by(WorkQueueJob.created_at.desc()).limit(retry.clamp(limit, 1, 500, 50))
        async with self._store.session() as session:
            return [job_to_dict(job) for job in (await session.execute(stmt)).scalars().all()]

    # ── Processing ─────────────────────────────────────────────────────── #

    async def rebuild(self, job: WorkQueueJob) -> dict[str, Any]:
        """Default handler: full recompute of the job's read-view."""
        at = utcnow()

        async def _rebuild(session: AsyncSession) -> dict[str, Any]:
            return await rebuild_view(session, job.tenant_id, job.view_name, at)

        view = await self._store.run_transaction(_rebuild, name=f"rebuild_{job.view_name}")
        return {"view": job.view_name, "updatedAt": view.get("updatedAt"), "totalItems": _total_items(view)}

    async def _claim(self, job_id: str, now: datetime) -> WorkQueueJob | None:
        async def _claim_fn(session: AsyncSession) -> WorkQueueJob | None:
            won = await retry.claim(
                session,
                WorkQueueJob,
                job_id,
                claimable=_CLAIMABLE,
                processing=JobStatus.PROCESSING,
                now=now,
            )
            return await session.get(WorkQueueJob, job_id) if won else None

        return await self._store.run_transaction(_claim_fn, name="work_queue_claim")

    async def process_batch(
        self,
        *,
        limit: int | None = None,
        max_attempts: int | None = None,
        now: datetime | None = None,
        tenant_id: str | None = None,
        event_id: str | None = None,
        handler: JobHandler | None = None,
    ) -> dict[str, Any]:
        at = now or utcnow()
        safe_limit = retry.clamp(limit if limit is not None else self.batch_size, 1, 500, self.batch_size)
        ceiling = retry.clamp(
            max_attempts if max_attempts is not None else self.max_attempts, 1, 50, self.max_attempts
        )
        run = handler or self.rebuild
        counters = retry.BatchCounters(at=at)

        async def _prepare(session: AsyncSession) -> tuple[int, list[str]]:
            reclaimed = await retry.reclaim_stale(
                session,
                WorkQueueJob,
                processing=JobStatus.PROCESSING,
                failed=JobStatus.FAILED,
                dead=JobStatus.DEAD,
                lease_seconds=self.lease_seconds,
                max_attempts=ceiling,
                now=at,
            )
            criteria = []
            if tenant_id:
                criteria.append(WorkQueueJob.tenant_id == tenant_id)
            if event_id:
                criteria.append(WorkQueueJob.event_id == event_id)
            ids = await retry.due_ids(
                session, WorkQueueJob, statuses=_CLAIMABLE, now=at, limit=safe_limit, criteria=criteria
            )
            rows = await session.execute(
                select(WorkQueueJob.id, WorkQueueJob.view_name).where(WorkQueueJob.id.in_(ids))
            )
            views = dict(rows.all())
            return reclaimed, sorted(ids, key=lambda job_id: rebuild_rank(views.get(job_id, "")))

        counters.reclaimed, due = await self._store.run_transaction(_prepare, name="work_queue_scan")
        counters.scanned = len(due)
        if counters.reclaimed:
            _log.warning("work_queue_jobs_reclaimed", count=counters.reclaimed)

        for job_id in due[:safe_limit]:
            job = await self._claim(job_id, at)
            if job is None:
                continue
            counters.processed += 1
            log = _log.bind(job_id=job.id, tenant_id=job.tenant_id, view=job.view_name, attempts=job.attempts)
            try:
                result = await run(job)
            except Exception as exc:  # noqa: BLE001
                counters.failed += 1

                async def _fail(session: AsyncSession, job: WorkQueueJob = job, exc: Exception = exc) -> bool:
                    return await retry.mark_failed(
                        session,
                        WorkQueueJob,
                        job.id,
                        attempts=job.attempts,
                        max_attempts=ceiling,
                        processing=JobStatus.PROCESSING,
                        failed=JobStatus.FAILED,
                        dead=JobStatus.DEAD,
                        now=at,
                        error=exc,
                    )

                if await self._store.run_transaction(_fail, name="work_queue_fail"):
                    counters.dead += 1
                    work_queue_jobs_total.labels(view=job.view_name, outcome="dead").inc()
                    log.error("work_queue_job_dead", error=str(exc))
                else:
                    work_queue_jobs_total.labels(view=job.view_name, outcome="failed").inc()
                    log.warning("work_queue_job_failed", error=str(exc))
                continue

            async def _done(
                session: AsyncSession, job: WorkQueueJob = job, result: dict[str, Any] | None = result
            ) -> bool:
                return await retry.mark_done(
                    session,
                    WorkQueueJob,
                    job.id,
                    processing=JobStatus.PROCESSING,
                    done=JobStatus.DONE,
                    now=at,
                    last_result=result,
                )

            if not await self._store.run_transaction(_done, name="work_queue_done"):
                work_queue_jobs_total.labels(view=job.view_name, outcome="claim_lost").inc()
                log.warning("work_queue_claim_lost")
                continue
            counters.succeeded += 1
            work_queue_jobs_total.labels(view=job.view_name, outcome="done").inc()
            log.info("work_queue_job_done")

        summary = counters.to_dict()
        _log.info("work_queue_batch_done", **summary)
        return summary
