"""
Claim / retry / dead-letter mechanics shared by the outbox and work queue.

Both tables carry ``status``, ``attempts``, ``next_attempt_at`` and
``processing_started_at``. A claim is a conditional UPDATE that only
succeeds while the row is still claimable and due, so two workers racing
for one row cannot both win. Failures are rescheduled with capped
exponential backoff until ``max_attempts``, after which the row is dead.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.core.canonical import isoformat

RETRY_CAP_SECONDS = 300
LEASE_EXPIRED_ERROR = "claim_lease_expired"


def retry_delay_seconds(attempts: int) -> int:
    return min(RETRY_CAP_SECONDS, 2 ** min(max(attempts, 0), 8))


def clamp(value: Any, low: int, high: int, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = default
    return min(max(number, low), high)


@dataclass
class BatchCounters:
    at: datetime
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead: int = 0
    scanned: int = 0
    reclaimed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "dead": self.dead,
            "scanned": self.scanned,
            "reclaimed": self.reclaimed,
            "at": isoformat(self.at),
        }


async def claim(
    session: AsyncSession,
    model: Any,
    item_id: str,
    *,
    claimable: tuple[StrEnum, ...],
    processing: StrEnum,
    now: datetime,
) -> bool:
    """Move one due row to ``processing`` and bump its attempts; False if lost."""
    result = await session.execute(
        update(model)
        .where(
            model.id == item_id,
            model.status.in_(claimable),
            model.next_attempt_at <= now,
        )
        .values(
            status=processing,
            attempts=model.attempts + 1,
            processing_started_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_done(
    session: AsyncSession,
    model: Any,
    item_id: str,
    *,
    processing: StrEnum,
    done: StrEnum,
    now: datetime,
    **extra: Any,
) -> bool:
    result = await session.execute(
        update(model)
        .where(model.id == item_id, model.status == processing)
        .values(status=done, processed_at=now, updated_at=now, last_error=None, **extra)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_failed(
    session: AsyncSession,
    model: Any,
    item_id: str,
    *,
    attempts: int,
    max_attempts: int,
    processing: StrEnum,
    failed: StrEnum,
    dead: StrEnum,
    now: datetime,
    error: BaseException | str,
) -> bool:
    """Reschedule with backoff, or dead-letter once attempts are exhausted. Returns is_dead."""
    is_dead = attempts >= max_attempts
    await session.execute(
        update(model)
        .where(model.id == item_id, model.status == processing)
        .values(
            status=dead if is_dead else failed,
            next_attempt_at=now + timedelta(seconds=retry_delay_seconds(attempts)),
            updated_at=now,
            last_error={"message": str(error), "at": isoformat(now)},
        )
        .execution_options(synchronize_session=False)
    )
    return is_dead


async def reclaim_stale(
    session: AsyncSession,
    model: Any,
    *,
    processing: StrEnum,
    failed: StrEnum,
    dead: StrEnum,
    lease_seconds: int,
    max_attempts: int,
    now: datetime,
) -> int:
    """Return rows stuck in ``processing`` past the lease to the retry path."""
    cutoff = now - timedelta(seconds=lease_seconds)
    stale = (
        await session.execute(
            select(model.id, model.attempts).where(
                model.status == processing,
                model.processing_started_at <= cutoff,
            )
        )
    ).all()
    error = {"message": LEASE_EXPIRED_ERROR, "at": isoformat(now)}
    for item_id, attempts in stale:
        await session.execute(
            update(model)
            .where(model.id == item_id, model.status == processing)
            .values(
                status=dead if attempts >= max_attempts else failed,
                next_attempt_at=now,
                updated_at=now,
                last_error=error,
            )
            .execution_options(synchronize_session=False)
        )
    return len(stale)


async def due_ids(
    session: AsyncSession,
    model: Any,
    *,
    statuses: tuple[StrEnum, ...],
    now: datetime,
    limit: int,
    criteria: Sequence[Any] = (),
) -> list[str]:
    """Due candidate ids, queried per status and deduplicated, oldest due first."""
    seen: dict[str, datetime] = {}
    for status in statuses:
        stmt = select(model.id, model.next_attempt_at).where(
            model.status == status, model.next_attempt_at <= now
        )
        stmt = stmt.where(*criteria).order_by(model.next_attempt_at.asc()).limit(limit)
        for item_id, next_attempt_at in (await session.execute(stmt)).all():
            seen.setdefault(item_id, next_attempt_at)
    return sorted(seen, key=lambda item_id: seen[item_id])
