"""Unit tests for ledgerline.services.retry and the transaction runner."""
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from ledgerline.core.errors import NotFoundError, TransactionConflictError
from ledgerline.db.store import DocumentStore, is_contention_error
from ledgerline.services.retry import RETRY_CAP_SECONDS, clamp, retry_delay_seconds


# ─── Backoff ──────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    ("attempts", "delay"),
    [(0, 1), (1, 2), (2, 4), (5, 32), (8, 256), (9, 256), (40, 256)],
)
def test_retry_delay_is_capped_exponential(attempts, delay):
    assert retry_delay_seconds(attempts) == delay
    assert retry_delay_seconds(attempts) <= RETRY_CAP_SECONDS


def test_clamp():
    assert clamp("7", 1, 10, 5) == 7
    assert clamp(None, 1, 10, 5) == 5
    assert clamp("abc", 1, 10, 5) == 5
    assert clamp(0, 1, 10, 5) == 1
    assert clamp(99, 1, 10, 5) == 10


# ─── Contention classification ────────────────────────────────────────────────

def _operational(message):
    return OperationalError("UPDATE x", {}, Exception(message))


def test_contention_errors_are_recognised():
    assert is_contention_error(IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed")))
    assert is_contention_error(_operational("database is locked"))
    assert is_contention_error(_operational("could not serialize access due to concurrent update"))
    assert not is_contention_error(_operational("no such table: foo"))
    assert not is_contention_error(ValueError("x"))


# ─── run_transaction ──────────────────────────────────────────────────────────

async def test_run_transaction_retries_then_succeeds(components):
    store = DocumentStore(components.session_factory, max_attempts=3, retry_base_delay=0)
    calls = []

    async def flaky(session):
        calls.append(1)
        if len(calls) < 3:
            raise _operational("database is locked")
        return "ok"

    assert await store.run_transaction(flaky) == "ok"
    assert len(calls) == 3


async def test_run_transaction_gives_up_with_conflict(components):
    store = DocumentStore(components.session_factory, max_attempts=2, retry_base_delay=0)

    async def always_locked(session):
        raise _operational("database is locked")

    with pytest.raises(TransactionConflictError) as info:
        await store.run_transaction(always_locked)
    assert info.value.detail == {"attempts": 2}


async def test_domain_errors_are_not_retried(components):
    calls = []

    async def missing(session):
        calls.append(1)
        raise NotFoundError("Project", "p1")

    with pytest.raises(NotFoundError):
        await components.store.run_transaction(missing)
    assert len(calls) == 1


async def test_non_contention_operational_error_propagates(components):
    async def broken(session):
        raise _operational("no such table: foo")

    with pytest.raises(OperationalError):
        await components.store.run_transaction(broken)
