"""
Polling worker process.

    python -m ledgerline.workers outbox
    python -m ledgerline.workers work-queue --once
    python -m ledgerline.workers idempotency-cleanup --interval 60

Each pass runs one batch, logs its counters and sleeps for the poll
interval. A failing pass is logged and the loop continues.
"""

from __future__ import annotations

import argparse
import asyncio

import structlog

from ledgerline.config.logging_config import bind_log_context, clear_log_context, configure_logging
from ledgerline.config.settings import load_settings
from ledgerline.schemas.workers import WorkerRunRequest
from ledgerline.services.container import Components, build_components
from ledgerline.workers.runner import WorkerKind, run_worker_pass

_log = structlog.get_logger("ledgerline.workers")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="ledgerline.workers", description="Run a Ledgerline worker")
    parser.add_argument("kind", choices=[k.value for k in WorkerKind], help="Worker to run")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--limit", type=int, default=None, help="Batch size override")
    parser.add_argument("--max-attempts", type=int, default=None, help="Attempt ceiling override")
    parser.add_argument("--tenant-id", default=None, help="Only process this tenant")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between passes")
    parser.add_argument("--dry-run", action="store_true", help="Cleanup only: count, do not delete")
    return parser.parse_args(argv)


async def run_loop(
    components: Components,
    kind: WorkerKind,
    params: WorkerRunRequest,
    *,
    once: bool,
    interval: float,
) -> None:
    passes = 0
    while True:
        passes += 1
        bind_log_context(worker=kind.value, worker_pass=passes)
        try:
            await run_worker_pass(components, kind, params)
        except Exception:
            _log.exception("worker_pass_failed", worker=kind.value)
        finally:
            clear_log_context()
        if once:
            return
        await asyncio.sleep(interval)


async def _main(args: argparse.Namespace) -> None:
    settings = load_settings()
    configure_logging(log_level=settings.log_level.value, json_logs=settings.log_json)
    kind = WorkerKind(args.kind)
    params = WorkerRunRequest(
        limit=args.limit,
        max_attempts=args.max_attempts,
        tenant_id=args.tenant_id,
        dry_run=args.dry_run,
    )
    components = build_components(settings)
    interval = args.interval or settings.worker_poll_interval_seconds
    _log.info("worker_starting", worker=kind.value, once=args.once, interval=interval)
    try:
        await run_loop(components, kind, params, once=args.once, interval=interval)
    finally:
        await components.dispose()
        _log.info("worker_stopped", worker=kind.value)


def main(argv: list[str] | None = None) -> None:
    try:
        asyncio.run(_main(_parse_args(argv)))
    except KeyboardInterrupt:
        _log.info("worker_interrupted")


if __name__ == "__main__":
    main()
