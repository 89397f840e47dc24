#!/usr/bin/env python3
"""
Run lease invoicing: late fees, then generation of due invoices.

Runs one organization (--org) or every organization with leases, records
each run as an invoicing job and prints a JSON summary to stdout.  Logs go
to stderr as JSON lines.

Usage:
    python3 scripts/run_invoicing.py [--org UUID] [--as-of ISO] [--config PATH]
                                     [--database-url URL] [--create-tables]

Examples:
    # Every organization, as of now
    python3 scripts/run_invoicing.py

    # One organization, backdated run against a local SQLite file
    python3 scripts/run_invoicing.py --org 6f1c... --as-of 2024-02-01 \\
        --database-url sqlite:///billing.db --create-tables

    # Run the configured schedules until interrupted
    python3 scripts/run_invoicing.py --serve

Exit codes:
    0  every item succeeded (or was skipped)
    1  at least one item or organization failed
    2  invalid arguments or configuration
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from uuid import UUID, uuid4

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run lease invoicing for one or all organizations.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--org",
        type=UUID,
        default=None,
        help="Organization UUID (default: every organization with leases).",
    )
    parser.add_argument(
        "--as-of",
        default=None,
        help="ISO date or datetime to bill as of (default: now, UTC). "
             "Naive values are taken as UTC.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Billing YAML config (default: $BILLING_CONFIG_PATH or built-in defaults).",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database URL (overrides config and $DATABASE_URL).",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before running.",
    )
    parser.add_argument(
        "--trigger",
        default="cli",
        help="Trigger recorded on the job and used in its idempotency key (default: cli).",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Sync schedules from config and run the scheduler until interrupted.",
    )
    parser.add_argument(
        "--tick-interval",
        type=int,
        default=60,
        help="Scheduler polling interval in seconds (with --serve).",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging.",
    )
    return parser.parse_args(argv)


def parse_as_of(value: str | None) -> datetime:
    """ISO date/datetime -> aware UTC datetime; None -> now."""
    if value is None:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _job_summary(job) -> dict:
    return {
        "job_id": str(job.job_id),
        "organization_id": str(job.organization_id),
        "status": job.status.value,
        "idempotency_key": job.idempotency_key,
        "invoices_created": job.invoices_created,
        "invoices_updated": job.invoices_updated,
        "items_skipped": job.items_skipped,
        "items_failed": job.items_failed,
        "error_summary": job.error_summary,
        "outcomes": job.result_summary.get("outcomes", []),
    }


def _sync_schedules(session, config) -> None:
    from billing_batch.domain.types import BillingSchedule, ScheduleFrequency
    from billing_batch.services.scheduler import upsert_schedule

    for definition in config.schedules:
        upsert_schedule(
            session,
            BillingSchedule(
                schedule_id=uuid4(),
                name=definition.name,
                frequency=ScheduleFrequency(definition.frequency),
                organization_id=(
                    UUID(definition.organization_id) if definition.organization_id else None
                ),
                run_at_hour=definition.run_at_hour,
                is_active=definition.is_active,
            ),
        )


def _serve(config, tick_interval: int) -> int:
    from billing_batch.services.runner import InvoicingJobRunner
    from billing_batch.services.scheduler import InvoicingScheduler
    from billing_kernel.db.engine import get_session_factory, session_scope
    from billing_kernel.domain.clock import SystemClock

    with session_scope() as session:
        _sync_schedules(session, config)

    clock = SystemClock()
    scheduler = InvoicingScheduler(
        session_factory=get_session_factory(),
        runner_factory=lambda s: InvoicingJobRunner(s, clock=clock, config=config.invoicing),
        clock=clock,
        tick_interval_seconds=tick_interval,
    )

    stopped = threading.Event()

    def _handle_signal(signum, frame):
        stopped.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start()
    stopped.wait()
    scheduler.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    from billing_batch.domain.types import InvoicingJobStatus
    from billing_batch.services.runner import InvoicingJobRunner
    from billing_config import get_active_config
    from billing_kernel.db.engine import create_tables, init_engine_from_url, session_scope
    from billing_kernel.domain.clock import SystemClock
    from billing_kernel.exceptions import ConfigurationError
    from billing_kernel.logging_config import configure_logging

    configure_logging(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = get_active_config(args.config)
        as_of = parse_as_of(args.as_of)
    except (ConfigurationError, FileNotFoundError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    init_engine_from_url(args.database_url or config.database_url)
    if args.create_tables:
        create_tables()

    if args.serve:
        return _serve(config, args.tick_interval)

    with session_scope() as session:
        runner = InvoicingJobRunner(session, clock=SystemClock(), config=config.invoicing)
        if args.org is not None:
            jobs = [runner.run_for_org(args.org, as_of, trigger=args.trigger)]
        else:
            jobs = runner.run_for_all_organizations(as_of, trigger=args.trigger)

    summary = {
        "as_of": as_of.isoformat(),
        "organizations": len(jobs),
        "invoices_created": sum(j.invoices_created for j in jobs),
        "invoices_updated": sum(j.invoices_updated for j in jobs),
        "items_skipped": sum(j.items_skipped for j in jobs),
        "items_failed": sum(j.items_failed for j in jobs),
        "jobs": [_job_summary(j) for j in jobs],
    }
    print(json.dumps(summary, indent=2))

    failed = summary["items_failed"] > 0 or any(
        j.status is InvoicingJobStatus.FAILED for j in jobs
    )
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
