"""
billing_batch -- Scheduled invoicing runs.

Wraps the per-organization lease invoicing run in recorded, idempotent jobs
with per-organization SAVEPOINT isolation, plus an in-process polling
scheduler.

Architecture:
    billing_batch/ is a top-level package.  Nothing in billing_kernel/ or
    billing_modules/ imports from billing_batch (the kernel's
    create_tables() imports its ORM models lazily).
"""

from billing_batch.domain.types import (
    BillingSchedule,
    InvoicingJob,
    InvoicingJobStatus,
    ScheduleFrequency,
)
from billing_batch.services.runner import InvoicingJobRunner
from billing_batch.services.scheduler import InvoicingScheduler, upsert_schedule

__all__ = [
    "BillingSchedule",
    "InvoicingJob",
    "InvoicingJobRunner",
    "InvoicingJobStatus",
    "InvoicingScheduler",
    "ScheduleFrequency",
    "upsert_schedule",
]
