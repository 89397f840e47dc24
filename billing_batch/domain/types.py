"""
billing_batch.domain.types -- Pure frozen dataclasses for scheduled invoicing.

ZERO I/O.  Frozen dataclasses with enum status fields.

Invariants enforced:
    - All DTOs are frozen dataclasses (immutable).
    - InvoicingJob carries an idempotency_key: one job per trigger,
      organization and business day.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class InvoicingJobStatus(str, Enum):
    """Job-level lifecycle status."""

    PENDING = "pending"  # Created, not yet started
    RUNNING = "running"  # Invoicing run in progress
    COMPLETED = "completed"  # No item failed
    PARTIALLY_COMPLETED = "partially_completed"  # Some items failed
    FAILED = "failed"  # Run crashed, or every item failed

    @property
    def is_finished(self) -> bool:
        return self in (
            InvoicingJobStatus.COMPLETED,
            InvoicingJobStatus.PARTIALLY_COMPLETED,
            InvoicingJobStatus.FAILED,
        )


class ScheduleFrequency(str, Enum):
    """Recurrence frequency for billing schedules."""

    HOURLY = "hourly"
    DAILY = "daily"
    ON_DEMAND = "on_demand"  # Manual trigger only


@dataclass(frozen=True)
class InvoicingJob:
    """Immutable snapshot of one organization's invoicing run record."""

    job_id: UUID
    organization_id: UUID
    as_of: datetime
    trigger: str  # "cli", "scheduler", "schedule-nightly", ...
    status: InvoicingJobStatus
    idempotency_key: str
    attempts: int = 0
    invoices_created: int = 0
    invoices_updated: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    result_summary: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_summary: str | None = None
    seq: int | None = None


@dataclass(frozen=True)
class BillingSchedule:
    """Immutable snapshot of a recurring invoicing schedule.

    ``organization_id`` of None means every organization with leases.
    ``should_fire`` over this DTO is pure.
    """

    schedule_id: UUID
    name: str
    frequency: ScheduleFrequency
    organization_id: UUID | None = None
    run_at_hour: int | None = None  # UTC hour for DAILY schedules
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_run_status: InvoicingJobStatus | None = None
    is_active: bool = True
