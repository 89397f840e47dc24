"""
ORM models for scheduled invoicing persistence.

Contract:
    InvoicingJobModel and BillingScheduleModel persist invoicing run records
    and recurring schedules.  Each has ``to_dto()`` / ``from_dto()``.

Architecture: billing_batch/models.  Imports from billing_kernel.db.base only.

Invariants enforced:
    - ``idempotency_key`` is UNIQUE on InvoicingJobModel.
    - Schedule ``name`` is UNIQUE on BillingScheduleModel.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from billing_batch.domain.types import BillingSchedule, InvoicingJob


class InvoicingJobModel(TrackedBase):
    """Persistent record of one organization's invoicing run."""

    __tablename__ = "invoicing_jobs"

    __table_args__ = (
        Index("ix_invoicing_jobs_status", "status"),
        Index("ix_invoicing_jobs_org_as_of", "organization_id", "as_of"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    as_of: Mapped[datetime]
    trigger: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(
        String(200), nullable=False, unique=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    invoices_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    invoices_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    result_summary: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    seq: Mapped[int | None] = mapped_column(nullable=True, unique=True)
    started_at: Mapped[datetime | None]
    completed_at: Mapped[datetime | None]
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self) -> InvoicingJob:
        from billing_batch.domain.types import InvoicingJob, InvoicingJobStatus

        return InvoicingJob(
            job_id=self.id,
            organization_id=self.organization_id,
            as_of=self.as_of,
            trigger=self.trigger,
            status=InvoicingJobStatus(self.status),
            idempotency_key=self.idempotency_key,
            attempts=self.attempts,
            invoices_created=self.invoices_created,
            invoices_updated=self.invoices_updated,
            items_skipped=self.items_skipped,
            items_failed=self.items_failed,
            result_summary=self.result_summary or {},
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            error_summary=self.error_summary,
            seq=self.seq,
        )

    @classmethod
    def from_dto(cls, dto: InvoicingJob, created_by_id: UUID | None = None) -> InvoicingJobModel:
        return cls(
            id=dto.job_id,
            organization_id=dto.organization_id,
            as_of=dto.as_of,
            trigger=dto.trigger,
            status=dto.status.value,
            idempotency_key=dto.idempotency_key,
            attempts=dto.attempts,
            invoices_created=dto.invoices_created,
            invoices_updated=dto.invoices_updated,
            items_skipped=dto.items_skipped,
            items_failed=dto.items_failed,
            result_summary=dto.result_summary or None,
            seq=dto.seq,
            started_at=dto.started_at,
            completed_at=dto.completed_at,
            error_summary=dto.error_summary,
            created_by_id=created_by_id,
        )


class BillingScheduleModel(TrackedBase):
    """Recurring invoicing schedule."""

    __tablename__ = "billing_schedules"

    __table_args__ = (
        Index("ix_billing_schedules_active", "is_active"),
        Index("ix_billing_schedules_next_run", "next_run_at"),
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    frequency: Mapped[str] = mapped_column(String(50), nullable=False)
    organization_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    run_at_hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_run_at: Mapped[datetime | None]
    last_run_at: Mapped[datetime | None]
    last_run_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def to_dto(self) -> BillingSchedule:
        from billing_batch.domain.types import (
            BillingSchedule,
            InvoicingJobStatus,
            ScheduleFrequency,
        )

        return BillingSchedule(
            schedule_id=self.id,
            name=self.name,
            frequency=ScheduleFrequency(self.frequency),
            organization_id=self.organization_id,
            run_at_hour=self.run_at_hour,
            next_run_at=self.next_run_at,
            last_run_at=self.last_run_at,
            last_run_status=(
                InvoicingJobStatus(self.last_run_status)
                if self.last_run_status
                else None
            ),
            is_active=self.is_active,
        )

    @classmethod
    def from_dto(cls, dto: BillingSchedule, created_by_id: UUID | None = None) -> BillingScheduleModel:
        return cls(
            id=dto.schedule_id,
            name=dto.name,
            frequency=dto.frequency.value,
            organization_id=dto.organization_id,
            run_at_hour=dto.run_at_hour,
            next_run_at=dto.next_run_at,
            last_run_at=dto.last_run_at,
            last_run_status=(
                dto.last_run_status.value if dto.last_run_status else None
            ),
            is_active=dto.is_active,
            created_by_id=created_by_id,
        )
