"""
InvoicingJobRunner -- idempotent, isolated invoicing runs per organization.

Contract:
    Wraps ``LeaseInvoicingService.run_lease_invoicing_for_org`` in a job
    record: submit (with idempotency), execute (SAVEPOINT per organization),
    query.  ``run_for_all_organizations`` is the multi-organization sweep a
    scheduler triggers.

Architecture: billing_batch/services.  Imports from billing_batch.domain,
    billing_batch.models, kernel services and the lease invoicing module.

Invariants enforced:
    - One job per idempotency key (trigger, organization, business day).
    - One organization's crash never stops the others: each run executes in
      its own SAVEPOINT and a failure is recorded on its job.
    - All timestamps come from the injected Clock.
    - Concurrency guard: the job row is locked (FOR UPDATE) before running.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    BatchIdempotencyError,
    InvoicingJobAlreadyRunError,
    InvoicingJobNotFoundError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.sequence_service import SequenceService
from billing_kernel.utils.idempotency import generate_idempotency_key
from billing_modules.lease_invoicing.config import InvoicingConfig
from billing_modules.lease_invoicing.models import InvoicingRunResult
from billing_modules.lease_invoicing.service import LeaseInvoicingService
from billing_modules.lease_invoicing.store import SqlInvoicingStore

from billing_batch.domain.types import InvoicingJob, InvoicingJobStatus
from billing_batch.models.batch import InvoicingJobModel

logger = get_logger("batch.runner")

ServiceFactory = Callable[[Session, Clock, InvoicingConfig], LeaseInvoicingService]


def _default_service_factory(
    session: Session, clock: Clock, config: InvoicingConfig,
) -> LeaseInvoicingService:
    return LeaseInvoicingService(session, clock=clock, config=config)


def job_status_for(result: InvoicingRunResult) -> InvoicingJobStatus:
    """COMPLETED when nothing failed, FAILED when nothing else happened."""
    if result.failed == 0:
        return InvoicingJobStatus.COMPLETED
    if result.created + result.updated + result.skipped == 0:
        return InvoicingJobStatus.FAILED
    return InvoicingJobStatus.PARTIALLY_COMPLETED


class InvoicingJobRunner:
    """Runs and records invoicing jobs.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT manage background threads -- that is the scheduler's job.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: InvoicingConfig | None = None,
        sequence_service: SequenceService | None = None,
        service_factory: ServiceFactory | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or InvoicingConfig.with_defaults()
        self._sequence = sequence_service or SequenceService(session)
        self._service_factory = service_factory or _default_service_factory

    # -------------------------------------------------------------------------
    # Submit
    # -------------------------------------------------------------------------

    def _find_by_key(self, idempotency_key: str) -> InvoicingJobModel | None:
        return self._session.execute(
            select(InvoicingJobModel).where(
                InvoicingJobModel.idempotency_key == idempotency_key,
            )
        ).scalar_one_or_none()

    def submit_job(
        self,
        organization_id: UUID,
        as_of: datetime,
        trigger: str = "manual",
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> InvoicingJob:
        """Create a PENDING job.

        Raises:
            BatchIdempotencyError: If the idempotency key is already used.
        """
        key = idempotency_key or generate_idempotency_key(trigger, organization_id, as_of)

        existing = self._find_by_key(key)
        if existing is not None:
            raise BatchIdempotencyError(key, str(existing.id))

        dto = InvoicingJob(
            job_id=uuid4(),
            organization_id=organization_id,
            as_of=as_of,
            trigger=trigger,
            status=InvoicingJobStatus.PENDING,
            idempotency_key=key,
            created_at=self._clock.now(),
            seq=self._sequence.next_value(SequenceService.INVOICING_JOB),
        )
        model = InvoicingJobModel.from_dto(dto, created_by_id=actor_id)
        model.created_at = dto.created_at
        self._session.add(model)
        self._session.flush()

        logger.info(
            "invoicing_job_submitted",
            extra={
                "job_id": str(dto.job_id),
                "organization_id": str(organization_id),
                "idempotency_key": key,
                "seq": dto.seq,
            },
        )
        return dto

    # -------------------------------------------------------------------------
    # Execute
    # -------------------------------------------------------------------------

    def execute_job(self, job_id: UUID) -> InvoicingJob:
        """Run a PENDING job inside its own SAVEPOINT.

        An exception escaping the invoicing run rolls back that run's writes
        and marks the job FAILED; it is not re-raised.

        Raises:
            InvoicingJobNotFoundError: If job_id does not exist.
            InvoicingJobAlreadyRunError: If the job is not PENDING.
        """
        start = time.monotonic()

        model = self._session.execute(
            select(InvoicingJobModel)
            .where(InvoicingJobModel.id == job_id)
            .with_for_update()
        ).scalar_one_or_none()

        if model is None:
            raise InvoicingJobNotFoundError(str(job_id))
        if model.status != InvoicingJobStatus.PENDING.value:
            raise InvoicingJobAlreadyRunError(str(job_id), model.status)

        model.status = InvoicingJobStatus.RUNNING.value
        model.started_at = self._clock.now()
        model.attempts += 1
        self._session.flush()

        with LogContext.bind(job_id=job_id, organization_id=model.organization_id):
            try:
                with self._session.begin_nested():
                    service = self._service_factory(self._session, self._clock, self._config)
                    result = service.run_lease_invoicing_for_org(model.organization_id, model.as_of)
            except Exception as exc:
                logger.error("invoicing_job_failed", exc_info=True)
                model.status = InvoicingJobStatus.FAILED.value
                model.error_summary = f"{type(exc).__name__}: {exc}"
            else:
                model.status = job_status_for(result).value
                model.invoices_created = result.created
                model.invoices_updated = result.updated
                model.items_skipped = result.skipped
                model.items_failed = result.failed
                model.result_summary = result.to_summary()
                model.error_summary = (
                    f"{result.failed} item(s) failed" if result.failed else None
                )

            model.completed_at = self._clock.now()
            self._session.flush()

            logger.info(
                "invoicing_job_finished",
                extra={
                    "status": model.status,
                    "invoices_created": model.invoices_created,
                    "invoices_updated": model.invoices_updated,
                    "items_failed": model.items_failed,
                    "duration_ms": int((time.monotonic() - start) * 1000),
                },
            )
        return model.to_dto()

    # -------------------------------------------------------------------------
    # Convenience
    # -------------------------------------------------------------------------

    def run_for_org(
        self,
        organization_id: UUID,
        as_of: datetime | None = None,
        trigger: str = "manual",
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> InvoicingJob:
        """Submit-and-execute, idempotent per key.

        A key that already ran returns the recorded job.  A key whose job
        FAILED is re-executed.
        """
        as_of = as_of or self._clock.now()
        key = idempotency_key or generate_idempotency_key(trigger, organization_id, as_of)

        existing = self._find_by_key(key)
        if existing is not None:
            if existing.status != InvoicingJobStatus.FAILED.value:
                logger.info(
                    "invoicing_job_already_recorded",
                    extra={"job_id": str(existing.id), "status": existing.status},
                )
                return existing.to_dto()
            existing.status = InvoicingJobStatus.PENDING.value
            existing.error_summary = None
            self._session.flush()
            return self.execute_job(existing.id)

        job = self.submit_job(organization_id, as_of, trigger, key, actor_id)
        return self.execute_job(job.job_id)

    def run_for_all_organizations(
        self,
        as_of: datetime | None = None,
        trigger: str = "manual",
        actor_id: UUID | None = None,
    ) -> list[InvoicingJob]:
        """One job per organization that has leases."""
        as_of = as_of or self._clock.now()
        organization_ids = SqlInvoicingStore(self._session).list_organization_ids()

        jobs = [
            self.run_for_org(organization_id, as_of, trigger, actor_id=actor_id)
            for organization_id in organization_ids
        ]

        logger.info(
            "invoicing_sweep_completed",
            extra={
                "organizations": len(jobs),
                "failed_organizations": sum(
                    1 for j in jobs if j.status is InvoicingJobStatus.FAILED
                ),
            },
        )
        return jobs

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    def get_job(self, job_id: UUID) -> InvoicingJob:
        """
        Raises:
            InvoicingJobNotFoundError: If job_id does not exist.
        """
        model = self._session.get(InvoicingJobModel, job_id)
        if model is None:
            raise InvoicingJobNotFoundError(str(job_id))
        return model.to_dto()

    def list_jobs(self, organization_id: UUID | None = None) -> list[InvoicingJob]:
        stmt = select(InvoicingJobModel).order_by(InvoicingJobModel.seq)
        if organization_id is not None:
            stmt = stmt.where(InvoicingJobModel.organization_id == organization_id)
        return [m.to_dto() for m in self._session.execute(stmt).scalars().all()]
