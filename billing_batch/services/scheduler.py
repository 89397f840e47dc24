"""
InvoicingScheduler -- In-process polling scheduler for invoicing runs.

Contract:
    Polls billing schedules on a configurable interval, evaluates
    ``should_fire()`` (pure) and runs the due ones through
    ``InvoicingJobRunner``: a single organization when the schedule is
    scoped, otherwise every organization with leases.

Architecture: billing_batch/services.  Uses billing_batch.domain.schedule
    for pure evaluation and billing_batch.services.runner for execution.

Invariants enforced:
    - All timestamps from the injected Clock.
    - Graceful shutdown: the stop signal is checked between schedules.
    - One session per tick; committed when the tick succeeds.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.logging_config import get_logger

from billing_batch.domain.schedule import compute_next_run, should_fire, validate_schedule
from billing_batch.domain.types import (
    BillingSchedule,
    InvoicingJob,
    InvoicingJobStatus,
    ScheduleFrequency,
)
from billing_batch.models.batch import BillingScheduleModel
from billing_batch.services.runner import InvoicingJobRunner

logger = get_logger("batch.scheduler")

_STATUS_SEVERITY = {
    InvoicingJobStatus.COMPLETED: 0,
    InvoicingJobStatus.PARTIALLY_COMPLETED: 1,
    InvoicingJobStatus.FAILED: 2,
}


def _worst_status(jobs: Iterable[InvoicingJob]) -> InvoicingJobStatus:
    worst = InvoicingJobStatus.COMPLETED
    for job in jobs:
        if _STATUS_SEVERITY.get(job.status, 0) > _STATUS_SEVERITY[worst]:
            worst = job.status
    return worst


def _schedule_trigger(schedule: BillingScheduleModel, now: datetime) -> str:
    # Hourly schedules get one job per hour; daily ones one per day.
    if schedule.frequency == ScheduleFrequency.HOURLY.value:
        return f"schedule-{schedule.name}-h{now:%H}"
    return f"schedule-{schedule.name}"


def upsert_schedule(session: Session, schedule: BillingSchedule) -> BillingScheduleModel:
    """Create or update a schedule by name (used when loading configuration).

    Raises:
        ScheduleError: if the definition is invalid.
    """
    validate_schedule(schedule)
    model = session.execute(
        select(BillingScheduleModel).where(BillingScheduleModel.name == schedule.name)
    ).scalar_one_or_none()

    if model is None:
        model = BillingScheduleModel.from_dto(schedule)
        session.add(model)
    else:
        model.frequency = schedule.frequency.value
        model.organization_id = schedule.organization_id
        model.run_at_hour = schedule.run_at_hour
        model.is_active = schedule.is_active
    session.flush()
    return model


class InvoicingScheduler:
    """In-process polling scheduler for billing schedules.

    Contract:
        - ``tick()`` evaluates all active schedules and fires due ones.
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - NOT a distributed scheduler (no leader election).  Two processes
          ticking at once are still safe: job idempotency keys and the
          invoice period constraint prevent double billing.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        runner_factory: Callable[[Session], InvoicingJobRunner] | None = None,
        clock: Clock | None = None,
        tick_interval_seconds: int = 60,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._runner_factory = runner_factory or (
            lambda session: InvoicingJobRunner(session, clock=self._clock)
        )
        self._tick_interval = tick_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> int:
        """Evaluate and fire due schedules (public for testing).

        Returns the number of schedules that were fired.
        """
        session = self._session_factory()
        try:
            fired = self._evaluate_schedules(session)
            session.commit()
            return fired
        except Exception:
            session.rollback()
            logger.exception("scheduler_tick_failed")
            return 0
        finally:
            session.close()

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="invoicing-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current tick to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self._tick_interval)

    def _fire(self, session: Session, schedule: BillingScheduleModel, now: datetime) -> list[InvoicingJob]:
        runner = self._runner_factory(session)
        trigger = _schedule_trigger(schedule, now)
        if schedule.organization_id is not None:
            return [runner.run_for_org(schedule.organization_id, now, trigger)]
        return runner.run_for_all_organizations(now, trigger)

    def _evaluate_schedules(self, session: Session) -> int:
        now = self._clock.now()

        schedules = session.execute(
            select(BillingScheduleModel)
            .where(BillingScheduleModel.is_active == True)  # noqa: E712
            .order_by(BillingScheduleModel.name)
        ).scalars().all()

        fired = 0
        for schedule in schedules:
            if self._stop_event.is_set():
                break

            if not should_fire(schedule.to_dto(), now):
                continue

            try:
                with session.begin_nested():
                    jobs = self._fire(session, schedule, now)
            except Exception:
                logger.exception(
                    "schedule_fire_failed",
                    extra={"schedule_name": schedule.name},
                )
                continue

            status = _worst_status(jobs)
            schedule.last_run_at = now
            schedule.last_run_status = status.value
            schedule.next_run_at = compute_next_run(
                ScheduleFrequency(schedule.frequency), now, schedule.run_at_hour,
            )
            session.flush()
            fired += 1

            logger.info(
                "schedule_fired",
                extra={
                    "schedule_name": schedule.name,
                    "jobs": len(jobs),
                    "status": status.value,
                    "next_run_at": schedule.next_run_at,
                },
            )

        return fired
