"""
Pure schedule evaluation functions.

Contract:
    ``should_fire(schedule, as_of)`` and ``compute_next_run()`` are PURE --
    no I/O, no clock.  The scheduler passes in the current time.

Architecture: billing_batch/domain.  ZERO I/O.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from billing_kernel.exceptions import ScheduleError

from billing_batch.domain.types import BillingSchedule, ScheduleFrequency


def validate_schedule(schedule: BillingSchedule) -> None:
    """
    Raises:
        ScheduleError: if ``run_at_hour`` is out of range or set on a
            non-daily schedule.
    """
    if schedule.run_at_hour is None:
        return
    if schedule.frequency != ScheduleFrequency.DAILY:
        raise ScheduleError(schedule.name, "run_at_hour only applies to daily schedules")
    if not 0 <= schedule.run_at_hour <= 23:
        raise ScheduleError(schedule.name, f"run_at_hour {schedule.run_at_hour} outside 0-23")


def should_fire(schedule: BillingSchedule, as_of: datetime) -> bool:
    """Determine if a schedule should fire at the given time.

    Rules:
        - Inactive schedules never fire.
        - ON_DEMAND never fires automatically.
        - Otherwise fires once ``as_of >= next_run_at``.
        - A DAILY schedule that has never run waits for ``run_at_hour``.
    """
    if not schedule.is_active:
        return False

    if schedule.frequency == ScheduleFrequency.ON_DEMAND:
        return False

    if schedule.next_run_at is not None:
        return as_of >= schedule.next_run_at

    if schedule.frequency == ScheduleFrequency.DAILY and schedule.run_at_hour is not None:
        return as_of.hour >= schedule.run_at_hour

    return True


def compute_next_run(
    frequency: ScheduleFrequency,
    last_run_at: datetime | None,
    run_at_hour: int | None = None,
) -> datetime | None:
    """Compute the next run time after ``last_run_at``.

    HOURLY runs at the top of the next hour.  DAILY runs the next day at
    ``run_at_hour`` (or at the same time of day when no hour is set).

    Returns:
        Next run datetime, or None for ON_DEMAND or a schedule never run.
    """
    if frequency == ScheduleFrequency.ON_DEMAND or last_run_at is None:
        return None

    if frequency == ScheduleFrequency.HOURLY:
        return last_run_at.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)

    next_day = last_run_at + timedelta(days=1)
    if run_at_hour is None:
        return next_day
    return next_day.replace(hour=run_at_hour, minute=0, second=0, microsecond=0)
