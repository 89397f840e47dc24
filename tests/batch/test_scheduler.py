"""
Tests for billing_batch.services.scheduler -- InvoicingScheduler.

Validates tick() evaluation, organization scoping, next_run_at updates,
schedule upserts, fire failures and the start/stop lifecycle.

Uses in-memory SQLite with real ORM models; one connection is shared so
every session (and the scheduler thread) sees the same database.
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import billing_batch.models.batch  # noqa: F401
from billing_kernel.db.base import Base
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.exceptions import ScheduleError
from billing_modules.lease_invoicing.models import BillingCycle, Lease, LeaseTerms
from billing_modules.lease_invoicing.store import SqlInvoicingStore

from billing_batch.domain.types import (
    BillingSchedule,
    InvoicingJobStatus,
    ScheduleFrequency,
)
from billing_batch.models.batch import BillingScheduleModel, InvoicingJobModel
from billing_batch.services.runner import InvoicingJobRunner
from billing_batch.services.scheduler import InvoicingScheduler, upsert_schedule

UTC = timezone.utc


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return DeterministicClock(_utc(2024, 2, 1, 2))


@pytest.fixture
def scheduler(session_factory, clock):
    return InvoicingScheduler(
        session_factory=session_factory,
        runner_factory=lambda session: InvoicingJobRunner(session, clock=clock),
        clock=clock,
        tick_interval_seconds=1,
    )


def _seed_lease(session: Session, org_id=None) -> Lease:
    lease = SqlInvoicingStore(session).create_lease(
        Lease(
            id=uuid4(),
            organization_id=org_id or uuid4(),
            tenant_id=uuid4(),
            unit_id=uuid4(),
            start_date=_utc(2024, 1, 1),
            billing_cycle=BillingCycle.MONTHLY,
            terms=LeaseTerms(rent=Decimal("5000")),
        )
    )
    session.commit()
    return lease


def _seed_schedule(session: Session, **overrides) -> BillingScheduleModel:
    fields = dict(
        schedule_id=uuid4(),
        name="nightly",
        frequency=ScheduleFrequency.DAILY,
        run_at_hour=2,
    )
    fields.update(overrides)
    model = upsert_schedule(session, BillingSchedule(**fields))
    session.commit()
    return model


def _jobs(session_factory) -> list[InvoicingJobModel]:
    with session_factory() as session:
        return list(
            session.execute(select(InvoicingJobModel).order_by(InvoicingJobModel.seq)).scalars()
        )


def _schedule(session_factory, name="nightly") -> BillingScheduleModel:
    with session_factory() as session:
        return session.execute(
            select(BillingScheduleModel).where(BillingScheduleModel.name == name)
        ).scalar_one()


# =============================================================================
# tick()
# =============================================================================


class TestTick:

    def test_no_schedules(self, scheduler):
        assert scheduler.tick() == 0

    def test_waits_for_run_at_hour(self, scheduler, db_session, session_factory, clock):
        _seed_lease(db_session)
        _seed_schedule(db_session)
        clock.set_time(_utc(2024, 2, 1, 1, 30))

        assert scheduler.tick() == 0
        assert _jobs(session_factory) == []

    def test_fires_for_every_organization(self, scheduler, db_session, session_factory):
        first = _seed_lease(db_session)
        second = _seed_lease(db_session)
        _seed_schedule(db_session)

        assert scheduler.tick() == 1

        jobs = _jobs(session_factory)
        assert sorted(j.organization_id for j in jobs) == sorted(
            [first.organization_id, second.organization_id]
        )
        assert {j.trigger for j in jobs} == {"schedule-nightly"}
        assert all(j.invoices_created == 1 for j in jobs)

    def test_updates_schedule_bookkeeping(self, scheduler, db_session, session_factory):
        _seed_lease(db_session)
        _seed_schedule(db_session)

        scheduler.tick()

        schedule = _schedule(session_factory)
        assert schedule.last_run_at == _utc(2024, 2, 1, 2)
        assert schedule.last_run_status == InvoicingJobStatus.COMPLETED.value
        assert schedule.next_run_at == _utc(2024, 2, 2, 2)

    def test_does_not_refire_before_next_run(self, scheduler, db_session, clock):
        _seed_lease(db_session)
        _seed_schedule(db_session)

        assert scheduler.tick() == 1
        clock.set_time(_utc(2024, 2, 1, 23))
        assert scheduler.tick() == 0
        clock.set_time(_utc(2024, 2, 2, 2))
        assert scheduler.tick() == 1

    def test_scoped_schedule(self, scheduler, db_session, session_factory):
        target = _seed_lease(db_session)
        _seed_lease(db_session)
        _seed_schedule(db_session, organization_id=target.organization_id)

        scheduler.tick()

        [job] = _jobs(session_factory)
        assert job.organization_id == target.organization_id

    def test_hourly_trigger_per_hour(self, scheduler, db_session, session_factory, clock):
        _seed_lease(db_session)
        _seed_schedule(db_session, name="hourly", frequency=ScheduleFrequency.HOURLY, run_at_hour=None)

        scheduler.tick()
        clock.set_time(_utc(2024, 2, 1, 3))
        scheduler.tick()

        assert [j.trigger for j in _jobs(session_factory)] == [
            "schedule-hourly-h02", "schedule-hourly-h03",
        ]

    def test_on_demand_and_inactive_skipped(self, scheduler, db_session):
        _seed_lease(db_session)
        _seed_schedule(db_session, name="manual", frequency=ScheduleFrequency.ON_DEMAND, run_at_hour=None)
        _seed_schedule(db_session, name="paused", is_active=False)

        assert scheduler.tick() == 0

    def test_fire_failure_leaves_schedule_due(self, session_factory, db_session, clock, captured_logs):
        _seed_lease(db_session)
        _seed_schedule(db_session)

        def broken_runner(session):
            raise RuntimeError("runner unavailable")

        scheduler = InvoicingScheduler(session_factory, runner_factory=broken_runner, clock=clock)

        assert scheduler.tick() == 0
        assert _schedule(session_factory).last_run_at is None
        assert any(r["message"] == "schedule_fire_failed" for r in captured_logs())


# =============================================================================
# upsert_schedule
# =============================================================================


class TestUpsertSchedule:

    def test_create_then_update(self, db_session):
        created = _seed_schedule(db_session)
        updated = _seed_schedule(db_session, run_at_hour=4, is_active=False)

        assert updated.id == created.id
        assert updated.run_at_hour == 4
        assert updated.is_active is False

    def test_invalid_definition(self, db_session):
        with pytest.raises(ScheduleError):
            upsert_schedule(
                db_session,
                BillingSchedule(
                    schedule_id=uuid4(),
                    name="bad",
                    frequency=ScheduleFrequency.HOURLY,
                    run_at_hour=3,
                ),
            )


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:

    def test_start_and_stop(self, scheduler):
        assert not scheduler.is_running
        scheduler.start()
        assert scheduler.is_running
        scheduler.stop(timeout=5)
        assert not scheduler.is_running

    def test_start_is_idempotent(self, scheduler):
        scheduler.start()
        thread = scheduler._thread
        scheduler.start()
        assert scheduler._thread is thread
        scheduler.stop(timeout=5)
