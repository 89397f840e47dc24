"""
Tests for billing_modules.lease_invoicing.service -- LeaseInvoicingService.

Covers the two passes of an organization run (late fees, generation),
idempotent reruns, per-lease failure isolation, the duplicate-period race
and lease pointer reconciliation.

Uses in-memory SQLite with the real ORM models.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import billing_modules.lease_invoicing.service as service_module
from billing_kernel.db.base import Base
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.exceptions import LeaseNotFoundError
from billing_modules.lease_invoicing.models import (
    AdditionalCharge,
    BillingCycle,
    InvoiceInput,
    InvoiceItem,
    InvoiceItemType,
    InvoiceStatus,
    InvoicingPass,
    Lease,
    LeaseStatus,
    LeaseTerms,
    OutcomeKind,
    PenaltyConfig,
)
from billing_modules.lease_invoicing.orm import LeaseModel
from billing_modules.lease_invoicing.service import (
    LeaseInvoicingService,
    run_lease_invoicing_for_org,
)
from billing_modules.lease_invoicing.store import SqlInvoicingStore

UTC = timezone.utc


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture
def session(engine):
    s = sessionmaker(bind=engine)()
    yield s
    s.close()


@pytest.fixture
def clock():
    return DeterministicClock(_utc(2024, 2, 1))


@pytest.fixture
def store(session, clock):
    return SqlInvoicingStore(session, clock=clock)


@pytest.fixture
def service(session, clock):
    return LeaseInvoicingService(session, clock=clock)


@pytest.fixture
def org_id():
    return uuid4()


def _make_lease(store, org_id, terms=None, **overrides) -> Lease:
    fields = dict(
        id=uuid4(),
        organization_id=org_id,
        tenant_id=uuid4(),
        unit_id=uuid4(),
        start_date=_utc(2024, 1, 1),
        billing_cycle=BillingCycle.MONTHLY,
        terms=terms or LeaseTerms(rent=Decimal("5000")),
        next_invoice_date=_utc(2024, 2, 1),
    )
    fields.update(overrides)
    return store.create_lease(Lease(**fields))


def _invoice_for_period(store, lease, period_start, period_end):
    return store.create_invoice(
        InvoiceInput(
            organization_id=lease.organization_id,
            lease_id=lease.id,
            tenant_id=lease.tenant_id,
            unit_id=lease.unit_id,
            issue_date=period_end,
            due_date=period_end + timedelta(days=7),
            period_start=period_start,
            period_end=period_end,
            items=(InvoiceItem("Rent", Decimal("5000"), InvoiceItemType.RENT),),
            status=InvoiceStatus.SENT,
        )
    )


# =============================================================================
# Generation
# =============================================================================


class TestGeneration:

    def test_monthly_lease_first_invoice(self, service, store, org_id):
        lease = _make_lease(store, org_id)

        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        assert result.created == 1
        assert result.failed == 0
        [invoice] = store.find_invoices_by_lease(lease.id, org_id)
        assert invoice.invoice_number == "INV-2024-001"
        assert invoice.period_start == _utc(2024, 1, 1)
        assert invoice.period_end == _utc(2024, 2, 1)
        assert invoice.items == (InvoiceItem("Rent", Decimal("5000"), InvoiceItemType.RENT),)
        assert invoice.subtotal == Decimal("5000")
        assert invoice.tax == Decimal("0")
        assert invoice.total == Decimal("5000")
        assert invoice.status is InvoiceStatus.SENT
        assert invoice.issue_date == _utc(2024, 2, 1)
        assert invoice.due_date == _utc(2024, 2, 8)

        updated = store.find_lease_by_id(lease.id, org_id)
        assert updated.next_invoice_date == _utc(2024, 3, 1)
        assert updated.last_invoiced_at == _utc(2024, 2, 1)

    def test_outcome_references_invoice(self, service, store, org_id):
        lease = _make_lease(store, org_id)
        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        [outcome] = result.outcomes
        assert outcome.pass_name is InvoicingPass.GENERATION
        assert outcome.outcome is OutcomeKind.CREATED
        assert outcome.lease_id == lease.id
        assert outcome.invoice_id == store.find_invoices_by_lease(lease.id, org_id)[0].id

    def test_not_yet_due_lease_is_ignored(self, service, store, org_id):
        lease = _make_lease(store, org_id)
        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 1, 31, 23, 59))

        assert result.outcomes == ()
        assert store.find_invoices_by_lease(lease.id, org_id) == []

    def test_inactive_lease_is_ignored(self, service, store, org_id):
        lease = _make_lease(store, org_id, status=LeaseStatus.TERMINATED)
        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        assert result.created == 0
        assert store.find_invoices_by_lease(lease.id, org_id) == []

    def test_other_organizations_untouched(self, service, store, org_id):
        other = _make_lease(store, uuid4())
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))
        assert store.find_invoices_by_lease(other.id, other.organization_id) == []

    def test_rerun_same_as_of_is_idempotent(self, service, store, org_id):
        lease = _make_lease(store, org_id)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))
        second = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        assert second.created == 0
        assert len(store.find_invoices_by_lease(lease.id, org_id)) == 1
        assert store.find_lease_by_id(lease.id, org_id).next_invoice_date == _utc(2024, 3, 1)

    def test_deposit_billed_once(self, service, store, org_id):
        lease = _make_lease(
            store, org_id,
            terms=LeaseTerms(rent=Decimal("5000"), deposit=Decimal("10000")),
        )
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 3, 1))

        first, second = store.find_invoices_by_lease(lease.id, org_id)
        assert [i.type for i in first.items] == [InvoiceItemType.RENT, InvoiceItemType.DEPOSIT]
        assert first.total == Decimal("15000")
        assert [i.type for i in second.items] == [InvoiceItemType.RENT]
        assert second.period_start == _utc(2024, 2, 1)
        assert second.period_end == _utc(2024, 3, 1)

    def test_one_period_per_run_while_catching_up(self, service, store, org_id):
        lease = _make_lease(store, org_id)

        service.run_lease_invoicing_for_org(org_id, _utc(2024, 4, 15))
        assert len(store.find_invoices_by_lease(lease.id, org_id)) == 1

        service.run_lease_invoicing_for_org(org_id, _utc(2024, 4, 15))
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 4, 15))
        periods = [
            (i.period_start, i.period_end)
            for i in store.find_invoices_by_lease(lease.id, org_id)
        ]
        assert periods == [
            (_utc(2024, 1, 1), _utc(2024, 2, 1)),
            (_utc(2024, 2, 1), _utc(2024, 3, 1)),
            (_utc(2024, 3, 1), _utc(2024, 4, 1)),
        ]
        assert store.find_lease_by_id(lease.id, org_id).next_invoice_date == _utc(2024, 5, 1)

    def test_vat_inclusive_lease(self, service, store, org_id):
        lease = _make_lease(
            store, org_id,
            terms=LeaseTerms(rent=Decimal("11500"), vat_included=True),
        )
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        [invoice] = store.find_invoices_by_lease(lease.id, org_id)
        assert invoice.subtotal == Decimal("10000")
        assert invoice.tax == Decimal("1500")
        assert invoice.total == Decimal("11500")
        assert invoice.vat_rate == Decimal("15")

    def test_payment_due_days_from_lease(self, service, store, org_id):
        lease = _make_lease(store, org_id, payment_due_days=30)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))
        [invoice] = store.find_invoices_by_lease(lease.id, org_id)
        assert invoice.due_date == _utc(2024, 3, 2)

    def test_invoice_numbers_increment_per_organization(self, service, store, org_id):
        first = _make_lease(store, org_id)
        second = _make_lease(store, org_id)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        other_org = uuid4()
        other = _make_lease(store, other_org)
        service.run_lease_invoicing_for_org(other_org, _utc(2024, 2, 1))

        numbers = sorted(
            store.find_invoices_by_lease(lease.id, org_id)[0].invoice_number
            for lease in (first, second)
        )
        assert numbers == ["INV-2024-001", "INV-2024-002"]
        [other_invoice] = store.find_invoices_by_lease(other.id, other_org)
        assert other_invoice.invoice_number == "INV-2024-001"

    def test_as_of_defaults_to_clock(self, service, store, org_id, clock):
        _make_lease(store, org_id)
        result = service.run_lease_invoicing_for_org(org_id)
        assert result.as_of == clock.now()
        assert result.created == 1

    def test_naive_as_of_rejected(self, service, org_id):
        with pytest.raises(ValueError):
            service.run_lease_invoicing_for_org(org_id, datetime(2024, 2, 1))

    def test_module_level_entry_point(self, session, store, org_id, clock):
        _make_lease(store, org_id)
        result = run_lease_invoicing_for_org(session, org_id, _utc(2024, 2, 1), clock=clock)
        assert result.created == 1


# =============================================================================
# Idempotency guard and race
# =============================================================================


class TestDuplicatePeriods:

    def test_existing_invoice_for_period_is_skipped(self, service, store, org_id, captured_logs):
        lease = _make_lease(store, org_id)
        _invoice_for_period(store, lease, _utc(2024, 1, 1), _utc(2024, 2, 1))

        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        [outcome] = result.outcomes
        assert outcome.outcome is OutcomeKind.SKIPPED
        assert outcome.reason == "already_invoiced"
        assert len(store.find_invoices_by_lease(lease.id, org_id)) == 1
        # Pointers are left for reconciliation.
        assert store.find_lease_by_id(lease.id, org_id).next_invoice_date == _utc(2024, 2, 1)

        warnings = [r for r in captured_logs() if r["message"] == "invoice_period_already_billed"]
        assert len(warnings) == 1
        assert warnings[0]["level"] == "WARNING"
        assert warnings[0]["lease_id"] == str(lease.id)

    def test_lost_race_is_skipped_not_failed(self, service, store, org_id, monkeypatch):
        lease = _make_lease(store, org_id)
        _invoice_for_period(store, lease, _utc(2024, 1, 1), _utc(2024, 2, 1))
        # Simulate a concurrent run inserting between the check and the insert.
        monkeypatch.setattr(service_module, "invoice_exists_for_period", lambda *a, **kw: False)

        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        [outcome] = result.outcomes
        assert outcome.outcome is OutcomeKind.SKIPPED
        assert outcome.reason == "duplicate_period"
        assert len(store.find_invoices_by_lease(lease.id, org_id)) == 1
        assert store.find_lease_by_id(lease.id, org_id).next_invoice_date == _utc(2024, 2, 1)

    def test_lost_race_does_not_consume_invoice_number(self, service, store, org_id, monkeypatch):
        lease = _make_lease(store, org_id)
        _invoice_for_period(store, lease, _utc(2024, 1, 1), _utc(2024, 2, 1))
        monkeypatch.setattr(service_module, "invoice_exists_for_period", lambda *a, **kw: False)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))
        monkeypatch.undo()

        second = _make_lease(store, org_id)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))
        [invoice] = store.find_invoices_by_lease(second.id, org_id)
        assert invoice.invoice_number == "INV-2024-002"


# =============================================================================
# Failure isolation
# =============================================================================


class _FlakyStore(SqlInvoicingStore):
    """Fails invoice creation for one lease."""

    def __init__(self, *args, failing_lease_id=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing_lease_id = failing_lease_id

    def create_invoice(self, invoice_input):
        if invoice_input.lease_id == self.failing_lease_id:
            raise RuntimeError("simulated store failure")
        return super().create_invoice(invoice_input)


class TestFailureIsolation:

    def test_one_lease_failure_does_not_stop_others(self, session, store, clock, org_id):
        bad = _make_lease(store, org_id)
        good = _make_lease(store, org_id)
        flaky = _FlakyStore(session, clock=clock, failing_lease_id=bad.id)
        service = LeaseInvoicingService(store=flaky, clock=clock)

        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        assert result.created == 1
        assert result.failed == 1
        [failed] = [o for o in result.outcomes if o.outcome is OutcomeKind.FAILED]
        assert failed.lease_id == bad.id
        assert failed.error_code == "UNHANDLED_EXCEPTION"
        assert "simulated" in failed.reason

        assert store.find_invoices_by_lease(bad.id, org_id) == []
        assert store.find_lease_by_id(bad.id, org_id).next_invoice_date == _utc(2024, 2, 1)
        assert len(store.find_invoices_by_lease(good.id, org_id)) == 1

    def test_failed_lease_retried_on_next_run(self, session, store, clock, org_id):
        lease = _make_lease(store, org_id)
        flaky = _FlakyStore(session, clock=clock, failing_lease_id=lease.id)
        LeaseInvoicingService(store=flaky, clock=clock).run_lease_invoicing_for_org(
            org_id, _utc(2024, 2, 1),
        )

        result = LeaseInvoicingService(session, clock=clock).run_lease_invoicing_for_org(
            org_id, _utc(2024, 2, 1),
        )
        assert result.created == 1

    def test_pointer_update_failure_rolls_back_invoice(self, session, store, clock, org_id):
        lease = _make_lease(store, org_id)

        class _PointerFailure(SqlInvoicingStore):
            def update_lease(self, lease_id, **fields):
                raise RuntimeError("pointer write failed")

        service = LeaseInvoicingService(store=_PointerFailure(session, clock=clock), clock=clock)
        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        assert result.failed == 1
        assert store.find_invoices_by_lease(lease.id, org_id) == []

    def test_overlong_charge_name_fails_only_that_lease(self, service, store, org_id):
        bad = _make_lease(
            store, org_id,
            additional_charges=(AdditionalCharge("Parking " * 40, Decimal("100")),),
        )
        good = _make_lease(store, org_id)

        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        assert result.created == 1
        [failed] = [o for o in result.outcomes if o.outcome is OutcomeKind.FAILED]
        assert failed.lease_id == bad.id
        assert failed.error_code == "INVOICE_VALIDATION_FAILED"
        assert store.find_lease_by_id(bad.id, org_id).next_invoice_date == _utc(2024, 2, 1)
        assert len(store.find_invoices_by_lease(good.id, org_id)) == 1

    def test_failure_is_logged(self, session, store, clock, org_id, captured_logs):
        lease = _make_lease(store, org_id)
        flaky = _FlakyStore(session, clock=clock, failing_lease_id=lease.id)
        LeaseInvoicingService(store=flaky, clock=clock).run_lease_invoicing_for_org(
            org_id, _utc(2024, 2, 1),
        )

        [record] = [r for r in captured_logs() if r["message"] == "lease_invoicing_failed"]
        assert record["level"] == "ERROR"
        assert record["exc_type"] == "RuntimeError"
        assert record["lease_id"] == str(lease.id)


# =============================================================================
# Late fees
# =============================================================================


PENALTY = PenaltyConfig(late_fee_rate_per_day=Decimal("0.001"), late_fee_grace_days=3)


class TestLateFees:

    def test_overdue_invoice_gets_penalty(self, service, store, org_id):
        lease = _make_lease(store, org_id, penalty_config=PENALTY)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 15))

        assert result.updated == 1
        [outcome] = result.outcomes
        assert outcome.pass_name is InvoicingPass.LATE_FEE
        assert outcome.late_fee == Decimal("20")

        [invoice] = store.find_invoices_by_lease(lease.id, org_id)
        assert invoice.status is InvoiceStatus.OVERDUE
        assert invoice.penalty_item.amount == Decimal("20")
        assert invoice.total == Decimal("5020")

    def test_rerun_replaces_penalty(self, service, store, org_id):
        lease = _make_lease(store, org_id, penalty_config=PENALTY)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 15))
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 15))

        [invoice] = store.find_invoices_by_lease(lease.id, org_id)
        penalties = [i for i in invoice.items if i.type is InvoiceItemType.PENALTY]
        assert len(penalties) == 1
        assert invoice.total == Decimal("5020")

    def test_penalty_grows_with_time(self, service, store, org_id):
        lease = _make_lease(store, org_id, penalty_config=PENALTY)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 15))
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 20))

        invoice = store.find_invoices_by_lease(lease.id, org_id)[0]
        # 12 days late, 3 of grace
        assert invoice.penalty_item.amount == Decimal("45")
        assert invoice.total == Decimal("5045")

    def test_within_grace_marks_overdue_without_fee(self, service, store, org_id):
        lease = _make_lease(store, org_id, penalty_config=PENALTY)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))
        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 10))

        assert result.outcomes[0].late_fee == Decimal("0")
        [invoice] = store.find_invoices_by_lease(lease.id, org_id)
        assert invoice.status is InvoiceStatus.OVERDUE
        assert invoice.penalty_item is None
        assert invoice.total == Decimal("5000")

    def test_paid_invoice_untouched(self, service, store, org_id):
        lease = _make_lease(store, org_id, penalty_config=PENALTY)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))
        [invoice] = store.find_invoices_by_lease(lease.id, org_id)
        store.update_invoice(invoice.id, status=InvoiceStatus.PAID)

        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 15))

        assert result.outcomes == ()
        [after] = store.find_invoices_by_lease(lease.id, org_id)
        assert after.status is InvoiceStatus.PAID
        assert after.total == Decimal("5000")

    def test_vat_taxed_invoice_fee_base_includes_tax(self, service, store, org_id):
        lease = _make_lease(store, org_id, vat_rate=Decimal("10"), penalty_config=PENALTY)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 15))

        [invoice] = store.find_invoices_by_lease(lease.id, org_id)
        # base 5500 * 0.001 * 4 = 22; tax on 5022 = 502.2 -> 502
        assert invoice.penalty_item.amount == Decimal("22")
        assert invoice.subtotal == Decimal("5022")
        assert invoice.tax == Decimal("502")
        assert invoice.total == Decimal("5524")

    def test_missing_lease_is_skipped(self, session, service, store, org_id):
        lease = _make_lease(store, org_id, penalty_config=PENALTY)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))
        session.get(LeaseModel, lease.id).organization_id = uuid4()
        session.flush()

        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 15))

        [outcome] = result.outcomes
        assert outcome.outcome is OutcomeKind.SKIPPED
        assert outcome.reason == "lease_not_found"

    def test_late_fees_run_before_generation(self, service, store, org_id):
        _make_lease(store, org_id, penalty_config=PENALTY)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 3, 1))

        assert [o.pass_name for o in result.outcomes] == [
            InvoicingPass.LATE_FEE, InvoicingPass.GENERATION,
        ]
        # The invoice created in this run is not yet due, so it has no fee.
        assert result.updated == 1
        assert result.created == 1

    def _reduced_total_invoice(self, store, org_id):
        lease = _make_lease(
            store, org_id,
            penalty_config=PenaltyConfig(late_fee_rate_per_day=Decimal("0.001")),
            next_invoice_date=_utc(2024, 6, 1),
        )
        return store.create_invoice(
            InvoiceInput(
                organization_id=org_id,
                lease_id=lease.id,
                tenant_id=lease.tenant_id,
                unit_id=lease.unit_id,
                issue_date=_utc(2024, 1, 25),
                due_date=_utc(2024, 2, 1),
                period_start=_utc(2024, 1, 1),
                period_end=_utc(2024, 1, 25),
                items=(InvoiceItem("Rent", Decimal("5000"), InvoiceItemType.RENT),),
                total=Decimal("4000"),
                status=InvoiceStatus.SENT,
            )
        )

    def test_fee_base_is_stored_total(self, service, store, org_id):
        invoice = self._reduced_total_invoice(store, org_id)

        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 11))

        # 4000 * 0.001 * 10 days
        [outcome] = result.outcomes
        assert outcome.late_fee == Decimal("40")
        after = store.find_invoice_by_id(invoice.id)
        assert after.penalty_item.amount == Decimal("40")
        assert after.total == Decimal("4040")

    def test_reduced_total_stable_on_rerun(self, service, store, org_id):
        invoice = self._reduced_total_invoice(store, org_id)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 11))
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 11))

        after = store.find_invoice_by_id(invoice.id)
        assert after.penalty_item.amount == Decimal("40")
        assert after.total == Decimal("4040")

        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 21))
        after = store.find_invoice_by_id(invoice.id)
        assert after.penalty_item.amount == Decimal("80")
        assert after.total == Decimal("4080")

    def test_vanished_invoice_fails_with_not_found(self, session, store, clock, org_id):
        lease = _make_lease(store, org_id, penalty_config=PENALTY)
        LeaseInvoicingService(store=store, clock=clock).run_lease_invoicing_for_org(
            org_id, _utc(2024, 2, 1),
        )

        class _VanishingInvoices(SqlInvoicingStore):
            def update_invoice(self, invoice_id, **fields):
                return None

        service = LeaseInvoicingService(store=_VanishingInvoices(session, clock=clock), clock=clock)
        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 15))

        [outcome] = result.outcomes
        assert outcome.outcome is OutcomeKind.FAILED
        assert outcome.error_code == "INVOICE_NOT_FOUND"
        [invoice] = store.find_invoices_by_lease(lease.id, org_id)
        assert invoice.status is InvoiceStatus.SENT


# =============================================================================
# Pointer reconciliation
# =============================================================================


class TestReconcileLeasePointers:

    def test_rebuilds_from_latest_invoice(self, service, store, org_id):
        lease = _make_lease(store, org_id)
        _invoice_for_period(store, lease, _utc(2024, 1, 1), _utc(2024, 2, 1))

        repaired = service.reconcile_lease_pointers(lease.id, org_id)

        assert repaired.last_invoiced_at == _utc(2024, 2, 1)
        assert repaired.next_invoice_date == _utc(2024, 3, 1)
        result = service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))
        assert result.created == 0

    def test_no_invoices_resets_to_first_period(self, service, store, org_id):
        lease = _make_lease(
            store, org_id,
            next_invoice_date=_utc(2024, 5, 1),
            last_invoiced_at=_utc(2024, 4, 1),
        )
        repaired = service.reconcile_lease_pointers(lease.id, org_id)
        assert repaired.last_invoiced_at is None
        assert repaired.next_invoice_date == _utc(2024, 2, 1)

    def test_consistent_pointers_untouched(self, service, store, org_id, captured_logs):
        lease = _make_lease(store, org_id)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        before = store.find_lease_by_id(lease.id, org_id)
        assert service.reconcile_lease_pointers(lease.id, org_id) == before
        assert not [r for r in captured_logs() if r["message"] == "lease_pointers_reconciled"]

    def test_unknown_lease(self, service, org_id):
        with pytest.raises(LeaseNotFoundError):
            service.reconcile_lease_pointers(uuid4(), org_id)


# =============================================================================
# Logging
# =============================================================================


class TestRunLogging:

    def test_start_and_completion_logged(self, service, store, org_id, captured_logs):
        _make_lease(store, org_id)
        service.run_lease_invoicing_for_org(org_id, _utc(2024, 2, 1))

        records = captured_logs()
        messages = [r["message"] for r in records]
        assert "lease_invoicing_started" in messages
        assert "invoice_generated" in messages

        [done] = [r for r in records if r["message"] == "lease_invoicing_completed"]
        assert done["organization_id"] == str(org_id)
        assert done["invoices_created"] == 1
        assert done["items_failed"] == 0
