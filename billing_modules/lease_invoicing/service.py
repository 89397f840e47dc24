"""
Lease Invoicing Service - per-organization billing run.

Two sequential passes over one organization:

1. Late-fee reapplication: every ``sent``/``overdue`` invoice whose due date
   has passed gets its penalty line recomputed (replaced, never appended),
   totals rewritten and status set to ``overdue``.
2. Generation: every active lease whose ``next_invoice_date`` has arrived is
   billed for [last_invoiced_at or start_date, next_invoice_date), then its
   billing pointers are advanced by one cycle.

Each invoice (pass 1) and each lease (pass 2) runs in its own store
isolation scope, so a failure rolls back only that item and is recorded as
a ``failed`` outcome; the rest of the run continues.  For a lease, the
invoice insert and the pointer advance commit together or not at all.

The service does not commit; the caller owns the transaction.

Usage:
    service = LeaseInvoicingService(session, clock=clock)
    result = service.run_lease_invoicing_for_org(org_id)
    result.created, result.failed
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    DuplicateInvoicePeriodError,
    InvoiceNotFoundError,
    LeaseNotFoundError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_modules.lease_invoicing.calculations import (
    advance_invoice_date,
    build_invoice_items,
    calculate_invoice_totals,
    compute_late_fee,
    days_past_due,
    get_payment_due_days,
    normalize_vat,
    penalty_item,
    resolve_vat_rate,
    strip_penalty_items,
)
from billing_modules.lease_invoicing.config import InvoicingConfig
from billing_modules.lease_invoicing.idempotency import (
    invoice_exists_for_period,
    period_key,
)
from billing_modules.lease_invoicing.models import (
    Invoice,
    InvoiceInput,
    InvoiceStatus,
    InvoicingOutcome,
    InvoicingPass,
    InvoicingRunResult,
    Lease,
    LeaseFilter,
    LeaseStatus,
    OutcomeKind,
)
from billing_modules.lease_invoicing.store import InvoicingStore, SqlInvoicingStore

logger = get_logger("modules.lease_invoicing.service")


def _error_code(exc: Exception) -> str:
    return getattr(exc, "code", "UNHANDLED_EXCEPTION")


class LeaseInvoicingService:
    """
    Runs recurring lease billing for one organization at a time.

    Stateless between runs: everything it needs is read from the store and
    the ``as_of`` instant.
    """

    def __init__(
        self,
        session: Session | None = None,
        clock: Clock | None = None,
        config: InvoicingConfig | None = None,
        store: InvoicingStore | None = None,
    ):
        self._clock = clock or SystemClock()
        self._config = config or InvoicingConfig.with_defaults()
        if store is None:
            if session is None:
                raise ValueError("LeaseInvoicingService needs a session or a store")
            store = SqlInvoicingStore(session, clock=self._clock, config=self._config)
        self._store = store

    @property
    def store(self) -> InvoicingStore:
        return self._store

    # =========================================================================
    # Entry point
    # =========================================================================

    def run_lease_invoicing_for_org(
        self,
        organization_id: UUID,
        as_of: datetime | None = None,
    ) -> InvoicingRunResult:
        """
        Late-fee pass then generation pass for one organization.

        Per-item failures are logged and reported in the result; they never
        propagate.  Errors reading the organization's work lists do.
        """
        as_of = as_of or self._clock.now()
        if as_of.tzinfo is None:
            raise ValueError("as_of must be timezone-aware")

        start = time.monotonic()
        with LogContext.bind(organization_id=organization_id):
            logger.info(
                "lease_invoicing_started",
                extra={"as_of": as_of.isoformat()},
            )

            outcomes = self.apply_late_fees_for_org(organization_id, as_of)
            outcomes += self.generate_invoices_for_org(organization_id, as_of)

            result = InvoicingRunResult(
                organization_id=organization_id,
                as_of=as_of,
                outcomes=tuple(outcomes),
            )
            logger.info(
                "lease_invoicing_completed",
                extra={
                    "as_of": as_of.isoformat(),
                    "invoices_created": result.created,
                    "invoices_updated": result.updated,
                    "items_skipped": result.skipped,
                    "items_failed": result.failed,
                    "duration_ms": int((time.monotonic() - start) * 1000),
                },
            )
        return result

    # =========================================================================
    # Pass A -- late fees
    # =========================================================================

    def apply_late_fees_for_org(
        self, organization_id: UUID, as_of: datetime,
    ) -> list[InvoicingOutcome]:
        invoices = self._store.find_overdue_invoices(
            organization_id, as_of, self._config.eligible_overdue_statuses,
        )
        outcomes = []
        for invoice in invoices:
            with LogContext.bind(invoice_id=invoice.id, lease_id=invoice.lease_id):
                outcomes.append(self._apply_late_fee(invoice, as_of))
        return outcomes

    def _apply_late_fee(self, invoice: Invoice, as_of: datetime) -> InvoicingOutcome:
        try:
            with self._store.isolation():
                lease = self._store.find_lease_by_id(invoice.lease_id, invoice.organization_id)
                if lease is None:
                    logger.warning("late_fee_lease_missing")
                    return InvoicingOutcome(
                        pass_name=InvoicingPass.LATE_FEE,
                        outcome=OutcomeKind.SKIPPED,
                        lease_id=invoice.lease_id,
                        invoice_id=invoice.id,
                        reason="lease_not_found",
                    )

                vat_rate = invoice.vat_rate
                if vat_rate is None:
                    vat_rate = resolve_vat_rate(lease, self._config.default_vat_rate)

                base, discount = self._late_fee_base(invoice, vat_rate)
                base_items = strip_penalty_items(invoice.items)

                fee = compute_late_fee(lease, base, invoice.due_date, as_of)
                items = base_items
                if fee > 0:
                    items = base_items + (
                        penalty_item(fee, lease.penalty_config.late_fee_rate_per_day),
                    )
                totals = calculate_invoice_totals(items, discount=discount, vat_rate=vat_rate)

                updated = self._store.update_invoice(
                    invoice.id,
                    items=items,
                    subtotal=totals.subtotal,
                    tax=totals.tax,
                    total=totals.total,
                    vat_rate=vat_rate,
                    status=InvoiceStatus.OVERDUE,
                )
                if updated is None:
                    raise InvoiceNotFoundError(str(invoice.id))
        except Exception as exc:
            logger.error("late_fee_application_failed", exc_info=True)
            return InvoicingOutcome(
                pass_name=InvoicingPass.LATE_FEE,
                outcome=OutcomeKind.FAILED,
                lease_id=invoice.lease_id,
                invoice_id=invoice.id,
                reason=str(exc),
                error_code=_error_code(exc),
            )

        logger.info(
            "late_fee_applied",
            extra={
                "days_past_due": days_past_due(invoice.due_date, as_of),
                "amount_base": str(base),
                "late_fee": str(fee),
                "total": str(totals.total),
            },
        )
        return InvoicingOutcome(
            pass_name=InvoicingPass.LATE_FEE,
            outcome=OutcomeKind.UPDATED,
            lease_id=invoice.lease_id,
            invoice_id=invoice.id,
            late_fee=fee,
        )

    @staticmethod
    def _late_fee_base(invoice: Invoice, vat_rate: Decimal | None) -> tuple[Decimal, Decimal]:
        """
        Late-fee base and the discount to carry into the rewritten totals.

        The base is the stored total (subtotal when the total is absent) with
        any earlier penalty line's contribution taken back out.  The discount
        is whatever separates the stored total from the one the items imply,
        so an explicitly reduced total survives the rewrite.
        """
        base_items = strip_penalty_items(invoice.items)
        prior = invoice.penalty_item

        if invoice.total is None:
            base = invoice.subtotal
            if prior is not None:
                base -= prior.amount
            return base, Decimal("0")

        base = invoice.total
        expected = calculate_invoice_totals(base_items, vat_rate=vat_rate).total
        if prior is not None:
            base -= calculate_invoice_totals(invoice.items, vat_rate=vat_rate).total - expected
        return base, expected - base

    # =========================================================================
    # Pass B -- generation
    # =========================================================================

    def generate_invoices_for_org(
        self, organization_id: UUID, as_of: datetime,
    ) -> list[InvoicingOutcome]:
        leases = self._store.list_leases(
            LeaseFilter(
                organization_id=organization_id,
                status=LeaseStatus.ACTIVE,
                next_invoice_on_or_before=as_of,
            )
        )
        outcomes = []
        for lease in leases:
            with LogContext.bind(lease_id=lease.id):
                outcomes.append(self._generate_for_lease(lease, as_of))
        return outcomes

    def _skipped(self, lease: Lease, reason: str) -> InvoicingOutcome:
        return InvoicingOutcome(
            pass_name=InvoicingPass.GENERATION,
            outcome=OutcomeKind.SKIPPED,
            lease_id=lease.id,
            reason=reason,
        )

    def _generate_for_lease(self, lease: Lease, as_of: datetime) -> InvoicingOutcome:
        period_start = lease.current_period_start
        period_end = lease.next_invoice_date
        key = period_key(lease.id, period_start, period_end)

        try:
            with self._store.isolation():
                if invoice_exists_for_period(
                    self._store, lease.id, period_start, period_end, lease.organization_id,
                ):
                    # Pointers were not advanced after an earlier invoice.
                    logger.warning(
                        "invoice_period_already_billed",
                        extra={"period_key": key},
                    )
                    return self._skipped(lease, "already_invoiced")

                items = build_invoice_items(lease, include_deposit=lease.is_first_invoice)
                normalized = normalize_vat(lease, items, self._config.default_vat_rate)
                totals = calculate_invoice_totals(normalized.items, vat_rate=normalized.vat_rate)
                due_days = get_payment_due_days(lease, self._config.default_payment_due_days)

                invoice = self._store.create_invoice(
                    InvoiceInput(
                        organization_id=lease.organization_id,
                        lease_id=lease.id,
                        tenant_id=lease.tenant_id,
                        unit_id=lease.unit_id,
                        issue_date=as_of,
                        due_date=as_of + timedelta(days=due_days),
                        period_start=period_start,
                        period_end=period_end,
                        items=normalized.items,
                        vat_rate=normalized.vat_rate,
                        subtotal=totals.subtotal,
                        tax=totals.tax,
                        total=totals.total,
                        status=InvoiceStatus.SENT,
                    )
                )

                next_invoice_date = advance_invoice_date(period_end, lease.billing_cycle)
                self._store.update_lease(
                    lease.id,
                    next_invoice_date=next_invoice_date,
                    last_invoiced_at=period_end,
                )
        except DuplicateInvoicePeriodError:
            logger.warning("invoice_period_race_lost", extra={"period_key": key})
            return self._skipped(lease, "duplicate_period")
        except Exception as exc:
            logger.error(
                "lease_invoicing_failed",
                extra={"period_key": key},
                exc_info=True,
            )
            return InvoicingOutcome(
                pass_name=InvoicingPass.GENERATION,
                outcome=OutcomeKind.FAILED,
                lease_id=lease.id,
                reason=str(exc),
                error_code=_error_code(exc),
            )

        logger.info(
            "invoice_generated",
            extra={
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
                "period_key": key,
                "total": str(invoice.total),
                "next_invoice_date": next_invoice_date.isoformat(),
            },
        )
        return InvoicingOutcome(
            pass_name=InvoicingPass.GENERATION,
            outcome=OutcomeKind.CREATED,
            lease_id=lease.id,
            invoice_id=invoice.id,
        )

    # =========================================================================
    # Pointer repair
    # =========================================================================

    def reconcile_lease_pointers(self, lease_id: UUID, organization_id: UUID) -> Lease:
        """
        Rebuild ``last_invoiced_at`` / ``next_invoice_date`` from invoice history.

        The latest invoiced ``period_end`` becomes ``last_invoiced_at`` and the
        next period end follows one cycle later.  A lease with no invoices goes
        back to its first period.  Writes only when the pointers drifted.

        Raises:
            LeaseNotFoundError: lease is not in the organization.
        """
        lease = self._store.find_lease_by_id(lease_id, organization_id)
        if lease is None:
            raise LeaseNotFoundError(str(lease_id), str(organization_id))

        invoices = self._store.find_invoices_by_lease(lease_id, organization_id)
        if invoices:
            last = max(invoice.period_end for invoice in invoices)
            expected_next = advance_invoice_date(last, lease.billing_cycle)
        else:
            last = None
            expected_next = advance_invoice_date(lease.start_date, lease.billing_cycle)

        if lease.last_invoiced_at == last and lease.next_invoice_date == expected_next:
            return lease

        updated = self._store.update_lease(
            lease_id, last_invoiced_at=last, next_invoice_date=expected_next,
        )
        logger.warning(
            "lease_pointers_reconciled",
            extra={
                "lease_id": str(lease_id),
                "previous_last_invoiced_at": lease.last_invoiced_at,
                "previous_next_invoice_date": lease.next_invoice_date,
                "last_invoiced_at": last,
                "next_invoice_date": expected_next,
            },
        )
        return updated


def run_lease_invoicing_for_org(
    session: Session,
    organization_id: UUID,
    as_of: datetime | None = None,
    clock: Clock | None = None,
    config: InvoicingConfig | None = None,
) -> InvoicingRunResult:
    """Convenience wrapper: one organization, default SQL store."""
    service = LeaseInvoicingService(session, clock=clock, config=config)
    return service.run_lease_invoicing_for_org(organization_id, as_of)
