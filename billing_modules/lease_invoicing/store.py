"""
Invoicing store -- the persistence boundary of the lease invoicing engine.

Contract:
    ``InvoicingStore`` is the set of lease/invoice reads and writes the
    orchestrator needs.  ``SqlInvoicingStore`` implements it on a SQLAlchemy
    session.  ``isolation()`` opens a SAVEPOINT so that one lease's work
    (invoice insert + pointer advance) commits or rolls back as a unit.

Architecture: billing_modules/lease_invoicing.  Imports kernel services
    (sequence numbers, clock, typed errors) and sibling ORM/DTO modules.

Invariants enforced:
    - Invoice numbers come from the locked-counter SequenceService, one
      sequence per organization and issue year.
    - A duplicate (lease, period) insert surfaces as
      ``DuplicateInvoicePeriodError``, never as a raw IntegrityError.
    - Non-draft invoices only accept status transitions or status-only
      updates; content edits raise ``InvoiceNotEditableError``.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterator, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    DuplicateInvoicePeriodError,
    InvoiceNotEditableError,
    InvoiceValidationError,
    LeaseNotFoundError,
    LeaseOrganizationMismatchError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.services.sequence_service import SequenceService
from billing_modules.lease_invoicing.calculations import (
    calculate_invoice_totals,
    get_next_invoice_date,
)
from billing_modules.lease_invoicing.config import InvoicingConfig
from billing_modules.lease_invoicing.models import (
    OVERDUE_ELIGIBLE_STATUSES,
    Invoice,
    InvoiceInput,
    InvoiceStatus,
    Lease,
    LeaseFilter,
    LeaseStatus,
)
from billing_modules.lease_invoicing.orm import (
    MAX_ITEM_DESCRIPTION_LENGTH,
    InvoiceModel,
    LeaseModel,
)

logger = get_logger("modules.lease_invoicing.store")


LEASE_UPDATABLE_FIELDS = frozenset({"next_invoice_date", "last_invoiced_at", "status"})

INVOICE_UPDATABLE_FIELDS = frozenset({
    "items", "subtotal", "tax", "total", "vat_rate", "status",
    "issue_date", "due_date", "paid_at", "notes",
})

# Fields that may change on a non-draft invoice without a status transition.
_STATUS_ONLY_FIELDS = frozenset({"status", "paid_at", "notes"})

# Status transitions that unlock a full update on a non-draft invoice.
_UNLOCKING_STATUSES = (InvoiceStatus.SENT, InvoiceStatus.PAID, InvoiceStatus.OVERDUE)


def _validate_items(items) -> None:
    for item in items:
        if len(item.description) > MAX_ITEM_DESCRIPTION_LENGTH:
            raise InvoiceValidationError(
                "items",
                f"description longer than {MAX_ITEM_DESCRIPTION_LENGTH} characters",
            )


@runtime_checkable
class InvoicingStore(Protocol):
    """Persistence operations consumed by the invoicing orchestrator."""

    def find_lease_by_id(self, lease_id: UUID, organization_id: UUID) -> Lease | None:
        ...

    def list_leases(self, lease_filter: LeaseFilter) -> list[Lease]:
        ...

    def update_lease(self, lease_id: UUID, **fields: Any) -> Lease | None:
        ...

    def find_invoices_by_lease(self, lease_id: UUID, organization_id: UUID) -> list[Invoice]:
        ...

    def find_overdue_invoices(
        self,
        organization_id: UUID,
        as_of: datetime,
        statuses: tuple[InvoiceStatus, ...] = OVERDUE_ELIGIBLE_STATUSES,
    ) -> list[Invoice]:
        ...

    def create_invoice(self, invoice_input: InvoiceInput) -> Invoice:
        ...

    def update_invoice(self, invoice_id: UUID, **fields: Any) -> Invoice | None:
        ...

    def isolation(self) -> Any:
        """Context manager scoping one unit of work (commit or roll back)."""
        ...


class SqlInvoicingStore:
    """``InvoicingStore`` over a SQLAlchemy session."""

    def __init__(
        self,
        session: Session,
        sequence_service: SequenceService | None = None,
        clock: Clock | None = None,
        config: InvoicingConfig | None = None,
    ):
        self._session = session
        self._sequence = sequence_service or SequenceService(session)
        self._clock = clock or SystemClock()
        self._config = config or InvoicingConfig.with_defaults()

    # -------------------------------------------------------------------------
    # Unit of work
    # -------------------------------------------------------------------------

    @contextmanager
    def isolation(self) -> Iterator[None]:
        """SAVEPOINT: released on success, rolled back on any exception."""
        with self._session.begin_nested():
            yield

    # -------------------------------------------------------------------------
    # Leases
    # -------------------------------------------------------------------------

    def create_lease(self, lease: Lease, actor_id: UUID | None = None) -> Lease:
        """Persist a lease; the first period end defaults to one cycle after start."""
        if lease.next_invoice_date is None and lease.last_invoiced_at is None:
            lease = replace(lease, next_invoice_date=get_next_invoice_date(lease))
        model = LeaseModel.from_dto(lease, created_by_id=actor_id)
        self._session.add(model)
        self._session.flush()
        return model.to_dto()

    def _lease_model(self, lease_id: UUID) -> LeaseModel | None:
        return self._session.get(LeaseModel, lease_id)

    def find_lease_by_id(self, lease_id: UUID, organization_id: UUID) -> Lease | None:
        model = self._lease_model(lease_id)
        if model is None or model.organization_id != organization_id:
            return None
        return model.to_dto()

    def list_leases(self, lease_filter: LeaseFilter) -> list[Lease]:
        stmt = select(LeaseModel).where(
            LeaseModel.organization_id == lease_filter.organization_id,
        )
        if lease_filter.status is not None:
            stmt = stmt.where(LeaseModel.status == LeaseStatus(lease_filter.status).value)
        if lease_filter.next_invoice_on_or_before is not None:
            stmt = stmt.where(
                LeaseModel.next_invoice_date.is_not(None),
                LeaseModel.next_invoice_date <= lease_filter.next_invoice_on_or_before,
            )
        stmt = stmt.order_by(LeaseModel.next_invoice_date, LeaseModel.id)
        return [m.to_dto() for m in self._session.execute(stmt).scalars().all()]

    def list_organization_ids(self) -> list[UUID]:
        """Every organization that has at least one lease."""
        rows = self._session.execute(
            select(LeaseModel.organization_id).distinct().order_by(LeaseModel.organization_id)
        ).scalars().all()
        return list(rows)

    def update_lease(self, lease_id: UUID, **fields: Any) -> Lease | None:
        unknown = set(fields) - LEASE_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update lease fields: {sorted(unknown)}")

        model = self._lease_model(lease_id)
        if model is None:
            return None

        for name, value in fields.items():
            if name == "status":
                value = LeaseStatus(value).value
            setattr(model, name, value)
        self._session.flush()
        return model.to_dto()

    # -------------------------------------------------------------------------
    # Invoices -- reads
    # -------------------------------------------------------------------------

    def _invoice_model(self, invoice_id: UUID) -> InvoiceModel | None:
        return self._session.get(InvoiceModel, invoice_id)

    def find_invoice_by_id(
        self, invoice_id: UUID, organization_id: UUID | None = None,
    ) -> Invoice | None:
        model = self._invoice_model(invoice_id)
        if model is None:
            return None
        if organization_id is not None and model.organization_id != organization_id:
            return None
        return model.to_dto()

    def find_invoices_by_lease(self, lease_id: UUID, organization_id: UUID) -> list[Invoice]:
        stmt = (
            select(InvoiceModel)
            .where(
                InvoiceModel.lease_id == lease_id,
                InvoiceModel.organization_id == organization_id,
            )
            .order_by(InvoiceModel.period_start, InvoiceModel.period_end)
        )
        return [m.to_dto() for m in self._session.execute(stmt).scalars().all()]

    def find_overdue_invoices(
        self,
        organization_id: UUID,
        as_of: datetime,
        statuses: tuple[InvoiceStatus, ...] = OVERDUE_ELIGIBLE_STATUSES,
    ) -> list[Invoice]:
        """Invoices in an overdue-eligible status whose due date is on/before as_of."""
        stmt = (
            select(InvoiceModel)
            .where(
                InvoiceModel.organization_id == organization_id,
                InvoiceModel.status.in_([s.value for s in statuses]),
                InvoiceModel.due_date <= as_of,
            )
            .order_by(InvoiceModel.due_date, InvoiceModel.id)
        )
        return [m.to_dto() for m in self._session.execute(stmt).scalars().all()]

    # -------------------------------------------------------------------------
    # Invoices -- writes
    # -------------------------------------------------------------------------

    def _next_invoice_number(self, organization_id: UUID, issue_date: datetime) -> str:
        year = issue_date.astimezone(timezone.utc).year
        seq = self._sequence.next_value(
            SequenceService.invoice_sequence_name(organization_id, year)
        )
        return f"{self._config.invoice_number_prefix}-{year}-{seq:03d}"

    def _validate(self, invoice_input: InvoiceInput) -> None:
        lease = self._lease_model(invoice_input.lease_id)
        if lease is None:
            raise LeaseNotFoundError(str(invoice_input.lease_id), str(invoice_input.organization_id))
        if lease.organization_id != invoice_input.organization_id:
            raise LeaseOrganizationMismatchError(
                str(invoice_input.lease_id),
                str(invoice_input.organization_id),
                str(lease.organization_id),
            )
        if lease.tenant_id != invoice_input.tenant_id:
            raise InvoiceValidationError("tenant_id", "does not match the lease tenant")
        if lease.unit_id != invoice_input.unit_id:
            raise InvoiceValidationError("unit_id", "does not match the lease unit")
        if not invoice_input.items:
            raise InvoiceValidationError("items", "at least one item is required")
        _validate_items(invoice_input.items)
        if invoice_input.period_end < invoice_input.period_start:
            raise InvoiceValidationError("period_end", "must not be before period_start")

    def create_invoice(self, invoice_input: InvoiceInput) -> Invoice:
        """
        Validate, number and insert an invoice.

        Totals missing from the input are computed from the items and VAT rate.

        Raises:
            LeaseNotFoundError, LeaseOrganizationMismatchError,
            InvoiceValidationError: input rejected.
            DuplicateInvoicePeriodError: the lease already has an invoice for
                this exact period.
        """
        self._validate(invoice_input)

        totals = calculate_invoice_totals(invoice_input.items, vat_rate=invoice_input.vat_rate)
        subtotal = invoice_input.subtotal if invoice_input.subtotal is not None else totals.subtotal
        tax = invoice_input.tax if invoice_input.tax is not None else totals.tax
        total = invoice_input.total if invoice_input.total is not None else totals.total

        savepoint = self._session.begin_nested()
        try:
            number = invoice_input.invoice_number or self._next_invoice_number(
                invoice_input.organization_id, invoice_input.issue_date,
            )
            model = InvoiceModel(
                organization_id=invoice_input.organization_id,
                lease_id=invoice_input.lease_id,
                tenant_id=invoice_input.tenant_id,
                unit_id=invoice_input.unit_id,
                invoice_number=number,
                issue_date=invoice_input.issue_date,
                due_date=invoice_input.due_date,
                period_start=invoice_input.period_start,
                period_end=invoice_input.period_end,
                vat_rate=invoice_input.vat_rate,
                subtotal=subtotal,
                tax=tax,
                total=total,
                status=InvoiceStatus(invoice_input.status).value,
                notes=invoice_input.notes,
            )
            model.set_items(invoice_input.items)
            self._session.add(model)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            if self._period_taken(invoice_input):
                raise DuplicateInvoicePeriodError(
                    str(invoice_input.lease_id),
                    invoice_input.period_start,
                    invoice_input.period_end,
                ) from None
            raise

        logger.debug(
            "invoice_created",
            extra={
                "invoice_id": str(model.id),
                "invoice_number": number,
                "lease_id": str(invoice_input.lease_id),
                "total": str(total),
            },
        )
        return model.to_dto()

    def _period_taken(self, invoice_input: InvoiceInput) -> bool:
        return self._session.execute(
            select(InvoiceModel.id).where(
                InvoiceModel.lease_id == invoice_input.lease_id,
                InvoiceModel.period_start == invoice_input.period_start,
                InvoiceModel.period_end == invoice_input.period_end,
            )
        ).first() is not None

    def update_invoice(self, invoice_id: UUID, **fields: Any) -> Invoice | None:
        """
        Apply a partial update.

        Replacing ``items`` without explicit totals recomputes subtotal, tax
        and total.  Moving to PAID stamps ``paid_at``; moving away clears it.

        Raises:
            ValueError: unknown field names.
            InvoiceValidationError: an item description is too long.
            InvoiceNotEditableError: content edit on a non-draft invoice, or
                cancelling a paid invoice.
        """
        unknown = set(fields) - INVOICE_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update invoice fields: {sorted(unknown)}")

        model = self._invoice_model(invoice_id)
        if model is None:
            return None

        current = InvoiceStatus(model.status)
        new_status = InvoiceStatus(fields["status"]) if "status" in fields else None

        if current is not InvoiceStatus.DRAFT:
            status_only = set(fields) <= _STATUS_ONLY_FIELDS
            if not status_only and new_status not in _UNLOCKING_STATUSES:
                raise InvoiceNotEditableError(str(invoice_id), current.value, sorted(fields))
        if current is InvoiceStatus.PAID and new_status is InvoiceStatus.CANCELLED:
            raise InvoiceNotEditableError(str(invoice_id), current.value, ["status"])

        if "items" in fields:
            items = tuple(fields["items"])
            _validate_items(items)
            model.set_items(items)
            if not {"subtotal", "tax", "total"} & set(fields):
                vat_rate = fields.get("vat_rate", model.vat_rate)
                totals = calculate_invoice_totals(items, vat_rate=vat_rate)
                model.subtotal, model.tax, model.total = totals.subtotal, totals.tax, totals.total

        for name in ("subtotal", "tax", "total", "vat_rate", "issue_date", "due_date", "notes"):
            if name in fields:
                setattr(model, name, fields[name])

        if new_status is not None:
            model.status = new_status.value
            if new_status is InvoiceStatus.PAID:
                model.paid_at = fields.get("paid_at") or model.paid_at or self._clock.now()
            elif current is InvoiceStatus.PAID:
                model.paid_at = None
        if "paid_at" in fields and new_status is None:
            model.paid_at = fields["paid_at"]

        self._session.flush()
        return model.to_dto()
