"""
Lease Invoicing ORM Models (``billing_modules.lease_invoicing.orm``).

Responsibility
--------------
SQLAlchemy persistence for leases (billing view), invoices and invoice line
items.  Maps the frozen dataclasses in ``models.py`` to tables via
``to_dto()`` / ``from_dto()``.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``billing_kernel.db.base``
and sibling ``models.py``.  MUST NOT be imported by ``billing_kernel``
(engine.create_tables imports it lazily).

Invariants enforced
-------------------
* At most one invoice per (lease_id, period_start, period_end)
  (``uq_invoices_lease_period``).
* Invoice numbers are unique per organization (``uq_invoices_org_number``).
* Line items keep their order via ``line_number``.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_modules.lease_invoicing.models import (
    AdditionalCharge,
    BillingCycle,
    Invoice,
    InvoiceItem,
    InvoiceItemType,
    InvoiceStatus,
    Lease,
    LeaseStatus,
    LeaseTerms,
    PenaltyConfig,
)


MAX_ITEM_DESCRIPTION_LENGTH = 200


def _dec(value) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def _penalty_to_json(config: PenaltyConfig | None) -> dict | None:
    if config is None:
        return None
    return {
        "late_fee_rate_per_day": (
            str(config.late_fee_rate_per_day)
            if config.late_fee_rate_per_day is not None else None
        ),
        "late_fee_grace_days": config.late_fee_grace_days,
        "late_fee_cap_days": config.late_fee_cap_days,
        "grace_period_days": config.grace_period_days,
        "payment_due_days": config.payment_due_days,
    }


def _penalty_from_json(data: dict | None) -> PenaltyConfig | None:
    if data is None:
        return None
    return PenaltyConfig(
        late_fee_rate_per_day=_dec(data.get("late_fee_rate_per_day")),
        late_fee_grace_days=data.get("late_fee_grace_days"),
        late_fee_cap_days=data.get("late_fee_cap_days"),
        grace_period_days=data.get("grace_period_days"),
        payment_due_days=data.get("payment_due_days"),
    )


# ---------------------------------------------------------------------------
# 1. LeaseModel
# ---------------------------------------------------------------------------


class LeaseModel(TrackedBase):
    """
    ORM model for the billing-relevant part of a lease.

    Maps to the ``Lease`` frozen dataclass.  The engine only ever writes
    ``next_invoice_date`` and ``last_invoiced_at``.
    """

    __tablename__ = "leases"

    __table_args__ = (
        Index("idx_leases_org_status_next", "organization_id", "status", "next_invoice_date"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    unit_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    start_date: Mapped[datetime]
    end_date: Mapped[datetime | None]
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)

    rent: Mapped[Decimal]
    deposit: Mapped[Decimal | None]
    service_charges: Mapped[Decimal | None]
    terms_vat_rate: Mapped[Decimal | None]
    vat_included: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    rent_amount: Mapped[Decimal | None]
    vat_rate: Mapped[Decimal | None]
    payment_due_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    additional_charges: Mapped[list | None] = mapped_column(JSON, nullable=True)
    penalty_config: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    next_invoice_date: Mapped[datetime | None]
    last_invoiced_at: Mapped[datetime | None]

    def to_dto(self) -> Lease:
        return Lease(
            id=self.id,
            organization_id=self.organization_id,
            tenant_id=self.tenant_id,
            unit_id=self.unit_id,
            start_date=self.start_date,
            end_date=self.end_date,
            billing_cycle=BillingCycle(self.billing_cycle),
            terms=LeaseTerms(
                rent=self.rent,
                deposit=self.deposit,
                service_charges=self.service_charges,
                vat_rate=self.terms_vat_rate,
                vat_included=self.vat_included,
            ),
            rent_amount=self.rent_amount,
            vat_rate=self.vat_rate,
            additional_charges=tuple(
                AdditionalCharge(name=c["name"], amount=Decimal(str(c["amount"])))
                for c in (self.additional_charges or [])
            ),
            payment_due_days=self.payment_due_days,
            penalty_config=_penalty_from_json(self.penalty_config),
            next_invoice_date=self.next_invoice_date,
            last_invoiced_at=self.last_invoiced_at,
            status=LeaseStatus(self.status),
        )

    @classmethod
    def from_dto(cls, dto: Lease, created_by_id: UUID | None = None) -> "LeaseModel":
        return cls(
            id=dto.id,
            organization_id=dto.organization_id,
            tenant_id=dto.tenant_id,
            unit_id=dto.unit_id,
            start_date=dto.start_date,
            end_date=dto.end_date,
            billing_cycle=BillingCycle(dto.billing_cycle).value,
            status=dto.status.value,
            rent=dto.terms.rent,
            deposit=dto.terms.deposit,
            service_charges=dto.terms.service_charges,
            terms_vat_rate=dto.terms.vat_rate,
            vat_included=dto.terms.vat_included,
            rent_amount=dto.rent_amount,
            vat_rate=dto.vat_rate,
            payment_due_days=dto.payment_due_days,
            additional_charges=[
                {"name": c.name, "amount": str(c.amount)} for c in dto.additional_charges
            ] or None,
            penalty_config=_penalty_to_json(dto.penalty_config),
            next_invoice_date=dto.next_invoice_date,
            last_invoiced_at=dto.last_invoiced_at,
            created_by_id=created_by_id,
        )


# ---------------------------------------------------------------------------
# 2. InvoiceModel
# ---------------------------------------------------------------------------


class InvoiceModel(TrackedBase):
    """
    ORM model for lease invoices.

    Guarantees:
        - (lease_id, period_start, period_end) is unique.
        - (organization_id, invoice_number) is unique.
        - Items are loaded in line_number order.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("lease_id", "period_start", "period_end", name="uq_invoices_lease_period"),
        UniqueConstraint("organization_id", "invoice_number", name="uq_invoices_org_number"),
        Index("idx_invoices_org_status_due", "organization_id", "status", "due_date"),
        Index("idx_invoices_lease", "lease_id"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    lease_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("leases.id"), nullable=False,
    )
    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    unit_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)
    issue_date: Mapped[datetime]
    due_date: Mapped[datetime]
    period_start: Mapped[datetime]
    period_end: Mapped[datetime]
    vat_rate: Mapped[Decimal | None]
    subtotal: Mapped[Decimal]
    tax: Mapped[Decimal]
    total: Mapped[Decimal | None]
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    paid_at: Mapped[datetime | None]
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    items: Mapped[list["InvoiceItemModel"]] = relationship(
        "InvoiceItemModel",
        back_populates="invoice",
        order_by="InvoiceItemModel.line_number",
        cascade="all, delete-orphan",
    )

    def set_items(self, items: tuple[InvoiceItem, ...] | list[InvoiceItem]) -> None:
        """Replace every line item, renumbering from 1."""
        self.items = [
            InvoiceItemModel(
                line_number=n,
                description=item.description,
                amount=item.amount,
                item_type=item.type.value,
            )
            for n, item in enumerate(items, start=1)
        ]

    def to_dto(self) -> Invoice:
        return Invoice(
            id=self.id,
            organization_id=self.organization_id,
            lease_id=self.lease_id,
            tenant_id=self.tenant_id,
            unit_id=self.unit_id,
            invoice_number=self.invoice_number,
            issue_date=self.issue_date,
            due_date=self.due_date,
            period_start=self.period_start,
            period_end=self.period_end,
            items=tuple(item.to_dto() for item in self.items),
            vat_rate=self.vat_rate,
            subtotal=self.subtotal,
            tax=self.tax,
            total=self.total,
            status=InvoiceStatus(self.status),
            paid_at=self.paid_at,
            notes=self.notes,
        )


# ---------------------------------------------------------------------------
# 3. InvoiceItemModel
# ---------------------------------------------------------------------------


class InvoiceItemModel(TrackedBase):
    """One line on an invoice."""

    __tablename__ = "invoice_items"

    __table_args__ = (
        Index("idx_invoice_items_invoice_line", "invoice_id", "line_number"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(
        String(MAX_ITEM_DESCRIPTION_LENGTH), nullable=False,
    )
    amount: Mapped[Decimal]
    item_type: Mapped[str] = mapped_column(String(20), nullable=False)

    invoice: Mapped["InvoiceModel"] = relationship("InvoiceModel", back_populates="items")

    def to_dto(self) -> InvoiceItem:
        return InvoiceItem(
            description=self.description,
            amount=self.amount,
            type=InvoiceItemType(self.item_type),
        )
