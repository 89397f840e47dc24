"""
Lease Invoicing Domain Models (``billing_modules.lease_invoicing.models``).

Responsibility
--------------
Frozen dataclass value objects for the nouns of recurring lease billing:
leases and their billing/penalty configuration, invoices and their line
items, and the structured result of an invoicing run.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.  Produced by the
store, consumed by the calculations and the orchestrator.

Invariants enforced
-------------------
* All models are ``frozen=True`` (immutable after construction).
* All monetary fields use ``Decimal`` -- NEVER ``float``.
* All timestamps are timezone-aware UTC ``datetime`` values.

Failure modes
-------------
* Construction with an unknown enum value raises ``ValueError``.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class BillingCycle(Enum):
    """Recurrence interval at which a lease is invoiced."""
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"

    @classmethod
    def _missing_(cls, value):
        # Lease records written by older clients spell it "annually".
        if value == "annually":
            return cls.ANNUAL
        return None


class LeaseStatus(Enum):
    """Lease lifecycle states (owned by the surrounding domain)."""
    ACTIVE = "active"
    PENDING = "pending"
    EXPIRED = "expired"
    TERMINATED = "terminated"


class InvoiceStatus(Enum):
    """Invoice lifecycle states.

    The engine only writes SENT (creation) and OVERDUE (late-fee pass);
    PAID and CANCELLED come from payment and admin flows.
    """
    DRAFT = "draft"
    SENT = "sent"
    OVERDUE = "overdue"
    PAID = "paid"
    CANCELLED = "cancelled"


class InvoiceItemType(Enum):
    """Kind of charge a line item represents."""
    RENT = "rent"
    CHARGE = "charge"
    DEPOSIT = "deposit"
    PENALTY = "penalty"
    OTHER = "other"


OVERDUE_ELIGIBLE_STATUSES = (InvoiceStatus.SENT, InvoiceStatus.OVERDUE)


@dataclass(frozen=True)
class LeaseTerms:
    """Commercial terms quoted on the lease."""
    rent: Decimal
    deposit: Decimal | None = None
    service_charges: Decimal | None = None
    vat_rate: Decimal | None = None  # percent, e.g. Decimal("15")
    vat_included: bool = False  # quoted rent/charges already contain VAT


@dataclass(frozen=True)
class AdditionalCharge:
    """A named recurring charge billed every period."""
    name: str
    amount: Decimal


@dataclass(frozen=True)
class PenaltyConfig:
    """Late-fee settings; every field is optional."""
    late_fee_rate_per_day: Decimal | None = None  # fraction of base per day
    late_fee_grace_days: int | None = None
    late_fee_cap_days: int | None = None
    grace_period_days: int | None = None  # legacy alias
    payment_due_days: int | None = None  # legacy alias


@dataclass(frozen=True)
class Lease:
    """A tenant's lease on a unit, as far as billing needs to know it."""
    id: UUID
    organization_id: UUID
    tenant_id: UUID
    unit_id: UUID
    start_date: datetime
    billing_cycle: BillingCycle
    terms: LeaseTerms
    end_date: datetime | None = None
    rent_amount: Decimal | None = None  # overrides terms.rent
    vat_rate: Decimal | None = None  # lease-level fallback rate
    additional_charges: tuple[AdditionalCharge, ...] = ()
    payment_due_days: int | None = None
    penalty_config: PenaltyConfig | None = None
    next_invoice_date: datetime | None = None  # next period end to bill
    last_invoiced_at: datetime | None = None  # previous period end
    status: LeaseStatus = LeaseStatus.ACTIVE

    @property
    def is_first_invoice(self) -> bool:
        return self.last_invoiced_at is None

    @property
    def current_period_start(self) -> datetime:
        return self.last_invoiced_at or self.start_date


@dataclass(frozen=True)
class InvoiceItem:
    """A single line on an invoice."""
    description: str
    amount: Decimal
    type: InvoiceItemType = InvoiceItemType.OTHER

    def with_amount(self, amount: Decimal) -> "InvoiceItem":
        return replace(self, amount=amount)


@dataclass(frozen=True)
class InvoiceTotals:
    """Computed money figures for a set of items."""
    subtotal: Decimal
    tax: Decimal
    total: Decimal


@dataclass(frozen=True)
class VatNormalization:
    """Tax-exclusive items plus the rate they should be taxed at."""
    items: tuple[InvoiceItem, ...]
    vat_rate: Decimal | None


@dataclass(frozen=True)
class Invoice:
    """An invoice billed against a lease for one billing period."""
    id: UUID
    organization_id: UUID
    lease_id: UUID
    tenant_id: UUID
    unit_id: UUID
    invoice_number: str
    issue_date: datetime
    due_date: datetime
    period_start: datetime
    period_end: datetime
    items: tuple[InvoiceItem, ...]
    subtotal: Decimal
    tax: Decimal
    total: Decimal | None
    status: InvoiceStatus
    vat_rate: Decimal | None = None
    paid_at: datetime | None = None
    notes: str | None = None

    @property
    def penalty_item(self) -> InvoiceItem | None:
        for item in self.items:
            if item.type is InvoiceItemType.PENALTY:
                return item
        return None


@dataclass(frozen=True)
class InvoiceInput:
    """Everything needed to create an invoice; totals are computed by the store
    when not supplied."""
    organization_id: UUID
    lease_id: UUID
    tenant_id: UUID
    unit_id: UUID
    issue_date: datetime
    due_date: datetime
    period_start: datetime
    period_end: datetime
    items: tuple[InvoiceItem, ...]
    status: InvoiceStatus = InvoiceStatus.DRAFT
    vat_rate: Decimal | None = None
    subtotal: Decimal | None = None
    tax: Decimal | None = None
    total: Decimal | None = None
    invoice_number: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class LeaseFilter:
    """Query filter for ``list_leases``."""
    organization_id: UUID
    status: LeaseStatus | None = None
    next_invoice_on_or_before: datetime | None = None


class InvoicingPass(Enum):
    """Which half of an invoicing run produced an outcome."""
    LATE_FEE = "late_fee"
    GENERATION = "generation"


class OutcomeKind(Enum):
    """What happened to one lease or invoice during a run."""
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class InvoicingOutcome:
    """Per-item result of an invoicing run."""
    pass_name: InvoicingPass
    outcome: OutcomeKind
    lease_id: UUID | None
    invoice_id: UUID | None = None
    reason: str | None = None
    error_code: str | None = None
    late_fee: Decimal | None = None


@dataclass(frozen=True)
class InvoicingRunResult:
    """Structured summary of ``run_lease_invoicing_for_org``."""
    organization_id: UUID
    as_of: datetime
    outcomes: tuple[InvoicingOutcome, ...] = field(default_factory=tuple)

    def count(self, outcome: OutcomeKind, pass_name: InvoicingPass | None = None) -> int:
        return sum(
            1 for o in self.outcomes
            if o.outcome is outcome and (pass_name is None or o.pass_name is pass_name)
        )

    @property
    def created(self) -> int:
        return self.count(OutcomeKind.CREATED)

    @property
    def updated(self) -> int:
        return self.count(OutcomeKind.UPDATED)

    @property
    def skipped(self) -> int:
        return self.count(OutcomeKind.SKIPPED)

    @property
    def failed(self) -> int:
        return self.count(OutcomeKind.FAILED)

    def to_summary(self) -> dict:
        """Plain-dict summary for logs, job records and the CLI."""
        return {
            "organization_id": str(self.organization_id),
            "as_of": self.as_of.isoformat(),
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "outcomes": [
                {
                    "pass": o.pass_name.value,
                    "outcome": o.outcome.value,
                    "lease_id": str(o.lease_id) if o.lease_id else None,
                    "invoice_id": str(o.invoice_id) if o.invoice_id else None,
                    "reason": o.reason,
                    "error_code": o.error_code,
                }
                for o in self.outcomes
            ],
        }
