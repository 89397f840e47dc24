"""
Lease Invoicing Module (``billing_modules.lease_invoicing``).

Responsibility
--------------
Turns each lease's recurring-billing configuration into invoices, keeps
generation idempotent across repeated scheduled runs, and re-prices unpaid
invoices with late fees.

Architecture position
---------------------
**Modules layer** -- pure calculations (``calculations``), an idempotency
guard, a persistence boundary (``store``) and the per-organization
orchestrator (``service``).  Invoked by ``billing_batch`` or the CLI.

Invariants enforced
-------------------
* At most one invoice per (lease, period_start, period_end): guard query
  plus ``uq_invoices_lease_period``.
* At most one ``penalty`` line per invoice; it is replaced on every pass.
* Deposit is billed on the first invoice of a lease only.
* Per-lease atomicity: invoice insert and pointer advance share a SAVEPOINT.

Failure modes
-------------
* Per-item errors become ``failed`` outcomes in ``InvoicingRunResult``.
* Duplicate-period races become ``skipped`` outcomes.
"""

from billing_modules.lease_invoicing.calculations import (
    advance_invoice_date,
    build_invoice_items,
    calculate_invoice_totals,
    compute_late_fee,
    get_next_invoice_date,
    get_payment_due_days,
    normalize_vat,
    resolve_vat_rate,
    round_currency,
)
from billing_modules.lease_invoicing.config import InvoicingConfig
from billing_modules.lease_invoicing.idempotency import invoice_exists_for_period, period_key
from billing_modules.lease_invoicing.models import (
    AdditionalCharge,
    BillingCycle,
    Invoice,
    InvoiceInput,
    InvoiceItem,
    InvoiceItemType,
    InvoiceStatus,
    InvoiceTotals,
    InvoicingOutcome,
    InvoicingPass,
    InvoicingRunResult,
    Lease,
    LeaseFilter,
    LeaseStatus,
    LeaseTerms,
    OutcomeKind,
    PenaltyConfig,
    VatNormalization,
)
from billing_modules.lease_invoicing.service import (
    LeaseInvoicingService,
    run_lease_invoicing_for_org,
)
from billing_modules.lease_invoicing.store import InvoicingStore, SqlInvoicingStore

__all__ = [
    "AdditionalCharge",
    "BillingCycle",
    "Invoice",
    "InvoiceInput",
    "InvoiceItem",
    "InvoiceItemType",
    "InvoiceStatus",
    "InvoiceTotals",
    "InvoicingConfig",
    "InvoicingOutcome",
    "InvoicingPass",
    "InvoicingRunResult",
    "InvoicingStore",
    "Lease",
    "LeaseFilter",
    "LeaseInvoicingService",
    "LeaseStatus",
    "LeaseTerms",
    "OutcomeKind",
    "PenaltyConfig",
    "SqlInvoicingStore",
    "VatNormalization",
    "advance_invoice_date",
    "build_invoice_items",
    "calculate_invoice_totals",
    "compute_late_fee",
    "get_next_invoice_date",
    "get_payment_due_days",
    "invoice_exists_for_period",
    "normalize_vat",
    "period_key",
    "resolve_vat_rate",
    "round_currency",
    "run_lease_invoicing_for_org",
]
