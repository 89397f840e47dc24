"""
Idempotency guard for invoice generation.

Before an invoice is created for a lease and billing period, the guard asks
the store whether one already exists for exactly that period.  Periods are
derived deterministically from lease state, so exact boundary equality is
the right test (not overlap).  The database unique constraint on
(lease_id, period_start, period_end) backs this check up when two runs race.
"""

from datetime import datetime, timezone
from uuid import UUID

from billing_modules.lease_invoicing.store import InvoicingStore


def _instant(value: datetime) -> datetime:
    return value.astimezone(timezone.utc)


def period_key(lease_id: UUID, period_start: datetime, period_end: datetime) -> str:
    """Stable text key for a lease billing period (logs, job records)."""
    return f"{lease_id}:{_instant(period_start).isoformat()}:{_instant(period_end).isoformat()}"


def invoice_exists_for_period(
    store: InvoicingStore,
    lease_id: UUID,
    period_start: datetime,
    period_end: datetime,
    organization_id: UUID,
) -> bool:
    """True if the lease already has an invoice for exactly this period."""
    start, end = _instant(period_start), _instant(period_end)
    return any(
        _instant(invoice.period_start) == start and _instant(invoice.period_end) == end
        for invoice in store.find_invoices_by_lease(lease_id, organization_id)
    )
