"""
Lease Invoicing Pure Calculation Functions.

Domain math for recurring lease billing:
- Billing cycle date advancement
- Invoice line building
- VAT normalization (VAT-inclusive quotes to tax-exclusive lines)
- Invoice totals
- Late fees and payment terms

Every function here is pure: same inputs, same outputs, no I/O, no clock.

Rounding policy: all currency rounding is ROUND_HALF_UP to the whole
currency unit.  VAT normalization rounds per line; tax and late fees round
the aggregate once.
"""

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence

from dateutil.relativedelta import relativedelta

from billing_modules.lease_invoicing.models import (
    BillingCycle,
    InvoiceItem,
    InvoiceItemType,
    InvoiceTotals,
    Lease,
    VatNormalization,
)

DEFAULT_VAT_RATE = Decimal("15")
DEFAULT_PAYMENT_DUE_DAYS = 7

_CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.ANNUAL: 12,
}

_ONE_DAY = timedelta(days=1)
_HUNDRED = Decimal("100")
_VAT_ADJUSTED_TYPES = (InvoiceItemType.RENT, InvoiceItemType.CHARGE)


def round_currency(amount: Decimal) -> Decimal:
    """Round half-up to the whole currency unit."""
    return Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def advance_invoice_date(period_end: datetime, cycle: BillingCycle) -> datetime:
    """
    Next period end after ``period_end`` for the given billing cycle.

    Month-end policy: the day is clamped to the last day of the target month,
    so Jan 31 + 1 month = Feb 29 (leap) / Feb 28, and Feb 29 + 1 year = Feb 28.
    The clamp is applied to each step from the given date, not from the
    lease's original anniversary.  Time of day and tzinfo are preserved.
    """
    return period_end + relativedelta(months=_CYCLE_MONTHS[BillingCycle(cycle)])


def get_next_invoice_date(lease: Lease) -> datetime:
    """The lease's next period end, defaulting to one cycle after start."""
    if lease.next_invoice_date is not None:
        return lease.next_invoice_date
    return advance_invoice_date(lease.start_date, lease.billing_cycle)


def _present(amount: Decimal | None) -> bool:
    return amount is not None and amount != 0


def build_invoice_items(lease: Lease, include_deposit: bool) -> tuple[InvoiceItem, ...]:
    """
    Charge lines for the lease's upcoming billing period.

    Order: rent, service charges, deposit (first invoice only), then each
    additional charge in source order.
    """
    terms = lease.terms
    rent = lease.rent_amount if lease.rent_amount is not None else terms.rent
    items = [InvoiceItem("Rent", Decimal(rent), InvoiceItemType.RENT)]

    if _present(terms.service_charges):
        items.append(
            InvoiceItem("Service Charges", Decimal(terms.service_charges), InvoiceItemType.CHARGE)
        )

    if include_deposit and _present(terms.deposit):
        items.append(
            InvoiceItem("Security Deposit", Decimal(terms.deposit), InvoiceItemType.DEPOSIT)
        )

    for charge in lease.additional_charges:
        items.append(InvoiceItem(charge.name, Decimal(charge.amount), InvoiceItemType.CHARGE))

    return tuple(items)


def resolve_vat_rate(
    lease: Lease,
    default_rate: Decimal = DEFAULT_VAT_RATE,
) -> Decimal | None:
    """
    VAT rate that applies to the lease, in percent.

    ``terms.vat_rate`` wins over the lease-level rate.  The default rate only
    applies to VAT-inclusive leases, which need a rate to back-calculate the
    base; a VAT-exclusive lease with no configured rate is not taxed.
    """
    if lease.terms.vat_rate is not None:
        return Decimal(lease.terms.vat_rate)
    if lease.vat_rate is not None:
        return Decimal(lease.vat_rate)
    if lease.terms.vat_included:
        return Decimal(default_rate)
    return None


def normalize_vat(
    lease: Lease,
    items: Sequence[InvoiceItem],
    default_rate: Decimal = DEFAULT_VAT_RATE,
) -> VatNormalization:
    """
    Convert VAT-inclusive rent and charge lines to tax-exclusive amounts.

    Each rent/charge line is divided by ``1 + rate/100`` and rounded per line.
    Deposit and penalty lines are never adjusted.  VAT-exclusive leases pass
    through unchanged.
    """
    vat_rate = resolve_vat_rate(lease, default_rate)
    if not lease.terms.vat_included or vat_rate is None:
        return VatNormalization(items=tuple(items), vat_rate=vat_rate)

    divisor = Decimal("1") + vat_rate / _HUNDRED
    normalized = tuple(
        item.with_amount(round_currency(item.amount / divisor))
        if item.type in _VAT_ADJUSTED_TYPES
        else item
        for item in items
    )
    return VatNormalization(items=normalized, vat_rate=vat_rate)


def calculate_invoice_totals(
    items: Iterable[InvoiceItem],
    discount: Decimal = Decimal("0"),
    vat_rate: Decimal | None = None,
) -> InvoiceTotals:
    """
    subtotal = sum(items); tax = round(subtotal * rate / 100) when a rate is
    given, else 0; total = subtotal + tax - discount.
    """
    subtotal = sum((Decimal(item.amount) for item in items), Decimal("0"))
    if vat_rate is not None:
        tax = round_currency(subtotal * Decimal(vat_rate) / _HUNDRED)
    else:
        tax = Decimal("0")
    total = subtotal + tax - Decimal(discount or 0)
    return InvoiceTotals(subtotal=subtotal, tax=tax, total=total)


def get_payment_due_days(lease: Lease, default: int = DEFAULT_PAYMENT_DUE_DAYS) -> int:
    """
    Days between issue and due date.

    Resolution order: lease.payment_due_days, penalty payment_due_days,
    penalty grace_period_days, then ``default``.
    """
    if lease.payment_due_days is not None:
        return lease.payment_due_days
    penalty = lease.penalty_config
    if penalty is not None:
        if penalty.payment_due_days is not None:
            return penalty.payment_due_days
        if penalty.grace_period_days is not None:
            return penalty.grace_period_days
    return default


def late_fee_grace_days(lease: Lease) -> int:
    penalty = lease.penalty_config
    if penalty is None:
        return 0
    if penalty.late_fee_grace_days is not None:
        return penalty.late_fee_grace_days
    if penalty.grace_period_days is not None:
        return penalty.grace_period_days
    return 0


def days_past_due(due_date: datetime, as_of: datetime) -> int:
    """Whole days elapsed since ``due_date`` (floored, negative before due)."""
    return (as_of - due_date) // _ONE_DAY


def compute_late_fee(
    lease: Lease,
    amount_base: Decimal,
    due_date: datetime,
    as_of: datetime,
) -> Decimal:
    """
    Late fee currently owed on an invoice.

    fee = round(base * rate_per_day * effective_days) where effective_days
    is the days late beyond grace, capped at ``late_fee_cap_days`` when a
    non-zero cap is configured.  Zero when there is no penalty regime (no
    config, or no non-zero rate) or while within grace.  Non-decreasing in
    ``as_of``; constant once the cap engages.
    """
    penalty = lease.penalty_config
    if penalty is None or not penalty.late_fee_rate_per_day:
        return Decimal("0")

    days_late = max(0, days_past_due(due_date, as_of) - late_fee_grace_days(lease))
    if days_late <= 0:
        return Decimal("0")

    # A cap of 0 is treated as "not configured".
    if penalty.late_fee_cap_days:
        days_late = min(days_late, penalty.late_fee_cap_days)

    fee = Decimal(amount_base) * Decimal(penalty.late_fee_rate_per_day) * days_late
    return max(round_currency(fee), Decimal("0"))


def strip_penalty_items(items: Iterable[InvoiceItem]) -> tuple[InvoiceItem, ...]:
    return tuple(item for item in items if item.type is not InvoiceItemType.PENALTY)


def penalty_item(fee: Decimal, rate_per_day: Decimal) -> InvoiceItem:
    return InvoiceItem(
        description=f"Late fee ({rate_per_day} per day)",
        amount=fee,
        type=InvoiceItemType.PENALTY,
    )
