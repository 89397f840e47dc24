"""
Lease Invoicing Configuration Schema.

Defaults the engine falls back to when a lease does not say otherwise.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Self

from billing_kernel.logging_config import get_logger
from billing_modules.lease_invoicing.models import InvoiceStatus, OVERDUE_ELIGIBLE_STATUSES

logger = get_logger("modules.lease_invoicing.config")


@dataclass
class InvoicingConfig:
    """Configuration schema for the lease invoicing module."""

    # Rate used to back out VAT from VAT-inclusive quotes with no rate set
    default_vat_rate: Decimal = Decimal("15")

    # Days from issue to due when neither lease nor penalty config say
    default_payment_due_days: int = 7

    # Invoice states the late-fee pass revisits
    eligible_overdue_statuses: tuple[InvoiceStatus, ...] = field(
        default=OVERDUE_ELIGIBLE_STATUSES,
    )

    # INV-2024-001
    invoice_number_prefix: str = "INV"

    def __post_init__(self):
        self.default_vat_rate = Decimal(str(self.default_vat_rate))
        self.eligible_overdue_statuses = tuple(
            InvoiceStatus(s) for s in self.eligible_overdue_statuses
        )
        if self.default_vat_rate < 0:
            raise ValueError("default_vat_rate cannot be negative")
        if self.default_payment_due_days < 0:
            raise ValueError("default_payment_due_days cannot be negative")
        if not self.invoice_number_prefix:
            raise ValueError("invoice_number_prefix is required")
        if not self.eligible_overdue_statuses:
            raise ValueError("eligible_overdue_statuses cannot be empty")

        logger.debug(
            "invoicing_config_initialized",
            extra={
                "default_vat_rate": str(self.default_vat_rate),
                "default_payment_due_days": self.default_payment_due_days,
                "eligible_overdue_statuses": [s.value for s in self.eligible_overdue_statuses],
                "invoice_number_prefix": self.invoice_number_prefix,
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with the standard defaults."""
        return cls()
