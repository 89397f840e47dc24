"""
Typed Exception Hierarchy for the Billing Kernel.

Every error raised by the billing engine is a typed exception carrying:
  1. a CODE class attribute (machine-readable, API-safe, logged as exc_code)
  2. structured DATA as instance attributes (not just a message string)

Example - handling a per-lease failure without parsing messages:

    try:
        store.create_invoice(invoice_input)
    except DuplicateInvoicePeriodError as e:
        outcome = "skipped"           # another run got there first
    except InvoiceValidationError as e:
        log.warning("invoice_rejected", extra={"field": e.field})

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- LeaseError
    |   +-- LeaseNotFoundError
    |   +-- LeaseOrganizationMismatchError
    |
    +-- InvoiceError
    |   +-- InvoiceNotFoundError
    |   +-- InvoiceValidationError
    |   +-- InvoiceNotEditableError
    |   +-- DuplicateInvoicePeriodError
    |
    +-- BatchError
    |   +-- InvoicingJobNotFoundError
    |   +-- InvoicingJobAlreadyRunError
    |   +-- BatchIdempotencyError
    |
    +-- ScheduleError
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category   | Code                        | When Raised
-----------|-----------------------------|-----------------------------------------
Lease      | LEASE_NOT_FOUND             | Lease ID doesn't exist in the organization
           | LEASE_ORGANIZATION_MISMATCH | Lease belongs to another organization
-----------|-----------------------------|-----------------------------------------
Invoice    | INVOICE_NOT_FOUND           | Invoice ID doesn't exist
           | INVOICE_VALIDATION_FAILED   | Input rejected (no items, bad dates, ...)
           | INVOICE_NOT_EDITABLE        | Content edit on a non-draft invoice
           | DUPLICATE_INVOICE_PERIOD    | (lease, period_start, period_end) exists
-----------|-----------------------------|-----------------------------------------
Batch      | INVOICING_JOB_NOT_FOUND     | Job ID doesn't exist
           | INVOICING_JOB_ALREADY_RUN   | Job is running or already finished
           | BATCH_IDEMPOTENCY_CONFLICT  | Idempotency key already used
-----------|-----------------------------|-----------------------------------------
Schedule   | SCHEDULE_ERROR              | Invalid schedule definition
Config     | CONFIGURATION_ERROR         | Invalid configuration value
"""

from typing import Any


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


# Lease-related exceptions


class LeaseError(BillingKernelError):
    """Base exception for lease-related errors."""

    code: str = "LEASE_ERROR"


class LeaseNotFoundError(LeaseError):
    """Lease with given ID was not found in the organization."""

    code: str = "LEASE_NOT_FOUND"

    def __init__(self, lease_id: str, organization_id: str | None = None):
        self.lease_id = lease_id
        self.organization_id = organization_id
        super().__init__(f"Lease not found: {lease_id}")


class LeaseOrganizationMismatchError(LeaseError):
    """Lease exists but belongs to a different organization."""

    code: str = "LEASE_ORGANIZATION_MISMATCH"

    def __init__(self, lease_id: str, expected_org: str, actual_org: str):
        self.lease_id = lease_id
        self.expected_org = expected_org
        self.actual_org = actual_org
        super().__init__(
            f"Lease {lease_id} belongs to organization {actual_org}, "
            f"not {expected_org}"
        )


# Invoice-related exceptions


class InvoiceError(BillingKernelError):
    """Base exception for invoice-related errors."""

    code: str = "INVOICE_ERROR"


class InvoiceNotFoundError(InvoiceError):
    """Invoice with given ID was not found."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class InvoiceValidationError(InvoiceError):
    """Invoice input failed validation."""

    code: str = "INVOICE_VALIDATION_FAILED"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid invoice {field}: {reason}")


class InvoiceNotEditableError(InvoiceError):
    """Content update attempted on an invoice that is no longer a draft."""

    code: str = "INVOICE_NOT_EDITABLE"

    def __init__(self, invoice_id: str, status: str, fields: list[str]):
        self.invoice_id = invoice_id
        self.status = status
        self.fields = fields
        super().__init__(
            f"Invoice {invoice_id} is {status}; cannot update {', '.join(fields)}"
        )


class DuplicateInvoicePeriodError(InvoiceError):
    """An invoice already covers this exact billing period for the lease."""

    code: str = "DUPLICATE_INVOICE_PERIOD"

    def __init__(self, lease_id: str, period_start: Any, period_end: Any):
        self.lease_id = lease_id
        self.period_start = period_start
        self.period_end = period_end
        super().__init__(
            f"Invoice already exists for lease {lease_id} "
            f"period {period_start} - {period_end}"
        )


# Batch-related exceptions


class BatchError(BillingKernelError):
    """Base exception for invoicing job errors."""

    code: str = "BATCH_ERROR"


class InvoicingJobNotFoundError(BatchError):
    """Invoicing job with given ID was not found."""

    code: str = "INVOICING_JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Invoicing job not found: {job_id}")


class InvoicingJobAlreadyRunError(BatchError):
    """Invoicing job is running or has already finished."""

    code: str = "INVOICING_JOB_ALREADY_RUN"

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Invoicing job {job_id} is already {status}")


class BatchIdempotencyError(BatchError):
    """Idempotency key has already been used by another job."""

    code: str = "BATCH_IDEMPOTENCY_CONFLICT"

    def __init__(self, idempotency_key: str, existing_job_id: str):
        self.idempotency_key = idempotency_key
        self.existing_job_id = existing_job_id
        super().__init__(
            f"Idempotency key {idempotency_key} already used by job {existing_job_id}"
        )


class ScheduleError(BillingKernelError):
    """Billing schedule definition is invalid."""

    code: str = "SCHEDULE_ERROR"

    def __init__(self, schedule_name: str, reason: str):
        self.schedule_name = schedule_name
        self.reason = reason
        super().__init__(f"Invalid schedule {schedule_name}: {reason}")


class ConfigurationError(BillingKernelError):
    """A configuration value is missing or invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration {key}: {reason}")
