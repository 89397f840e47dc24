"""Batch ORM models."""

from billing_batch.models.batch import BillingScheduleModel, InvoicingJobModel

__all__ = ["BillingScheduleModel", "InvoicingJobModel"]
