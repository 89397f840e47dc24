"""
BillingConfigurationSet schema.

The typed result of loading a billing configuration file.  YAML is parsed
into these frozen dataclasses by the loader; runtime code only ever sees
``BillingConfigurationSet``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from billing_modules.lease_invoicing.config import InvoicingConfig

DEFAULT_DATABASE_URL = "sqlite:///billing.db"


@dataclass(frozen=True)
class ScheduleDef:
    """A recurring invoicing run as declared in configuration."""

    name: str
    frequency: str  # hourly, daily, on_demand
    organization_id: str | None = None  # None: every organization
    run_at_hour: int | None = None
    is_active: bool = True


@dataclass(frozen=True)
class BillingConfigurationSet:
    """Everything a billing process needs to start."""

    database_url: str = DEFAULT_DATABASE_URL
    invoicing: InvoicingConfig = field(default_factory=InvoicingConfig.with_defaults)
    schedules: tuple[ScheduleDef, ...] = ()
    source_path: str | None = None
