"""
Configuration Loader (``billing_config.loader``).

Responsibility
--------------
Reads a billing YAML file and parses it into a ``BillingConfigurationSet``.
Callers normally go through ``billing_config.get_active_config()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown section or invalid value  -> ``ConfigurationError``.

Example::

    database_url: postgresql://billing@localhost/billing
    invoicing:
      default_vat_rate: "15"
      default_payment_due_days: 7
      invoice_number_prefix: INV
    schedules:
      - name: nightly
        frequency: daily
        run_at_hour: 2
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any
from uuid import UUID

import yaml

from billing_kernel.exceptions import ConfigurationError
from billing_modules.lease_invoicing.config import InvoicingConfig

from billing_config.schema import (
    DEFAULT_DATABASE_URL,
    BillingConfigurationSet,
    ScheduleDef,
)

_TOP_LEVEL_KEYS = frozenset({"database_url", "invoicing", "schedules"})
_INVOICING_KEYS = frozenset({
    "default_vat_rate",
    "default_payment_due_days",
    "eligible_overdue_statuses",
    "invoice_number_prefix",
})
_FREQUENCIES = frozenset({"hourly", "daily", "on_demand"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ConfigurationError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return data


def parse_invoicing(data: dict[str, Any]) -> InvoicingConfig:
    """Parse the ``invoicing`` section into an InvoicingConfig."""
    if not isinstance(data, dict):
        raise ConfigurationError("invoicing", "must be a mapping")
    unknown = set(data) - _INVOICING_KEYS
    if unknown:
        raise ConfigurationError("invoicing", f"unknown keys {sorted(unknown)}")

    kwargs: dict[str, Any] = {}
    if "default_vat_rate" in data:
        try:
            kwargs["default_vat_rate"] = Decimal(str(data["default_vat_rate"]))
        except InvalidOperation:
            raise ConfigurationError(
                "invoicing.default_vat_rate",
                f"not a number: {data['default_vat_rate']!r}",
            )
    if "default_payment_due_days" in data:
        value = data["default_payment_due_days"]
        if not isinstance(value, int) or isinstance(value, bool):
            raise ConfigurationError(
                "invoicing.default_payment_due_days", f"not an integer: {value!r}",
            )
        kwargs["default_payment_due_days"] = value
    if "eligible_overdue_statuses" in data:
        kwargs["eligible_overdue_statuses"] = tuple(data["eligible_overdue_statuses"] or ())
    if "invoice_number_prefix" in data:
        kwargs["invoice_number_prefix"] = str(data["invoice_number_prefix"])

    try:
        return InvoicingConfig(**kwargs)
    except ValueError as exc:
        raise ConfigurationError("invoicing", str(exc)) from exc


def parse_schedule(data: dict[str, Any], index: int) -> ScheduleDef:
    """Parse one entry of the ``schedules`` list."""
    key = f"schedules[{index}]"
    if not isinstance(data, dict):
        raise ConfigurationError(key, "must be a mapping")
    if not data.get("name"):
        raise ConfigurationError(key, "name is required")

    frequency = str(data.get("frequency", "daily"))
    if frequency not in _FREQUENCIES:
        raise ConfigurationError(f"{key}.frequency", f"unknown frequency {frequency!r}")

    organization_id = data.get("organization_id")
    if organization_id is not None:
        try:
            organization_id = str(UUID(str(organization_id)))
        except ValueError:
            raise ConfigurationError(
                f"{key}.organization_id", f"not a UUID: {organization_id!r}",
            )

    run_at_hour = data.get("run_at_hour")
    if run_at_hour is not None and (
        not isinstance(run_at_hour, int) or not 0 <= run_at_hour <= 23
    ):
        raise ConfigurationError(f"{key}.run_at_hour", "must be an hour 0-23")

    return ScheduleDef(
        name=str(data["name"]),
        frequency=frequency,
        organization_id=organization_id,
        run_at_hour=run_at_hour,
        is_active=bool(data.get("is_active", True)),
    )


def parse_configuration(
    data: dict[str, Any], source_path: str | None = None,
) -> BillingConfigurationSet:
    """Parse a whole configuration document."""
    unknown = set(data) - _TOP_LEVEL_KEYS
    if unknown:
        raise ConfigurationError("<root>", f"unknown keys {sorted(unknown)}")

    invoicing = (
        parse_invoicing(data["invoicing"])
        if data.get("invoicing") is not None
        else InvoicingConfig.with_defaults()
    )

    schedules_raw = data.get("schedules") or []
    if not isinstance(schedules_raw, list):
        raise ConfigurationError("schedules", "must be a list")
    schedules = tuple(parse_schedule(s, i) for i, s in enumerate(schedules_raw))

    names = [s.name for s in schedules]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigurationError("schedules", f"duplicate names {duplicates}")

    return BillingConfigurationSet(
        database_url=str(data.get("database_url") or DEFAULT_DATABASE_URL),
        invoicing=invoicing,
        schedules=schedules,
        source_path=source_path,
    )


def load_config(path: Path | str) -> BillingConfigurationSet:
    """Load and parse a billing configuration file."""
    path = Path(path)
    return parse_configuration(load_yaml_file(path), source_path=str(path))
