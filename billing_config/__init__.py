"""
billing_config -- single public entrypoint for billing configuration.

Responsibility:
    ``get_active_config()`` is how processes (the CLI, the scheduler)
    obtain their configuration: the YAML file named by
    ``BILLING_CONFIG_PATH`` (or an explicit path), else built-in defaults.
    ``DATABASE_URL`` in the environment overrides the configured URL.

Architecture position:
    Sits above ``billing_kernel`` and ``billing_modules``.  Neither of them
    imports from ``billing_config``; they receive an ``InvoicingConfig``.

Failure modes:
    - ``FileNotFoundError`` -- the configured path does not exist.
    - ``ConfigurationError`` -- a value in the file is invalid.
"""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path

from billing_kernel.logging_config import get_logger

from billing_config.loader import load_config
from billing_config.schema import BillingConfigurationSet, ScheduleDef

logger = get_logger("config")

CONFIG_PATH_ENV = "BILLING_CONFIG_PATH"
DATABASE_URL_ENV = "DATABASE_URL"


def get_active_config(path: Path | str | None = None) -> BillingConfigurationSet:
    """Resolve the configuration for this process.

    Order: explicit ``path``, then ``BILLING_CONFIG_PATH``, then defaults.
    ``DATABASE_URL`` always wins over the file's ``database_url``.
    """
    path = path or os.environ.get(CONFIG_PATH_ENV)
    config = load_config(path) if path else BillingConfigurationSet()

    url_override = os.environ.get(DATABASE_URL_ENV)
    if url_override:
        config = dataclasses.replace(config, database_url=url_override)

    logger.info(
        "billing_config_loaded",
        extra={
            "source_path": config.source_path,
            "schedules": len(config.schedules),
            "database_url_from_env": bool(url_override),
        },
    )
    return config


__all__ = [
    "BillingConfigurationSet",
    "ScheduleDef",
    "get_active_config",
    "load_config",
]
