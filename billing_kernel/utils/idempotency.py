"""
Idempotency key generation utilities.

Idempotency keys ensure that the same scheduled trigger (organization,
business day) produces at most one invoicing job record, even when the
scheduler ticks several times or the CLI is re-run.
"""

from datetime import datetime, timezone
from uuid import UUID


def generate_idempotency_key(
    producer: str,
    organization_id: UUID | str,
    as_of: datetime,
) -> str:
    """
    Generate an idempotency key for an invoicing run.

    Format: producer:organization_id:YYYY-MM-DD

    Args:
        producer: What triggered the run (e.g. "scheduler", "cli").
        organization_id: Organization being invoiced.
        as_of: Business timestamp of the run; only its UTC date is used.

    Example:
        >>> generate_idempotency_key("scheduler", org_id, as_of)
        "scheduler:550e8400-e29b-41d4-a716-446655440000:2024-02-01"
    """
    return f"{producer}:{organization_id}:{as_of.astimezone(timezone.utc).date().isoformat()}"


def parse_idempotency_key(key: str) -> tuple[str, str, str]:
    """
    Parse an idempotency key into (producer, organization_id, day).

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.rsplit(":", 2)
    if len(parts) != 3:
        raise ValueError(f"Invalid idempotency key format: {key}")
    return parts[0], parts[1], parts[2]
