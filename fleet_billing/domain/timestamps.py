"""UTC normalization for stored and vendor-supplied timestamps."""

from datetime import UTC, datetime


def as_utc(value: datetime) -> datetime:
    # Some drivers hand back naive datetimes for timezone-aware columns
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def from_epoch(value) -> datetime | None:
    """Stripe ``created`` (Unix seconds) as an aware datetime, or None when absent."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value, UTC)
