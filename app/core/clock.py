"""Timezone helpers shared by the billing domain."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Coerce a datetime to aware UTC.

    Some drivers (SQLite) hand back naive values for timezone-aware columns;
    those are stored as UTC, so the tzinfo is attached rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def from_timestamp(value: object) -> datetime | None:
    """Convert a Unix timestamp (seconds) from a provider payload to UTC."""
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)  # type: ignore[call-overload]
    except (TypeError, ValueError, OverflowError):
        return None
