"""
Timestamp helpers.

Stored timestamps are UTC ISO-8601 text with fixed microsecond precision so that
lexical comparison in SQL (``next_run_at <= ?``) matches chronological order.
"""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def to_db(dt: datetime | None) -> str | None:
    """Encode a datetime for storage. Naive datetimes are taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def from_db(s: str | None) -> datetime | None:
    """Decode a stored timestamp."""
    if s is None:
        return None
    return datetime.fromisoformat(s)


# Parks chained tasks until their predecessor releases them
FAR_FUTURE = datetime(9999, 1, 1, tzinfo=UTC)
