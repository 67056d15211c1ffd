"""
Time helpers.

All persisted timestamps are naive UTC so that SQLite and PostgreSQL
compare them identically.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize a datetime to naive UTC; naive input is assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into naive UTC.

    Accepts a trailing 'Z'. Raises ValueError when unparsable.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(text))


def isoformat(value: datetime | None) -> str | None:
    """Render a stored naive UTC timestamp with a 'Z' suffix."""
    if value is None:
        return None
    return value.isoformat() + "Z"
