"""Time helpers: a UTC clock and tolerant timestamp parsing."""

from datetime import datetime, timezone
from typing import Callable

from dateutil import parser as date_parser

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str | int | float | datetime | None) -> datetime | None:
    """
    Parse a timestamp from an export file.

    Accepts ISO 8601 strings (e.g. "2025-10-16T19:12:28.024Z"), epoch seconds
    or milliseconds, and datetimes. Naive values are assumed to be UTC.

    Raises:
        ValueError: If the value cannot be parsed
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        # Millisecond epochs are common in web exports
        seconds = value / 1000 if value > 10_000_000_000 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        return ensure_utc(date_parser.isoparse(value))
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid timestamp format: {value}") from e
