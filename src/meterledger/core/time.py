"""UTC discipline helpers for meterledger.

Every instant that enters or leaves the engine is a timezone-aware UTC
``datetime``. Local civil time only exists inside
:mod:`meterledger.rollups.time_windows`.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

__all__ = [
    "ensure_utc",
    "format_utc_iso8601",
    "get_current_utc",
    "hours_between",
    "parse_utc_iso8601",
]


def get_current_utc() -> datetime:
    """Get current time in UTC.

    Returns
    -------
    datetime
        Current time in UTC with timezone info
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Return ``dt`` as an aware UTC datetime.

    Naive datetimes are interpreted as UTC, aware ones are converted.

    Parameters
    ----------
    dt
        Datetime (may be naive)

    Returns
    -------
    datetime
        Timezone-aware UTC datetime
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_utc_iso8601(dt: datetime) -> str:
    """Format datetime as ISO-8601 UTC string.

    Parameters
    ----------
    dt
        Datetime to format (with or without timezone)

    Returns
    -------
    str
        ISO-8601 UTC string (e.g., "2025-10-08T12:30:00+00:00")

    Example
    -------
    >>> from datetime import datetime, timezone
    >>> dt = datetime(2025, 10, 8, 12, 30, 0, tzinfo=timezone.utc)
    >>> format_utc_iso8601(dt)
    '2025-10-08T12:30:00+00:00'
    """
    return ensure_utc(dt).isoformat()


def parse_utc_iso8601(iso_string: str) -> datetime:
    """Parse ISO-8601 string to UTC datetime.

    Parameters
    ----------
    iso_string
        ISO-8601 formatted string ("Z" suffix accepted)

    Returns
    -------
    datetime
        Datetime in UTC

    Raises
    ------
    ValueError
        If string is not valid ISO-8601

    Example
    -------
    >>> dt = parse_utc_iso8601("2025-10-08T14:30:00+05:00")
    >>> dt.hour
    9
    """
    # Handle 'Z' suffix (Zulu time = UTC)
    iso_string = iso_string.replace("Z", "+00:00")
    return ensure_utc(datetime.fromisoformat(iso_string))


def hours_between(start: datetime, end: datetime) -> float:
    """Signed number of hours from ``start`` to ``end``."""
    return (ensure_utc(end) - ensure_utc(start)) / timedelta(hours=1)
