"""
DateTime utility functions for the application.

All timestamps are stored as naive UTC datetimes.
"""
from datetime import datetime, timezone


def utcnow():
    """Current time as a naive UTC datetime (the storage convention for every table)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat_utc(dt):
    """
    Format a stored datetime as an ISO-8601 string with a 'Z' suffix.

    Args:
        dt: datetime object, ISO string, or None

    Returns:
        str: e.g. "2025-10-15T14:30:45.123456Z", or None if dt is None
    """
    if not dt:
        return None

    if isinstance(dt, str):
        try:
            dt = datetime.fromisoformat(dt.replace('Z', '+00:00'))
        except ValueError:
            return str(dt)  # Return as-is if parsing fails

    # Naive values are already UTC; aware values get normalized
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt.isoformat() + "Z"


def format_datetime_utc(dt):
    """
    Format a datetime object to UTC with readable format.
    Returns format like: "October 15, 2025 02:30:45 PM UTC"
    """
    if not dt:
        return None

    if isinstance(dt, str):
        try:
            dt = datetime.fromisoformat(dt.replace('Z', '+00:00'))
        except ValueError:
            return str(dt)

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc).strftime("%B %d, %Y %I:%M:%S %p UTC")
