"""Shared utility functions for activity-ledger."""

from datetime import UTC, datetime, timedelta

import dateparser


def parse_datetime(dt_string: str) -> datetime:
    """
    Parse a datetime string in various formats.

    Supports:
    - ISO format: "2025-01-01T09:00:00Z"
    - Relative dates: "yesterday", "today", "tomorrow", "2 hours ago"
    - Simple format: "2025-01-01 09:00" (interpreted as local time)

    Args:
        dt_string: DateTime string to parse

    Returns:
        Timezone-aware datetime object (local timezone)
    """
    dt = dateparser.parse(
        dt_string,
        settings={
            "RETURN_AS_TIMEZONE_AWARE": True,
            "TIMEZONE": "local",
        },
    )

    if dt is None:
        raise ValueError(f"Unable to parse datetime string: {dt_string}")

    return dt


def normalize_timestamp(ts: str | datetime) -> datetime:
    """
    Normalize a timestamp to a timezone-aware datetime object.

    Naive datetimes are assumed to be UTC.

    Args:
        ts: Timestamp as ISO string or datetime object

    Returns:
        Timezone-aware datetime object
    """
    if not isinstance(ts, datetime):
        ts = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


def normalize_duration(dur: float | timedelta) -> timedelta:
    """
    Normalize a duration to a timedelta object.

    Args:
        dur: Duration as float (seconds) or timedelta

    Returns:
        timedelta object
    """
    if isinstance(dur, timedelta):
        return dur
    return timedelta(seconds=dur)


def get_event_range(event: dict) -> tuple[datetime, datetime]:
    """
    Get the start and end time of an event.

    Args:
        event: Event dictionary with 'timestamp' and 'duration' keys

    Returns:
        Tuple of (start, end) datetime objects
    """
    start = normalize_timestamp(event["timestamp"])
    duration = normalize_duration(event["duration"])
    end = start + duration
    return start, end


def dt_to_json(ts: datetime | None) -> str | None:
    """Serialize an optional datetime for the snapshot document."""
    return ts.isoformat() if ts else None


def dt_from_json(value: str | None) -> datetime | None:
    """Inverse of dt_to_json."""
    if not value:
        return None
    return normalize_timestamp(value)
