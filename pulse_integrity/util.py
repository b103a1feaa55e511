"""
Time and identifier helpers.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Tuple, Union

from .errors import InvalidArgument


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(dt: datetime) -> str:
    """Render a datetime as ISO 8601 UTC with millisecond precision and a Z suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_iso_date(value: str) -> date:
    """Parse a YYYY-MM-DD calendar day."""
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise InvalidArgument(f"Invalid ISO date: {value!r}") from e


def day_window(day: date) -> Tuple[datetime, datetime]:
    """Half-open UTC window [day 00:00, next day 00:00)."""
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def previous_day(now: datetime) -> date:
    """The calendar day before now, in UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (now.astimezone(timezone.utc) - timedelta(days=1)).date()


def signature_id(day: str, group_id: str) -> str:
    """Upsert key for a group's signed aggregate."""
    return f"{day}_{group_id}"


def parse_timestamp(value: Union[datetime, str]) -> datetime:
    """
    Parse an ISO 8601 timestamp into an aware UTC datetime.

    A trailing Z and a space separator are accepted; values without an
    offset are taken to be UTC already.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        if not isinstance(value, str):
            raise InvalidArgument(f"Invalid timestamp: {value!r}")
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise InvalidArgument(f"Invalid timestamp: {value!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
