"""
Timestamp helpers shared by the poller and the query API.
"""

import logging
import re
from datetime import datetime, timedelta, timezone

from app.errors import MalformedTimestamp

logger = logging.getLogger(__name__)


_RFC3339_RE = re.compile(
    r"^(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})"
    r"[Tt ](?P<hour>\d{2}):(?P<minute>\d{2}):(?P<second>\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>[Zz]|(?P<sign>[+-])(?P<off_hour>\d{2}):(?P<off_minute>\d{2}))$"
)

# Modems report offsets like "+01" with no minutes
_SHORT_OFFSET_RE = re.compile(r"[+-]\d{2}$")


def _parse_rfc3339(value: str) -> datetime:
    match = _RFC3339_RE.fullmatch(value)
    if match is None:
        raise MalformedTimestamp(value)

    if match.group("sign"):
        offset = timedelta(
            hours=int(match.group("off_hour")),
            minutes=int(match.group("off_minute")),
        )
        if offset >= timedelta(hours=24):
            raise MalformedTimestamp(value)
        if match.group("sign") == "-":
            offset = -offset
    else:
        offset = timedelta(0)

    # Anything past microseconds is truncated
    fraction = (match.group("fraction") or "")[:6].ljust(6, "0")
    second = int(match.group("second"))
    microsecond = int(fraction)

    # Leap second: keep it inside the same minute
    if second == 60:
        second, microsecond = 59, 999999

    try:
        parsed = datetime(
            int(match.group("year")),
            int(match.group("month")),
            int(match.group("day")),
            int(match.group("hour")),
            int(match.group("minute")),
            second,
            microsecond,
            tzinfo=timezone(offset),
        )
    except ValueError:
        raise MalformedTimestamp(value) from None

    return parsed.astimezone(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an RFC 3339 timestamp into an aware UTC datetime.

    Timestamps whose offset lacks the minutes component (e.g. "+01"
    instead of "+01:00") are accepted by appending ":00" and retrying
    once.

    Args:
        value: Timestamp string

    Returns:
        datetime in UTC

    Raises:
        MalformedTimestamp: if the string cannot be parsed
    """
    try:
        return _parse_rfc3339(value)
    except MalformedTimestamp:
        if not _SHORT_OFFSET_RE.search(value):
            raise

    logger.debug(f"Retrying timestamp with completed offset: {value}")
    try:
        return _parse_rfc3339(value + ":00")
    except MalformedTimestamp:
        raise MalformedTimestamp(value) from None


def format_timestamp(value: datetime) -> str:
    """
    Render a datetime in the canonical stored form.

    The output is fixed width and always UTC, so string order matches
    chronological order. Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
        f".{value.microsecond:06d}Z"
    )


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
