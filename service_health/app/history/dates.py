"""
Wire date format and local calendar helpers.
"""

from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Optional

from shared.logging import get_logger

logger = get_logger("health.dates")

# Accepted input formats keyed by exact string length, in priority order
_SERVER_DATE_FORMATS_IN = [
    (24, "%Y-%m-%dT%H:%M:%S.%fZ"),  # 2020-09-15T12:34:56.789Z
    (23, "%Y-%m-%dT%H:%M:%S.%fZ"),  # 2020-09-15T12:34:56.78Z
    (22, "%Y-%m-%dT%H:%M:%S.%fZ"),  # 2020-09-15T12:34:56.7Z
    (20, "%Y-%m-%dT%H:%M:%SZ"),     # 2020-09-15T12:34:56Z
]
_SERVER_DATE_FORMAT_OUT = "%Y-%m-%dT%H:%M:%S"


def health_datetime_from_string(value: Optional[str]) -> Optional[datetime]:
    """Parse a wire date into an aware UTC datetime, or None."""
    if not isinstance(value, str):
        return None
    for length, date_format in _SERVER_DATE_FORMATS_IN:
        if len(value) == length:
            try:
                return datetime.strptime(value, date_format).replace(tzinfo=timezone.utc)
            except ValueError as e:
                logger.debug("Unparsable wire date", value=value, error=str(e))
    return None


def health_datetime_to_string(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as UTC with millisecond precision and a trailing Z."""
    if value is None:
        return None
    value_utc = as_utc(value)
    return f"{value_utc.strftime(_SERVER_DATE_FORMAT_OUT)}.{value_utc.microsecond // 1000:03d}Z"


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def midnight_local(value: Optional[datetime], tz: Optional[tzinfo] = None) -> Optional[date]:
    """Local calendar date of a timestamp; system zone when tz is None."""
    if value is None:
        return None
    return as_utc(value).astimezone(tz).date()


def today_local(tz: Optional[tzinfo] = None) -> date:
    return datetime.now(tz).date() if tz is not None else datetime.now().date()


def tomorrow_local(tz: Optional[tzinfo] = None) -> date:
    return today_local(tz) + timedelta(days=1)
