"""
shared/utils/timezones.py
Session scheduling across the student's and the expert's time zones.
"""

from datetime import date as date_type, datetime, time as time_type
from typing import Optional

import pytz

from shared.exceptions import ValidationError

DEFAULT_TIMEZONE = "UTC"

_TIME_FORMATS = ("%H:%M", "%H:%M:%S", "%I:%M %p", "%I:%M%p")


def resolve_timezone(name: Optional[str]) -> pytz.BaseTzInfo:
    """IANA zone for a profile; missing or unknown names fall back to UTC."""
    if not name:
        return pytz.utc
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        return pytz.utc


def parse_session_start(date_value: str, time_value: str) -> datetime:
    """
    Combine a booking date ("2025-03-01") and slot time ("14:30" or "2:30 PM")
    into an aware UTC datetime.
    """
    try:
        day = date_type.fromisoformat(str(date_value)[:10])
    except ValueError:
        raise ValidationError("Invalid booking date, expected YYYY-MM-DD", {"date": date_value})

    slot: Optional[time_type] = None
    for fmt in _TIME_FORMATS:
        try:
            slot = datetime.strptime(time_value.strip().upper(), fmt).time()
            break
        except ValueError:
            continue
    if slot is None:
        raise ValidationError("Invalid booking time", {"time": time_value})

    return pytz.utc.localize(datetime.combine(day, slot))


def to_civil_time(instant: datetime, timezone_name: Optional[str]) -> datetime:
    """Wall-clock time of ``instant`` in the given zone, returned naive."""
    if instant.tzinfo is None:
        instant = pytz.utc.localize(instant)
    return instant.astimezone(resolve_timezone(timezone_name)).replace(tzinfo=None)


def format_for_user(instant: datetime, timezone_name: Optional[str]) -> str:
    """Human-readable start time for notification text."""
    local = to_civil_time(instant, timezone_name)
    return f"{local.strftime('%a %d %b %Y, %I:%M %p')} ({timezone_name or DEFAULT_TIMEZONE})"
