"""Timezone conversion for delivery scheduling.

All conversions go through the IANA database shipped with ``zoneinfo``; the
offset is always resolved for the specific date being converted, so daylight
saving transitions are handled per date rather than with a cached offset.

Instants returned by this module are naive UTC datetimes for database
compatibility (the SQLAlchemy models store naive UTC).

Usage:
    from bookmail.core.timeconv import to_utc, local_hhmm

    # 09:00 in London on a given day, as naive UTC
    instant = to_utc("09:00", "Europe/London", on_date=date(2026, 7, 1))

    # What does a UTC instant look like on the user's clock?
    local_hhmm(instant, "Europe/London")  # "09:00"
"""

import re
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from bookmail.core.errors import InvalidTimeFormat, InvalidTimezone

_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{1,2})(?::(\d{1,2}))?\s*$")


def utc_now() -> datetime:
    """Get current UTC time as naive datetime.

    Returns naive datetime for database compatibility.
    """
    return datetime.now(UTC).replace(tzinfo=None)


def get_cutoff(hours: int = 0, days: int = 0) -> datetime:
    """Get cutoff datetime for filtering queries.

    Args:
        hours: Hours to subtract from now
        days: Days to subtract from now

    Returns:
        Naive UTC datetime representing the cutoff point
    """
    delta = timedelta(hours=hours, days=days)
    return utc_now() - delta


def to_naive_utc(dt: datetime) -> datetime:
    """Convert a datetime to naive UTC.

    Args:
        dt: Datetime to convert (can be aware or naive)

    Returns:
        Naive UTC datetime for database compatibility
    """
    if dt.tzinfo is None:
        # Already naive, assume it's UTC
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def _as_aware_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=UTC)
    return instant.astimezone(UTC)


# Common valid IANA timezones (subset for dropdown UX)
COMMON_TIMEZONES = [
    "UTC",
    "America/New_York",
    "America/Chicago",
    "America/Denver",
    "America/Los_Angeles",
    "America/Toronto",
    "America/Sao_Paulo",
    "Europe/London",
    "Europe/Paris",
    "Europe/Berlin",
    "Europe/Madrid",
    "Asia/Dubai",
    "Asia/Kolkata",
    "Asia/Singapore",
    "Asia/Shanghai",
    "Asia/Tokyo",
    "Australia/Sydney",
    "Pacific/Auckland",
]


def ensure_timezone(tz_name: str | None) -> ZoneInfo:
    """Resolve an IANA timezone identifier.

    Raises:
        InvalidTimezone: If the identifier is empty or unknown
    """
    if not tz_name:
        raise InvalidTimezone(tz_name)
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, KeyError, ValueError) as e:
        raise InvalidTimezone(tz_name) from e


def is_valid_timezone(tz_name: str | None) -> bool:
    """Check if a timezone name is a valid IANA identifier."""
    try:
        ensure_timezone(tz_name)
        return True
    except InvalidTimezone:
        return False


def parse_delivery_time(value: str | None) -> time:
    """Parse a delivery time string into a time object.

    Accepts "HH:MM" and the "HH:MM:SS" form the database returns for TIME
    columns (seconds are ignored).

    Raises:
        InvalidTimeFormat: If the value is malformed or out of range
    """
    match = _TIME_RE.match(value or "")
    if not match:
        raise InvalidTimeFormat(value)

    hours, minutes = int(match.group(1)), int(match.group(2))
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise InvalidTimeFormat(value)
    return time(hour=hours, minute=minutes)


def format_hhmm(value: time) -> str:
    """Format a time as zero-padded HH:MM."""
    return f"{value.hour:02d}:{value.minute:02d}"


def normalize_delivery_time(value: str) -> str:
    """Validate and normalize a delivery time to HH:MM ("9:5" -> "09:05")."""
    return format_hhmm(parse_delivery_time(value))


def to_local(instant: datetime, timezone: str) -> datetime:
    """Render a UTC instant (naive or aware) in a timezone as an aware datetime."""
    return _as_aware_utc(instant).astimezone(ensure_timezone(timezone))


def local_hhmm(instant: datetime, timezone: str) -> str:
    """Wall-clock HH:MM of a UTC instant in the given timezone."""
    return to_local(instant, timezone).strftime("%H:%M")


def offset_minutes(timezone: str, instant: datetime) -> int:
    """UTC offset of a timezone at a specific instant, in minutes."""
    offset = to_local(instant, timezone).utcoffset()
    return int(offset.total_seconds() // 60) if offset is not None else 0


def to_utc(local_time: str, timezone: str, on_date: date | None = None) -> datetime:
    """Convert a local wall-clock time in a timezone to a naive UTC instant.

    The offset is resolved for ``on_date`` (defaults to today's date in that
    timezone). Ambiguous wall times (clocks falling back) resolve to the first
    occurrence. Wall times skipped by a spring-forward transition resolve with
    the pre-transition offset, i.e. they land after the gap.

    Args:
        local_time: Time in "HH:MM" format
        timezone: IANA timezone (e.g. "America/New_York")
        on_date: Local calendar date to convert for

    Returns:
        Naive UTC datetime

    Raises:
        InvalidTimeFormat: If local_time is not a valid HH:MM
        InvalidTimezone: If timezone is not resolvable
    """
    parsed = parse_delivery_time(local_time)
    tz = ensure_timezone(timezone)
    if on_date is None:
        on_date = datetime.now(tz).date()

    local_dt = datetime.combine(on_date, parsed, tzinfo=tz)
    return local_dt.astimezone(UTC).replace(tzinfo=None)


def next_delivery_after(timezone: str, delivery_time: str, after: datetime) -> datetime:
    """First UTC instant strictly after ``after`` at which the local clock shows delivery_time.

    Local dates where the wall time does not exist (DST gap) are skipped.
    """
    tz = ensure_timezone(timezone)
    target = parse_delivery_time(delivery_time)
    after_utc = to_naive_utc(after)
    local_date = _as_aware_utc(after_utc).astimezone(tz).date()

    for day_offset in range(0, 3):
        candidate_date = local_date + timedelta(days=day_offset)
        candidate = to_utc(format_hhmm(target), timezone, candidate_date)
        if candidate <= after_utc:
            continue
        if local_hhmm(candidate, timezone) != format_hhmm(target):
            continue
        return candidate

    # Only reachable for zones whose transitions remove whole days
    return to_utc(format_hhmm(target), timezone, local_date + timedelta(days=3))
