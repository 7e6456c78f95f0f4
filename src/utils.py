"""Shared minute-clock helpers used across the scheduling core."""

import re
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Union

MINUTES_PER_DAY = 24 * 60

_CLOCK_RE = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")


def parse_clock(value: Union[str, int]) -> int:
    """Convert an ``HH:MM`` wall-clock string to minutes since midnight.

    Integers are accepted as already-converted minute values.

    Examples:
        >>> parse_clock("09:30")
        570
        >>> parse_clock(600)
        600
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid clock value: {value!r}")
    if isinstance(value, int):
        if not 0 <= value <= MINUTES_PER_DAY:
            raise ValueError(f"Minute of day out of range: {value}")
        return value
    match = _CLOCK_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid clock value {value!r}, expected HH:MM")
    return int(match.group(1)) * 60 + int(match.group(2))


def format_clock(minutes: int) -> str:
    """Format minutes since midnight as ``HH:MM``."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_utc_minutes(value: datetime) -> int:
    """Whole minutes since the Unix epoch, in UTC. Seconds are floored."""
    return int(ensure_utc(value).timestamp()) // 60


def from_utc_minutes(minutes: int) -> datetime:
    """Inverse of :func:`to_utc_minutes`."""
    return datetime.fromtimestamp(minutes * 60, tz=timezone.utc)


def wall_clock_to_utc_minutes(day: date, minute_of_day: int, tz: tzinfo) -> int:
    """Resolve a local wall-clock time on ``day`` to UTC epoch minutes.

    Repeated wall times (autumn fall-back) resolve to their first
    occurrence. Wall times skipped by a spring-forward jump resolve to the
    minute the clocks jump, so a window lying inside the gap has zero length.
    """
    local = datetime(day.year, day.month, day.day, tzinfo=tz)
    local = local + timedelta(minutes=minute_of_day)
    first = to_utc_minutes(local)
    second = to_utc_minutes(local.replace(fold=1))
    if first <= second:
        return first

    # Skipped time: fold=1 lands before the jump, fold=0 after it.
    before = from_utc_minutes(second).astimezone(tz).utcoffset()
    jump = second + 1
    while jump < first and from_utc_minutes(jump).astimezone(tz).utcoffset() == before:
        jump += 1
    return jump


def local_date(utc_minutes: int, tz: tzinfo) -> date:
    """Calendar date, in ``tz``, of a UTC epoch minute."""
    return from_utc_minutes(utc_minutes).astimezone(tz).date()


def weekday_index(day: date) -> int:
    """Weekday with 0 = Sunday through 6 = Saturday, as schedules store it."""
    return day.isoweekday() % 7
