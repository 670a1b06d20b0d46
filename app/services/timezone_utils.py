"""Conversions between wall-clock time in a named timezone and UTC instants.

Every place in the service that turns a local date/time into an absolute
instant, or an instant into a local calendar date, goes through this module.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

MINUTES_PER_DAY = 24 * 60


class TimezoneConversionError(ValueError):
    pass


def resolve_timezone(timezone_name: str) -> ZoneInfo:
    cleaned = (timezone_name or "").strip()
    if not cleaned:
        raise TimezoneConversionError("Timezone name is empty.")
    try:
        return ZoneInfo(cleaned)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise TimezoneConversionError(f"Unknown timezone: {cleaned}") from exc


def is_valid_timezone(timezone_name: str) -> bool:
    try:
        resolve_timezone(timezone_name)
    except TimezoneConversionError:
        return False
    return True


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise TimezoneConversionError("Naive datetime values are not accepted; include an offset.")
    return value.astimezone(UTC)


def parse_utc_instant(raw_value: str) -> datetime:
    cleaned = (raw_value or "").strip()
    try:
        parsed = datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError as exc:
        raise TimezoneConversionError(f"Invalid ISO-8601 instant: {cleaned}") from exc
    return ensure_utc(parsed)


def local_to_utc(local_date: date, local_time: time, timezone_name: str) -> datetime:
    """Convert a wall-clock time on a specific calendar date into a UTC instant.

    Ambiguous times (clocks falling back) resolve to the first occurrence.
    Times inside a spring-forward gap resolve using the offset in force before
    the transition, which moves them forward by the length of the gap.
    """
    zone = resolve_timezone(timezone_name)
    local_value = datetime.combine(local_date, local_time.replace(tzinfo=None)).replace(
        tzinfo=zone,
        fold=0,
    )
    return local_value.astimezone(UTC)


def local_minutes_to_utc(local_date: date, minutes_of_day: int, timezone_name: str) -> datetime:
    """Same as ``local_to_utc`` for a minute offset from local midnight (0..1440)."""
    if not 0 <= minutes_of_day <= MINUTES_PER_DAY:
        raise TimezoneConversionError(f"Minutes of day out of range: {minutes_of_day}")
    if minutes_of_day == MINUTES_PER_DAY:
        return local_to_utc(local_date + timedelta(days=1), time(0, 0), timezone_name)
    hours, minutes = divmod(minutes_of_day, 60)
    return local_to_utc(local_date, time(hours, minutes), timezone_name)


def utc_to_local(instant: datetime, timezone_name: str) -> datetime:
    return ensure_utc(instant).astimezone(resolve_timezone(timezone_name))


def utc_to_local_date(instant: datetime, timezone_name: str) -> date:
    return utc_to_local(instant, timezone_name).date()


def local_day_bounds_utc(local_date: date, timezone_name: str) -> tuple[datetime, datetime]:
    return (
        local_minutes_to_utc(local_date, 0, timezone_name),
        local_minutes_to_utc(local_date, MINUTES_PER_DAY, timezone_name),
    )


def parse_wall_clock_minutes(raw_value: str) -> int:
    """Parse ``HH:MM`` (or ``HH:MM:SS``) into minutes after local midnight.

    ``24:00`` is accepted as the end of the day.
    """
    cleaned = (raw_value or "").strip()
    parts = cleaned.split(":")
    if len(parts) not in {2, 3}:
        raise TimezoneConversionError(f"Invalid wall-clock time: {cleaned}")
    try:
        hour = int(parts[0])
        minute = int(parts[1])
    except ValueError as exc:
        raise TimezoneConversionError(f"Invalid wall-clock time: {cleaned}") from exc
    total = hour * 60 + minute
    if not (0 <= hour <= 24 and 0 <= minute <= 59) or total > MINUTES_PER_DAY:
        raise TimezoneConversionError(f"Invalid wall-clock time: {cleaned}")
    return total
