"""Time zone helpers for UTC storage and schedule-local evaluation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import settings


def get_zone(timezone_name: str | None) -> ZoneInfo:
    """Return the ZoneInfo for a schedule, falling back to the configured default."""
    name = timezone_name or settings.default_timezone
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError as exc:
        raise ValueError(f"Invalid timezone: {name}") from exc


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime, assuming UTC for naive values."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_zone(value: datetime, timezone_name: str | None) -> datetime:
    """Convert a datetime into the given zone."""
    return ensure_utc(value).astimezone(get_zone(timezone_name))


def utc_now() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(timezone.utc)


def utc_day_start(value: datetime) -> datetime:
    """Return midnight UTC of the day containing value."""
    value = ensure_utc(value)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def utc_hour_start(value: datetime) -> datetime:
    """Return the start of the UTC clock hour containing value."""
    value = ensure_utc(value)
    return value.replace(minute=0, second=0, microsecond=0)


def local_day_start(value: datetime, timezone_name: str | None) -> datetime:
    """Return local midnight (as UTC) of the schedule-local day containing value."""
    local = to_zone(value, timezone_name)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)


def minutes_between(earlier: datetime, later: datetime) -> float:
    """Return the elapsed minutes between two datetimes."""
    delta: timedelta = ensure_utc(later) - ensure_utc(earlier)
    return delta.total_seconds() / 60.0
