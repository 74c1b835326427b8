"""Calendar-day helpers for streaks and mission windows."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from pawpals.config import get_settings

MISSION_PERIODS: dict[str, timedelta] = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


@lru_cache(maxsize=8)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def activity_day(at: datetime | None = None, tz_name: str | None = None) -> date:
    """Calendar day of ``at`` in the configured streak timezone."""
    if at is None:
        at = utcnow()
    tz = _zone(tz_name or get_settings().streak_timezone)
    return ensure_aware(at).astimezone(tz).date()


def day_start(day: date, tz_name: str | None = None) -> datetime:
    """UTC instant at which ``day`` begins in the configured timezone."""
    tz = _zone(tz_name or get_settings().streak_timezone)
    return datetime(day.year, day.month, day.day, tzinfo=tz).astimezone(timezone.utc)


def current_window(
    mission_type: str,
    is_recurring: bool,
    starts_at: datetime,
    now: datetime,
) -> datetime:
    """Start of the window that contains ``now`` for a mission definition.

    Non-recurring missions have a single window starting at ``starts_at``.
    Recurring ones repeat every period (daily, weekly, monthly) from it.
    """
    starts_at = ensure_aware(starts_at)
    period = MISSION_PERIODS.get(mission_type)
    if not is_recurring or period is None or now < starts_at:
        return starts_at
    elapsed = (ensure_aware(now) - starts_at) // period
    return starts_at + elapsed * period


def window_end(
    mission_type: str,
    is_recurring: bool,
    window_start: datetime,
    ends_at: datetime,
) -> datetime:
    """End of the window beginning at ``window_start``, capped by ``ends_at``."""
    ends_at = ensure_aware(ends_at)
    period = MISSION_PERIODS.get(mission_type)
    if not is_recurring or period is None:
        return ends_at
    return min(ensure_aware(window_start) + period, ends_at)


def local_hour(at: datetime, tz_name: str | None = None) -> int:
    """Hour of day of ``at`` in the configured timezone."""
    tz = _zone(tz_name or get_settings().streak_timezone)
    return ensure_aware(at).astimezone(tz).hour
