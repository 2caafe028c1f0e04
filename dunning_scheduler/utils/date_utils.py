"""Date manipulation utilities"""

from datetime import datetime, time, timedelta, timezone
from typing import Tuple
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_aware(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC (SQLite drops tzinfo)"""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def epoch_millis(moment: datetime) -> int:
    return (ensure_aware(moment) - _EPOCH) // timedelta(milliseconds=1)


def add_calendar_days(moment: datetime, days: int, tz: ZoneInfo) -> datetime:
    """Shift by calendar days in tz, keeping the local wall-clock time"""
    local = ensure_aware(moment).astimezone(tz)
    shifted = datetime.combine(local.date() + timedelta(days=days), local.time(), tzinfo=tz)
    return shifted.astimezone(timezone.utc)


def local_day_bounds(moment: datetime, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    """UTC start and end of the calendar day containing moment in tz"""
    local_date = ensure_aware(moment).astimezone(tz).date()
    start = datetime.combine(local_date, time.min, tzinfo=tz)
    end = datetime.combine(local_date + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)
