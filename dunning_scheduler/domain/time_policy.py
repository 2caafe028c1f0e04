"""Delivery time window policy (allowed hours, weekends, holidays)"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dunning_scheduler.domain.exceptions import ConfigurationError
from dunning_scheduler.utils.date_utils import ensure_aware

# Upper bound when searching for the next allowed day
_MAX_LOOKAHEAD_DAYS = 366


class TimeWindowPolicy:
    """Decides whether a message may go out at a given instant"""

    def __init__(
        self,
        timezone_name: str = "UTC",
        start_hour: int = 9,
        end_hour: int = 20,
        weekend_allowed: bool = False,
        holidays_allowed: bool = False,
        holidays: Optional[Iterable[date]] = None,
    ):
        if not 0 <= start_hour < end_hour <= 24:
            raise ConfigurationError(f"Invalid delivery window {start_hour}-{end_hour}")
        try:
            self.tz = ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(f"Unknown timezone: {timezone_name}") from e

        self.start_hour = start_hour
        self.end_hour = end_hour
        self.weekend_allowed = weekend_allowed
        self.holidays_allowed = holidays_allowed
        self.holidays = frozenset(holidays or ())

    @classmethod
    def from_settings(cls, settings) -> "TimeWindowPolicy":
        return cls(
            timezone_name=settings.notification_timezone,
            start_hour=settings.window_start_hour,
            end_hour=settings.window_end_hour,
            weekend_allowed=settings.weekend_allowed,
            holidays_allowed=settings.holidays_allowed,
            holidays=settings.holiday_dates,
        )

    def is_allowed_day(self, day: date) -> bool:
        if not self.weekend_allowed and day.weekday() >= 5:
            return False
        if not self.holidays_allowed and day in self.holidays:
            return False
        return True

    def is_allowed(self, moment: datetime) -> bool:
        local = ensure_aware(moment).astimezone(self.tz)
        if not self.start_hour <= local.hour < self.end_hour:
            return False
        return self.is_allowed_day(local.date())

    def next_allowed(self, moment: datetime) -> datetime:
        """
        Earliest allowed instant at or after moment.

        Before the window opens this is today's window start; after it
        closes, or on a disallowed day, the window start of the next
        allowed day.

        Raises:
            ConfigurationError: No allowed day within a year
        """
        moment = ensure_aware(moment)
        if self.is_allowed(moment):
            return moment

        local = moment.astimezone(self.tz)
        if local.hour < self.start_hour and self.is_allowed_day(local.date()):
            return self._window_start(local.date())
        return self.next_day_start(moment)

    def next_day_start(self, moment: datetime) -> datetime:
        """Window start of the first allowed day after moment's local date"""
        local_date = ensure_aware(moment).astimezone(self.tz).date()
        for offset in range(1, _MAX_LOOKAHEAD_DAYS + 1):
            candidate = local_date + timedelta(days=offset)
            if self.is_allowed_day(candidate):
                return self._window_start(candidate)
        raise ConfigurationError("No allowed delivery day found within a year")

    def _window_start(self, day: date) -> datetime:
        local = datetime.combine(day, time(hour=self.start_hour), tzinfo=self.tz)
        return local.astimezone(timezone.utc)
