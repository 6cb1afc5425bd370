"""Business hours calculator for SLA deadlines.

Two calendars:
- the default one: 8am-6pm, Mon-Fri, excluding US federal holidays;
- a clinic calendar built from a TicketBusinessHours weekly schedule
  and its own holiday list.

Minute-level precision, wall-clock arithmetic in the calendar's timezone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo

import holidays

from clinicops.core.constants import BUSINESS_HOURS_END, BUSINESS_HOURS_START

UTC = ZoneInfo("UTC")

# Upper bound on the day walk; a calendar with no open days would never finish.
_MAX_DAYS_SCANNED = 3 * 366


@lru_cache(maxsize=10)
def get_us_holidays(year: int) -> frozenset[date]:
    """Cache holiday sets per year for performance."""
    return frozenset(holidays.US(years=year).keys())


@dataclass(frozen=True)
class BusinessCalendar:
    """Opening windows keyed by Python weekday (Monday=0)."""

    timezone: str
    windows: dict[int, tuple[time, time]]
    # None means "US federal holidays"
    holiday_dates: frozenset[date] | None = None
    name: str = field(default="default")

    def is_holiday(self, day: date) -> bool:
        if self.holiday_dates is None:
            return day in get_us_holidays(day.year)
        return day in self.holiday_dates

    def window_for(self, day: date) -> tuple[time, time] | None:
        if self.is_holiday(day):
            return None
        return self.windows.get(day.weekday())


def default_calendar(timezone: str) -> BusinessCalendar:
    window = (time(BUSINESS_HOURS_START), time(BUSINESS_HOURS_END))
    return BusinessCalendar(
        timezone=timezone,
        windows={weekday: window for weekday in range(5)},
    )


def _parse_hhmm(value: str) -> time:
    hours, _, minutes = value.partition(":")
    return time(int(hours), int(minutes or 0))


def calendar_from_schedule(
    timezone: str,
    schedule: list[dict],
    holiday_entries: list[dict] | None = None,
    *,
    name: str = "clinic",
) -> BusinessCalendar:
    """
    Build a calendar from a stored weekly schedule.

    schedule rows use day_of_week 0-6 with Sunday=0; closed days and
    rows whose end is not after their start are ignored.
    """
    windows: dict[int, tuple[time, time]] = {}
    for row in schedule or []:
        if not row.get("is_open", True):
            continue
        start = _parse_hhmm(row["start_time"])
        end = _parse_hhmm(row["end_time"])
        if end <= start:
            continue
        weekday = (int(row["day_of_week"]) - 1) % 7
        windows[weekday] = (start, end)

    holiday_dates = frozenset(
        date.fromisoformat(entry["date"]) for entry in (holiday_entries or []) if entry.get("date")
    )
    return BusinessCalendar(
        timezone=timezone,
        windows=windows,
        holiday_dates=holiday_dates,
        name=name,
    )


def add_business_minutes(
    start_utc: datetime, minutes: int, calendar: BusinessCalendar
) -> datetime:
    """
    Walk `minutes` of open time forward from start_utc.

    A start outside opening hours begins counting at the next opening.

    Returns:
        Due datetime in UTC

    Raises:
        ValueError: the calendar has no opening window at all
    """
    if not calendar.windows:
        raise ValueError(f"Business calendar '{calendar.name}' has no open days")

    tz = ZoneInfo(calendar.timezone)
    local = start_utc.astimezone(tz)
    remaining = float(minutes)

    for _ in range(_MAX_DAYS_SCANNED):
        window = calendar.window_for(local.date())
        if window:
            opens = datetime.combine(local.date(), window[0], tzinfo=tz)
            closes = datetime.combine(local.date(), window[1], tzinfo=tz)
            if local < opens:
                local = opens
            if local < closes:
                available = (closes - local).total_seconds() / 60
                if remaining <= available:
                    return (local + timedelta(minutes=remaining)).astimezone(UTC)
                remaining -= available
        # Next calendar day, midnight local
        local = datetime.combine(local.date() + timedelta(days=1), time(0), tzinfo=tz)

    raise ValueError(f"Business calendar '{calendar.name}' has no opening in range")

