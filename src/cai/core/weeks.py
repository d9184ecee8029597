"""ISO-8601 week arithmetic in the user's timezone."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo

from cai.core.intervals import TimeInterval


def local_date(value: datetime, tz: tzinfo) -> date:
    return value.astimezone(tz).date()


def iso_week_monday(day: date) -> date:
    """Monday of the ISO week containing *day*."""
    return day - timedelta(days=day.isoweekday() - 1)


def week_offset(day: date, today: date) -> int:
    """Signed ISO-week distance from *today* to *day* (0 = same week).

    Computed from the week Mondays rather than ISO week numbers so the offset
    stays correct across year boundaries (week 1 vs. week 52/53).
    """
    return (iso_week_monday(day) - iso_week_monday(today)).days // 7


def week_window(offset: int, today: date, tz: tzinfo) -> TimeInterval:
    """``[Monday 00:00, next Monday 00:00)`` of the week *offset* weeks from *today*."""
    monday = iso_week_monday(today) + timedelta(weeks=offset)
    start = datetime.combine(monday, time.min, tzinfo=tz)
    end = datetime.combine(monday + timedelta(days=7), time.min, tzinfo=tz)
    return TimeInterval(start, end)
