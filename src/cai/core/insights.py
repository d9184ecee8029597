"""Weekly productivity insights from historical calendar events.

Each timed event is assigned to an ISO week relative to "now" and classified:

- managed focus time counts towards ``focusTimeHours``;
- any other event whose title mentions neither ``Lunch`` nor ``Coffee`` is a
  meeting.  Meetings count towards ``meetingsHours``, towards
  ``oneOnOneHours`` when they have exactly two attendees, and towards
  ``recurrentHours`` when they belong to a recurring series.  The last two are
  independent of each other.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, tzinfo
from typing import Any

from cai.core.events import TimedEvent
from cai.core.intervals import EventCategory
from cai.core.weeks import local_date, week_offset

INSIGHT_WEEK_OFFSETS: tuple[int, ...] = (0, -1, -2, -3, -4)
ONE_ON_ONE_ATTENDEES = 2

# Case-sensitive title keywords of events that are not meetings.
NON_MEETING_KEYWORDS: tuple[str, ...] = ("Lunch", "Coffee")


def is_non_meeting_title(title: str) -> bool:
    return any(keyword in title for keyword in NON_MEETING_KEYWORDS)


def round_hours(value: float) -> float:
    """Round to one decimal place, halves away from zero."""
    return math.floor(value * 10 + 0.5) / 10


@dataclass
class WeekInsights:
    """Hour totals for one ISO week."""

    focus_time_hours: float = 0.0
    meetings_hours: float = 0.0
    one_on_one_hours: float = 0.0
    recurrent_hours: float = 0.0
    focus_time_goal_hours: float = 0.0

    def add(self, event: TimedEvent) -> None:
        hours = event.duration_seconds / 3600
        if event.category is EventCategory.focus and event.is_managed:
            self.focus_time_hours += hours
            return
        if is_non_meeting_title(event.title):
            return
        self.meetings_hours += hours
        if event.attendee_count == ONE_ON_ONE_ATTENDEES:
            self.one_on_one_hours += hours
        if event.is_recurring:
            self.recurrent_hours += hours

    def rounded(self) -> WeekInsights:
        return WeekInsights(
            focus_time_hours=round_hours(self.focus_time_hours),
            meetings_hours=round_hours(self.meetings_hours),
            one_on_one_hours=round_hours(self.one_on_one_hours),
            recurrent_hours=round_hours(self.recurrent_hours),
            focus_time_goal_hours=self.focus_time_goal_hours,
        )

    def to_payload(self) -> dict[str, float]:
        return {
            "focusTimeHours": self.focus_time_hours,
            "meetingsHours": self.meetings_hours,
            "oneOnOneHours": self.one_on_one_hours,
            "recurrentHours": self.recurrent_hours,
            "focusTimeGoalHours": self.focus_time_goal_hours,
        }


def compute_insights(
    events: Iterable[TimedEvent],
    *,
    today: date,
    tz: tzinfo,
    focus_goal_hours: float,
    offsets: Iterable[int] = INSIGHT_WEEK_OFFSETS,
) -> dict[int, WeekInsights]:
    """Aggregate *events* into per-week insights for each of *offsets*.

    Events whose week falls outside *offsets*, or that have no positive
    duration, are ignored.  Every returned figure is rounded to one decimal.
    """
    buckets = {offset: WeekInsights(focus_time_goal_hours=focus_goal_hours) for offset in offsets}
    for event in events:
        if event.duration_seconds <= 0:
            continue
        offset = week_offset(local_date(event.start_at, tz), today)
        bucket = buckets.get(offset)
        if bucket is None:
            continue
        bucket.add(event)
    return {offset: bucket.rounded() for offset, bucket in buckets.items()}


def insights_to_payload(insights: dict[int, WeekInsights]) -> dict[str, dict[str, Any]]:
    """JSON-ready snapshot keyed by the stringified week offset."""
    return {str(offset): week.to_payload() for offset, week in sorted(insights.items())}
