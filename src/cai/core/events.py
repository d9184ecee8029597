"""Canonical event shapes at the provider boundary and title classification.

Provider payloads are parsed into a tagged union of :class:`TimedEvent` and
:class:`AllDayEvent`.  Only timed events ever reach the scheduling engine;
all-day events are dropped explicitly by :func:`timed_only`.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from cai.core.intervals import BusyBlock, EventCategory, TimeInterval

MANAGED_MARKER = "[Cai]"
MANAGED_PRIVATE_KEY = "cai_managed"

MANAGED_SUMMARIES: dict[EventCategory, str] = {
    EventCategory.lunch: f"🍽️ Lunch {MANAGED_MARKER}",
    EventCategory.coffee: f"☕ Coffee Break {MANAGED_MARKER}",
    EventCategory.focus: f"⚡ Focus Time {MANAGED_MARKER}",
}

# Google Calendar palette ids: lavender, orange, yellow.
MANAGED_COLORS: dict[EventCategory, str] = {
    EventCategory.focus: "1",
    EventCategory.coffee: "4",
    EventCategory.lunch: "5",
}


def classify_title(title: str) -> EventCategory:
    """Infer the category of an event from keywords in its title."""
    if "Focus Time" in title:
        return EventCategory.focus
    if "lunch" in title.lower():
        return EventCategory.lunch
    if "Coffee" in title or "Break" in title:
        return EventCategory.coffee
    return EventCategory.none


def is_managed_title(title: str) -> bool:
    return MANAGED_MARKER in title


class AttendeeInfo(BaseModel):
    """Attendee as reported by the provider."""

    model_config = ConfigDict(populate_by_name=True)

    email: str
    response_status: str | None = None
    self_: bool = Field(default=False, alias="self")


class TimedEvent(BaseModel):
    """An event with concrete start/end instants."""

    kind: Literal["timed"] = "timed"
    event_id: str
    title: str = "Busy"
    start_at: datetime
    end_at: datetime
    attendees: list[AttendeeInfo] = Field(default_factory=list)
    recurrence: list[str] = Field(default_factory=list)
    recurring_event_id: str | None = None
    color_id: str | None = None
    managed_flag: bool = False

    @model_validator(mode="after")
    def _require_aware(self) -> TimedEvent:
        if self.start_at.tzinfo is None or self.end_at.tzinfo is None:
            raise ValueError("TimedEvent boundaries must be timezone-aware")
        return self

    @property
    def is_managed(self) -> bool:
        return self.managed_flag or is_managed_title(self.title)

    @property
    def category(self) -> EventCategory:
        return classify_title(self.title)

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence) or self.recurring_event_id is not None

    @property
    def attendee_count(self) -> int:
        return len(self.attendees)

    @property
    def duration_seconds(self) -> float:
        return (self.end_at - self.start_at).total_seconds()

    def to_busy_block(self) -> BusyBlock | None:
        """Return the busy block for this event, or ``None`` for zero-length events."""
        if self.end_at <= self.start_at:
            return None
        return BusyBlock(
            start=self.start_at,
            end=self.end_at,
            label=self.title,
            is_managed=self.is_managed,
            category=self.category,
        )


class AllDayEvent(BaseModel):
    """A date-only event; never scheduled around."""

    kind: Literal["all_day"] = "all_day"
    event_id: str
    title: str = "Busy"
    start_date: date
    end_date: date


ProviderEvent = Annotated[TimedEvent | AllDayEvent, Field(discriminator="kind")]


def timed_only(events: Iterable[TimedEvent | AllDayEvent]) -> list[TimedEvent]:
    return [event for event in events if isinstance(event, TimedEvent)]


class ManagedEventCreate(BaseModel):
    """Payload for an event created by the scheduler."""

    model_config = ConfigDict(frozen=True)

    summary: str
    start_at: datetime
    end_at: datetime
    color_id: str
    category: EventCategory
    timezone: str | None = None

    @classmethod
    def for_category(
        cls,
        category: EventCategory,
        interval: TimeInterval,
        *,
        timezone: str | None = None,
    ) -> ManagedEventCreate:
        if category is EventCategory.none:
            raise ValueError("managed events need a concrete category")
        return cls(
            summary=MANAGED_SUMMARIES[category],
            start_at=interval.start,
            end_at=interval.end,
            color_id=MANAGED_COLORS[category],
            category=category,
            timezone=timezone,
        )
