"""User scheduling preferences.

Stored as the camelCase mapping the setup wizard writes
(``workingHoursStart``, ``lunchDuration`` ...).  Form values may arrive as
strings, so numeric fields are coerced.
"""

from __future__ import annotations

from datetime import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_FOCUS_GOAL_HOURS = 10.0


def parse_clock(value: Any) -> time:
    """Parse an ``HH:MM`` string (or pass through a ``time``)."""
    if isinstance(value, time):
        return value
    if not isinstance(value, str):
        raise ValueError(f"expected an HH:MM string, got {type(value).__name__}")
    parts = value.strip().split(":")
    if len(parts) != 2:
        raise ValueError(f"expected an HH:MM string, got {value!r}")
    try:
        hour, minute = (int(part) for part in parts)
        return time(hour, minute)
    except ValueError as exc:
        raise ValueError(f"invalid time of day {value!r}") from exc


class Preferences(BaseModel):
    """Working hours, daily breaks and the weekly focus goal."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    work_start: time = Field(default=time(9, 0), alias="workingHoursStart")
    work_end: time = Field(default=time(17, 0), alias="workingHoursEnd")
    lunch_duration_min: int = Field(default=60, ge=0, alias="lunchDuration")
    lunch_preferred_time: time = Field(default=time(12, 0), alias="lunchPreference")
    coffee_duration_min: int = Field(default=0, ge=0, alias="coffeeBreakDuration")
    coffee_preferred_time: time = Field(default=time(15, 0), alias="coffeePreference")
    focus_goal_hours_per_week: float = Field(
        default=DEFAULT_FOCUS_GOAL_HOURS, ge=0, alias="focusTimeGoal"
    )

    @field_validator(
        "work_start",
        "work_end",
        "lunch_preferred_time",
        "coffee_preferred_time",
        mode="before",
    )
    @classmethod
    def _parse_clock(cls, value: Any) -> time:
        return parse_clock(value)

    @field_validator("lunch_duration_min", "coffee_duration_min", mode="before")
    @classmethod
    def _coerce_minutes(cls, value: Any) -> Any:
        if value is None or value == "":
            return 0
        if isinstance(value, str):
            return int(value.strip())
        return value

    @field_validator("focus_goal_hours_per_week", mode="before")
    @classmethod
    def _coerce_goal(cls, value: Any) -> Any:
        if value is None or value == "":
            return DEFAULT_FOCUS_GOAL_HOURS
        if isinstance(value, str):
            return float(value.strip())
        return value

    @model_validator(mode="after")
    def _validate_window(self) -> Preferences:
        if self.work_start >= self.work_end:
            raise ValueError("workingHoursStart must be earlier than workingHoursEnd")
        return self

    @property
    def focus_goal_seconds(self) -> float:
        return self.focus_goal_hours_per_week * 3600

    def to_storage(self) -> dict[str, Any]:
        """Serialise back to the stored camelCase shape."""
        return {
            "workingHoursStart": self.work_start.strftime("%H:%M"),
            "workingHoursEnd": self.work_end.strftime("%H:%M"),
            "lunchDuration": self.lunch_duration_min,
            "lunchPreference": self.lunch_preferred_time.strftime("%H:%M"),
            "coffeeBreakDuration": self.coffee_duration_min,
            "coffeePreference": self.coffee_preferred_time.strftime("%H:%M"),
            "focusTimeGoal": self.focus_goal_hours_per_week,
        }
