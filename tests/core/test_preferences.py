"""Tests for stored preference parsing."""

from __future__ import annotations

from datetime import time

import pytest
from pydantic import ValidationError

from cai.core.preferences import DEFAULT_FOCUS_GOAL_HOURS, Preferences, parse_clock

pytestmark = pytest.mark.unit


STORED = {
    "workingHoursStart": "08:30",
    "workingHoursEnd": "16:30",
    "lunchDuration": "45",
    "lunchPreference": "12:15",
    "coffeeBreakDuration": 15,
    "coffeePreference": "15:30",
    "focusTimeGoal": "12.5",
}


class TestParseClock:
    def test_parses_hh_mm(self):
        assert parse_clock("09:05") == time(9, 5)

    def test_passes_time_through(self):
        assert parse_clock(time(7, 0)) == time(7, 0)

    @pytest.mark.parametrize("raw", ["9", "25:00", "ab:cd", "09:00:00"])
    def test_rejects_malformed(self, raw):
        with pytest.raises(ValueError):
            parse_clock(raw)

    def test_rejects_non_string(self):
        with pytest.raises(ValueError, match="HH:MM"):
            parse_clock(900)


class TestPreferences:
    def test_parses_camel_case_with_string_numbers(self):
        prefs = Preferences.model_validate(STORED)
        assert prefs.work_start == time(8, 30)
        assert prefs.work_end == time(16, 30)
        assert prefs.lunch_duration_min == 45
        assert prefs.lunch_preferred_time == time(12, 15)
        assert prefs.coffee_duration_min == 15
        assert prefs.coffee_preferred_time == time(15, 30)
        assert prefs.focus_goal_hours_per_week == 12.5
        assert prefs.focus_goal_seconds == 45000

    def test_defaults(self):
        prefs = Preferences()
        assert prefs.work_start == time(9, 0)
        assert prefs.work_end == time(17, 0)
        assert prefs.coffee_preferred_time == time(15, 0)
        assert prefs.coffee_duration_min == 0
        assert prefs.focus_goal_hours_per_week == DEFAULT_FOCUS_GOAL_HOURS

    def test_blank_form_values_fall_back(self):
        prefs = Preferences.model_validate({"coffeeBreakDuration": "", "focusTimeGoal": ""})
        assert prefs.coffee_duration_min == 0
        assert prefs.focus_goal_hours_per_week == DEFAULT_FOCUS_GOAL_HOURS

    def test_rejects_inverted_working_hours(self):
        with pytest.raises(ValidationError, match="earlier than"):
            Preferences.model_validate({"workingHoursStart": "18:00", "workingHoursEnd": "09:00"})

    def test_rejects_negative_duration(self):
        with pytest.raises(ValidationError):
            Preferences.model_validate({"lunchDuration": -5})

    def test_is_frozen(self):
        prefs = Preferences()
        with pytest.raises(ValidationError):
            prefs.lunch_duration_min = 30

    def test_storage_round_trip(self):
        prefs = Preferences.model_validate(STORED)
        stored = prefs.to_storage()
        assert stored["workingHoursStart"] == "08:30"
        assert stored["lunchDuration"] == 45
        assert Preferences.model_validate(stored) == prefs

    def test_ignores_unknown_keys(self):
        prefs = Preferences.model_validate({"theme": "dark"})
        assert prefs == Preferences()
