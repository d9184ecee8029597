"""Scheduler orchestration.

``run_scheduler`` performs one pass over the scheduling horizon:

1. Fetch the raw event window once (four weeks of history through the end of
   the horizon).
2. Group timed events by local calendar day.
3. For each work day, compute free slots, place lunch and coffee by best fit,
   then pack focus time against the day's week bucket.
4. Create each placement with one awaited provider call, in order.
5. Recompute the insights snapshot from the same fetch and persist it.

Planning is pure; only step 4 and step 5 touch the outside world.  Any fetch
or create failure aborts the rest of the run without rolling back events that
were already created.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

import structlog
from pydantic import ValidationError

from cai.config import DEFAULT_HORIZON_DAYS, ConfigError
from cai.core import telemetry
from cai.core.events import ManagedEventCreate, TimedEvent, timed_only
from cai.core.focus import WeekBucket, WeekKey, pack_focus_time
from cai.core.guard import has_managed
from cai.core.insights import (
    INSIGHT_WEEK_OFFSETS,
    WeekInsights,
    compute_insights,
    insights_to_payload,
)
from cai.core.intervals import (
    BusyBlock,
    EventCategory,
    FreeSlots,
    TimeInterval,
    clamp_to_window,
    compute_free_slots,
    consolidate,
)
from cai.core.logging import get_logger, set_run_context
from cai.core.placement import place
from cai.core.preferences import Preferences
from cai.core.weeks import local_date, week_offset, week_window
from cai.google_credentials import StaticTokenSource, TokenSource
from cai.modules.calendar import (
    CalendarAuthError,
    CalendarConfig,
    CalendarError,
    CalendarProvider,
    GoogleCalendarProvider,
)
from cai.storage.state import INSIGHTS_KEY, StateStore

_WEEK_KEYS: dict[int, WeekKey] = {0: WeekKey.current, 1: WeekKey.next}


class SchedulerError(Exception):
    """Base class for failures that abort a scheduler run."""


class FetchError(SchedulerError):
    """Retrieving the event window failed; nothing was placed."""


class CreateError(SchedulerError):
    """Creating a managed event failed; earlier creations remain."""

    def __init__(self, message: str, *, day: date, category: EventCategory) -> None:
        super().__init__(message)
        self.day = day
        self.category = category


@dataclass(frozen=True)
class Placement:
    day: date
    category: EventCategory
    interval: TimeInterval


@dataclass
class DayPlan:
    """Placements decided for a single day, in creation order."""

    day: date
    placements: list[Placement] = field(default_factory=list)
    skipped: list[EventCategory] = field(default_factory=list)
    remaining_slots: FreeSlots = ()


@dataclass
class SchedulerReport:
    """Outcome of a completed run."""

    run_id: str
    started_at: datetime
    days_planned: list[date] = field(default_factory=list)
    created: list[Placement] = field(default_factory=list)
    insights: dict[int, WeekInsights] = field(default_factory=dict)

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def focus_seconds_added(self) -> float:
        return sum(p.interval.seconds for p in self.created if p.category is EventCategory.focus)


def fetch_window(
    now: datetime,
    tz: tzinfo,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
) -> TimeInterval:
    """Window covering the oldest insight week through the end of the horizon.

    The window always reaches the end of next week so the next-week focus
    bucket is seeded from every managed focus event in it.
    """
    today = local_date(now, tz)
    oldest = week_window(min(INSIGHT_WEEK_OFFSETS), today, tz).start
    horizon_end = datetime.combine(today + timedelta(days=horizon_days), time.min, tzinfo=tz)
    return TimeInterval(oldest, max(horizon_end, week_window(1, today, tz).end))


def group_by_day(events: Iterable[TimedEvent], tz: tzinfo) -> dict[date, list[BusyBlock]]:
    """Busy blocks keyed by every local date each event touches, in fetch order."""
    grouped: dict[date, list[BusyBlock]] = {}
    for event in events:
        block = event.to_busy_block()
        if block is None:
            continue
        day = local_date(block.start, tz)
        last_day = local_date(block.end - timedelta(microseconds=1), tz)
        while day <= last_day:
            grouped.setdefault(day, []).append(block)
            day += timedelta(days=1)
    return grouped


def seed_week_buckets(
    events: Iterable[TimedEvent],
    *,
    today: date,
    tz: tzinfo,
) -> dict[WeekKey, WeekBucket]:
    """Week buckets pre-loaded with managed focus already on the calendar."""
    buckets = {key: WeekBucket(week=key) for key in WeekKey}
    for event in events:
        if not event.is_managed or event.category is not EventCategory.focus:
            continue
        if event.duration_seconds <= 0:
            continue
        key = _WEEK_KEYS.get(week_offset(local_date(event.start_at, tz), today))
        if key is not None:
            buckets[key].focus_seconds_scheduled += event.duration_seconds
    return buckets


def _ceil_to_minute(value: datetime) -> datetime:
    floored = value.replace(second=0, microsecond=0)
    return floored if floored == value else floored + timedelta(minutes=1)


def work_window(
    day: date,
    preferences: Preferences,
    tz: tzinfo,
    *,
    now: datetime | None = None,
) -> TimeInterval | None:
    """Working hours of *day*, starting no earlier than *now*.

    *now* is rounded up to the next whole minute.  Returns ``None`` when the
    working day has already ended.
    """
    start = datetime.combine(day, preferences.work_start, tzinfo=tz)
    end = datetime.combine(day, preferences.work_end, tzinfo=tz)
    if now is not None and now > start:
        start = _ceil_to_minute(now)
    if start >= end:
        return None
    return TimeInterval(start, end)


def plan_day(
    day: date,
    blocks: list[BusyBlock],
    window: TimeInterval,
    preferences: Preferences,
    tz: tzinfo,
    bucket: WeekBucket | None,
) -> DayPlan:
    """Decide lunch, coffee and focus placements for one day.

    Categories that already have a managed event on *day* are skipped.  Focus
    is packed only when *bucket* is given; the bucket is updated in place.
    """
    plan = DayPlan(day=day)
    slots = compute_free_slots(consolidate(clamp_to_window(blocks, window)), window)

    fixed_items = (
        (EventCategory.lunch, preferences.lunch_duration_min, preferences.lunch_preferred_time),
        (EventCategory.coffee, preferences.coffee_duration_min, preferences.coffee_preferred_time),
    )
    for category, minutes, preferred in fixed_items:
        if minutes <= 0:
            continue
        if has_managed(blocks, category):
            plan.skipped.append(category)
            continue
        interval, slots = place(
            slots,
            timedelta(minutes=minutes),
            datetime.combine(day, preferred, tzinfo=tz),
        )
        if interval is not None:
            plan.placements.append(Placement(day, category, interval))

    if bucket is not None:
        if has_managed(blocks, EventCategory.focus):
            plan.skipped.append(EventCategory.focus)
        else:
            focus_blocks, slots = pack_focus_time(
                slots, bucket, preferences.focus_goal_seconds
            )
            plan.placements.extend(
                Placement(day, EventCategory.focus, block) for block in focus_blocks
            )

    plan.remaining_slots = slots
    return plan


def _coerce_preferences(preferences: Preferences | Mapping[str, Any] | None) -> Preferences:
    if preferences is None:
        raise ConfigError("No scheduling preferences saved; run the setup first")
    if isinstance(preferences, Preferences):
        return preferences
    try:
        return Preferences.model_validate(preferences)
    except ValidationError as exc:
        raise ConfigError(f"Invalid scheduling preferences: {exc}") from exc


def _coerce_token_source(auth_token: str | TokenSource | None) -> TokenSource:
    if auth_token is None or isinstance(auth_token, str):
        return StaticTokenSource(auth_token)
    return auth_token


async def _fetch_events(provider: CalendarProvider, window: TimeInterval) -> list[TimedEvent]:
    try:
        events = await provider.list_events(time_min=window.start, time_max=window.end)
    except CalendarAuthError:
        raise
    except CalendarError as exc:
        raise FetchError(f"Failed to fetch calendar events: {exc}") from exc
    return timed_only(events)


async def run_scheduler(
    auth_token: str | TokenSource | None,
    preferences: Preferences | Mapping[str, Any] | None,
    *,
    provider: CalendarProvider | None = None,
    store: StateStore | None = None,
    calendar_config: CalendarConfig | None = None,
    now: datetime | None = None,
    log: structlog.stdlib.BoundLogger | None = None,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
    skip_weekends: bool = True,
) -> SchedulerReport:
    """Run one scheduling pass and persist the insights snapshot.

    Raises
    ------
    CalendarAuthError
        No usable credential; nothing was fetched.
    ConfigError
        Preferences are missing or invalid; nothing was fetched.
    FetchError
        The event window could not be retrieved.
    CreateError
        A managed event could not be created; the run stopped there.
    """
    token_source = _coerce_token_source(auth_token)
    prefs = _coerce_preferences(preferences)
    config = calendar_config or CalendarConfig()
    tz = ZoneInfo(config.timezone)
    now = now or datetime.now(UTC)
    today = local_date(now, tz)

    run_id = uuid.uuid4().hex[:12]
    set_run_context(run_id)
    log = (log or get_logger(__name__)).bind(run_id=run_id)

    owns_provider = provider is None
    if provider is None:
        provider = GoogleCalendarProvider(config, token_source)

    report = SchedulerReport(run_id=run_id, started_at=now)
    tracer = telemetry.get_tracer()
    try:
        with tracer.start_as_current_span("cai.scheduler.run") as span:
            span.set_attribute("cai.run_id", run_id)
            span.set_attribute("cai.horizon_days", horizon_days)

            window = fetch_window(now, tz, horizon_days)
            events = await _fetch_events(provider, window)
            log.info("Fetched calendar events", count=len(events), window_start=str(window.start))

            by_day = group_by_day(events, tz)
            buckets = seed_week_buckets(events, today=today, tz=tz)

            for index in range(horizon_days):
                day = today + timedelta(days=index)
                if skip_weekends and day.isoweekday() >= 6:
                    continue
                day_window = work_window(day, prefs, tz, now=now)
                if day_window is None:
                    continue
                key = _WEEK_KEYS.get(week_offset(day, today))
                bucket = buckets[key] if key is not None else None
                plan = plan_day(day, by_day.get(day, []), day_window, prefs, tz, bucket)
                report.days_planned.append(day)
                await _create_placements(provider, plan, config.timezone, log, report)

            report.insights = compute_insights(
                events,
                today=today,
                tz=tz,
                focus_goal_hours=prefs.focus_goal_hours_per_week,
            )
            if store is not None:
                await store.state_set(INSIGHTS_KEY, insights_to_payload(report.insights))

            span.set_attribute("cai.events_created", report.created_count)
    except CalendarAuthError:
        # Counted by the caller as a skipped run.
        raise
    except Exception:
        telemetry.record_run("failed")
        raise
    finally:
        set_run_context(None)
        if owns_provider:
            await provider.shutdown()

    telemetry.record_run("completed")
    telemetry.record_focus_seconds(report.focus_seconds_added)
    log.info(
        "Scheduler run completed",
        days=len(report.days_planned),
        created=report.created_count,
    )
    return report


async def _create_placements(
    provider: CalendarProvider,
    plan: DayPlan,
    timezone: str,
    log: structlog.stdlib.BoundLogger,
    report: SchedulerReport,
) -> None:
    for category in plan.skipped:
        log.debug("Managed event already present", day=str(plan.day), category=str(category))

    for placement in plan.placements:
        event_log = log.bind(day=str(placement.day), category=str(placement.category))
        payload = ManagedEventCreate.for_category(
            placement.category, placement.interval, timezone=timezone
        )
        try:
            await provider.create_event(payload)
        except CalendarError as exc:
            event_log.error("Failed to create managed event", error=str(exc))
            raise CreateError(
                f"Failed to create {placement.category} event on {placement.day}: {exc}",
                day=placement.day,
                category=placement.category,
            ) from exc
        report.created.append(placement)
        telemetry.record_event_created(str(placement.category))
        event_log.info(
            "Created managed event",
            start=placement.interval.start.isoformat(),
            end=placement.interval.end.isoformat(),
        )


async def clear_managed_events(
    provider: CalendarProvider,
    window: TimeInterval,
    *,
    log: structlog.stdlib.BoundLogger | None = None,
) -> int:
    """Delete every managed event overlapping *window*, one at a time.

    Returns the number of events deleted.
    """
    log = log or get_logger(__name__)
    events = await _fetch_events(provider, window)
    deleted = 0
    for event in events:
        if not event.is_managed:
            continue
        await provider.delete_event(event.event_id)
        deleted += 1
    log.info("Cleared managed events", deleted=deleted)
    return deleted


async def fetch_week_insights(
    provider: CalendarProvider,
    offset: int,
    preferences: Preferences | Mapping[str, Any] | None,
    *,
    now: datetime | None = None,
    tz: tzinfo = UTC,
) -> WeekInsights:
    """Statistics for the single ISO week *offset* weeks from *now*."""
    prefs = _coerce_preferences(preferences)
    now = now or datetime.now(UTC)
    today = local_date(now, tz)
    window = week_window(offset, today, tz)
    events = await _fetch_events(provider, window)
    insights = compute_insights(
        events,
        today=today,
        tz=tz,
        focus_goal_hours=prefs.focus_goal_hours_per_week,
        offsets=(offset,),
    )
    return insights[offset]
