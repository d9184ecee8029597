"""Interval primitives: busy-block consolidation and free-slot computation.

Free slots are modelled as immutable tuples of :class:`TimeInterval`.  Every
operation that consumes part of a slot returns a new tuple instead of splicing
the caller's sequence, so the placement engine and the focus packer never share
mutable state.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import StrEnum


class EventCategory(StrEnum):
    """Category of a busy block, inferred from its label."""

    none = "none"
    lunch = "lunch"
    coffee = "coffee"
    focus = "focus"


@dataclass(frozen=True)
class TimeInterval:
    """Half-open ``[start, end)`` interval of aware datetimes."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if not self.start < self.end:
            raise ValueError(f"interval start must precede end: {self.start} >= {self.end}")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def seconds(self) -> float:
        return self.duration.total_seconds()

    def contains(self, other: TimeInterval) -> bool:
        return self.start <= other.start and other.end <= self.end

    def overlaps(self, other: TimeInterval) -> bool:
        return self.start < other.end and other.start < self.end


@dataclass(frozen=True)
class BusyBlock(TimeInterval):
    """A busy interval derived from one or more calendar events."""

    label: str = "Busy"
    is_managed: bool = False
    category: EventCategory = EventCategory.none


FreeSlots = tuple[TimeInterval, ...]


def clamp_to_window(blocks: Iterable[BusyBlock], window: TimeInterval) -> list[BusyBlock]:
    """Clamp *blocks* to *window*.

    Blocks wholly outside the window are discarded; blocks that straddle a
    boundary are truncated to it.  Input order is preserved.
    """
    clamped: list[BusyBlock] = []
    for block in blocks:
        if not block.overlaps(window):
            continue
        clamped.append(
            replace(
                block,
                start=max(block.start, window.start),
                end=min(block.end, window.end),
            )
        )
    return clamped


def consolidate(blocks: Sequence[BusyBlock]) -> list[BusyBlock]:
    """Merge overlapping or touching blocks into a minimal ascending disjoint set.

    The sort is stable, so blocks sharing a start keep their fetch order; the
    merged block keeps the label of the first block in its run.
    """
    merged: list[BusyBlock] = []
    for block in sorted(blocks, key=lambda b: b.start):
        if merged and block.start <= merged[-1].end:
            last = merged[-1]
            if block.end > last.end:
                merged[-1] = replace(last, end=block.end)
        else:
            merged.append(block)
    return merged


def compute_free_slots(busy: Sequence[TimeInterval], window: TimeInterval) -> FreeSlots:
    """Return the gaps of *window* not covered by the ascending *busy* set."""
    slots: list[TimeInterval] = []
    cursor = window.start
    for block in busy:
        gap_end = min(block.start, window.end)
        if cursor < gap_end:
            slots.append(TimeInterval(cursor, gap_end))
        cursor = max(cursor, block.end)
    if cursor < window.end:
        slots.append(TimeInterval(cursor, window.end))
    return tuple(slots)


def total_seconds(slots: Iterable[TimeInterval]) -> float:
    return sum(slot.seconds for slot in slots)


def carve(slots: FreeSlots, used: TimeInterval) -> FreeSlots:
    """Remove *used* from the slot that fully contains it.

    The parent slot is replaced by its non-empty residuals (before, after) in
    chronological order.  When no slot contains *used* the input is returned
    unchanged.
    """
    for index, slot in enumerate(slots):
        if not slot.contains(used):
            continue
        residuals: list[TimeInterval] = []
        if slot.start < used.start:
            residuals.append(TimeInterval(slot.start, used.start))
        if used.end < slot.end:
            residuals.append(TimeInterval(used.end, slot.end))
        return (*slots[:index], *residuals, *slots[index + 1 :])
    return slots
