"""Greedy focus-time packing against a weekly quota."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum

from cai.core.intervals import FreeSlots, TimeInterval

MIN_FOCUS_BLOCK_SECONDS = 1800
MAX_FOCUS_BLOCK_SECONDS = 3600


class WeekKey(StrEnum):
    current = "current"
    next = "next"


@dataclass
class WeekBucket:
    """Running tally of managed focus seconds for one ISO week."""

    week: WeekKey
    focus_seconds_scheduled: float = 0.0

    def needed_seconds(self, goal_seconds: float) -> float:
        return goal_seconds - self.focus_seconds_scheduled


def pack_focus_time(
    slots: FreeSlots,
    bucket: WeekBucket,
    goal_seconds: float,
    *,
    min_block_seconds: int = MIN_FOCUS_BLOCK_SECONDS,
    max_block_seconds: int = MAX_FOCUS_BLOCK_SECONDS,
) -> tuple[list[TimeInterval], FreeSlots]:
    """Fill *slots* chronologically with focus blocks until the week's goal is met.

    Each block is ``min(max_block, remaining slot length, still needed)`` long
    and starts at the slot's current start.  A slot is abandoned once less than
    *min_block_seconds* of it is left, even if that leftover is wasted.

    *bucket* is updated in place.  Returns the placed blocks and the remaining
    free slots.
    """
    needed = bucket.needed_seconds(goal_seconds)
    blocks: list[TimeInterval] = []
    remaining: list[TimeInterval] = []

    for slot in slots:
        start = slot.start
        while (slot.end - start).total_seconds() >= min_block_seconds and needed > 0:
            length = min(max_block_seconds, (slot.end - start).total_seconds(), needed)
            block = TimeInterval(start, start + timedelta(seconds=length))
            blocks.append(block)
            start = block.end
            needed -= length
            bucket.focus_seconds_scheduled += length
        if start < slot.end:
            remaining.append(TimeInterval(start, slot.end))

    return blocks, tuple(remaining)
