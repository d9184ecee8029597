"""Best-fit placement of fixed-duration daily items (lunch, coffee)."""

from __future__ import annotations

from datetime import datetime, timedelta

from cai.core.intervals import FreeSlots, TimeInterval, carve


def _candidate_start(slot: TimeInterval, duration: timedelta, preferred: datetime) -> datetime:
    latest_start = slot.end - duration
    if preferred < slot.start:
        return slot.start
    if preferred > latest_start:
        return latest_start
    return preferred


def find_best_fit(
    slots: FreeSlots,
    duration: timedelta,
    preferred: datetime,
) -> TimeInterval | None:
    """Return the interval of length *duration* closest to *preferred*.

    Only slots at least *duration* long are eligible.  Within each eligible slot
    the candidate start is *preferred* clamped to ``[slot.start, slot.end -
    duration]``; the candidate with the smallest distance to *preferred* wins
    and the earliest slot wins ties.  Returns ``None`` when nothing fits.
    """
    if duration <= timedelta(0):
        raise ValueError("duration must be positive")

    best: TimeInterval | None = None
    best_score: timedelta | None = None
    for slot in slots:
        if slot.duration < duration:
            continue
        start = _candidate_start(slot, duration, preferred)
        score = abs(preferred - start)
        if best_score is None or score < best_score:
            best_score = score
            best = TimeInterval(start, start + duration)
    return best


def place(
    slots: FreeSlots,
    duration: timedelta,
    preferred: datetime,
) -> tuple[TimeInterval | None, FreeSlots]:
    """Find the best fit and carve it out, returning ``(placement, remaining_slots)``."""
    placement = find_best_fit(slots, duration, preferred)
    if placement is None:
        return None, slots
    return placement, carve(slots, placement)
