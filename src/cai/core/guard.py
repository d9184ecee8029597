"""Idempotency guard: per-day duplicate detection and the run-level lock."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import StrEnum

from cai.core.intervals import BusyBlock, EventCategory

logger = logging.getLogger(__name__)


def has_managed(blocks: Iterable[BusyBlock], category: EventCategory) -> bool:
    """True when *blocks* already hold an event this system created for *category*.

    Only managed events count: a user's own "Lunch with Sam" does not stop the
    engine from placing its lunch block.
    """
    return any(block.is_managed and block.category == category for block in blocks)


class LockStatus(StrEnum):
    acquired = "acquired"
    busy = "busy"


class RunLock:
    """Non-blocking exclusive flag guarding scheduler runs.

    ``try_acquire`` never waits: a caller that finds the lock held gets
    ``LockStatus.busy`` and is expected to drop its request.  All callers share
    one event loop, so the check-and-set needs no further synchronisation.
    """

    def __init__(self) -> None:
        self._holder: str | None = None

    @property
    def held(self) -> bool:
        return self._holder is not None

    @property
    def holder(self) -> str | None:
        return self._holder

    def try_acquire(self, holder: str = "run") -> LockStatus:
        if self._holder is not None:
            logger.info("Run lock busy (held by %s); dropping %s request", self._holder, holder)
            return LockStatus.busy
        self._holder = holder
        return LockStatus.acquired

    def release(self) -> None:
        if self._holder is None:
            raise RuntimeError("RunLock.release() called while not held")
        self._holder = None
