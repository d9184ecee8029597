"""State storage backends."""

from cai.storage.state import (
    INSIGHTS_KEY,
    PREFERENCES_KEY,
    LocalStateStore,
    PostgresStateStore,
    StateStore,
)

__all__ = [
    "INSIGHTS_KEY",
    "PREFERENCES_KEY",
    "LocalStateStore",
    "PostgresStateStore",
    "StateStore",
]
