"""Key-value state store for preferences and the insights snapshot.

Two backends share the :class:`StateStore` protocol:

- :class:`LocalStateStore`: a single JSON file, replaced atomically on write.
- :class:`PostgresStateStore`: the ``state`` table (JSONB values) via asyncpg.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

PREFERENCES_KEY = "preferences"
INSIGHTS_KEY = "insights"

CREATE_STATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS state (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    version INTEGER NOT NULL DEFAULT 1
)
"""


class StateStore(Protocol):
    """Protocol for state backends."""

    async def state_get(self, key: str) -> Any | None:
        """Return the value stored under *key*, or ``None`` if absent."""
        ...

    async def state_set(self, key: str, value: Any) -> None:
        """Store *value* (any JSON-serialisable type) under *key*, replacing it."""
        ...


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value returned as text, tolerating double encoding."""
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected; applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


class LocalStateStore:
    """JSON-file-backed state store.

    Args:
        path: File holding the whole key space as one JSON object.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        raw = self.path.read_text(encoding="utf-8")
        if not raw.strip():
            return {}
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"State file {self.path} does not hold a JSON object")
        return data

    def _write_all(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def state_get(self, key: str) -> Any | None:
        async with self._lock:
            return self._read_all().get(key)

    async def state_set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = self._read_all()
            data[key] = value
            self._write_all(data)


class PostgresStateStore:
    """State store backed by the ``state`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        await self._pool.execute(CREATE_STATE_TABLE_SQL)

    async def state_get(self, key: str) -> Any | None:
        row = await self._pool.fetchval("SELECT value FROM state WHERE key = $1", key)
        if row is None:
            return None
        return decode_jsonb(row)

    async def state_set(self, key: str, value: Any) -> None:
        await self._pool.execute(
            """
            INSERT INTO state (key, value, updated_at, version)
            VALUES ($1, $2::jsonb, now(), 1)
            ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value,
                    updated_at = now(),
                    version = state.version + 1
            """,
            key,
            json.dumps(value),
        )
