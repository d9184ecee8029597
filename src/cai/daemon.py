"""Scheduler service: owns the run lock, the poller and provider resources.

Lifecycle of :meth:`SchedulerService.start`:

1. Initialize telemetry
2. Open the state store (JSON file or PostgreSQL)
3. Start the cron-driven sync poller (when ``[cai.sync].enabled``)

Every entry point that mutates the calendar (:meth:`trigger`,
:meth:`clear`) goes through the same :class:`RunLock`; a request arriving
while another run holds the lock is dropped and reported as ``busy``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

import asyncpg
import httpx
from croniter import croniter

from cai.config import CaiConfig, ConfigError
from cai.core import telemetry
from cai.core.engine import (
    SchedulerError,
    SchedulerReport,
    clear_managed_events,
    fetch_window,
    fetch_week_insights,
    run_scheduler,
)
from cai.core.guard import LockStatus, RunLock
from cai.core.insights import WeekInsights
from cai.core.logging import get_logger
from cai.core.preferences import Preferences
from cai.google_credentials import GoogleOAuthClient, TokenSource, load_google_credentials
from cai.modules.calendar import (
    CalendarAuthError,
    CalendarConfig,
    CalendarProvider,
    GoogleCalendarProvider,
)
from cai.storage.state import (
    PREFERENCES_KEY,
    LocalStateStore,
    PostgresStateStore,
    StateStore,
)

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[TokenSource], CalendarProvider]


class RunStatus(StrEnum):
    completed = "completed"
    busy = "busy"
    skipped = "skipped"
    failed = "failed"


@dataclass
class RunOutcome:
    """What happened to a single trigger."""

    status: RunStatus
    reason: str
    report: SchedulerReport | None = None
    error: str | None = None


def next_tick_delay(cron: str, *, now: datetime | None = None) -> float:
    """Seconds from *now* until the next occurrence of *cron* (UTC)."""
    anchor = now or datetime.now(UTC)
    next_run = croniter(cron, anchor).get_next(datetime).replace(tzinfo=UTC)
    return max(0.0, (next_run - anchor).total_seconds())


async def open_state_store(config: CaiConfig) -> tuple[StateStore, asyncpg.Pool | None]:
    """Build the configured state store; returns the pool to close, if any."""
    if config.state.backend == "postgres":
        pool = await asyncpg.create_pool(dsn=config.state.dsn, min_size=1, max_size=2)
        store = PostgresStateStore(pool)
        await store.ensure_schema()
        return store, pool
    return LocalStateStore(Path(config.state.path)), None


class SchedulerService:
    """Runs the scheduler on demand and on the configured cron cadence.

    Args:
        config: Parsed ``cai.toml``.
        store: State store holding preferences and the insights snapshot.
            Opened from ``config.state`` at :meth:`start` when omitted.
        token_source: Bearer-token source.  Built from the Google OAuth
            credentials in ``config.google.credentials_env`` when omitted.
        provider_factory: Builds the calendar provider for a token source.
            Defaults to :class:`GoogleCalendarProvider`.
    """

    def __init__(
        self,
        config: CaiConfig,
        *,
        store: StateStore | None = None,
        token_source: TokenSource | None = None,
        provider_factory: ProviderFactory | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.lock = RunLock()
        self._token_source = token_source
        self._provider_factory = provider_factory
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._pool: asyncpg.Pool | None = None
        self._force_sync_event = asyncio.Event()
        self._poller_task: asyncio.Task[None] | None = None
        self._log = get_logger(__name__)

    @property
    def calendar_config(self) -> CalendarConfig:
        return CalendarConfig(calendar_id=self.config.calendar_id, timezone=self.config.timezone)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        telemetry.init_telemetry("cai")

        if self.store is None:
            self.store, self._pool = await open_state_store(self.config)
            logger.info("State store opened (backend=%s)", self.config.state.backend)

        if self.config.sync.enabled:
            self._poller_task = asyncio.create_task(self.run_poller(), name="cai-sync-poller")
            logger.info("Sync poller started (cron=%s)", self.config.sync.cron)

    async def shutdown(self) -> None:
        if self._poller_task is not None and not self._poller_task.done():
            self._poller_task.cancel()
            try:
                await self._poller_task
            except asyncio.CancelledError:
                pass
        self._poller_task = None

        if self._owns_http_client:
            await self._http_client.aclose()
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def _require_store(self) -> StateStore:
        if self.store is None:
            raise RuntimeError("State store is not initialized; call start() first")
        return self.store

    def _resolve_token_source(self) -> TokenSource:
        if self._token_source is None:
            credentials = load_google_credentials(self.config.google.credentials_env)
            self._token_source = GoogleOAuthClient(credentials, self._http_client)
        return self._token_source

    def _build_provider(self, token_source: TokenSource) -> CalendarProvider:
        if self._provider_factory is not None:
            return self._provider_factory(token_source)
        return GoogleCalendarProvider(
            self.calendar_config, token_source, http_client=self._http_client
        )

    async def load_preferences(self) -> Preferences | None:
        raw: Any = await self._require_store().state_get(PREFERENCES_KEY)
        if raw is None:
            return None
        try:
            return Preferences.model_validate(raw)
        except ValueError as exc:
            raise ConfigError(f"Stored preferences are invalid: {exc}") from exc

    async def save_preferences(self, preferences: Preferences) -> None:
        await self._require_store().state_set(PREFERENCES_KEY, preferences.to_storage())

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def trigger(self, reason: str = "manual") -> RunOutcome:
        """Run the scheduler once unless a run is already in progress."""
        if self.lock.try_acquire(reason) is LockStatus.busy:
            telemetry.record_run("busy")
            return RunOutcome(status=RunStatus.busy, reason=reason)

        try:
            preferences = await self.load_preferences()
            if preferences is None:
                logger.info("No preferences saved yet; skipping scheduler run (%s)", reason)
                telemetry.record_run("skipped")
                return RunOutcome(status=RunStatus.skipped, reason=reason)

            token_source = self._resolve_token_source()
            provider = self._build_provider(token_source)
            try:
                report = await run_scheduler(
                    token_source,
                    preferences,
                    provider=provider,
                    store=self.store,
                    calendar_config=self.calendar_config,
                    log=self._log.bind(trigger=reason),
                    horizon_days=self.config.horizon_days,
                    skip_weekends=self.config.skip_weekends,
                )
            finally:
                await provider.shutdown()
        except (CalendarAuthError, ConfigError) as exc:
            logger.warning("Scheduler run skipped (%s): %s", reason, exc)
            telemetry.record_run("skipped")
            return RunOutcome(status=RunStatus.skipped, reason=reason, error=str(exc))
        except SchedulerError as exc:
            logger.error("Scheduler run failed (%s): %s", reason, exc)
            return RunOutcome(status=RunStatus.failed, reason=reason, error=str(exc))
        finally:
            self.lock.release()

        return RunOutcome(status=RunStatus.completed, reason=reason, report=report)

    async def clear(self, *, now: datetime | None = None) -> int | None:
        """Delete managed events in the fetch window; ``None`` when a run is active."""
        if self.lock.try_acquire("clear") is LockStatus.busy:
            return None
        try:
            provider = self._build_provider(self._resolve_token_source())
            try:
                window = fetch_window(
                    now or datetime.now(UTC), self.config.tzinfo, self.config.horizon_days
                )
                return await clear_managed_events(provider, window, log=self._log)
            finally:
                await provider.shutdown()
        finally:
            self.lock.release()

    async def week_insights(self, offset: int, *, now: datetime | None = None) -> WeekInsights:
        preferences = await self.load_preferences()
        if preferences is None:
            preferences = Preferences()
        provider = self._build_provider(self._resolve_token_source())
        try:
            return await fetch_week_insights(
                provider, offset, preferences, now=now, tz=self.config.tzinfo
            )
        finally:
            await provider.shutdown()

    def request_sync(self) -> None:
        """Wake the poller for an immediate run."""
        self._force_sync_event.set()

    async def run_poller(self) -> None:
        """Background task: run on every cron tick or on :meth:`request_sync`."""
        cron = self.config.sync.cron
        logger.debug("Sync poller loop started (cron=%s)", cron)
        reason = "startup"
        while True:
            try:
                outcome = await self.trigger(reason)
                logger.info("Scheduler trigger finished: %s (%s)", outcome.status, reason)
            except Exception as exc:
                logger.error("Sync poller error: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(
                    self._force_sync_event.wait(),
                    timeout=next_tick_delay(cron),
                )
                self._force_sync_event.clear()
                reason = "sync_now"
            except TimeoutError:
                reason = "cron"
