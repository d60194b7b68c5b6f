"""Polling lifecycle and orchestration of a single synchronization pass.

``SyncScheduler`` is the only writer of ``SyncState``. A pass runs:

    probe integration -> fetch events -> update state -> callbacks

with failures classified, journaled and surfaced as a short user message.
At most one pass is in flight; concurrent triggers join it. ``stop()`` is
cooperative: an in-flight pass re-checks the stopped flag after every
suspension point and drops its result instead of touching the state.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict

from calsync.core.metrics import (
    OUTCOME_DISCARDED,
    OUTCOME_DISCONNECTED,
    OUTCOME_FAILURE,
    OUTCOME_OFFLINE,
    OUTCOME_SUCCESS,
    SyncMetrics,
)
from calsync.core.telemetry import get_tracer, tag_engine_span
from calsync.sync.cache import EventCache
from calsync.sync.error_log import ErrorLog
from calsync.sync.errors import (
    INTEGRATION_REQUIRED,
    ClassifiedError,
    Connectivity,
    ErrorClassifier,
    ErrorKind,
    TransportFailure,
)
from calsync.sync.provider import (
    DEFAULT_MAX_RESULTS,
    CalendarEvent,
    ConnectionProbe,
    DateRange,
    EventFetcher,
)

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 5

# Error-log context tags.
CONTEXT_CONNECTION_CHECK = "connection_check"
CONTEXT_SYNC_EVENTS = "sync_events"
CONTEXT_CACHE_READ = "cache_read"
CONTEXT_CACHE_WRITE = "cache_write"

# Codes that mean the integration itself is unusable.
_DISCONNECTING_CODES = frozenset({ErrorKind.AUTH_ERROR, ErrorKind.NO_CALENDAR_ACCESS})

SuccessCallback = Callable[[list[CalendarEvent]], Awaitable[Any] | Any]
ErrorCallback = Callable[[str], Awaitable[Any] | Any]


@dataclass(frozen=True)
class SyncOptions:
    """Per-engine polling configuration. Restart the engine to change it."""

    auto_sync: bool = True
    interval_minutes: float = DEFAULT_INTERVAL_MINUTES
    on_success: SuccessCallback | None = None
    on_error: ErrorCallback | None = None

    def __post_init__(self) -> None:
        if not self.interval_minutes > 0:
            raise ValueError("interval_minutes must be > 0")


@dataclass(frozen=True)
class SyncParams:
    """Window requested by one pass."""

    date_range: DateRange | None = None
    today_only: bool = False
    max_results: int = DEFAULT_MAX_RESULTS
    force_online: bool = False


TODAY = SyncParams(today_only=True)


class SyncState(BaseModel):
    """Immutable snapshot of the engine as seen by the rest of the application."""

    model_config = ConfigDict(frozen=True)

    events: tuple[CalendarEvent, ...] = ()
    is_loading: bool = False
    connected: bool = False
    last_synced: datetime | None = None
    error: str | None = None
    error_code: ErrorKind | None = None
    is_offline: bool = False
    using_cached_data: bool = False


class SchedulerPhase(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class SyncScheduler:
    """Owns the timer, the in-flight guard and the ``SyncState`` snapshot."""

    def __init__(
        self,
        *,
        probe: ConnectionProbe,
        fetcher: EventFetcher,
        classifier: ErrorClassifier,
        error_log: ErrorLog,
        options: SyncOptions | None = None,
        cache: EventCache | None = None,
        connectivity: Connectivity | None = None,
        default_params: SyncParams = TODAY,
        metrics: SyncMetrics | None = None,
        now: Callable[[], datetime] | None = None,
        engine_name: str = "calsync",
    ) -> None:
        self._probe = probe
        self._fetcher = fetcher
        self._classifier = classifier
        self._error_log = error_log
        self._options = options or SyncOptions()
        self._cache = cache
        self._connectivity = connectivity
        self._default_params = default_params
        self._metrics = metrics or SyncMetrics(engine_name)
        self._now = now or (lambda: datetime.now(UTC))
        self._engine_name = engine_name

        self._state = SyncState()
        self._started = False
        self._stopped = False
        self._in_flight: asyncio.Task[list[CalendarEvent] | None] | None = None
        self._poller: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def options(self) -> SyncOptions:
        return self._options

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def timer_armed(self) -> bool:
        return self._poller is not None and not self._poller.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    @property
    def phase(self) -> SchedulerPhase:
        if self._stopped:
            return SchedulerPhase.STOPPED
        if self.in_flight:
            return SchedulerPhase.RUNNING
        return SchedulerPhase.IDLE

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run one pass immediately and arm the interval timer (auto sync only)."""
        if self._stopped:
            raise RuntimeError("Sync scheduler has been stopped; create a new engine to restart")
        if self._started:
            return
        self._started = True

        if not self._options.auto_sync:
            logger.info("Calendar auto sync disabled; waiting for manual triggers")
            return

        self._poller = asyncio.create_task(self._run_poller(), name="calendar-sync-poller")
        logger.info(
            "Calendar sync poller started (interval=%sm)",
            self._options.interval_minutes,
        )

    async def stop(self) -> None:
        """Disarm the timer and drop the effect of any in-flight pass."""
        if self._stopped:
            return
        self._stopped = True

        poller, self._poller = self._poller, None
        if poller is not None and not poller.done():
            poller.cancel()
            if poller is not asyncio.current_task():
                try:
                    await poller
                except asyncio.CancelledError:
                    pass
        logger.info("Calendar sync scheduler stopped")

    async def trigger_sync(
        self,
        params: SyncParams | None = None,
        *,
        trigger: str = "manual",
    ) -> list[CalendarEvent] | None:
        """Run a pass, or join the one already in flight.

        Returns the fetched (or cached) events, or ``None`` when the pass
        failed, was discarded, or the scheduler is stopped.
        """
        if self._stopped:
            logger.debug("Ignoring %s sync trigger: scheduler is stopped", trigger)
            return None

        task = self._in_flight
        if task is None or task.done():
            task = asyncio.create_task(
                self._run_pass(params or self._default_params, trigger),
                name="calendar-sync-pass",
            )
            self._in_flight = task
            task.add_done_callback(self._clear_in_flight)
        else:
            logger.debug("Sync pass already in flight; %s trigger joins it", trigger)

        # Shielded so a cancelled waiter never cancels the shared pass.
        return await asyncio.shield(task)

    async def refresh_connection(self) -> bool:
        """Probe the integration and record the answer in ``connected``."""
        try:
            connected = await self._probe.check()
        except Exception as exc:
            logger.warning("Connection probe raised; treating as not connected: %s", exc)
            connected = False
        if not self._stopped:
            self._update(connected=connected)
        return connected

    def clear_error(self) -> None:
        if not self._stopped:
            self._update(error=None, error_code=None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _clear_in_flight(self, task: asyncio.Task[Any]) -> None:
        if self._in_flight is task:
            self._in_flight = None

    def _update(self, **changes: Any) -> None:
        self._state = self._state.model_copy(update=changes)

    async def _run_poller(self) -> None:
        """Background task: one pass now, then one per interval (fixed cadence)."""
        loop = asyncio.get_running_loop()
        interval_seconds = self._options.interval_minutes * 60
        next_tick = loop.time()

        logger.debug("Calendar sync poller loop started (interval=%ss)", interval_seconds)
        while not self._stopped:
            try:
                await self.trigger_sync(self._default_params, trigger="timer")
            except Exception as exc:
                logger.error("Calendar sync poller error: %s", exc, exc_info=True)

            next_tick += interval_seconds
            now = loop.time()
            while next_tick <= now:
                # The pass overran one or more ticks; skip them.
                next_tick += interval_seconds
            await asyncio.sleep(next_tick - now)

    async def _run_pass(self, params: SyncParams, trigger: str) -> list[CalendarEvent] | None:
        started = time.monotonic()
        tracer = get_tracer()
        with tracer.start_as_current_span("calsync.sync_pass") as span:
            tag_engine_span(span, self._engine_name)
            span.set_attribute("sync.trigger", trigger)
            try:
                outcome, result = await self._execute_pass(params)
            except Exception as exc:
                logger.error("Unexpected error in calendar sync pass: %s", exc, exc_info=True)
                if not self._stopped:
                    self._update(is_loading=False)
                outcome, result = OUTCOME_FAILURE, None
            span.set_attribute("sync.outcome", outcome)

        duration_ms = (time.monotonic() - started) * 1000
        self._metrics.record_pass(outcome, duration_ms)
        logger.debug("Calendar sync pass finished (outcome=%s, %.0fms)", outcome, duration_ms)
        return result

    async def _execute_pass(self, params: SyncParams) -> tuple[str, list[CalendarEvent] | None]:
        self._update(is_loading=True)

        if (
            not params.force_online
            and self._connectivity is not None
            and not self._connectivity.is_online()
        ):
            return await self._serve_offline(params)

        try:
            connected = await self._probe.check()
        except Exception as exc:
            logger.warning("Connection probe raised; treating as not connected: %s", exc)
            connected = False
        if self._stopped:
            return self._discard("connection probe")

        if not connected:
            error = self._classifier.classify(INTEGRATION_REQUIRED)
            await self._record_error(error, CONTEXT_CONNECTION_CHECK)
            if self._stopped:
                return self._discard("connection probe")
            self._update(
                is_loading=False,
                connected=False,
                error=error.user_message,
                error_code=error.code,
            )
            await self._notify_error(error.user_message)
            return OUTCOME_DISCONNECTED, None

        try:
            events = await self._fetcher.fetch(
                params.date_range,
                params.today_only,
                params.max_results,
            )
        except Exception as exc:
            if self._stopped:
                return self._discard("event fetch")
            return await self._fail_fetch(exc, params)
        if self._stopped:
            return self._discard("event fetch")

        await self._write_cache(events)
        if self._stopped:
            return self._discard("cache write")

        self._update(
            events=tuple(events),
            is_loading=False,
            connected=True,
            last_synced=self._now(),
            error=None,
            error_code=None,
            is_offline=False,
            using_cached_data=False,
        )
        logger.info("Calendar sync completed (events=%d)", len(events))
        await self._notify_success(events)
        return OUTCOME_SUCCESS, events

    async def _fail_fetch(
        self,
        exc: Exception,
        params: SyncParams,
    ) -> tuple[str, list[CalendarEvent] | None]:
        error = self._classifier.classify(exc)
        logger.warning("Calendar sync failed (%s): %s", error.code, exc)
        await self._record_error(error, CONTEXT_SYNC_EVENTS)
        fallback = await self._read_cache(params)
        if self._stopped:
            return self._discard("error handling")

        # The probe already confirmed the integration unless the provider rejected it.
        changes: dict[str, Any] = {
            "is_loading": False,
            "connected": error.code not in _DISCONNECTING_CODES,
            "error": error.user_message,
            "error_code": error.code,
        }
        if fallback is not None:
            changes["events"] = tuple(fallback)
            changes["using_cached_data"] = True
        self._update(**changes)
        await self._notify_error(error.user_message)
        return OUTCOME_FAILURE, None

    async def _serve_offline(self, params: SyncParams) -> tuple[str, list[CalendarEvent] | None]:
        if self._cache is None:
            error = self._classifier.classify(
                TransportFailure(message="Device reports no network connectivity", offline=True)
            )
            await self._record_error(error, CONTEXT_SYNC_EVENTS)
            if self._stopped:
                return self._discard("offline handling")
            self._update(
                is_loading=False,
                is_offline=True,
                error=error.user_message,
                error_code=error.code,
            )
            await self._notify_error(error.user_message)
            return OUTCOME_OFFLINE, None

        try:
            cached = await self._cache.cached_events(
                params.date_range,
                today_only=params.today_only,
                today=self._now().date(),
            )
            last_sync = await self._cache.last_sync_time()
        except Exception as exc:
            error = self._classifier.classify(exc)
            await self._record_error(error, CONTEXT_CACHE_READ)
            if self._stopped:
                return self._discard("cache read")
            self._update(
                is_loading=False,
                is_offline=True,
                using_cached_data=False,
                error=error.user_message,
                error_code=error.code,
            )
            await self._notify_error(error.user_message)
            return OUTCOME_FAILURE, None
        if self._stopped:
            return self._discard("cache read")

        self._update(
            events=tuple(cached),
            is_loading=False,
            last_synced=last_sync,
            error=None,
            error_code=None,
            is_offline=True,
            using_cached_data=True,
        )
        logger.info("Offline: serving %d cached calendar event(s)", len(cached))
        return OUTCOME_OFFLINE, cached

    def _discard(self, stage: str) -> tuple[str, None]:
        logger.debug("Discarding stale sync pass result (scheduler stopped during %s)", stage)
        return OUTCOME_DISCARDED, None

    async def _record_error(self, error: ClassifiedError, context: str) -> None:
        self._metrics.record_error(error.code)
        await self._error_log.record(error, context)

    async def _read_cache(self, params: SyncParams) -> list[CalendarEvent] | None:
        if self._cache is None:
            return None
        try:
            return await self._cache.cached_events(
                params.date_range,
                today_only=params.today_only,
                today=self._now().date(),
            )
        except Exception as exc:
            await self._record_error(self._classifier.classify(exc), CONTEXT_CACHE_READ)
            return None

    async def _write_cache(self, events: list[CalendarEvent]) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.cache_events(events, synced_at=self._now())
        except Exception as exc:
            await self._record_error(self._classifier.classify(exc), CONTEXT_CACHE_WRITE)

    async def _notify_success(self, events: list[CalendarEvent]) -> None:
        await self._invoke_callback(self._options.on_success, events, "on_success")

    async def _notify_error(self, message: str) -> None:
        await self._invoke_callback(self._options.on_error, message, "on_error")

    @staticmethod
    async def _invoke_callback(callback: Callable[..., Any] | None, arg: Any, label: str) -> None:
        if callback is None:
            return
        try:
            result = callback(arg)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("Calendar sync %s callback failed: %s", label, exc, exc_info=True)
