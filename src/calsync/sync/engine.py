"""Engine facade wiring the sync collaborators together.

``CalendarSyncEngine`` is what host applications hold: it owns one
``SyncScheduler`` plus the classifier, error journal and offline cache that
share its state store, and exposes the manual sync entry points.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta
from types import TracebackType

import httpx

from calsync.config import CalsyncConfig
from calsync.core.logging import set_engine_context
from calsync.core.metrics import SyncMetrics
from calsync.core.state import FileStateStore, InMemoryStateStore, StateStore
from calsync.sync.cache import DEFAULT_RETENTION, EventCache
from calsync.sync.error_log import ErrorLog, ErrorLogEntry
from calsync.sync.errors import (
    Connectivity,
    ErrorClassifier,
    ErrorKind,
    RetryExhaustedError,
    recovery_steps,
)
from calsync.sync.provider import (
    DEFAULT_MAX_RESULTS,
    CalendarEvent,
    ConnectionProbe,
    DateRange,
    EventFetcher,
)
from calsync.sync.retry import RetryPolicy, retry_with_policy
from calsync.sync.scheduler import (
    CONTEXT_SYNC_EVENTS,
    SyncOptions,
    SyncParams,
    SyncScheduler,
    SyncState,
)

logger = logging.getLogger(__name__)

CONTEXT_CACHE_CLEAR = "cache_clear"


class CalendarSyncEngine:
    """Keeps a local view of the user's calendar in sync with the provider.

    Use as an async context manager, or call :meth:`start` / :meth:`stop`
    explicitly. A stopped engine cannot be restarted; build a new one.
    """

    def __init__(
        self,
        *,
        probe: ConnectionProbe,
        fetcher: EventFetcher,
        store: StateStore,
        options: SyncOptions | None = None,
        connectivity: Connectivity | None = None,
        retry_policy: RetryPolicy | None = None,
        use_cache: bool = True,
        cache_retention: timedelta = DEFAULT_RETENTION,
        max_results: int = DEFAULT_MAX_RESULTS,
        name: str = "calsync",
        now: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._name = name
        self._fetcher = fetcher
        self._store = store
        self._connectivity = connectivity
        self._retry_policy = retry_policy or RetryPolicy()
        self._max_results = max_results
        self._sleep = sleep
        # Only set when the engine created the client and must close it.
        self._owned_client = http_client

        self._classifier = ErrorClassifier(connectivity)
        self._error_log = ErrorLog(store)
        self._cache = EventCache(store, retention=cache_retention) if use_cache else None
        self._scheduler = SyncScheduler(
            probe=probe,
            fetcher=fetcher,
            classifier=self._classifier,
            error_log=self._error_log,
            options=options,
            cache=self._cache,
            connectivity=connectivity,
            default_params=SyncParams(today_only=True, max_results=max_results),
            metrics=SyncMetrics(name),
            now=now,
            engine_name=name,
        )

    @classmethod
    def from_config(
        cls,
        config: CalsyncConfig,
        options: SyncOptions | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        store: StateStore | None = None,
        connectivity: Connectivity | None = None,
    ) -> CalendarSyncEngine:
        """Build an engine from a loaded ``calsync.toml``.

        When *http_client* is omitted the engine creates one (with the
        configured timeout and bearer token) and closes it on :meth:`stop`.
        """
        endpoints = config.endpoints
        owned_client: httpx.AsyncClient | None = None
        if http_client is None:
            headers: dict[str, str] = {}
            if endpoints.access_token:
                headers["Authorization"] = f"Bearer {endpoints.access_token}"
            http_client = httpx.AsyncClient(timeout=endpoints.timeout_seconds, headers=headers)
            owned_client = http_client

        if store is None:
            if config.storage.path:
                store = FileStateStore(config.storage.path)
            else:
                store = InMemoryStateStore()

        if options is None:
            options = SyncOptions(
                auto_sync=config.sync.auto_sync,
                interval_minutes=config.sync.interval_minutes,
            )

        return cls(
            probe=ConnectionProbe(http_client, endpoints.status_url),
            fetcher=EventFetcher(http_client, endpoints.events_url),
            store=store,
            options=options,
            connectivity=connectivity,
            retry_policy=RetryPolicy(
                max_attempts=config.retry.max_attempts,
                max_delay_ms=config.retry.max_delay_ms,
            ),
            cache_retention=timedelta(days=config.storage.cache_retention_days),
            max_results=config.sync.max_results,
            name=config.name,
            http_client=owned_client,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> SyncState:
        """Read-only snapshot of the current sync state."""
        return self._scheduler.state

    @property
    def scheduler(self) -> SyncScheduler:
        return self._scheduler

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        set_engine_context(self._name)
        await self._scheduler.start()

    async def stop(self) -> None:
        await self._scheduler.stop()
        client, self._owned_client = self._owned_client, None
        if client is not None:
            await client.aclose()

    async def __aenter__(self) -> CalendarSyncEngine:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Sync entry points
    # ------------------------------------------------------------------

    async def sync_now(self, params: SyncParams | None = None) -> list[CalendarEvent] | None:
        """Run (or join) a pass. Returns the events, or ``None`` on failure."""
        return await self._scheduler.trigger_sync(params, trigger="manual")

    async def sync_today(self) -> list[CalendarEvent] | None:
        return await self.sync_now(SyncParams(today_only=True, max_results=self._max_results))

    async def sync_month(self, year: int, month: int) -> list[CalendarEvent] | None:
        """Sync every event in calendar month *month* (1-12) of *year*."""
        if not 1 <= month <= 12:
            raise ValueError(f"month must be between 1 and 12, got {month}")
        last_day = calendar.monthrange(year, month)[1]
        date_range = DateRange.for_days(date(year, month, 1), date(year, month, last_day))
        return await self.sync_now(SyncParams(date_range=date_range, max_results=self._max_results))

    async def check_connection(self) -> bool:
        return await self._scheduler.refresh_connection()

    async def fetch_with_retries(self, params: SyncParams | None = None) -> list[CalendarEvent]:
        """Fetch once under the configured ``RetryPolicy``, bypassing the scheduler.

        The engine state is not touched.

        Raises:
            RetryExhaustedError: once the policy gives up; the classified
                error is journaled before the exception propagates.
        """
        params = params or SyncParams(today_only=True, max_results=self._max_results)

        async def _fetch() -> list[CalendarEvent]:
            return await self._fetcher.fetch(
                params.date_range,
                params.today_only,
                params.max_results,
            )

        try:
            return await retry_with_policy(
                _fetch,
                classifier=self._classifier,
                policy=self._retry_policy,
                sleep=self._sleep,
            )
        except RetryExhaustedError as exc:
            await self._error_log.record(exc.error, CONTEXT_SYNC_EVENTS)
            raise

    # ------------------------------------------------------------------
    # Error recovery helpers
    # ------------------------------------------------------------------

    def recovery_steps(self) -> list[str]:
        """Remediation steps for the current error, empty when there is none."""
        code = self.state.error_code
        if code is None:
            return []
        return recovery_steps(code)

    def clear_error(self) -> None:
        self._scheduler.clear_error()

    async def retry_sync(self) -> list[CalendarEvent] | None:
        self.clear_error()
        return await self.sync_today()

    async def notify_online(self) -> list[CalendarEvent] | None:
        """Tell the engine connectivity came back.

        Triggers a pass when the last pass ended offline or with a network
        error. Update the connectivity oracle before calling this.
        """
        state = self.state
        if state.error_code != ErrorKind.NETWORK_ERROR and not state.is_offline:
            return None
        logger.info("Connectivity restored; re-syncing calendar")
        return await self.sync_now()

    async def error_logs(self) -> list[ErrorLogEntry]:
        return await self._error_log.read_all()

    async def clear_error_logs(self) -> None:
        await self._error_log.clear()

    async def clear_cache(self) -> bool:
        """Drop the offline event cache. Returns ``False`` if the store failed."""
        if self._cache is None:
            return True
        try:
            await self._cache.clear()
        except Exception as exc:
            await self._error_log.record(self._classifier.classify(exc), CONTEXT_CACHE_CLEAR)
            return False
        logger.info("Calendar event cache cleared")
        return True
