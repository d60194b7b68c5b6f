"""Offline event cache kept in the engine's state store.

Successful passes upsert events by id together with the day they start on
and the time they were synced. While the host is offline the scheduler
serves reads from here instead of the network.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any

from pydantic import ValidationError

from calsync.core.state import StateStore, StateStoreError
from calsync.sync.provider import CalendarEvent, DateRange

logger = logging.getLogger(__name__)

EVENT_CACHE_KEY = "calendar_event_cache"
DEFAULT_RETENTION = timedelta(days=30)


def _day_of(value: date | datetime | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value.split("T", 1)[0]


def _prune(records: dict[str, Any], cutoff: datetime) -> dict[str, Any]:
    """Drop records last synced before *cutoff*. Unreadable stamps count as stale."""
    if cutoff.tzinfo is None:
        cutoff = cutoff.replace(tzinfo=UTC)
    kept: dict[str, Any] = {}
    for event_id, record in records.items():
        stamp = record.get("synced_at") if isinstance(record, dict) else None
        try:
            synced = datetime.fromisoformat(stamp) if isinstance(stamp, str) else None
        except ValueError:
            synced = None
        if synced is None:
            continue
        if synced.tzinfo is None:
            synced = synced.replace(tzinfo=UTC)
        if synced >= cutoff:
            kept[event_id] = record
    return kept


class EventCache:
    """Events by id plus the last successful sync time.

    Records not refreshed by a sync within ``retention`` are pruned on the
    next write.

    Read and write errors propagate as ``StateStoreError`` so the scheduler
    can classify them.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        key: str = EVENT_CACHE_KEY,
        retention: timedelta = DEFAULT_RETENTION,
    ) -> None:
        if retention <= timedelta(0):
            raise ValueError("retention must be positive")
        self._store = store
        self._key = key
        self._retention = retention
        self._lock = asyncio.Lock()

    async def _load(self) -> dict[str, Any]:
        raw = await self._store.get(self._key)
        if raw is None:
            return {"events": {}, "last_sync": None}
        if not isinstance(raw, dict) or not isinstance(raw.get("events"), dict):
            raise StateStoreError("Calendar event cache is corrupt")
        return raw

    async def cache_events(
        self,
        events: list[CalendarEvent],
        synced_at: datetime | None = None,
    ) -> None:
        synced_at = synced_at or datetime.now(UTC)
        async with self._lock:
            document = await self._load()
            cached = _prune(document["events"], synced_at - self._retention)
            for event in events:
                cached[event.id] = {
                    "event": event.to_payload(),
                    "synced_at": synced_at.isoformat(),
                    "date": event.start.day() or synced_at.date().isoformat(),
                }
            document["events"] = cached
            document["last_sync"] = synced_at.isoformat()
            await self._store.set(self._key, document)

    async def cached_events(
        self,
        date_range: DateRange | None = None,
        *,
        today_only: bool = False,
        today: date | None = None,
    ) -> list[CalendarEvent]:
        document = await self._load()
        if today_only:
            day = (today or datetime.now(UTC).date()).isoformat()
            first, last = day, day
        elif date_range is not None and date_range.start is not None and date_range.end is not None:
            first, last = _day_of(date_range.start), _day_of(date_range.end)
        else:
            first, last = None, None

        events: list[CalendarEvent] = []
        for record in document["events"].values():
            day = record.get("date")
            if first is not None and (day is None or not first <= day <= last):
                continue
            try:
                events.append(CalendarEvent.model_validate(record.get("event")))
            except ValidationError:
                logger.debug("Dropping unreadable cached event record")
        return sorted(events, key=lambda ev: (ev.start.date_time or ev.start.date or "", ev.id))

    async def last_sync_time(self) -> datetime | None:
        document = await self._load()
        raw = document.get("last_sync")
        if not isinstance(raw, str):
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None

    async def clear(self) -> None:
        async with self._lock:
            await self._store.delete(self._key)
