"""Unit tests for the offline event cache."""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime, timedelta

import pytest

from calsync.core.state import InMemoryStateStore, StateStoreError
from calsync.sync.cache import EVENT_CACHE_KEY, EventCache
from calsync.sync.provider import CalendarEvent, DateRange

pytestmark = pytest.mark.unit

SYNCED_AT = datetime(2024, 3, 5, 12, 0, tzinfo=UTC)


class _YieldingStore(InMemoryStateStore):
    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)


def _event(event_id: str, day: str, *, hour: int = 9, summary: str = "") -> CalendarEvent:
    return CalendarEvent.model_validate(
        {
            "id": event_id,
            "summary": summary or event_id,
            "start": {"dateTime": f"{day}T{hour:02d}:00:00Z"},
            "end": {"dateTime": f"{day}T{hour:02d}:30:00Z"},
        }
    )


def _all_day(event_id: str, day: str) -> CalendarEvent:
    return CalendarEvent.model_validate(
        {"id": event_id, "start": {"date": day}, "end": {"date": day}}
    )


class TestEventCache:
    async def test_empty_cache(self):
        cache = EventCache(InMemoryStateStore())
        assert await cache.cached_events() == []
        assert await cache.last_sync_time() is None

    async def test_round_trip_and_last_sync(self):
        cache = EventCache(InMemoryStateStore())
        await cache.cache_events([_event("a", "2024-03-05")], synced_at=SYNCED_AT)

        events = await cache.cached_events()

        assert [e.id for e in events] == ["a"]
        assert await cache.last_sync_time() == SYNCED_AT

    async def test_upsert_by_id(self):
        cache = EventCache(InMemoryStateStore())
        await cache.cache_events([_event("a", "2024-03-05", summary="old")], synced_at=SYNCED_AT)
        await cache.cache_events([_event("a", "2024-03-05", summary="new")], synced_at=SYNCED_AT)

        events = await cache.cached_events()

        assert len(events) == 1
        assert events[0].summary == "new"

    async def test_today_filter(self):
        cache = EventCache(InMemoryStateStore())
        await cache.cache_events(
            [_event("today", "2024-03-05"), _event("tomorrow", "2024-03-06")],
            synced_at=SYNCED_AT,
        )

        events = await cache.cached_events(today_only=True, today=date(2024, 3, 5))

        assert [e.id for e in events] == ["today"]

    async def test_range_filter_is_inclusive_and_sorted(self):
        cache = EventCache(InMemoryStateStore())
        await cache.cache_events(
            [
                _event("late", "2024-03-31", hour=18),
                _event("early", "2024-03-01", hour=8),
                _all_day("mid", "2024-03-15"),
                _event("outside", "2024-04-01"),
            ],
            synced_at=SYNCED_AT,
        )

        events = await cache.cached_events(
            DateRange(start=date(2024, 3, 1), end=date(2024, 3, 31))
        )

        assert [e.id for e in events] == ["early", "mid", "late"]

    async def test_clear(self):
        store = InMemoryStateStore()
        cache = EventCache(store)
        await cache.cache_events([_event("a", "2024-03-05")], synced_at=SYNCED_AT)

        await cache.clear()

        assert await store.get(EVENT_CACHE_KEY) is None
        assert await cache.cached_events() == []

    async def test_corrupt_document_raises_store_error(self):
        cache = EventCache(InMemoryStateStore({EVENT_CACHE_KEY: ["nope"]}))
        with pytest.raises(StateStoreError):
            await cache.cached_events()

    async def test_unreadable_records_are_dropped(self):
        document = {
            "events": {"bad": {"event": {"summary": "no id"}, "date": "2024-03-05"}},
            "last_sync": "not a timestamp",
        }
        cache = EventCache(InMemoryStateStore({EVENT_CACHE_KEY: document}))

        assert await cache.cached_events() == []
        assert await cache.last_sync_time() is None

    async def test_concurrent_writes_keep_every_event(self):
        cache = EventCache(_YieldingStore())

        await asyncio.gather(
            cache.cache_events([_event("a", "2024-03-05")], synced_at=SYNCED_AT),
            cache.cache_events([_event("b", "2024-03-05")], synced_at=SYNCED_AT),
        )

        assert [e.id for e in await cache.cached_events()] == ["a", "b"]


class TestRetention:
    async def test_stale_records_are_pruned_on_write(self):
        cache = EventCache(InMemoryStateStore(), retention=timedelta(days=7))
        week_ago = SYNCED_AT - timedelta(days=7)
        eight_days_ago = week_ago - timedelta(days=1)
        await cache.cache_events([_event("old", "2024-02-01")], synced_at=eight_days_ago)
        await cache.cache_events([_event("recent", "2024-03-01")], synced_at=week_ago)

        await cache.cache_events([_event("new", "2024-03-05")], synced_at=SYNCED_AT)

        assert [e.id for e in await cache.cached_events()] == ["recent", "new"]

    async def test_resynced_event_is_kept(self):
        cache = EventCache(InMemoryStateStore(), retention=timedelta(days=7))
        stale = SYNCED_AT - timedelta(days=30)
        await cache.cache_events([_event("a", "2024-02-01")], synced_at=stale)

        await cache.cache_events([_event("a", "2024-02-01")], synced_at=SYNCED_AT)

        assert [e.id for e in await cache.cached_events()] == ["a"]

    async def test_records_without_sync_stamp_are_pruned(self):
        document = {
            "events": {"legacy": {"event": _event("legacy", "2024-03-05").to_payload()}},
            "last_sync": None,
        }
        store = InMemoryStateStore({EVENT_CACHE_KEY: document})
        cache = EventCache(store)

        await cache.cache_events([_event("a", "2024-03-05")], synced_at=SYNCED_AT)

        assert list((await store.get(EVENT_CACHE_KEY))["events"]) == ["a"]

    def test_retention_must_be_positive(self):
        with pytest.raises(ValueError):
            EventCache(InMemoryStateStore(), retention=timedelta(0))
