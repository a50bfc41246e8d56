"""Tests for ConfirmedEventCache: freshness, in-flight sharing, cancel, invalidate, restore."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from caldelta.cache import ConfirmedEventCache, EventsQueryKey, QueryScope
from caldelta.models import CalendarEventsResult, CalendarRef, SyncResult, UpdatedSyncItem
from caldelta.testing import DEFAULT_START, make_event

pytestmark = pytest.mark.unit

PRIMARY = CalendarRef(account_id="work", calendar_id="primary")
TEAM = CalendarRef(account_id="work", calendar_id="team")
HOME = CalendarRef(account_id="home", calendar_id="primary")


def _key(*refs: CalendarRef) -> EventsQueryKey:
    return EventsQueryKey(
        calendars=refs or (PRIMARY,),
        time_min=DEFAULT_START - timedelta(days=1),
        time_max=DEFAULT_START + timedelta(days=7),
    )


def _result(*event_ids: str) -> CalendarEventsResult:
    return CalendarEventsResult(events=[make_event(event_id) for event_id in event_ids])


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _Loader:
    """Counts calls; optionally blocks on a gate before returning."""

    def __init__(self, *results: CalendarEventsResult) -> None:
        self.results = list(results)
        self.calls = 0
        self.gate: asyncio.Event | None = None

    async def __call__(self) -> CalendarEventsResult:
        self.calls += 1
        result = self.results[min(self.calls, len(self.results)) - 1]
        if self.gate is not None:
            await self.gate.wait()
        return result


class TestQueryScope:
    def test_all_matches_everything(self):
        assert QueryScope.all().matches(_key(HOME))

    def test_of_matches_intersection(self):
        scope = QueryScope.of(TEAM)
        assert scope.matches(_key(PRIMARY, TEAM))
        assert not scope.matches(_key(PRIMARY))

    def test_union(self):
        assert QueryScope.of(PRIMARY).union(QueryScope.of(TEAM)) == QueryScope.of(PRIMARY, TEAM)
        assert QueryScope.of(PRIMARY).union(QueryScope.all()) == QueryScope.all()


class TestFreshness:
    async def test_ensure_uses_cache_until_stale(self):
        clock = _Clock()
        cache = ConfirmedEventCache(stale_time=60, clock=clock)
        loader = _Loader(_result("a"), _result("a", "b"))
        key = _key()

        first = await cache.ensure(key, loader)
        clock.now = 59
        second = await cache.ensure(key, loader)
        clock.now = 60
        third = await cache.ensure(key, loader)

        assert loader.calls == 2
        assert first is second
        assert [event.id for event in third.events] == ["a", "b"]

    def test_missing_key_is_stale(self):
        assert ConfirmedEventCache().is_stale(_key())

    async def test_concurrent_fetches_share_one_load(self):
        cache = ConfirmedEventCache()
        loader = _Loader(_result("a"))
        loader.gate = asyncio.Event()
        key = _key()

        first = asyncio.create_task(cache.fetch(key, loader))
        second = asyncio.create_task(cache.fetch(key, loader))
        await asyncio.sleep(0)
        assert cache.is_fetching(key)
        loader.gate.set()

        results = await asyncio.gather(first, second)

        assert loader.calls == 1
        assert results[0] == results[1] == _result("a")
        assert not cache.is_fetching(key)

    async def test_failed_fetch_propagates(self):
        cache = ConfirmedEventCache()

        async def failing() -> CalendarEventsResult:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await cache.fetch(_key(), failing)
        assert cache.get(_key()) is None


class TestCancel:
    async def test_cancelled_fetch_keeps_previous_data(self):
        cache = ConfirmedEventCache()
        key = _key()
        cache.set_data(key, _result("old"))
        loader = _Loader(_result("new"))
        loader.gate = asyncio.Event()

        fetch = asyncio.create_task(cache.fetch(key, loader))
        await asyncio.sleep(0)
        cache.cancel(QueryScope.of(PRIMARY))

        assert await fetch == _result("old")
        assert cache.get(key) == _result("old")

    async def test_late_response_is_discarded(self):
        cache = ConfirmedEventCache()
        key = _key()
        cache.set_data(key, _result("old"))
        loader = _Loader(_result("late"))
        loader.gate = asyncio.Event()

        fetch = asyncio.create_task(cache.fetch(key, loader))
        await asyncio.sleep(0)
        # Bump the generation without cancelling the shared load.
        cache._entries[key].generation += 1
        loader.gate.set()

        assert await fetch == _result("old")
        assert cache.get(key) == _result("old")

    async def test_cancel_leaves_other_scopes_alone(self):
        cache = ConfirmedEventCache()
        loader = _Loader(_result("h"))
        loader.gate = asyncio.Event()
        home_key = _key(HOME)

        fetch = asyncio.create_task(cache.fetch(home_key, loader))
        await asyncio.sleep(0)
        cache.cancel(QueryScope.of(PRIMARY))
        loader.gate.set()

        assert await fetch == _result("h")


class TestInvalidate:
    async def test_refetches_entries_with_loader(self):
        cache = ConfirmedEventCache()
        key = _key()
        loader = _Loader(_result("a"), _result("a", "b"))
        await cache.fetch(key, loader)

        await cache.invalidate(QueryScope.of(PRIMARY))

        assert loader.calls == 2
        assert [event.id for event in cache.get(key).events] == ["a", "b"]
        assert not cache.is_stale(key)

    async def test_entry_without_loader_is_only_marked_stale(self):
        cache = ConfirmedEventCache()
        key = _key()
        cache.set_data(key, _result("a"))

        await cache.invalidate(QueryScope.all())

        assert cache.is_stale(key)
        assert cache.get(key) == _result("a")

    async def test_failed_refetch_keeps_data(self, caplog):
        cache = ConfirmedEventCache()
        key = _key()
        await cache.fetch(key, _Loader(_result("a")))

        async def failing() -> CalendarEventsResult:
            raise RuntimeError("offline")

        cache._entries[key].loader = failing
        await cache.invalidate(QueryScope.all())

        assert cache.get(key) == _result("a")
        assert "Background refetch failed" in caplog.text

    async def test_mark_stale_defers_load_to_next_ensure(self):
        cache = ConfirmedEventCache()
        key = _key()
        loader = _Loader(_result("a"), _result("a", "b"))
        await cache.ensure(key, loader)

        cache.mark_stale(QueryScope.of(PRIMARY))

        assert cache.is_stale(key)
        assert loader.calls == 1
        assert await cache.ensure(key, loader) == _result("a", "b")

    async def test_refresh_joins_load_in_flight(self):
        cache = ConfirmedEventCache()
        key = _key()
        loader = _Loader(_result("a"), _result("a", "b"))
        await cache.fetch(key, loader)
        cache.mark_stale(QueryScope.all())
        loader.gate = asyncio.Event()

        ensure = asyncio.create_task(cache.ensure(key, loader))
        await asyncio.sleep(0)
        refresh = asyncio.create_task(cache.refresh(QueryScope.all()))
        await asyncio.sleep(0)
        loader.gate.set()

        assert await ensure == _result("a", "b")
        await refresh
        assert loader.calls == 2
        assert not cache.is_stale(key)


class TestSnapshotRestore:
    def test_restore_rolls_back_speculative_entries(self):
        cache = ConfirmedEventCache()
        key = _key()
        cache.set_data(key, _result("a"))
        snapshot = cache.snapshot(QueryScope.of(PRIMARY))

        cache.set_data(key, _result("a", "optimistic"), speculative=True)
        cache.restore(snapshot)

        assert cache.get(key) == _result("a")
        assert not cache.is_speculative(key)

    def test_restore_keeps_confirmed_writes(self):
        cache = ConfirmedEventCache()
        key = _key()
        cache.set_data(key, _result("a"))
        snapshot = cache.snapshot(QueryScope.of(PRIMARY))

        cache.set_data(key, _result("a", "b"))
        cache.restore(snapshot)

        assert cache.get(key) == _result("a", "b")

    def test_restore_of_new_speculative_entry_clears_it(self):
        cache = ConfirmedEventCache()
        key = _key()
        snapshot = cache.snapshot(QueryScope.of(PRIMARY))

        cache.set_data(key, _result("x"), speculative=True)
        cache.restore(snapshot)

        assert cache.get(key) is None
        assert cache.is_stale(key)


class TestApplySync:
    def test_folds_changes_into_matching_entries(self):
        cache = ConfirmedEventCache()
        both = _key(PRIMARY, HOME)
        home_only = _key(HOME)
        cache.set_data(both, _result("a"))
        cache.set_data(home_only, CalendarEventsResult())

        cache.apply_sync(
            PRIMARY,
            SyncResult(changes=[UpdatedSyncItem(event=make_event("a", title="Renamed"))]),
        )

        assert cache.get(both).events[0].title == "Renamed"
        assert cache.get(home_only) == CalendarEventsResult()

    def test_full_status_replaces_calendar_contents(self):
        cache = ConfirmedEventCache()
        key = _key()
        cache.set_data(key, _result("gone", "kept"))

        cache.apply_sync(
            PRIMARY,
            SyncResult(changes=[UpdatedSyncItem(event=make_event("kept"))], status="full"),
        )

        assert [event.id for event in cache.get(key).events] == ["kept"]

    def test_entries_without_data_are_skipped(self):
        cache = ConfirmedEventCache()
        key = _key()
        snapshot = cache.snapshot(QueryScope.all())
        cache.set_data(key, _result(), speculative=True)
        cache.restore(snapshot)

        cache.apply_sync(PRIMARY, SyncResult(changes=[UpdatedSyncItem(event=make_event("a"))]))

        assert cache.get(key) is None
