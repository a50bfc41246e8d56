"""Confirmed event cache with cancel / invalidate / snapshot semantics.

Entries are keyed by the full query (calendars, window, display zone) and
hold the last server-confirmed ``CalendarEventsResult``. Each entry carries a
generation counter: cancelling a scope bumps it and cancels the in-flight
fetch, so a response that lands afterwards is discarded instead of written.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime

from caldelta.core.concurrency import gather_or_cancel
from caldelta.models import CalendarEventsResult, CalendarRef, SyncResult
from caldelta.sync.reconciler import apply_sync_changes

logger = logging.getLogger(__name__)

DEFAULT_STALE_TIME_SECONDS = 60.0

Loader = Callable[[], Awaitable[CalendarEventsResult]]


@dataclass(frozen=True)
class EventsQueryKey:
    """Identity of one event-list query."""

    calendars: tuple[CalendarRef, ...]
    time_min: datetime
    time_max: datetime
    time_zone: str = "UTC"


@dataclass(frozen=True)
class QueryScope:
    """Selects cache entries whose calendars intersect ``calendars``.

    ``calendars=None`` selects every entry.
    """

    calendars: frozenset[CalendarRef] | None = None

    @classmethod
    def all(cls) -> QueryScope:
        return cls()

    @classmethod
    def of(cls, *refs: CalendarRef) -> QueryScope:
        return cls(calendars=frozenset(refs))

    def matches(self, key: EventsQueryKey) -> bool:
        if self.calendars is None:
            return True
        return not self.calendars.isdisjoint(key.calendars)

    def union(self, other: QueryScope) -> QueryScope:
        if self.calendars is None or other.calendars is None:
            return QueryScope()
        return QueryScope(calendars=self.calendars | other.calendars)


@dataclass
class _CacheEntry:
    data: CalendarEventsResult | None = None
    updated_at: float | None = None
    generation: int = 0
    task: asyncio.Task[CalendarEventsResult] | None = None
    loader: Loader | None = None
    speculative: bool = False
    invalidated: bool = False


@dataclass(frozen=True)
class CacheSnapshot:
    """Point-in-time copy of the entries matching ``scope``."""

    scope: QueryScope
    entries: dict[EventsQueryKey, CalendarEventsResult | None] = field(default_factory=dict)


class ConfirmedEventCache:
    def __init__(
        self,
        stale_time: float = DEFAULT_STALE_TIME_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stale_time = stale_time
        self._clock = clock
        self._entries: dict[EventsQueryKey, _CacheEntry] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self, scope: QueryScope | None = None) -> list[EventsQueryKey]:
        scope = scope or QueryScope.all()
        return [key for key in self._entries if scope.matches(key)]

    def _matching(self, scope: QueryScope) -> Iterator[tuple[EventsQueryKey, _CacheEntry]]:
        for key, entry in list(self._entries.items()):
            if scope.matches(key):
                yield key, entry

    def get(self, key: EventsQueryKey) -> CalendarEventsResult | None:
        entry = self._entries.get(key)
        return entry.data if entry is not None else None

    def is_stale(self, key: EventsQueryKey) -> bool:
        entry = self._entries.get(key)
        if entry is None or entry.data is None or entry.updated_at is None:
            return True
        if entry.invalidated:
            return True
        return self._clock() - entry.updated_at >= self.stale_time

    def is_fetching(self, key: EventsQueryKey) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.task is not None and not entry.task.done()

    def is_speculative(self, key: EventsQueryKey) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.speculative

    def set_data(
        self,
        key: EventsQueryKey,
        data: CalendarEventsResult,
        *,
        speculative: bool = False,
    ) -> None:
        entry = self._entries.setdefault(key, _CacheEntry())
        self._write(entry, data, speculative=speculative)

    def _write(self, entry: _CacheEntry, data: CalendarEventsResult, *, speculative: bool) -> None:
        entry.data = data
        entry.updated_at = self._clock()
        entry.speculative = speculative
        entry.invalidated = False

    async def fetch(self, key: EventsQueryKey, loader: Loader) -> CalendarEventsResult | None:
        """Run ``loader`` for ``key`` and store its result.

        Concurrent fetches of the same key share one in-flight load. When the
        fetch is cancelled through ``cancel``, the previous data is returned
        and the late response (if any) is discarded.
        """
        entry = self._entries.setdefault(key, _CacheEntry())
        entry.loader = loader

        if entry.task is None or entry.task.done():
            entry.task = asyncio.ensure_future(loader())
            entry.task.add_done_callback(_consume_task_exception)
        task = entry.task
        generation = entry.generation

        try:
            data = await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.debug("Fetch for %s was cancelled; keeping previous data", key)
            return entry.data
        finally:
            if entry.task is task and task.done():
                entry.task = None

        if generation != entry.generation or self._entries.get(key) is not entry:
            logger.debug("Discarding late response for %s", key)
            return entry.data

        self._write(entry, data, speculative=False)
        return data

    async def ensure(self, key: EventsQueryKey, loader: Loader) -> CalendarEventsResult | None:
        """Return fresh cached data for ``key``, fetching when missing or stale."""
        if not self.is_stale(key):
            return self.get(key)
        return await self.fetch(key, loader)

    def cancel(self, scope: QueryScope) -> None:
        """Cancel in-flight fetches for ``scope`` and void their late responses."""
        for key, entry in self._matching(scope):
            self._cancel_entry(key, entry)

    @staticmethod
    def _cancel_entry(key: EventsQueryKey, entry: _CacheEntry) -> None:
        entry.generation += 1
        if entry.task is not None and not entry.task.done():
            logger.debug("Cancelling in-flight fetch for %s", key)
            entry.task.cancel()
        entry.task = None

    def mark_stale(self, scope: QueryScope) -> None:
        """Mark ``scope`` stale and void in-flight fetches without refetching.

        The next ``ensure`` for a matching key loads fresh data.
        """
        for key, entry in self._matching(scope):
            entry.invalidated = True
            self._cancel_entry(key, entry)

    async def invalidate(self, scope: QueryScope) -> None:
        """Mark ``scope`` stale and refetch every entry that has a loader."""
        self.mark_stale(scope)
        await self.refresh(scope)

    async def refresh(self, scope: QueryScope) -> None:
        """Refetch every entry in ``scope`` that has a loader.

        Refetches run concurrently and join any load already in flight. A
        failed refetch is logged and leaves the entry's confirmed data untouched.
        """
        refetches = [
            self._refetch(key, entry.loader)
            for key, entry in self._matching(scope)
            if entry.loader is not None
        ]
        if refetches:
            await gather_or_cancel(refetches)

    async def _refetch(self, key: EventsQueryKey, loader: Loader) -> None:
        try:
            await self.fetch(key, loader)
        except Exception:
            logger.warning("Background refetch failed for %s", key, exc_info=True)

    def snapshot(self, scope: QueryScope) -> CacheSnapshot:
        return CacheSnapshot(
            scope=scope,
            entries={key: entry.data for key, entry in self._matching(scope)},
        )

    def restore(self, snapshot: CacheSnapshot) -> None:
        """Roll speculatively written entries in ``snapshot.scope`` back to the snapshot."""
        for key, entry in self._matching(snapshot.scope):
            if not entry.speculative:
                continue
            previous = snapshot.entries.get(key)
            entry.data = previous
            entry.speculative = False
            if previous is None:
                entry.updated_at = None

    def apply_sync(self, ref: CalendarRef, result: SyncResult) -> None:
        """Fold a sync result for ``ref`` into every cached query that includes it."""
        for key, entry in self._matching(QueryScope.of(ref)):
            if entry.data is None:
                continue
            events = apply_sync_changes(
                entry.data.events,
                result.changes,
                status=result.status,
                calendar=ref,
                time_min=key.time_min,
                time_max=key.time_max,
            )
            masters = {master.id: master for master in entry.data.recurring_master_events}
            for master in result.recurring_master_events:
                masters[master.id] = master
            self._write(
                entry,
                CalendarEventsResult(events=events, recurring_master_events=list(masters.values())),
                speculative=entry.speculative,
            )

    def remove(self, keys: Iterable[EventsQueryKey]) -> None:
        for key in keys:
            entry = self._entries.pop(key, None)
            if entry is not None and entry.task is not None and not entry.task.done():
                entry.task.cancel()

    def clear(self) -> None:
        self.remove(list(self._entries))


def _consume_task_exception(task: asyncio.Task) -> None:
    # Shielded loads can finish after every awaiter has gone away.
    if not task.cancelled():
        task.exception()
