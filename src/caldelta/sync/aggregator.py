"""Cross-provider aggregation of events and sync changes.

The ordering defined here (UTC start instant ascending, ties kept in input
order) is the single total order used by every list the package produces.
"""

from __future__ import annotations

import bisect
from collections.abc import Iterable
from datetime import datetime

from caldelta.models import (
    CalendarEvent,
    CalendarEventsResult,
    CalendarEventSyncItem,
    EventKey,
    SyncResult,
)


def event_sort_key(event: CalendarEvent) -> datetime:
    return event.start_instant


def sort_events(events: Iterable[CalendarEvent]) -> list[CalendarEvent]:
    """Stable sort by UTC start instant."""
    return sorted(events, key=event_sort_key)


def insert_sorted(events: list[CalendarEvent], event: CalendarEvent) -> None:
    """Insert ``event`` in place, after any existing events with the same start."""
    index = bisect.bisect_right(events, event_sort_key(event), key=event_sort_key)
    events.insert(index, event)


def aggregate_events(results: Iterable[CalendarEventsResult]) -> CalendarEventsResult:
    """Merge per-calendar results into one ordered list.

    ``results`` must be given in (account, calendar) order; that order breaks
    ties between events starting at the same instant. Recurring masters are
    de-duplicated by id, the last occurrence winning.
    """
    events: list[CalendarEvent] = []
    masters: dict[str, CalendarEvent] = {}
    for result in results:
        events.extend(result.events)
        for master in result.recurring_master_events:
            masters.pop(master.id, None)
            masters[master.id] = master

    return CalendarEventsResult(
        events=sort_events(events),
        recurring_master_events=list(masters.values()),
    )


def merge_sync_changes(results: Iterable[SyncResult]) -> list[CalendarEventSyncItem]:
    """Concatenate change lists, collapsing repeated keys to their final state.

    A key keeps the position of its first appearance so that the merge is
    deterministic for a given input order.
    """
    merged: dict[EventKey, CalendarEventSyncItem] = {}
    for result in results:
        for change in result.changes:
            merged[change.event.key] = change
    return list(merged.values())
