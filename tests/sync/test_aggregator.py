"""Tests for cross-provider event ordering and aggregation."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from caldelta.models import (
    CalendarEventsResult,
    DeletedEventRef,
    DeletedSyncItem,
    ProviderId,
    SyncResult,
    UpdatedSyncItem,
)
from caldelta.sync.aggregator import (
    aggregate_events,
    insert_sorted,
    merge_sync_changes,
    sort_events,
)
from caldelta.testing import DEFAULT_START, make_event

pytestmark = pytest.mark.unit


def _ids(events) -> list[str]:
    return [event.id for event in events]


class TestOrdering:
    def test_sorts_by_utc_instant_not_wall_clock(self):
        # 09:30 in UTC+2 is 07:30 UTC, before a 08:00 UTC event.
        plus_two = timezone(timedelta(hours=2))
        early = make_event("early", start=datetime(2026, 3, 2, 9, 30, tzinfo=plus_two))
        late = make_event("late", start=datetime(2026, 3, 2, 8, 0, tzinfo=UTC))

        assert _ids(sort_events([late, early])) == ["early", "late"]

    def test_ties_keep_input_order(self):
        events = [make_event(event_id) for event_id in ("c", "a", "b")]
        assert _ids(sort_events(events)) == ["c", "a", "b"]

    def test_insert_sorted_goes_after_equal_starts(self):
        events = [
            make_event("a"),
            make_event("later", start=DEFAULT_START + timedelta(hours=2)),
        ]

        insert_sorted(events, make_event("b"))

        assert _ids(events) == ["a", "b", "later"]


class TestAggregateEvents:
    def test_calendar_order_breaks_ties(self):
        work = CalendarEventsResult(events=[make_event("w1", account_id="work")])
        home = CalendarEventsResult(
            events=[
                make_event("h0", account_id="home", start=DEFAULT_START - timedelta(hours=1)),
                make_event("h1", account_id="home"),
            ]
        )

        result = aggregate_events([work, home])

        assert _ids(result.events) == ["h0", "w1", "h1"]

    def test_masters_are_deduplicated_last_wins(self):
        first = make_event("series", title="Old title")
        second = make_event("series", title="New title", calendar_id="team")

        result = aggregate_events(
            [
                CalendarEventsResult(recurring_master_events=[first]),
                CalendarEventsResult(recurring_master_events=[second]),
            ]
        )

        assert [master.title for master in result.recurring_master_events] == ["New title"]

    def test_empty_input(self):
        result = aggregate_events([])
        assert result.events == []
        assert result.recurring_master_events == []


class TestMergeSyncChanges:
    def test_later_change_wins_at_first_position(self):
        created = make_event("a", title="Created")
        renamed = make_event("a", title="Renamed")
        other = make_event("b")
        deleted = DeletedEventRef(
            id="b",
            calendar_id="primary",
            account_id="work",
            provider_id=ProviderId.google,
            provider_account_id="work",
        )

        merged = merge_sync_changes(
            [
                SyncResult(changes=[UpdatedSyncItem(event=created), UpdatedSyncItem(event=other)]),
                SyncResult(
                    changes=[DeletedSyncItem(event=deleted), UpdatedSyncItem(event=renamed)]
                ),
            ]
        )

        assert [(change.status, change.event.id) for change in merged] == [
            ("updated", "a"),
            ("deleted", "b"),
        ]
        assert merged[0].event.title == "Renamed"

    def test_same_id_in_different_calendars_is_kept_apart(self):
        merged = merge_sync_changes(
            [
                SyncResult(
                    changes=[
                        UpdatedSyncItem(event=make_event("a", calendar_id="primary")),
                        UpdatedSyncItem(event=make_event("a", calendar_id="team")),
                    ]
                )
            ]
        )
        assert len(merged) == 2
