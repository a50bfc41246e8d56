"""Overlay pending optimistic actions on the confirmed event list."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from caldelta.models import CalendarEvent
from caldelta.optimistic.actions import DeleteAction, OptimisticAction
from caldelta.sync.aggregator import insert_sorted, sort_events


def apply_optimistic_actions(
    confirmed_events: Iterable[CalendarEvent],
    actions: Mapping[str, OptimisticAction] | Iterable[OptimisticAction],
) -> list[CalendarEvent]:
    """Return the display list: confirmed events with pending actions applied.

    Confirmed events whose id has a pending action are dropped first. Actions
    are then applied in order: events carried by create, update and draft
    actions are inserted at their sort position; a delete removes whatever
    is left under its id. Pure and deterministic for a given input.
    """
    action_list = list(actions.values()) if isinstance(actions, Mapping) else list(actions)
    pending_ids = {action.event_id for action in action_list}

    events = sort_events(event for event in confirmed_events if event.id not in pending_ids)
    for action in action_list:
        if isinstance(action, DeleteAction):
            events = [event for event in events if event.id != action.event_id]
            continue
        insert_sorted(events, action.event)
    return events
