"""Per-session store of pending optimistic actions.

At most one action exists per ``event_id``; adding a second replaces the
first. Readers only ever receive a read-only snapshot. All mutation happens on
the event loop thread, so every reader sees a complete state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from types import MappingProxyType

from caldelta.models import CalendarEvent
from caldelta.optimistic.actions import DraftAction, OptimisticAction

logger = logging.getLogger(__name__)

Listener = Callable[[MappingProxyType[str, OptimisticAction]], None]


class OptimisticActionStore:
    def __init__(self) -> None:
        self._actions: dict[str, OptimisticAction] = {}
        self._listeners: list[Listener] = []
        self._version = 0

    @property
    def version(self) -> int:
        """Monotonic counter bumped on every change."""
        return self._version

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._actions

    def get(self, event_id: str) -> OptimisticAction | None:
        return self._actions.get(event_id)

    def get_by_action_id(self, action_id: str) -> OptimisticAction | None:
        for action in self._actions.values():
            if action.id == action_id:
                return action
        return None

    def snapshot(self) -> MappingProxyType[str, OptimisticAction]:
        """Read-only copy of the pending actions keyed by event id, in insertion order."""
        return MappingProxyType(dict(self._actions))

    def add(self, action: OptimisticAction) -> OptimisticAction | None:
        """Insert ``action``, returning the action it replaced (if any).

        A replacement moves to the end of the insertion order.
        """
        previous = self._actions.pop(action.event_id, None)
        self._actions[action.event_id] = action
        self._changed()
        return previous

    def remove(self, action_id_or_event_id: str) -> OptimisticAction | None:
        """Remove by action id, or by event id when no action id matches.

        Returns the removed action, or ``None`` when nothing matched; removing
        an action that has already been replaced is therefore a no-op.
        """
        removed = self.remove_action(action_id_or_event_id)
        if removed is not None:
            return removed

        removed = self._actions.pop(action_id_or_event_id, None)
        if removed is not None:
            self._changed()
        return removed

    def remove_action(self, action_id: str) -> OptimisticAction | None:
        """Remove the action with ``action_id`` only if it is still pending."""
        for event_id, action in self._actions.items():
            if action.id == action_id:
                del self._actions[event_id]
                self._changed()
                return action
        return None

    def remove_drafts_for_event(self, event_id: str) -> int:
        action = self._actions.get(event_id)
        if not isinstance(action, DraftAction):
            return 0
        del self._actions[event_id]
        self._changed()
        return 1

    def replace_event(self, action_id: str, event: CalendarEvent) -> OptimisticAction | None:
        """Swap the event carried by ``action_id`` in place, keeping its position.

        The event id must not change. Returns the updated action, or ``None``
        when the action is no longer pending.
        """
        for event_id, action in self._actions.items():
            if action.id != action_id:
                continue
            if not hasattr(action, "event"):
                raise ValueError(f"Action {action_id} of type '{action.type}' carries no event")
            if event.id != event_id:
                raise ValueError(
                    f"Cannot replace event '{event_id}' with '{event.id}' on action {action_id}"
                )
            updated = action.model_copy(update={"event": event})
            self._actions[event_id] = updated
            self._changed()
            return updated
        return None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for change notifications; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def clear(self) -> None:
        if not self._actions:
            return
        self._actions.clear()
        self._changed()

    def _changed(self) -> None:
        self._version += 1
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Optimistic action listener failed")
