"""Sync-token bookkeeping and the single full-resync fallback.

The reconciler owns one sync token per ``(account_id, calendar_id)``, along
with the window of the full sync that produced it. When a provider rejects a
stored token, the calendar is re-synced once without a token over that same
window and the result is reported with ``status="full"``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

from caldelta.core.concurrency import gather_or_cancel
from caldelta.errors import SyncTokenExpiredError
from caldelta.models import (
    Calendar,
    CalendarEvent,
    CalendarEventSyncItem,
    CalendarRef,
    SyncResult,
    SyncStatus,
)
from caldelta.providers.base import CalendarProvider
from caldelta.sync.aggregator import sort_events

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncWindow:
    """Bounds of the full sync a token was issued for."""

    time_min: datetime | None = None
    time_max: datetime | None = None


class SyncTokenStore:
    """In-memory sync tokens keyed by ``(account_id, calendar_id)``."""

    def __init__(self) -> None:
        self._tokens: dict[CalendarRef, str] = {}
        self._windows: dict[CalendarRef, SyncWindow] = {}

    def get(self, ref: CalendarRef) -> str | None:
        return self._tokens.get(ref)

    def get_window(self, ref: CalendarRef) -> SyncWindow | None:
        return self._windows.get(ref)

    def set(self, ref: CalendarRef, token: str, *, window: SyncWindow | None = None) -> None:
        """Store ``token``; a ``window`` replaces the remembered one, ``None`` keeps it."""
        self._tokens[ref] = token
        if window is not None:
            self._windows[ref] = window

    def discard(self, ref: CalendarRef) -> None:
        self._tokens.pop(ref, None)
        self._windows.pop(ref, None)

    def clear(self) -> None:
        self._tokens.clear()
        self._windows.clear()

    def __contains__(self, ref: object) -> bool:
        return ref in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)


@dataclass(frozen=True)
class SyncTarget:
    """One calendar to sync, with the provider that owns it."""

    provider: CalendarProvider
    calendar: Calendar
    time_min: datetime | None = None
    time_max: datetime | None = None
    time_zone: str = "UTC"


class SyncReconciler:
    def __init__(self, token_store: SyncTokenStore | None = None) -> None:
        self.token_store = token_store or SyncTokenStore()

    async def sync_calendar(
        self,
        provider: CalendarProvider,
        calendar: Calendar,
        *,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        time_zone: str = "UTC",
    ) -> SyncResult:
        """Sync one calendar, falling back to a full resync on an expired token.

        ``sync_token`` overrides the stored token when given. The fallback
        reuses the window of the full sync that issued the expired token
        unless the caller passes one. Errors other than an expired token
        propagate and leave the stored token untouched.
        """
        ref = calendar.ref
        token = sync_token if sync_token is not None else self.token_store.get(ref)
        window = SyncWindow(time_min, time_max) if token is None else None

        try:
            result = await provider.sync(
                calendar,
                sync_token=token,
                time_min=time_min,
                time_max=time_max,
                time_zone=time_zone,
            )
        except SyncTokenExpiredError:
            if token is None:
                raise
            logger.warning(
                "Sync token for %s expired; performing full resync",
                ref,
                extra={"account_id": ref.account_id, "calendar_id": ref.calendar_id},
            )
            window = self.token_store.get_window(ref) or SyncWindow()
            if time_min is not None or time_max is not None:
                window = SyncWindow(time_min, time_max)
            self.token_store.discard(ref)
            result = await provider.sync(
                calendar,
                sync_token=None,
                time_min=window.time_min,
                time_max=window.time_max,
                time_zone=time_zone,
            )
            result = result.model_copy(update={"status": "full"})

        if result.sync_token is not None:
            self.token_store.set(ref, result.sync_token, window=window)
        elif result.status == "full":
            self.token_store.discard(ref)
        return result

    async def sync_calendars(self, targets: Sequence[SyncTarget]) -> list[SyncResult]:
        """Sync several calendars concurrently.

        Results are returned in ``targets`` order once every sync has
        resolved. The first failure cancels the remaining syncs and propagates.
        """
        return await gather_or_cancel(
            self.sync_calendar(
                target.provider,
                target.calendar,
                time_min=target.time_min,
                time_max=target.time_max,
                time_zone=target.time_zone,
            )
            for target in targets
        )


def apply_sync_changes(
    events: Iterable[CalendarEvent],
    changes: Iterable[CalendarEventSyncItem],
    *,
    status: SyncStatus = "incremental",
    calendar: CalendarRef | None = None,
    time_min: datetime | None = None,
    time_max: datetime | None = None,
) -> list[CalendarEvent]:
    """Return ``events`` with ``changes`` applied, in aggregate order.

    Updates overwrite by key and deletions of absent keys are ignored, so
    applying the same change list twice leaves the result unchanged. With
    ``status="full"`` the events of ``calendar`` are replaced wholesale by the
    change set. Updated events that fall outside ``[time_min, time_max)`` are
    evicted instead of inserted.
    """
    if status == "full" and calendar is None:
        raise ValueError("A full sync result can only be applied to a specific calendar")

    merged = {event.key: event for event in events}
    if status == "full":
        merged = {key: event for key, event in merged.items() if event.ref != calendar}

    for change in changes:
        key = change.event.key
        if change.status == "deleted":
            merged.pop(key, None)
            continue
        event = change.event
        if _outside_window(event, time_min, time_max):
            merged.pop(key, None)
            continue
        merged[key] = event

    return sort_events(merged.values())


def _outside_window(
    event: CalendarEvent,
    time_min: datetime | None,
    time_max: datetime | None,
) -> bool:
    if time_max is not None and event.start_instant >= time_max:
        return True
    if time_min is not None and event.end_instant <= time_min and event.start_instant < time_min:
        return True
    return False
