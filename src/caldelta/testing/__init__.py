"""Test support utilities for the caldelta package.

Exports model factories and ``FakeCalendarProvider``, an in-memory provider
whose operations can be made to fail or to block until released. Nothing here
depends on pytest, so it can be imported from any test context.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict, deque
from datetime import UTC, datetime, timedelta
from typing import Any

from caldelta.errors import NotFoundError, SyncTokenExpiredError
from caldelta.models import (
    Attendee,
    Calendar,
    CalendarEvent,
    CalendarEventsResult,
    CalendarFreeBusy,
    CreateCalendarInput,
    CreateEventInput,
    EventResponse,
    FreeBusySlot,
    ProviderId,
    SyncResult,
    UpdateCalendarInput,
    UpdatedSyncItem,
    UpdateEventInput,
)
from caldelta.providers.base import CalendarProvider
from caldelta.sync.aggregator import sort_events

DEFAULT_START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def make_calendar(
    calendar_id: str = "primary",
    *,
    account_id: str = "work",
    provider_id: ProviderId = ProviderId.google,
    **overrides: Any,
) -> Calendar:
    values: dict[str, Any] = {
        "id": calendar_id,
        "name": calendar_id.title(),
        "account_id": account_id,
        "provider_id": provider_id,
        "provider_account_id": account_id,
        "primary": calendar_id == "primary",
    }
    values.update(overrides)
    return Calendar(**values)


def make_event(
    event_id: str = "evt-1",
    *,
    start: datetime = DEFAULT_START,
    duration: timedelta = timedelta(hours=1),
    calendar_id: str = "primary",
    account_id: str = "work",
    provider_id: ProviderId = ProviderId.google,
    **overrides: Any,
) -> CalendarEvent:
    values: dict[str, Any] = {
        "id": event_id,
        "calendar_id": calendar_id,
        "account_id": account_id,
        "provider_id": provider_id,
        "provider_account_id": account_id,
        "title": f"Event {event_id}",
        "start": start,
        "end": start + duration,
    }
    values.update(overrides)
    return CalendarEvent(**values)


class FakeCalendarProvider(CalendarProvider):
    """In-memory provider recording every call.

    ``fail_next(operation, exc)`` queues an exception for the next call of
    ``operation``; ``hold(operation)`` returns an ``asyncio.Event`` that calls
    of ``operation`` wait on until it is set. With ``assign_ids`` the fake
    ignores client-supplied event ids on create, as Microsoft Graph does.
    """

    def __init__(
        self,
        account_id: str = "work",
        *,
        provider_id: ProviderId = ProviderId.google,
        calendar_ids: tuple[str, ...] = ("primary",),
        assign_ids: bool = False,
    ) -> None:
        super().__init__(account_id=account_id)
        self.provider_id = provider_id
        self.assign_ids = assign_ids
        self.calendars: dict[str, Calendar] = {}
        self.events: dict[str, dict[str, CalendarEvent]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, list[BaseException]] = defaultdict(list)
        self.gates: dict[str, asyncio.Event] = {}
        self.sync_results: deque[SyncResult] = deque()
        self.expired_tokens: set[str] = set()
        self.closed = False
        self._ids = itertools.count(1)
        for calendar_id in calendar_ids:
            self.add_calendar(
                make_calendar(calendar_id, account_id=account_id, provider_id=provider_id)
            )

    # -- test controls -----------------------------------------------------

    def add_calendar(self, calendar: Calendar) -> Calendar:
        self.calendars[calendar.id] = calendar
        self.events.setdefault(calendar.id, {})
        return calendar

    def add_event(self, event: CalendarEvent) -> CalendarEvent:
        self.events.setdefault(event.calendar_id, {})[event.id] = event
        return event

    def fail_next(self, operation: str, exc: BaseException) -> None:
        self.failures[operation].append(exc)

    def hold(self, operation: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[operation] = gate
        return gate

    def calls_to(self, operation: str) -> list[str]:
        return [detail for name, detail in self.calls if name == operation]

    async def _enter(self, operation: str, detail: str = "") -> None:
        self.calls.append((operation, detail))
        gate = self.gates.get(operation)
        if gate is not None:
            await gate.wait()
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _not_found(self, operation: str, what: str) -> NotFoundError:
        return NotFoundError(
            f"{what} not found",
            operation=operation,
            provider_id=self.provider_id.value,
            account_id=self.account_id,
            status_code=404,
        )

    def _calendar_events(self, operation: str, calendar_id: str) -> dict[str, CalendarEvent]:
        if calendar_id not in self.calendars:
            raise self._not_found(operation, f"Calendar '{calendar_id}'")
        return self.events[calendar_id]

    def _existing(self, operation: str, calendar_id: str, event_id: str) -> CalendarEvent:
        event = self._calendar_events(operation, calendar_id).get(event_id)
        if event is None:
            raise self._not_found(operation, f"Event '{event_id}'")
        return event

    # -- calendars ---------------------------------------------------------

    async def list_calendars(self) -> list[Calendar]:
        await self._enter("list_calendars")
        return list(self.calendars.values())

    async def get_calendar(self, calendar_id: str) -> Calendar:
        await self._enter("get_calendar", calendar_id)
        calendar = self.calendars.get(calendar_id)
        if calendar is None:
            raise self._not_found("get_calendar", f"Calendar '{calendar_id}'")
        return calendar

    async def create_calendar(self, payload: CreateCalendarInput) -> Calendar:
        await self._enter("create_calendar", payload.name)
        return self.add_calendar(
            make_calendar(
                f"cal-{next(self._ids)}",
                account_id=self.account_id,
                provider_id=self.provider_id,
                name=payload.name,
            )
        )

    async def update_calendar(self, calendar_id: str, payload: UpdateCalendarInput) -> Calendar:
        await self._enter("update_calendar", calendar_id)
        calendar = await self.get_calendar(calendar_id)
        update = {
            key: value
            for key, value in (("name", payload.name), ("color", payload.color))
            if value is not None
        }
        return self.add_calendar(calendar.model_copy(update=update))

    async def delete_calendar(self, calendar_id: str) -> None:
        await self._enter("delete_calendar", calendar_id)
        if self.calendars.pop(calendar_id, None) is None:
            raise self._not_found("delete_calendar", f"Calendar '{calendar_id}'")
        self.events.pop(calendar_id, None)

    # -- events ------------------------------------------------------------

    async def list_events(
        self,
        calendar: Calendar,
        time_min: datetime,
        time_max: datetime,
        time_zone: str,
    ) -> CalendarEventsResult:
        await self._enter("list_events", calendar.id)
        events = [
            event
            for event in self._calendar_events("list_events", calendar.id).values()
            if event.start_instant < time_max
            and (event.end_instant > time_min or event.start_instant >= time_min)
        ]
        return CalendarEventsResult(events=sort_events(events))

    async def get_event(self, calendar: Calendar, event_id: str, time_zone: str) -> CalendarEvent:
        await self._enter("get_event", event_id)
        return self._existing("get_event", calendar.id, event_id)

    async def sync(
        self,
        calendar: Calendar,
        *,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        time_zone: str = "UTC",
    ) -> SyncResult:
        await self._enter("sync", sync_token or "")
        if sync_token is not None and sync_token in self.expired_tokens:
            raise SyncTokenExpiredError(
                "Sync token expired",
                operation="sync",
                provider_id=self.provider_id.value,
                account_id=self.account_id,
                status_code=410,
            )
        if self.sync_results:
            return self.sync_results.popleft()
        events = sort_events(self._calendar_events("sync", calendar.id).values())
        return SyncResult(
            changes=[UpdatedSyncItem(event=event) for event in events],
            sync_token=f"token-{next(self._ids)}",
        )

    async def create_event(self, calendar: Calendar, payload: CreateEventInput) -> CalendarEvent:
        await self._enter("create_event", payload.title)
        event_id = payload.id
        if self.assign_ids or event_id is None:
            event_id = f"srv-{next(self._ids)}"
        return self.add_event(
            CalendarEvent(
                id=event_id,
                calendar_id=calendar.id,
                account_id=self.account_id,
                provider_id=self.provider_id,
                provider_account_id=self.provider_account_id,
                title=payload.title,
                description=payload.description,
                location=payload.location,
                start=payload.start,
                end=payload.end,
                time_zone=payload.time_zone,
                all_day=payload.all_day,
                recurrence=list(payload.recurrence),
                attendees=[Attendee(email=email) for email in payload.attendees],
                etag=f'"{next(self._ids)}"',
            )
        )

    async def update_event(
        self,
        calendar: Calendar,
        event_id: str,
        patch: UpdateEventInput,
    ) -> CalendarEvent:
        await self._enter("update_event", event_id)
        existing = self._existing("update_event", calendar.id, event_id)
        updated = patch.apply_to(existing).model_copy(update={"etag": f'"{next(self._ids)}"'})
        return self.add_event(updated)

    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        notify_attendees: bool = True,
    ) -> None:
        await self._enter("delete_event", event_id)
        self._existing("delete_event", calendar_id, event_id)
        del self.events[calendar_id][event_id]

    async def move_event(
        self,
        source: Calendar,
        destination: Calendar,
        event_id: str,
        *,
        notify_attendees: bool = True,
    ) -> CalendarEvent:
        await self._enter("move_event", event_id)
        existing = self._existing("move_event", source.id, event_id)
        self._calendar_events("move_event", destination.id)
        del self.events[source.id][event_id]
        return self.add_event(existing.model_copy(update={"calendar_id": destination.id}))

    async def respond_to_event(
        self,
        calendar_id: str,
        event_id: str,
        response: EventResponse,
    ) -> None:
        await self._enter("respond_to_event", event_id)
        existing = self._existing("respond_to_event", calendar_id, event_id)
        self.add_event(existing.model_copy(update={"response": response}))

    async def free_busy(
        self,
        schedule_ids: list[str],
        time_min: datetime,
        time_max: datetime,
    ) -> list[CalendarFreeBusy]:
        await self._enter("free_busy", ",".join(schedule_ids))
        results: list[CalendarFreeBusy] = []
        for schedule_id in schedule_ids:
            events = self.events.get(schedule_id, {}).values()
            busy = [
                FreeBusySlot(start=event.start_instant, end=event.end_instant)
                for event in sort_events(events)
                if event.start_instant < time_max and event.end_instant > time_min
            ]
            results.append(CalendarFreeBusy(schedule_id=schedule_id, busy=busy))
        return results

    async def aclose(self) -> None:
        self.closed = True


__all__ = ["DEFAULT_START", "FakeCalendarProvider", "make_calendar", "make_event"]
