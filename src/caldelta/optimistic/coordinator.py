"""Mutation coordination: optimistic write, remote call, then commit or rollback.

Every mutation follows the same sequence:

1. cancel in-flight fetches for the affected scope, so no older response can
   land on top of the optimistic state;
2. snapshot the confirmed cache for that scope;
3. write the optimistic action to the store;
4. call the provider.

On success the mutation is COMMITTED: the scope is marked stale at once and the
action is removed once the refetch has landed. On failure it is ROLLED_BACK:
the action is removed at once and an unsettled action it replaced comes back.
The snapshot is restored for speculatively written entries and the error is
re-raised unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum

from caldelta.cache import CacheSnapshot, ConfirmedEventCache, QueryScope
from caldelta.errors import NotFoundError
from caldelta.models import (
    Attendee,
    Calendar,
    CalendarEvent,
    CalendarRef,
    CreateEventInput,
    EventResponse,
    UpdateEventInput,
)
from caldelta.optimistic.actions import (
    CreateAction,
    DraftAction,
    OptimisticAction,
    create_action,
    delete_action,
    draft_action,
    update_action,
)
from caldelta.optimistic.store import OptimisticActionStore
from caldelta.service import CalendarService

logger = logging.getLogger(__name__)

_RECENT_MUTATIONS = 100


class MutationState(StrEnum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class Mutation:
    """One attempt to apply a change remotely."""

    kind: str
    action: OptimisticAction
    scope: QueryScope
    state: MutationState = MutationState.PENDING
    result: CalendarEvent | None = None
    error: BaseException | None = field(default=None, repr=False)


def _event_from_input(
    calendar: Calendar,
    payload: CreateEventInput,
    event_id: str,
) -> CalendarEvent:
    return CalendarEvent(
        id=event_id,
        calendar_id=calendar.id,
        account_id=calendar.account_id,
        provider_id=calendar.provider_id,
        provider_account_id=calendar.provider_account_id,
        title=payload.title,
        description=payload.description,
        location=payload.location,
        start=payload.start,
        end=payload.end,
        time_zone=payload.time_zone,
        all_day=payload.all_day,
        recurrence=list(payload.recurrence),
        attendees=[Attendee(email=email) for email in payload.attendees],
    )


class MutationCoordinator:
    def __init__(
        self,
        service: CalendarService,
        cache: ConfirmedEventCache | None = None,
        store: OptimisticActionStore | None = None,
    ) -> None:
        self.service = service
        self.cache = cache or service.cache
        self.store = store or service.store
        self.recent: deque[Mutation] = deque(maxlen=_RECENT_MUTATIONS)
        self._pending_action_ids: set[str] = set()
        # Committed actions still shown until their refetch lands.
        self._settling_action_ids: set[str] = set()
        self._settlements: set[asyncio.Task[None]] = set()

    # -- drafts ------------------------------------------------------------

    def add_draft(self, event: CalendarEvent) -> DraftAction:
        """Show a local-only event that has not been submitted yet."""
        action = draft_action(event)
        self.store.add(action)
        return action

    def discard_draft(self, event_id: str) -> None:
        self.store.remove_drafts_for_event(event_id)

    # -- mutations ---------------------------------------------------------

    async def create_event(
        self,
        ref: CalendarRef,
        payload: CreateEventInput,
        *,
        immediate: bool = False,
    ) -> Mutation:
        calendar = await self.service.get_calendar(ref)
        event_id = payload.id or uuid.uuid4().hex
        payload = payload.model_copy(update={"id": event_id})
        optimistic = _event_from_input(calendar, payload, event_id)
        provider = self.service.provider_for(ref.account_id)

        return await self._run(
            "create",
            create_action(optimistic),
            QueryScope.of(ref),
            lambda: provider.create_event(calendar, payload),
            immediate=immediate,
        )

    async def update_event(
        self,
        event: CalendarEvent,
        patch: UpdateEventInput,
        *,
        immediate: bool = False,
    ) -> Mutation:
        calendar = await self.service.get_calendar(event.ref)
        provider = self.service.provider_for(event.account_id)

        return await self._run(
            "update",
            update_action(patch.apply_to(event)),
            QueryScope.of(event.ref),
            lambda: provider.update_event(calendar, event.id, patch),
            immediate=immediate,
        )

    async def delete_event(
        self,
        event: CalendarEvent,
        *,
        notify_attendees: bool = True,
        immediate: bool = False,
    ) -> Mutation:
        provider = self.service.provider_for(event.account_id)

        async def remote() -> None:
            try:
                await provider.delete_event(
                    event.calendar_id,
                    event.id,
                    notify_attendees=notify_attendees,
                )
            except NotFoundError:
                logger.info("Event '%s' was already deleted remotely", event.id)

        return await self._run(
            "delete",
            delete_action(event),
            QueryScope.of(event.ref),
            remote,
            immediate=immediate,
        )

    async def move_event(
        self,
        event: CalendarEvent,
        destination: CalendarRef,
        *,
        notify_attendees: bool = True,
        immediate: bool = False,
    ) -> Mutation:
        if destination.account_id != event.account_id:
            raise ValueError("Events can only be moved between calendars of the same account")
        source_calendar = await self.service.get_calendar(event.ref)
        destination_calendar = await self.service.get_calendar(destination)
        provider = self.service.provider_for(event.account_id)
        moved = event.model_copy(update={"calendar_id": destination.calendar_id})

        return await self._run(
            "move",
            update_action(moved, source=event.ref),
            QueryScope.of(event.ref, destination),
            lambda: provider.move_event(
                source_calendar,
                destination_calendar,
                event.id,
                notify_attendees=notify_attendees,
            ),
            immediate=immediate,
        )

    async def respond_to_event(
        self,
        event: CalendarEvent,
        response: EventResponse,
        *,
        immediate: bool = False,
    ) -> Mutation:
        provider = self.service.provider_for(event.account_id)

        return await self._run(
            "respond",
            update_action(event.model_copy(update={"response": response})),
            QueryScope.of(event.ref),
            lambda: provider.respond_to_event(event.calendar_id, event.id, response),
            immediate=immediate,
        )

    async def drain(self) -> None:
        """Wait for every scheduled settlement (refetch + action removal) to finish."""
        while self._settlements:
            await asyncio.gather(*list(self._settlements))

    # -- internals ---------------------------------------------------------

    async def _run(
        self,
        kind: str,
        action: OptimisticAction,
        scope: QueryScope,
        remote: Callable[[], Awaitable[CalendarEvent | None]],
        *,
        immediate: bool,
    ) -> Mutation:
        self.cache.cancel(scope)
        snapshot = self.cache.snapshot(scope)
        replaced = self.store.add(action)
        self._pending_action_ids.add(action.id)
        mutation = Mutation(kind=kind, action=action, scope=scope)
        self.recent.append(mutation)

        try:
            result = await remote()
        except BaseException as exc:
            self._rollback(mutation, replaced, snapshot, exc)
            raise

        self._commit(mutation, result, immediate=immediate)
        return mutation

    def _rollback(
        self,
        mutation: Mutation,
        replaced: OptimisticAction | None,
        snapshot: CacheSnapshot,
        exc: BaseException,
    ) -> None:
        action = mutation.action
        self._pending_action_ids.discard(action.id)
        self.store.remove_action(action.id)
        if (
            replaced is not None
            and self._is_unsettled(replaced.id)
            and self.store.get(replaced.event_id) is None
        ):
            self.store.add(replaced)
        self.cache.restore(snapshot)

        mutation.state = MutationState.ROLLED_BACK
        mutation.error = exc
        logger.warning(
            "%s of event '%s' failed; rolled back optimistic state",
            mutation.kind,
            action.event_id,
            extra={"action_id": action.id, "error_type": type(exc).__name__},
        )

    def _commit(
        self,
        mutation: Mutation,
        result: CalendarEvent | None,
        *,
        immediate: bool,
    ) -> None:
        mutation.state = MutationState.COMMITTED
        mutation.result = result
        settle_action_id = mutation.action.id

        if result is not None and hasattr(mutation.action, "event"):
            if result.id == mutation.action.event_id:
                self.store.replace_event(mutation.action.id, result)
            elif self.store.remove_action(mutation.action.id) is not None:
                # The provider assigned its own id; track the server event instead.
                replacement: CreateAction = create_action(result)
                self.store.add(replacement)
                settle_action_id = replacement.id
        self._pending_action_ids.discard(mutation.action.id)
        self.cache.mark_stale(mutation.scope)

        if immediate:
            self.store.remove_action(settle_action_id)
            self._schedule(self.cache.refresh(mutation.scope))
            return
        self._settling_action_ids.add(settle_action_id)
        self._schedule(self._settle(mutation.scope, settle_action_id))

    def _is_unsettled(self, action_id: str) -> bool:
        return action_id in self._pending_action_ids or action_id in self._settling_action_ids

    async def _settle(self, scope: QueryScope, action_id: str) -> None:
        try:
            await self.cache.refresh(scope)
        finally:
            self._settling_action_ids.discard(action_id)
            self.store.remove_action(action_id)

    def _schedule(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._settlements.add(task)
        task.add_done_callback(self._settlements.discard)
