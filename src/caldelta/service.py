"""Aggregation query surface over every connected provider account."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import TYPE_CHECKING

import httpx

from caldelta.cache import ConfirmedEventCache, EventsQueryKey
from caldelta.core.concurrency import gather_or_cancel
from caldelta.errors import NotFoundError
from caldelta.models import (
    Calendar,
    CalendarEvent,
    CalendarEventsResult,
    CalendarFreeBusy,
    CalendarRef,
    SyncResult,
)
from caldelta.optimistic.actions import DeleteAction, OptimisticAction
from caldelta.optimistic.projection import apply_optimistic_actions
from caldelta.optimistic.store import OptimisticActionStore
from caldelta.providers import build_provider
from caldelta.providers.base import CalendarProvider
from caldelta.sync.aggregator import aggregate_events
from caldelta.sync.reconciler import SyncReconciler

if TYPE_CHECKING:
    from caldelta.config import CaldeltaConfig

logger = logging.getLogger(__name__)


class CalendarService:
    """Fans reads out across providers and keeps the confirmed cache current.

    Reads are triggered by the caller (mount, refocus, reconnect); the service
    never polls on its own.
    """

    def __init__(
        self,
        providers: Iterable[CalendarProvider],
        *,
        reconciler: SyncReconciler | None = None,
        cache: ConfirmedEventCache | None = None,
        store: OptimisticActionStore | None = None,
        time_zone: str = "UTC",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._providers: dict[str, CalendarProvider] = {}
        for provider in providers:
            if provider.account_id in self._providers:
                raise ValueError(f"Duplicate provider account: {provider.account_id!r}")
            self._providers[provider.account_id] = provider
        self.reconciler = reconciler or SyncReconciler()
        self.cache = cache or ConfirmedEventCache()
        self.store = store or OptimisticActionStore()
        self.time_zone = time_zone
        self._calendars: dict[CalendarRef, Calendar] = {}
        self._http_client = http_client

    @property
    def account_ids(self) -> list[str]:
        return list(self._providers)

    def provider_for(self, account_id: str) -> CalendarProvider:
        try:
            return self._providers[account_id]
        except KeyError:
            raise NotFoundError(
                f"Account '{account_id}' is not connected",
                operation="provider_for",
                provider_id="unknown",
                account_id=account_id,
            ) from None

    async def list_calendars(self, account_ids: Sequence[str] | None = None) -> list[Calendar]:
        """All calendars of the given accounts (default: every account), in account order."""
        providers = [self.provider_for(account_id) for account_id in account_ids or self._providers]
        per_account = await gather_or_cancel(provider.list_calendars() for provider in providers)
        calendars = [calendar for group in per_account for calendar in group]
        for calendar in calendars:
            self._calendars[calendar.ref] = calendar
        return calendars

    async def get_calendar(self, ref: CalendarRef) -> Calendar:
        calendar = self._calendars.get(ref)
        if calendar is None:
            calendar = await self.provider_for(ref.account_id).get_calendar(ref.calendar_id)
            self._calendars[ref] = calendar
        return calendar

    async def _resolve_calendars(self, refs: Sequence[CalendarRef] | None) -> list[Calendar]:
        if refs is None:
            return await self.list_calendars()
        return await gather_or_cancel(self.get_calendar(ref) for ref in refs)

    async def list_events(
        self,
        refs: Sequence[CalendarRef] | None,
        time_min: datetime,
        time_max: datetime,
        time_zone: str | None = None,
    ) -> CalendarEventsResult:
        """Fetch and aggregate the events of ``refs`` (default: every calendar)."""
        zone = time_zone or self.time_zone
        calendars = await self._resolve_calendars(refs)
        results = await gather_or_cancel(
            self.provider_for(calendar.account_id).list_events(calendar, time_min, time_max, zone)
            for calendar in calendars
        )
        return aggregate_events(results)

    async def get_event(
        self,
        ref: CalendarRef,
        event_id: str,
        time_zone: str | None = None,
    ) -> CalendarEvent:
        calendar = await self.get_calendar(ref)
        return await self.provider_for(ref.account_id).get_event(
            calendar, event_id, time_zone or self.time_zone
        )

    def query_key(
        self,
        refs: Sequence[CalendarRef],
        time_min: datetime,
        time_max: datetime,
        time_zone: str | None = None,
    ) -> EventsQueryKey:
        return EventsQueryKey(
            calendars=tuple(refs),
            time_min=time_min,
            time_max=time_max,
            time_zone=time_zone or self.time_zone,
        )

    async def confirmed_events(
        self,
        refs: Sequence[CalendarRef] | None,
        time_min: datetime,
        time_max: datetime,
        time_zone: str | None = None,
    ) -> CalendarEventsResult:
        """Confirmed events for the query, served from the cache when fresh."""
        if refs is None:
            refs = [calendar.ref for calendar in await self.list_calendars()]
        key = self.query_key(refs, time_min, time_max, time_zone)

        async def load() -> CalendarEventsResult:
            return await self.list_events(key.calendars, key.time_min, key.time_max, key.time_zone)

        data = await self.cache.ensure(key, load)
        return data if data is not None else CalendarEventsResult()

    async def display_events(
        self,
        refs: Sequence[CalendarRef] | None,
        time_min: datetime,
        time_max: datetime,
        time_zone: str | None = None,
    ) -> list[CalendarEvent]:
        """Confirmed events with the pending optimistic actions projected on top."""
        if refs is None:
            refs = [calendar.ref for calendar in await self.list_calendars()]
        confirmed = await self.confirmed_events(refs, time_min, time_max, time_zone)
        actions = self._actions_for(set(refs), time_min, time_max)
        return apply_optimistic_actions(confirmed.events, actions)

    def _actions_for(
        self,
        refs: set[CalendarRef],
        time_min: datetime,
        time_max: datetime,
    ) -> list[OptimisticAction]:
        selected: list[OptimisticAction] = []
        for action in self.store.snapshot().values():
            if isinstance(action, DeleteAction) or _in_view(action.event, refs, time_min, time_max):
                selected.append(action)
                continue
            # Out of view: the action only hides the confirmed copy.
            selected.append(
                DeleteAction(
                    id=action.id,
                    event_id=action.event_id,
                    calendar_id=action.event.calendar_id,
                    account_id=action.event.account_id,
                    provider_id=action.event.provider_id,
                )
            )
        return selected

    async def sync(
        self,
        ref: CalendarRef,
        *,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        time_zone: str | None = None,
    ) -> SyncResult:
        """Sync one calendar and fold the changes into every cached query that includes it."""
        calendar = await self.get_calendar(ref)
        result = await self.reconciler.sync_calendar(
            self.provider_for(ref.account_id),
            calendar,
            sync_token=sync_token,
            time_min=time_min,
            time_max=time_max,
            time_zone=time_zone or self.time_zone,
        )
        self.cache.apply_sync(ref, result)
        logger.info(
            "Synced %s: %d change(s), status=%s",
            ref,
            len(result.changes),
            result.status,
        )
        return result

    async def free_busy(
        self,
        account_id: str,
        schedule_ids: list[str],
        time_min: datetime,
        time_max: datetime,
    ) -> list[CalendarFreeBusy]:
        return await self.provider_for(account_id).free_busy(schedule_ids, time_min, time_max)

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
        if self._http_client is not None:
            await self._http_client.aclose()


def build_service(config: CaldeltaConfig) -> CalendarService:
    """Build a service with one provider per configured account.

    All providers share a single HTTP client, which the service closes.
    """
    http_client = httpx.AsyncClient(timeout=config.http.timeout_seconds)
    return CalendarService(
        [build_provider(account, http_client) for account in config.accounts],
        cache=ConfirmedEventCache(stale_time=config.cache.stale_time_seconds),
        time_zone=config.time_zone,
        http_client=http_client,
    )


def _in_view(
    event: CalendarEvent,
    refs: set[CalendarRef],
    time_min: datetime,
    time_max: datetime,
) -> bool:
    if event.ref not in refs or event.start_instant >= time_max:
        return False
    return event.end_instant > time_min or event.start_instant >= time_min
