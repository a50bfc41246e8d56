"""Shared fixtures for the caldelta test suite."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from caldelta.cache import ConfirmedEventCache
from caldelta.models import ProviderId
from caldelta.optimistic.coordinator import MutationCoordinator
from caldelta.service import CalendarService
from caldelta.testing import FakeCalendarProvider


@pytest.fixture
def work_provider() -> FakeCalendarProvider:
    """Google-flavoured fake account ``work`` with ``primary`` and ``team`` calendars."""
    return FakeCalendarProvider("work", calendar_ids=("primary", "team"))


@pytest.fixture
def home_provider() -> FakeCalendarProvider:
    """Microsoft-flavoured fake account ``home`` that assigns its own event ids."""
    return FakeCalendarProvider(
        "home",
        provider_id=ProviderId.microsoft,
        calendar_ids=("primary",),
        assign_ids=True,
    )


@pytest.fixture
async def service(
    work_provider: FakeCalendarProvider,
    home_provider: FakeCalendarProvider,
) -> AsyncIterator[CalendarService]:
    svc = CalendarService(
        [work_provider, home_provider],
        cache=ConfirmedEventCache(stale_time=60),
    )
    yield svc
    await svc.aclose()


@pytest.fixture
def coordinator(service: CalendarService) -> MutationCoordinator:
    return MutationCoordinator(service)
