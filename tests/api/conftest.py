"""Fixtures for API tests: an ASGI client wired to the fake-backed service."""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
import pytest

from caldelta.api.app import create_app
from caldelta.api.deps import get_coordinator, get_service
from caldelta.optimistic.coordinator import MutationCoordinator
from caldelta.service import CalendarService


@pytest.fixture
async def api_client(
    service: CalendarService,
    coordinator: MutationCoordinator,
) -> AsyncIterator[httpx.AsyncClient]:
    app = create_app()
    app.dependency_overrides[get_service] = lambda: service
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
    await coordinator.drain()
