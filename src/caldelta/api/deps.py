"""Service wiring and FastAPI dependencies for the HTTP API.

Provides:
- ``init_dependencies()``: builds the ``CalendarService`` and its
  ``MutationCoordinator`` from a loaded ``CaldeltaConfig``.
- ``get_service()`` / ``get_coordinator()``: FastAPI dependency functions that
  inject the singletons into route handlers. Tests override them through
  ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from caldelta.config import DEFAULT_CONFIG_PATH, CaldeltaConfig, load_config
from caldelta.optimistic.coordinator import MutationCoordinator
from caldelta.service import CalendarService, build_service

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "CALDELTA_CONFIG"

# ---------------------------------------------------------------------------
# Module-level singletons for FastAPI dependency injection
# ---------------------------------------------------------------------------

_service: CalendarService | None = None
_coordinator: MutationCoordinator | None = None


def config_path_from_env() -> Path:
    """Config path from ``CALDELTA_CONFIG``, falling back to ``caldelta.toml``."""
    value = os.environ.get(CONFIG_PATH_ENV)
    return Path(value) if value else DEFAULT_CONFIG_PATH


def init_dependencies(
    config: CaldeltaConfig | None = None,
) -> tuple[CalendarService, MutationCoordinator]:
    """Initialize the module-level singletons.

    Called once during app startup (in the lifespan handler). Loads the
    config from ``CALDELTA_CONFIG`` when none is passed.
    """
    global _service, _coordinator  # noqa: PLW0603

    if config is None:
        config = load_config(config_path_from_env())

    service = build_service(config)
    coordinator = MutationCoordinator(service)

    _service = service
    _coordinator = coordinator
    logger.info("Calendar service initialized for %d account(s)", len(config.accounts))
    return service, coordinator


async def shutdown_dependencies() -> None:
    """Drain pending settlements and close provider clients. Called during app shutdown."""
    global _service, _coordinator  # noqa: PLW0603

    if _coordinator is not None:
        await _coordinator.drain()
        _coordinator = None
    if _service is not None:
        await _service.aclose()
        _service = None


def get_service() -> CalendarService:
    """FastAPI dependency: provides the CalendarService singleton."""
    if _service is None:
        raise RuntimeError("CalendarService not initialized; call init_dependencies() first")
    return _service


def get_coordinator() -> MutationCoordinator:
    """FastAPI dependency: provides the MutationCoordinator singleton."""
    if _coordinator is None:
        raise RuntimeError("MutationCoordinator not initialized; call init_dependencies() first")
    return _coordinator
