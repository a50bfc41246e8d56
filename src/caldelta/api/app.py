"""FastAPI application factory for the caldelta HTTP API.

``create_app`` is also the uvicorn factory used by ``caldelta serve``. The
calendar service is built in the lifespan handler, so importing this module
never touches provider credentials.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from caldelta.api.deps import init_dependencies, shutdown_dependencies
from caldelta.api.middleware import register_error_handlers
from caldelta.api.routers.calendars import router as calendars_router
from caldelta.api.routers.events import router as events_router
from caldelta.api.routers.sync import router as sync_router
from caldelta.config import CaldeltaConfig
from caldelta.core.telemetry import init_telemetry

logger = logging.getLogger(__name__)

_ROUTERS = (calendars_router, events_router, sync_router)

DEFAULT_CORS_ORIGINS = ["http://localhost:5173"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service for the configured accounts; drain and close it on shutdown."""
    init_telemetry("caldelta-api")
    service, _ = init_dependencies(getattr(app.state, "config", None))
    logger.info("caldelta API serving accounts: %s", ", ".join(service.account_ids) or "(none)")

    yield

    await shutdown_dependencies()


def create_app(
    config: CaldeltaConfig | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create the API application.

    ``config`` defaults to the file named by ``CALDELTA_CONFIG``, loaded at
    startup. ``cors_origins`` defaults to the local Vite dev server.
    """
    app = FastAPI(title="caldelta API", version="0.1.0", lifespan=lifespan)
    app.router.redirect_slashes = False
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins if cors_origins is not None else DEFAULT_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)
    for router in _ROUTERS:
        app.include_router(router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
