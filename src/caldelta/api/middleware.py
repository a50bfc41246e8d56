"""Exception handlers turning caldelta errors into ``ErrorResponse`` envelopes.

Provider failures are mapped by class, most specific first:

==========================  ======  ========================
error                       status  code
==========================  ======  ========================
``NotFoundError``           404     ``NOT_FOUND``
``SyncTokenExpiredError``   409     ``SYNC_TOKEN_EXPIRED``
``NetworkError``            504     ``PROVIDER_UNREACHABLE``
``ProviderError``           502     ``PROVIDER_ERROR``
==========================  ======  ========================

``CredentialError`` yields 503; other ``CalendarError``s and ``ValueError`` yield 400;
anything unhandled yields 500.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from caldelta.api.models import ErrorDetail, ErrorResponse
from caldelta.errors import (
    CalendarError,
    CredentialError,
    NetworkError,
    NotFoundError,
    ProviderError,
    SyncTokenExpiredError,
)

logger = logging.getLogger(__name__)

_PROVIDER_ERROR_STATUS: list[tuple[type[ProviderError], int, str]] = [
    (NotFoundError, 404, "NOT_FOUND"),
    (SyncTokenExpiredError, 409, "SYNC_TOKEN_EXPIRED"),
    (NetworkError, 504, "PROVIDER_UNREACHABLE"),
    (ProviderError, 502, "PROVIDER_ERROR"),
]


def _status_for(exc: ProviderError) -> tuple[int, str]:
    for error_cls, status_code, code in _PROVIDER_ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status_code, code
    return 502, "PROVIDER_ERROR"


def _envelope(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _on_provider_error(request: Request, exc: ProviderError) -> JSONResponse:
    status_code, code = _status_for(exc)
    level = logging.WARNING if status_code >= 500 else logging.INFO
    logger.log(
        level, "%s %s -> %d %s: %s", request.method, request.url.path, status_code, code, exc
    )
    return _envelope(status_code, ErrorResponse(error=ErrorDetail.for_provider_error(exc, code)))


async def _on_credential_error(request: Request, exc: CredentialError) -> JSONResponse:
    logger.warning("Account credentials unavailable for %s: %s", request.url.path, exc)
    return _envelope(503, ErrorResponse.of("CREDENTIALS_UNAVAILABLE", str(exc)))


async def _on_value_error(request: Request, exc: ValueError) -> JSONResponse:
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
    return _envelope(400, ErrorResponse.of("VALIDATION_ERROR", str(exc)))


async def _on_calendar_error(request: Request, exc: CalendarError) -> JSONResponse:
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
    return _envelope(400, ErrorResponse.of("CALENDAR_ERROR", str(exc)))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Return a 500 envelope for exceptions no handler claimed."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
            return _envelope(500, ErrorResponse.of("INTERNAL_ERROR", "Internal server error"))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ProviderError, _on_provider_error)  # type: ignore[arg-type]
    app.add_exception_handler(CredentialError, _on_credential_error)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarError, _on_calendar_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _on_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
