"""Provider abstraction and the shared HTTP plumbing for calendar providers.

This module defines:
- ``CalendarProvider``: the capability set every provider variant implements
- ``provider_operation``: the uniform error handler wrapping each operation
- ``HttpCalendarProvider``: bearer-authenticated JSON requests over httpx
"""

from __future__ import annotations

import abc
import functools
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, ClassVar, ParamSpec, TypeVar

import httpx

from caldelta.core.logging import set_account_context
from caldelta.core.telemetry import provider_span
from caldelta.errors import (
    NetworkError,
    NotFoundError,
    ProviderError,
    ProviderHTTPError,
)
from caldelta.models import (
    Calendar,
    CalendarEvent,
    CalendarEventsResult,
    CalendarFreeBusy,
    CreateCalendarInput,
    CreateEventInput,
    EventResponse,
    ProviderId,
    SyncResult,
    UpdateCalendarInput,
    UpdateEventInput,
)
from caldelta.providers.auth import TokenSource, error_code, safe_error_message

logger = logging.getLogger(__name__)

MAX_EVENTS_PER_CALENDAR = 250
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
NOT_FOUND_STATUS_CODES = {404, 410}

P = ParamSpec("P")
T = TypeVar("T")


def classify_provider_error(
    exc: BaseException,
    *,
    operation: str,
    provider_id: str,
    account_id: str,
    context: dict[str, Any] | None = None,
) -> ProviderError:
    """Map any failure raised inside a provider operation onto the error taxonomy."""
    if isinstance(exc, ProviderError):
        return exc

    kwargs: dict[str, Any] = {
        "operation": operation,
        "provider_id": provider_id,
        "account_id": account_id,
        "context": context,
    }
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(f"Request timed out: {exc}", **kwargs)
    if isinstance(exc, httpx.TransportError):
        return NetworkError(f"Network request failed: {exc}", **kwargs)
    if isinstance(exc, ProviderHTTPError):
        if exc.status_code in NOT_FOUND_STATUS_CODES:
            return NotFoundError(exc.message, status_code=exc.status_code, **kwargs)
        return ProviderError(exc.message, status_code=exc.status_code, **kwargs)
    return ProviderError(str(exc) or type(exc).__name__, **kwargs)


def provider_operation(
    operation: str,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Wrap a provider coroutine method with tracing and error classification.

    The wrapped call runs inside a ``calendar.<provider>.<operation>`` span.
    Failures are logged with operation/provider/account context and re-raised
    as a ``ProviderError`` subclass. Errors that are already classified (for
    example from a nested provider call) pass through unchanged.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(self: CalendarProvider, *args: Any, **kwargs: Any) -> T:
            provider_id = self.provider_id.value
            set_account_context(self.account_id)
            with provider_span(operation, provider_id=provider_id, account_id=self.account_id):
                try:
                    return await func(self, *args, **kwargs)
                except ProviderError:
                    raise
                except Exception as exc:
                    error = classify_provider_error(
                        exc,
                        operation=operation,
                        provider_id=provider_id,
                        account_id=self.account_id,
                    )
                    log_details = {
                        "operation": operation,
                        "provider": provider_id,
                        "account_id": self.account_id,
                        "error_type": type(error).__name__,
                        "status_code": error.status_code,
                    }
                    if isinstance(error, NetworkError):
                        logger.error(
                            "Network error in %s: %s", operation, error.message, extra=log_details
                        )
                    else:
                        logger.error(
                            "Failed to %s: %s", operation, error.message, extra=log_details
                        )
                    raise error from exc

        return wrapper

    return decorator


class CalendarProvider(abc.ABC):
    """Capability set implemented once per calendar provider.

    All calendar and event payloads crossing this boundary use the normalized
    shapes from ``caldelta.models``.
    """

    provider_id: ClassVar[ProviderId]

    def __init__(self, *, account_id: str, provider_account_id: str | None = None) -> None:
        self.account_id = account_id
        self.provider_account_id = provider_account_id or account_id

    @abc.abstractmethod
    async def list_calendars(self) -> list[Calendar]:
        """Return every calendar visible to the account."""
        ...

    @abc.abstractmethod
    async def get_calendar(self, calendar_id: str) -> Calendar: ...

    @abc.abstractmethod
    async def create_calendar(self, payload: CreateCalendarInput) -> Calendar: ...

    @abc.abstractmethod
    async def update_calendar(self, calendar_id: str, payload: UpdateCalendarInput) -> Calendar: ...

    @abc.abstractmethod
    async def delete_calendar(self, calendar_id: str) -> None: ...

    @abc.abstractmethod
    async def list_events(
        self,
        calendar: Calendar,
        time_min: datetime,
        time_max: datetime,
        time_zone: str,
    ) -> CalendarEventsResult:
        """Return the events of ``calendar`` within the window."""
        ...

    @abc.abstractmethod
    async def get_event(self, calendar: Calendar, event_id: str, time_zone: str) -> CalendarEvent:
        ...

    @abc.abstractmethod
    async def sync(
        self,
        calendar: Calendar,
        *,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        time_zone: str = "UTC",
    ) -> SyncResult:
        """Fetch changes since ``sync_token`` (or everything when it is ``None``).

        Raises:
            ``SyncTokenExpiredError`` when the provider reports the token is no
            longer valid. The caller should retry with ``sync_token=None``.
        """
        ...

    @abc.abstractmethod
    async def create_event(self, calendar: Calendar, payload: CreateEventInput) -> CalendarEvent:
        ...

    @abc.abstractmethod
    async def update_event(
        self,
        calendar: Calendar,
        event_id: str,
        patch: UpdateEventInput,
    ) -> CalendarEvent: ...

    @abc.abstractmethod
    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        notify_attendees: bool = True,
    ) -> None:
        """Delete an event. A missing event raises ``NotFoundError``."""
        ...

    @abc.abstractmethod
    async def move_event(
        self,
        source: Calendar,
        destination: Calendar,
        event_id: str,
        *,
        notify_attendees: bool = True,
    ) -> CalendarEvent: ...

    @abc.abstractmethod
    async def respond_to_event(
        self,
        calendar_id: str,
        event_id: str,
        response: EventResponse,
    ) -> None: ...

    @abc.abstractmethod
    async def free_busy(
        self,
        schedule_ids: list[str],
        time_min: datetime,
        time_max: datetime,
    ) -> list[CalendarFreeBusy]: ...

    async def aclose(self) -> None:
        """Release provider resources."""
        return None


class HttpCalendarProvider(CalendarProvider):
    """Base for providers that speak JSON over HTTPS with a bearer token."""

    base_url: ClassVar[str]

    def __init__(
        self,
        *,
        account_id: str,
        token_source: TokenSource,
        provider_account_id: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(account_id=account_id, provider_account_id=provider_account_id)
        self._token_source = token_source
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self._http_client

    def _url(self, path: str) -> str:
        if path.startswith("https://"):
            return path
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{self.base_url}{normalized_path}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send an authenticated request, retrying once with a fresh token on 401."""
        url = self._url(path)
        response = await self._request_once(
            method,
            url,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
            force_refresh=False,
        )
        if response.status_code == 401:
            response = await self._request_once(
                method,
                url,
                params=params,
                json_body=json_body,
                extra_headers=extra_headers,
                force_refresh=True,
            )
        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._token_source.get_access_token(force_refresh=force_refresh)
        headers: dict[str, str] = {"Authorization": f"Bearer {access_token}"}
        if extra_headers:
            headers.update(extra_headers)
        return await self._http_client.request(
            method,
            url,
            params=params,
            json=json_body,
            headers=headers,
        )

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderHTTPError(
                status_code=response.status_code,
                message=safe_error_message(response),
                code=error_code(response),
            )

    @staticmethod
    def _decode_json(response: httpx.Response) -> dict[str, Any]:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderHTTPError(
                status_code=response.status_code,
                message="Provider returned invalid JSON for a successful response",
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderHTTPError(
                status_code=response.status_code,
                message="Provider returned an unexpected JSON payload shape",
            )
        return payload

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(
            method,
            path,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
        )
        self._raise_for_status(response)
        return self._decode_json(response)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
