"""Calendar provider implementations and dispatch by provider tag."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from caldelta.errors import CredentialError
from caldelta.models import ProviderId
from caldelta.providers.auth import (
    GOOGLE_OAUTH_TOKEN_URL,
    MICROSOFT_OAUTH_TOKEN_URL,
    OAuthCredentials,
    OAuthRefreshTokenSource,
    StaticTokenSource,
    TokenSource,
)
from caldelta.providers.base import (
    MAX_EVENTS_PER_CALENDAR,
    CalendarProvider,
    HttpCalendarProvider,
    classify_provider_error,
    provider_operation,
)
from caldelta.providers.google import GoogleCalendarProvider
from caldelta.providers.microsoft import MicrosoftCalendarProvider

if TYPE_CHECKING:
    from caldelta.config import AccountConfig

PROVIDER_REGISTRY: dict[ProviderId, type[HttpCalendarProvider]] = {
    ProviderId.google: GoogleCalendarProvider,
    ProviderId.microsoft: MicrosoftCalendarProvider,
}

_TOKEN_URLS: dict[ProviderId, str] = {
    ProviderId.google: GOOGLE_OAUTH_TOKEN_URL,
    ProviderId.microsoft: MICROSOFT_OAUTH_TOKEN_URL,
}


def build_token_source(account: AccountConfig, http_client: httpx.AsyncClient) -> TokenSource:
    if account.access_token is not None:
        return StaticTokenSource(account.access_token)
    if account.oauth is not None:
        return OAuthRefreshTokenSource(
            account.oauth,
            http_client,
            token_url=_TOKEN_URLS[account.provider],
        )
    raise CredentialError(f"Account {account.id!r} has no usable credentials")


def build_provider(account: AccountConfig, http_client: httpx.AsyncClient) -> CalendarProvider:
    """Instantiate the provider registered for ``account.provider``."""
    try:
        provider_cls = PROVIDER_REGISTRY[account.provider]
    except KeyError:
        raise CredentialError(f"Unsupported provider: {account.provider!r}") from None
    return provider_cls(
        account_id=account.id,
        provider_account_id=account.provider_account_id,
        token_source=build_token_source(account, http_client),
        http_client=http_client,
    )


__all__ = [
    "MAX_EVENTS_PER_CALENDAR",
    "PROVIDER_REGISTRY",
    "CalendarProvider",
    "GoogleCalendarProvider",
    "HttpCalendarProvider",
    "MicrosoftCalendarProvider",
    "OAuthCredentials",
    "OAuthRefreshTokenSource",
    "StaticTokenSource",
    "TokenSource",
    "build_provider",
    "build_token_source",
    "classify_provider_error",
    "provider_operation",
]
