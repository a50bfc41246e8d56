"""Bearer-token sources used by the HTTP providers.

Session handling lives outside this package; providers only need a way to
obtain (and occasionally force-refresh) an access token. Also hosts the
helpers that read error details out of provider and OAuth responses.
"""

from __future__ import annotations

import abc
import asyncio
import json
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from caldelta.errors import CredentialError, ProviderHTTPError

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_OAUTH_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
# Tokens are treated as expired this long before the server says so.
EXPIRY_MARGIN_SECONDS = 60
MIN_TOKEN_LIFETIME_SECONDS = 30

_REQUIRED_CREDENTIAL_FIELDS = ("client_id", "client_secret", "refresh_token")
_MAX_ERROR_MESSAGE_LENGTH = 200


class TokenSource(abc.ABC):
    """Supplies bearer tokens for provider requests."""

    @abc.abstractmethod
    async def get_access_token(self, *, force_refresh: bool = False) -> str: ...


class StaticTokenSource(TokenSource):
    """A fixed access token handed over by the session layer."""

    def __init__(self, access_token: str) -> None:
        normalized = access_token.strip()
        if not normalized:
            raise CredentialError("access_token must be a non-empty string")
        self._access_token = normalized

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        return self._access_token


class OAuthCredentials(BaseModel):
    """Client id/secret plus the refresh token of one connected account."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    scope: str | None = None

    @field_validator(*_REQUIRED_CREDENTIAL_FIELDS)
    @classmethod
    def _strip_required(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @classmethod
    def from_json(cls, raw_value: str) -> OAuthCredentials:
        """Parse stored credential JSON.

        Accepts the flat layout as well as the ``installed``/``web`` layouts of
        downloaded OAuth client files, with ``refresh_token`` at either level.
        """
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise CredentialError(f"Credential JSON must be valid JSON: {exc.msg}") from exc
        if not isinstance(payload, dict):
            raise CredentialError("Credential JSON must decode to a JSON object")

        found = {key: _lookup_credential(payload, key) for key in _REQUIRED_CREDENTIAL_FIELDS}
        missing = [key for key, value in found.items() if value is None]
        if missing:
            raise CredentialError(
                f"Credential JSON is missing required field(s): {', '.join(missing)}"
            )
        blank = [
            key for key, value in found.items() if not isinstance(value, str) or not value.strip()
        ]
        if blank:
            raise CredentialError(
                f"Credential JSON must contain non-empty string field(s): {', '.join(blank)}"
            )
        return cls(**found)


@dataclass(frozen=True)
class _CachedToken:
    value: str
    refresh_after: datetime

    @property
    def is_fresh(self) -> bool:
        return datetime.now(UTC) < self.refresh_after


class OAuthRefreshTokenSource(TokenSource):
    """Exchanges a refresh token for access tokens and caches them until near expiry.

    Concurrent callers share one refresh through a lock.
    """

    def __init__(
        self,
        credentials: OAuthCredentials,
        http_client: httpx.AsyncClient,
        *,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._token_url = token_url
        self._cached: _CachedToken | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        cached = self._cached
        if not force_refresh and cached is not None and cached.is_fresh:
            return cached.value

        async with self._refresh_lock:
            # Another caller may have refreshed while this one waited.
            if not force_refresh and self._cached is not None and self._cached.is_fresh:
                return self._cached.value
            self._cached = await self._exchange()
            return self._cached.value

    async def _exchange(self) -> _CachedToken:
        form = {key: getattr(self._credentials, key) for key in _REQUIRED_CREDENTIAL_FIELDS}
        form["grant_type"] = "refresh_token"
        if self._credentials.scope:
            form["scope"] = self._credentials.scope

        # Transport errors propagate; the provider layer classifies them.
        response = await self._http_client.post(
            self._token_url,
            data=form,
            headers={"Accept": "application/json"},
        )
        if not response.is_success:
            raise ProviderHTTPError(
                status_code=response.status_code,
                message=f"OAuth token refresh failed: {safe_error_message(response)}",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CredentialError("OAuth token endpoint returned invalid JSON") from exc
        if not isinstance(payload, dict):
            payload = {}

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise CredentialError("OAuth token response is missing a non-empty access_token")

        lifetime = _token_lifetime_seconds(payload.get("expires_in"))
        ttl = max(lifetime - EXPIRY_MARGIN_SECONDS, MIN_TOKEN_LIFETIME_SECONDS)
        return _CachedToken(
            value=access_token.strip(),
            refresh_after=datetime.now(UTC) + timedelta(seconds=ttl),
        )


def _lookup_credential(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]
    for layout in ("installed", "web"):
        section = payload.get(layout)
        if isinstance(section, dict) and key in section:
            return section[key]
    return None


def _token_lifetime_seconds(value: Any) -> int:
    if isinstance(value, int | float) and not isinstance(value, bool) and value > 0:
        return int(value)
    return DEFAULT_TOKEN_LIFETIME_SECONDS


def _one_line(text: str) -> str:
    return " ".join(text.split())[:_MAX_ERROR_MESSAGE_LENGTH]


def _json_object(response: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, single-line error message from a provider response.

    Google and Microsoft Graph both use ``{"error": {"message": ...}}``; OAuth
    endpoints use ``{"error": "...", "error_description": "..."}``.
    """
    payload = _json_object(response) or {}
    error = payload.get("error")
    candidates = [
        error.get("message") if isinstance(error, dict) else None,
        payload.get("error_description"),
        error if isinstance(error, str) else None,
        response.text,
    ]
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return _one_line(candidate)
    return "Request failed without an error payload"


def error_code(response: httpx.Response) -> str | None:
    """Return the provider's machine-readable error code, when present.

    Graph puts it in ``error.code``; Google in ``error.errors[0].reason``.
    """
    error = (_json_object(response) or {}).get("error")
    if not isinstance(error, dict):
        return None
    code = error.get("code")
    if isinstance(code, str) and code.strip():
        return code.strip()
    details = error.get("errors")
    if isinstance(details, list) and details and isinstance(details[0], dict):
        reason = details[0].get("reason")
        if isinstance(reason, str) and reason.strip():
            return reason.strip()
    return None
