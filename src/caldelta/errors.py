"""Error taxonomy shared by providers, the sync reconciler and the mutation coordinator.

Provider failures are classified once, at the provider boundary, into:

- ``NetworkError``: transport failure (connection, read, timeout)
- ``NotFoundError``: the calendar, account or event does not exist
- ``SyncTokenExpiredError``: the provider rejected a stored sync token
- ``ProviderError``: anything else the provider reported

Every subclass carries the operation name, provider id and account id so that
callers can report failures without re-deriving context.
"""

from __future__ import annotations

import re
from typing import Any

_MAX_MESSAGE_LENGTH = 200


class CalendarError(RuntimeError):
    """Base error for the calendar sync core."""


class CredentialError(CalendarError):
    """Raised when credential material is missing or malformed."""


class ProviderError(CalendarError):
    """A provider-tagged failure raised from a provider operation."""

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        provider_id: str,
        account_id: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.message = sanitize_error_message(message)
        self.operation = operation
        self.provider_id = provider_id
        self.account_id = account_id
        self.status_code = status_code
        self.context = dict(context or {})
        super().__init__(
            f"{provider_id} {operation} failed for account '{account_id}': {self.message}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "error_type": type(self).__name__,
            "operation": self.operation,
            "provider": self.provider_id,
            "account_id": self.account_id,
            "status_code": self.status_code,
        }


class NetworkError(ProviderError):
    """Raised when the provider could not be reached (connection failure or timeout)."""


class NotFoundError(ProviderError):
    """Raised when the target calendar, account or event does not exist."""


class SyncTokenExpiredError(ProviderError):
    """Raised when a sync token is expired or invalid; caller should do a full sync."""


class ProviderHTTPError(CalendarError):
    """Raw non-2xx provider response, classified by ``classify_provider_error``."""

    def __init__(self, *, status_code: int, message: str, code: str | None = None) -> None:
        self.status_code = status_code
        self.message = message
        self.code = code
        super().__init__(f"Provider request failed ({status_code}): {message}")


def _redact_credential_values(message: str) -> str:
    """Redact token-like values from an error message."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # Bearer headers
    redacted = re.sub(r"(?i)\bbearer\s+[A-Za-z0-9\-._~+/]+=*", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(message: str) -> str:
    """Redact credentials, collapse whitespace and truncate to 200 characters."""
    return " ".join(_redact_credential_values(message).split())[:_MAX_MESSAGE_LENGTH]
