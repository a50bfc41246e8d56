"""Envelope models shared by every caldelta API endpoint.

Successful responses are ``{"data": ..., "meta": {...}}``; failures are
``{"error": {"code", "message", "provider", "account_id", "details"}}``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from caldelta.errors import ProviderError


class ApiMeta(BaseModel):
    """Free-form response metadata such as ``count`` or ``view``."""

    model_config = ConfigDict(extra="allow")


class ApiResponse[T](BaseModel):
    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    code: str
    message: str
    provider: str | None = None
    account_id: str | None = None
    details: dict[str, Any] | None = None

    @classmethod
    def for_provider_error(cls, exc: ProviderError, code: str) -> ErrorDetail:
        """Attribute a classified provider failure to its provider and account."""
        return cls(
            code=code,
            message=exc.message,
            provider=exc.provider_id,
            account_id=exc.account_id,
            details={"operation": exc.operation, "status_code": exc.status_code},
        )


class ErrorResponse(BaseModel):
    error: ErrorDetail

    @classmethod
    def of(cls, code: str, message: str) -> ErrorResponse:
        return cls(error=ErrorDetail(code=code, message=message))
