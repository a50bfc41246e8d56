"""OpenTelemetry setup and the ``provider_span`` wrapper for provider calls.

Spans are named ``calendar.<provider>.<operation>`` and tagged with the
provider and account, so one trace shows which account each HTTP call served.
"""

from __future__ import annotations

import functools
import logging
import os
from contextlib import AbstractContextManager

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "caldelta"
_ENDPOINT_ENV = "OTEL_EXPORTER_OTLP_ENDPOINT"

# Set once a real TracerProvider is installed; OTel refuses to replace it.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Install an OTLP gRPC exporter when ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set.

    Without the endpoint the global no-op provider stays in place. Later calls
    reuse whichever provider the first call installed.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get(_ENDPOINT_ENV)
    if not endpoint:
        logger.info("%s not set, tracing disabled", _ENDPOINT_ENV)
        return trace.get_tracer(service_name)
    if _tracer_provider_installed:
        return trace.get_tracer(service_name)

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Exporting traces for %s to %s", service_name, endpoint)
    return trace.get_tracer(service_name)


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    return trace.get_tracer(name)


def tag_account_span(span: trace.Span, *, provider_id: str, account_id: str) -> None:
    span.set_attribute("calendar.provider", provider_id)
    span.set_attribute("calendar.account_id", account_id)


class provider_span:
    """Span around one provider operation; a context manager or an async decorator.

    ::

        with provider_span("sync", provider_id="google", account_id="work"):
            ...

    Exceptions are recorded on the span, which ends with ERROR status.
    """

    def __init__(self, operation: str, *, provider_id: str, account_id: str) -> None:
        self.operation = operation
        self.provider_id = provider_id
        self.account_id = account_id
        self._current: AbstractContextManager[trace.Span] | None = None

    @property
    def name(self) -> str:
        return f"calendar.{self.provider_id}.{self.operation}"

    def __enter__(self) -> trace.Span:
        self._current = get_tracer().start_as_current_span(
            self.name, record_exception=True, set_status_on_exception=True
        )
        span = self._current.__enter__()
        tag_account_span(span, provider_id=self.provider_id, account_id=self.account_id)
        span.set_attribute("calendar.operation", self.operation)
        return span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        current, self._current = self._current, None
        if current is not None:
            current.__exit__(exc_type, exc_val, exc_tb)

    def __call__(self, func):  # noqa: ANN001, ANN204
        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            # New instance per call: concurrent invocations must not share _current.
            with provider_span(
                self.operation, provider_id=self.provider_id, account_id=self.account_id
            ):
                return await func(*args, **kwargs)

        return _wrapper
