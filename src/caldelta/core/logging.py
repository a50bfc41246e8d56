"""structlog-backed logging for caldelta processes.

Every stdlib ``logging.getLogger(__name__)`` record is rendered through a
structlog ``ProcessorFormatter``. Console output is ``text`` (colored) or
``json``. When ``log_root`` is set, JSON lines are also written to::

    <log_root>/caldelta.log    application records
    <log_root>/transport.log   httpx, httpcore and uvicorn records

Each record carries the provider account being worked on (set by providers
around every request) and the OTel trace/span ids of the active span.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_account_context: ContextVar[str | None] = ContextVar("account_id", default=None)

_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
)

_APP_LOG_NAME = "caldelta.log"
_TRANSPORT_LOG_NAME = "transport.log"

_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16


def set_account_context(account_id: str | None) -> None:
    _account_context.set(account_id)


def get_account_context() -> str | None:
    return _account_context.get()


def add_account_context(logger, method_name: str, event_dict: dict) -> dict:  # noqa: ANN001, ARG001
    """Processor: add ``account`` unless the call site passed one."""
    event_dict.setdefault("account", _account_context.get())
    return event_dict


def add_otel_context(logger, method_name: str, event_dict: dict) -> dict:  # noqa: ANN001, ARG001
    """Processor: add hex ``trace_id``/``span_id``, zeroed outside a span."""
    ctx = trace.get_current_span().get_span_context()
    valid = ctx is not None and ctx.trace_id != 0
    event_dict["trace_id"] = format(ctx.trace_id, "032x") if valid else _ZERO_TRACE_ID
    event_dict["span_id"] = format(ctx.span_id, "016x") if valid else _ZERO_SPAN_ID
    return event_dict


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_account_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor,
    pre_chain: list[structlog.types.Processor],
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(path: Path) -> logging.FileHandler:
    handler = logging.FileHandler(path)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
) -> None:
    """Install the console handler (and optional JSON log files) on the root logger.

    Reconfiguring replaces the root handlers, so calling this more than once
    never duplicates output.
    """
    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    noise = [logging.getLogger(name) for name in _NOISE_LOGGERS]
    for noisy in noise:
        noisy.setLevel(logging.WARNING)

    if log_root is not None:
        log_dir = Path(log_root)
        log_dir.mkdir(parents=True, exist_ok=True)
        root.addHandler(_json_file_handler(log_dir / _APP_LOG_NAME))
        transport = _json_file_handler(log_dir / _TRANSPORT_LOG_NAME)
        for noisy in noise:
            noisy.addHandler(transport)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
