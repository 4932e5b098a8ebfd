"""Structured logging for gcal-tools.

Uses structlog's ProcessorFormatter to upgrade every existing
``logging.getLogger(__name__)`` call site; modules never import structlog
directly.

Two output formats:
- ``text``: colored, human-readable console output (dev default)
- ``json``: machine-parseable JSON lines (production / log aggregation)

The service name and the OTel trace context are injected into every record.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

from gcal_tools.calendar.errors import redact_credential_values

DEFAULT_SERVICE_NAME = "gcal-tools"

_service_context: ContextVar[str | None] = ContextVar("service_name", default=None)


def set_service_context(name: str) -> None:
    _service_context.set(name)


def get_service_context() -> str | None:
    return _service_context.get()


def add_service_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``service`` from the ContextVar into the event dict."""
    event_dict["service"] = _service_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    span = trace.get_current_span()
    ctx = span.get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


class CredentialRedactionFilter(logging.Filter):
    """Redact bearer tokens and OAuth secrets from records before they are emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_credential_values(message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


# Request-level chatter from the HTTP stack; retries are logged by our own modules.
_NOISE_LOGGERS = (
    "httpx",
    "httpcore",
    "mcp.server.lowlevel.server",
)


def _build_processors(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_service_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _make_file_handler(path: Path, processors: list) -> logging.FileHandler:
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    handler.addFilter(CredentialRedactionFilter())
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_file: Path | None = None,
    service_name: str = DEFAULT_SERVICE_NAME,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        Output format, ``"text"`` for colored console or ``"json"`` for JSON lines.
    log_file:
        Optional path for an additional JSON-lines log file. Parent
        directories are created as needed.
    service_name:
        Value of the ``service`` key on every record.
    """
    set_service_context(service_name)

    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(CredentialRedactionFilter())

    root = logging.getLogger()
    # Reconfiguration must not duplicate output.
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        root.addHandler(_make_file_handler(log_path, _build_processors(time_fmt="iso")))

    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
