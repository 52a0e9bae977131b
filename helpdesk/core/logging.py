"""Logging and tracing set-up for the helpdesk API.

Workflow code logs with ``extra={"ticket_id": ..., "actor_id": ...}``. The
:class:`ContextFormatter` installed by :func:`configure_logging` renders those
fields after the message so they reach the log output.
"""

from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Iterable

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from helpdesk.core.config import Settings

# Record attributes rendered as ``key=value`` pairs, in this order.
CONTEXT_FIELDS: tuple[str, ...] = (
    "operation",
    "ticket_id",
    "actor_id",
    "admin_id",
    "factory_id",
    "user_id",
    "notification_type",
    "error_kind",
)

_TRACER_INITIALISED = False


class ContextFormatter(logging.Formatter):
    """Append workflow context found on a record to the formatted message."""

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        fields: Iterable[str] = CONTEXT_FIELDS,
    ) -> None:
        super().__init__(fmt, datefmt)
        self._fields = tuple(fields)

    def formatMessage(self, record: logging.LogRecord) -> str:
        message = super().formatMessage(record)
        context = self.context_of(record)
        if not context:
            return message
        pairs = " ".join(f"{key}={value}" for key, value in context.items())
        return f"{message} [{pairs}]"

    def context_of(self, record: logging.LogRecord) -> dict[str, Any]:
        context: dict[str, Any] = {}
        for field in self._fields:
            value = getattr(record, field, None)
            if value is not None and value != "":
                context[field] = value
        return context


def parse_headers(header_string: str | None) -> dict[str, str]:
    """Parse ``key=value`` pairs separated by commas into a header mapping."""

    if not header_string:
        return {}
    headers: dict[str, str] = {}
    for item in header_string.split(","):
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            continue
        headers[key.strip()] = value.strip()
    return headers


def logging_config(settings: Settings) -> dict[str, Any]:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "context": {
                "()": ContextFormatter,
                "fmt": settings.log_format,
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "context",
                "level": level,
            }
        },
        "loggers": {
            "helpdesk": {"level": level},
            # Statement echo stays off unless explicitly raised.
            "sqlalchemy.engine": {"level": logging.WARNING},
        },
        "root": {
            "handlers": ["console"],
            "level": level,
        },
    }


def configure_logging(settings: Settings) -> logging.Logger:
    """Install the console handler and return the application logger."""

    config = logging_config(settings)
    dictConfig(config)
    logger = logging.getLogger(settings.app_name)
    logger.setLevel(config["root"]["level"])
    return logger


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Initialise the OpenTelemetry tracer if enabled in settings."""

    global _TRACER_INITIALISED

    if _TRACER_INITIALISED or not settings.otel_enabled:
        return None

    resource = Resource(
        attributes={
            "service.name": settings.otel_service_name,
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(resource=resource)

    exporter_kwargs: dict[str, object] = {}
    if settings.otel_exporter_otlp_endpoint:
        exporter_kwargs["endpoint"] = settings.otel_exporter_otlp_endpoint
    headers = parse_headers(settings.otel_exporter_otlp_headers)
    if headers:
        exporter_kwargs["headers"] = headers

    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))
    trace.set_tracer_provider(provider)
    _TRACER_INITIALISED = True
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    """Flush and shut down the tracer provider created by :func:`init_tracer`."""

    global _TRACER_INITIALISED

    if provider is None:
        return
    provider.shutdown()
    _TRACER_INITIALISED = False
