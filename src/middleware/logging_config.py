"""Entra Graph Samples — Structured JSON logging configuration.

Configures structlog on top of stdlib logging so that our own events and the
Azure / Graph SDK loggers share one output:
  - JSON lines in production, coloured console output in development
  - ISO-8601 UTC timestamps, log level and logger name on every event
  - request-scoped context (``structlog.contextvars``) merged into each event

All logs pass through PII redaction before emission. No object IDs, UPNs,
bearer tokens or claims blobs should ever appear in log output.
"""

from __future__ import annotations

import logging
import sys

import structlog

# SDK loggers that are chatty at INFO (request/response dumps)
_SDK_LOGGERS = (
    "azure",
    "azure.identity",
    "msal",
    "kiota_http",
    "httpcore",
    "httpx",
    "opentelemetry",
)

_UNREDACTED_KEYS = frozenset({"timestamp", "level", "logger"})
_SECRET_KEYS = frozenset({"claims", "access_token", "refresh_token", "id_token", "user_assertion"})


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
) -> None:
    """Configure structured logging for the service.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_format: If True, output JSON. If False, output human-readable (dev).
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        _redact_pii_processor,
    ]

    renderer: structlog.types.Processor
    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Route stdlib records (SDK loggers) through the same renderer
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _SDK_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _redact_pii_processor(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Structlog processor that redacts PII and credentials from event values."""
    from src.middleware.pii_redaction import redact_pii

    for key, value in event_dict.items():
        if key in _SECRET_KEYS and value:
            event_dict[key] = "[REDACTED]"
        elif isinstance(value, str) and key not in _UNREDACTED_KEYS:
            event_dict[key] = redact_pii(value)

    return event_dict
