"""Logging setup for the backend sync CLI and long-running hosts.

All log output goes to stderr through structlog; stdout belongs to command
output (JSON results of `copilot-backend sync`, `query`, ...).

Environment:
    COPILOT_BACKEND_LOG_LEVEL   debug | info (default) | warning | error
    COPILOT_BACKEND_LOG_FORMAT  json | console; default is console on a
                                terminal and json otherwise (scheduled runs)

Usage:
    from core import get_logger
    logger = get_logger(__name__)
    logger.info("sync.completed", entities=12, dataset_id="default")
"""

import logging
import os
import sys

import structlog
from opentelemetry import trace
from structlog.contextvars import bind_contextvars, clear_contextvars
from structlog.types import EventDict, Processor, WrappedLogger

from core.errors import REDACTED

__all__ = ["bind_contextvars", "clear_contextvars", "configure_logging", "get_logger"]

LOG_LEVEL_ENV = "COPILOT_BACKEND_LOG_LEVEL"
LOG_FORMAT_ENV = "COPILOT_BACKEND_LOG_FORMAT"

HANDLER_NAME = "copilot-backend"

# Event fields that must never be rendered, whatever a caller passes
SECRET_FIELD_NAMES = frozenset(
    {"shared_key", "account_key", "access_token", "token", "secret", "password"}
)

_NOISY_LOGGERS = (
    "azure.core.pipeline.policies.http_logging_policy",
    "azure.identity",
    "urllib3",
)


def _redact_secret_fields(
    _logger: WrappedLogger, _method_name: str, event_dict: EventDict
) -> EventDict:
    for key in SECRET_FIELD_NAMES.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def _add_trace_ids(
    _logger: WrappedLogger, _method_name: str, event_dict: EventDict
) -> EventDict:
    """Correlate log lines with the active sync/query span, if one is recording."""
    span = trace.get_current_span()
    if not span.is_recording():
        return event_dict
    ctx = span.get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _log_level() -> int:
    level = logging.getLevelName(os.environ.get(LOG_LEVEL_ENV, "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _use_json() -> bool:
    log_format = os.environ.get(LOG_FORMAT_ENV, "").strip().lower()
    if log_format in ("json", "console"):
        return log_format == "json"
    return not sys.stderr.isatty()


def _renderer(use_json: bool) -> Processor:
    if use_json:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=sys.stderr.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def configure_logging() -> None:
    """Route structlog and stdlib logging through one stderr handler.

    Safe to call more than once: the handler installed by a previous call is
    replaced, handlers added by anyone else are left alone.
    """
    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        _redact_secret_fields,
        _add_trace_ids,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                _renderer(_use_json()),
            ],
        )
    )

    root = logging.getLogger()
    for existing in [h for h in root.handlers if h.get_name() == HANDLER_NAME]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(_log_level())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Structured logger; pass key-value context, not formatted strings.

    Example:
        logger = get_logger(__name__)
        logger.warning("sync.failed", consecutive_failures=3)
    """
    return structlog.stdlib.get_logger(name)
