"""Shared building blocks for the sync backend: settings, errors, logging."""

from core.logger import bind_contextvars, clear_contextvars, configure_logging, get_logger

__all__ = ["bind_contextvars", "clear_contextvars", "configure_logging", "get_logger"]
