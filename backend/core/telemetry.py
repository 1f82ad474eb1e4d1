"""OpenTelemetry spans around Azure calls and sync/query operations.

Only opentelemetry-api is required. Spans are created when telemetry is
switched on through the environment (an OTLP endpoint or an Application
Insights connection string) and the host process has installed an SDK;
otherwise the decorators call straight through.
"""

import inspect
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from functools import wraps
from typing import ParamSpec, TypeVar, cast

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode

from core.logger import get_logger

logger = get_logger(__name__)

TELEMETRY_ENABLED = bool(
    os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    or os.getenv("APPLICATIONINSIGHTS_CONNECTION_STRING")
)

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "copilot-token-tracker-backend")

tracer = trace.get_tracer(__name__)

P = ParamSpec("P")
R = TypeVar("R")


@contextmanager
def _recorded_span(
    span_name: str,
    attributes: dict[str, str],
    prefix: str,
    record_exceptions: bool,
) -> Iterator[Span]:
    """Span with {prefix}.success / .duration_ms, marked ERROR on exceptions.

    Dependencies only record the exception type (SDK messages can echo
    request URLs); operations record the full exception event.
    """
    with tracer.start_as_current_span(
        span_name,
        attributes=attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        start = time.perf_counter()
        try:
            yield span
        except Exception as e:
            span.set_attribute(f"{prefix}.success", False)
            if record_exceptions:
                span.record_exception(e)
            else:
                span.set_attribute(f"{prefix}.error", type(e).__name__)
            span.set_status(Status(StatusCode.ERROR, type(e).__name__))
            raise
        else:
            span.set_attribute(f"{prefix}.success", True)
        finally:
            span.set_attribute(
                f"{prefix}.duration_ms", (time.perf_counter() - start) * 1000
            )


def _traced(
    span_name: str,
    attributes: dict[str, str],
    prefix: str,
    *,
    record_exceptions: bool,
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs):
                if not TELEMETRY_ENABLED:
                    return await func(*args, **kwargs)
                with _recorded_span(span_name, attributes, prefix, record_exceptions):
                    return await func(*args, **kwargs)

            return cast(Callable[P, R], async_wrapper)

        @wraps(func)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            if not TELEMETRY_ENABLED:
                return func(*args, **kwargs)
            with _recorded_span(span_name, attributes, prefix, record_exceptions):
                return func(*args, **kwargs)

        return sync_wrapper

    return decorator


def track_dependency(name: str, dependency_type: str = "azure_tables"):
    """Trace one Azure Tables or Blob Storage call."""
    return _traced(
        name,
        {"dependency.type": dependency_type, "dependency.name": name},
        "dependency",
        record_exceptions=False,
    )


def track_operation(operation_name: str):
    """Trace a sync pass or backend query."""
    return _traced(
        operation_name,
        {"operation.name": operation_name, "service.name": SERVICE_NAME},
        "operation",
        record_exceptions=True,
    )


def add_custom_attribute(key: str, value: str | int | float | bool) -> None:
    if not TELEMETRY_ENABLED:
        return
    trace.get_current_span().set_attribute(key, value)


def log_business_event(
    name: str, value: float, properties: dict[str, str] | None = None
) -> None:
    """Emit a sync outcome (e.g. entities upserted) as a structured log line.

    Only emitted when telemetry is on, so the log pipeline that collects
    spans also receives the counts.
    """
    if not TELEMETRY_ENABLED:
        return

    logger.info("business.event", event_name=name, value=value, **(properties or {}))
