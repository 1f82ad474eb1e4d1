"""Timing and deadlines for blocking Azure Tables SDK calls."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from core.errors import DataPlaneTimeoutError
from core.logger import get_logger

logger = get_logger(__name__)

# Table calls slower than this get a debug line (ms)
SLOW_CALL_THRESHOLD_MS = 2000

# Azure Tables SDK calls have no deadline of their own
QUERY_TIMEOUT_SECONDS = 30
WRITE_TIMEOUT_SECONDS = 60

P = ParamSpec("P")
R = TypeVar("R")


def log_slow_query(
    operation_name: str,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Time a table call; debug-log it when slow or when it raises.

    Failures are re-raised untouched. Whether one deserves a warning is up
    to the sync/query service that made the call.
    """

    def decorate(call: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @wraps(call)
        async def timed(*args: P.args, **kwargs: P.kwargs) -> R:
            started = time.perf_counter()
            error_type: str | None = None
            try:
                return await call(*args, **kwargs)
            except Exception as e:
                error_type = type(e).__name__
                raise
            finally:
                elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
                if error_type is not None:
                    logger.debug(
                        "table.call.failed",
                        operation=operation_name,
                        duration_ms=elapsed_ms,
                        error_type=error_type,
                    )
                elif elapsed_ms > SLOW_CALL_THRESHOLD_MS:
                    logger.debug(
                        "table.slow_call", operation=operation_name, duration_ms=elapsed_ms
                    )

        return timed

    return decorate


async def run_with_timeout(
    operation: str,
    timeout_seconds: float,
    func: Callable[..., R],
    *args: object,
    **kwargs: object,
) -> R:
    """Run a blocking SDK call in a worker thread with a deadline.

    On timeout the thread keeps running and its result is discarded.
    """
    try:
        async with asyncio.timeout(timeout_seconds):
            return await asyncio.to_thread(func, *args, **kwargs)
    except TimeoutError as e:
        raise DataPlaneTimeoutError(operation, timeout_seconds) from e
