"""Backend exception hierarchy and secret-safe error formatting.

Every message that may reach a log line or a user prompt goes through
safe_stringify_error() with the active secrets so shared keys and tokens
never leave the process in clear text.
"""

import json
import re
import traceback
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

T = TypeVar("T")

REDACTED = "[REDACTED]"


class BackendError(Exception):
    """Base error for backend sync and query operations."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


class BackendConfigError(BackendError):
    """Raised when backend settings are incomplete or inconsistent."""


class BackendAuthError(BackendError):
    """Raised when credentials are missing or lack data-plane permissions."""


class BackendSyncError(BackendError):
    """Raised when a sync pass cannot complete."""


class DataPlaneTimeoutError(TimeoutError):
    """Raised when an Azure Tables call exceeds its deadline."""

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds:g}s")


def redact_secrets_in_text(text: str, secrets_to_redact: Iterable[str] | None) -> str:
    """Replace every occurrence of each non-blank secret with [REDACTED]."""
    if not text or not secrets_to_redact:
        return text
    result = text
    for secret in secrets_to_redact:
        if not secret or not secret.strip():
            continue
        result = re.sub(re.escape(secret), REDACTED, result)
    return result


def safe_stringify_error(
    error: object, secrets_to_redact: Iterable[str] | None = None
) -> str:
    """Render an error (with traceback when available) and redact secrets."""
    secrets = list(secrets_to_redact or [])
    if isinstance(error, BaseException):
        if error.__traceback__ is not None:
            message = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            ).rstrip()
        else:
            message = str(error) or type(error).__name__
    elif isinstance(error, str):
        message = error
    elif isinstance(error, dict):
        inner = error.get("message") or error.get("error")
        if inner:
            message = str(inner)
        else:
            try:
                message = json.dumps(error)
            except (TypeError, ValueError):
                message = "[object]"
    else:
        message = str(error)

    return redact_secrets_in_text(message, secrets)


async def with_error_handling(
    fn: Callable[[], Awaitable[T]],
    error_prefix: str,
    secrets_to_redact: Iterable[str] | None = None,
) -> T:
    """Await fn(); wrap any failure in BackendError with a redacted message."""
    try:
        return await fn()
    except Exception as e:
        message = f"{error_prefix}: {safe_stringify_error(e, secrets_to_redact)}"
        raise BackendError(message, e) from e


def is_storage_local_auth_disallowed_by_policy_error(error: object) -> bool:
    """True when Shared Key access is disabled on the account (allowSharedKeyAccess)."""
    if error is None:
        return False
    message = str(getattr(error, "message", None) or error).lower()
    return (
        "allowsharedkeyaccess" in message
        or "local authentication" in message
        or ("shared key" in message and "policy" in message)
        or "keybasedauthenticationnotpermitted" in message
    )
