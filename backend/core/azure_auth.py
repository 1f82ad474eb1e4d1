"""Entra ID helpers for Azure Storage data-plane access.

The credential itself is owned by CredentialService (one per sync pass);
this module only builds it, pulls a storage-scoped token for identity
resolution, and reads the token's tenant/object claims.
"""

import asyncio
import logging
import os
from typing import Any

import jwt
from azure.core.exceptions import ServiceRequestError
from azure.identity import DefaultAzureCredential
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

STORAGE_TOKEN_SCOPE = "https://storage.azure.com/.default"

TOKEN_TIMEOUT_SECONDS = 30
TOKEN_ATTEMPTS = 3

# before_sleep_log wants a stdlib logger
_retry_logger = logging.getLogger(__name__)


def create_azure_credential() -> DefaultAzureCredential:
    """Build the credential chain used in entraId mode.

    AZURE_CLIENT_ID selects a user-assigned managed identity. Browser login
    is never attempted.
    """
    options: dict[str, Any] = {"exclude_interactive_browser_credential": True}
    if client_id := os.environ.get("AZURE_CLIENT_ID"):
        options["managed_identity_client_id"] = client_id
    return DefaultAzureCredential(**options)


@retry(
    stop=stop_after_attempt(TOKEN_ATTEMPTS),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((TimeoutError, ServiceRequestError, OSError)),
    before_sleep=before_sleep_log(_retry_logger, logging.WARNING),
    reraise=True,
)
async def get_token(credential: Any) -> str:
    """Storage-scoped access token from a sync credential.

    The SDK call blocks (IMDS, Azure CLI subprocess), so it runs on a worker
    thread under a per-attempt timeout.
    """
    async with asyncio.timeout(TOKEN_TIMEOUT_SECONDS):
        access = await asyncio.to_thread(credential.get_token, STORAGE_TOKEN_SCOPE)
    return access.token


def decode_token_claims(access_token: str) -> dict[str, Any]:
    """Unverified JWT claims, or {} when the token is not a JWT.

    Only tid/oid are read, as a local hint for pseudonymous user keys.
    """
    if access_token.count(".") != 2:
        return {}
    try:
        claims = jwt.decode(access_token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return {}
    return claims if isinstance(claims, dict) else {}
