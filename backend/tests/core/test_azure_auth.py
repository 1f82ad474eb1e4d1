"""Tests for the Entra ID helpers in core.azure_auth."""

from unittest.mock import MagicMock, patch

import jwt
import pytest
from azure.core.exceptions import ClientAuthenticationError

from core.azure_auth import (
    STORAGE_TOKEN_SCOPE,
    create_azure_credential,
    decode_token_claims,
    get_token,
)

pytestmark = pytest.mark.unit


class TestCreateAzureCredential:
    def test_excludes_interactive_browser(self, monkeypatch):
        monkeypatch.delenv("AZURE_CLIENT_ID", raising=False)
        with patch("core.azure_auth.DefaultAzureCredential") as mock_cls:
            create_azure_credential()
        mock_cls.assert_called_once_with(exclude_interactive_browser_credential=True)

    def test_targets_user_assigned_identity(self, monkeypatch):
        monkeypatch.setenv("AZURE_CLIENT_ID", "client-123")
        with patch("core.azure_auth.DefaultAzureCredential") as mock_cls:
            create_azure_credential()
        mock_cls.assert_called_once_with(
            exclude_interactive_browser_credential=True,
            managed_identity_client_id="client-123",
        )


class TestGetToken:
    async def test_returns_storage_scoped_token(self):
        credential = MagicMock()
        credential.get_token.return_value = MagicMock(token="access-token")

        assert await get_token(credential) == "access-token"
        credential.get_token.assert_called_once_with(STORAGE_TOKEN_SCOPE)

    async def test_auth_errors_are_not_retried(self):
        credential = MagicMock()
        credential.get_token.side_effect = ClientAuthenticationError("no login")

        with pytest.raises(ClientAuthenticationError):
            await get_token(credential)
        assert credential.get_token.call_count == 1


class TestDecodeTokenClaims:
    def test_reads_claims_without_verification(self):
        token = jwt.encode(
            {"tid": "tenant-1", "oid": "object-1"},
            "not-the-real-signing-key-for-these-tests",
            algorithm="HS256",
        )
        claims = decode_token_claims(token)
        assert claims["tid"] == "tenant-1"
        assert claims["oid"] == "object-1"

    @pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c", "a.b.c.d"])
    def test_garbage_returns_empty(self, token):
        assert decode_token_claims(token) == {}
