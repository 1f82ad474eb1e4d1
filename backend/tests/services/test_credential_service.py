"""Tests for credential_service.

Tests:
- Entra ID mode returns the factory credential for tables and blobs
- Shared Key mode reads the key from the secret store, prompting once
- Declining the prompt yields no credentials (or BackendAuthError)
- Secrets to redact for error messages
"""

import pytest
from azure.core.credentials import AzureNamedKeyCredential

from core.errors import BackendAuthError, BackendConfigError
from core.secrets import shared_key_secret_name
from services.credential_service import MISSING_SHARED_KEY_MESSAGE, CredentialService
from tests.fakes import FakePrompts, FakeSecretStore

pytestmark = pytest.mark.unit

ACCOUNT = "teststorage"
KEY = "c2hhcmVkLWtleQ=="


@pytest.fixture
def shared_key_settings(make_settings):
    return make_settings(auth_mode="sharedKey")


def _service(secrets=None, **prompt_answers) -> CredentialService:
    return CredentialService(
        FakeSecretStore(secrets),
        FakePrompts(**prompt_answers),
        credential_factory=lambda: "entra-credential",
    )


class TestEntraId:
    @pytest.mark.asyncio
    async def test_uses_factory_credential(self, settings):
        creds = await _service().get_data_plane_credentials(settings)

        assert creds.table_credential == "entra-credential"
        assert creds.blob_credential == "entra-credential"
        assert creds.secrets_to_redact == []

    @pytest.mark.asyncio
    async def test_nothing_to_redact(self, settings):
        assert await _service().get_secrets_to_redact_for_error(settings) == []


class TestSharedKey:
    @pytest.mark.asyncio
    async def test_stored_key(self, shared_key_settings):
        service = _service({shared_key_secret_name(ACCOUNT): KEY})

        creds = await service.get_data_plane_credentials(shared_key_settings)

        assert isinstance(creds.table_credential, AzureNamedKeyCredential)
        assert creds.table_credential.named_key.name == ACCOUNT
        assert creds.table_credential.named_key.key == KEY
        assert creds.blob_credential is creds.table_credential
        assert creds.secrets_to_redact == [KEY]
        assert service.prompts.confirmations == []

    @pytest.mark.asyncio
    async def test_missing_key_user_declines(self, shared_key_settings):
        service = _service(confirm_answer=False)

        assert await service.get_data_plane_credentials(shared_key_settings) is None
        assert len(service.prompts.confirmations) == 1
        assert service.prompts.secret_prompts == []

    @pytest.mark.asyncio
    async def test_missing_key_user_cancels_secret_prompt(self, shared_key_settings):
        service = _service(confirm_answer=True, secret_answer=None)

        assert await service.get_data_plane_credentials(shared_key_settings) is None
        assert len(service.prompts.secret_prompts) == 1

    @pytest.mark.asyncio
    async def test_missing_key_user_enters_key(self, shared_key_settings):
        service = _service(confirm_answer=True, secret_answer=f"  {KEY}  ")

        creds = await service.get_data_plane_credentials(shared_key_settings)

        assert creds.secrets_to_redact == [KEY]
        assert service.secret_store.secrets == {shared_key_secret_name(ACCOUNT): KEY}

    @pytest.mark.asyncio
    async def test_or_raise(self, shared_key_settings):
        with pytest.raises(BackendAuthError, match="key is not set"):
            await _service().get_data_plane_credentials_or_raise(shared_key_settings)
        assert "Shared Key" in MISSING_SHARED_KEY_MESSAGE

    @pytest.mark.asyncio
    async def test_secrets_to_redact(self, shared_key_settings):
        service = _service({shared_key_secret_name(ACCOUNT): KEY})
        assert await service.get_secrets_to_redact_for_error(shared_key_settings) == [KEY]


class TestStoredKeyCommands:
    @pytest.mark.asyncio
    async def test_set_get_clear(self):
        service = _service()

        await service.set_stored_shared_key(ACCOUNT, f" {KEY} ")
        assert await service.get_stored_shared_key(ACCOUNT) == KEY

        await service.clear_stored_shared_key(ACCOUNT)
        assert await service.get_stored_shared_key(ACCOUNT) is None

    @pytest.mark.asyncio
    async def test_keys_are_per_account(self):
        service = _service()
        await service.set_stored_shared_key("accounta", "key-a")
        assert await service.get_stored_shared_key("accountb") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("account", "key"), [("", KEY), (ACCOUNT, "   ")])
    async def test_set_requires_account_and_key(self, account, key):
        with pytest.raises(BackendConfigError):
            await _service().set_stored_shared_key(account, key)

    @pytest.mark.asyncio
    async def test_prompt_without_account_shows_error(self):
        service = _service(secret_answer=KEY)

        assert await service.prompt_for_and_store_shared_key("") is False
        assert len(service.prompts.errors) == 1
        assert service.prompts.secret_prompts == []

    @pytest.mark.asyncio
    async def test_prompt_mentions_account(self):
        service = _service(secret_answer=KEY)

        assert await service.prompt_for_and_store_shared_key(ACCOUNT, "Rotate") is True
        assert ACCOUNT in service.prompts.secret_prompts[0]
        assert service.prompts.secret_prompts[0].startswith("Rotate")
