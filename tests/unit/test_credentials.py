"""Tests for service principal management and the status lifecycle."""

import pytest
from pydantic import ValidationError

from costboard.services.credentials import (
    CredentialNotFoundError,
    CredentialService,
    InvalidTransitionError,
    transition,
)
from costboard.storage.base import SECRET_MASK, CredentialStatus
from costboard.utils.auth import AuthenticationResult

ACTIVE = CredentialStatus.ACTIVE
ERROR = CredentialStatus.ERROR
DISABLED = CredentialStatus.DISABLED


class StubAuthManager:
    def __init__(self, success=True, error_message=None):
        self.success = success
        self.error_message = error_message
        self.calls = []

    async def authenticate_provider(self, provider, config):
        self.calls.append((provider, config))
        if self.success:
            return AuthenticationResult.create_success(provider, "stub", object())
        return AuthenticationResult.create_failure(provider, "stub", self.error_message or "rejected")


AZURE_PAYLOAD = {
    "name": "prod",
    "provider": "azure",
    "client_id": "client",
    "client_secret": "secret",
    "tenant_id": "tenant",
    "subscription_id": "sub",
}


@pytest.mark.unit
class TestTransition:
    @pytest.mark.parametrize(
        "current,target,explicit",
        [
            (ACTIVE, ERROR, False),
            (ERROR, ACTIVE, False),
            (ACTIVE, DISABLED, True),
            (ERROR, DISABLED, True),
            (DISABLED, ACTIVE, True),
            (ACTIVE, ACTIVE, False),
            (DISABLED, DISABLED, False),
        ],
    )
    def test_allowed(self, current, target, explicit):
        assert transition(current, target, explicit=explicit) == target

    @pytest.mark.parametrize(
        "current,target,explicit",
        [
            (ACTIVE, DISABLED, False),
            (DISABLED, ACTIVE, False),
            (DISABLED, ERROR, False),
            (DISABLED, ERROR, True),
        ],
    )
    def test_rejected(self, current, target, explicit):
        with pytest.raises(InvalidTransitionError):
            transition(current, target, explicit=explicit)

    def test_accepts_strings(self):
        assert transition("active", "error") == ERROR


@pytest.mark.unit
class TestCredentialService:
    async def test_create_ignores_server_fields(self, storage):
        service = CredentialService(storage)

        created = await service.create({**AZURE_PAYLOAD, "id": "chosen", "error_message": "x"})

        assert created.id != "chosen"
        assert created.error_message is None
        assert created.status == ACTIVE

    async def test_create_invalid_provider(self, storage):
        with pytest.raises(ValidationError):
            await CredentialService(storage).create({**AZURE_PAYLOAD, "provider": "oracle"})

    async def test_update_ignores_masked_secret(self, storage):
        service = CredentialService(storage)
        created = await service.create(AZURE_PAYLOAD)

        updated = await service.update(created.id, {"name": "renamed", "client_secret": SECRET_MASK})

        assert updated.name == "renamed"
        assert updated.client_secret == "secret"

    async def test_update_replaces_new_secret(self, storage):
        service = CredentialService(storage)
        created = await service.create(AZURE_PAYLOAD)

        updated = await service.update(created.id, {"client_secret": "rotated"})

        assert updated.client_secret == "rotated"

    async def test_disable_and_reenable(self, storage):
        service = CredentialService(storage)
        created = await service.create(AZURE_PAYLOAD)
        await service.mark_error(created.id, "auth_failure: expired")

        disabled = await service.update(created.id, {"status": "disabled"})
        enabled = await service.update(created.id, {"status": "active"})

        assert disabled.status == DISABLED
        assert disabled.error_message is None
        assert enabled.status == ACTIVE

    async def test_update_rejects_disabled_to_error(self, storage):
        service = CredentialService(storage)
        created = await service.create(AZURE_PAYLOAD)
        await service.update(created.id, {"status": "disabled"})

        with pytest.raises(InvalidTransitionError):
            await service.update(created.id, {"status": "error"})

    async def test_missing_credential(self, storage):
        service = CredentialService(storage)

        with pytest.raises(CredentialNotFoundError):
            await service.get("missing")
        with pytest.raises(CredentialNotFoundError):
            await service.update("missing", {"name": "x"})
        with pytest.raises(CredentialNotFoundError):
            await service.delete("missing")

    async def test_sync_results_leave_disabled_untouched(self, storage):
        service = CredentialService(storage)
        created = await service.create(AZURE_PAYLOAD)
        await service.update(created.id, {"status": "disabled"})

        await service.mark_error(created.id, "timeout: slow")
        await service.mark_synced(created.id)

        assert (await service.get(created.id)).status == DISABLED

    async def test_connection_success_activates(self, storage):
        auth = StubAuthManager(success=True)
        service = CredentialService(storage, auth_manager=auth)
        created = await service.create(AZURE_PAYLOAD)
        await service.mark_error(created.id, "old")

        result = await service.test_connection(created.id)

        assert result == {"success": True, "message": "Connection successful", "status": "active"}
        provider, config = auth.calls[0]
        assert provider == "azure"
        assert config["client_secret"] == "secret"

    async def test_connection_failure_marks_error(self, storage):
        service = CredentialService(storage, auth_manager=StubAuthManager(False, "invalid client secret"))
        created = await service.create(AZURE_PAYLOAD)

        result = await service.test_connection(created.id)

        assert result["success"] is False
        assert result["status"] == "error"
        assert (await service.get(created.id)).error_message == "invalid client secret"

    async def test_connection_on_disabled_keeps_status(self, storage):
        service = CredentialService(storage, auth_manager=StubAuthManager(False))
        created = await service.create(AZURE_PAYLOAD)
        await service.update(created.id, {"status": "disabled"})

        result = await service.test_connection(created.id)

        assert result["status"] == "disabled"

    async def test_seed_from_config(self, storage, make_config):
        config = make_config(
            clouds={
                "azure": {
                    "enabled": True,
                    "client_id": "cid",
                    "client_secret": "cs",
                    "tenant_id": "tid",
                    "subscription_id": "sid",
                },
                "mongodb": {"enabled": False, "public_key": "pk", "private_key": "sk", "org_id": "org"},
            }
        )
        service = CredentialService(storage, config=config)

        created = await service.seed_from_config()
        again = await service.seed_from_config()

        assert [c.name for c in created] == ["azure (configuration)"]
        assert created[0].client_secret == "cs"
        assert again == []
        assert await storage.list_credentials("mongodb") == []
