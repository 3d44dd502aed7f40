"""
Service principal management and the credential status lifecycle.

Status transitions:

    active   -> error     failed sync or connection test
    error    -> active    successful sync or connection test
    any      -> disabled  explicit user action only
    disabled -> active    explicit re-enable only

Disabled credentials are skipped by live collection and refresh, but their
stored records stay readable. Credentials in ``error`` are still attempted.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from ..config.settings import CloudConfig
from ..providers.base import CollectorFactory
from ..storage.base import (
    SECRET_FIELDS,
    SECRET_MASK,
    CostStorage,
    CredentialStatus,
    ServicePrincipal,
)
from ..utils.auth import MultiCloudAuthManager

logger = logging.getLogger(__name__)

CONFIG_CREDENTIAL_FIELDS = {
    "azure": ("client_id", "client_secret", "tenant_id", "subscription_id"),
    "mongodb": ("public_key", "private_key", "org_id", "project_id"),
}


class InvalidTransitionError(ValueError):
    """A credential status change that the lifecycle does not allow."""

    def __init__(self, current: CredentialStatus, target: CredentialStatus):
        super().__init__(f"Cannot move credential from {current.value} to {target.value}")
        self.current = current
        self.target = target


class CredentialNotFoundError(LookupError):
    pass


def transition(current: CredentialStatus, target: CredentialStatus, explicit: bool = False) -> CredentialStatus:
    """
    Validate a status change.

    Args:
        current: Present status
        target: Requested status
        explicit: Whether the change is a direct user action

    Returns:
        The new status

    Raises:
        InvalidTransitionError: If the change is not allowed
    """
    current = CredentialStatus(current)
    target = CredentialStatus(target)
    if current == target:
        return target
    if target == CredentialStatus.DISABLED:
        if explicit:
            return target
    elif current == CredentialStatus.DISABLED:
        if explicit and target == CredentialStatus.ACTIVE:
            return target
    else:
        # active <-> error
        return target
    raise InvalidTransitionError(current, target)


class CredentialService:
    """CRUD and lifecycle operations over stored service principals."""

    def __init__(
        self,
        storage: CostStorage,
        auth_manager: MultiCloudAuthManager | None = None,
        config: CloudConfig | None = None,
    ):
        self.storage = storage
        self.auth_manager = auth_manager or MultiCloudAuthManager()
        self.config = config

    async def list_credentials(self, provider: str | None = None) -> list[ServicePrincipal]:
        return await self.storage.list_credentials(provider)

    async def get(self, credential_id: str) -> ServicePrincipal:
        credential = await self.storage.get_credential(credential_id)
        if credential is None:
            raise CredentialNotFoundError(f"Service principal {credential_id} not found")
        return credential

    async def create(self, data: dict[str, Any]) -> ServicePrincipal:
        """
        Store a new service principal.

        Raises:
            pydantic.ValidationError: If the payload is not a valid service principal
        """
        fields = {k: v for k, v in data.items() if k not in ("id", "created_at", "last_sync", "error_message")}
        credential = ServicePrincipal.model_validate(fields)
        created = await self.storage.create_credential(credential)
        logger.info(f"Created {created.provider.value} service principal {created.name!r} ({created.id})")
        return created

    async def update(self, credential_id: str, updates: dict[str, Any]) -> ServicePrincipal:
        """
        Apply a user edit.

        Secret fields that come back as the mask are left unchanged, so a
        client can resubmit a masked record without clobbering the secret.

        Raises:
            CredentialNotFoundError: If the credential does not exist
            InvalidTransitionError: If ``status`` changes in a way the lifecycle forbids
        """
        current = await self.get(credential_id)
        changes = {
            k: v
            for k, v in updates.items()
            if k not in ("id", "created_at") and not (k in SECRET_FIELDS and v == SECRET_MASK)
        }
        if "status" in changes:
            changes["status"] = transition(current.status, CredentialStatus(changes["status"]), explicit=True)
            if changes["status"] != CredentialStatus.ERROR:
                changes.setdefault("error_message", None)

        updated = await self.storage.update_credential(credential_id, changes)
        if updated is None:
            raise CredentialNotFoundError(f"Service principal {credential_id} not found")
        return updated

    async def delete(self, credential_id: str) -> None:
        if not await self.storage.delete_credential(credential_id):
            raise CredentialNotFoundError(f"Service principal {credential_id} not found")
        logger.info(f"Deleted service principal {credential_id} and its stored records")

    async def mark_synced(self, credential_id: str) -> ServicePrincipal | None:
        """Record a successful sync; moves an ``error`` credential back to ``active``."""
        current = await self.storage.get_credential(credential_id)
        if current is None or current.status == CredentialStatus.DISABLED:
            return current
        status = transition(current.status, CredentialStatus.ACTIVE)
        return await self.storage.update_credential(
            credential_id,
            {"status": status, "last_sync": datetime.now(timezone.utc), "error_message": None},
        )

    async def mark_error(self, credential_id: str, message: str) -> ServicePrincipal | None:
        current = await self.storage.get_credential(credential_id)
        if current is None or current.status == CredentialStatus.DISABLED:
            return current
        status = transition(current.status, CredentialStatus.ERROR)
        return await self.storage.update_credential(credential_id, {"status": status, "error_message": message[:1000]})

    async def test_connection(self, credential_id: str) -> dict[str, Any]:
        """
        Verify a credential against its provider.

        An ``active`` or ``error`` credential moves to ``active`` on success and
        ``error`` on failure; a disabled credential keeps its status.
        """
        credential = await self.get(credential_id)
        provider = credential.provider.value
        provider_config: dict[str, Any] = {}
        if self.config is not None:
            provider_config.update(self.config.get_provider_config(provider))
        provider_config.update(credential.as_provider_config())

        result = await self.auth_manager.authenticate_provider(provider, provider_config)
        message = "Connection successful" if result.success else (result.error_message or "Connection failed")

        if credential.status != CredentialStatus.DISABLED:
            if result.success:
                credential = await self.mark_synced(credential_id) or credential
            else:
                credential = await self.mark_error(credential_id, message) or credential

        return {"success": result.success, "message": message, "status": credential.status.value}

    async def seed_from_config(self) -> list[ServicePrincipal]:
        """
        Store configuration credentials for stateful providers that have none stored.

        Returns:
            The credentials created
        """
        if self.config is None:
            return []
        created = []
        for provider, fields in CONFIG_CREDENTIAL_FIELDS.items():
            if not CollectorFactory.is_stateful(provider) or not self.config.is_provider_enabled(provider):
                continue
            if await self.storage.list_credentials(provider):
                continue
            provider_config = self.config.get_provider_config(provider)
            values = {f: provider_config.get(f) for f in fields if provider_config.get(f)}
            if not values:
                continue
            created.append(await self.create({"name": f"{provider} (configuration)", "provider": provider, **values}))
        return created
