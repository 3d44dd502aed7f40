"""
Storage interface for credentials, cost records and summary snapshots.

Implementations must not rely on callers holding references to returned
objects; every read returns fresh copies.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..providers.base import CostRecord, Provider

SECRET_MASK = "********"
SECRET_FIELDS = ("client_secret", "private_key")


class StorageError(Exception):
    """A storage read or write failed."""

    kind = "storage"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"
    DISABLED = "disabled"


class ServicePrincipal(BaseModel):
    """A configured credential set for one provider."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    provider: Provider
    # Azure
    client_id: str | None = None
    client_secret: str | None = None
    tenant_id: str | None = None
    subscription_id: str | None = None
    # MongoDB Atlas
    public_key: str | None = None
    private_key: str | None = None
    org_id: str | None = None
    project_id: str | None = None
    # Common
    status: CredentialStatus = CredentialStatus.ACTIVE
    last_sync: datetime | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Credential name cannot be empty")
        return v.strip()

    def as_provider_config(self) -> dict[str, Any]:
        """Credential fields as a collector configuration overlay."""
        fields = {
            Provider.AZURE: ("client_id", "client_secret", "tenant_id", "subscription_id"),
            Provider.MONGODB: ("public_key", "private_key", "org_id", "project_id"),
        }.get(self.provider, ())
        return {name: getattr(self, name) for name in fields if getattr(self, name)}

    def masked(self) -> dict[str, Any]:
        """Serializable view with secret fields replaced."""
        data = self.model_dump(mode="json")
        for name in SECRET_FIELDS:
            if data.get(name):
                data[name] = SECRET_MASK
        return data


class CostSummarySnapshot(BaseModel):
    """Derived views recomputed after each refresh."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    total_monthly_cost: float = 0.0
    today_spend: float = 0.0
    active_resources: int = 0
    trend_data: list[dict[str, Any]] = Field(default_factory=list)
    service_breakdown: list[dict[str, Any]] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CostStorage(ABC):
    """Abstract key-value/record store used by the collectors and services."""

    async def initialize(self) -> None:
        """Prepare connections or schema."""

    async def close(self) -> None:
        """Release connections."""

    async def ping(self) -> bool:
        """Whether the backend is reachable."""
        return True

    # Credentials
    @abstractmethod
    async def list_credentials(self, provider: str | None = None) -> list[ServicePrincipal]:
        pass

    @abstractmethod
    async def get_credential(self, credential_id: str) -> ServicePrincipal | None:
        pass

    @abstractmethod
    async def create_credential(self, credential: ServicePrincipal) -> ServicePrincipal:
        pass

    @abstractmethod
    async def update_credential(
        self, credential_id: str, updates: dict[str, Any]
    ) -> ServicePrincipal | None:
        pass

    @abstractmethod
    async def delete_credential(self, credential_id: str) -> bool:
        """
        Remove a credential together with the cost records it ingested.

        Returns:
            Whether the credential existed
        """
        pass

    # Cost records
    @abstractmethod
    async def query_cost_records(
        self,
        provider: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[CostRecord]:
        """
        Query stored records.

        Args:
            provider: Only records of this provider
            start: Inclusive lower bound on record date
            end: Exclusive upper bound on record date
        """
        pass

    @abstractmethod
    async def put_cost_records(self, records: list[CostRecord]) -> int:
        """Append records; returns the number stored."""
        pass

    @abstractmethod
    async def replace_provider_range(
        self,
        provider: str,
        start: date,
        end: date,
        records: list[CostRecord],
        credential_id: str | None = None,
    ) -> int:
        """
        Atomically replace a provider's records dated in ``[start, end)``.

        When ``credential_id`` is given only that credential's records are
        replaced. Readers never observe a half-replaced set.
        """
        pass

    # Summary snapshots
    @abstractmethod
    async def get_latest_summary(self) -> CostSummarySnapshot | None:
        pass

    @abstractmethod
    async def save_summary(self, summary: CostSummarySnapshot) -> CostSummarySnapshot:
        pass


def in_range(record: CostRecord, start: date | None, end: date | None) -> bool:
    if start is not None and record.date < start:
        return False
    if end is not None and record.date >= end:
        return False
    return True
