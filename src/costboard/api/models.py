"""
API data models for the cost dashboard.

Request and response bodies use camelCase field names; requests also accept
the snake_case names.
"""

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..providers.base import CostRecord, Provider
from ..storage.base import CostSummarySnapshot, CredentialStatus, ServicePrincipal


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthCheck(BaseModel):
    status: str
    timestamp: datetime
    version: str
    checks: dict[str, str] | None = None


class ServicePrincipalCreate(ApiModel):
    name: str
    provider: Provider
    client_id: str | None = None
    client_secret: str | None = None
    tenant_id: str | None = None
    subscription_id: str | None = None
    public_key: str | None = None
    private_key: str | None = None
    org_id: str | None = None
    project_id: str | None = None
    status: CredentialStatus = CredentialStatus.ACTIVE


class ServicePrincipalUpdate(ApiModel):
    name: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    tenant_id: str | None = None
    subscription_id: str | None = None
    public_key: str | None = None
    private_key: str | None = None
    org_id: str | None = None
    project_id: str | None = None
    status: CredentialStatus | None = None


class ServicePrincipalResponse(ApiModel):
    """A service principal with secret fields masked."""

    id: str
    name: str
    provider: Provider
    client_id: str | None = None
    client_secret: str | None = None
    tenant_id: str | None = None
    subscription_id: str | None = None
    public_key: str | None = None
    private_key: str | None = None
    org_id: str | None = None
    project_id: str | None = None
    status: CredentialStatus
    last_sync: datetime | None = None
    error_message: str | None = None
    created_at: datetime

    @classmethod
    def from_credential(cls, credential: ServicePrincipal) -> "ServicePrincipalResponse":
        return cls.model_validate(credential.masked())


class ConnectionTestResponse(ApiModel):
    success: bool
    message: str
    status: CredentialStatus


class CostRecordResponse(ApiModel):
    id: str
    provider: Provider
    credential_id: str | None = None
    date: date
    amount_usd: float
    scope: str | None = None
    currency: str
    metadata: dict[str, Any] | None = None
    created_at: datetime

    @classmethod
    def from_record(cls, record: CostRecord) -> "CostRecordResponse":
        return cls.model_validate(record.model_dump())


class CostSummaryResponse(ApiModel):
    total_monthly_cost: float
    today_spend: float
    active_resources: int
    trend_data: list[dict[str, Any]]
    service_breakdown: list[dict[str, Any]]
    last_updated: datetime

    @classmethod
    def from_snapshot(cls, snapshot: CostSummarySnapshot) -> "CostSummaryResponse":
        return cls.model_validate(snapshot.model_dump())


class ProviderRefreshResponse(ApiModel):
    provider: str
    credential_id: str | None = None
    success: bool
    records: int
    amount_usd: float
    error: str | None = None


class RefreshResponse(ApiModel):
    success: bool
    message: str
    started_at: datetime
    finished_at: datetime
    results: list[ProviderRefreshResponse]


class AgentRequest(ApiModel):
    provider: str


class ProviderStatus(ApiModel):
    provider: str
    stateful: bool
    enabled: bool
    credentials: int
    active_credentials: int
