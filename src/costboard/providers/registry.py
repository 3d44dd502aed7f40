"""
Resolution of configured collectors per provider.

Stateful providers (Azure, MongoDB) are driven by their stored service
principals: one collector per credential that is not ``disabled``.
Credentials in ``error`` are retried so a successful run can restore them.
When a provider has no stored credentials at all, configuration credentials
are used instead.
Stateless providers are configured only through configuration.
"""

import logging
from typing import Any

from ..config.settings import CloudConfig
from ..storage.base import CostStorage, CredentialStatus, ServicePrincipal
from ..utils.data_normalizer import UnitNormalizer
from .base import CollectorFactory, CostCollector, MissingCredentialsError

logger = logging.getLogger(__name__)


class CollectorRegistry:
    """Builds collectors from configuration and stored credentials."""

    def __init__(self, config: CloudConfig, storage: CostStorage, normalizer: UnitNormalizer | None = None):
        self.config = config
        self.storage = storage
        self.normalizer = normalizer or UnitNormalizer.from_config(config.normalization)

    def providers(self) -> list[str]:
        return CollectorFactory.get_available_providers()

    def is_stateful(self, provider: str) -> bool:
        return CollectorFactory.is_stateful(provider)

    def provider_config(self, provider: str, credential: ServicePrincipal | None = None) -> dict[str, Any]:
        """HTTP defaults, then the provider section, then the credential's fields."""
        merged: dict[str, Any] = dict(self.config.http)
        merged.update(self.config.get_provider_config(provider))
        if credential is not None:
            merged.update(credential.as_provider_config())
        return merged

    def build(self, provider: str, credential: ServicePrincipal | None = None) -> CostCollector:
        return CollectorFactory.create_collector(
            provider,
            self.provider_config(provider, credential),
            normalizer=self.normalizer,
            storage=self.storage,
            credential_id=credential.id if credential else None,
        )

    async def collectors_for(self, provider: str) -> list[CostCollector]:
        """
        Collectors to query live for ``provider``.

        An empty list means live collection is skipped (nothing configured, or
        every stored credential is disabled).
        """
        if provider not in CollectorFactory.get_available_providers():
            return []

        if self.is_stateful(provider):
            credentials = await self.storage.list_credentials(provider)
            if credentials:
                usable = [c for c in credentials if c.status != CredentialStatus.DISABLED]
                if not usable:
                    logger.info(f"{provider}: all credentials disabled, skipping live collection")
                return [self.build(provider, c) for c in usable]

        if self.config.is_provider_enabled(provider):
            return [self.build(provider)]
        return []

    async def primary(self, provider: str) -> CostCollector:
        """
        The first usable collector, for single-provider endpoints.

        Raises:
            MissingCredentialsError: When nothing is configured for the provider
        """
        collectors = await self.collectors_for(provider)
        if not collectors:
            raise MissingCredentialsError(f"{provider} credentials not configured", provider=provider)
        return collectors[0]


class StaticCollectorRegistry:
    """Fixed collectors per provider; used by tests and the CLI."""

    def __init__(self, collectors: dict[str, list[CostCollector]]):
        self.collectors = collectors

    def providers(self) -> list[str]:
        return list(self.collectors)

    def is_stateful(self, provider: str) -> bool:
        return any(c.stateful for c in self.collectors.get(provider, []))

    async def collectors_for(self, provider: str) -> list[CostCollector]:
        return list(self.collectors.get(provider, []))

    async def primary(self, provider: str) -> CostCollector:
        collectors = await self.collectors_for(provider)
        if not collectors:
            raise MissingCredentialsError(f"{provider} credentials not configured", provider=provider)
        return collectors[0]
