"""
Abstract base collector for multi-cloud cost aggregation.

Defines the normalized cost models, the collector error taxonomy and the
interface every provider collector implements.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import date, datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from ..utils.data_normalizer import UnitNormalizer, precise_sum, round_half_up
from ..utils.window import MonthWindow

if TYPE_CHECKING:
    from ..storage.base import CostStorage

logger = logging.getLogger(__name__)


class Provider(str, Enum):
    """Known cost sources."""

    AZURE = "azure"
    AWS = "aws"
    GCP = "gcp"
    MONGODB = "mongodb"


ALL_PROVIDERS = [p.value for p in Provider]


class SummarySource(str, Enum):
    LIVE = "live"
    STORED = "stored"
    NONE = "none"


class RawCostRow(BaseModel):
    """A single un-normalized reading extracted from a provider response."""

    scope: str | None = None
    raw_amount: Any
    raw_unit: str = "USD"
    day: date | None = None
    metadata: dict[str, Any] | None = None


class CostRecord(BaseModel):
    """A persisted, normalized cost observation for one provider/date/scope."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    provider: Provider
    credential_id: str | None = None
    date: date
    amount_usd: float
    scope: str | None = None
    currency: str = "USD"
    metadata: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if v.upper().strip() != "USD":
            raise ValueError(f"Cost records are stored in USD, got {v}")
        return "USD"

    @field_validator("scope")
    @classmethod
    def validate_scope(cls, v: str | None) -> str | None:
        if v is not None:
            stripped = v.strip()
            return stripped if stripped else None
        return v


class ScopeAmount(BaseModel):
    scope: str
    amount_usd: float


class ProviderSummary(BaseModel):
    """Normalized month-to-date spend for one provider."""

    provider: Provider
    amount_usd: float
    amount_usd_precise: float
    components: list[ScopeAmount] = Field(default_factory=list)
    source: SummarySource = SummarySource.LIVE
    error: str | None = None

    @model_validator(mode="after")
    def validate_rounding(self):
        if round_half_up(self.amount_usd_precise) != self.amount_usd:
            raise ValueError(
                f"amount_usd {self.amount_usd} is not the 2-dp rounding of {self.amount_usd_precise}"
            )
        return self

    @classmethod
    def zero(
        cls, provider: str, source: SummarySource = SummarySource.NONE, error: str | None = None
    ) -> "ProviderSummary":
        return cls(
            provider=provider,
            amount_usd=0.0,
            amount_usd_precise=0.0,
            components=[],
            source=source,
            error=error,
        )

    @classmethod
    def from_amounts(
        cls,
        provider: str,
        amounts: list[tuple[str | None, float]],
        source: SummarySource = SummarySource.LIVE,
    ) -> "ProviderSummary":
        """
        Build a summary from ``(scope, amount_usd)`` pairs.

        Amounts are grouped by scope; components are sorted descending by amount.
        """
        by_scope: dict[str, list[float]] = defaultdict(list)
        for scope, amount in amounts:
            by_scope[scope or "Unknown"].append(amount)

        components = [
            ScopeAmount(scope=scope, amount_usd=round_half_up(precise_sum(values)))
            for scope, values in by_scope.items()
        ]
        components.sort(key=lambda c: (-c.amount_usd, c.scope))

        precise = precise_sum(amount for _, amount in amounts)
        return cls(
            provider=provider,
            amount_usd=round_half_up(precise),
            amount_usd_precise=precise,
            components=components,
            source=source,
        )

    @classmethod
    def from_records(
        cls, provider: str, records: list[CostRecord], source: SummarySource
    ) -> "ProviderSummary":
        if not records:
            return cls.zero(provider, source=SummarySource.NONE)
        return cls.from_amounts(provider, [(r.scope, r.amount_usd) for r in records], source)

    @classmethod
    def merge(cls, provider: str, summaries: list["ProviderSummary"]) -> "ProviderSummary":
        """Combine summaries of several credentials for the same provider."""
        if len(summaries) == 1:
            return summaries[0]
        amounts: list[tuple[str | None, float]] = []
        for summary in summaries:
            amounts.extend((c.scope, c.amount_usd) for c in summary.components)
        merged = cls.from_amounts(provider, amounts, SummarySource.LIVE)
        precise = precise_sum(s.amount_usd_precise for s in summaries)
        return merged.model_copy(
            update={"amount_usd_precise": precise, "amount_usd": round_half_up(precise)}
        )


class CloudProviderError(Exception):
    """Base exception for cloud provider errors."""

    kind = "error"

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class ConfigurationError(CloudProviderError):
    """Configuration-related errors."""

    kind = "configuration"


class MissingCredentialsError(ConfigurationError):
    """No usable credentials are configured for the provider."""

    kind = "missing_credentials"


class AuthenticationError(CloudProviderError):
    """Authentication-related errors."""

    kind = "auth_failure"


class APIError(CloudProviderError):
    """Upstream API is unavailable or returned an error."""

    kind = "upstream_unavailable"

    def __init__(self, message: str, status_code: int | None = None, provider: str | None = None):
        super().__init__(message, provider=provider)
        self.status_code = status_code


class RateLimitError(APIError):
    """Rate limiting errors."""

    kind = "rate_limited"

    def __init__(self, message: str, retry_after: int | None = None, provider: str | None = None):
        super().__init__(message, status_code=429, provider=provider)
        self.retry_after = retry_after


class CollectorTimeoutError(APIError):
    """A bounded wait (HTTP call or poll loop) was exhausted."""

    kind = "timeout"


class ParseFailureError(APIError):
    """The upstream response did not match the expected schema."""

    kind = "parse_failure"


def credentials_or_raise(result) -> Any:
    """Return the credentials of an AuthenticationResult or raise the matching error."""
    if result.success:
        return result.credentials
    if result.missing_credentials:
        raise MissingCredentialsError(
            f"{result.provider} credentials not configured: {result.error_message}",
            provider=result.provider,
        )
    raise AuthenticationError(
        f"{result.provider} authentication failed: {result.error_message}", provider=result.provider
    )


def describe_error(error: BaseException) -> str:
    """Short diagnostic string for a collector failure."""
    kind = getattr(error, "kind", "unexpected")
    return f"{kind}: {error}"


class CostCollector(ABC):
    """Abstract base class for provider cost collectors."""

    stateful = False

    def __init__(
        self,
        config: dict[str, Any],
        normalizer: UnitNormalizer | None = None,
        storage: "CostStorage | None" = None,
        credential_id: str | None = None,
    ):
        """
        Initialize the collector with injected configuration.

        Args:
            config: Provider-specific configuration dictionary
            normalizer: Unit normalizer holding the configured conversion rates
            storage: Storage used by stateful collectors to persist records
            credential_id: Id of the service principal these credentials come from
        """
        self.config = config
        self.normalizer = normalizer or UnitNormalizer()
        self.storage = storage
        self.credential_id = credential_id
        self.provider_name = self._get_provider_name()
        self._authenticated = False

    @abstractmethod
    def _get_provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def authenticate(self) -> bool:
        """
        Authenticate with the provider.

        Raises:
            MissingCredentialsError: If credentials are not configured
            AuthenticationError: If the provider rejects the credentials
        """
        pass

    @abstractmethod
    async def fetch_rows(self, window: MonthWindow) -> list[RawCostRow]:
        """
        Query the provider for spend inside ``window``.

        Returns:
            Flat list of raw readings

        Raises:
            CloudProviderError: Any taxonomy error
        """
        pass

    async def ensure_authenticated(self):
        if not self._authenticated:
            await self.authenticate()

    async def test_connection(self) -> bool:
        """Check that the credentials are accepted by the provider."""
        try:
            self._authenticated = False
            await self.authenticate()
            return True
        except CloudProviderError as e:
            logger.warning(f"{self.provider_name} connection test failed: {e}")
            return False

    def to_records(self, rows: list[RawCostRow], window: MonthWindow) -> list[CostRecord]:
        """Normalize raw rows into USD cost records dated inside the window."""
        records = []
        for row in rows:
            day = row.day or window.start.date()
            if not window.contains(day):
                logger.debug(f"{self.provider_name}: dropping row dated {day} outside {window.month_slug}")
                continue
            records.append(
                CostRecord(
                    provider=self.provider_name,
                    credential_id=self.credential_id,
                    date=day,
                    amount_usd=self.normalizer.normalize(
                        row.raw_amount, row.raw_unit, provider=self.provider_name
                    ),
                    scope=row.scope,
                    metadata=row.metadata,
                )
            )
        return records

    async def collect_records(self, window: MonthWindow) -> list[CostRecord]:
        """
        Fetch and normalize records, translating unexpected failures.

        Raises:
            CloudProviderError: Always one of the taxonomy errors on failure
        """
        try:
            await self.ensure_authenticated()
            rows = await self.fetch_rows(window)
        except CloudProviderError as e:
            if e.provider is None:
                e.provider = self.provider_name
            raise
        except Exception as e:
            logger.error(f"{self.provider_name}: unexpected collection error: {e}")
            raise APIError(
                f"Unexpected {self.provider_name} collection error: {e}", provider=self.provider_name
            ) from e
        return self.to_records(rows, window)

    async def collect(self, window: MonthWindow) -> ProviderSummary:
        """
        Collect normalized month-to-date spend.

        Stateful collectors replace their stored records for the window as
        part of a successful collection.
        """
        records = await self.collect_records(window)
        if self.stateful and self.storage is not None:
            await self.storage.replace_provider_range(
                self.provider_name,
                window.start.date(),
                window.end.date(),
                records,
                credential_id=self.credential_id,
            )
        summary = ProviderSummary.from_records(self.provider_name, records, SummarySource.LIVE)
        return summary.model_copy(update={"source": SummarySource.LIVE})


class CollectorFactory:
    """Factory class for creating collector instances."""

    _collectors: dict[str, type[CostCollector]] = {}

    @classmethod
    def register_collector(cls, name: str, collector_class: type[CostCollector]):
        """Register a collector class with the factory."""
        cls._collectors[name.lower()] = collector_class

    @classmethod
    def create_collector(cls, name: str, config: dict[str, Any], **kwargs) -> CostCollector:
        """
        Create a collector instance.

        Raises:
            ValueError: If no collector is registered under ``name``
        """
        name = name.lower()
        if name not in cls._collectors:
            available = ", ".join(cls._collectors.keys())
            raise ValueError(f"Unknown provider '{name}'. Available providers: {available}")
        return cls._collectors[name](config, **kwargs)

    @classmethod
    def is_stateful(cls, name: str) -> bool:
        collector_class = cls._collectors.get(name.lower())
        return bool(collector_class and collector_class.stateful)

    @classmethod
    def get_available_providers(cls) -> list[str]:
        return list(cls._collectors.keys())
