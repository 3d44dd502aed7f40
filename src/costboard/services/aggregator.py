"""
Unified month-to-date total across providers.

Every provider is collected concurrently over the same window. A provider
that cannot be collected live falls back to its stored records, and a
provider whose stored records cannot be read contributes zero. Failures are
reported per provider in ``diagnostics``; they never fail the whole total.

``total`` is the sum of the per-provider values after each was rounded to
cents, so it always equals what a reader gets by adding up the displayed
provider amounts. ``precise`` carries the unrounded sums.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from ..providers.base import (
    ALL_PROVIDERS,
    MissingCredentialsError,
    ProviderSummary,
    SummarySource,
    describe_error,
)
from ..storage.base import CostStorage, StorageError
from ..utils.data_normalizer import precise_sum, round_half_up
from ..utils.window import MonthWindow, month_window
from .fallback import StoredCostReader

logger = logging.getLogger(__name__)


class UnifiedTotal(BaseModel):
    """Per-provider month-to-date spend and their total, in USD."""

    window: MonthWindow
    components: dict[str, ProviderSummary]
    total: float
    precise_total: float
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_summaries(cls, window: MonthWindow, summaries: dict[str, ProviderSummary]) -> "UnifiedTotal":
        return cls(
            window=window,
            components=summaries,
            total=round_half_up(precise_sum(s.amount_usd for s in summaries.values())),
            precise_total=precise_sum(s.amount_usd_precise for s in summaries.values()),
        )

    @property
    def diagnostics(self) -> dict[str, str]:
        return {name: s.error for name, s in self.components.items() if s.error}

    def to_response(self) -> dict[str, Any]:
        response: dict[str, Any] = {"currency": "USD"}
        for name, summary in self.components.items():
            response[name] = summary.amount_usd
        response.update(
            {
                "total": self.total,
                "start": self.window.start_date,
                "end": self.window.end_date,
                "precise": {
                    **{name: s.amount_usd_precise for name, s in self.components.items()},
                    "total": self.precise_total,
                },
                "window": self.window.to_dict(),
                "sources": {name: s.source.value for name, s in self.components.items()},
                "diagnostics": self.diagnostics,
            }
        )
        return response


class CostAggregator:
    """Computes the unified total with per-provider fallback."""

    def __init__(self, collectors, storage: CostStorage, providers: list[str] | None = None):
        """
        Args:
            collectors: Registry resolving the collectors of a provider
            storage: Storage read by the fallback path
            providers: Providers included in the total
        """
        self.collectors = collectors
        self.storage = storage
        self.providers = list(providers or ALL_PROVIDERS)
        self.reader = StoredCostReader(storage)

    async def _stored_or_zero(self, provider: str, window: MonthWindow, error: str | None) -> ProviderSummary:
        try:
            summary = await self.reader.read_stored(provider, window)
        except StorageError as e:
            logger.error(f"{provider}: stored records unreadable, contributing zero: {e}")
            message = f"storage: {e}" if error is None else f"{error}; storage: {e}"
            return ProviderSummary.zero(provider, source=SummarySource.NONE, error=message)
        return summary.model_copy(update={"error": error})

    async def provider_summary(self, provider: str, window: MonthWindow) -> ProviderSummary:
        """
        Live summary for one provider, or its fallback.

        Never raises for collector or storage failures.
        """
        try:
            collectors = await self.collectors.collectors_for(provider)
        except StorageError as e:
            logger.error(f"{provider}: could not load credentials: {e}")
            return ProviderSummary.zero(provider, error=f"storage: {e}")

        if not collectors:
            error = describe_error(MissingCredentialsError(f"no usable {provider} collector configured"))
            return await self._stored_or_zero(provider, window, error)

        results = await asyncio.gather(*(c.collect(window) for c in collectors), return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            if isinstance(failure, asyncio.CancelledError):
                raise failure

        if failures:
            error = "; ".join(describe_error(f) for f in failures)
            logger.warning(f"⚠️ {provider}: live collection failed, using stored records ({error})")
            return await self._stored_or_zero(provider, window, error)

        return ProviderSummary.merge(provider, list(results))

    async def compute_unified_total(self, window: MonthWindow | None = None) -> UnifiedTotal:
        """Collect every provider concurrently and combine the results."""
        window = window or month_window()
        summaries = await asyncio.gather(*(self.provider_summary(p, window) for p in self.providers))
        unified = UnifiedTotal.from_summaries(window, dict(zip(self.providers, summaries)))
        logger.info(
            f"💰 Unified MTD total for {window.month_slug}: ${unified.total:.2f}"
            + (f" (degraded: {', '.join(unified.diagnostics)})" if unified.diagnostics else "")
        )
        return unified
