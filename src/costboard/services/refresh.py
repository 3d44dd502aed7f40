"""
Refresh of stored cost data for stateful providers.

Each run re-ingests the window for every non-disabled credential of the
stateful providers, replacing that credential's stored records rather than appending
to them, so repeated runs never duplicate rows. The summary snapshot is then
recomputed from the stored records.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from ..providers.base import CostCollector, CostRecord, describe_error
from ..storage.base import CostStorage, CostSummarySnapshot
from ..utils.data_normalizer import precise_sum, round_half_up
from ..utils.window import MonthWindow, month_window
from .credentials import CredentialService

logger = logging.getLogger(__name__)

TOP_SERVICES = 10


class ProviderRefreshResult(BaseModel):
    provider: str
    credential_id: str | None = None
    success: bool
    records: int = 0
    amount_usd: float = 0.0
    error: str | None = None


class RefreshReport(BaseModel):
    started_at: datetime
    finished_at: datetime
    window: MonthWindow
    results: list[ProviderRefreshResult] = Field(default_factory=list)
    summary: CostSummarySnapshot | None = None

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def message(self) -> str:
        if not self.results:
            return "No stateful providers with usable credentials to refresh"
        failed = [r for r in self.results if not r.success]
        if not failed:
            return f"Refreshed {len(self.results)} credential(s) for {self.window.month_slug}"
        names = ", ".join(sorted({r.provider for r in failed}))
        return f"Refreshed {len(self.results) - len(failed)} of {len(self.results)} credential(s); failed: {names}"


def build_summary(records: list[CostRecord], today=None) -> CostSummarySnapshot:
    """Derive the dashboard summary views from a record set."""
    today = today or datetime.now(timezone.utc).date()

    by_day: dict[str, list[float]] = defaultdict(list)
    by_service: dict[tuple[str, str], list[float]] = defaultdict(list)
    for record in records:
        by_day[record.date.isoformat()].append(record.amount_usd)
        by_service[(record.provider.value, record.scope or "Unknown")].append(record.amount_usd)

    trend = [{"date": day, "cost": round_half_up(precise_sum(values))} for day, values in sorted(by_day.items())]
    services = [
        {"provider": provider, "service": scope, "cost": round_half_up(precise_sum(values))}
        for (provider, scope), values in by_service.items()
    ]
    services.sort(key=lambda s: s["cost"], reverse=True)

    return CostSummarySnapshot(
        total_monthly_cost=round_half_up(precise_sum(r.amount_usd for r in records)),
        today_spend=round_half_up(precise_sum(r.amount_usd for r in records if r.date == today)),
        active_resources=len(by_service),
        trend_data=trend,
        service_breakdown=services[:TOP_SERVICES],
    )


class RefreshOrchestrator:
    """Re-ingests stateful providers and recomputes the summary snapshot."""

    def __init__(self, collectors, storage: CostStorage, credential_service: CredentialService):
        self.collectors = collectors
        self.storage = storage
        self.credential_service = credential_service
        self._lock = asyncio.Lock()

    async def _refresh_collector(self, collector: CostCollector, window: MonthWindow) -> ProviderRefreshResult:
        provider = collector.provider_name
        try:
            records = await collector.collect_records(window)
            await self.storage.replace_provider_range(
                provider, window.start.date(), window.end.date(), records, credential_id=collector.credential_id
            )
        except Exception as e:
            error = describe_error(e)
            logger.error(f"❌ {provider}: refresh failed: {error}")
            if collector.credential_id:
                await self.credential_service.mark_error(collector.credential_id, error)
            return ProviderRefreshResult(
                provider=provider, credential_id=collector.credential_id, success=False, error=error
            )

        if collector.credential_id:
            await self.credential_service.mark_synced(collector.credential_id)
        amount = round_half_up(precise_sum(r.amount_usd for r in records))
        logger.info(f"✅ {provider}: stored {len(records)} records (${amount:.2f}) for {window.month_slug}")
        return ProviderRefreshResult(
            provider=provider,
            credential_id=collector.credential_id,
            success=True,
            records=len(records),
            amount_usd=amount,
        )

    async def refresh(self, window: MonthWindow | None = None) -> RefreshReport:
        """
        Re-ingest every stateful provider for ``window``.

        Concurrent calls are serialized. A failure for one credential does not
        stop the others.
        """
        window = window or month_window()
        async with self._lock:
            started_at = datetime.now(timezone.utc)
            collectors: list[CostCollector] = []
            for provider in self.collectors.providers():
                if self.collectors.is_stateful(provider):
                    collectors.extend(await self.collectors.collectors_for(provider))

            results = list(await asyncio.gather(*(self._refresh_collector(c, window) for c in collectors)))

            records = await self.storage.query_cost_records(None, window.start.date(), window.end.date())
            summary = await self.storage.save_summary(build_summary(records))

            report = RefreshReport(
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                window=window,
                results=results,
                summary=summary,
            )
        logger.info(f"🔄 Refresh finished: {report.message}")
        return report
