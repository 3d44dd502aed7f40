"""Stored-record reader used when a provider cannot be queried live."""

import logging

from ..providers.base import ProviderSummary, SummarySource
from ..storage.base import CostStorage
from ..utils.window import MonthWindow

logger = logging.getLogger(__name__)


class StoredCostReader:
    """Sums previously stored cost records for a provider over a window."""

    def __init__(self, storage: CostStorage):
        self.storage = storage

    async def read_stored(self, provider: str, window: MonthWindow) -> ProviderSummary:
        """
        Summarize stored records for ``provider`` in ``window``.

        Returns a zero summary with source ``none`` when nothing is stored.

        Raises:
            StorageError: If the storage backend fails
        """
        records = await self.storage.query_cost_records(provider, window.start.date(), window.end.date())
        summary = ProviderSummary.from_records(provider, records, SummarySource.STORED)
        logger.debug(f"{provider}: {len(records)} stored records sum to {summary.amount_usd_precise}")
        return summary
