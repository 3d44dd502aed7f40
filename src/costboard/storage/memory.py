"""In-memory storage backend for development and tests."""

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Any

from ..providers.base import CostRecord
from .base import CostStorage, CostSummarySnapshot, ServicePrincipal, StorageError, in_range

logger = logging.getLogger(__name__)


class MemoryStorage(CostStorage):
    """Dictionary-backed storage; every read returns copies."""

    def __init__(self):
        self._credentials: dict[str, ServicePrincipal] = {}
        self._records: dict[str, CostRecord] = {}
        self._summaries: dict[str, CostSummarySnapshot] = {}
        self._lock = asyncio.Lock()

    async def list_credentials(self, provider: str | None = None) -> list[ServicePrincipal]:
        credentials = sorted(self._credentials.values(), key=lambda c: c.created_at)
        if provider:
            credentials = [c for c in credentials if c.provider == provider]
        return [c.model_copy(deep=True) for c in credentials]

    async def get_credential(self, credential_id: str) -> ServicePrincipal | None:
        credential = self._credentials.get(credential_id)
        return credential.model_copy(deep=True) if credential else None

    async def create_credential(self, credential: ServicePrincipal) -> ServicePrincipal:
        async with self._lock:
            if credential.id in self._credentials:
                raise StorageError(f"Credential {credential.id} already exists")
            self._credentials[credential.id] = credential.model_copy(deep=True)
        return credential.model_copy(deep=True)

    async def update_credential(
        self, credential_id: str, updates: dict[str, Any]
    ) -> ServicePrincipal | None:
        async with self._lock:
            existing = self._credentials.get(credential_id)
            if existing is None:
                return None
            merged = existing.model_dump()
            merged.update({k: v for k, v in updates.items() if k not in ("id", "created_at")})
            updated = ServicePrincipal.model_validate(merged)
            self._credentials[credential_id] = updated
        return updated.model_copy(deep=True)

    async def delete_credential(self, credential_id: str) -> bool:
        async with self._lock:
            if self._credentials.pop(credential_id, None) is None:
                return False
            self._records = {
                record_id: record
                for record_id, record in self._records.items()
                if record.credential_id != credential_id
            }
        return True

    async def query_cost_records(
        self,
        provider: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[CostRecord]:
        # Snapshot the dict reference; replace_provider_range swaps it whole
        records = self._records
        matched = [
            r
            for r in records.values()
            if (provider is None or r.provider == provider) and in_range(r, start, end)
        ]
        matched.sort(key=lambda r: (r.date, r.provider.value, r.scope or ""))
        return [r.model_copy(deep=True) for r in matched]

    async def put_cost_records(self, records: list[CostRecord]) -> int:
        async with self._lock:
            updated = dict(self._records)
            for record in records:
                updated[record.id] = record.model_copy(deep=True)
            self._records = updated
        return len(records)

    async def replace_provider_range(
        self,
        provider: str,
        start: date,
        end: date,
        records: list[CostRecord],
        credential_id: str | None = None,
    ) -> int:
        async with self._lock:
            replacement = {
                record_id: record
                for record_id, record in self._records.items()
                if not (
                    record.provider == provider
                    and in_range(record, start, end)
                    and (credential_id is None or record.credential_id == credential_id)
                )
            }
            removed = len(self._records) - len(replacement)
            for record in records:
                replacement[record.id] = record.model_copy(deep=True)
            self._records = replacement
        logger.debug(
            f"Replaced {removed} {provider} records in [{start}, {end}) with {len(records)} new"
        )
        return len(records)

    async def get_latest_summary(self) -> CostSummarySnapshot | None:
        if not self._summaries:
            return None
        latest = max(reversed(list(self._summaries.values())), key=lambda s: s.last_updated)
        return latest.model_copy(deep=True)

    async def save_summary(self, summary: CostSummarySnapshot) -> CostSummarySnapshot:
        stored = summary.model_copy(update={"last_updated": datetime.now(timezone.utc)}, deep=True)
        async with self._lock:
            self._summaries[stored.id] = stored
        return stored.model_copy(deep=True)
