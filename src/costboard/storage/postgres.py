"""
PostgreSQL storage backend using an asyncpg connection pool.

Provider range replacement runs as DELETE + INSERT inside one transaction so
concurrent readers see either the old or the new record set.
"""

import json
import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

import asyncpg

from ..providers.base import CostRecord
from .base import CostStorage, CostSummarySnapshot, ServicePrincipal, StorageError

logger = logging.getLogger(__name__)

SCHEMA_FILE = Path(__file__).parent / "schema.sql"

CREDENTIAL_COLUMNS = (
    "id",
    "name",
    "provider",
    "client_id",
    "client_secret",
    "tenant_id",
    "subscription_id",
    "public_key",
    "private_key",
    "org_id",
    "project_id",
    "status",
    "last_sync",
    "error_message",
    "created_at",
)

RECORD_COLUMNS = (
    "id",
    "provider",
    "credential_id",
    "date",
    "amount_usd",
    "scope",
    "currency",
    "metadata",
    "created_at",
)


def _record_from_row(row) -> CostRecord:
    data = dict(row)
    if isinstance(data.get("metadata"), str):
        data["metadata"] = json.loads(data["metadata"])
    return CostRecord.model_validate(data)


def _record_values(record: CostRecord) -> tuple:
    return (
        record.id,
        record.provider.value,
        record.credential_id,
        record.date,
        record.amount_usd,
        record.scope,
        record.currency,
        json.dumps(record.metadata) if record.metadata is not None else None,
        record.created_at,
    )


class PostgresStorage(CostStorage):
    """Storage backed by PostgreSQL."""

    def __init__(self, database_url: str, min_size: int = 2, max_size: int = 10):
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self.pool = None

    async def initialize(self) -> None:
        logger.info("Connecting to database...")
        try:
            self.pool = await asyncpg.create_pool(
                self.database_url, min_size=self.min_size, max_size=self.max_size
            )
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA_FILE.read_text())
        except (OSError, asyncpg.PostgresError) as e:
            raise StorageError(f"Failed to initialize database: {e}") from e

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()

    async def ping(self) -> bool:
        rows = await self._fetch("SELECT 1 AS ok")
        return bool(rows)

    def _require_pool(self):
        if not self.pool:
            raise StorageError("Database pool not initialized")
        return self.pool

    async def _fetch(self, query: str, *params) -> list:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                return await conn.fetch(query, *params)
        except asyncpg.PostgresError as e:
            logger.error(f"Database query failed: {e}")
            raise StorageError(f"Database query failed: {e}") from e

    async def list_credentials(self, provider: str | None = None) -> list[ServicePrincipal]:
        query = f"SELECT {', '.join(CREDENTIAL_COLUMNS)} FROM service_principals"
        params: list[Any] = []
        if provider:
            query += " WHERE provider = $1"
            params.append(provider)
        query += " ORDER BY created_at"
        rows = await self._fetch(query, *params)
        return [ServicePrincipal.model_validate(dict(row)) for row in rows]

    async def get_credential(self, credential_id: str) -> ServicePrincipal | None:
        rows = await self._fetch(
            f"SELECT {', '.join(CREDENTIAL_COLUMNS)} FROM service_principals WHERE id = $1",
            credential_id,
        )
        return ServicePrincipal.model_validate(dict(rows[0])) if rows else None

    async def create_credential(self, credential: ServicePrincipal) -> ServicePrincipal:
        pool = self._require_pool()
        data = credential.model_dump(mode="python")
        values = [
            v.value if hasattr(v, "value") else v for v in (data[c] for c in CREDENTIAL_COLUMNS)
        ]
        placeholders = ", ".join(f"${i}" for i in range(1, len(CREDENTIAL_COLUMNS) + 1))
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    f"INSERT INTO service_principals ({', '.join(CREDENTIAL_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    *values,
                )
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to create credential: {e}") from e
        return credential

    async def update_credential(
        self, credential_id: str, updates: dict[str, Any]
    ) -> ServicePrincipal | None:
        existing = await self.get_credential(credential_id)
        if existing is None:
            return None
        merged = existing.model_dump()
        merged.update({k: v for k, v in updates.items() if k in CREDENTIAL_COLUMNS and k not in ("id", "created_at")})
        updated = ServicePrincipal.model_validate(merged)

        columns = [c for c in CREDENTIAL_COLUMNS if c not in ("id", "created_at")]
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=2))
        values = [getattr(updated, c) for c in columns]
        values = [v.value if hasattr(v, "value") else v for v in values]

        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    f"UPDATE service_principals SET {assignments} WHERE id = $1",
                    credential_id,
                    *values,
                )
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to update credential {credential_id}: {e}") from e
        return updated

    async def delete_credential(self, credential_id: str) -> bool:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    result = await conn.execute(
                        "DELETE FROM service_principals WHERE id = $1", credential_id
                    )
                    await conn.execute("DELETE FROM cost_records WHERE credential_id = $1", credential_id)
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to delete credential {credential_id}: {e}") from e
        return result.endswith(" 1")

    async def query_cost_records(
        self,
        provider: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[CostRecord]:
        query = f"SELECT {', '.join(RECORD_COLUMNS)} FROM cost_records WHERE 1=1"
        params: list[Any] = []

        if provider:
            params.append(provider)
            query += f" AND provider = ${len(params)}"
        if start:
            params.append(start)
            query += f" AND date >= ${len(params)}"
        if end:
            params.append(end)
            query += f" AND date < ${len(params)}"

        query += " ORDER BY date, provider, scope"
        rows = await self._fetch(query, *params)
        return [_record_from_row(row) for row in rows]

    async def put_cost_records(self, records: list[CostRecord]) -> int:
        if not records:
            return 0
        pool = self._require_pool()
        placeholders = ", ".join(f"${i}" for i in range(1, len(RECORD_COLUMNS) + 1))
        try:
            async with pool.acquire() as conn:
                await conn.executemany(
                    f"INSERT INTO cost_records ({', '.join(RECORD_COLUMNS)}) VALUES ({placeholders})",
                    [_record_values(r) for r in records],
                )
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to store cost records: {e}") from e
        return len(records)

    async def replace_provider_range(
        self,
        provider: str,
        start: date,
        end: date,
        records: list[CostRecord],
        credential_id: str | None = None,
    ) -> int:
        pool = self._require_pool()
        delete_query = "DELETE FROM cost_records WHERE provider = $1 AND date >= $2 AND date < $3"
        delete_params: list[Any] = [provider, start, end]
        if credential_id is not None:
            delete_query += " AND credential_id = $4"
            delete_params.append(credential_id)

        placeholders = ", ".join(f"${i}" for i in range(1, len(RECORD_COLUMNS) + 1))
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    result = await conn.execute(delete_query, *delete_params)
                    if records:
                        await conn.executemany(
                            f"INSERT INTO cost_records ({', '.join(RECORD_COLUMNS)}) "
                            f"VALUES ({placeholders})",
                            [_record_values(r) for r in records],
                        )
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to replace {provider} records: {e}")
            raise StorageError(f"Failed to replace {provider} records: {e}") from e

        logger.info(f"Replaced {provider} records in [{start}, {end}): {result}, inserted {len(records)}")
        return len(records)

    async def get_latest_summary(self) -> CostSummarySnapshot | None:
        rows = await self._fetch(
            "SELECT id, date, total_monthly_cost, today_spend, active_resources, trend_data, "
            "service_breakdown, last_updated FROM cost_summaries ORDER BY last_updated DESC LIMIT 1"
        )
        if not rows:
            return None
        data = dict(rows[0])
        for key in ("trend_data", "service_breakdown"):
            if isinstance(data.get(key), str):
                data[key] = json.loads(data[key])
            elif data.get(key) is None:
                data[key] = []
        return CostSummarySnapshot.model_validate(data)

    async def save_summary(self, summary: CostSummarySnapshot) -> CostSummarySnapshot:
        stored = summary.model_copy(update={"last_updated": datetime.now(timezone.utc)})
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    "INSERT INTO cost_summaries (id, date, total_monthly_cost, today_spend, "
                    "active_resources, trend_data, service_breakdown, last_updated) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
                    stored.id,
                    stored.date,
                    stored.total_monthly_cost,
                    stored.today_spend,
                    stored.active_resources,
                    json.dumps(stored.trend_data),
                    json.dumps(stored.service_breakdown),
                    stored.last_updated,
                )
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to save cost summary: {e}") from e
        return stored
