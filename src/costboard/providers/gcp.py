"""
Google Cloud Platform billing collector.

Reads month-to-date spend from the BigQuery billing export. GCP is stateless:
values are computed on request and never persisted.
"""

import asyncio
import concurrent.futures
import logging
from datetime import date
from typing import Any

try:
    from google.api_core.exceptions import (
        BadRequest,
        Forbidden,
        GoogleAPICallError,
        NotFound,
        PermissionDenied,
        ResourceExhausted,
        TooManyRequests,
        Unauthorized,
    )
    from google.cloud import bigquery

    GCP_AVAILABLE = True
except ImportError:
    GCP_AVAILABLE = False

from ..utils.auth import GCPAuthenticator
from ..utils.data_normalizer import precise_sum
from ..utils.window import MonthWindow
from .base import (
    APIError,
    AuthenticationError,
    CollectorFactory,
    CollectorTimeoutError,
    ConfigurationError,
    CostCollector,
    MissingCredentialsError,
    ParseFailureError,
    RateLimitError,
    RawCostRow,
    credentials_or_raise,
)

logger = logging.getLogger(__name__)


class GCPCostCollector(CostCollector):
    """GCP BigQuery billing export collector."""

    stateful = False

    def __init__(self, config: dict[str, Any], **kwargs):
        super().__init__(config, **kwargs)
        self.authenticator = GCPAuthenticator(config)
        self.credentials = None
        self.bigquery_client = None

        self.project_id = config.get("project_id")
        self.bq_dataset = config.get("bigquery_billing_dataset")
        self.billing_table = config.get("billing_table")
        self.query_timeout = float(config.get("query_timeout_seconds", 30))

    def _get_provider_name(self) -> str:
        return "gcp"

    @property
    def table_ref(self) -> str:
        """Fully qualified billing export table."""
        if not self.billing_table:
            raise MissingCredentialsError("GCP billing_table not configured", provider="gcp")
        if self.billing_table.count(".") == 2:
            return self.billing_table
        if not (self.project_id and self.bq_dataset):
            raise MissingCredentialsError(
                "GCP project_id and bigquery_billing_dataset are required for a bare billing_table",
                provider="gcp",
            )
        return f"{self.project_id}.{self.bq_dataset}.{self.billing_table}"

    async def authenticate(self) -> bool:
        """Authenticate with GCP and create the BigQuery client."""
        # Validate the table reference before touching credentials
        _ = self.table_ref
        result = await self.authenticator.authenticate()
        self.credentials = credentials_or_raise(result)
        self._create_clients()
        self._authenticated = True
        return True

    def _create_clients(self):
        """Create GCP clients with proper configuration."""
        if not self.credentials:
            raise ConfigurationError("No authenticated GCP credentials available", provider="gcp")
        self.bigquery_client = bigquery.Client(credentials=self.credentials, project=self.project_id)

    def _build_query(self, group_column: str | None) -> str:
        select = ["DATE(usage_start_time) AS usage_date", "currency", "SUM(cost) AS total_cost"]
        group = ["usage_date", "currency"]
        if group_column:
            select.insert(1, f"{group_column} AS scope")
            group.append("scope")
        return f"""
            SELECT {', '.join(select)}
            FROM `{self.table_ref}`
            WHERE usage_start_time >= @start AND usage_start_time < @end
            GROUP BY {', '.join(group)}
            ORDER BY usage_date
        """

    def _run_query(self, query: str, window: MonthWindow) -> list[Any]:
        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("start", "TIMESTAMP", window.start),
                bigquery.ScalarQueryParameter("end", "TIMESTAMP", window.end),
            ]
        )
        query_job = self.bigquery_client.query(query, job_config=job_config)
        return list(query_job.result(timeout=self.query_timeout))

    async def _query(self, window: MonthWindow, group_column: str | None) -> list[Any]:
        if self.bigquery_client is None:
            raise ConfigurationError("BigQuery client not initialized", provider="gcp")
        query = self._build_query(group_column)
        try:
            return await asyncio.to_thread(self._run_query, query, window)
        except concurrent.futures.TimeoutError as e:
            raise CollectorTimeoutError(
                f"BigQuery query did not finish within {self.query_timeout}s", provider="gcp"
            ) from e
        except GoogleAPICallError as e:
            self._handle_gcp_error(e)

    def _rows_from_results(self, results: list[Any]) -> list[RawCostRow]:
        rows = []
        for result in results:
            try:
                amount = result["total_cost"]
                usage_date = result["usage_date"]
            except (KeyError, TypeError) as e:
                raise ParseFailureError(f"BigQuery row lacks usage_date/total_cost: {result!r}", provider="gcp") from e
            if not isinstance(usage_date, date):
                usage_date = date.fromisoformat(str(usage_date))
            rows.append(
                RawCostRow(
                    scope=result.get("scope") or "Unknown",
                    raw_amount=amount if amount is not None else 0,
                    raw_unit=result.get("currency") or "USD",
                    day=usage_date,
                )
            )
        return rows

    async def fetch_rows(self, window: MonthWindow) -> list[RawCostRow]:
        results = await self._query(window, "service.description")
        rows = self._rows_from_results(results)
        logger.info(f"🟡 GCP: fetched {len(rows)} billing rows for {window.month_slug}")
        return rows

    async def mtd_summary(self, window: MonthWindow) -> dict[str, Any]:
        """
        Month-to-date total with the average daily spend so far.

        Returns:
            ``{currency, start, end, total, avgDaily}``
        """
        await self.ensure_authenticated()
        records = self.to_records(self._rows_from_results(await self._query(window, None)), window)
        total = precise_sum(r.amount_usd for r in records)
        return {
            "currency": "USD",
            "start": window.start_date,
            "end": window.end_date,
            "total": total,
            "avgDaily": total / window.days,
        }

    async def services_breakdown(self, window: MonthWindow) -> dict[str, Any]:
        """
        Per-service month-to-date spend.

        Returns:
            ``{currency, start, end, total, services: [{service, amount}]}``
            with services sorted descending by amount
        """
        await self.ensure_authenticated()
        records = self.to_records(await self.fetch_rows(window), window)
        totals: dict[str, list[float]] = {}
        for record in records:
            totals.setdefault(record.scope or "Unknown", []).append(record.amount_usd)
        services = [{"service": name, "amount": precise_sum(values)} for name, values in totals.items()]
        services.sort(key=lambda s: s["amount"], reverse=True)
        return {
            "currency": "USD",
            "start": window.start_date,
            "end": window.end_date,
            "total": precise_sum(r.amount_usd for r in records),
            "services": services,
        }

    def _handle_gcp_error(self, error: "GoogleAPICallError"):
        """Handle GCP API errors appropriately."""
        if isinstance(error, (ResourceExhausted, TooManyRequests)):
            raise RateLimitError(f"GCP API quota exceeded: {error}", provider="gcp") from error
        if isinstance(error, (PermissionDenied, Forbidden, Unauthorized)):
            raise AuthenticationError(f"GCP permission denied: {error}", provider="gcp") from error
        if isinstance(error, NotFound):
            raise ConfigurationError(f"GCP billing table not found: {error}", provider="gcp") from error
        if isinstance(error, BadRequest):
            raise ParseFailureError(f"BigQuery rejected the billing query: {error}", provider="gcp") from error
        raise APIError(f"GCP API error: {error}", status_code=getattr(error, "code", None), provider="gcp") from error


if GCP_AVAILABLE:
    CollectorFactory.register_collector("gcp", GCPCostCollector)
else:
    logger.warning("GCP SDK not available, GCP collector not registered")
