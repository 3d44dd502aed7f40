"""
Azure Cost Management collector.

Queries the subscription-scoped Cost Management ``query`` API for daily
actual cost over the window, grouped by resource group and service. Azure is
stateful: successful collections replace the stored Azure records.
"""

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Any

import httpx

from ..utils.auth import AZURE_MANAGEMENT_SCOPE, AzureAuthenticator
from ..utils.http_client import build_timeout, parse_json, raise_for_provider_status, send
from ..utils.window import MonthWindow
from .base import (
    AuthenticationError,
    CollectorFactory,
    CostCollector,
    MissingCredentialsError,
    ParseFailureError,
    RawCostRow,
    credentials_or_raise,
)

logger = logging.getLogger(__name__)

COST_COLUMNS = ("Cost", "PreTaxCost", "CostUSD")
MAX_PAGES = 50


def parse_usage_date(value: Any) -> date:
    """Azure reports UsageDate as a yyyymmdd number or an ISO string."""
    text = str(value).strip()
    if text.isdigit() and len(text) == 8:
        return datetime.strptime(text, "%Y%m%d").date()
    return datetime.fromisoformat(text.replace("Z", "+00:00")).date()


def parse_query_result(payload: dict[str, Any], grouping: list[str]) -> tuple[list[RawCostRow], str | None]:
    """
    Parse a Cost Management query response.

    Returns:
        Raw rows and the next page link, if any

    Raises:
        ParseFailureError: When the expected columns are absent
    """
    properties = payload.get("properties")
    if not isinstance(properties, dict):
        raise ParseFailureError("Azure query response has no 'properties' object", provider="azure")

    columns = properties.get("columns")
    rows = properties.get("rows")
    if not isinstance(columns, list) or not isinstance(rows, list):
        raise ParseFailureError("Azure query response lacks columns/rows", provider="azure")

    names = [c.get("name") for c in columns if isinstance(c, dict)]
    cost_column = next((name for name in COST_COLUMNS if name in names), None)
    if cost_column is None:
        raise ParseFailureError(f"Azure query response has no cost column in {names}", provider="azure")
    if "UsageDate" not in names:
        raise ParseFailureError("Azure query response has no UsageDate column", provider="azure")

    cost_index = names.index(cost_column)
    date_index = names.index("UsageDate")
    currency_index = names.index("Currency") if "Currency" in names else None
    group_indexes = [(g, names.index(g)) for g in grouping if g in names]

    parsed = []
    for row in rows:
        if not isinstance(row, list) or len(row) != len(names):
            raise ParseFailureError(f"Azure query row does not match columns: {row!r}", provider="azure")
        try:
            day = parse_usage_date(row[date_index])
        except ValueError as e:
            raise ParseFailureError(f"Azure UsageDate not parseable: {row[date_index]!r}", provider="azure") from e

        groups = {g: row[i] for g, i in group_indexes}
        scope = " / ".join(str(v) for v in groups.values() if v) or None
        parsed.append(
            RawCostRow(
                scope=scope,
                raw_amount=row[cost_index],
                raw_unit=str(row[currency_index]) if currency_index is not None else "USD",
                day=day,
                metadata={k.lower(): v for k, v in groups.items()} or None,
            )
        )

    return parsed, properties.get("nextLink")


class AzureCostCollector(CostCollector):
    """Azure Cost Management collector using a service principal."""

    stateful = True

    def __init__(self, config: dict[str, Any], transport: httpx.AsyncBaseTransport | None = None, **kwargs):
        super().__init__(config, **kwargs)
        self.authenticator = AzureAuthenticator(config)
        self.credential = None
        self.transport = transport

        self.subscription_id = config.get("subscription_id")
        self.management_url = config.get("management_url", "https://management.azure.com").rstrip("/")
        self.api_version = config.get("api_version", "2023-03-01")
        self.grouping = list(config.get("grouping") or ["ResourceGroupName", "ServiceName"])

    def _get_provider_name(self) -> str:
        return "azure"

    async def authenticate(self) -> bool:
        if not self.subscription_id:
            raise MissingCredentialsError("Azure subscription_id not configured", provider="azure")
        result = await self.authenticator.authenticate()
        self.credential = credentials_or_raise(result)
        self._authenticated = True
        return True

    async def _access_token(self) -> str:
        if self.credential is None:
            raise AuthenticationError("Azure credential not initialized", provider="azure")
        token = await asyncio.to_thread(self.credential.get_token, AZURE_MANAGEMENT_SCOPE)
        return token.token

    def _build_query(self, window: MonthWindow) -> dict[str, Any]:
        last_instant = window.end - timedelta(seconds=1)
        return {
            "type": "ActualCost",
            "timeframe": "Custom",
            "timePeriod": {
                "from": window.start.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "to": last_instant.strftime("%Y-%m-%dT%H:%M:%SZ"),
            },
            "dataset": {
                "granularity": "Daily",
                "aggregation": {"totalCost": {"name": "Cost", "function": "Sum"}},
                "grouping": [{"type": "Dimension", "name": name} for name in self.grouping],
            },
        }

    async def fetch_rows(self, window: MonthWindow) -> list[RawCostRow]:
        token = await self._access_token()
        url = (
            f"{self.management_url}/subscriptions/{self.subscription_id}"
            f"/providers/Microsoft.CostManagement/query?api-version={self.api_version}"
        )
        body = self._build_query(window)
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

        rows: list[RawCostRow] = []
        async with httpx.AsyncClient(timeout=build_timeout(self.config), transport=self.transport) as client:
            for _ in range(MAX_PAGES):
                response = await send(client, "POST", url, "azure", json=body, headers=headers)
                raise_for_provider_status(response, "azure")
                page_rows, next_link = parse_query_result(parse_json(response, "azure"), self.grouping)
                rows.extend(page_rows)
                if not next_link:
                    break
                url = next_link
            else:
                logger.error(f"Azure: result still paging after {MAX_PAGES} pages")
                raise ParseFailureError(
                    f"Azure query returned more than {MAX_PAGES} pages; refusing a partial month", provider="azure"
                )

        logger.info(f"Azure: fetched {len(rows)} cost rows for {window.month_slug}")
        return rows


CollectorFactory.register_collector("azure", AzureCostCollector)
