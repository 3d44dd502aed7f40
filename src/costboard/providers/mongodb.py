"""
MongoDB Atlas cost explorer collector.

Atlas usage is a two-phase job: a usage query is submitted for the window and
returns a token, then the usage endpoint is polled with that token until the
report is ready. MongoDB is stateful: collected records replace the stored
MongoDB records for the window.
"""

import asyncio
import logging
from datetime import date
from typing import Any

import httpx
from pydantic import BaseModel, Field

from ..utils.auth import MongoDBAtlasAuthenticator
from ..utils.data_normalizer import coerce_amount, precise_sum
from ..utils.http_client import build_timeout, parse_json, raise_for_provider_status, send
from ..utils.window import MonthWindow
from .base import (
    CollectorFactory,
    CollectorTimeoutError,
    CostCollector,
    MissingCredentialsError,
    ParseFailureError,
    RawCostRow,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://cloud.mongodb.com/api/atlas/v2"
DEFAULT_ACCEPT = "application/vnd.atlas.2023-01-01+json"
PENDING_STATUSES = (102, 202)


class AtlasUsage(BaseModel):
    """Result of one poll of the usage endpoint."""

    token: str
    ready: bool
    rows: list[RawCostRow] = Field(default_factory=list)

    @property
    def usage_amount(self) -> float:
        return precise_sum(coerce_amount(r.raw_amount) or 0.0 for r in self.rows)


def parse_usage_details(payload: Any) -> list[RawCostRow]:
    """
    Parse a completed cost explorer usage report.

    Expects ``{"usageDetails": [{"usageAmount": <number>, ...}]}``.

    Raises:
        ParseFailureError: When the payload does not match that schema
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("usageDetails"), list):
        raise ParseFailureError("Atlas usage response has no usageDetails list", provider="mongodb")

    rows = []
    for detail in payload["usageDetails"]:
        if not isinstance(detail, dict):
            raise ParseFailureError(f"Atlas usage detail is not an object: {detail!r}", provider="mongodb")
        amount = detail.get("usageAmount")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise ParseFailureError(f"Atlas usageAmount is not numeric: {amount!r}", provider="mongodb")

        day = None
        if detail.get("usageDate"):
            try:
                day = date.fromisoformat(str(detail["usageDate"])[:10])
            except ValueError as e:
                raise ParseFailureError(
                    f"Atlas usageDate not parseable: {detail['usageDate']!r}", provider="mongodb"
                ) from e

        scope = detail.get("service") or detail.get("clusterName") or "MongoDB Atlas"
        metadata = {k: detail[k] for k in ("clusterName", "projectName", "organizationName") if detail.get(k)}
        rows.append(
            RawCostRow(
                scope=str(scope),
                raw_amount=amount,
                raw_unit=str(detail.get("currency") or "USD"),
                day=day,
                metadata=metadata or None,
            )
        )
    return rows


class AtlasCostExplorerClient:
    """Async client for the Atlas billing cost explorer."""

    def __init__(self, config: dict[str, Any], transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self.transport = transport
        self.org_id = config.get("org_id")
        self.base_url = (config.get("base_url") or DEFAULT_BASE_URL).rstrip("/")
        self.headers = {"Accept": config.get("accept") or DEFAULT_ACCEPT}

        poll = config.get("poll") or {}
        self.max_attempts = int(poll.get("max_attempts", 12))
        self.poll_interval = float(poll.get("interval_seconds", 1.0))
        authenticator = MongoDBAtlasAuthenticator(config)
        missing = authenticator.missing_fields()
        if missing:
            raise MissingCredentialsError(
                f"MongoDB Atlas credentials not configured: missing {', '.join(missing)}", provider="mongodb"
            )
        self.auth = authenticator.digest_auth()

    @property
    def usage_url(self) -> str:
        return f"{self.base_url}/orgs/{self.org_id}/billing/costExplorer/usage"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=self.auth,
            headers=self.headers,
            timeout=build_timeout(self.config),
            transport=self.transport,
        )

    async def create_usage_query(self, window: MonthWindow) -> str:
        """
        Submit a usage query for ``window``.

        Returns:
            The job token used to poll for the report
        """
        body = {
            "startDate": window.start_date,
            "endDate": window.end_date,
            "organizations": [self.org_id],
            "groupBy": "organizations",
        }
        async with self._client() as client:
            response = await send(client, "POST", self.usage_url, "mongodb", json=body)
        raise_for_provider_status(response, "mongodb")

        token = None
        if response.content:
            payload = parse_json(response, "mongodb")
            if isinstance(payload, dict) and isinstance(payload.get("token"), str):
                token = payload["token"]
        if not token:
            location = response.headers.get("Location", "")
            if "/usage/" in location:
                token = location.rstrip("/").rsplit("/usage/", 1)[1]
        if not token:
            raise ParseFailureError("Atlas usage query returned no token", provider="mongodb")

        logger.debug(f"Atlas usage query submitted for {window.month_slug}, token {token}")
        return token

    async def _get_usage(self, client: httpx.AsyncClient, token: str) -> AtlasUsage:
        response = await send(client, "GET", f"{self.usage_url}/{token}", "mongodb")
        if response.status_code in PENDING_STATUSES:
            return AtlasUsage(token=token, ready=False)
        raise_for_provider_status(response, "mongodb")
        return AtlasUsage(token=token, ready=True, rows=parse_usage_details(parse_json(response, "mongodb")))

    async def get_usage(self, token: str) -> AtlasUsage:
        """Fetch the report for ``token`` once; ``ready`` is False while Atlas is still computing it."""
        async with self._client() as client:
            return await self._get_usage(client, token)

    async def wait_for_usage(self, token: str) -> AtlasUsage:
        """
        Poll until the report is ready.

        Raises:
            CollectorTimeoutError: After ``max_attempts`` polls without a report
        """
        async with self._client() as client:
            for attempt in range(1, self.max_attempts + 1):
                usage = await self._get_usage(client, token)
                if usage.ready:
                    return usage
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.poll_interval)

        raise CollectorTimeoutError(
            f"Atlas usage report {token} not ready after {self.max_attempts} attempts",
            provider="mongodb",
        )


class MongoDBCostCollector(CostCollector):
    """MongoDB Atlas collector built on the cost explorer client."""

    stateful = True

    def __init__(self, config: dict[str, Any], transport: httpx.AsyncBaseTransport | None = None, **kwargs):
        super().__init__(config, **kwargs)
        self.authenticator = MongoDBAtlasAuthenticator(config)
        self.transport = transport
        self.client: AtlasCostExplorerClient | None = None

    def _get_provider_name(self) -> str:
        return "mongodb"

    async def authenticate(self) -> bool:
        # Keys are verified by the first cost explorer call; 401 maps to AuthenticationError there
        self.client = AtlasCostExplorerClient(self.config, transport=self.transport)
        self._authenticated = True
        return True

    async def test_connection(self) -> bool:
        result = await self.authenticator.authenticate()
        return result.success

    async def fetch_rows(self, window: MonthWindow) -> list[RawCostRow]:
        token = await self.client.create_usage_query(window)
        usage = await self.client.wait_for_usage(token)
        logger.info(f"🍃 MongoDB: usage report {token} has {len(usage.rows)} rows for {window.month_slug}")
        return usage.rows


CollectorFactory.register_collector("mongodb", MongoDBCostCollector)
