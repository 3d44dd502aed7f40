"""
AWS Cost Explorer collector.

Provides AWS month-to-date spend using the Cost Explorer API. AWS is
stateless: it is read live on every request and never persisted.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any

try:
    from botocore.config import Config
    from botocore.exceptions import BotoCoreError, ClientError

    AWS_AVAILABLE = True
except ImportError:
    AWS_AVAILABLE = False

from ..utils.auth import AWSAuthenticator
from ..utils.data_normalizer import precise_sum
from ..utils.window import MonthWindow
from .base import (
    APIError,
    AuthenticationError,
    CollectorFactory,
    CollectorTimeoutError,
    ConfigurationError,
    CostCollector,
    ParseFailureError,
    RateLimitError,
    RawCostRow,
    credentials_or_raise,
)

logger = logging.getLogger(__name__)

GROUP_DIMENSIONS = ("SERVICE", "REGION", "LINKED_ACCOUNT")
MAX_PAGES = 20


class AWSCostCollector(CostCollector):
    """AWS Cost Explorer collector implementation."""

    stateful = False

    def __init__(self, config: dict[str, Any], **kwargs):
        super().__init__(config, **kwargs)
        self.authenticator = AWSAuthenticator(config)
        self.session = None
        self.cost_explorer_client = None
        self.metric = config.get("metric", "UnblendedCost")
        self.timeout_seconds = float(config.get("timeout_seconds", 30))

    def _get_provider_name(self) -> str:
        return "aws"

    async def authenticate(self) -> bool:
        """Authenticate with AWS access keys from configuration."""
        result = await self.authenticator.authenticate()
        self.session = credentials_or_raise(result)
        self._create_cost_explorer_client()
        self._authenticated = True
        return True

    def _create_cost_explorer_client(self):
        """Create AWS Cost Explorer client with proper configuration."""
        if not self.session:
            raise ConfigurationError("No authenticated AWS session available", provider="aws")

        # Cost Explorer is only available in us-east-1
        config = Config(
            region_name="us-east-1",
            retries={"max_attempts": 3, "mode": "adaptive"},
            connect_timeout=10,
            read_timeout=self.timeout_seconds,
        )
        self.cost_explorer_client = self.session.client("ce", config=config)

    async def _get_cost_and_usage(self, params: dict[str, Any]) -> dict[str, Any]:
        if not self.cost_explorer_client:
            raise ConfigurationError("AWS Cost Explorer client not initialized", provider="aws")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.cost_explorer_client.get_cost_and_usage, **params),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise CollectorTimeoutError(
                f"AWS Cost Explorer did not answer within {self.timeout_seconds}s", provider="aws"
            ) from e
        except ClientError as e:
            self._handle_client_error(e)
        except BotoCoreError as e:
            raise APIError(f"AWS Cost Explorer unreachable: {e}", provider="aws") from e

    async def _query(self, window: MonthWindow, dimension: str) -> list[dict[str, Any]]:
        """Run a paginated DAILY query grouped by ``dimension``."""
        params: dict[str, Any] = {
            "TimePeriod": {"Start": window.start_date, "End": window.end_date},
            "Granularity": "DAILY",
            "Metrics": [self.metric],
            "GroupBy": [{"Type": "DIMENSION", "Key": dimension}],
        }
        results: list[dict[str, Any]] = []
        for _ in range(MAX_PAGES):
            response = await self._get_cost_and_usage(params)
            if not isinstance(response, dict) or not isinstance(response.get("ResultsByTime"), list):
                raise ParseFailureError("AWS response has no ResultsByTime list", provider="aws")
            results.extend(response["ResultsByTime"])
            token = response.get("NextPageToken")
            if not token:
                break
            params["NextPageToken"] = token
        return results

    def _extract_amount(self, metrics: Any) -> tuple[str, str]:
        """Pull amount and unit for the configured metric; fails closed."""
        metric_data = metrics.get(self.metric) if isinstance(metrics, dict) else None
        if not isinstance(metric_data, dict) or "Amount" not in metric_data:
            raise ParseFailureError(f"AWS metrics lack {self.metric}.Amount: {metrics!r}", provider="aws")
        return metric_data["Amount"], metric_data.get("Unit", "USD")

    def _rows_from_results(self, results: list[dict[str, Any]]) -> list[RawCostRow]:
        rows = []
        for result in results:
            try:
                day = datetime.strptime(result["TimePeriod"]["Start"], "%Y-%m-%d").date()
            except (KeyError, TypeError, ValueError) as e:
                raise ParseFailureError(f"AWS result has no valid TimePeriod: {result!r}", provider="aws") from e

            groups = result.get("Groups") or []
            if not groups and result.get("Total"):
                amount, unit = self._extract_amount(result["Total"])
                rows.append(RawCostRow(scope="Unknown", raw_amount=amount, raw_unit=unit, day=day))
            for group in groups:
                keys = group.get("Keys") or ["Unknown"]
                amount, unit = self._extract_amount(group.get("Metrics"))
                rows.append(RawCostRow(scope=keys[0] or "Unknown", raw_amount=amount, raw_unit=unit, day=day))
        return rows

    async def fetch_rows(self, window: MonthWindow, dimension: str = "SERVICE") -> list[RawCostRow]:
        if dimension not in GROUP_DIMENSIONS:
            raise ValueError(f"Unsupported AWS group dimension: {dimension}")
        results = await self._query(window, dimension)
        rows = self._rows_from_results(results)
        logger.info(f"🔵 AWS: fetched {len(rows)} rows grouped by {dimension} for {window.month_slug}")
        return rows

    async def _breakdown(self, window: MonthWindow, dimension: str, key: str) -> dict[str, Any]:
        await self.ensure_authenticated()
        results = await self._query(window, dimension)
        records = self.to_records(self._rows_from_results(results), window)

        totals: dict[str, list[float]] = {}
        for record in records:
            totals.setdefault(record.scope or "Unknown", []).append(record.amount_usd)
        items = sorted(
            ({key: name, "amount": precise_sum(values)} for name, values in totals.items()),
            key=lambda item: item["amount"],
            reverse=True,
        )
        return {
            "currency": "USD",
            "start": window.start_date,
            "end": window.end_date,
            "days": max(1, len(results)),
            "total": precise_sum(r.amount_usd for r in records),
            f"{key}s": items,
        }

    async def services_breakdown(self, window: MonthWindow) -> dict[str, Any]:
        """
        Month-to-date spend per service.

        Returns:
            ``{currency, start, end, days, total, services: [{service, amount}]}``
            with services sorted descending by amount
        """
        return await self._breakdown(window, "SERVICE", "service")

    async def regions_breakdown(self, window: MonthWindow) -> dict[str, Any]:
        """Month-to-date spend per region, same shape with a ``regions`` list."""
        return await self._breakdown(window, "REGION", "region")

    async def mtd_summary(self, window: MonthWindow) -> dict[str, Any]:
        """Month-to-date total and the average over the days reported so far."""
        breakdown = await self.services_breakdown(window)
        return {
            "currency": "USD",
            "start": breakdown["start"],
            "end": breakdown["end"],
            "days": breakdown["days"],
            "total": breakdown["total"],
            "avgDaily": breakdown["total"] / breakdown["days"],
        }

    def _handle_client_error(self, error: ClientError):
        """Handle AWS client errors appropriately."""
        error_code = error.response["Error"]["Code"]
        error_message = error.response["Error"]["Message"]

        if error_code in ("Throttling", "ThrottlingException", "LimitExceededException"):
            raise RateLimitError(
                f"AWS Cost Explorer API rate limit exceeded: {error_message}", provider="aws"
            ) from error
        if error_code in (
            "UnauthorizedOperation",
            "AccessDeniedException",
            "UnrecognizedClientException",
            "InvalidClientTokenId",
            "ExpiredTokenException",
        ):
            raise AuthenticationError(f"AWS unauthorized: {error_message}", provider="aws") from error
        raise APIError(
            f"AWS Cost Explorer API error ({error_code}): {error_message}",
            status_code=error.response.get("ResponseMetadata", {}).get("HTTPStatusCode"),
            provider="aws",
        ) from error


# Register the AWS collector with the factory
if AWS_AVAILABLE:
    CollectorFactory.register_collector("aws", AWSCostCollector)
else:
    logger.warning("AWS SDK not available, AWS collector not registered")
