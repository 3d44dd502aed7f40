"""
OpenAI organization usage reader.

Usage is returned as reported by the OpenAI usage API, for a single UTC day or
a date range. It is informational only and does not contribute to the unified
total. Responses are cached briefly per query.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

import httpx
from pydantic import BaseModel, Field, model_validator

from ..utils.cache import CacheBackend, MemoryCache
from ..utils.http_client import build_timeout, parse_json, raise_for_provider_status, send
from ..utils.window import MonthWindow
from .base import MissingCredentialsError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_CACHE_TTL = 60


class UsageQuery(BaseModel):
    """A usage lookup: one ``date``, or a ``start_date``/``end_date`` range."""

    day: date | None = None
    start_date: date | None = None
    end_date: date | None = None
    limit: int | None = Field(None, ge=1)

    @model_validator(mode="after")
    def _check_range(self):
        if self.day is not None and (self.start_date is not None or self.end_date is not None):
            raise ValueError("Use either date or start_date/end_date, not both")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self

    @classmethod
    def for_window(cls, window: MonthWindow, limit: int | None = None) -> "UsageQuery":
        """The window's days, with an inclusive ``end_date``."""
        return cls(
            start_date=window.start.date(),
            end_date=(window.end - timedelta(days=1)).date(),
            limit=limit,
        )

    def resolved(self) -> "UsageQuery":
        """Default to today's UTC date when no day or range is given."""
        if self.day is None and self.start_date is None and self.end_date is None:
            return self.model_copy(update={"day": datetime.now(timezone.utc).date()})
        return self

    def params(self) -> dict[str, str]:
        values = {
            "date": self.day,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "limit": self.limit,
        }
        return {k: v.isoformat() if isinstance(v, date) else str(v) for k, v in values.items() if v is not None}

    @property
    def cache_key(self) -> str:
        params = self.params()
        parts = [params.get(k, "") for k in ("date", "start_date", "end_date", "limit")]
        return "openai-usage:" + ":".join(parts)


class OpenAIUsageReader:
    """Reads ``/usage`` with a short per-query cache."""

    def __init__(
        self,
        config: dict[str, Any],
        cache: CacheBackend | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.api_key = config.get("api_key")
        self.base_url = (config.get("base_url") or DEFAULT_BASE_URL).rstrip("/")
        self.cache_ttl = int(config.get("cache_ttl_seconds", DEFAULT_CACHE_TTL))
        self.cache = cache or MemoryCache(max_size=100, default_ttl=self.cache_ttl)
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def usage(self, query: UsageQuery | None = None) -> Any:
        """
        Usage for ``query``, served from cache when fresh.

        Raises:
            MissingCredentialsError: If no API key is configured
            CloudProviderError: On upstream failures
        """
        if not self.configured:
            raise MissingCredentialsError("OPENAI_API_KEY not configured", provider="openai")

        query = (query or UsageQuery()).resolved()
        cached = await self.cache.get(query.cache_key)
        if cached is not None:
            return cached

        headers = {"Authorization": f"Bearer {self.api_key}"}
        async with httpx.AsyncClient(timeout=build_timeout(self.config), transport=self.transport) as client:
            response = await send(
                client, "GET", f"{self.base_url}/usage", "openai", params=query.params(), headers=headers
            )
        raise_for_provider_status(response, "openai")
        payload = parse_json(response, "openai")

        await self.cache.set(query.cache_key, payload, ttl=self.cache_ttl)
        logger.info(f"OpenAI: fetched usage for {query.params()}")
        return payload
