"""HTTP client utilities shared by the REST-based collectors."""

import logging
from typing import Any

import httpx

from ..providers.base import (
    APIError,
    AuthenticationError,
    CollectorTimeoutError,
    ParseFailureError,
    RateLimitError,
)

logger = logging.getLogger(__name__)


def build_timeout(config: dict[str, Any]) -> httpx.Timeout:
    """Per-request timeout from provider configuration."""
    return httpx.Timeout(
        float(config.get("timeout_seconds", 30)),
        connect=float(config.get("connect_timeout_seconds", 10)),
    )


def raise_for_provider_status(response: httpx.Response, provider: str) -> None:
    """Map an unsuccessful upstream response onto the collector error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    detail = response.text[:300]
    if status in (401, 403):
        raise AuthenticationError(f"{provider} rejected credentials ({status}): {detail}", provider=provider)
    if status == 429:
        retry_after = response.headers.get("Retry-After")
        raise RateLimitError(
            f"{provider} rate limit exceeded: {detail}",
            retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            provider=provider,
        )
    raise APIError(f"{provider} API error ({status}): {detail}", status_code=status, provider=provider)


def parse_json(response: httpx.Response, provider: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise ParseFailureError(f"{provider} returned non-JSON body: {e}", provider=provider) from e


async def send(
    client: httpx.AsyncClient, method: str, url: str, provider: str, **kwargs
) -> httpx.Response:
    """Issue a request, translating transport failures into collector errors."""
    try:
        return await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        logger.warning(f"{provider}: request to {url} timed out")
        raise CollectorTimeoutError(f"{provider} request timed out: {e}", provider=provider) from e
    except httpx.HTTPError as e:
        logger.warning(f"{provider}: request to {url} failed: {e}")
        raise APIError(f"{provider} unreachable: {e}", provider=provider) from e
