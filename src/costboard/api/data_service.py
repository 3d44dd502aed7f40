#!/usr/bin/env python3
"""
Cost Data Service - FastAPI Backend
Serves the unified month-to-date total, per-provider breakdowns, stored cost
data and service principal management for the dashboard.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .. import __version__
from ..config.settings import CloudConfig, get_config
from ..jobs.scheduled_refresh import ScheduledRefresh
from ..providers import mongodb
from ..providers.openai_usage import OpenAIUsageReader, UsageQuery
from ..providers.base import (
    CloudProviderError,
    CollectorTimeoutError,
    ConfigurationError,
    ProviderSummary,
    describe_error,
)
from ..providers.registry import CollectorRegistry
from ..services.aggregator import CostAggregator
from ..services.credentials import CredentialNotFoundError, CredentialService, InvalidTransitionError
from ..services.recommendations import AgentResult, RecommendationService
from ..services.refresh import RefreshOrchestrator, RefreshReport, build_summary
from ..storage.base import CostStorage, StorageError
from ..storage.factory import build_storage
from ..utils.cache import CacheBackend, RedisCache, build_cache
from ..utils.data_normalizer import UnitNormalizer
from ..utils.window import resolve_window
from .models import (
    AgentRequest,
    ConnectionTestResponse,
    CostRecordResponse,
    CostSummaryResponse,
    HealthCheck,
    ProviderStatus,
    RefreshResponse,
    ServicePrincipalCreate,
    ServicePrincipalResponse,
    ServicePrincipalUpdate,
)

logger = logging.getLogger(__name__)

TOTAL_CACHE_PREFIX = "total:"


@dataclass
class AppState:
    """Services shared by the request handlers."""

    config: CloudConfig
    storage: CostStorage
    cache: CacheBackend
    collectors: Any
    aggregator: CostAggregator
    credentials: CredentialService
    orchestrator: RefreshOrchestrator
    recommendations: RecommendationService
    openai_usage: OpenAIUsageReader | None = None
    scheduler: ScheduledRefresh | None = None

    async def invalidate_totals(self, _report: RefreshReport | None = None) -> None:
        await self.cache.clear(TOTAL_CACHE_PREFIX)


def build_state(
    config: CloudConfig,
    storage: CostStorage | None = None,
    collectors=None,
    cache: CacheBackend | None = None,
) -> AppState:
    """Wire storage, collectors and services from configuration."""
    storage = storage or build_storage(config.storage)
    cache = cache or build_cache(config.cache)
    normalizer = UnitNormalizer.from_config(config.normalization)
    collectors = collectors or CollectorRegistry(config, storage, normalizer)

    aggregator = CostAggregator(collectors, storage)
    credentials = CredentialService(storage, config=config)
    state = AppState(
        config=config,
        storage=storage,
        cache=cache,
        collectors=collectors,
        aggregator=aggregator,
        credentials=credentials,
        orchestrator=RefreshOrchestrator(collectors, storage, credentials),
        recommendations=RecommendationService(aggregator, cache, config.agent),
        openai_usage=OpenAIUsageReader({**config.http, **config.openai_usage}),
    )
    state.scheduler = ScheduledRefresh(
        state.orchestrator,
        interval_minutes=config.refresh.get("interval_minutes", 60),
        on_complete=state.invalidate_totals,
    )
    return state


def get_state(request: Request) -> AppState:
    return request.app.state.costboard


def provider_http_error(error: CloudProviderError) -> HTTPException:
    """Map a collector failure to the HTTP status returned by provider endpoints."""
    if isinstance(error, ConfigurationError):
        status_code = 400
    elif isinstance(error, CollectorTimeoutError):
        status_code = 504
    else:
        status_code = 502
    provider = error.provider or "provider"
    return HTTPException(status_code=status_code, detail=f"{provider}: {describe_error(error)}")


async def provider_call(awaitable):
    try:
        return await awaitable
    except CloudProviderError as e:
        logger.warning(f"Provider request failed: {describe_error(e)}")
        raise provider_http_error(e) from e


def month_or_400(month: str | None):
    try:
        return resolve_window(month)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


def summary_response(summary: ProviderSummary, window) -> dict[str, Any]:
    return {
        "currency": "USD",
        "start": window.start_date,
        "end": window.end_date,
        "total": summary.amount_usd,
        "precise": summary.amount_usd_precise,
        "source": summary.source.value,
        "components": [{"scope": c.scope, "amount": c.amount_usd} for c in summary.components],
        "error": summary.error,
    }


def agent_response(result: AgentResult) -> dict[str, Any]:
    return {
        "summary": {
            "provider": result.summary.provider,
            "currency": result.summary.currency,
            "mtdTotal": result.summary.mtd_total,
            "topServices": [s.model_dump() for s in result.summary.top_services],
            "start": result.summary.start,
            "end": result.summary.end,
        },
        "recommendations": [r.model_dump() for r in result.recommendations],
        "metadata": {
            "generatedAt": result.generated_at.isoformat(),
            "engine": result.engine,
            "cached": result.cached,
        },
    }


router = APIRouter()


# Unified total
@router.get("/api/total/mtd-usd")
async def total_mtd_usd(
    request: Request,
    month: str | None = Query(None, description="Month as YYYY-MM (default: current UTC month)"),
    refresh: bool = Query(False, description="Bypass the cached total"),
):
    """Unified month-to-date total in USD across all providers."""
    state = get_state(request)
    window = month_or_400(month)
    cache_key = f"{TOTAL_CACHE_PREFIX}{window.month_slug}"

    if not refresh:
        cached = await state.cache.get(cache_key)
        if cached is not None:
            return cached

    unified = await state.aggregator.compute_unified_total(window)
    response = unified.to_response()
    await state.cache.set(cache_key, response)
    return response


@router.post("/api/refresh-cost-data", response_model=RefreshResponse)
async def refresh_cost_data(request: Request):
    """Re-ingest stateful providers and recompute the summary."""
    state = get_state(request)
    try:
        report = await state.orchestrator.refresh()
    except StorageError as e:
        logger.error(f"Refresh failed: {e}")
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {e}") from e
    await state.invalidate_totals(report)
    return RefreshResponse(
        success=report.success,
        message=report.message,
        started_at=report.started_at,
        finished_at=report.finished_at,
        results=[r.model_dump() for r in report.results],
    )


# AWS
@router.get("/api/aws/mtd-summary")
async def aws_mtd_summary(request: Request, month: str | None = None):
    state = get_state(request)
    window = month_or_400(month)
    collector = await provider_call(state.collectors.primary("aws"))
    return await provider_call(collector.mtd_summary(window))


@router.get("/api/aws/mtd-services")
async def aws_mtd_services(request: Request, month: str | None = None):
    state = get_state(request)
    window = month_or_400(month)
    collector = await provider_call(state.collectors.primary("aws"))
    return await provider_call(collector.services_breakdown(window))


@router.get("/api/aws/mtd-regions")
async def aws_mtd_regions(request: Request, month: str | None = None):
    state = get_state(request)
    window = month_or_400(month)
    collector = await provider_call(state.collectors.primary("aws"))
    return await provider_call(collector.regions_breakdown(window))


# GCP
@router.get("/api/gcp/mtd-summary")
async def gcp_mtd_summary(request: Request, month: str | None = None):
    state = get_state(request)
    window = month_or_400(month)
    collector = await provider_call(state.collectors.primary("gcp"))
    return await provider_call(collector.mtd_summary(window))


@router.get("/api/gcp/mtd-services")
async def gcp_mtd_services(request: Request, month: str | None = None):
    state = get_state(request)
    window = month_or_400(month)
    collector = await provider_call(state.collectors.primary("gcp"))
    return await provider_call(collector.services_breakdown(window))


# Azure
@router.get("/api/azure/mtd-summary")
async def azure_mtd_summary(request: Request, month: str | None = None):
    """Azure month-to-date spend, live or from stored records."""
    state = get_state(request)
    window = month_or_400(month)
    summary = await state.aggregator.provider_summary("azure", window)
    return summary_response(summary, window)


# MongoDB Atlas
async def _atlas_client(state: AppState) -> mongodb.AtlasCostExplorerClient:
    collector = await provider_call(state.collectors.primary("mongodb"))
    await provider_call(collector.ensure_authenticated())
    return collector.client


@router.get("/api/mongodb/mtd-usage")
async def mongodb_mtd_usage(request: Request, month: str | None = None):
    """Run the full two-phase usage query and wait for the report."""
    state = get_state(request)
    window = month_or_400(month)
    collector = await provider_call(state.collectors.primary("mongodb"))
    summary = await provider_call(collector.collect(window))
    response = summary_response(summary, window)
    response["usageAmount"] = summary.amount_usd
    return response


@router.post("/api/mongodb/ce-init")
async def mongodb_ce_init(request: Request, month: str | None = None):
    """Submit a cost explorer usage query and return its token."""
    state = get_state(request)
    window = month_or_400(month)
    client = await _atlas_client(state)
    token = await provider_call(client.create_usage_query(window))
    return {"token": token, "start": window.start_date, "end": window.end_date}


@router.get("/api/mongodb/ce-usage/{token}")
async def mongodb_ce_usage(token: str, request: Request, response: Response):
    """Poll a usage query once; 202 while the report is still being prepared."""
    state = get_state(request)
    client = await _atlas_client(state)
    usage = await provider_call(client.get_usage(token))
    if not usage.ready:
        response.status_code = 202
        return {"token": token, "status": "IN_PROGRESS"}
    return {
        "token": token,
        "status": "COMPLETED",
        "usageAmount": usage.usage_amount,
        "usageDetails": [
            {"scope": r.scope, "amount": r.raw_amount, "unit": r.raw_unit, "date": r.day} for r in usage.rows
        ],
    }


# OpenAI usage
@router.get("/api/openai/usage")
async def openai_usage(
    request: Request,
    day: str | None = Query(None, alias="date", description="Single UTC day as YYYY-MM-DD"),
    start_date: str | None = Query(None, description="Range start, YYYY-MM-DD"),
    end_date: str | None = Query(None, description="Range end (inclusive), YYYY-MM-DD"),
    limit: int | None = Query(None),
    month: str | None = Query(None, description="Whole month as YYYY-MM"),
):
    """OpenAI organization usage for a day or range (default: today, UTC)."""
    state = get_state(request)
    if month is not None:
        if day or start_date or end_date:
            raise HTTPException(status_code=400, detail="Use month or date filters, not both")
        query = UsageQuery.for_window(month_or_400(month), limit=limit)
    else:
        try:
            query = UsageQuery(day=day, start_date=start_date, end_date=end_date, limit=limit)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=e.errors(include_url=False, include_context=False)) from e
    return await provider_call(state.openai_usage.usage(query))


# Stored data
@router.get("/api/cost-data", response_model=list[CostRecordResponse])
async def cost_data(
    request: Request,
    provider: str | None = None,
    start: date | None = Query(None, description="Inclusive start date"),
    end: date | None = Query(None, description="Exclusive end date"),
):
    state = get_state(request)
    try:
        records = await state.storage.query_cost_records(provider, start, end)
    except StorageError as e:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {e}") from e
    return [CostRecordResponse.from_record(r) for r in records]


@router.get("/api/cost-summary", response_model=CostSummaryResponse)
async def cost_summary(request: Request):
    """Latest summary snapshot, derived from the current month's records if none was saved."""
    state = get_state(request)
    try:
        snapshot = await state.storage.get_latest_summary()
        if snapshot is None:
            window = resolve_window()
            records = await state.storage.query_cost_records(None, window.start.date(), window.end.date())
            snapshot = build_summary(records)
    except StorageError as e:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {e}") from e
    return CostSummaryResponse.from_snapshot(snapshot)


# Service principals
@router.get("/api/service-principals", response_model=list[ServicePrincipalResponse])
async def list_service_principals(request: Request, provider: str | None = None):
    state = get_state(request)
    credentials = await state.credentials.list_credentials(provider)
    return [ServicePrincipalResponse.from_credential(c) for c in credentials]


@router.get("/api/service-principals/{credential_id}", response_model=ServicePrincipalResponse)
async def get_service_principal(credential_id: str, request: Request):
    state = get_state(request)
    try:
        credential = await state.credentials.get(credential_id)
    except CredentialNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return ServicePrincipalResponse.from_credential(credential)


@router.post("/api/service-principals", response_model=ServicePrincipalResponse, status_code=201)
async def create_service_principal(body: ServicePrincipalCreate, request: Request):
    state = get_state(request)
    try:
        credential = await state.credentials.create(body.model_dump())
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False)) from e
    return ServicePrincipalResponse.from_credential(credential)


@router.put("/api/service-principals/{credential_id}", response_model=ServicePrincipalResponse)
async def update_service_principal(credential_id: str, body: ServicePrincipalUpdate, request: Request):
    state = get_state(request)
    try:
        credential = await state.credentials.update(credential_id, body.model_dump(exclude_unset=True))
    except CredentialNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False)) from e
    await state.invalidate_totals()
    return ServicePrincipalResponse.from_credential(credential)


@router.delete("/api/service-principals/{credential_id}")
async def delete_service_principal(credential_id: str, request: Request):
    state = get_state(request)
    try:
        await state.credentials.delete(credential_id)
    except CredentialNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    await state.invalidate_totals()
    return {"success": True}


@router.post("/api/service-principals/{credential_id}/test", response_model=ConnectionTestResponse)
async def test_service_principal(credential_id: str, request: Request):
    state = get_state(request)
    try:
        result = await state.credentials.test_connection(credential_id)
    except CredentialNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return ConnectionTestResponse(**result)


# Recommendations
@router.post("/api/agent/suggest")
async def agent_suggest(body: AgentRequest, request: Request, force: str | None = None):
    state = get_state(request)
    try:
        result = await state.recommendations.suggest(body.provider, force_rules=force == "rules")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return agent_response(result)


# Providers
@router.get("/api/providers", response_model=list[ProviderStatus])
async def providers(request: Request):
    state = get_state(request)
    statuses = []
    for provider in state.collectors.providers():
        credentials = await state.credentials.list_credentials(provider)
        statuses.append(
            ProviderStatus(
                provider=provider,
                stateful=state.collectors.is_stateful(provider),
                enabled=state.config.is_provider_enabled(provider),
                credentials=len(credentials),
                active_credentials=sum(1 for c in credentials if c.status.value == "active"),
            )
        )
    return statuses


# Health endpoints
@router.get("/api/health/ready", response_model=HealthCheck)
async def health_ready(request: Request):
    """Readiness probe"""
    state = get_state(request)
    checks = {}
    try:
        await state.storage.ping()
        checks["storage"] = "ok"
        if isinstance(state.cache, RedisCache):
            await state.cache.ping()
            checks["cache"] = "ok"
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail="Service not ready") from e
    return HealthCheck(status="ready", timestamp=datetime.now(timezone.utc), version=__version__, checks=checks)


@router.get("/api/health/live", response_model=HealthCheck)
async def health_live():
    """Liveness probe"""
    return HealthCheck(status="alive", timestamp=datetime.now(timezone.utc), version=__version__)


@router.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Cost Dashboard Service",
        "version": __version__,
        "status": "running",
        "endpoints": {
            "health": "/api/health/ready",
            "total": "/api/total/mtd-usd",
            "costs": "/api/cost-data",
            "summary": "/api/cost-summary",
            "providers": "/api/providers",
            "openai_usage": "/api/openai/usage",
            "docs": "/docs",
        },
    }


def create_app(config: CloudConfig | None = None, state: AppState | None = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        config: Configuration used to build the services at startup
        state: Prebuilt services; when given, startup wiring is skipped
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan management"""
        if state is not None:
            yield
            return

        logger.info("Starting Cost Dashboard Service...")
        app_state = build_state(config or get_config())
        await app_state.storage.initialize()
        seeded = await app_state.credentials.seed_from_config()
        if seeded:
            logger.info(f"Seeded {len(seeded)} service principal(s) from configuration")
        app.state.costboard = app_state
        app_state.scheduler.start()
        logger.info("✅ Cost Dashboard Service started successfully")
        yield

        logger.info("Shutting down Cost Dashboard Service...")
        await app_state.scheduler.stop()
        await app_state.cache.close()
        await app_state.storage.close()

    app = FastAPI(
        title="Cost Dashboard Service",
        version=__version__,
        description="Multi-cloud month-to-date cost aggregation API",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if state is not None:
        app.state.costboard = state
    app.include_router(router)
    return app


app = create_app()


def run(host: str = "0.0.0.0", port: int = 9003, log_level: str = "info"):
    uvicorn.run(app, host=host, port=port, log_level=log_level)


if __name__ == "__main__":
    run()
