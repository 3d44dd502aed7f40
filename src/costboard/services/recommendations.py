"""
Cost optimization suggestions per provider.

Suggestions come from an OpenAI-compatible chat completion when an API key
is configured, and from a fixed rule set otherwise or whenever the model call
fails. Results are cached per provider and month.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Literal

import httpx
import openai
from pydantic import BaseModel, Field, ValidationError

from ..providers.base import ALL_PROVIDERS
from ..utils.cache import CacheBackend
from ..utils.window import MonthWindow, month_window
from .aggregator import CostAggregator

logger = logging.getLogger(__name__)

TOP_SERVICES = 7


class TopService(BaseModel):
    name: str
    amount: float


class AgentSummary(BaseModel):
    provider: str
    currency: str = "USD"
    mtd_total: float
    top_services: list[TopService] = Field(default_factory=list)
    start: str
    end: str


class Recommendation(BaseModel):
    title: str
    detail: str
    impact: Literal["low", "medium", "high"]
    action: str


class AgentResult(BaseModel):
    summary: AgentSummary
    recommendations: list[Recommendation]
    engine: Literal["llm", "rules"]
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    cached: bool = False


COMPUTE_RULES = [
    Recommendation(
        title="Rightsize underutilized instances/services",
        detail="Identify low CPU/memory utilization and scale down or switch to cheaper families/classes.",
        impact="high",
        action="Enable autoscaling; set budgets and alerts; downsize instances with <30% avg utilization.",
    ),
    Recommendation(
        title="Optimize storage tiers and lifecycle",
        detail="Move infrequent data to colder tiers and enforce deletion/archival on stale objects/logs.",
        impact="medium",
        action="Configure lifecycle rules to transition after 30/60/90 days; shorten log retention.",
    ),
    Recommendation(
        title="Reduce egress and inter-region traffic",
        detail="Place compute near data, use CDN/caching, and minimize cross-region chatter.",
        impact="medium",
        action="Enable CDN; cache hot content; collocate services with their data stores.",
    ),
    Recommendation(
        title="Turn off idle non-prod during off hours",
        detail="Schedule dev/test to stop nights/weekends; often saves 50%+ on those environments.",
        impact="medium",
        action="Use instance schedules or serverless for spiky workloads.",
    ),
]

MONGODB_RULES = [
    Recommendation(
        title="Rightsize Atlas cluster tier",
        detail="Match cluster size to observed CPU/IOPS; avoid overprovisioning.",
        impact="high",
        action="Review metrics for last 14 days; step down one tier and monitor latency.",
    ),
    Recommendation(
        title="Adjust backup frequency and retention",
        detail="Backups and snapshots can drive storage costs if retained too long.",
        impact="medium",
        action="Trim retention for non-prod; enable PITR only where required.",
    ),
    Recommendation(
        title="Optimize storage & compression",
        detail="Use appropriate storage class and schema compression to lower IO and size.",
        impact="medium",
        action="Enable WiredTiger compression; archive cold collections; review index bloat.",
    ),
    Recommendation(
        title="Control egress and inter-VPC traffic",
        detail="Reduce data transfer via caching and peering; place apps close to clusters.",
        impact="low",
        action="Peer VPCs; cache hot queries; avoid cross-region reads.",
    ),
]


class RecommendationStrategy(ABC):
    @abstractmethod
    async def recommend(self, summary: AgentSummary) -> AgentResult:
        pass


class RulesRecommender(RecommendationStrategy):
    """Fixed rule set per provider."""

    async def recommend(self, summary: AgentSummary) -> AgentResult:
        if summary.provider == "mongodb":
            recommendations = list(MONGODB_RULES)
        else:
            top_name = summary.top_services[0].name if summary.top_services else "Top Service"
            commitment = Recommendation(
                title=(
                    "Buy Savings Plans/RI for steady compute"
                    if summary.provider == "aws"
                    else "Commitment discounts for steady compute"
                ),
                detail=(
                    f"Compute dominates spend (e.g., {top_name}). Leverage 1-year commitments "
                    "to reduce on-demand rates by 25-60%."
                ),
                impact="high",
                action="Analyze last 30-60 days usage; purchase conservative 1-year no-upfront commitments.",
            )
            recommendations = [commitment, *COMPUTE_RULES]
        return AgentResult(summary=summary, recommendations=recommendations, engine="rules")


class LLMRecommender(RecommendationStrategy):
    """OpenAI-compatible chat completion returning JSON recommendations."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        max_retries: int = 1,
        transport: httpx.AsyncBaseTransport | None = None,
        fallback: RecommendationStrategy | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.transport = transport
        self.fallback = fallback or RulesRecommender()

    def _client(self) -> openai.AsyncOpenAI:
        http_client = None
        if self.transport is not None:
            http_client = httpx.AsyncClient(transport=self.transport, timeout=self.timeout)
        return openai.AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=self.max_retries,
            http_client=http_client,
        )

    def _messages(self, summary: AgentSummary) -> list[dict[str, str]]:
        system = (
            "You are a cloud cost optimization assistant. Return JSON only, as an object with a "
            '"recommendations" array of {title, detail, impact (low|medium|high), action}. '
            "Do not include secrets. Keep each recommendation to at most 3 sentences. "
            f"Tailor items to the provider: {summary.provider}. Currency is USD."
        )
        facts = {
            "provider": summary.provider,
            "currency": summary.currency,
            "mtdTotal": summary.mtd_total,
            "topServices": [s.model_dump() for s in summary.top_services],
            "window": {"start": summary.start, "end": summary.end},
        }
        return [{"role": "system", "content": system}, {"role": "user", "content": json.dumps(facts)}]

    async def recommend(self, summary: AgentSummary) -> AgentResult:
        try:
            async with self._client() as client:
                completion = await client.chat.completions.create(
                    model=self.model,
                    temperature=0,
                    response_format={"type": "json_object"},
                    messages=self._messages(summary),
                )
            content = completion.choices[0].message.content
            parsed = json.loads(content or "{}")
            recommendations = [Recommendation.model_validate(r) for r in parsed.get("recommendations", [])]
        except (openai.OpenAIError, AttributeError, IndexError, TypeError, ValueError, ValidationError) as e:
            logger.warning(f"LLM recommendations failed for {summary.provider}, using rules: {e}")
            return await self.fallback.recommend(summary)

        return AgentResult(summary=summary, recommendations=recommendations, engine="llm")


class RecommendationService:
    """Builds provider summaries and returns cached suggestions."""

    def __init__(
        self,
        aggregator: CostAggregator,
        cache: CacheBackend,
        config: dict[str, Any] | None = None,
        strategy: RecommendationStrategy | None = None,
    ):
        config = config or {}
        self.aggregator = aggregator
        self.cache = cache
        self.cache_ttl = int(config.get("cache_ttl_seconds", 180))
        self.force_rules = bool(config.get("force_rules", False))
        self.rules = RulesRecommender()
        if strategy is not None:
            self.strategy = strategy
        elif config.get("api_key"):
            self.strategy = LLMRecommender(
                api_key=config["api_key"],
                model=config.get("model") or "gpt-4o-mini",
                base_url=config.get("base_url") or "https://api.openai.com/v1",
                max_retries=int(config.get("max_retries", 1)),
            )
        else:
            self.strategy = self.rules

    async def build_summary(self, provider: str, window: MonthWindow) -> AgentSummary:
        summary = await self.aggregator.provider_summary(provider, window)
        return AgentSummary(
            provider=provider,
            mtd_total=summary.amount_usd,
            top_services=[TopService(name=c.scope, amount=c.amount_usd) for c in summary.components[:TOP_SERVICES]],
            start=window.start_date,
            end=window.end_date,
        )

    async def suggest(self, provider: str, force_rules: bool = False, window: MonthWindow | None = None) -> AgentResult:
        """
        Suggestions for ``provider`` in the current month.

        Raises:
            ValueError: If ``provider`` is not a known provider
        """
        provider = provider.lower()
        if provider not in ALL_PROVIDERS:
            raise ValueError(f"Invalid provider. Use one of: {', '.join(ALL_PROVIDERS)}")

        window = window or month_window()
        strategy = self.rules if (force_rules or self.force_rules) else self.strategy
        engine = "rules" if strategy is self.rules else "llm"
        cache_key = f"agent:{provider}:{window.month_slug}:{engine}"
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return AgentResult.model_validate(cached).model_copy(update={"cached": True})

        summary = await self.build_summary(provider, window)
        result = await strategy.recommend(summary)
        await self.cache.set(cache_key, result.model_dump(mode="json"), ttl=self.cache_ttl)
        return result
