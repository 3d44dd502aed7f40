"""
Integration tests for the cost dashboard API.

The app is built around prebuilt services (memory storage and fake
collectors) and driven through httpx's ASGI transport.
"""

import httpx
import pytest

from costboard.api.data_service import build_state, create_app
from costboard.providers.base import CollectorTimeoutError, RawCostRow
from costboard.providers.openai_usage import OpenAIUsageReader
from costboard.providers.registry import StaticCollectorRegistry
from costboard.storage.memory import MemoryStorage

pytestmark = pytest.mark.integration


def _rows(*pairs):
    return [RawCostRow(scope=scope, raw_amount=amount) for scope, amount in pairs]


@pytest.fixture
def app_state(make_config, make_collector):
    storage = MemoryStorage()
    collectors = StaticCollectorRegistry(
        {
            "azure": [make_collector("azure", rows=_rows(("rg-web", 100.0), ("rg-db", 42.5)), stateful=True)],
            "aws": [make_collector("aws", rows=_rows(("Amazon EC2", 40.0)))],
            "gcp": [make_collector("gcp", error=CollectorTimeoutError("BigQuery slow"))],
            "mongodb": [make_collector("mongodb", rows=_rows(("Cluster0", 15.5)), stateful=True)],
        }
    )
    return build_state(make_config(), storage=storage, collectors=collectors)


@pytest.fixture
async def client(app_state):
    app = create_app(state=app_state)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


AZURE_BODY = {
    "name": "prod",
    "provider": "azure",
    "clientId": "client",
    "clientSecret": "super-secret",
    "tenantId": "tenant",
    "subscriptionId": "sub",
}


class TestHealth:
    async def test_live_and_ready(self, client):
        live = await client.get("/api/health/live")
        ready = await client.get("/api/health/ready")

        assert live.status_code == 200
        assert live.json()["status"] == "alive"
        assert ready.status_code == 200
        assert ready.json()["checks"] == {"storage": "ok"}

    async def test_root(self, client):
        response = await client.get("/")

        assert response.json()["endpoints"]["total"] == "/api/total/mtd-usd"


class TestUnifiedTotal:
    async def test_total_with_degraded_provider(self, client):
        response = await client.get("/api/total/mtd-usd")

        assert response.status_code == 200
        body = response.json()
        assert body["currency"] == "USD"
        assert body["azure"] == 142.5
        assert body["aws"] == 40.0
        assert body["gcp"] == 0.0
        assert body["mongodb"] == 15.5
        assert body["total"] == 198.0
        assert body["diagnostics"] == {"gcp": "timeout: BigQuery slow"}
        assert body["window"]["timezone"] == "UTC"

    async def test_total_is_cached_until_refresh(self, client, app_state):
        aws = app_state.collectors.collectors["aws"][0]

        await client.get("/api/total/mtd-usd?month=2025-03")
        await client.get("/api/total/mtd-usd?month=2025-03")
        await client.get("/api/total/mtd-usd?month=2025-03&refresh=true")

        assert aws.fetch_calls == 2

    async def test_invalid_month(self, client):
        response = await client.get("/api/total/mtd-usd?month=2025-13")

        assert response.status_code == 400


class TestRefresh:
    async def test_refresh_twice_does_not_duplicate(self, client):
        first = await client.post("/api/refresh-cost-data")
        second = await client.post("/api/refresh-cost-data")
        records = await client.get("/api/cost-data")

        assert first.status_code == 200
        assert second.json()["success"] is True
        assert {r["provider"] for r in second.json()["results"]} == {"azure", "mongodb"}
        assert len(records.json()) == 3
        assert {r["provider"] for r in records.json()} == {"azure", "mongodb"}

    async def test_cost_summary_after_refresh(self, client):
        await client.post("/api/refresh-cost-data")

        summary = (await client.get("/api/cost-summary")).json()

        assert summary["totalMonthlyCost"] == 158.0
        assert summary["activeResources"] == 3

    async def test_cost_data_filters(self, client):
        await client.post("/api/refresh-cost-data")

        response = await client.get("/api/cost-data", params={"provider": "mongodb"})

        assert [r["amountUsd"] for r in response.json()] == [15.5]


class TestProviderEndpoints:
    async def test_unconfigured_provider_is_400(self, make_config):
        state = build_state(make_config(), storage=MemoryStorage(), collectors=StaticCollectorRegistry({}))
        transport = httpx.ASGITransport(app=create_app(state=state))
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/aws/mtd-services")

        assert response.status_code == 400
        assert "missing_credentials" in response.json()["detail"]

    async def test_azure_summary_uses_aggregator(self, client):
        response = await client.get("/api/azure/mtd-summary")

        body = response.json()
        assert body["total"] == 142.5
        assert body["source"] == "live"
        assert body["components"][0] == {"scope": "rg-web", "amount": 100.0}


class TestServicePrincipals:
    async def test_create_masks_secret(self, client):
        response = await client.post("/api/service-principals", json=AZURE_BODY)

        assert response.status_code == 201
        body = response.json()
        assert body["clientSecret"] == "********"
        assert body["status"] == "active"
        assert "super-secret" not in response.text

        listed = await client.get("/api/service-principals")
        assert "super-secret" not in listed.text
        assert [c["id"] for c in listed.json()] == [body["id"]]

    async def test_create_rejects_unknown_provider(self, client):
        response = await client.post("/api/service-principals", json={**AZURE_BODY, "provider": "oracle"})

        assert response.status_code == 422

    async def test_update_lifecycle(self, client):
        created = (await client.post("/api/service-principals", json=AZURE_BODY)).json()
        url = f"/api/service-principals/{created['id']}"

        disabled = await client.put(url, json={"status": "disabled", "clientSecret": "********"})
        invalid = await client.put(url, json={"status": "error"})
        enabled = await client.put(url, json={"status": "active"})

        assert disabled.status_code == 200
        assert disabled.json()["status"] == "disabled"
        assert invalid.status_code == 409
        assert enabled.json()["status"] == "active"

    async def test_missing_principal(self, client):
        assert (await client.get("/api/service-principals/nope")).status_code == 404
        assert (await client.put("/api/service-principals/nope", json={"name": "x"})).status_code == 404
        assert (await client.delete("/api/service-principals/nope")).status_code == 404

    async def test_delete(self, client):
        created = (await client.post("/api/service-principals", json=AZURE_BODY)).json()

        response = await client.delete(f"/api/service-principals/{created['id']}")

        assert response.json() == {"success": True}
        assert (await client.get("/api/service-principals")).json() == []


class TestAgent:
    async def test_rules_suggestions(self, client):
        response = await client.post("/api/agent/suggest", json={"provider": "aws"})

        body = response.json()
        assert response.status_code == 200
        assert body["summary"]["mtdTotal"] == 40.0
        assert body["summary"]["topServices"] == [{"name": "Amazon EC2", "amount": 40.0}]
        assert body["metadata"]["engine"] == "rules"
        assert body["metadata"]["cached"] is False
        assert body["recommendations"]

    async def test_invalid_provider(self, client):
        response = await client.post("/api/agent/suggest", json={"provider": "oracle"})

        assert response.status_code == 400


class TestProviders:
    async def test_provider_statuses(self, client):
        await client.post("/api/service-principals", json=AZURE_BODY)

        statuses = {s["provider"]: s for s in (await client.get("/api/providers")).json()}

        assert statuses["azure"]["stateful"] is True
        assert statuses["azure"]["credentials"] == 1
        assert statuses["azure"]["activeCredentials"] == 1
        assert statuses["aws"]["stateful"] is False


class TestOpenAIUsage:
    async def test_not_configured_is_400(self, client):
        response = await client.get("/api/openai/usage")

        assert response.status_code == 400
        assert "OPENAI_API_KEY" in response.json()["detail"]

    async def test_month_filter(self, client, app_state):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json={"object": "list", "data": []})

        app_state.openai_usage = OpenAIUsageReader({"api_key": "sk-test"}, transport=httpx.MockTransport(handler))

        response = await client.get("/api/openai/usage", params={"month": "2025-02"})

        assert response.status_code == 200
        assert response.json() == {"object": "list", "data": []}
        assert seen == [{"start_date": "2025-02-01", "end_date": "2025-02-28"}]

    @pytest.mark.parametrize(
        "params",
        [{"date": "yesterday"}, {"month": "2025-02", "date": "2025-02-03"}, {"month": "2025-13"}],
    )
    async def test_invalid_filters(self, client, params):
        response = await client.get("/api/openai/usage", params=params)

        assert response.status_code == 400
