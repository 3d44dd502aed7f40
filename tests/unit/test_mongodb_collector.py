"""Tests for the MongoDB Atlas cost explorer collector."""

import json
from datetime import date

import httpx
import pytest

from costboard.providers.base import (
    AuthenticationError,
    CollectorTimeoutError,
    MissingCredentialsError,
    ParseFailureError,
)
from costboard.providers.mongodb import (
    AtlasCostExplorerClient,
    MongoDBCostCollector,
    parse_usage_details,
)

CONFIG = {
    "public_key": "pub",
    "private_key": "priv",
    "org_id": "org-1",
    "poll": {"max_attempts": 3, "interval_seconds": 0},
}
USAGE_URL = "https://cloud.mongodb.com/api/atlas/v2/orgs/org-1/billing/costExplorer/usage"


def _usage(*amounts, **extra):
    return {"usageDetails": [{"usageAmount": amount, **extra} for amount in amounts]}


class AtlasStub:
    """Scripted cost explorer: a token, then ``pending`` 202s, then the report."""

    def __init__(self, report, pending=0, token_in_location=False):
        self.report = report
        self.pending = pending
        self.token_in_location = token_in_location
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            if self.token_in_location:
                return httpx.Response(202, headers={"Location": f"{USAGE_URL}/tok-9"})
            return httpx.Response(202, json={"token": "tok-1"})
        if self.pending:
            self.pending -= 1
            return httpx.Response(202)
        return httpx.Response(200, json=self.report)


@pytest.mark.unit
@pytest.mark.mongodb
class TestParseUsageDetails:
    def test_parses_details(self):
        rows = parse_usage_details(
            {
                "usageDetails": [
                    {"usageAmount": 1250, "usageDate": "2025-03-04", "clusterName": "Cluster0"},
                    {"usageAmount": 50.5, "service": "Backup", "currency": "USD_CENTS"},
                    {"usageAmount": 10},
                ]
            }
        )

        assert rows[0].scope == "Cluster0"
        assert rows[0].day == date(2025, 3, 4)
        assert rows[0].metadata == {"clusterName": "Cluster0"}
        assert rows[1].scope == "Backup"
        assert rows[1].raw_unit == "USD_CENTS"
        assert rows[2].scope == "MongoDB Atlas"
        assert rows[2].raw_unit == "USD"

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            {},
            {"usageDetails": "nope"},
            {"usageDetails": [{"usageAmount": "12"}]},
            {"usageDetails": [{"usageAmount": True}]},
            {"usageDetails": [{}]},
            {"usageDetails": [{"usageAmount": 1, "usageDate": "March"}]},
            {"usageDetails": ["x"]},
        ],
    )
    def test_schema_mismatch_fails(self, payload):
        with pytest.raises(ParseFailureError):
            parse_usage_details(payload)


@pytest.mark.unit
@pytest.mark.mongodb
class TestAtlasCostExplorerClient:
    def test_missing_keys(self):
        with pytest.raises(MissingCredentialsError):
            AtlasCostExplorerClient({"org_id": "org-1"})

    async def test_create_usage_query(self, march_window):
        stub = AtlasStub(_usage())
        client = AtlasCostExplorerClient(CONFIG, transport=httpx.MockTransport(stub))

        token = await client.create_usage_query(march_window)

        assert token == "tok-1"
        request = stub.requests[0]
        assert str(request.url) == USAGE_URL
        assert json.loads(request.content) == {
            "startDate": "2025-03-01",
            "endDate": "2025-04-01",
            "organizations": ["org-1"],
            "groupBy": "organizations",
        }
        assert request.headers["Accept"] == "application/vnd.atlas.2023-01-01+json"

    async def test_token_from_location_header(self, march_window):
        client = AtlasCostExplorerClient(
            CONFIG, transport=httpx.MockTransport(AtlasStub(_usage(), token_in_location=True))
        )

        assert await client.create_usage_query(march_window) == "tok-9"

    async def test_missing_token(self, march_window):
        client = AtlasCostExplorerClient(
            CONFIG, transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))
        )

        with pytest.raises(ParseFailureError):
            await client.create_usage_query(march_window)

    async def test_get_usage_pending_then_ready(self):
        stub = AtlasStub(_usage(100, 250), pending=1)
        client = AtlasCostExplorerClient(CONFIG, transport=httpx.MockTransport(stub))

        pending = await client.get_usage("tok-1")
        ready = await client.get_usage("tok-1")

        assert pending.ready is False
        assert ready.ready is True
        assert ready.usage_amount == 350
        assert str(stub.requests[0].url) == f"{USAGE_URL}/tok-1"

    async def test_wait_for_usage_polls(self):
        stub = AtlasStub(_usage(5), pending=2)
        client = AtlasCostExplorerClient(CONFIG, transport=httpx.MockTransport(stub))

        usage = await client.wait_for_usage("tok-1")

        assert usage.ready
        assert len(stub.requests) == 3

    async def test_wait_for_usage_times_out(self):
        stub = AtlasStub(_usage(5), pending=10)
        client = AtlasCostExplorerClient(CONFIG, transport=httpx.MockTransport(stub))

        with pytest.raises(CollectorTimeoutError):
            await client.wait_for_usage("tok-1")
        assert len(stub.requests) == 3

    async def test_rejected_keys(self):
        client = AtlasCostExplorerClient(
            CONFIG, transport=httpx.MockTransport(lambda request: httpx.Response(401))
        )

        with pytest.raises(AuthenticationError):
            await client.get_usage("tok-1")


@pytest.mark.unit
@pytest.mark.mongodb
class TestMongoDBCostCollector:
    async def test_collect_normalizes_and_persists(self, normalizer, storage, march_window):
        stub = AtlasStub(
            {
                "usageDetails": [
                    {"usageAmount": 12.5, "usageDate": "2025-03-02", "clusterName": "Cluster0"},
                    {"usageAmount": 7.5, "usageDate": "2025-03-03", "clusterName": "Cluster1"},
                ]
            },
            pending=1,
        )
        collector = MongoDBCostCollector(
            CONFIG,
            transport=httpx.MockTransport(stub),
            normalizer=normalizer,
            storage=storage,
            credential_id="atlas-1",
        )

        summary = await collector.collect(march_window)
        await collector.collect(march_window)

        assert summary.amount_usd == 20.0
        assert [c.scope for c in summary.components] == ["Cluster0", "Cluster1"]
        assert len(await storage.query_cost_records("mongodb")) == 2

    async def test_missing_credentials(self, march_window):
        collector = MongoDBCostCollector({"org_id": "org-1"})

        with pytest.raises(MissingCredentialsError):
            await collector.collect(march_window)
