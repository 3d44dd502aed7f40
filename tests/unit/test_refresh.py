"""Tests for the stored-data refresh of stateful providers."""

from datetime import date

import pytest

from costboard.providers.base import CostRecord, ParseFailureError, RawCostRow
from costboard.providers.registry import StaticCollectorRegistry
from costboard.services.credentials import CredentialService
from costboard.services.refresh import RefreshOrchestrator, build_summary
from costboard.storage.base import CredentialStatus, ServicePrincipal


async def _credential(storage, provider="azure", name="prod"):
    return await storage.create_credential(ServicePrincipal(name=name, provider=provider))


def _orchestrator(storage, collectors):
    return RefreshOrchestrator(
        StaticCollectorRegistry(collectors), storage, CredentialService(storage)
    )


@pytest.mark.unit
class TestRefreshOrchestrator:
    async def test_refresh_twice_keeps_row_count(self, storage, make_collector, march_window):
        credential = await _credential(storage)
        rows = [
            RawCostRow(scope="VMs", raw_amount=100.0, day=date(2025, 3, 1)),
            RawCostRow(scope="SQL", raw_amount=42.5, day=date(2025, 3, 2)),
        ]
        collector = make_collector("azure", rows=rows, stateful=True, credential_id=credential.id)
        orchestrator = _orchestrator(storage, {"azure": [collector]})

        first = await orchestrator.refresh(march_window)
        second = await orchestrator.refresh(march_window)

        stored = await storage.query_cost_records("azure")
        assert len(stored) == 2
        assert first.success and second.success
        assert second.results[0].records == 2
        assert second.results[0].amount_usd == 142.5
        assert second.summary.total_monthly_cost == 142.5

    async def test_success_marks_credential_synced(self, storage, make_collector, march_window):
        credential = await _credential(storage)
        await storage.update_credential(
            credential.id, {"status": CredentialStatus.ERROR, "error_message": "old failure"}
        )
        collector = make_collector("azure", rows=[], stateful=True, credential_id=credential.id)

        await _orchestrator(storage, {"azure": [collector]}).refresh(march_window)

        updated = await storage.get_credential(credential.id)
        assert updated.status == CredentialStatus.ACTIVE
        assert updated.error_message is None
        assert updated.last_sync is not None

    async def test_failure_marks_credential_error_and_keeps_records(
        self, storage, make_collector, march_window
    ):
        credential = await _credential(storage)
        await storage.put_cost_records(
            [
                CostRecord(
                    provider="azure",
                    credential_id=credential.id,
                    date=date(2025, 3, 3),
                    amount_usd=9.0,
                )
            ]
        )
        collector = make_collector(
            "azure", error=ParseFailureError("bad payload"), stateful=True, credential_id=credential.id
        )

        report = await _orchestrator(storage, {"azure": [collector]}).refresh(march_window)

        assert not report.success
        assert report.results[0].error == "parse_failure: bad payload"
        assert "failed: azure" in report.message
        updated = await storage.get_credential(credential.id)
        assert updated.status == CredentialStatus.ERROR
        assert updated.error_message == "parse_failure: bad payload"
        assert len(await storage.query_cost_records("azure")) == 1

    async def test_failure_of_one_provider_does_not_stop_others(
        self, storage, make_collector, march_window
    ):
        azure = await _credential(storage)
        atlas = await _credential(storage, provider="mongodb", name="atlas")
        collectors = {
            "azure": [
                make_collector("azure", error=ParseFailureError("bad"), stateful=True, credential_id=azure.id)
            ],
            "mongodb": [
                make_collector(
                    "mongodb",
                    rows=[RawCostRow(scope="Cluster0", raw_amount=5.0)],
                    stateful=True,
                    credential_id=atlas.id,
                )
            ],
        }

        report = await _orchestrator(storage, collectors).refresh(march_window)

        by_provider = {r.provider: r for r in report.results}
        assert by_provider["mongodb"].success
        assert not by_provider["azure"].success
        assert len(await storage.query_cost_records("mongodb")) == 1

    async def test_stateless_collectors_are_skipped(self, storage, make_collector, march_window):
        aws = make_collector("aws", rows=[RawCostRow(scope="EC2", raw_amount=1.0)])

        report = await _orchestrator(storage, {"aws": [aws]}).refresh(march_window)

        assert report.results == []
        assert aws.fetch_calls == 0
        assert report.message.startswith("No stateful providers")

    async def test_replaced_credential_does_not_double_count(self, storage, make_collector, march_window):
        service = CredentialService(storage)
        rows = [RawCostRow(scope="VMs", raw_amount=10.0, day=date(2025, 3, 2))]

        old = await service.create({"name": "old", "provider": "azure"})
        old_collector = make_collector("azure", rows=rows, stateful=True, credential_id=old.id)
        await _orchestrator(storage, {"azure": [old_collector]}).refresh(march_window)
        await service.delete(old.id)

        new = await service.create({"name": "new", "provider": "azure"})
        new_collector = make_collector("azure", rows=rows, stateful=True, credential_id=new.id)
        report = await _orchestrator(storage, {"azure": [new_collector]}).refresh(march_window)

        stored = await storage.query_cost_records("azure")
        assert [(r.credential_id, r.amount_usd) for r in stored] == [(new.id, 10.0)]
        assert report.summary.total_monthly_cost == 10.0


@pytest.mark.unit
class TestBuildSummary:
    def test_derived_views(self):
        records = [
            CostRecord(provider="azure", date=date(2025, 3, 1), amount_usd=10.0, scope="VMs"),
            CostRecord(provider="azure", date=date(2025, 3, 2), amount_usd=5.005, scope="VMs"),
            CostRecord(provider="mongodb", date=date(2025, 3, 2), amount_usd=2.0, scope="Cluster0"),
            CostRecord(provider="azure", date=date(2025, 3, 2), amount_usd=1.0, scope=None),
        ]

        summary = build_summary(records, today=date(2025, 3, 2))

        assert summary.total_monthly_cost == 18.01
        assert summary.today_spend == 8.01
        assert summary.active_resources == 3
        assert summary.trend_data == [
            {"date": "2025-03-01", "cost": 10.0},
            {"date": "2025-03-02", "cost": 8.01},
        ]
        assert summary.service_breakdown[0] == {"provider": "azure", "service": "VMs", "cost": 15.01}
        assert summary.service_breakdown[-1]["service"] == "Unknown"

    def test_breakdown_limited_to_top_ten(self):
        records = [
            CostRecord(provider="azure", date=date(2025, 3, 1), amount_usd=float(i), scope=f"svc-{i}")
            for i in range(15)
        ]

        summary = build_summary(records, today=date(2025, 3, 1))

        assert len(summary.service_breakdown) == 10
        assert summary.service_breakdown[0]["service"] == "svc-14"
        assert summary.active_resources == 15
