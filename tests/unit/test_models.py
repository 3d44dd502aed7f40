"""Tests for the normalized cost and credential models."""

from datetime import date

import pytest
from pydantic import ValidationError

from costboard.providers.base import (
    CostRecord,
    Provider,
    ProviderSummary,
    SummarySource,
)
from costboard.storage.base import SECRET_MASK, CredentialStatus, ServicePrincipal


@pytest.mark.unit
class TestCostRecord:
    def test_defaults(self):
        record = CostRecord(provider="azure", date=date(2025, 3, 4), amount_usd=12.5)

        assert record.provider == Provider.AZURE
        assert record.currency == "USD"
        assert record.id
        assert record.created_at.tzinfo is not None

    def test_non_usd_currency_rejected(self):
        with pytest.raises(ValidationError):
            CostRecord(provider="aws", date=date(2025, 3, 4), amount_usd=1.0, currency="INR")

    def test_currency_normalized(self):
        record = CostRecord(provider="aws", date=date(2025, 3, 4), amount_usd=1.0, currency=" usd ")

        assert record.currency == "USD"

    def test_blank_scope_becomes_none(self):
        record = CostRecord(provider="gcp", date=date(2025, 3, 4), amount_usd=1.0, scope="   ")

        assert record.scope is None

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValidationError):
            CostRecord(provider="oracle", date=date(2025, 3, 4), amount_usd=1.0)


@pytest.mark.unit
class TestProviderSummary:
    def test_rounding_must_match_precise_amount(self):
        with pytest.raises(ValidationError):
            ProviderSummary(provider="aws", amount_usd=10.0, amount_usd_precise=10.126)

        summary = ProviderSummary(provider="aws", amount_usd=10.13, amount_usd_precise=10.125)
        assert summary.source == SummarySource.LIVE

    def test_from_amounts_groups_and_sorts(self):
        summary = ProviderSummary.from_amounts(
            "aws",
            [("EC2", 10.0), ("S3", 2.5), ("EC2", 5.0), (None, 1.25), ("Lambda", 15.0)],
        )

        assert [(c.scope, c.amount_usd) for c in summary.components] == [
            ("EC2", 15.0),
            ("Lambda", 15.0),
            ("S3", 2.5),
            ("Unknown", 1.25),
        ]
        assert summary.amount_usd == 33.75
        assert summary.amount_usd_precise == 33.75

    def test_from_amounts_keeps_precise_total(self):
        summary = ProviderSummary.from_amounts("gcp", [("BigQuery", 0.004), ("GCS", 0.003)])

        assert summary.amount_usd == 0.01
        assert summary.amount_usd_precise == pytest.approx(0.007)

    def test_from_records_empty_is_none_source(self):
        summary = ProviderSummary.from_records("azure", [], SummarySource.STORED)

        assert summary.source == SummarySource.NONE
        assert summary.amount_usd == 0.0
        assert summary.components == []

    def test_from_records(self):
        records = [
            CostRecord(provider="azure", date=date(2025, 3, 1), amount_usd=100.0, scope="VMs"),
            CostRecord(provider="azure", date=date(2025, 3, 2), amount_usd=42.5, scope="Storage"),
        ]

        summary = ProviderSummary.from_records("azure", records, SummarySource.STORED)

        assert summary.source == SummarySource.STORED
        assert summary.amount_usd == 142.5
        assert summary.components[0].scope == "VMs"

    def test_merge_single_returns_same(self):
        summary = ProviderSummary.from_amounts("mongodb", [("Cluster0", 3.0)])

        assert ProviderSummary.merge("mongodb", [summary]) is summary

    def test_merge_sums_credentials(self):
        first = ProviderSummary.from_amounts("azure", [("VMs", 10.004)])
        second = ProviderSummary.from_amounts("azure", [("VMs", 5.004), ("SQL", 1.0)])

        merged = ProviderSummary.merge("azure", [first, second])

        assert merged.amount_usd_precise == pytest.approx(16.008)
        assert merged.amount_usd == 16.01
        assert {c.scope for c in merged.components} == {"VMs", "SQL"}

    def test_zero(self):
        summary = ProviderSummary.zero("gcp", error="timeout: slow")

        assert summary.source == SummarySource.NONE
        assert summary.error == "timeout: slow"
        assert summary.amount_usd == 0.0


@pytest.mark.unit
class TestServicePrincipal:
    def test_masked_hides_secrets(self):
        credential = ServicePrincipal(
            name="prod",
            provider="azure",
            client_id="client",
            client_secret="super-secret",
            tenant_id="tenant",
            subscription_id="sub",
        )

        masked = credential.masked()

        assert masked["client_secret"] == SECRET_MASK
        assert masked["client_id"] == "client"
        assert masked["private_key"] is None
        assert "super-secret" not in str(masked)

    def test_masked_mongodb_private_key(self):
        credential = ServicePrincipal(
            name="atlas", provider="mongodb", public_key="pub", private_key="priv", org_id="org"
        )

        assert credential.masked()["private_key"] == SECRET_MASK

    def test_as_provider_config_only_relevant_fields(self):
        credential = ServicePrincipal(
            name="atlas", provider="mongodb", public_key="pub", private_key="priv", org_id="org"
        )

        assert credential.as_provider_config() == {
            "public_key": "pub",
            "private_key": "priv",
            "org_id": "org",
        }

    def test_name_required(self):
        with pytest.raises(ValidationError):
            ServicePrincipal(name="  ", provider="azure")

    def test_default_status_active(self):
        credential = ServicePrincipal(name=" prod ", provider="azure")

        assert credential.status == CredentialStatus.ACTIVE
        assert credential.name == "prod"
