"""
Pytest configuration and shared fixtures for costboard tests.

Provides a fake collector, in-memory storage and configuration objects
built without touching the config/ directory or environment.
"""

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from dynaconf import Dynaconf

from costboard.config.settings import CloudConfig
from costboard.providers.base import CostCollector, RawCostRow
from costboard.storage.memory import MemoryStorage
from costboard.utils.data_normalizer import UnitNormalizer
from costboard.utils.window import month_window_for


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "aws: mark test as AWS-specific")
    config.addinivalue_line("markers", "azure: mark test as Azure-specific")
    config.addinivalue_line("markers", "gcp: mark test as GCP-specific")
    config.addinivalue_line("markers", "mongodb: mark test as MongoDB Atlas-specific")


class FakeCollector(CostCollector):
    """Collector returning canned rows or raising a canned error."""

    def __init__(
        self,
        provider: str,
        rows: list[RawCostRow] | None = None,
        error: Exception | None = None,
        stateful: bool = False,
        **kwargs,
    ):
        self._provider = provider
        super().__init__({}, **kwargs)
        self.rows = rows or []
        self.error = error
        self.stateful = stateful
        self.fetch_calls = 0

    def _get_provider_name(self) -> str:
        return self._provider

    async def authenticate(self) -> bool:
        self._authenticated = True
        return True

    async def fetch_rows(self, window) -> list[RawCostRow]:
        self.fetch_calls += 1
        if self.error is not None:
            raise self.error
        return list(self.rows)


@pytest.fixture
def march_window():
    return month_window_for("2025-03")


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def normalizer() -> UnitNormalizer:
    return UnitNormalizer(
        rates={"USD": 1.0, "INR": 0.012, "EUR": 1.08},
        provider_default_units={"azure": "INR", "mongodb": "USD_CENTS"},
    )


@pytest.fixture
def make_collector():
    """Factory for FakeCollector instances."""

    def _make(provider: str, rows=None, error=None, stateful=False, **kwargs) -> FakeCollector:
        return FakeCollector(provider, rows=rows, error=error, stateful=stateful, **kwargs)

    return _make


@pytest.fixture
def mock_db_pool():
    """Mock asyncpg pool; ``pool.conn`` is the connection every acquire yields."""
    mock_pool = MagicMock()
    mock_conn = AsyncMock()

    mock_conn.fetch.return_value = []
    mock_conn.execute.return_value = "DELETE 0"
    mock_conn.executemany.return_value = None

    class MockContext:
        def __init__(self, value):
            self.value = value

        async def __aenter__(self):
            return self.value

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            return None

    mock_conn.transaction = MagicMock(side_effect=lambda: MockContext(mock_conn))
    mock_pool.acquire = MagicMock(side_effect=lambda: MockContext(mock_conn))
    mock_pool.conn = mock_conn
    return mock_pool


@pytest.fixture
def make_config():
    """Build a CloudConfig from plain dictionaries."""

    def _make(**sections: Any) -> CloudConfig:
        source = Dynaconf(environments=False, settings_files=[])
        defaults = {
            "clouds": {},
            "normalization": {"rates": {"USD": 1.0, "INR": 0.012}},
            "http": {"timeout_seconds": 5, "connect_timeout_seconds": 2},
            "refresh": {"interval_minutes": 0},
            "storage": {"backend": "memory"},
            "cache": {"backend": "memory", "total_ttl_seconds": 300},
            "agent": {"force_rules": True},
        }
        defaults.update(sections)
        for key, value in defaults.items():
            source.set(key, value)
        return CloudConfig(source)

    return _make
