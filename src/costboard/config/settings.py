"""
Configuration management for the multi-cloud cost dashboard.

Uses dynaconf for flexible configuration with YAML files and environment overrides.
Settings are read once at startup and injected into the normalizer, collectors
and storage; nothing below the API layer reads environment state directly.
"""

import logging
from pathlib import Path
from typing import Any

from dynaconf import Dynaconf, Validator

logger = logging.getLogger(__name__)

# Get the project root directory
PROJECT_ROOT = Path(__file__).parent.parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"

KNOWN_PROVIDERS = ("azure", "aws", "gcp", "mongodb")

settings = Dynaconf(
    envvar_prefix="CLOUDCOST",
    settings_files=[
        str(CONFIG_DIR / "config.yaml"),  # Base configuration
        str(CONFIG_DIR / "config.local.yaml"),  # Local overrides (git-ignored)
        str(CONFIG_DIR / ".secrets.yaml"),  # Secrets file (git-ignored)
    ],
    environments=False,
    load_dotenv=True,
    merge_enabled=True,
    envvar_separator="__",  # CLOUDCOST__CLOUDS__AWS__REGION=us-east-1
    validators=[
        Validator("clouds.azure.subscription_id", must_exist=True, when=Validator("clouds.azure.enabled", eq=True)),
        Validator("clouds.gcp.billing_table", must_exist=True, when=Validator("clouds.gcp.enabled", eq=True)),
        Validator("clouds.mongodb.org_id", must_exist=True, when=Validator("clouds.mongodb.enabled", eq=True)),
        Validator("clouds.mongodb.poll.max_attempts", gte=1, lte=60),
        Validator("clouds.mongodb.poll.interval_seconds", gt=0),
        Validator("http.timeout_seconds", gt=0),
        Validator("refresh.interval_minutes", gte=0),
        Validator("openai_usage.cache_ttl_seconds", gte=0),
        Validator("server.port", gte=1024, lte=65535),
    ],
)


class CloudConfig:
    """Configuration wrapper for provider, normalization and service settings."""

    def __init__(self, source: Any = None):
        self.settings = source if source is not None else settings
        self._validate_config()

    def _validate_config(self):
        """Validate the configuration on initialization."""
        validators = getattr(self.settings, "validators", None)
        if validators is None:
            return
        try:
            validators.validate()
        except Exception as e:
            # Partially configured providers are expected during setup
            logger.warning(f"Configuration validation warning: {e}")
            logger.warning("Some providers may not be properly configured yet")

    def _section(self, path: str) -> dict[str, Any]:
        value = self.settings.get(path, {}) or {}
        return dict(value)

    @property
    def azure(self) -> dict[str, Any]:
        """Azure Cost Management settings."""
        return self._section("clouds.azure")

    @property
    def aws(self) -> dict[str, Any]:
        """AWS Cost Explorer settings."""
        return self._section("clouds.aws")

    @property
    def gcp(self) -> dict[str, Any]:
        """GCP BigQuery billing export settings."""
        return self._section("clouds.gcp")

    @property
    def mongodb(self) -> dict[str, Any]:
        """MongoDB Atlas settings."""
        return self._section("clouds.mongodb")

    @property
    def enabled_providers(self) -> list[str]:
        """List of enabled providers, in canonical order."""
        return [p for p in KNOWN_PROVIDERS if self.get_provider_config(p).get("enabled", False)]

    @property
    def normalization(self) -> dict[str, Any]:
        """Currency conversion rates and per-provider default units."""
        return self._section("normalization")

    @property
    def refresh(self) -> dict[str, Any]:
        return self._section("refresh")

    @property
    def http(self) -> dict[str, Any]:
        return self._section("http")

    @property
    def storage(self) -> dict[str, Any]:
        return self._section("storage")

    @property
    def cache(self) -> dict[str, Any]:
        return self._section("cache")

    @property
    def agent(self) -> dict[str, Any]:
        """Recommendation engine settings."""
        return self._section("agent")

    @property
    def openai_usage(self) -> dict[str, Any]:
        """OpenAI usage API settings; the key falls back to the agent's."""
        section = self._section("openai_usage")
        if not section.get("api_key"):
            section["api_key"] = self.agent.get("api_key")
        return section

    @property
    def server(self) -> dict[str, Any]:
        return self._section("server")

    def get_provider_config(self, provider: str) -> dict[str, Any]:
        """Get configuration for a specific provider."""
        provider_configs = {
            "azure": self.azure,
            "aws": self.aws,
            "gcp": self.gcp,
            "mongodb": self.mongodb,
        }
        return provider_configs.get(provider.lower(), {})

    def is_provider_enabled(self, provider: str) -> bool:
        """Check if a specific provider is enabled."""
        return provider in self.enabled_providers

    @property
    def http_timeout(self) -> float:
        return float(self.http.get("timeout_seconds", 30))


# Global configuration instance
config = CloudConfig()


def get_config() -> CloudConfig:
    """Get the global configuration instance."""
    return config


def reload_config() -> CloudConfig:
    """Reload configuration from files."""
    global config
    settings.reload()
    config = CloudConfig()
    return config


def load_config_file(path: str) -> CloudConfig:
    """Merge an extra YAML file over the loaded settings."""
    global config
    settings.load_file(path=path)
    config = CloudConfig()
    return config
