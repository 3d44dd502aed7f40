"""
Multi-cloud authentication utilities for Azure, AWS, GCP and MongoDB Atlas.

Provides a unified interface for verifying provider credentials. Used by the
collectors before querying billing APIs and by the credential connection test.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, Field, field_validator

try:
    import boto3

    AWS_AVAILABLE = True
except ImportError:
    AWS_AVAILABLE = False

try:
    from azure.core.exceptions import ClientAuthenticationError
    from azure.identity import ClientSecretCredential

    AZURE_AVAILABLE = True
except ImportError:
    AZURE_AVAILABLE = False

try:
    from google.auth import default as gcp_default
    from google.auth.exceptions import DefaultCredentialsError
    from google.oauth2 import service_account

    GCP_AVAILABLE = True
except ImportError:
    GCP_AVAILABLE = False

logger = logging.getLogger(__name__)

AZURE_MANAGEMENT_SCOPE = "https://management.azure.com/.default"


class AuthenticationResult(BaseModel):
    """Result of an authentication attempt with validation."""

    success: bool = Field(..., description="Whether authentication was successful")
    provider: str = Field(..., min_length=1, max_length=50, description="Provider name")
    method: str = Field(..., min_length=1, max_length=100, description="Authentication method used")
    error_message: str | None = Field(
        None, max_length=1000, description="Error message if authentication failed"
    )
    missing_credentials: bool = Field(False, description="Failure was due to absent credentials")
    credentials: Any | None = Field(None, description="Authenticated credentials object")

    @classmethod
    def create_success(cls, provider: str, method: str, credentials: Any) -> "AuthenticationResult":
        return cls(success=True, provider=provider, method=method, credentials=credentials)

    @classmethod
    def create_failure(
        cls, provider: str, method: str, error_message: str, missing_credentials: bool = False
    ) -> "AuthenticationResult":
        return cls(
            success=False,
            provider=provider,
            method=method,
            error_message=error_message,
            missing_credentials=missing_credentials,
        )

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Authentication method cannot be empty")
        return v.lower().strip().replace("-", "_").replace(" ", "_")

    @field_validator("error_message")
    @classmethod
    def validate_error_message(cls, v: str | None) -> str | None:
        if v is not None:
            stripped = v.strip()
            return stripped[:1000] if stripped else None
        return v

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization (excluding credentials for security)."""
        result = self.model_dump(exclude_unset=True)
        result.pop("credentials", None)
        return result


class CloudAuthenticator(ABC):
    """Abstract base class for provider authenticators."""

    required_fields: tuple[str, ...] = ()

    def __init__(self, config: dict[str, Any]):
        self.config = config
        self.provider_name = self._get_provider_name()

    @abstractmethod
    def _get_provider_name(self) -> str:
        pass

    @abstractmethod
    async def authenticate(self) -> AuthenticationResult:
        pass

    def missing_fields(self) -> list[str]:
        return [field for field in self.required_fields if not self.config.get(field)]

    def _missing(self, method: str) -> AuthenticationResult | None:
        missing = self.missing_fields()
        if missing:
            return AuthenticationResult.create_failure(
                provider=self.provider_name,
                method=method,
                error_message=f"Missing {', '.join(missing)}",
                missing_credentials=True,
            )
        return None


class AzureAuthenticator(CloudAuthenticator):
    """Azure service principal (client credentials) authentication."""

    required_fields = ("tenant_id", "client_id", "client_secret")

    def _get_provider_name(self) -> str:
        return "azure"

    async def authenticate(self) -> AuthenticationResult:
        missing = self._missing("service_principal")
        if missing:
            return missing
        if not AZURE_AVAILABLE:
            return AuthenticationResult.create_failure(
                provider=self.provider_name, method="none", error_message="Azure SDK not available"
            )

        credential = ClientSecretCredential(
            tenant_id=self.config["tenant_id"],
            client_id=self.config["client_id"],
            client_secret=self.config["client_secret"],
        )
        try:
            await asyncio.to_thread(credential.get_token, AZURE_MANAGEMENT_SCOPE)
        except ClientAuthenticationError as e:
            logger.debug(f"Azure service principal authentication failed: {e}")
            return AuthenticationResult.create_failure(
                provider=self.provider_name,
                method="service_principal",
                error_message=f"Invalid service principal credentials: {e.message}",
            )
        return AuthenticationResult.create_success(
            provider=self.provider_name, method="service_principal", credentials=credential
        )


class AWSAuthenticator(CloudAuthenticator):
    """AWS access key authentication verified through STS."""

    required_fields = ("access_key_id", "secret_access_key")

    def _get_provider_name(self) -> str:
        return "aws"

    async def authenticate(self) -> AuthenticationResult:
        missing = self._missing("access_keys")
        if missing:
            return missing
        if not AWS_AVAILABLE:
            return AuthenticationResult.create_failure(
                provider=self.provider_name, method="none", error_message="AWS SDK (boto3) not available"
            )

        session = boto3.Session(
            aws_access_key_id=self.config["access_key_id"],
            aws_secret_access_key=self.config["secret_access_key"],
            aws_session_token=self.config.get("session_token"),
            region_name=self.config.get("region") or "us-east-1",
        )
        try:
            await asyncio.to_thread(self.test_credentials, session)
        except Exception as e:
            logger.debug(f"AWS access key authentication failed: {e}")
            return AuthenticationResult.create_failure(
                provider=self.provider_name, method="access_keys", error_message=f"Invalid access keys: {e}"
            )
        return AuthenticationResult.create_success(
            provider=self.provider_name, method="access_keys", credentials=session
        )

    def test_credentials(self, session) -> dict[str, Any]:
        """Resolve the caller identity; raises when the keys are rejected."""
        return session.client("sts").get_caller_identity()


class GCPAuthenticator(CloudAuthenticator):
    """GCP service account or application default credentials."""

    def _get_provider_name(self) -> str:
        return "gcp"

    async def authenticate(self) -> AuthenticationResult:
        if not GCP_AVAILABLE:
            return AuthenticationResult.create_failure(
                provider=self.provider_name, method="none", error_message="GCP SDK not available"
            )

        credentials_path = self.config.get("credentials_path")
        if credentials_path:
            if not Path(credentials_path).exists():
                return AuthenticationResult.create_failure(
                    provider=self.provider_name,
                    method="service_account",
                    error_message=f"Service account file not found: {credentials_path}",
                    missing_credentials=True,
                )
            try:
                credentials = service_account.Credentials.from_service_account_file(
                    credentials_path,
                    scopes=["https://www.googleapis.com/auth/cloud-platform"],
                )
            except ValueError as e:
                return AuthenticationResult.create_failure(
                    provider=self.provider_name,
                    method="service_account",
                    error_message=f"Invalid service account file: {e}",
                )
            return AuthenticationResult.create_success(
                provider=self.provider_name, method="service_account", credentials=credentials
            )

        try:
            credentials, _project = await asyncio.to_thread(gcp_default)
        except DefaultCredentialsError as e:
            return AuthenticationResult.create_failure(
                provider=self.provider_name,
                method="default_credentials",
                error_message=f"Default credentials not available: {e}",
                missing_credentials=True,
            )
        return AuthenticationResult.create_success(
            provider=self.provider_name, method="default_credentials", credentials=credentials
        )


class MongoDBAtlasAuthenticator(CloudAuthenticator):
    """MongoDB Atlas programmatic API key (HTTP digest) authentication."""

    required_fields = ("public_key", "private_key", "org_id")

    def _get_provider_name(self) -> str:
        return "mongodb"

    def digest_auth(self) -> httpx.DigestAuth:
        return httpx.DigestAuth(self.config["public_key"], self.config["private_key"])

    async def authenticate(self) -> AuthenticationResult:
        missing = self._missing("api_key")
        if missing:
            return missing

        base_url = self.config.get("base_url", "https://cloud.mongodb.com/api/atlas/v2")
        headers = {"Accept": self.config.get("accept", "application/vnd.atlas.2023-01-01+json")}
        timeout = httpx.Timeout(float(self.config.get("timeout_seconds", 30)))
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(
                    f"{base_url}/orgs/{self.config['org_id']}",
                    headers=headers,
                    auth=self.digest_auth(),
                )
        except httpx.HTTPError as e:
            return AuthenticationResult.create_failure(
                provider=self.provider_name, method="api_key", error_message=f"Atlas unreachable: {e}"
            )

        if response.status_code != 200:
            return AuthenticationResult.create_failure(
                provider=self.provider_name,
                method="api_key",
                error_message=f"Atlas rejected API key ({response.status_code})",
            )
        return AuthenticationResult.create_success(
            provider=self.provider_name, method="api_key", credentials=self.digest_auth()
        )


class MultiCloudAuthManager:
    """Manager for multi-cloud authentication."""

    def __init__(self):
        self.authenticators: dict[str, type[CloudAuthenticator]] = {
            "azure": AzureAuthenticator,
            "aws": AWSAuthenticator,
            "gcp": GCPAuthenticator,
            "mongodb": MongoDBAtlasAuthenticator,
        }

    async def authenticate_provider(
        self, provider: str, config: dict[str, Any]
    ) -> AuthenticationResult:
        """
        Authenticate a specific provider.

        Args:
            provider: Provider name
            config: Provider configuration (credentials included)

        Returns:
            Authentication result; never raises for rejected credentials
        """
        provider = provider.lower()
        if provider not in self.authenticators:
            return AuthenticationResult.create_failure(
                provider=provider, method="none", error_message=f"Unknown provider: {provider}"
            )

        authenticator = self.authenticators[provider](config)
        result = await authenticator.authenticate()
        if result.success:
            logger.info(f"{provider} authentication successful using {result.method}")
        else:
            logger.warning(f"{provider} authentication failed: {result.error_message}")
        return result
