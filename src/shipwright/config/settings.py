"""
Application settings using Pydantic.

Provides environment-based configuration loading with SHIPWRIGHT_ prefix.
Only two values are secrets: the deployment identity credential and the
application secret handed through to the deployed app.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache

from pydantic import SecretStr
from pydantic_settings import BaseSettings

from shipwright.core.errors import ConfigurationError


@dataclass(frozen=True)
class AzureCredentials:
    """Service principal credential used to authenticate shipwright itself."""

    client_id: str
    client_secret: str
    tenant_id: str
    subscription_id: str | None = None

    @classmethod
    def from_json(cls, raw: str) -> "AzureCredentials":
        """Parse the JSON emitted by ``az ad sp create-for-rbac --sdk-auth``."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Deployment credentials are not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError("Deployment credentials must be a JSON object")

        missing = [key for key in ("clientId", "clientSecret", "tenantId") if not data.get(key)]
        if missing:
            raise ConfigurationError(
                "Deployment credentials are missing fields",
                {"missing": ", ".join(missing)},
            )
        return cls(
            client_id=data["clientId"],
            client_secret=data["clientSecret"],
            tenant_id=data["tenantId"],
            subscription_id=data.get("subscriptionId"),
        )


class Settings(BaseSettings):
    """Application settings."""

    # Secrets
    azure_credentials: SecretStr | None = None
    app_secret: SecretStr | None = None

    # Azure endpoints
    arm_endpoint: str = "https://management.azure.com"
    login_endpoint: str = "https://login.microsoftonline.com"

    # HTTP client settings
    http_timeout: float = 30.0
    http_max_retries: int = 3
    http_retry_backoff_factor: float = 2.0

    # Long-running operation polling
    operation_poll_interval: float = 5.0
    operation_max_polls: int = 120

    # Health verification
    health_timeout_seconds: float = 180.0
    health_interval_seconds: float = 10.0
    health_request_timeout: float = 10.0

    # Role assignment propagation
    grant_max_attempts: int = 8
    grant_backoff_seconds: float = 2.0

    # Managed certificate issuance
    certificate_max_polls: int = 60
    certificate_poll_interval: float = 10.0

    # Advisory lock
    lock_ttl_seconds: int = 3600

    # Log lines shown after a failed health check
    log_tail_lines: int = 50

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "SHIPWRIGHT_"

    def credentials(self) -> AzureCredentials:
        if self.azure_credentials is None:
            raise ConfigurationError(
                "SHIPWRIGHT_AZURE_CREDENTIALS is not set; provide the deployment identity credential"
            )
        return AzureCredentials.from_json(self.azure_credentials.get_secret_value())

    def require_app_secret(self) -> str:
        if self.app_secret is None or not self.app_secret.get_secret_value():
            raise ConfigurationError("SHIPWRIGHT_APP_SECRET is not set")
        return self.app_secret.get_secret_value()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
