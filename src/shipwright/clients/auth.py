from __future__ import annotations

import time
from dataclasses import dataclass

import structlog

from circuitbreaker import CircuitBreakerError

from shipwright.clients.base import BaseHTTPClient, PermanentHTTPError, RetryableHTTPError
from shipwright.config.settings import AzureCredentials
from shipwright.core.errors import ConfigurationError, ProviderError

logger = structlog.get_logger()

ARM_SCOPE = "https://management.azure.com/.default"

# Refresh tokens this many seconds before they expire
EXPIRY_SKEW_SECONDS = 120


@dataclass
class AccessToken:
    token: str
    expires_at: float

    def valid(self, now: float) -> bool:
        return now < self.expires_at - EXPIRY_SKEW_SECONDS


class ClientCredentialTokenProvider(BaseHTTPClient):
    """Acquires OAuth2 client-credential tokens for the deployment identity."""

    def __init__(
        self,
        credentials: AzureCredentials,
        *,
        login_endpoint: str = "https://login.microsoftonline.com",
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
    ) -> None:
        super().__init__(
            login_endpoint,
            timeout=timeout,
            max_retries=max_retries,
            backoff_factor=backoff_factor,
        )
        self._credentials = credentials
        self._cache: dict[str, AccessToken] = {}

    async def token(self, scope: str = ARM_SCOPE) -> str:
        cached = self._cache.get(scope)
        if cached is not None and cached.valid(time.time()):
            return cached.token

        try:
            payload = await self._request(
                "POST",
                f"/{self._credentials.tenant_id}/oauth2/v2.0/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "scope": scope,
                },
            )
        except PermanentHTTPError as exc:
            # A rejected credential is a configuration problem, not a provider outage
            raise ConfigurationError(
                "Deployment identity was rejected by the login endpoint",
                {"client_id": self._credentials.client_id, "error": str(exc)},
            ) from exc
        except (RetryableHTTPError, CircuitBreakerError) as exc:
            raise ProviderError(f"Login endpoint unavailable: {exc}") from exc

        token = AccessToken(
            token=payload["access_token"],
            expires_at=time.time() + int(payload.get("expires_in", 3600)),
        )
        self._cache[scope] = token
        logger.debug("token_acquired", scope=scope, client_id=self._credentials.client_id)
        return token.token
