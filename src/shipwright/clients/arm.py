from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Protocol

import structlog
from circuitbreaker import CircuitBreakerError

from shipwright.clients.base import BaseHTTPClient, PermanentHTTPError, RetryableHTTPError
from shipwright.core.errors import ProviderError, RejectedRequestError

logger = structlog.get_logger()

TERMINAL_SUCCESS = {"Succeeded", "Provisioned"}
TERMINAL_FAILURE = {"Failed", "Canceled", "Cancelled"}

Sleep = Callable[[float], Awaitable[None]]


class TokenSource(Protocol):
    async def token(self, scope: str = ...) -> str:
        ...


class ArmClient(BaseHTTPClient):
    """Azure Resource Manager client scoped to one resource group."""

    def __init__(
        self,
        tokens: TokenSource,
        subscription_id: str,
        resource_group: str,
        *,
        base_url: str = "https://management.azure.com",
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
        poll_interval: float = 5.0,
        max_polls: int = 120,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        super().__init__(
            base_url,
            timeout=timeout,
            max_retries=max_retries,
            backoff_factor=backoff_factor,
        )
        self._tokens = tokens
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._sleep = sleep

    async def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {await self._tokens.token()}"}

    @property
    def group_id(self) -> str:
        return f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"

    def resource_path(self, provider_type: str, name: str) -> str:
        """Build the id of a resource in this group, e.g. Microsoft.App/containerApps."""
        return f"{self.group_id}/providers/{provider_type}/{name}"

    async def call(
        self,
        method: str,
        path: str,
        api_version: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Call ARM; every failure surfaces as a ProviderError."""
        query = {"api-version": api_version, **(params or {})}
        try:
            return await self._request(method, path, params=query, json=json)
        except PermanentHTTPError as exc:
            raise RejectedRequestError(
                f"{method} {path} was rejected: {exc}",
                exc.status_code,
                {"path": path},
            ) from exc
        except (RetryableHTTPError, CircuitBreakerError) as exc:
            raise ProviderError(
                f"{method} {path} kept failing after retries: {exc}",
                {"path": path},
            ) from exc

    async def get_or_none(self, path: str, api_version: str) -> dict[str, Any] | None:
        try:
            return await self.call("GET", path, api_version)
        except RejectedRequestError as exc:
            if exc.not_found:
                return None
            raise

    async def wait_until_provisioned(
        self,
        path: str,
        api_version: str,
        *,
        state_of: Callable[[dict[str, Any]], str | None] | None = None,
    ) -> dict[str, Any]:
        """Poll a resource until its provisioningState is terminal."""
        state_of = state_of or _provisioning_state
        body: dict[str, Any] = {}
        for _ in range(self._max_polls):
            body = await self.get_or_none(path, api_version) or {}
            state = state_of(body)
            logger.debug("provisioning_poll", path=path, state=state)
            if state in TERMINAL_SUCCESS or (body and state is None):
                return body
            if state in TERMINAL_FAILURE:
                raise ProviderError(
                    f"Provisioning of {path} ended in state {state}",
                    {"path": path, "state": state},
                )
            await self._sleep(self._poll_interval)
        raise ProviderError(
            f"Provisioning of {path} did not finish after {self._max_polls} polls",
            {"path": path},
        )


def _provisioning_state(body: dict[str, Any]) -> str | None:
    return (body.get("properties") or {}).get("provisioningState")
