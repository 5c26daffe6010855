"""
Deployment driver.

Ships a new revision with zero traffic, moves traffic onto it, and keeps
it there only if its health endpoint answers 2xx within the wait window.
A failed health check restores the previous traffic split; choosing to
roll back further is left to the operator.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

import httpx
import structlog

from shipwright.core.errors import (
    ConfigurationError,
    DeploymentError,
    DeploymentHealthError,
    ShipwrightError,
)
from shipwright.providers.base import ControlPlane
from shipwright.specs.models import AppContract, DeploymentResult, HealthStatus, Revision

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]

PREVIOUS_LABEL = "previous"


def resolve_environment(
    app: AppContract,
    assignments: dict[str, str],
) -> dict[str, str]:
    """Merge manifest defaults with explicit assignments and check nothing required is missing."""
    env = {**app.env_defaults, **assignments}
    missing = [name for name in app.required_env if name not in env and name != app.secret_env]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables for '{app.name}': {', '.join(missing)}",
            {"resource": app.name, "missing": ", ".join(missing)},
        )
    return env


def parse_assignments(pairs: list[str] | None) -> dict[str, str]:
    """Parse repeated KEY=VALUE command line arguments."""
    env: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"Invalid environment assignment '{pair}', expected KEY=VALUE")
        env[key] = value
    return env


def traffic_split(revisions: list[Revision]) -> dict[str, int]:
    return {rev.name: rev.traffic_weight for rev in revisions if rev.traffic_weight > 0}


def traffic_holder(revisions: list[Revision]) -> Revision | None:
    """The revision receiving the largest share of traffic."""
    receiving = [rev for rev in revisions if rev.traffic_weight > 0]
    if not receiving:
        return None
    return max(receiving, key=lambda rev: (rev.traffic_weight, rev.created_at))


class DeploymentDriver:
    """Pushes an image reference to a compute app and verifies the new revision."""

    def __init__(
        self,
        provider: ControlPlane,
        *,
        health_timeout: float = 180.0,
        health_interval: float = 10.0,
        request_timeout: float = 10.0,
        log_tail_lines: int = 50,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self._provider = provider
        self._health_timeout = health_timeout
        self._health_interval = health_interval
        self._request_timeout = request_timeout
        self._log_tail_lines = log_tail_lines
        self._sleep = sleep
        self._clock = clock

    async def ensure_image(self, app: AppContract, image: str, source_image: str | None = None) -> str:
        """Return the fully qualified image, importing it first when a source is given."""
        qualified = self._provider.qualify_image(app.registry, image)
        if not app.registry:
            return qualified

        if source_image:
            await self._provider.import_image(app.registry, source_image, qualified)

        if not await self._provider.image_exists(app.registry, qualified):
            raise DeploymentError(
                f"Image {qualified} was not found in registry '{app.registry}'",
                {"image": qualified, "resource": app.registry},
            )
        logger.info("image_confirmed", image=qualified, registry=app.registry)
        return qualified

    async def deploy(
        self,
        app: AppContract,
        image: str,
        env: dict[str, str],
        secrets: dict[str, str] | None = None,
        *,
        source_image: str | None = None,
    ) -> DeploymentResult:
        qualified = await self.ensure_image(app, image, source_image)

        revisions = await self._provider.list_revisions(app.name)
        prior_split = traffic_split(revisions)
        previous = traffic_holder(revisions)

        try:
            new_revision = await self._provider.update_app_template(
                app, qualified, env, secrets or {}, prior_split
            )
            await self._provider.wait_revision_ready(app.name, new_revision)
        except DeploymentError:
            raise
        except ShipwrightError as e:
            raise DeploymentError(
                f"Could not create a new revision of '{app.name}': {e.message}",
                {"resource": app.name, "image": qualified},
            ) from e
        logger.info("revision_created", app=app.name, revision=new_revision, image=qualified)

        weights = {new_revision: 100}
        labels = {}
        if previous is not None and previous.name != new_revision:
            weights[previous.name] = 0
            labels[previous.name] = PREVIOUS_LABEL

        try:
            base_url = await self._provider.revision_base_url(app.name, new_revision)
            await self._provider.set_traffic(app.name, weights, labels)
            logger.info("traffic_shifted", app=app.name, revision=new_revision, weight=100)
            healthy = await self.wait_healthy(f"{base_url}{app.health_path}")
        except ShipwrightError as e:
            logger.error("deployment_aborted", app=app.name, revision=new_revision, error=e.message)
            withdraw_error = await self._withdraw(app, new_revision, prior_split)
            if withdraw_error is not None:
                e.details["withdraw_error"] = withdraw_error.message
            raise

        previous_name = previous.name if previous else None
        if healthy:
            if previous_name:
                logger.info("revision_retained", app=app.name, revision=previous_name)
            return DeploymentResult(
                revision=new_revision,
                status=HealthStatus.HEALTHY,
                image=qualified,
                previous_revision=previous_name,
            )

        log_excerpt = await self._provider.tail_logs(app, new_revision, self._log_tail_lines)
        withdraw_error = await self._withdraw(app, new_revision, prior_split)
        result = DeploymentResult(
            revision=new_revision,
            status=HealthStatus.UNHEALTHY,
            image=qualified,
            previous_revision=previous_name,
            log_excerpt=log_excerpt,
        )
        error = DeploymentHealthError(
            result,
            f"Revision '{new_revision}' did not return 2xx on {app.health_path} "
            f"within {self._health_timeout:.0f}s",
        )
        if withdraw_error is not None:
            error.details["withdraw_error"] = withdraw_error.message
            raise error from withdraw_error
        raise error

    async def _withdraw(
        self, app: AppContract, revision: str, prior_split: dict[str, int]
    ) -> ShipwrightError | None:
        """Put traffic back where it was and take the failed revision out of rotation.

        A provider failure here is logged and returned so the caller can
        report it next to the failure that triggered the withdrawal.
        """
        try:
            if prior_split:
                await self._provider.set_traffic(app.name, prior_split)
                logger.warning("traffic_restored", app=app.name, split=prior_split)
            await self._provider.deactivate_revision(app.name, revision)
            logger.warning("revision_deactivated", app=app.name, revision=revision)
        except ShipwrightError as e:
            logger.error("withdraw_failed", app=app.name, revision=revision, error=e.message)
            return e
        return None

    async def wait_healthy(self, url: str) -> bool:
        """Poll ``url`` until it answers 2xx or the wait window closes."""
        deadline = self._clock() + self._health_timeout
        attempt = 0
        async with httpx.AsyncClient(timeout=self._request_timeout) as client:
            while True:
                attempt += 1
                try:
                    response = await client.get(url)
                    if 200 <= response.status_code < 300:
                        logger.info("health_check_passed", url=url, attempts=attempt)
                        return True
                    logger.info("health_check_pending", url=url, status=response.status_code, attempt=attempt)
                except httpx.HTTPError as exc:
                    logger.info("health_check_pending", url=url, error=str(exc), attempt=attempt)

                remaining = deadline - self._clock()
                if remaining <= 0:
                    logger.warning("health_check_timed_out", url=url, attempts=attempt)
                    return False
                await self._sleep(min(self._health_interval, remaining))
