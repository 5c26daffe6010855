"""
Deployment state machine.

    Planned -> Provisioned -> IdentityBound -> Deployed -> Healthy
                   |               |               |
                   +---------------+---------------+--> Failed

Failed is terminal. Nothing here rolls back automatically; a failed run
reports the error and stops.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from shipwright.core.errors import ShipwrightError
from shipwright.orchestration.deployment import DeploymentDriver
from shipwright.orchestration.engine import ConvergenceEngine
from shipwright.orchestration.identity import BindingResult, IdentityBinder
from shipwright.orchestration.plan_builder import PlanBuilder
from shipwright.orchestration.results import ConvergenceResult
from shipwright.providers.base import ControlPlane
from shipwright.specs.manifest import Manifest
from shipwright.specs.models import DeploymentResult, Plan

logger = structlog.get_logger()


class DeploymentState(Enum):
    PLANNED = "planned"
    PROVISIONED = "provisioned"
    IDENTITY_BOUND = "identity_bound"
    DEPLOYED = "deployed"
    HEALTHY = "healthy"
    FAILED = "failed"


TRANSITIONS: dict[DeploymentState, set[DeploymentState]] = {
    DeploymentState.PLANNED: {DeploymentState.PROVISIONED, DeploymentState.FAILED},
    DeploymentState.PROVISIONED: {DeploymentState.IDENTITY_BOUND, DeploymentState.FAILED},
    DeploymentState.IDENTITY_BOUND: {DeploymentState.DEPLOYED, DeploymentState.FAILED},
    DeploymentState.DEPLOYED: {DeploymentState.HEALTHY, DeploymentState.FAILED},
    DeploymentState.HEALTHY: set(),
    DeploymentState.FAILED: set(),
}


@dataclass
class StateMachine:
    state: DeploymentState = DeploymentState.PLANNED
    history: list[tuple[DeploymentState, datetime]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.state, datetime.now(timezone.utc)))

    def advance(self, target: DeploymentState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise ValueError(f"Illegal transition {self.state.value} -> {target.value}")
        logger.info("state_transition", from_state=self.state.value, to_state=target.value)
        self.state = target
        self.history.append((target, datetime.now(timezone.utc)))

    @property
    def terminal(self) -> bool:
        return not TRANSITIONS[self.state]


@dataclass
class PipelineOutcome:
    state: DeploymentState
    plan: Plan | None = None
    convergence: ConvergenceResult | None = None
    binding: BindingResult | None = None
    deployment: DeploymentResult | None = None
    error: ShipwrightError | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "plan": self.plan.names() if self.plan else None,
            "convergence": self.convergence.to_dict() if self.convergence else None,
            "identity": {
                "granted": len(self.binding.granted),
                "already_held": len(self.binding.already_held),
            }
            if self.binding
            else None,
            "deployment": self.deployment.to_dict() if self.deployment else None,
            "error": {"kind": self.error.kind, "message": self.error.message} if self.error else None,
        }


async def bind_manifest_grants(
    provider: ControlPlane,
    manifest: Manifest,
    binder: IdentityBinder,
) -> BindingResult:
    """Resolve the app identity and grant every role the manifest declares."""
    app = manifest.require_app()
    principal = await provider.principal_id(app.name)
    targets = [
        (provider.resource_id(manifest.resources[grant.target]), grant.role)
        for grant in manifest.grants
    ]
    return await binder.bind(principal, targets)


class DeploymentPipeline:
    """Runs plan, convergence, identity binding and deployment in order."""

    def __init__(
        self,
        provider: ControlPlane,
        *,
        binder: IdentityBinder,
        driver: DeploymentDriver,
    ) -> None:
        self._provider = provider
        self._binder = binder
        self._driver = driver
        self.machine = StateMachine()

    async def run(
        self,
        manifest: Manifest,
        image: str,
        env: dict[str, str],
        secrets: dict[str, str],
        *,
        source_image: str | None = None,
    ) -> PipelineOutcome:
        """Drive the manifest to a healthy deployment of ``image``.

        Raises the failing step's error after moving to FAILED, so callers
        get both the typed failure and the machine's final state.
        """
        outcome = PipelineOutcome(state=self.machine.state)
        app = manifest.require_app()
        try:
            outcome.plan = PlanBuilder().build(manifest.resources)
            outcome.convergence = await ConvergenceEngine(self._provider).converge(outcome.plan)
            self.machine.advance(DeploymentState.PROVISIONED)

            outcome.binding = await bind_manifest_grants(self._provider, manifest, self._binder)
            self.machine.advance(DeploymentState.IDENTITY_BOUND)

            self.machine.advance(DeploymentState.DEPLOYED)
            outcome.deployment = await self._driver.deploy(
                app, image, env, secrets, source_image=source_image
            )
            self.machine.advance(DeploymentState.HEALTHY)
        except ShipwrightError as e:
            self.machine.advance(DeploymentState.FAILED)
            outcome.error = e
            outcome.state = self.machine.state
            raise
        outcome.state = self.machine.state
        return outcome
