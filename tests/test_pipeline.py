"""Tests for the deployment state machine and the full pipeline."""

from unittest.mock import AsyncMock

import pytest
import respx
from fake_provider import FakeControlPlane
from httpx import Response

from shipwright.core.errors import DeploymentHealthError, ProvisioningError
from shipwright.orchestration.deployment import DeploymentDriver
from shipwright.orchestration.identity import IdentityBinder
from shipwright.orchestration.pipeline import (
    DeploymentPipeline,
    DeploymentState,
    StateMachine,
)
from shipwright.specs.manifest import load_manifest


class TestStateMachine:
    def test_happy_path(self):
        machine = StateMachine()
        for state in (
            DeploymentState.PROVISIONED,
            DeploymentState.IDENTITY_BOUND,
            DeploymentState.DEPLOYED,
            DeploymentState.HEALTHY,
        ):
            machine.advance(state)

        assert machine.state is DeploymentState.HEALTHY
        assert machine.terminal
        assert [s for s, _ in machine.history][0] is DeploymentState.PLANNED

    @pytest.mark.parametrize(
        "path",
        [
            [],
            [DeploymentState.PROVISIONED],
            [DeploymentState.PROVISIONED, DeploymentState.IDENTITY_BOUND],
            [DeploymentState.PROVISIONED, DeploymentState.IDENTITY_BOUND, DeploymentState.DEPLOYED],
        ],
    )
    def test_failed_is_reachable_from_every_step(self, path):
        machine = StateMachine()
        for state in path:
            machine.advance(state)

        machine.advance(DeploymentState.FAILED)

        assert machine.state is DeploymentState.FAILED

    def test_skipping_a_step_is_illegal(self):
        machine = StateMachine()

        with pytest.raises(ValueError):
            machine.advance(DeploymentState.DEPLOYED)

    def test_terminal_states_do_not_move(self):
        machine = StateMachine()
        machine.advance(DeploymentState.FAILED)

        with pytest.raises(ValueError):
            machine.advance(DeploymentState.PROVISIONED)


def _pipeline(provider, timeout=30.0):
    return DeploymentPipeline(
        provider,
        binder=IdentityBinder(provider, sleep=AsyncMock()),
        driver=DeploymentDriver(provider, health_timeout=timeout, health_interval=10.0, sleep=AsyncMock()),
    )


def _provider():
    provider = FakeControlPlane()
    provider.images.add("crmacr.fake.io/twentycrm:v1")
    return provider


@pytest.mark.asyncio
async def test_full_run_reaches_healthy(manifest_file):
    manifest = load_manifest(manifest_file)
    provider = _provider()
    pipeline = _pipeline(provider)

    with respx.mock:
        respx.get("https://crm-app--r1.fake.test/healthz").mock(return_value=Response(200))
        outcome = await pipeline.run(manifest, "twentycrm:v1", {"SERVER_URL": "https://crm"}, {})

    assert outcome.state is DeploymentState.HEALTHY
    assert [s for s, _ in pipeline.machine.history] == [
        DeploymentState.PLANNED,
        DeploymentState.PROVISIONED,
        DeploymentState.IDENTITY_BOUND,
        DeploymentState.DEPLOYED,
        DeploymentState.HEALTHY,
    ]
    assert outcome.plan.names()[-1] == "crm-app"
    assert outcome.binding.total == 2
    assert {g.scope for g in provider.assignments} == {
        "/fake/registry/crmacr",
        "/fake/database/crm-db",
    }
    assert outcome.to_dict()["state"] == "healthy"


@pytest.mark.asyncio
async def test_rerun_is_idempotent_for_infrastructure_and_grants(manifest_file):
    manifest = load_manifest(manifest_file)
    provider = _provider()

    with respx.mock:
        respx.get("https://crm-app--r1.fake.test/healthz").mock(return_value=Response(200))
        respx.get("https://crm-app--r2.fake.test/healthz").mock(return_value=Response(200))
        await _pipeline(provider).run(manifest, "twentycrm:v1", {"SERVER_URL": "x"}, {})
        provider.calls.clear()
        outcome = await _pipeline(provider).run(manifest, "twentycrm:v1", {"SERVER_URL": "x"}, {})

    assert provider.mutations == []
    assert not any(c[0] == "grant" for c in provider.calls)
    assert len(outcome.binding.already_held) == 2
    assert len(provider.assignments) == 2


@pytest.mark.asyncio
async def test_provisioning_failure_moves_to_failed(manifest_file):
    manifest = load_manifest(manifest_file)
    provider = _provider()
    provider.fail_on.add("crm-db")
    pipeline = _pipeline(provider)

    with pytest.raises(ProvisioningError):
        await pipeline.run(manifest, "twentycrm:v1", {"SERVER_URL": "x"}, {})

    assert pipeline.machine.state is DeploymentState.FAILED
    assert [s for s, _ in pipeline.machine.history][-2] is DeploymentState.PLANNED


@pytest.mark.asyncio
async def test_unhealthy_deploy_fails_without_rolling_back_infrastructure(manifest_file):
    manifest = load_manifest(manifest_file)
    provider = _provider()
    pipeline = _pipeline(provider, timeout=0.0)

    with respx.mock:
        respx.get("https://crm-app--r1.fake.test/healthz").mock(return_value=Response(500))
        with pytest.raises(DeploymentHealthError):
            await pipeline.run(manifest, "twentycrm:v1", {"SERVER_URL": "x"}, {})

    assert pipeline.machine.state is DeploymentState.FAILED
    assert [s for s, _ in pipeline.machine.history][-2] is DeploymentState.DEPLOYED
    assert "crm-db" in provider.existing
