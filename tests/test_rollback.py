"""Tests for the rollback controller."""

import pytest
from fake_provider import FakeControlPlane

from shipwright.core.errors import ExitCode, NoPriorRevisionError
from shipwright.orchestration.rollback import RollbackController, select_target

APP = "crm-app"


def _provider_with_history():
    provider = FakeControlPlane()
    provider.add_revision(APP, "crm-app--v1", "acr/crm:v1", weight=0, active=False, minutes=0)
    provider.add_revision(APP, "crm-app--v2", "acr/crm:v2", weight=0, active=True, minutes=10)
    provider.add_revision(APP, "crm-app--v3", "acr/crm:v3", weight=100, active=True, minutes=20)
    return provider


@pytest.mark.asyncio
async def test_rolls_back_to_most_recent_prior_revision():
    provider = _provider_with_history()

    result = await RollbackController(provider).rollback(APP)

    assert result.changed
    assert result.target == "crm-app--v2"
    assert result.previous == "crm-app--v3"
    assert provider.weights(APP) == {"crm-app--v1": 0, "crm-app--v2": 100, "crm-app--v3": 0}


@pytest.mark.asyncio
async def test_named_inactive_revision_is_reactivated_first():
    provider = _provider_with_history()

    result = await RollbackController(provider).rollback(APP, "crm-app--v1")

    assert result.reactivated
    assert provider.revisions[APP]["crm-app--v1"].active
    assert provider.weights(APP)["crm-app--v1"] == 100
    activate = provider.calls.index(("activate", "crm-app--v1"))
    traffic = next(i for i, c in enumerate(provider.calls) if c[0] == "traffic")
    assert activate < traffic


@pytest.mark.asyncio
async def test_rollback_to_current_holder_is_a_noop():
    provider = _provider_with_history()

    result = await RollbackController(provider).rollback(APP, "crm-app--v3")

    assert not result.changed
    assert not any(c[0] == "traffic" for c in provider.calls)


@pytest.mark.asyncio
async def test_single_revision_has_nothing_to_roll_back_to():
    provider = FakeControlPlane()
    provider.add_revision(APP, "crm-app--v1", "acr/crm:v1", weight=100)

    with pytest.raises(NoPriorRevisionError) as exc_info:
        await RollbackController(provider).rollback(APP)

    assert exc_info.value.exit_code == ExitCode.ROLLBACK_ERROR
    assert exc_info.value.app == APP


@pytest.mark.asyncio
async def test_unknown_revision_name_is_rejected():
    provider = _provider_with_history()

    with pytest.raises(NoPriorRevisionError) as exc_info:
        await RollbackController(provider).rollback(APP, "crm-app--nope")

    assert exc_info.value.details["revision"] == "crm-app--nope"


def test_withdrawn_revision_leaves_current_holder_as_target():
    provider = FakeControlPlane()
    provider.add_revision(APP, "old", "i:1", weight=0, minutes=0)
    provider.add_revision(APP, "current", "i:2", weight=100, minutes=10)
    provider.add_revision(APP, "failed", "i:3", weight=0, active=False, minutes=20)

    target = select_target(APP, list(provider.revisions[APP].values()))

    assert target.name == "current"


def test_active_revisions_are_preferred():
    provider = FakeControlPlane()
    provider.add_revision(APP, "older-active", "i:1", weight=0, active=True, minutes=0)
    provider.add_revision(APP, "newer-inactive", "i:2", weight=0, active=False, minutes=5)
    provider.add_revision(APP, "current", "i:3", weight=100, minutes=10)

    target = select_target(APP, list(provider.revisions[APP].values()))

    assert target.name == "older-active"


@pytest.mark.asyncio
async def test_repeated_rollback_stays_on_the_same_revision():
    provider = FakeControlPlane()
    provider.add_revision(APP, "crm-app--placeholder", "quickstart:latest", weight=0, minutes=0)
    provider.add_revision(APP, "crm-app--v1", "acr/crm:v1", weight=0, minutes=10)
    provider.add_revision(APP, "crm-app--v2", "acr/crm:v2", weight=100, minutes=20)
    controller = RollbackController(provider)

    first = await controller.rollback(APP)
    second = await controller.rollback(APP)

    assert first.target == "crm-app--v1"
    assert first.changed
    assert second.target == "crm-app--v1"
    assert not second.changed
    assert provider.weights(APP) == {"crm-app--placeholder": 0, "crm-app--v1": 100, "crm-app--v2": 0}


@pytest.mark.asyncio
async def test_rollback_after_failed_deploy_is_a_noop():
    provider = FakeControlPlane()
    provider.add_revision(APP, "crm-app--v1", "acr/crm:v1", weight=100, minutes=0)
    provider.add_revision(APP, "crm-app--v2", "acr/crm:v2", weight=0, active=False, minutes=10)

    result = await RollbackController(provider).rollback(APP)

    assert result.target == "crm-app--v1"
    assert not result.changed
    assert not any(c[0] == "traffic" for c in provider.calls)
