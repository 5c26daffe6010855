"""Convergence engine: drives observed provider state to the declared plan."""

from __future__ import annotations

import time
from typing import Any

import structlog

from shipwright.core.errors import ProvisioningError, ShipwrightError
from shipwright.orchestration.results import ChangeRecord, ConvergenceResult
from shipwright.providers.base import ControlPlane
from shipwright.specs.models import ObservedResource, Plan, ResourceSpec

logger = structlog.get_logger()


def _normalize(field: str, value: Any) -> Any:
    if field == "location" and isinstance(value, str):
        return value.replace(" ", "").lower()
    if isinstance(value, str):
        return value.lower()
    return value


def diff_tracked(spec: ResourceSpec, observed: ObservedResource) -> dict[str, tuple[Any, Any]]:
    """Tracked fields whose observed value differs from the desired one.

    A field is only compared when the manifest sets it and the provider
    reports it for this kind of resource.
    """
    current = observed.tracked()
    drift = {}
    for name, desired in spec.tracked().items():
        actual = current.get(name)
        if actual is None:
            continue
        if _normalize(name, desired) != _normalize(name, actual):
            drift[name] = (actual, desired)
    return drift


class ConvergenceEngine:
    """Applies a plan resource by resource, in order, stopping at the first failure."""

    def __init__(self, provider: ControlPlane) -> None:
        self._provider = provider

    async def converge(self, plan: Plan, *, dry_run: bool = False) -> ConvergenceResult:
        started = time.monotonic()
        result = ConvergenceResult(dry_run=dry_run)
        for spec in plan:
            result.changes.append(await self._converge_one(spec, dry_run=dry_run))
        result.duration_seconds = time.monotonic() - started
        logger.info(
            "convergence_finished",
            dry_run=dry_run,
            created=result.count("create"),
            updated=result.count("update"),
            unchanged=result.count("noop"),
        )
        return result

    async def _converge_one(self, spec: ResourceSpec, *, dry_run: bool) -> ChangeRecord:
        log = logger.bind(resource=spec.name, kind=str(spec.kind))
        try:
            observed = await self._provider.observe(spec)
        except ShipwrightError as e:
            raise ProvisioningError(spec.name, f"Could not read state of '{spec.name}': {e.message}") from e
        except Exception as e:
            raise ProvisioningError(spec.name, f"Could not read state of '{spec.name}': {e}") from e

        if observed is None:
            change = ChangeRecord(spec.name, str(spec.kind), "create", before=None, after=spec.tracked())
        else:
            drift = diff_tracked(spec, observed)
            if not drift:
                log.debug("resource_unchanged")
                return ChangeRecord(spec.name, str(spec.kind), "noop")
            change = ChangeRecord(
                spec.name,
                str(spec.kind),
                "update",
                before={name: old for name, (old, _) in drift.items()},
                after={name: new for name, (_, new) in drift.items()},
            )

        if dry_run:
            return change

        try:
            if change.action == "create":
                await self._provider.create(spec)
            else:
                assert observed is not None
                await self._provider.update(spec, observed)
        except ProvisioningError:
            log.error("resource_failed", action=change.action)
            raise
        except ShipwrightError as e:
            log.error("resource_failed", action=change.action, error=e.message)
            raise ProvisioningError(
                spec.name,
                f"Failed to {change.action} '{spec.name}': {e.message}",
                {"action": change.action},
            ) from e
        except Exception as e:
            log.error("resource_failed", action=change.action, error=str(e))
            raise ProvisioningError(
                spec.name,
                f"Failed to {change.action} '{spec.name}': {e}",
                {"action": change.action},
            ) from e

        log.info(
            "resource_created" if change.action == "create" else "resource_updated",
            before=change.before,
            after=change.after,
        )
        return change
