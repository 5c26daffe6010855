"""Rollback controller: moves traffic back to an earlier revision on request."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from shipwright.core.errors import NoPriorRevisionError
from shipwright.orchestration.deployment import traffic_holder
from shipwright.providers.base import ControlPlane
from shipwright.specs.models import Revision

logger = structlog.get_logger()


@dataclass(frozen=True)
class RollbackResult:
    app: str
    target: str
    previous: str | None
    changed: bool
    reactivated: bool = False


def select_target(app: str, revisions: list[Revision], explicit: str | None = None) -> Revision:
    """Pick the revision to roll back to.

    With no explicit name, this is the most recently created revision before
    the newest one, preferring ones that are still active. Traffic placement
    does not affect the choice.
    """
    if explicit:
        for rev in revisions:
            if rev.name == explicit:
                return rev
        raise NoPriorRevisionError(app, explicit)

    ordered = sorted(revisions, key=lambda rev: rev.created_at, reverse=True)
    candidates = ordered[1:]
    if not candidates:
        raise NoPriorRevisionError(app)

    active = [rev for rev in candidates if rev.active]
    return active[0] if active else candidates[0]


class RollbackController:
    def __init__(self, provider: ControlPlane) -> None:
        self._provider = provider

    async def rollback(self, app: str, revision: str | None = None) -> RollbackResult:
        revisions = await self._provider.list_revisions(app)
        current = traffic_holder(revisions)
        target = select_target(app, revisions, revision)

        if target.traffic_weight == 100:
            logger.info("rollback_noop", app=app, revision=target.name)
            return RollbackResult(app=app, target=target.name, previous=target.name, changed=False)

        reactivated = False
        if not target.active:
            await self._provider.activate_revision(app, target.name)
            reactivated = True
            logger.info("revision_activated", app=app, revision=target.name)

        await self._provider.set_traffic(app, {target.name: 100})
        logger.info(
            "rollback_completed",
            app=app,
            revision=target.name,
            previous=current.name if current else None,
        )
        return RollbackResult(
            app=app,
            target=target.name,
            previous=current.name if current else None,
            changed=True,
            reactivated=reactivated,
        )
