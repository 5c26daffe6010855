"""Grants the compute identity the roles it needs, then waits for them to propagate."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

import structlog

from shipwright.core.errors import GrantTimeoutError
from shipwright.providers.base import ControlPlane
from shipwright.specs.models import IdentityGrant

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]

# Upper bound for a single wait between confirmation polls
MAX_BACKOFF_SECONDS = 60.0


@dataclass
class BindingResult:
    granted: list[IdentityGrant] = field(default_factory=list)
    already_held: list[IdentityGrant] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.granted) + len(self.already_held)


class IdentityBinder:
    """Ensures a principal holds each requested role on each target scope.

    Role assignments are eventually consistent, so a freshly created one is
    polled until the provider lists it. Held roles are skipped, which makes
    re-running the binder free of side effects.
    """

    def __init__(
        self,
        provider: ControlPlane,
        *,
        max_attempts: int = 8,
        backoff_seconds: float = 2.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._provider = provider
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._sleep = sleep

    async def bind(self, principal_id: str, targets: Sequence[tuple[str, str]]) -> BindingResult:
        """Grant ``role`` on ``scope`` for every (scope, role) pair."""
        result = BindingResult()
        for scope, role in targets:
            grant = IdentityGrant(principal_id=principal_id, scope=scope, role=role)
            if await self._held(grant):
                logger.info("grant_already_held", scope=scope, role=role, principal_id=principal_id)
                result.already_held.append(grant)
                continue

            await self._provider.create_role_assignment(grant)
            logger.info("grant_created", scope=scope, role=role, principal_id=principal_id)
            await self._confirm(grant)
            result.granted.append(grant)
        return result

    async def _held(self, grant: IdentityGrant) -> bool:
        assignments = await self._provider.list_role_assignments(grant.principal_id, grant.scope)
        return any(a.role.lower() == grant.role.lower() for a in assignments)

    async def _confirm(self, grant: IdentityGrant) -> None:
        delay = self._backoff
        for attempt in range(1, self._max_attempts + 1):
            if await self._held(grant):
                logger.info("grant_confirmed", scope=grant.scope, role=grant.role, attempts=attempt)
                return
            if attempt < self._max_attempts:
                logger.debug("grant_pending", scope=grant.scope, role=grant.role, attempt=attempt)
                await self._sleep(delay)
                delay = min(delay * 2, MAX_BACKOFF_SECONDS)

        raise GrantTimeoutError(grant.principal_id, grant.scope, grant.role, self._max_attempts)
