"""
Best-effort advisory lock stored as a tag on the provider scope.

Two concurrent invocations against the same resource group would race on
the same plan, so every mutating command holds this lock. Tags are not a
compare-and-swap primitive; the lock re-reads after writing and gives up if
another run's marker won.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog

from shipwright.core.errors import ConcurrentRunError
from shipwright.providers.base import ControlPlane

logger = structlog.get_logger()

LOCK_TAG = "shipwright-lock"
DEFAULT_TTL_SECONDS = 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LockHolder:
    run_id: str
    acquired_at: datetime

    def encode(self) -> str:
        return f"{self.run_id}@{self.acquired_at.isoformat()}"

    @classmethod
    def decode(cls, value: str | None) -> "LockHolder | None":
        if not value:
            return None
        run_id, sep, stamp = value.rpartition("@")
        if not sep:
            # Unparseable marker: treat as held since an unknown time
            return cls(run_id=value, acquired_at=datetime.min.replace(tzinfo=timezone.utc))
        try:
            acquired_at = datetime.fromisoformat(stamp)
        except ValueError:
            acquired_at = datetime.min.replace(tzinfo=timezone.utc)
        if acquired_at.tzinfo is None:
            acquired_at = acquired_at.replace(tzinfo=timezone.utc)
        return cls(run_id=run_id, acquired_at=acquired_at)

    def stale(self, now: datetime, ttl_seconds: int) -> bool:
        return now - self.acquired_at > timedelta(seconds=ttl_seconds)


class RunLock:
    """Async context manager holding the advisory lock for one run."""

    def __init__(
        self,
        provider: ControlPlane,
        run_id: str,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._provider = provider
        self._run_id = run_id
        self._ttl = ttl_seconds
        self._clock = clock
        self._marker: str | None = None

    @property
    def held(self) -> bool:
        return self._marker is not None

    async def acquire(self) -> None:
        scope = self._provider.lock_scope
        current = LockHolder.decode((await self._provider.read_tags()).get(LOCK_TAG))
        now = self._clock()

        if current is not None and current.run_id != self._run_id:
            if not current.stale(now, self._ttl):
                raise ConcurrentRunError(current.encode(), scope)
            logger.warning(
                "lock_stale_takeover",
                scope=scope,
                previous_holder=current.encode(),
                ttl_seconds=self._ttl,
            )

        marker = LockHolder(run_id=self._run_id, acquired_at=now).encode()
        await self._provider.merge_tags({LOCK_TAG: marker})

        confirmed = (await self._provider.read_tags()).get(LOCK_TAG)
        if confirmed != marker:
            raise ConcurrentRunError(confirmed or "unknown", scope)

        self._marker = marker
        logger.info("lock_acquired", scope=scope, run_id=self._run_id)

    async def release(self) -> None:
        if self._marker is None:
            return
        marker, self._marker = self._marker, None
        current = (await self._provider.read_tags()).get(LOCK_TAG)
        if current != marker:
            logger.warning("lock_lost", scope=self._provider.lock_scope, holder=current)
            return
        await self._provider.delete_tags({LOCK_TAG: marker})
        logger.info("lock_released", scope=self._provider.lock_scope, run_id=self._run_id)

    async def __aenter__(self) -> "RunLock":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.release()


async def read_lock(provider: ControlPlane) -> LockHolder | None:
    return LockHolder.decode((await provider.read_tags()).get(LOCK_TAG))


async def force_unlock(provider: ControlPlane) -> LockHolder | None:
    """Remove the lock marker regardless of holder; returns the removed holder."""
    tags = await provider.read_tags()
    value = tags.get(LOCK_TAG)
    if value is None:
        return None
    await provider.delete_tags({LOCK_TAG: value})
    logger.warning("lock_forced_release", scope=provider.lock_scope, holder=value)
    return LockHolder.decode(value)
