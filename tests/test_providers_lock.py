"""Tests for providers/lock.py.

Tests for the advisory run lock stored as a resource-group tag.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fake_provider import FakeControlPlane

from shipwright.core.errors import ConcurrentRunError, ExitCode
from shipwright.providers.lock import LOCK_TAG, LockHolder, RunLock, force_unlock, read_lock

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _clock():
    return NOW


class TestLockHolder:
    def test_encode_decode(self):
        holder = LockHolder("run-1", NOW)

        assert LockHolder.decode(holder.encode()) == holder

    def test_decode_empty(self):
        assert LockHolder.decode(None) is None
        assert LockHolder.decode("") is None

    def test_decode_naive_timestamp_is_utc(self):
        holder = LockHolder.decode("run-1@2024-06-01T12:00:00")

        assert holder.acquired_at == NOW

    def test_unparseable_marker_is_stale(self):
        holder = LockHolder.decode("garbage")

        assert holder.run_id == "garbage"
        assert holder.stale(NOW, 3600)

    def test_stale_after_ttl(self):
        holder = LockHolder("run-1", NOW - timedelta(hours=2))

        assert holder.stale(NOW, 3600)
        assert not holder.stale(NOW, 3 * 3600)


@pytest.mark.asyncio
async def test_acquire_and_release():
    provider = FakeControlPlane()

    async with RunLock(provider, "run-1", clock=_clock) as lock:
        assert lock.held
        assert provider.tags[LOCK_TAG] == f"run-1@{NOW.isoformat()}"

    assert LOCK_TAG not in provider.tags


@pytest.mark.asyncio
async def test_live_holder_blocks_second_run():
    provider = FakeControlPlane(tags={LOCK_TAG: LockHolder("run-1", NOW - timedelta(minutes=5)).encode()})

    with pytest.raises(ConcurrentRunError) as exc_info:
        await RunLock(provider, "run-2", clock=_clock).acquire()

    assert exc_info.value.exit_code == ExitCode.CONCURRENT_RUN
    assert "run-1" in exc_info.value.holder
    assert provider.tags[LOCK_TAG].startswith("run-1@")


@pytest.mark.asyncio
async def test_stale_lock_is_taken_over():
    provider = FakeControlPlane(tags={LOCK_TAG: LockHolder("crashed", NOW - timedelta(hours=3)).encode()})

    lock = RunLock(provider, "run-2", ttl_seconds=3600, clock=_clock)
    await lock.acquire()

    assert provider.tags[LOCK_TAG].startswith("run-2@")


@pytest.mark.asyncio
async def test_lock_released_when_body_raises():
    provider = FakeControlPlane()

    with pytest.raises(RuntimeError):
        async with RunLock(provider, "run-1", clock=_clock):
            raise RuntimeError("boom")

    assert LOCK_TAG not in provider.tags


@pytest.mark.asyncio
async def test_lost_race_is_detected_on_reread():
    provider = FakeControlPlane()
    original_merge = provider.merge_tags

    async def racing_merge(tags):
        await original_merge(tags)
        # Another run writes right after us and wins
        provider.tags[LOCK_TAG] = LockHolder("run-other", NOW).encode()

    provider.merge_tags = racing_merge

    with pytest.raises(ConcurrentRunError):
        await RunLock(provider, "run-1", clock=_clock).acquire()


@pytest.mark.asyncio
async def test_release_leaves_someone_elses_lock_alone():
    provider = FakeControlPlane()
    lock = RunLock(provider, "run-1", clock=_clock)
    await lock.acquire()
    provider.tags[LOCK_TAG] = "run-2@" + NOW.isoformat()

    await lock.release()

    assert provider.tags[LOCK_TAG] == "run-2@" + NOW.isoformat()


@pytest.mark.asyncio
async def test_force_unlock_and_read_lock():
    provider = FakeControlPlane(tags={LOCK_TAG: "run-9@" + NOW.isoformat(), "owner": "crm"})

    assert (await read_lock(provider)).run_id == "run-9"
    released = await force_unlock(provider)

    assert released.run_id == "run-9"
    assert provider.tags == {"owner": "crm"}
    assert await force_unlock(provider) is None
