"""Tests for per-integration single-flight locks."""

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import LockError

from calsync.errors import IntegrationBusyError
from calsync.services.locks import LocalIntegrationLocks, RedisIntegrationLocks


def redis_with_lock(acquired: bool) -> tuple[MagicMock, MagicMock]:
    lock = MagicMock()
    lock.acquire = AsyncMock(return_value=acquired)
    lock.release = AsyncMock()
    redis = MagicMock()
    redis.lock.return_value = lock
    return redis, lock


@pytest.mark.asyncio
async def test_redis_lock_timeout_raises_busy():
    redis, lock = redis_with_lock(acquired=False)
    locks = RedisIntegrationLocks(redis, ttl_seconds=5, wait_seconds=0.1)
    integration_id = uuid.uuid4()

    with pytest.raises(IntegrationBusyError):
        async with locks.hold(integration_id):
            pytest.fail("body must not run without the lock")

    redis.lock.assert_called_once_with(
        f"calsync:integration-lock:{integration_id}", timeout=5, blocking_timeout=0.1
    )
    lock.release.assert_not_awaited()


@pytest.mark.asyncio
async def test_redis_lock_released_after_body():
    redis, lock = redis_with_lock(acquired=True)
    locks = RedisIntegrationLocks(redis)

    async with locks.hold(uuid.uuid4()):
        lock.release.assert_not_awaited()

    lock.release.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_lock_expired_before_release_is_not_raised():
    redis, lock = redis_with_lock(acquired=True)
    lock.release.side_effect = LockError("Cannot release an unlocked lock")
    locks = RedisIntegrationLocks(redis)

    async with locks.hold(uuid.uuid4()):
        pass

    lock.release.assert_awaited_once()


@pytest.mark.asyncio
async def test_local_lock_serializes_same_integration():
    locks = LocalIntegrationLocks()
    integration_id = uuid.uuid4()
    order = []

    async def worker(name):
        async with locks.hold(integration_id):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a-in", "a-out", "b-in", "b-out"]


@pytest.mark.asyncio
async def test_local_lock_does_not_block_other_integrations():
    locks = LocalIntegrationLocks()
    order = []

    async def worker(name):
        async with locks.hold(uuid.uuid4()):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order[:2] == ["a-in", "b-in"]
