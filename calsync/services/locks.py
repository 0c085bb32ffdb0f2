"""Per-integration single-flight locks.

Two triggers for the same integration (a webhook and a scheduled sync, say) must
not both refresh and persist a token. The API process uses Redis so Celery
workers and web workers share the lock; tests and single-process runs use the
in-memory variant.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from redis.exceptions import LockError

from calsync.errors import IntegrationBusyError

logger = logging.getLogger(__name__)


class IntegrationLocks(ABC):
    @abstractmethod
    def hold(self, integration_id: uuid.UUID):
        """Async context manager held around reload → decrypt → call → persist."""
        ...


class LocalIntegrationLocks(IntegrationLocks):
    def __init__(self) -> None:
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, integration_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(integration_id, asyncio.Lock())
        async with lock:
            yield


class RedisIntegrationLocks(IntegrationLocks):
    def __init__(self, redis: aioredis.Redis, ttl_seconds: float = 120, wait_seconds: float = 60) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._wait = wait_seconds

    @asynccontextmanager
    async def hold(self, integration_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"calsync:integration-lock:{integration_id}",
            timeout=self._ttl,
            blocking_timeout=self._wait,
        )
        if not await lock.acquire():
            raise IntegrationBusyError(f"Timed out waiting for integration {integration_id}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # TTL expired mid-operation; another holder may own it now
                logger.warning("Integration lock %s expired before release", integration_id)
