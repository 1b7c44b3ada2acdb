"""Distributed assignment locking using Redis."""

import logging
import time
import uuid
from typing import Optional

import redis.asyncio as redis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Only the holder (matching lock_id) may delete the key
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class Lock(BaseModel):
    """Represents an acquired lock."""
    resource: str
    lock_id: str
    acquired_at: float


class RedisLock:
    """Short-lived distributed locks guarding read-pick-write sequences."""

    def __init__(self, redis_client: redis.Redis, namespace: str = "maestro:lock"):
        """
        Initialize Redis lock manager.

        Args:
            redis_client: Redis async client
            namespace: Key prefix for lock keys
        """
        self.redis = redis_client
        self.namespace = namespace

    async def try_acquire(self, resource: str, ttl: int = 30) -> Optional[Lock]:
        """
        Acquire lock using Redis SET NX EX without waiting.

        Args:
            resource: Resource to lock (e.g., "assignment:task-42")
            ttl: Lock expiry in seconds, bounds how long a crashed holder blocks others

        Returns:
            Lock if acquired, None if another process holds it
        """
        lock_id = str(uuid.uuid4())
        acquired = await self.redis.set(
            f"{self.namespace}:{resource}",
            lock_id,
            ex=ttl,
            nx=True
        )

        if not acquired:
            logger.debug(f"Lock {resource} is held by another process")
            return None

        logger.debug(f"Acquired lock: {resource} (lock_id: {lock_id})")
        return Lock(resource=resource, lock_id=lock_id, acquired_at=time.time())

    async def release(self, lock: Lock) -> bool:
        """
        Release lock atomically.

        Args:
            lock: Lock object to release

        Returns:
            True if lock was released, False if it expired or changed hands
        """
        result = await self.redis.eval(
            RELEASE_SCRIPT,
            1,
            f"{self.namespace}:{lock.resource}",
            lock.lock_id
        )

        if result:
            logger.debug(f"Released lock: {lock.resource}")
            return True

        logger.warning(
            f"Failed to release lock {lock.resource}: "
            f"lock_id mismatch or already expired"
        )
        return False


class LockContext:
    """
    Async context manager around try_acquire.

    Yields the Lock, or None when the resource is busy; the caller decides
    what to do in that case. Release happens on exit only if acquired.
    """

    def __init__(self, lock_manager: RedisLock, resource: str, ttl: int = 30):
        self.lock_manager = lock_manager
        self.resource = resource
        self.ttl = ttl
        self.lock: Optional[Lock] = None

    async def __aenter__(self) -> Optional[Lock]:
        self.lock = await self.lock_manager.try_acquire(self.resource, ttl=self.ttl)
        return self.lock

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.lock:
            try:
                await self.lock_manager.release(self.lock)
            except redis.RedisError as e:
                # Key expires on its own after ttl
                logger.error(f"Failed to release lock {self.lock.resource}: {e}")
