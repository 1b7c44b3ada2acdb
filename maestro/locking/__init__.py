"""Distributed locking."""

from maestro.locking.redis_lock import Lock, LockContext, RedisLock

__all__ = ["Lock", "LockContext", "RedisLock"]
