"""State store interface and implementations."""

from maestro.storage.base import StateStore, StoreError
from maestro.storage.memory import InMemoryStore
from maestro.storage.redis_store import RedisStore

__all__ = [
    "StateStore",
    "StoreError",
    "InMemoryStore",
    "RedisStore",
]
