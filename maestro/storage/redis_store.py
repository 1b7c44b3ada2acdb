"""Redis-backed state store."""

import json
import logging
from typing import Any, Optional, TypeVar

import redis.asyncio as redis
from pydantic import BaseModel

from maestro.app.models import Agent, Alert, Task
from maestro.storage.base import StateStore, StoreError
from maestro.storage.memory import _apply_changes

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

TASK_INDEX = "maestro:tasks"
AGENT_INDEX = "maestro:agents"
ALERT_HISTORY = "maestro:alerts"


def to_hash(record: BaseModel) -> dict[str, str]:
    """Encode a model as a flat Redis hash (one JSON value per field)."""
    return {
        field: json.dumps(value)
        for field, value in record.model_dump(mode="json").items()
    }


def from_hash(model: type[ModelT], data: dict[bytes, bytes]) -> ModelT:
    """Decode a Redis hash written by to_hash."""
    return model.model_validate({
        key.decode(): json.loads(value)
        for key, value in data.items()
    })


class RedisStore(StateStore):
    """
    State store using one Redis hash per task/agent.

    Keys:
        maestro:task:{id}, maestro:agent:{id} - record hashes
        maestro:tasks, maestro:agents         - id index sets
        maestro:alerts                        - alert history list (JSON)
    """

    def __init__(self, redis_client: redis.Redis):
        """
        Initialize Redis store.

        Args:
            redis_client: Redis async client
        """
        self.redis = redis_client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.from_url(url))

    async def list_tasks(self, project_id: Optional[str] = None) -> list[Task]:
        tasks = await self._list(TASK_INDEX, "task", Task)
        return [t for t in tasks if project_id is None or t.project_id == project_id]

    async def get_task(self, task_id: str) -> Optional[Task]:
        return await self._get(f"maestro:task:{task_id}", Task)

    async def save_task(self, task: Task) -> Task:
        await self._save(f"maestro:task:{task.id}", TASK_INDEX, task.id, task)
        return task

    async def update_task(self, task_id: str, **changes: Any) -> Optional[Task]:
        return await self._update(f"maestro:task:{task_id}", Task, changes)

    async def list_agents(self, project_id: Optional[str] = None) -> list[Agent]:
        agents = await self._list(AGENT_INDEX, "agent", Agent)
        return [a for a in agents if project_id is None or a.project_id == project_id]

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return await self._get(f"maestro:agent:{agent_id}", Agent)

    async def save_agent(self, agent: Agent) -> Agent:
        await self._save(f"maestro:agent:{agent.id}", AGENT_INDEX, agent.id, agent)
        return agent

    async def update_agent(self, agent_id: str, **changes: Any) -> Optional[Agent]:
        return await self._update(f"maestro:agent:{agent_id}", Agent, changes)

    async def list_alerts(self) -> list[Alert]:
        try:
            raw = await self.redis.lrange(ALERT_HISTORY, 0, -1)
        except redis.RedisError as e:
            raise StoreError(f"Failed to read alert history: {e}") from e
        return [Alert.model_validate_json(item) for item in raw]

    async def append_alert(self, alert: Alert) -> None:
        try:
            await self.redis.rpush(ALERT_HISTORY, alert.model_dump_json())
        except redis.RedisError as e:
            raise StoreError(f"Failed to append alert {alert.type}: {e}") from e

    async def replace_alerts(self, alerts: list[Alert]) -> None:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.delete(ALERT_HISTORY)
                if alerts:
                    pipe.rpush(ALERT_HISTORY, *[a.model_dump_json() for a in alerts])
                await pipe.execute()
        except redis.RedisError as e:
            raise StoreError(f"Failed to rewrite alert history: {e}") from e

    async def close(self) -> None:
        await self.redis.aclose()

    async def _get(self, key: str, model: type[ModelT]) -> Optional[ModelT]:
        try:
            data = await self.redis.hgetall(key)
        except redis.RedisError as e:
            raise StoreError(f"Failed to read {key}: {e}") from e
        return from_hash(model, data) if data else None

    async def _list(self, index: str, kind: str, model: type[ModelT]) -> list[ModelT]:
        try:
            ids = await self.redis.smembers(index)
            records = []
            for record_id in sorted(i.decode() for i in ids):
                data = await self.redis.hgetall(f"maestro:{kind}:{record_id}")
                if data:
                    records.append(from_hash(model, data))
                else:
                    logger.warning(f"Index {index} references missing {kind} {record_id}")
        except redis.RedisError as e:
            raise StoreError(f"Failed to list {index}: {e}") from e
        return records

    async def _save(self, key: str, index: str, record_id: str, record: BaseModel) -> None:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.hset(key, mapping=to_hash(record))
                pipe.sadd(index, record_id)
                await pipe.execute()
        except redis.RedisError as e:
            raise StoreError(f"Failed to write {key}: {e}") from e

    async def _update(
        self,
        key: str,
        model: type[ModelT],
        changes: dict[str, Any]
    ) -> Optional[ModelT]:
        current = await self._get(key, model)
        if current is None:
            logger.warning(f"{key} not found for update")
            return None

        updated = _apply_changes(current, changes)
        encoded = to_hash(updated)
        # Changed fields only; other fields may have concurrent writers
        mapping = {field: encoded[field] for field in changes if field in encoded}
        if not mapping:
            return updated
        try:
            await self.redis.hset(key, mapping=mapping)
        except redis.RedisError as e:
            raise StoreError(f"Failed to update {key}: {e}") from e
        return updated
