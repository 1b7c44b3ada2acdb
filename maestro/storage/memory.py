"""In-process state store."""

import logging
from typing import Any, Optional, TypeVar

from pydantic import BaseModel

from maestro.app.models import Agent, Alert, Task
from maestro.storage.base import StateStore

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _apply_changes(record: ModelT, changes: dict[str, Any]) -> ModelT:
    """Validate a partial update against the record's model."""
    data = record.model_dump()
    data.update(changes)
    return type(record).model_validate(data)


class InMemoryStore(StateStore):
    """
    Dictionary-backed store.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self._tasks: dict[str, Task] = {}
        self._agents: dict[str, Agent] = {}
        self._alerts: list[Alert] = []

    async def list_tasks(self, project_id: Optional[str] = None) -> list[Task]:
        return [
            task.model_copy(deep=True)
            for task in self._tasks.values()
            if project_id is None or task.project_id == project_id
        ]

    async def get_task(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def save_task(self, task: Task) -> Task:
        self._tasks[task.id] = task.model_copy(deep=True)
        return task

    async def update_task(self, task_id: str, **changes: Any) -> Optional[Task]:
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning(f"Task {task_id} not found for update")
            return None

        updated = _apply_changes(task, changes)
        self._tasks[task_id] = updated
        return updated.model_copy(deep=True)

    async def list_agents(self, project_id: Optional[str] = None) -> list[Agent]:
        return [
            agent.model_copy(deep=True)
            for agent in self._agents.values()
            if project_id is None or agent.project_id == project_id
        ]

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def save_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = agent.model_copy(deep=True)
        return agent

    async def update_agent(self, agent_id: str, **changes: Any) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        if agent is None:
            logger.warning(f"Agent {agent_id} not found for update")
            return None

        updated = _apply_changes(agent, changes)
        self._agents[agent_id] = updated
        return updated.model_copy(deep=True)

    async def list_alerts(self) -> list[Alert]:
        return [alert.model_copy(deep=True) for alert in self._alerts]

    async def append_alert(self, alert: Alert) -> None:
        self._alerts.append(alert.model_copy(deep=True))

    async def replace_alerts(self, alerts: list[Alert]) -> None:
        self._alerts = [alert.model_copy(deep=True) for alert in alerts]
