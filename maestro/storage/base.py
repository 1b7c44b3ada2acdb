"""Repository interface for task, agent and alert state."""

from abc import ABC, abstractmethod
from typing import Any, Optional

from maestro.app.models import Agent, Alert, Task


class StateStore(ABC):
    """
    Persistence collaborator used by every orchestration component.

    Implementations must provide atomic per-record reads and writes. Update
    methods return the updated record, or None when it does not exist.
    Backend failures are raised as StoreError.
    """

    @abstractmethod
    async def list_tasks(self, project_id: Optional[str] = None) -> list[Task]:
        pass

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        pass

    @abstractmethod
    async def save_task(self, task: Task) -> Task:
        pass

    @abstractmethod
    async def update_task(self, task_id: str, **changes: Any) -> Optional[Task]:
        pass

    @abstractmethod
    async def list_agents(self, project_id: Optional[str] = None) -> list[Agent]:
        pass

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        pass

    @abstractmethod
    async def save_agent(self, agent: Agent) -> Agent:
        pass

    @abstractmethod
    async def update_agent(self, agent_id: str, **changes: Any) -> Optional[Agent]:
        pass

    @abstractmethod
    async def list_alerts(self) -> list[Alert]:
        """Alert history, oldest first."""
        pass

    @abstractmethod
    async def append_alert(self, alert: Alert) -> None:
        pass

    @abstractmethod
    async def replace_alerts(self, alerts: list[Alert]) -> None:
        """Overwrite alert history (used for pruning and dismissal)."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        return None


class StoreError(Exception):
    """Raised when the state store cannot be read or written."""
    pass
