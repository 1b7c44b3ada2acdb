"""Agent registration, poll tracking and performance metrics."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

from maestro.app.config import Settings
from maestro.app.models import Agent, AgentStatus, AgentType, AgentWorkload, TaskStatus, utcnow
from maestro.orchestrator.health_monitor import calculate_health_score
from maestro.storage import StateStore

logger = logging.getLogger(__name__)

DEFAULT_AVERAGE_TASK_MS = 30 * 60 * 1000

# Weight of the newest duration in the moving average
DURATION_EMA_ALPHA = 0.3


class AgentRegistry:
    """
    Write path for agent records.

    Store errors propagate to the caller; this is the API-facing side,
    not part of the orchestration cycle.
    """

    def __init__(
        self,
        store: StateStore,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.config = config or Settings()
        self.clock = clock

    async def register(self, agent: Agent) -> Agent:
        """
        Register an agent, filling in performance defaults.

        Args:
            agent: Agent to register; id and project_id are required

        Returns:
            The stored agent

        Raises:
            ValueError: If id or project_id is blank
        """
        if not agent.id.strip() or not agent.project_id.strip():
            raise ValueError("Missing required agent fields: id, project_id")

        defaults = {}
        if agent.average_task_duration_ms is None:
            defaults["average_task_duration_ms"] = DEFAULT_AVERAGE_TASK_MS
        if not agent.name:
            defaults["name"] = f"{agent.agent_type.value} agent {agent.id}"

        registered = agent.model_copy(update=defaults)
        await self.store.save_agent(registered)

        logger.info(f"Registered {registered.agent_type.value} agent: {registered.id}")
        return registered

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return await self.store.get_agent(agent_id)

    async def list_agents(self, project_id: Optional[str] = None) -> list[Agent]:
        return await self.store.list_agents(project_id)

    async def agents_by_type(
        self,
        agent_type: AgentType,
        include_offline: bool = False
    ) -> list[Agent]:
        """Agents of one type; by default only those polled within the recent window."""
        cutoff = self.clock() - timedelta(minutes=self.config.recent_poll_minutes)
        return [
            agent
            for agent in await self.store.list_agents()
            if agent.agent_type == agent_type
            and (include_offline or (agent.last_poll_at is not None and agent.last_poll_at >= cutoff))
        ]

    async def record_poll(
        self,
        agent_id: str,
        status: AgentStatus = AgentStatus.ACTIVE
    ) -> Optional[Agent]:
        """Record a poll (heartbeat) from an agent."""
        return await self.store.update_agent(
            agent_id,
            status=status,
            last_poll_at=self.clock(),
        )

    async def set_current_task(self, agent_id: str, task_id: Optional[str]) -> Optional[Agent]:
        """Point an agent at a task (active) or clear it (idle)."""
        return await self.store.update_agent(
            agent_id,
            current_task_id=task_id,
            status=AgentStatus.ACTIVE if task_id else AgentStatus.IDLE,
        )

    async def record_task_result(
        self,
        agent_id: str,
        success: bool,
        duration_ms: int
    ) -> Optional[Agent]:
        """
        Update counters, success rate, moving-average duration and health score.

        Args:
            agent_id: Agent that finished a task
            success: Whether the task succeeded
            duration_ms: Task duration in milliseconds

        Returns:
            Updated agent, or None if unknown
        """
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            logger.warning(f"Task result for unknown agent {agent_id}")
            return None

        completed = agent.tasks_completed + (1 if success else 0)
        failed = agent.tasks_failed + (0 if success else 1)

        current_avg = agent.average_task_duration_ms or duration_ms
        average = round(current_avg * (1 - DURATION_EMA_ALPHA) + duration_ms * DURATION_EMA_ALPHA)

        updated = agent.model_copy(update={
            "tasks_completed": completed,
            "tasks_failed": failed,
            "success_rate": completed / (completed + failed),
            "average_task_duration_ms": average,
        })
        health_score = calculate_health_score(updated, self.clock(), self.config)

        return await self.store.update_agent(
            agent_id,
            tasks_completed=completed,
            tasks_failed=failed,
            success_rate=updated.success_rate,
            average_task_duration_ms=average,
            health_score=health_score,
        )

    async def update_health_score(self, agent_id: str) -> Optional[int]:
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            return None

        score = calculate_health_score(agent, self.clock(), self.config)
        await self.store.update_agent(agent_id, health_score=score)
        return score

    async def agent_workload(self, agent_id: str) -> AgentWorkload:
        tasks = [t for t in await self.store.list_tasks() if t.assigned_to_agent == agent_id]
        return AgentWorkload(
            agent_id=agent_id,
            total=len(tasks),
            in_progress=sum(1 for t in tasks if t.status == TaskStatus.IN_PROGRESS),
            todo=sum(1 for t in tasks if t.status == TaskStatus.TODO),
        )
