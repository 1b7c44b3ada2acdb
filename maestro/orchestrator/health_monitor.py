"""Agent health monitoring: stuck, idle and offline detection plus system health."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from maestro.app.config import Settings
from maestro.app.models import Agent, AgentStatus, Task, TaskStatus, utcnow
from maestro.storage import StateStore

logger = logging.getLogger(__name__)

# Assumed average duration for agents with no history
DEFAULT_TASK_DURATION_MS = 60 * 60 * 1000


class AgentHealthStatus(str, Enum):
    """Per-agent classification, worst first."""
    OFFLINE = "offline"
    STUCK = "stuck"
    DEGRADED = "degraded"
    IDLE = "idle"
    HEALTHY = "healthy"


class SystemHealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class SystemHealth(BaseModel):
    """Aggregate health over all agents."""
    total_agents: int = 0
    healthy: int = 0
    idle: int = 0
    stuck: int = 0
    offline: int = 0
    health_percentage: int = 0
    status: SystemHealthStatus = SystemHealthStatus.CRITICAL


class AgentHealthReport(BaseModel):
    """Issues and paired recommendations for one agent."""
    agent_id: str
    agent: Optional[Agent] = None
    status: AgentHealthStatus
    health_score: int = 0
    uptime: float = 0.0
    issues: list[str] = []
    recommendations: list[str] = []

    @property
    def needs_attention(self) -> bool:
        return bool(self.issues)


class HealthCheck(BaseModel):
    """Result of one full health pass."""
    system_health: SystemHealth
    healthy_agents: list[Agent] = []
    idle_agents: list[Agent] = []
    stuck_agents: list[Agent] = []
    offline_agents: list[Agent] = []
    critical_issues: list[str] = []
    timestamp: datetime = Field(default_factory=utcnow)


def calculate_health_score(
    agent: Agent,
    now: Optional[datetime] = None,
    config: Optional[Settings] = None
) -> int:
    """
    Composite health score for an agent.

    60 x success rate, plus response tier points (20 under 1h average task
    duration, 10 under 2h, else 5), plus uptime tier points (20 when polled
    within the offline window, 10 within the recent window, else 0).

    Args:
        agent: Agent to score
        now: Reference time (default: current UTC time)
        config: Settings providing the poll windows

    Returns:
        Integer score clamped to [0, 100]
    """
    config = config or Settings()
    now = now or utcnow()

    success_points = 60 * agent.success_rate

    duration_ms = agent.average_task_duration_ms
    if duration_ms is None:
        duration_ms = DEFAULT_TASK_DURATION_MS
    if duration_ms < 60 * 60 * 1000:
        response_points = 20
    elif duration_ms < 2 * 60 * 60 * 1000:
        response_points = 10
    else:
        response_points = 5

    uptime_points = 0
    if agent.last_poll_at is not None:
        since_poll = now - agent.last_poll_at
        if since_poll < timedelta(minutes=config.offline_minutes):
            uptime_points = 20
        elif since_poll < timedelta(minutes=config.recent_poll_minutes):
            uptime_points = 10

    score = round(success_points + response_points + uptime_points)
    return max(0, min(100, score))


class HealthMonitor:
    """
    Classifies agents and aggregates system health.

    Never raises: a failing store read is logged and the affected data is
    treated as unavailable (no agents, or agents with unknown tasks).
    """

    def __init__(
        self,
        store: StateStore,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize health monitor.

        Args:
            store: State store to read agents and tasks from
            config: Thresholds (default: Settings())
            clock: Returns the current time; injected for tests
        """
        self.store = store
        self.config = config or Settings()
        self.clock = clock

    async def _load_agents(self) -> list[Agent]:
        try:
            return await self.store.list_agents()
        except Exception as e:
            logger.error(f"Health check could not load agents: {e}")
            return []

    async def _load_tasks(self) -> dict[str, Task]:
        try:
            return {task.id: task for task in await self.store.list_tasks()}
        except Exception as e:
            logger.error(f"Health check could not load tasks: {e}")
            return {}

    def is_offline(self, agent: Agent, now: datetime) -> bool:
        if agent.last_poll_at is None:
            return True
        return now - agent.last_poll_at > timedelta(minutes=self.config.offline_minutes)

    def is_idle(self, agent: Agent) -> bool:
        return agent.status == AgentStatus.ACTIVE and not agent.current_task_id

    def is_stuck(self, agent: Agent, tasks: dict[str, Task], now: datetime) -> bool:
        if agent.status != AgentStatus.ACTIVE or not agent.current_task_id:
            return False

        task = tasks.get(agent.current_task_id)
        if task is None or task.status != TaskStatus.IN_PROGRESS or task.started_at is None:
            return False

        return now - task.started_at > timedelta(minutes=self.config.stuck_agent_minutes)

    def is_healthy(self, agent: Agent, tasks: dict[str, Task], now: datetime) -> bool:
        return (
            not self.is_offline(agent, now)
            and not self.is_stuck(agent, tasks, now)
            and agent.health_score > self.config.healthy_score_threshold
        )

    def classify(self, agent: Agent, tasks: dict[str, Task], now: datetime) -> AgentHealthStatus:
        """Single worst applicable classification."""
        if self.is_offline(agent, now):
            return AgentHealthStatus.OFFLINE
        if self.is_stuck(agent, tasks, now):
            return AgentHealthStatus.STUCK
        if agent.health_score <= self.config.healthy_score_threshold:
            return AgentHealthStatus.DEGRADED
        if self.is_idle(agent):
            return AgentHealthStatus.IDLE
        return AgentHealthStatus.HEALTHY

    async def get_stuck_agents(self) -> list[Agent]:
        now = self.clock()
        tasks = await self._load_tasks()
        return [a for a in await self._load_agents() if self.is_stuck(a, tasks, now)]

    async def get_idle_agents(self) -> list[Agent]:
        return [a for a in await self._load_agents() if self.is_idle(a)]

    async def get_offline_agents(self) -> list[Agent]:
        now = self.clock()
        return [a for a in await self._load_agents() if self.is_offline(a, now)]

    async def get_healthy_agents(self) -> list[Agent]:
        now = self.clock()
        tasks = await self._load_tasks()
        return [a for a in await self._load_agents() if self.is_healthy(a, tasks, now)]

    def _system_health(
        self,
        agents: list[Agent],
        tasks: dict[str, Task],
        now: datetime
    ) -> SystemHealth:
        if not agents:
            return SystemHealth()

        healthy = sum(1 for a in agents if self.is_healthy(a, tasks, now))
        percentage = healthy / len(agents) * 100

        if percentage >= 80:
            status = SystemHealthStatus.HEALTHY
        elif percentage >= 50:
            status = SystemHealthStatus.DEGRADED
        else:
            status = SystemHealthStatus.CRITICAL

        return SystemHealth(
            total_agents=len(agents),
            healthy=healthy,
            idle=sum(1 for a in agents if self.is_idle(a)),
            stuck=sum(1 for a in agents if self.is_stuck(a, tasks, now)),
            offline=sum(1 for a in agents if self.is_offline(a, now)),
            health_percentage=round(percentage),
            status=status,
        )

    async def get_system_health(self) -> SystemHealth:
        """
        Aggregate health: healthy / total as a rounded percentage.

        Returns:
            SystemHealth; zero agents is 0% and critical
        """
        tasks = await self._load_tasks()
        return self._system_health(await self._load_agents(), tasks, self.clock())

    def _report(
        self,
        agent: Agent,
        tasks: dict[str, Task],
        now: datetime
    ) -> AgentHealthReport:
        issues = []
        recommendations = []

        if self.is_offline(agent, now):
            issues.append(
                f"Agent has not polled in over {self.config.offline_minutes} minutes"
            )
            recommendations.append("Restart the agent process")
            recommendations.append("Check network connectivity")

        if self.is_stuck(agent, tasks, now):
            issues.append(
                f"Agent has been working on a task for >{self.config.stuck_agent_minutes} minutes"
            )
            recommendations.append("Review the current task for complexity or errors")
            recommendations.append("Consider reassigning the task to another agent")

        if self.is_idle(agent):
            issues.append("Agent is active but has no tasks assigned")
            recommendations.append("Assign tasks to this agent")
            recommendations.append("Consider if this agent type is needed")

        if agent.health_score < 50:
            issues.append(f"Low health score: {agent.health_score}/100")
            recommendations.append("Review agent performance metrics")
            recommendations.append("Check for recurring errors or failures")

        if agent.success_rate < 0.7:
            issues.append(f"Low success rate: {round(agent.success_rate * 100)}%")
            recommendations.append("Investigate common failure patterns")
            recommendations.append("Review task assignments for complexity")

        return AgentHealthReport(
            agent_id=agent.id,
            agent=agent,
            status=self.classify(agent, tasks, now),
            health_score=agent.health_score,
            uptime=self.calculate_uptime(agent, now),
            issues=issues,
            recommendations=recommendations,
        )

    async def get_agent_health_report(self, agent_id: str) -> AgentHealthReport:
        try:
            agent = await self.store.get_agent(agent_id)
        except Exception as e:
            logger.error(f"Could not load agent {agent_id}: {e}")
            agent = None

        if agent is None:
            return AgentHealthReport(
                agent_id=agent_id,
                status=AgentHealthStatus.OFFLINE,
                issues=["Agent not found"],
                recommendations=["Check if agent was deleted or deregistered"],
            )

        return self._report(agent, await self._load_tasks(), self.clock())

    async def run_health_check(self) -> HealthCheck:
        """
        Classify every agent from a single read of agents and tasks.

        Returns:
            HealthCheck with per-class agent lists and critical issues
        """
        now = self.clock()
        agents = await self._load_agents()
        tasks = await self._load_tasks()

        system_health = self._system_health(agents, tasks, now)
        offline = [a for a in agents if self.is_offline(a, now)]
        stuck = [a for a in agents if self.is_stuck(a, tasks, now)]

        critical_issues = []
        if agents and len(offline) == len(agents):
            critical_issues.append("ALL AGENTS OFFLINE - System is not operational")
        if system_health.status == SystemHealthStatus.CRITICAL:
            critical_issues.append(
                f"System health is critical: {system_health.health_percentage}%"
            )
        if len(stuck) > len(agents) * 0.5:
            critical_issues.append(
                f"Over 50% of agents are stuck ({len(stuck)}/{len(agents)})"
            )

        for issue in critical_issues:
            logger.warning(f"Critical health issue: {issue}")

        return HealthCheck(
            system_health=system_health,
            healthy_agents=[a for a in agents if self.is_healthy(a, tasks, now)],
            idle_agents=[a for a in agents if self.is_idle(a)],
            stuck_agents=stuck,
            offline_agents=offline,
            critical_issues=critical_issues,
            timestamp=now,
        )

    async def agents_needing_attention(self) -> list[Agent]:
        now = self.clock()
        tasks = await self._load_tasks()
        return [
            agent
            for agent in await self._load_agents()
            if self._report(agent, tasks, now).needs_attention
        ]

    async def refresh_health_scores(self) -> dict[str, int]:
        """
        Recompute and store every agent's health score.

        Returns:
            agent_id -> new score, for agents whose update succeeded
        """
        now = self.clock()
        scores = {}

        for agent in await self._load_agents():
            score = calculate_health_score(agent, now, self.config)
            if score == agent.health_score:
                scores[agent.id] = score
                continue
            try:
                if await self.store.update_agent(agent.id, health_score=score):
                    scores[agent.id] = score
            except Exception as e:
                logger.error(f"Failed to update health score for {agent.id}: {e}")

        return scores

    def calculate_uptime(self, agent: Agent, now: Optional[datetime] = None) -> float:
        """
        Approximate uptime percentage since registration.

        Polled within the offline window counts as fully up; otherwise the
        time since the last poll counts as downtime. Never polled is 0.
        """
        now = now or self.clock()
        total = (now - agent.created_at).total_seconds()
        if total <= 0:
            return 100.0

        if agent.last_poll_at is None:
            return 0.0

        since_poll = now - agent.last_poll_at
        if since_poll < timedelta(minutes=self.config.offline_minutes):
            return 100.0

        downtime = since_poll.total_seconds() / total * 100
        return max(0.0, min(100.0, 100 - downtime))
