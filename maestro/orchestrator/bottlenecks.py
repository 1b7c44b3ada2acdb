"""Backlog and capacity bottleneck detection per agent type."""

import logging
import math
import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from maestro.app.config import Settings
from maestro.app.models import Agent, AgentType, Task, TaskStatus
from maestro.orchestrator.classifier import AgentTypeClassifier, KeywordClassifier
from maestro.storage import StateStore

logger = logging.getLogger(__name__)

# Returned when a type has no agents to drain its backlog
UNBOUNDED_DELAY_HOURS = 999

# Agents are assumed to finish two tasks per hour
TASKS_PER_AGENT_HOUR = 2

MAX_SPAWN_COUNT = 3

TASK_ID_PATTERN = re.compile(r"task-[a-zA-Z0-9-]+")


class Bottleneck(BaseModel):
    """An agent type whose backlog outgrows its capacity."""
    agent_type: AgentType
    backlog: int
    in_progress: int
    current_agents: int
    utilization: int  # percent
    estimated_delay_hours: int
    recommendation: str = "spawn_agent"


class SpawnPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SpawnRecommendation(BaseModel):
    agent_type: AgentType
    reason: str
    priority: SpawnPriority
    suggested_count: int


class TypeUtilization(BaseModel):
    """Capacity numbers for one agent type."""
    agents: int
    capacity: int
    in_progress: int
    todo: int
    utilization: int


class DependencyBottleneck(BaseModel):
    """A blocked task and the tasks named in its blocked reason."""
    task: Task
    blocking_task_ids: list[str]
    estimated_delay_hours: int


def estimate_delay(backlog: int, agent_count: int) -> int:
    """Hours to drain a backlog; UNBOUNDED_DELAY_HOURS with no agents."""
    if agent_count <= 0:
        return UNBOUNDED_DELAY_HOURS
    return math.ceil(backlog / (agent_count * TASKS_PER_AGENT_HOUR))


class WorkloadSignal:
    """
    Per-type backlog and load computed from one snapshot of tasks and agents.

    A task belongs to the type of its assigned agent when that agent is
    known, otherwise to the type the classifier infers for it.
    """

    def __init__(
        self,
        tasks: list[Task],
        agents: list[Agent],
        classifier: Optional[AgentTypeClassifier] = None,
        config: Optional[Settings] = None
    ):
        self.config = config or Settings()
        self.classifier = classifier or KeywordClassifier()
        self.agents_by_type: dict[AgentType, list[Agent]] = {t: [] for t in AgentType}
        self.tasks_by_type: dict[AgentType, list[Task]] = {t: [] for t in AgentType}

        agent_types = {}
        for agent in agents:
            self.agents_by_type[agent.agent_type].append(agent)
            agent_types[agent.id] = agent.agent_type

        for task in tasks:
            agent_type = agent_types.get(task.assigned_to_agent)
            if agent_type is None:
                agent_type = self.classifier.classify(task)
            self.tasks_by_type[agent_type].append(task)

    def _count(self, agent_type: AgentType, status: TaskStatus) -> int:
        return sum(1 for t in self.tasks_by_type[agent_type] if t.status == status)

    def capacity(self, agent_type: AgentType) -> int:
        return len(self.agents_by_type[agent_type]) * self.config.tasks_per_agent_capacity

    def bottleneck_for(self, agent_type: AgentType) -> Optional[Bottleneck]:
        backlog = self._count(agent_type, TaskStatus.TODO)
        if backlog <= self.config.bottleneck_backlog_threshold:
            return None

        load = self._count(agent_type, TaskStatus.IN_PROGRESS)
        capacity = self.capacity(agent_type)
        if load < capacity * self.config.bottleneck_utilization_threshold:
            return None

        agent_count = len(self.agents_by_type[agent_type])
        utilization = round(load / capacity * 100) if capacity else 100

        return Bottleneck(
            agent_type=agent_type,
            backlog=backlog,
            in_progress=load,
            current_agents=agent_count,
            utilization=utilization,
            estimated_delay_hours=estimate_delay(backlog, agent_count),
        )

    def bottlenecks(self) -> list[Bottleneck]:
        found = []
        for agent_type in AgentType:
            bottleneck = self.bottleneck_for(agent_type)
            if bottleneck:
                found.append(bottleneck)
        return found

    def utilization(self) -> dict[AgentType, TypeUtilization]:
        result = {}
        for agent_type in AgentType:
            capacity = self.capacity(agent_type)
            in_progress = self._count(agent_type, TaskStatus.IN_PROGRESS)
            result[agent_type] = TypeUtilization(
                agents=len(self.agents_by_type[agent_type]),
                capacity=capacity,
                in_progress=in_progress,
                todo=self._count(agent_type, TaskStatus.TODO),
                utilization=round(in_progress / capacity * 100) if capacity else 0,
            )
        return result


def rank_spawn_recommendations(bottlenecks: list[Bottleneck]) -> list[SpawnRecommendation]:
    """Turn bottlenecks into spawn suggestions, highest priority first."""
    recommendations = []

    for bottleneck in bottlenecks:
        if bottleneck.utilization >= 95 and bottleneck.backlog > 20:
            priority = SpawnPriority.HIGH
            count = math.ceil(bottleneck.backlog / 10)
        elif bottleneck.utilization >= 90 and bottleneck.backlog > 15:
            priority = SpawnPriority.MEDIUM
            count = math.ceil(bottleneck.backlog / 15)
        else:
            priority = SpawnPriority.LOW
            count = 1

        recommendations.append(SpawnRecommendation(
            agent_type=bottleneck.agent_type,
            reason=(
                f"{bottleneck.backlog} tasks waiting, {bottleneck.utilization}% capacity, "
                f"~{bottleneck.estimated_delay_hours}h delay"
            ),
            priority=priority,
            suggested_count=min(count, MAX_SPAWN_COUNT),
        ))

    order = list(SpawnPriority)
    recommendations.sort(key=lambda r: order.index(r.priority))
    return recommendations


class BottleneckDetector:
    """Reads state and reports capacity bottlenecks. Store failures yield empty results."""

    def __init__(
        self,
        store: StateStore,
        config: Optional[Settings] = None,
        classifier: Optional[AgentTypeClassifier] = None
    ):
        self.store = store
        self.config = config or Settings()
        self.classifier = classifier or KeywordClassifier()

    async def signal(self) -> WorkloadSignal:
        try:
            tasks = await self.store.list_tasks()
            agents = await self.store.list_agents()
        except Exception as e:
            logger.error(f"Bottleneck detection could not load state: {e}")
            tasks, agents = [], []
        return WorkloadSignal(tasks, agents, self.classifier, self.config)

    async def detect_bottlenecks(self) -> list[Bottleneck]:
        bottlenecks = (await self.signal()).bottlenecks()
        for bottleneck in bottlenecks:
            logger.info(
                f"Bottleneck on {bottleneck.agent_type.value}: backlog {bottleneck.backlog}, "
                f"utilization {bottleneck.utilization}%"
            )
        return bottlenecks

    async def needs_more_capacity(self) -> bool:
        return bool(await self.detect_bottlenecks())

    async def spawn_recommendations(self) -> list[SpawnRecommendation]:
        return rank_spawn_recommendations(await self.detect_bottlenecks())

    async def capacity_utilization(self) -> dict[AgentType, TypeUtilization]:
        return (await self.signal()).utilization()

    async def dependency_bottlenecks(self) -> list[DependencyBottleneck]:
        """
        Blocked tasks whose blocked reason names other tasks by id.

        Each named task adds 1h to the estimate when in progress, 2h when
        not started. Sorted by estimated delay, longest first.
        """
        try:
            tasks = await self.store.list_tasks()
        except Exception as e:
            logger.error(f"Dependency bottleneck detection could not load tasks: {e}")
            return []

        by_id = {task.id: task for task in tasks}
        results = []

        for task in tasks:
            if task.status != TaskStatus.BLOCKED:
                continue

            blocking = TASK_ID_PATTERN.findall(task.blocked_reason or "")
            delay = 0
            for blocking_id in blocking:
                blocker = by_id.get(blocking_id)
                if blocker is None:
                    continue
                if blocker.status == TaskStatus.IN_PROGRESS:
                    delay += 1
                elif blocker.status == TaskStatus.TODO:
                    delay += 2

            results.append(DependencyBottleneck(
                task=task,
                blocking_task_ids=blocking,
                estimated_delay_hours=delay,
            ))

        results.sort(key=lambda r: r.estimated_delay_hours, reverse=True)
        return results
