"""Task-to-agent assignment by weighted scoring."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from maestro.app.config import Settings
from maestro.app.models import Agent, AgentStatus, AgentType, Task, TaskStatus, utcnow
from maestro.locking import LockContext, RedisLock
from maestro.orchestrator.classifier import AgentTypeClassifier, KeywordClassifier
from maestro.orchestrator.health_monitor import DEFAULT_TASK_DURATION_MS
from maestro.storage import StateStore

logger = logging.getLogger(__name__)

SPAWN_AGENT = "spawn_agent"


class ScoreBreakdown(BaseModel):
    """Score components; total is at most 100."""
    workload: float
    success_rate: float
    capabilities: float
    speed: float

    @property
    def total(self) -> float:
        return self.workload + self.success_rate + self.capabilities + self.speed


class AssignmentResult(BaseModel):
    """Outcome of one assignment attempt. Failures carry an error and optional hint."""
    success: bool
    task_id: str
    agent_id: Optional[str] = None
    agent: Optional[Agent] = None
    agent_type: Optional[AgentType] = None
    score: Optional[float] = None
    breakdown: Optional[ScoreBreakdown] = None
    error: Optional[str] = None
    recommendation: Optional[str] = None


class AssignmentRecommendation(BaseModel):
    """Best candidate for an unassigned task, without committing."""
    task: Task
    agent: Optional[Agent] = None
    score: float = 0
    reason: str


def score_agent(agent: Agent, task: Task, pending_tasks: int) -> ScoreBreakdown:
    """
    Score a candidate agent for a task.

    Args:
        agent: Candidate agent
        task: Task to assign
        pending_tasks: Todo tasks already assigned to the agent

    Returns:
        Breakdown of workload (0-40), success rate (0-30), capability
        match (0-20) and speed (0-10)
    """
    workload = max(0, (10 - min(pending_tasks, 10)) * 4)

    success_rate = max(0.0, min(1.0, agent.success_rate)) * 30

    if agent.capabilities:
        text = task.text
        matches = sum(1 for cap in agent.capabilities if cap.lower() in text)
        capabilities = min(20, matches * 10)
    else:
        capabilities = 10

    duration_ms = agent.average_task_duration_ms
    if duration_ms is None:
        duration_ms = DEFAULT_TASK_DURATION_MS
    if duration_ms < 30 * 60 * 1000:
        speed = 10
    elif duration_ms < 60 * 60 * 1000:
        speed = 7
    elif duration_ms < 2 * 60 * 60 * 1000:
        speed = 5
    else:
        speed = 2

    return ScoreBreakdown(
        workload=workload,
        success_rate=success_rate,
        capabilities=capabilities,
        speed=speed,
    )


class AssignmentEngine:
    """
    Picks and commits the best agent for a task.

    Ties on score go to the lowest agent id. The commit re-reads the task
    and only writes if its assignee is unchanged since scoring began; with
    a lock manager the re-read and write also run under a per-task lock.
    Every failure is returned as an AssignmentResult, never raised.
    """

    def __init__(
        self,
        store: StateStore,
        config: Optional[Settings] = None,
        classifier: Optional[AgentTypeClassifier] = None,
        lock_manager: Optional[RedisLock] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize assignment engine.

        Args:
            store: State store for tasks and agents
            config: Thresholds (default: Settings())
            classifier: Agent type inference for unassigned tasks
            lock_manager: Optional distributed lock for the commit step
            clock: Returns the current time; injected for tests
        """
        self.store = store
        self.config = config or Settings()
        self.classifier = classifier or KeywordClassifier()
        self.locks = lock_manager
        self.clock = clock

    def resolve_agent_type(self, task: Task, agents: dict[str, Agent]) -> AgentType:
        """Assigned agent's type when known, otherwise the classifier's guess."""
        if task.assigned_to_agent and task.assigned_to_agent in agents:
            return agents[task.assigned_to_agent].agent_type
        return self.classifier.classify(task)

    def is_available(self, agent: Agent, now: datetime) -> bool:
        """
        Not marked offline and not silent past the recent-poll window.

        This is wider than the health monitor's offline_minutes: an agent
        that misses one or two polls is reported offline but can still be
        handed work, since it picks the task up on its next poll. Past
        recent_poll_minutes it also earns no uptime points in its health
        score, and is skipped here.

        Agents that have never polled stay eligible so new registrations
        can receive work.
        """
        if agent.status == AgentStatus.OFFLINE:
            return False
        if agent.last_poll_at is None:
            return True
        return now - agent.last_poll_at <= timedelta(minutes=self.config.recent_poll_minutes)

    def rank_candidates(
        self,
        task: Task,
        candidates: list[Agent],
        tasks: list[Task]
    ) -> list[tuple[Agent, ScoreBreakdown]]:
        """Candidates with their scores, best first (lowest id wins ties)."""
        pending = {agent.id: 0 for agent in candidates}
        for other in tasks:
            if other.assigned_to_agent in pending and other.status == TaskStatus.TODO:
                pending[other.assigned_to_agent] += 1

        scored = []
        for agent in candidates:
            breakdown = score_agent(agent, task, pending[agent.id])
            logger.debug(
                f"Candidate {agent.id} for task {task.id}: {breakdown.total:.1f} "
                f"(workload={breakdown.workload}, success={breakdown.success_rate:.1f}, "
                f"capabilities={breakdown.capabilities}, speed={breakdown.speed})"
            )
            scored.append((agent, breakdown))

        scored.sort(key=lambda pair: (-pair[1].total, pair[0].id))
        return scored

    async def assign(
        self,
        task: Task,
        agent_type: Optional[AgentType] = None
    ) -> AssignmentResult:
        """
        Score candidates of the task's agent type and commit the best one.

        Args:
            task: Task as read by the caller; its assignee is the expected
                current value for the optimistic check
            agent_type: Override for the required type

        Returns:
            AssignmentResult
        """
        try:
            agents = await self.store.list_agents()
            tasks = await self.store.list_tasks()
        except Exception as e:
            logger.error(f"Assignment of {task.id} could not load state: {e}")
            return AssignmentResult(success=False, task_id=task.id, error=f"Data unavailable: {e}")

        by_id = {agent.id: agent for agent in agents}
        agent_type = agent_type or self.resolve_agent_type(task, by_id)

        now = self.clock()
        candidates = [
            agent for agent in agents
            if agent.agent_type == agent_type and self.is_available(agent, now)
        ]
        if not candidates:
            logger.warning(f"No available {agent_type.value} agents for task {task.id}")
            return AssignmentResult(
                success=False,
                task_id=task.id,
                agent_type=agent_type,
                error=f"No available agents of type: {agent_type.value}",
                recommendation=SPAWN_AGENT,
            )

        best, breakdown = self.rank_candidates(task, candidates, tasks)[0]
        return await self._commit(task, best, agent_type, breakdown)

    async def _commit(
        self,
        task: Task,
        agent: Agent,
        agent_type: AgentType,
        breakdown: ScoreBreakdown
    ) -> AssignmentResult:
        if self.locks is None:
            return await self._write(task, agent, agent_type, breakdown)

        try:
            async with LockContext(
                self.locks,
                f"assignment:{task.id}",
                ttl=self.config.assignment_lock_ttl_seconds
            ) as lock:
                if lock is None:
                    return AssignmentResult(
                        success=False,
                        task_id=task.id,
                        agent_type=agent_type,
                        error=f"Task {task.id} is being assigned by another process",
                    )
                return await self._write(task, agent, agent_type, breakdown)
        except Exception as e:
            logger.error(f"Assignment lock for {task.id} failed: {e}")
            return AssignmentResult(
                success=False,
                task_id=task.id,
                agent_type=agent_type,
                error=f"Lock unavailable: {e}",
            )

    async def _write(
        self,
        task: Task,
        agent: Agent,
        agent_type: AgentType,
        breakdown: ScoreBreakdown
    ) -> AssignmentResult:
        def failure(error: str) -> AssignmentResult:
            return AssignmentResult(
                success=False,
                task_id=task.id,
                agent_type=agent_type,
                error=error,
            )

        try:
            current = await self.store.get_task(task.id)
            if current is None:
                return failure("Task not found")
            if current.assigned_to_agent != task.assigned_to_agent:
                logger.warning(
                    f"Task {task.id} changed assignee to {current.assigned_to_agent} "
                    f"during assignment, skipping"
                )
                return failure(f"Task {task.id} was assigned concurrently")
            if current.is_done:
                return failure(f"Task {task.id} is already done")

            updated = await self.store.update_task(
                task.id,
                assigned_to_agent=agent.id,
                status=TaskStatus.TODO,
            )
        except Exception as e:
            logger.error(f"Failed to commit assignment of {task.id}: {e}")
            return failure(f"Failed to update task: {e}")

        if updated is None:
            return failure("Failed to update task")

        logger.info(f"Assigned task {task.id} to {agent.id} (score {breakdown.total:.1f})")
        return AssignmentResult(
            success=True,
            task_id=task.id,
            agent_id=agent.id,
            agent=agent,
            agent_type=agent_type,
            score=breakdown.total,
            breakdown=breakdown,
        )

    async def assign_task(self, task_id: str) -> AssignmentResult:
        try:
            task = await self.store.get_task(task_id)
        except Exception as e:
            logger.error(f"Could not load task {task_id}: {e}")
            return AssignmentResult(success=False, task_id=task_id, error=f"Data unavailable: {e}")

        if task is None:
            return AssignmentResult(success=False, task_id=task_id, error="Task not found")
        return await self.assign(task)

    async def stuck_tasks(self) -> list[Task]:
        """In-progress tasks started longer ago than the reassignment threshold."""
        cutoff = self.clock() - timedelta(hours=self.config.reassign_after_hours)
        try:
            tasks = await self.store.list_tasks()
        except Exception as e:
            logger.error(f"Could not load tasks for reassignment: {e}")
            return []

        return [
            task for task in tasks
            if task.status == TaskStatus.IN_PROGRESS
            and task.started_at is not None
            and task.started_at < cutoff
        ]

    async def reassign_stuck_tasks(self) -> list[AssignmentResult]:
        """
        Release stuck tasks from their agents and assign them again.

        The previous agent's current task is cleared, the task is reset to
        todo without an assignee, then assigned to an agent of the same type.
        """
        results = []

        for task in await self.stuck_tasks():
            try:
                agent_type = None
                if task.assigned_to_agent:
                    previous = await self.store.get_agent(task.assigned_to_agent)
                    if previous is not None:
                        agent_type = previous.agent_type
                        await self.store.update_agent(
                            previous.id,
                            current_task_id=None,
                            status=AgentStatus.IDLE,
                        )

                reset = await self.store.update_task(
                    task.id,
                    status=TaskStatus.TODO,
                    assigned_to_agent=None,
                    started_at=None,
                )
            except Exception as e:
                logger.error(f"Failed to release stuck task {task.id}: {e}")
                results.append(AssignmentResult(
                    success=False,
                    task_id=task.id,
                    error=f"Failed to release task: {e}",
                ))
                continue

            if reset is None:
                results.append(AssignmentResult(success=False, task_id=task.id, error="Task not found"))
                continue

            logger.info(f"Reassigning stuck task {task.id} (was {task.assigned_to_agent})")
            results.append(await self.assign(reset, agent_type=agent_type))

        return results

    async def batch_assign(self, tasks: list[Task]) -> list[AssignmentResult]:
        """Assign in order; each assignment sees the workload left by the previous ones."""
        return [await self.assign(task) for task in tasks]

    async def assignment_recommendations(self) -> list[AssignmentRecommendation]:
        """Best candidate for every unassigned todo task. Nothing is written."""
        try:
            agents = await self.store.list_agents()
            tasks = await self.store.list_tasks()
        except Exception as e:
            logger.error(f"Could not load state for recommendations: {e}")
            return []

        by_id = {agent.id: agent for agent in agents}
        now = self.clock()
        recommendations = []

        for task in tasks:
            if task.status != TaskStatus.TODO or task.assigned_to_agent:
                continue

            agent_type = self.resolve_agent_type(task, by_id)
            candidates = [
                agent for agent in agents
                if agent.agent_type == agent_type and self.is_available(agent, now)
            ]
            if not candidates:
                recommendations.append(AssignmentRecommendation(
                    task=task,
                    reason=f"No agents available for type: {agent_type.value}",
                ))
                continue

            best, breakdown = self.rank_candidates(task, candidates, tasks)[0]
            recommendations.append(AssignmentRecommendation(
                task=task,
                agent=best,
                score=breakdown.total,
                reason="Best match based on workload, success rate, and capabilities",
            ))

        return recommendations
