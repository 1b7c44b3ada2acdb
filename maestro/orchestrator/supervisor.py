"""Orchestration cycle and the periodic scheduler that drives it."""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from maestro.app.config import Settings
from maestro.app.models import AgentStatus, Alert, AlertSummary, Task, TaskStatus, WebhookDelivery, utcnow
from maestro.orchestrator.agent_registry import AgentRegistry
from maestro.orchestrator.alerts import AlertGenerator
from maestro.orchestrator.assignment import AssignmentEngine, AssignmentResult
from maestro.orchestrator.bottlenecks import Bottleneck, BottleneckDetector
from maestro.orchestrator.dependency_graph import DependencyAnalyzer
from maestro.orchestrator.health_monitor import HealthCheck, HealthMonitor, SystemHealth
from maestro.storage import StateStore
from maestro.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


class CycleSummary(BaseModel):
    """Structured result of one orchestration cycle."""
    cycle_number: int
    health: Optional[HealthCheck] = None
    bottlenecks: list[Bottleneck] = []
    alerts: list[Alert] = []
    reassignments: list[AssignmentResult] = []
    assignments: list[AssignmentResult] = []
    deliveries: list[WebhookDelivery] = []
    dependency_cycles: list[list[str]] = []
    errors: list[str] = []
    started_at: datetime
    timestamp: datetime = Field(default_factory=utcnow)


class Supervisor:
    """
    Runs one orchestration cycle.

    Reads (health, bottlenecks) run concurrently; alerting uses their
    results; reassignment, assignment and notification run only after
    all reads complete. A failing step is logged and recorded in the
    summary, and the cycle continues.
    """

    def __init__(
        self,
        store: StateStore,
        health_monitor: HealthMonitor,
        bottleneck_detector: BottleneckDetector,
        alert_generator: AlertGenerator,
        assignment_engine: AssignmentEngine,
        analyzer: Optional[DependencyAnalyzer] = None,
        dispatcher: Optional[WebhookDispatcher] = None,
        registry: Optional[AgentRegistry] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.health_monitor = health_monitor
        self.bottleneck_detector = bottleneck_detector
        self.alert_generator = alert_generator
        self.assignment_engine = assignment_engine
        self.analyzer = analyzer or DependencyAnalyzer(assignment_engine.classifier)
        self.dispatcher = dispatcher
        self.registry = registry or AgentRegistry(store, health_monitor.config, clock)
        self.clock = clock

        self.cycles_run = 0
        self.last_summary: Optional[CycleSummary] = None

    async def run_cycle(self) -> CycleSummary:
        """
        Health -> alerts -> stuck reassignment -> ready tasks -> assignment -> notify -> prune.

        Returns:
            CycleSummary; never raises for step failures
        """
        self.cycles_run += 1
        summary = CycleSummary(cycle_number=self.cycles_run, started_at=self.clock())
        logger.info(f"Starting orchestration cycle {summary.cycle_number}")

        try:
            await self.health_monitor.refresh_health_scores()
            summary.health, summary.bottlenecks = await asyncio.gather(
                self.health_monitor.run_health_check(),
                self.bottleneck_detector.detect_bottlenecks(),
            )
        except Exception as e:
            self._step_failed(summary, "health check", e)

        if summary.health is not None:
            try:
                summary.alerts = await self.alert_generator.generate_alerts(
                    health=summary.health,
                    bottlenecks=summary.bottlenecks,
                )
            except Exception as e:
                self._step_failed(summary, "alert generation", e)

        try:
            summary.reassignments = await self.assignment_engine.reassign_stuck_tasks()
        except Exception as e:
            self._step_failed(summary, "stuck task reassignment", e)

        try:
            await self._assign_ready_tasks(summary)
        except Exception as e:
            self._step_failed(summary, "ready task assignment", e)

        if self.dispatcher is not None:
            try:
                summary.deliveries = await self._notify(
                    summary.reassignments + summary.assignments
                )
            except Exception as e:
                self._step_failed(summary, "assignment notification", e)

        try:
            await self._prune_history()
        except Exception as e:
            self._step_failed(summary, "history pruning", e)

        summary.timestamp = self.clock()
        self.last_summary = summary

        status = summary.health.system_health.status.value if summary.health else "unknown"
        logger.info(
            f"Cycle {summary.cycle_number} complete: "
            f"health={status}, "
            f"alerts={len(summary.alerts)}, reassigned={len(summary.reassignments)}, "
            f"assigned={sum(1 for r in summary.assignments if r.success)}/{len(summary.assignments)}, "
            f"deliveries={len(summary.deliveries)}, errors={len(summary.errors)}"
        )
        return summary

    def _step_failed(self, summary: CycleSummary, step: str, error: Exception) -> None:
        logger.exception(f"Orchestration step '{step}' failed: {error}")
        summary.errors.append(f"{step}: {error}")

    async def _prune_history(self) -> None:
        await self.alert_generator.prune_alerts()
        if self.dispatcher is not None:
            self.dispatcher.prune_deliveries()

    async def _assign_ready_tasks(self, summary: CycleSummary) -> None:
        tasks = await self.store.list_tasks()
        agents = await self.store.list_agents()

        by_project: dict[str, list[Task]] = {}
        for task in tasks:
            by_project.setdefault(task.project_id, []).append(task)

        for project_id, project_tasks in by_project.items():
            project_agents = [a for a in agents if a.project_id == project_id]
            analysis = self.analyzer.analyze(project_tasks, project_agents)
            summary.dependency_cycles.extend(analysis.cycles)

            ready = [
                task for task in analysis.ready_tasks
                if task.status == TaskStatus.TODO and not task.assigned_to_agent
            ]
            ready.sort(key=lambda t: (t.priority, t.created_at))

            for task in ready:
                summary.assignments.append(await self.assignment_engine.assign(task))

    async def _notify(self, results: list[AssignmentResult]) -> list[WebhookDelivery]:
        jobs = []
        for result in results:
            if not result.success or result.agent is None:
                continue
            task = await self.store.get_task(result.task_id)
            if task is not None:
                jobs.append(self.dispatcher.notify_assignment(task, result.agent))

        deliveries = await asyncio.gather(*jobs)
        return [d for d in deliveries if d is not None]

    async def assign_task(self, task_id: str) -> AssignmentResult:
        """Assign one task and notify the chosen agent."""
        result = await self.assignment_engine.assign_task(task_id)
        if self.dispatcher is not None and result.success:
            await self._notify([result])
        return result

    async def reassign_stuck_tasks(self) -> list[AssignmentResult]:
        results = await self.assignment_engine.reassign_stuck_tasks()
        if self.dispatcher is not None:
            await self._notify(results)
        return results

    async def start_task(self, task_id: str) -> Optional[Task]:
        """Executor pickup: the task goes in-progress and becomes its agent's current task."""
        task = await self.store.get_task(task_id)
        if task is None:
            return None

        updated = await self.store.update_task(
            task_id,
            status=TaskStatus.IN_PROGRESS,
            started_at=self.clock(),
        )
        if task.assigned_to_agent:
            await self.registry.set_current_task(task.assigned_to_agent, task_id)
        return updated

    async def report_task_result(
        self,
        task_id: str,
        success: bool,
        duration_ms: Optional[int] = None,
        blocked_reason: Optional[str] = None
    ) -> Optional[list[Task]]:
        """
        Record a finished task and find the tasks it unblocked.

        Args:
            task_id: Finished task
            success: Done when True, blocked when False
            duration_ms: Execution time (default: time since started_at)
            blocked_reason: Stored on failure

        Returns:
            Direct dependents whose dependencies are now all done, or None
            if the task does not exist
        """
        task = await self.store.get_task(task_id)
        if task is None:
            return None

        now = self.clock()
        if success:
            await self.store.update_task(task_id, status=TaskStatus.DONE, completed_at=now)
        else:
            await self.store.update_task(
                task_id,
                status=TaskStatus.BLOCKED,
                blocked_reason=blocked_reason or "Task failed",
            )

        if task.assigned_to_agent:
            if duration_ms is None and task.started_at is not None:
                duration_ms = int((now - task.started_at).total_seconds() * 1000)
            if duration_ms is not None:
                await self.registry.record_task_result(task.assigned_to_agent, success, duration_ms)

            agent = await self.store.get_agent(task.assigned_to_agent)
            if agent is not None and agent.current_task_id == task_id:
                await self.store.update_agent(
                    agent.id,
                    current_task_id=None,
                    status=AgentStatus.IDLE,
                )

        if not success:
            return []

        graph = self.analyzer.build_graph(
            await self.store.list_tasks(task.project_id),
            await self.store.list_agents(task.project_id),
        )
        unblocked = graph.unblocked_by(task_id)
        if unblocked:
            logger.info(f"Task {task_id} unblocked {[t.id for t in unblocked]}")
        return unblocked

    async def get_system_health(self) -> SystemHealth:
        return await self.health_monitor.get_system_health()

    async def get_alert_summary(self) -> AlertSummary:
        return await self.alert_generator.get_alert_summary()


class OrchestrationScheduler:
    """
    Runs Supervisor.run_cycle on a fixed interval, one cycle at a time.

    stop() lets an in-flight cycle finish and starts no new one.
    """

    def __init__(self, supervisor: Supervisor, config: Optional[Settings] = None):
        self.supervisor = supervisor
        self.config = config or Settings()
        self.interval = self.config.cycle_interval_seconds

        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.errors = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.warning("Orchestration scheduler already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._main_loop(), name="orchestration-loop")
        logger.info(f"Orchestration scheduler started (interval={self.interval}s)")

    async def _main_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.supervisor.run_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.errors += 1
                logger.exception(f"Error in orchestration cycle: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass

        logger.info(f"Orchestration loop stopped after {self.supervisor.cycles_run} cycles")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Signal the loop to stop and wait for the in-flight cycle.

        Args:
            timeout: Seconds to wait before cancelling the cycle (default: wait indefinitely)
        """
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Orchestration cycle did not finish in time, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
