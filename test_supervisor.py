"""Tests for the orchestration cycle, task lifecycle hooks and the scheduler."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx

from maestro.app.config import Settings
from maestro.app.models import (
    Agent,
    AgentStatus,
    AgentType,
    AgentWebhookConfig,
    Alert,
    AlertSeverity,
    DeliveryStatus,
    Task,
    TaskStatus,
    WebhookDelivery,
    WebhookEvent,
    WebhookPayload,
)
from maestro.orchestrator.agent_registry import AgentRegistry
from maestro.orchestrator.alerts import AlertGenerator
from maestro.orchestrator.assignment import SPAWN_AGENT, AssignmentEngine
from maestro.orchestrator.bottlenecks import BottleneckDetector
from maestro.orchestrator.health_monitor import HealthMonitor, SystemHealthStatus
from maestro.orchestrator.supervisor import OrchestrationScheduler, Supervisor
from maestro.storage import InMemoryStore
from maestro.webhooks import DeliveryLog, WebhookConfigRegistry, WebhookDispatcher

START = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def build_supervisor(agents=(), tasks=(), webhooks=()):
    store = InMemoryStore()
    clock = Clock(START)
    config = Settings()

    async def seed():
        for agent in agents:
            await store.save_agent(agent)
        for task in tasks:
            await store.save_task(task)
    asyncio.run(seed())

    health_monitor = HealthMonitor(store, config, clock=clock)
    bottleneck_detector = BottleneckDetector(store, config)
    engine = AssignmentEngine(store, config, clock=clock)
    dispatcher = WebhookDispatcher(
        WebhookConfigRegistry(list(webhooks)),
        DeliveryLog(),
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200))),
        config=config,
        clock=clock,
    )
    supervisor = Supervisor(
        store,
        health_monitor,
        bottleneck_detector,
        AlertGenerator(store, health_monitor, bottleneck_detector, config, clock=clock),
        engine,
        dispatcher=dispatcher,
        registry=AgentRegistry(store, config, clock=clock),
        clock=clock,
    )
    return supervisor, store, clock


def backend_agent():
    return Agent(id="be-1", project_id="p1", agent_type=AgentType.BACKEND,
                 status=AgentStatus.ACTIVE, last_poll_at=START)


def payment_tasks():
    return [
        Task(id="t-impl", project_id="p1", title="Implement payment processing",
             description="Support refund handling", priority=2),
        Task(id="t-test", project_id="p1", title="Write tests for payment processing",
             description="Cover refund handling", priority=1),
    ]


class TestRunCycle:

    def test_assigns_ready_tasks_and_notifies(self):
        supervisor, store, _ = build_supervisor(
            [backend_agent()],
            payment_tasks(),
            [AgentWebhookConfig(agent_id="be-1", webhook_url="http://agents.test/be-1", secret="s")],
        )

        summary = asyncio.run(supervisor.run_cycle())

        assert summary.cycle_number == 1
        assert summary.errors == []
        assert summary.health.system_health.status == SystemHealthStatus.HEALTHY
        assert [(r.task_id, r.agent_id) for r in summary.assignments] == [("t-impl", "be-1")]
        assert len(summary.deliveries) == 1
        assert summary.deliveries[0].agent_id == "be-1"
        assert summary.dependency_cycles == []
        assert asyncio.run(store.get_agent("be-1")).health_score == 90
        assert asyncio.run(store.get_task("t-test")).assigned_to_agent is None

    def test_no_agents_alerts_and_recommends_spawn(self):
        supervisor, _, _ = build_supervisor(tasks=payment_tasks())

        summary = asyncio.run(supervisor.run_cycle())

        assert [a.type for a in summary.alerts] == ["system_health_critical"]
        assert [r.recommendation for r in summary.assignments] == [SPAWN_AGENT]
        assert summary.deliveries == []

    def test_failing_step_recorded(self):
        supervisor, _, _ = build_supervisor([backend_agent()], payment_tasks())
        supervisor.assignment_engine.reassign_stuck_tasks = AsyncMock(side_effect=RuntimeError("boom"))

        summary = asyncio.run(supervisor.run_cycle())

        assert summary.errors == ["stuck task reassignment: boom"]
        assert [r.task_id for r in summary.assignments] == ["t-impl"]
        assert supervisor.last_summary is summary

    def test_failing_health_check_recorded(self):
        supervisor, _, _ = build_supervisor([backend_agent()], payment_tasks())
        supervisor.health_monitor.run_health_check = AsyncMock(side_effect=TypeError("boom"))

        summary = asyncio.run(supervisor.run_cycle())

        assert summary.errors == ["health check: boom"]
        assert summary.health is None
        assert summary.alerts == []
        assert [r.task_id for r in summary.assignments] == ["t-impl"]

    def test_cycle_prunes_old_history(self):
        supervisor, store, _ = build_supervisor([backend_agent()])
        month_ago = START - timedelta(days=30)
        asyncio.run(store.append_alert(
            Alert(severity=AlertSeverity.LOW, type="stale", message="stale", timestamp=month_ago)
        ))
        supervisor.dispatcher.log.save(WebhookDelivery(
            agent_id="be-1",
            event=WebhookEvent.TASK_ASSIGNED,
            payload=WebhookPayload(event=WebhookEvent.TASK_ASSIGNED),
            target_url="http://agents.test/be-1",
            status=DeliveryStatus.DELIVERED,
            created_at=month_ago,
        ))

        summary = asyncio.run(supervisor.run_cycle())

        assert summary.errors == []
        assert "stale" not in [a.type for a in asyncio.run(store.list_alerts())]
        assert supervisor.dispatcher.log.for_agent("be-1") == []

    def test_reassigns_stuck_task(self):
        stuck = Task(id="t-stuck", project_id="p1", title="Build endpoint", assigned_to_agent="be-1",
                     status=TaskStatus.IN_PROGRESS, started_at=START - timedelta(hours=3))
        supervisor, store, _ = build_supervisor([backend_agent()], [stuck])

        summary = asyncio.run(supervisor.run_cycle())

        assert [(r.task_id, r.success) for r in summary.reassignments] == [("t-stuck", True)]
        # Already has an assignee by the time the ready pass runs
        assert summary.assignments == []
        assert asyncio.run(store.get_task("t-stuck")).status == TaskStatus.TODO


class TestTaskLifecycle:

    def test_start_and_complete(self):
        supervisor, store, clock = build_supervisor([backend_agent()], payment_tasks())
        asyncio.run(supervisor.run_cycle())

        task = asyncio.run(supervisor.start_task("t-impl"))
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.started_at == START
        assert asyncio.run(store.get_agent("be-1")).current_task_id == "t-impl"

        clock.now = START + timedelta(minutes=20)
        unblocked = asyncio.run(supervisor.report_task_result("t-impl", success=True))

        assert [t.id for t in unblocked] == ["t-test"]
        assert asyncio.run(store.get_task("t-impl")).status == TaskStatus.DONE
        agent = asyncio.run(store.get_agent("be-1"))
        assert agent.tasks_completed == 1
        assert agent.average_task_duration_ms == 20 * 60 * 1000
        assert agent.current_task_id is None
        assert agent.status == AgentStatus.IDLE

    def test_failure_blocks_task(self):
        supervisor, store, _ = build_supervisor([backend_agent()], payment_tasks())
        asyncio.run(supervisor.run_cycle())
        asyncio.run(supervisor.start_task("t-impl"))

        unblocked = asyncio.run(supervisor.report_task_result(
            "t-impl", success=False, duration_ms=1000, blocked_reason="Missing credentials"
        ))

        assert unblocked == []
        task = asyncio.run(store.get_task("t-impl"))
        assert task.status == TaskStatus.BLOCKED
        assert task.blocked_reason == "Missing credentials"
        assert asyncio.run(store.get_agent("be-1")).tasks_failed == 1

    def test_unknown_task(self):
        supervisor, _, _ = build_supervisor()

        assert asyncio.run(supervisor.start_task("missing")) is None
        assert asyncio.run(supervisor.report_task_result("missing", success=True)) is None


class FakeSupervisor:
    def __init__(self, hold=None, fail=False):
        self.hold = hold
        self.fail = fail
        self.started = asyncio.Event()
        self.finished = False
        self.cycles_run = 0

    async def run_cycle(self):
        self.cycles_run += 1
        self.started.set()
        if self.fail:
            raise RuntimeError("cycle failed")
        if self.hold is not None:
            await self.hold()
        self.finished = True


class TestOrchestrationScheduler:

    def test_stop_waits_for_in_flight_cycle(self):
        async def run():
            supervisor = FakeSupervisor(hold=lambda: asyncio.sleep(0.05))
            scheduler = OrchestrationScheduler(supervisor, Settings(cycle_interval_seconds=60))

            scheduler.start()
            assert scheduler.is_running
            await asyncio.wait_for(supervisor.started.wait(), timeout=1)

            await scheduler.stop()
            return supervisor, scheduler

        supervisor, scheduler = asyncio.run(run())
        assert supervisor.finished
        assert supervisor.cycles_run == 1
        assert not scheduler.is_running

    def test_stop_timeout_cancels_cycle(self):
        async def run():
            never = asyncio.Event()
            supervisor = FakeSupervisor(hold=never.wait)
            scheduler = OrchestrationScheduler(supervisor, Settings(cycle_interval_seconds=60))

            scheduler.start()
            await asyncio.wait_for(supervisor.started.wait(), timeout=1)
            await scheduler.stop(timeout=0.05)
            return supervisor, scheduler

        supervisor, scheduler = asyncio.run(run())
        assert not supervisor.finished
        assert not scheduler.is_running

    def test_cycle_errors_counted(self):
        async def run():
            supervisor = FakeSupervisor(fail=True)
            scheduler = OrchestrationScheduler(supervisor, Settings(cycle_interval_seconds=60))

            scheduler.start()
            await asyncio.wait_for(supervisor.started.wait(), timeout=1)
            await asyncio.sleep(0)
            await scheduler.stop(timeout=1)
            return scheduler

        scheduler = asyncio.run(run())
        assert scheduler.errors == 1
