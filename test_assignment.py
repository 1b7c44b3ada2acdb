"""Tests for agent scoring, assignment commits and stuck task reassignment."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from maestro.app.config import Settings
from maestro.app.models import Agent, AgentStatus, AgentType, Task, TaskStatus
from maestro.locking import Lock
from maestro.orchestrator.assignment import SPAWN_AGENT, AssignmentEngine, score_agent
from maestro.storage import InMemoryStore, StoreError

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_agent(agent_id, agent_type=AgentType.BACKEND, **kwargs):
    return Agent(id=agent_id, project_id="p1", agent_type=agent_type, last_poll_at=NOW, **kwargs)


def make_task(task_id, title="Build endpoint", **kwargs):
    return Task(id=task_id, project_id="p1", title=title, **kwargs)


def seed(store, agents=(), tasks=()):
    async def run():
        for agent in agents:
            await store.save_agent(agent)
        for task in tasks:
            await store.save_task(task)
    asyncio.run(run())


def build_engine(agents=(), tasks=(), store=None, **kwargs):
    store = store or InMemoryStore()
    seed(store, agents, tasks)
    return AssignmentEngine(store, Settings(), clock=lambda: NOW, **kwargs), store


class BrokenStore(InMemoryStore):
    async def list_agents(self, project_id=None):
        raise StoreError("connection refused")


class TestScoring:

    def test_breakdown(self):
        agent = make_agent("a", success_rate=0.5, average_task_duration_ms=20 * 60 * 1000)
        breakdown = score_agent(agent, make_task("t"), pending_tasks=2)

        assert breakdown.workload == 32
        assert breakdown.success_rate == 15
        assert breakdown.capabilities == 10
        assert breakdown.speed == 10
        assert breakdown.total == 67

    def test_workload_floor(self):
        assert score_agent(make_agent("a"), make_task("t"), pending_tasks=25).workload == 0

    def test_capability_match(self):
        task = make_task("t", "Build react form", description="Uses css grid")

        assert score_agent(make_agent("a", capabilities=frozenset({"React"})), task, 0).capabilities == 10
        assert score_agent(make_agent("a", capabilities=frozenset({"react", "css"})), task, 0).capabilities == 20
        assert score_agent(make_agent("a", capabilities=frozenset({"postgres"})), task, 0).capabilities == 0

    def test_speed_tiers(self):
        def speed(minutes):
            agent = make_agent("a", average_task_duration_ms=minutes * 60 * 1000)
            return score_agent(agent, make_task("t"), 0).speed

        assert [speed(10), speed(45), speed(90), speed(180)] == [10, 7, 5, 2]
        assert score_agent(make_agent("a"), make_task("t"), 0).speed == 5

    def test_success_rate_clamped(self):
        assert score_agent(make_agent("a", success_rate=1.5), make_task("t"), 0).success_rate == 30


class TestAssign:

    def test_least_loaded_agent_wins(self):
        backlog = [make_task(f"busy-{i}", assigned_to_agent="a-busy") for i in range(10)]
        backlog += [make_task(f"some-{i}", assigned_to_agent="b-some") for i in range(5)]
        task = make_task("t-new")
        engine, store = build_engine(
            [make_agent("a-busy"), make_agent("b-some"), make_agent("c-free")],
            backlog + [task],
        )

        result = asyncio.run(engine.assign(task))

        assert result.success
        assert result.agent_id == "c-free"
        assert result.breakdown.workload == 40
        assert asyncio.run(store.get_task("t-new")).assigned_to_agent == "c-free"

    def test_tie_goes_to_lowest_id(self):
        task = make_task("t-new")
        engine, _ = build_engine([make_agent("agent-b"), make_agent("agent-a")], [task])

        assert asyncio.run(engine.assign(task)).agent_id == "agent-a"

    def test_no_agents_recommends_spawn(self):
        task = make_task("t-ui", "Style navbar")
        engine, store = build_engine([make_agent("be-1")], [task])

        result = asyncio.run(engine.assign(task))

        assert not result.success
        assert result.agent_type == AgentType.FRONTEND
        assert result.error == "No available agents of type: Frontend"
        assert result.recommendation == SPAWN_AGENT
        assert asyncio.run(store.get_task("t-ui")).assigned_to_agent is None

    def test_unavailable_agents_skipped(self):
        task = make_task("t-new")
        agents = [
            make_agent("a-offline", status=AgentStatus.OFFLINE),
            Agent(id="b-silent", project_id="p1", agent_type=AgentType.BACKEND,
                  last_poll_at=NOW - timedelta(minutes=20)),
            Agent(id="c-new", project_id="p1", agent_type=AgentType.BACKEND),
        ]
        engine, _ = build_engine(agents, [task])

        assert asyncio.run(engine.assign(task)).agent_id == "c-new"

    def test_agent_between_poll_windows_still_eligible(self):
        task = make_task("t-new")
        agent = Agent(id="be-late", project_id="p1", agent_type=AgentType.BACKEND,
                      last_poll_at=NOW - timedelta(minutes=7))
        engine, _ = build_engine([agent], [task])

        # Past offline_minutes, inside recent_poll_minutes
        assert asyncio.run(engine.assign(task)).agent_id == "be-late"

    def test_explicit_agent_type(self):
        task = make_task("t-new")
        engine, _ = build_engine([make_agent("be-1"), make_agent("qa-1", AgentType.TESTING)], [task])

        result = asyncio.run(engine.assign(task, agent_type=AgentType.TESTING))
        assert result.agent_id == "qa-1"

    def test_concurrent_assignment_detected(self):
        stale = make_task("t-new")
        engine, store = build_engine(
            [make_agent("be-1")],
            [make_task("t-new", assigned_to_agent="be-other")],
        )

        result = asyncio.run(engine.assign(stale))

        assert not result.success
        assert result.error == "Task t-new was assigned concurrently"
        assert asyncio.run(store.get_task("t-new")).assigned_to_agent == "be-other"

    def test_done_task_not_assigned(self):
        task = make_task("t-done", status=TaskStatus.DONE)
        engine, _ = build_engine([make_agent("be-1")], [task])

        result = asyncio.run(engine.assign(task))
        assert result.error == "Task t-done is already done"

    def test_assign_task_by_id(self):
        engine, _ = build_engine([make_agent("be-1")], [make_task("t-1")])

        assert asyncio.run(engine.assign_task("t-1")).success
        assert asyncio.run(engine.assign_task("missing")).error == "Task not found"

    def test_store_failure_reported(self):
        task = make_task("t-1")
        engine, _ = build_engine(tasks=[task], store=BrokenStore())

        result = asyncio.run(engine.assign(task))

        assert not result.success
        assert result.error.startswith("Data unavailable")

    def test_batch_assign_spreads_load(self):
        tasks = [make_task("t-1"), make_task("t-2")]
        engine, _ = build_engine([make_agent("be-1"), make_agent("be-2")], tasks)

        results = asyncio.run(engine.batch_assign(tasks))
        assert [r.agent_id for r in results] == ["be-1", "be-2"]

    def test_recommendations_do_not_write(self):
        engine, store = build_engine(
            [make_agent("be-1")],
            [make_task("t-1"), make_task("t-ui", "Style navbar")],
        )

        recommendations = asyncio.run(engine.assignment_recommendations())

        by_task = {r.task.id: r for r in recommendations}
        assert by_task["t-1"].agent.id == "be-1"
        assert by_task["t-ui"].agent is None
        assert by_task["t-ui"].reason == "No agents available for type: Frontend"
        assert asyncio.run(store.get_task("t-1")).assigned_to_agent is None


class TestAssignmentLock:

    def lock_manager(self, acquired):
        manager = MagicMock()
        lock = Lock(resource="assignment:t-1", lock_id="abc", acquired_at=0.0) if acquired else None
        manager.try_acquire = AsyncMock(return_value=lock)
        manager.release = AsyncMock(return_value=True)
        return manager

    def test_commit_under_lock(self):
        manager = self.lock_manager(acquired=True)
        task = make_task("t-1")
        engine, _ = build_engine([make_agent("be-1")], [task], lock_manager=manager)

        assert asyncio.run(engine.assign(task)).success
        manager.try_acquire.assert_awaited_once_with("assignment:t-1", ttl=30)
        manager.release.assert_awaited_once()

    def test_busy_lock(self):
        manager = self.lock_manager(acquired=False)
        task = make_task("t-1")
        engine, store = build_engine([make_agent("be-1")], [task], lock_manager=manager)

        result = asyncio.run(engine.assign(task))

        assert not result.success
        assert result.error == "Task t-1 is being assigned by another process"
        assert asyncio.run(store.get_task("t-1")).assigned_to_agent is None
        manager.release.assert_not_awaited()

    def test_lock_backend_error(self):
        manager = MagicMock()
        manager.try_acquire = AsyncMock(side_effect=ConnectionError("redis down"))
        task = make_task("t-1")
        engine, _ = build_engine([make_agent("be-1")], [task], lock_manager=manager)

        result = asyncio.run(engine.assign(task))
        assert result.error == "Lock unavailable: redis down"


class TestReassignStuckTasks:

    def test_stuck_task_moves_to_same_type(self):
        stuck = make_task(
            "t-stuck",
            "Style navbar",
            assigned_to_agent="be-1",
            status=TaskStatus.IN_PROGRESS,
            started_at=NOW - timedelta(hours=3),
        )
        fresh = make_task(
            "t-fresh",
            assigned_to_agent="be-2",
            status=TaskStatus.IN_PROGRESS,
            started_at=NOW - timedelta(minutes=30),
        )
        agents = [
            make_agent("be-1", current_task_id="t-stuck", status=AgentStatus.ACTIVE),
            make_agent("be-2", average_task_duration_ms=10 * 60 * 1000),
            make_agent("fe-1", AgentType.FRONTEND),
        ]
        engine, store = build_engine(agents, [stuck, fresh])

        results = asyncio.run(engine.reassign_stuck_tasks())

        assert len(results) == 1
        assert results[0].success
        assert results[0].agent_type == AgentType.BACKEND
        assert results[0].agent_id == "be-2"

        task = asyncio.run(store.get_task("t-stuck"))
        assert task.assigned_to_agent == "be-2"
        assert task.status == TaskStatus.TODO
        assert task.started_at is None

        previous = asyncio.run(store.get_agent("be-1"))
        assert previous.current_task_id is None
        assert previous.status == AgentStatus.IDLE

    def test_nothing_stuck(self):
        engine, _ = build_engine([make_agent("be-1")], [make_task("t-1")])
        assert asyncio.run(engine.reassign_stuck_tasks()) == []
