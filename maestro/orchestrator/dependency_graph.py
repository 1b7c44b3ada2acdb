"""Dependency graph (DAG) inference and analysis for task sets."""

import logging
import re
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from maestro.app.models import Agent, AgentType, Task
from maestro.orchestrator.classifier import AgentTypeClassifier, KeywordClassifier

logger = logging.getLogger(__name__)

API_TERMS = re.compile(r"\b(api|apis|endpoints?|fetch\w*|requests?)\b")
DATABASE_TERMS = re.compile(r"\b(database|migrations?|schemas?|tables?)\b")
RELEASE_TERMS = re.compile(r"\b(deploy\w*|release\w*)\b")
VERIFICATION_TERMS = re.compile(r"\b(tests?|testing|verify|verification|validate|validation|qa)\b")
KEYWORD = re.compile(r"\b\w{5,}\b")


class DependencyKind(str, Enum):
    """How an edge was established."""
    EXPLICIT = "explicit"
    INFERRED = "inferred"


class TaskDependency(BaseModel):
    """Edge: task_id cannot start before depends_on is done."""
    task_id: str
    depends_on: str
    reason: str
    kind: DependencyKind


class TaskNode(BaseModel):
    """Node in the task dependency graph."""
    task: Task
    dependencies: list[str] = []
    dependents: list[str] = []
    level: int = 0


class ExecutionGroup(BaseModel):
    """Tasks sharing a level."""
    level: int
    tasks: list[Task]
    can_run_in_parallel: bool


class CompletionEstimate(BaseModel):
    """Rough duration estimates in hours."""
    sequential_hours: float
    parallel_hours: float
    critical_path_hours: float


class DependencyAnalysis(BaseModel):
    """Everything the orchestration cycle needs from one analysis pass."""
    nodes: dict[str, TaskNode]
    dependencies: list[TaskDependency]
    cycles: list[list[str]]
    execution_groups: list[ExecutionGroup]
    critical_path: list[str]
    ready_tasks: list[Task]
    estimate: CompletionEstimate

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)


class DependencyInference:
    """Heuristic edge inference over every ordered pair of tasks."""

    def __init__(
        self,
        classifier: Optional[AgentTypeClassifier] = None,
        agent_types: Optional[Mapping[str, AgentType]] = None
    ):
        """
        Args:
            classifier: Classifier used for tasks without a known assignee
            agent_types: agent_id -> type, so assigned tasks take their agent's type
        """
        self.classifier = classifier or KeywordClassifier()
        self.agent_types = dict(agent_types or {})

    def task_type(self, task: Task) -> AgentType:
        if task.assigned_to_agent and task.assigned_to_agent in self.agent_types:
            return self.agent_types[task.assigned_to_agent]
        return self.classifier.classify(task)

    def infer(self, tasks: list[Task]) -> list[TaskDependency]:
        types = {task.id: self.task_type(task) for task in tasks}
        keywords = {
            task.id: set(KEYWORD.findall(f"{task.title} {task.description}".lower()))
            for task in tasks
        }

        dependencies = []
        for task in tasks:
            for other in tasks:
                if task.id == other.id:
                    continue
                reason = self._detect(task, other, types, keywords)
                if reason:
                    kind = (
                        DependencyKind.EXPLICIT if self._is_explicit(task, other)
                        else DependencyKind.INFERRED
                    )
                    dependencies.append(TaskDependency(
                        task_id=task.id,
                        depends_on=other.id,
                        reason=reason,
                        kind=kind,
                    ))
        return dependencies

    def _detect(
        self,
        task: Task,
        other: Task,
        types: dict[str, AgentType],
        keywords: dict[str, set[str]]
    ) -> Optional[str]:
        """Reason of the first matching rule, if any."""
        title = task.title.lower()
        other_title = other.title.lower().strip()

        if (
            types[task.id] == AgentType.FRONTEND
            and types[other.id] == AgentType.BACKEND
            and self._mentions(API_TERMS, task)
            and self._mentions(API_TERMS, other)
        ):
            return "Frontend task requires backend API endpoint"

        if (
            self._is_verification(task, types)
            and not self._is_verification(other, types)
            and len(keywords[task.id] & keywords[other.id]) >= 2
        ):
            return "Testing requires implementation to be complete"

        if other_title and other_title in task.description.lower():
            return f'Task explicitly mentions "{other.title}"'

        if RELEASE_TERMS.search(title) and not RELEASE_TERMS.search(other_title):
            return "Deployment requires all features to be complete"

        if (
            self._mentions(DATABASE_TERMS, task)
            and self._mentions(DATABASE_TERMS, other)
            and other.created_at < task.created_at
        ):
            return "Database changes must be applied in order"

        if other_title and other_title in title and other_title != title.strip():
            return "Child component depends on parent component"

        return None

    @staticmethod
    def _is_explicit(task: Task, other: Task) -> bool:
        """The description names the other task by title or id."""
        description = task.description.lower()
        other_title = other.title.lower().strip()
        return (bool(other_title) and other_title in description) or other.id.lower() in description

    @staticmethod
    def _mentions(pattern: re.Pattern, task: Task) -> bool:
        return bool(pattern.search(f"{task.title} {task.description}".lower()))

    @staticmethod
    def _is_verification(task: Task, types: dict[str, AgentType]) -> bool:
        return types[task.id] == AgentType.TESTING or bool(
            VERIFICATION_TERMS.search(task.title.lower())
        )


class DependencyGraph:
    """
    Directed graph of task dependencies.

    Stored arena-style: tasks live in a list and edges are integer indices,
    so traversals never chase object references. Cycles are tolerated by
    every traversal and reported by detect_cycles().
    """

    def __init__(self, tasks: list[Task], dependencies: list[TaskDependency]):
        self.tasks = list(tasks)
        self.index: dict[str, int] = {task.id: i for i, task in enumerate(self.tasks)}
        self.dependencies: list[TaskDependency] = []
        self.deps: list[list[int]] = [[] for _ in self.tasks]
        self.dependents: list[list[int]] = [[] for _ in self.tasks]

        for dep in dependencies:
            src = self.index.get(dep.task_id)
            dst = self.index.get(dep.depends_on)
            if src is None or dst is None:
                logger.warning(
                    f"Ignoring dependency {dep.task_id} -> {dep.depends_on}: unknown task"
                )
                continue
            if dst in self.deps[src]:
                continue
            self.deps[src].append(dst)
            self.dependents[dst].append(src)
            self.dependencies.append(dep)

        self.levels = self._compute_levels()

    def __len__(self) -> int:
        return len(self.tasks)

    def _postorder(self, starts: Iterable[int], edges: list[list[int]]) -> list[int]:
        """Iterative DFS post-order; a node reached again while on the stack is skipped."""
        visited = [False] * len(self.tasks)
        order = []

        for start in starts:
            if visited[start]:
                continue
            visited[start] = True
            stack = [(start, iter(edges[start]))]

            while stack:
                node, pending = stack[-1]
                for nxt in pending:
                    if not visited[nxt]:
                        visited[nxt] = True
                        stack.append((nxt, iter(edges[nxt])))
                        break
                else:
                    stack.pop()
                    order.append(node)

        return order

    def _compute_levels(self) -> list[int]:
        """
        Longest distance from a dependency-free task.

        Each level is computed once, after its dependencies (post-order). A
        dependency still on the DFS stack closes a cycle and is ignored.
        """
        levels = [0] * len(self.tasks)
        done = [False] * len(self.tasks)

        for node in self._postorder(range(len(self.tasks)), self.deps):
            finished = [levels[d] for d in self.deps[node] if done[d]]
            levels[node] = 1 + max(finished) if finished else 0
            done[node] = True

        return levels

    def _roots(self) -> list[int]:
        return [i for i in range(len(self.tasks)) if not self.deps[i]]

    def level_of(self, task_id: str) -> int:
        return self.levels[self.index[task_id]]

    def nodes(self) -> dict[str, TaskNode]:
        return {
            task.id: TaskNode(
                task=task,
                dependencies=[self.tasks[d].id for d in self.deps[i]],
                dependents=[self.tasks[d].id for d in self.dependents[i]],
                level=self.levels[i],
            )
            for i, task in enumerate(self.tasks)
        }

    def detect_cycles(self) -> list[list[str]]:
        """
        Find cycles with a DFS over dependencies and a recursion-stack set.

        Returns:
            Each cycle as the ordered list of participating task ids
        """
        visited = [False] * len(self.tasks)
        on_stack = [False] * len(self.tasks)
        cycles = []

        for start in range(len(self.tasks)):
            if visited[start]:
                continue
            visited[start] = on_stack[start] = True
            path = [start]
            stack = [iter(self.deps[start])]

            while stack:
                for dep in stack[-1]:
                    if on_stack[dep]:
                        cycle = path[path.index(dep):]
                        cycles.append([self.tasks[i].id for i in cycle])
                    elif not visited[dep]:
                        visited[dep] = on_stack[dep] = True
                        path.append(dep)
                        stack.append(iter(self.deps[dep]))
                        break
                else:
                    stack.pop()
                    on_stack[path.pop()] = False

        if cycles:
            logger.warning(f"Detected {len(cycles)} dependency cycle(s): {cycles}")
        return cycles

    def order_by_dependencies(self) -> list[Task]:
        """Topological order: every task after its (non-cyclic) dependencies."""
        starts = self._roots() + list(range(len(self.tasks)))
        return [self.tasks[i] for i in self._postorder(starts, self.deps)]

    def execution_groups(self) -> list[ExecutionGroup]:
        by_level: dict[int, list[Task]] = {}
        for i, task in enumerate(self.tasks):
            by_level.setdefault(self.levels[i], []).append(task)

        return [
            ExecutionGroup(
                level=level,
                tasks=by_level[level],
                can_run_in_parallel=len(by_level[level]) > 1,
            )
            for level in sorted(by_level)
        ]

    def critical_path(self) -> list[Task]:
        """
        Longest chain by node count, from a dependency-free task along dependents.

        Ties resolve to the chain found first in task order.
        """
        best: list[Optional[list[int]]] = [None] * len(self.tasks)

        for node in self._postorder(range(len(self.tasks)), self.dependents):
            tails = [best[d] for d in self.dependents[node] if best[d] is not None]
            longest = max(tails, key=len) if tails else []
            best[node] = [node] + longest

        path: list[int] = []
        for root in self._roots():
            if len(best[root]) > len(path):
                path = best[root]
        return [self.tasks[i] for i in path]

    def ready_tasks(self) -> list[Task]:
        """Tasks not done whose dependencies are all done."""
        return [
            task
            for i, task in enumerate(self.tasks)
            if not task.is_done and all(self.tasks[d].is_done for d in self.deps[i])
        ]

    def unblocked_by(self, completed_task_id: str) -> list[Task]:
        """Direct dependents of a completed task whose dependencies are now all done."""
        node = self.index.get(completed_task_id)
        if node is None:
            return []

        return [
            self.tasks[d]
            for d in self.dependents[node]
            if not self.tasks[d].is_done
            and all(self.tasks[x].is_done for x in self.deps[d])
        ]

    def estimate_completion(self, avg_task_hours: float = 4.0) -> CompletionEstimate:
        return CompletionEstimate(
            sequential_hours=len(self.tasks) * avg_task_hours,
            parallel_hours=len(self.execution_groups()) * avg_task_hours,
            critical_path_hours=len(self.critical_path()) * avg_task_hours,
        )


class DependencyAnalyzer:
    """Builds and analyzes dependency graphs for a project's task set. No I/O."""

    def __init__(self, classifier: Optional[AgentTypeClassifier] = None):
        self.classifier = classifier or KeywordClassifier()

    def build_graph(
        self,
        tasks: list[Task],
        agents: Optional[list[Agent]] = None
    ) -> DependencyGraph:
        """
        Infer edges and build the graph.

        Args:
            tasks: Full task set of one project
            agents: Known agents, used to type tasks that already have an assignee
        """
        inference = DependencyInference(
            classifier=self.classifier,
            agent_types={agent.id: agent.agent_type for agent in agents or []},
        )
        return DependencyGraph(tasks, inference.infer(tasks))

    def analyze(
        self,
        tasks: list[Task],
        agents: Optional[list[Agent]] = None
    ) -> DependencyAnalysis:
        graph = self.build_graph(tasks, agents)
        analysis = DependencyAnalysis(
            nodes=graph.nodes(),
            dependencies=graph.dependencies,
            cycles=graph.detect_cycles(),
            execution_groups=graph.execution_groups(),
            critical_path=[task.id for task in graph.critical_path()],
            ready_tasks=graph.ready_tasks(),
            estimate=graph.estimate_completion(),
        )
        logger.info(
            f"Analyzed {len(tasks)} tasks: {len(graph.dependencies)} dependencies, "
            f"{len(analysis.execution_groups)} levels, {len(analysis.ready_tasks)} ready, "
            f"{len(analysis.cycles)} cycles"
        )
        return analysis
