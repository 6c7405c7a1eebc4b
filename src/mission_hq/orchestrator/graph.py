"""Per-mission dependency DAG built from one snapshot of the mission's tasks.

Edges point from a dependency to its dependent: ``A -> B`` means B waits for
A. Cycles are reported in that direction as id sequences closed on their
first node.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from mission_hq.orchestrator.errors import CircularDependencyError
from mission_hq.orchestrator.models import TaskStatus, TaskView


@dataclass(slots=True)
class BlockingDependency:
    task_id: str
    status: TaskStatus | None
    title: str | None = None


@dataclass(slots=True)
class BlockedTask:
    task: TaskView
    reason: str
    blocking: list[BlockingDependency] = field(default_factory=list)


@dataclass(slots=True)
class DagNode:
    task_id: str
    title: str
    status: TaskStatus
    dependencies: tuple[str, ...]
    level: int | None
    can_execute: bool
    blocking_reason: str | None


@dataclass(slots=True)
class DagEdge:
    source: str
    target: str
    status: str


@dataclass(slots=True)
class DagView:
    nodes: list[DagNode]
    edges: list[DagEdge]
    levels: int
    has_cycles: bool
    cycles: list[list[str]]


@dataclass(slots=True)
class CriticalPath:
    task_ids: list[str]
    total_duration: float


@dataclass(slots=True)
class DependencyStats:
    total_tasks: int
    tasks_with_dependencies: int
    average_dependencies: float
    max_dependencies: int
    parallelism_potential: int
    current_blocking: int


@dataclass(slots=True)
class ProceedStatus:
    can_proceed: bool
    executable_tasks: int
    blocked_tasks: int
    message: str


class DependencyGraph:
    """Read-only dependency graph of one mission."""

    def __init__(self, tasks: Iterable[TaskView]) -> None:
        self.tasks: dict[str, TaskView] = {task.task_id: task for task in tasks}
        self.dependents: dict[str, list[str]] = {task_id: [] for task_id in self.tasks}
        for task in self.tasks.values():
            for dep_id in task.dependencies:
                if dep_id in self.tasks:
                    self.dependents[dep_id].append(task.task_id)

    def __len__(self) -> int:
        return len(self.tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.tasks

    def find_cycles(self) -> list[list[str]]:
        """Return every cycle reached by a back edge during DFS."""

        cycles: list[list[str]] = []
        visited: set[str] = set()
        for root in self.tasks:
            if root in visited:
                continue
            path: list[str] = [root]
            on_path: set[str] = {root}
            stack = [iter(self.dependents[root])]
            visited.add(root)
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    stack.pop()
                    on_path.discard(path.pop())
                    continue
                if child in on_path:
                    cycles.append([*path[path.index(child) :], child])
                    continue
                if child in visited:
                    continue
                visited.add(child)
                path.append(child)
                on_path.add(child)
                stack.append(iter(self.dependents[child]))
        return cycles

    @property
    def has_cycles(self) -> bool:
        return bool(self.find_cycles())

    def would_create_cycle(self, task_id: str, dep_id: str) -> list[str] | None:
        """Cycle that adding ``task_id`` depends on ``dep_id`` would close, if any."""

        if task_id == dep_id:
            return [dep_id, task_id]
        parents: dict[str, str] = {}
        queue = deque([task_id])
        seen = {task_id}
        while queue:
            current = queue.popleft()
            for child in self.dependents.get(current, ()):
                if child in seen:
                    continue
                parents[child] = current
                if child == dep_id:
                    path = [dep_id]
                    while path[-1] != task_id:
                        path.append(parents[path[-1]])
                    path.reverse()
                    return [dep_id, *path]
                seen.add(child)
                queue.append(child)
        return None

    def topological_order(self) -> list[str]:
        """Kahn ordering; raises ``CircularDependencyError`` on a cycle."""

        indegree = {
            task_id: sum(1 for dep in task.dependencies if dep in self.tasks)
            for task_id, task in self.tasks.items()
        }
        queue = deque(task_id for task_id, count in indegree.items() if count == 0)
        order: list[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for child in self.dependents[current]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    queue.append(child)
        if len(order) != len(self.tasks):
            cycles = self.find_cycles()
            raise CircularDependencyError(cycles[0] if cycles else [])
        return order

    def levels(self) -> dict[str, int]:
        """Depth of each task: 0 without dependencies, else one past its deepest dependency."""

        levels: dict[str, int] = {}
        for task_id in self.topological_order():
            deps = [dep for dep in self.tasks[task_id].dependencies if dep in self.tasks]
            levels[task_id] = 1 + max(levels[dep] for dep in deps) if deps else 0
        return levels

    def unmet_dependencies(self, task_id: str) -> list[BlockingDependency]:
        blocking: list[BlockingDependency] = []
        for dep_id in self.tasks[task_id].dependencies:
            dep = self.tasks.get(dep_id)
            if dep is None:
                blocking.append(BlockingDependency(task_id=dep_id, status=None))
            elif dep.status is not TaskStatus.COMPLETED:
                blocking.append(
                    BlockingDependency(task_id=dep_id, status=dep.status, title=dep.title),
                )
        return blocking

    def dependencies_met(self, task_id: str) -> bool:
        return not self.unmet_dependencies(task_id)

    def is_executable(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None:
            return False
        return (
            task.status is TaskStatus.PENDING
            and not task.auditor_review_id
            and self.dependencies_met(task_id)
        )

    def blocking_reason(self, task_id: str) -> str | None:
        task = self.tasks[task_id]
        if task.status is not TaskStatus.PENDING:
            return f"Task is {task.status.value}"
        if task.auditor_review_id:
            return f"Under audit review {task.auditor_review_id}"
        unmet = self.unmet_dependencies(task_id)
        if unmet:
            described = ", ".join(
                f"{dep.task_id} ({dep.status.value if dep.status else 'missing'})" for dep in unmet
            )
            return f"Waiting for dependencies: {described}"
        return None

    def executable(self) -> list[TaskView]:
        """Pending tasks that could be claimed now, in dispatch order."""

        ready = [task for task_id, task in self.tasks.items() if self.is_executable(task_id)]
        return sorted(ready, key=lambda task: (task.priority.rank, task.created_at, task.task_id))

    def blocked(self) -> list[BlockedTask]:
        blocked: list[BlockedTask] = []
        for task_id, task in self.tasks.items():
            if task.status is not TaskStatus.PENDING or self.is_executable(task_id):
                continue
            blocked.append(
                BlockedTask(
                    task=task,
                    reason=self.blocking_reason(task_id) or "Unknown",
                    blocking=self.unmet_dependencies(task_id),
                ),
            )
        return blocked

    def critical_path(self) -> CriticalPath:
        """Longest chain by summed ``estimated_duration``."""

        if not self.tasks:
            return CriticalPath(task_ids=[], total_duration=0.0)
        dist: dict[str, float] = {}
        previous: dict[str, str | None] = {}
        for task_id in self.topological_order():
            task = self.tasks[task_id]
            best_dep: str | None = None
            for dep in task.dependencies:
                if dep in dist and (best_dep is None or dist[dep] > dist[best_dep]):
                    best_dep = dep
            dist[task_id] = task.estimated_duration + (dist[best_dep] if best_dep else 0.0)
            previous[task_id] = best_dep

        end: str | None = max(dist, key=lambda task_id: dist[task_id])
        total = dist[end]
        path: list[str] = []
        while end is not None:
            path.append(end)
            end = previous[end]
        path.reverse()
        return CriticalPath(task_ids=path, total_duration=total)

    def dag_view(self) -> DagView:
        cycles = self.find_cycles()
        levels = {} if cycles else self.levels()
        nodes = [
            DagNode(
                task_id=task_id,
                title=task.title,
                status=task.status,
                dependencies=task.dependencies,
                level=levels.get(task_id),
                can_execute=self.is_executable(task_id),
                blocking_reason=None if self.is_executable(task_id) else self.blocking_reason(task_id),
            )
            for task_id, task in self.tasks.items()
        ]
        edges: list[DagEdge] = []
        for task_id, task in self.tasks.items():
            for dep_id in task.dependencies:
                dep = self.tasks.get(dep_id)
                if dep is None:
                    continue
                if dep.status is TaskStatus.COMPLETED:
                    status = "completed"
                elif task.status is TaskStatus.PENDING:
                    status = "blocked"
                else:
                    status = "valid"
                edges.append(DagEdge(source=dep_id, target=task_id, status=status))
        return DagView(
            nodes=nodes,
            edges=edges,
            levels=max(levels.values(), default=-1) + 1,
            has_cycles=bool(cycles),
            cycles=cycles,
        )

    def stats(self) -> DependencyStats:
        counts = [len(task.dependencies) for task in self.tasks.values()]
        with_deps = [count for count in counts if count > 0]
        average = sum(with_deps) / len(with_deps) if with_deps else 0.0
        return DependencyStats(
            total_tasks=len(self.tasks),
            tasks_with_dependencies=len(with_deps),
            average_dependencies=round(average, 2),
            max_dependencies=max(counts, default=0),
            parallelism_potential=len(self.executable()),
            current_blocking=len(self.blocked()),
        )

    def can_proceed(self) -> ProceedStatus:
        executable = self.executable()
        blocked = self.blocked()
        if not executable and not blocked:
            return ProceedStatus(
                can_proceed=False,
                executable_tasks=0,
                blocked_tasks=0,
                message="No pending tasks",
            )
        if executable:
            return ProceedStatus(
                can_proceed=True,
                executable_tasks=len(executable),
                blocked_tasks=len(blocked),
                message=f"{len(executable)} tasks ready to execute",
            )
        return ProceedStatus(
            can_proceed=False,
            executable_tasks=0,
            blocked_tasks=len(blocked),
            message=f"{len(blocked)} tasks blocked, {blocked[0].reason}",
        )
