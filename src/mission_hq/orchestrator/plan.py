"""Lead-agent execution plans: parsing and structural validation.

A plan is untrusted agent output. ``parse_plan`` checks all of it and reports
every problem at once before anything is persisted.
"""

from __future__ import annotations

import json
import math
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from mission_hq.orchestrator.errors import InvalidPlan
from mission_hq.orchestrator.models import TaskPriority, TaskType

TASK_TYPE_ALIASES = {
    "web_search": TaskType.SEARCH,
    "data_analysis": TaskType.ANALYSIS,
    "content_generation": TaskType.GENERATION,
    "code_execution": TaskType.EXECUTION,
}

# Kinds the engine creates itself; a plan may not ask for them.
INTERNAL_TASK_TYPES = frozenset(
    {TaskType.PLAN_ANALYSIS, TaskType.HUMAN_INPUT, TaskType.AUDIT_REVIEW},
)


@dataclass(slots=True)
class PlannedAgent:
    local_id: str
    name: str
    role: str
    capabilities: tuple[str, ...] = ()


@dataclass(slots=True)
class PlannedTask:
    local_id: str
    title: str
    description: str = ""
    task_type: TaskType = TaskType.CUSTOM
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: tuple[str, ...] = ()
    estimated_duration: float = 1.0
    input: dict[str, Any] | None = None
    assigned_agent_role: str | None = None


@dataclass(slots=True)
class ExecutionPlan:
    tasks: list[PlannedTask]
    agents: list[PlannedAgent]
    summary: str = ""
    complexity: str | None = None
    estimated_duration: float | None = None
    risk_factors: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def ordered_tasks(self) -> list[PlannedTask]:
        """Tasks with every dependency ahead of its dependents, plan order otherwise."""

        by_id = {task.local_id: task for task in self.tasks}
        indegree = {task.local_id: len(task.dependencies) for task in self.tasks}
        dependents: dict[str, list[str]] = {task.local_id: [] for task in self.tasks}
        for task in self.tasks:
            for dep in task.dependencies:
                dependents[dep].append(task.local_id)
        queue = deque(task.local_id for task in self.tasks if indegree[task.local_id] == 0)
        ordered: list[PlannedTask] = []
        while queue:
            current = queue.popleft()
            ordered.append(by_id[current])
            for child in dependents[current]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    queue.append(child)
        return ordered


def parse_plan(raw: Mapping[str, Any] | str | None) -> ExecutionPlan:
    """Validate a lead-agent plan, raising ``InvalidPlan`` with every problem found."""

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as error:
            raise InvalidPlan([f"plan is not valid JSON: {error.msg}"]) from error
    if not isinstance(raw, Mapping):
        raise InvalidPlan(["plan must be a JSON object"])

    problems: list[str] = []
    raw_tasks = raw.get("tasks")
    raw_agents = raw.get("agents")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        problems.append("tasks must be a non-empty array")
        raw_tasks = []
    if not isinstance(raw_agents, list) or not raw_agents:
        problems.append("agents must be a non-empty array")
        raw_agents = []

    agents = _parse_agents(raw_agents, problems)
    tasks = _parse_tasks(raw_tasks, problems)
    _merge_top_level_dependencies(raw.get("dependencies"), tasks, problems)
    summary = _optional_string(raw.get("summary"), "summary", problems)
    complexity = _optional_string(raw.get("complexity"), "complexity", problems)
    estimated_duration = _duration(
        _pick(raw, "estimated_duration", "estimatedDuration"),
        "estimatedDuration",
        problems,
    )
    risk_factors = _string_list(_pick(raw, "risk_factors", "riskFactors"), "riskFactors", problems)
    recommendations = _string_list(raw.get("recommendations"), "recommendations", problems)
    _check_references(tasks, problems)
    if not problems:
        _check_cycles(tasks, problems)
    if problems:
        raise InvalidPlan(problems)

    return ExecutionPlan(
        tasks=tasks,
        agents=agents,
        summary=summary or "",
        complexity=complexity,
        estimated_duration=estimated_duration,
        risk_factors=risk_factors,
        recommendations=recommendations,
    )


def _parse_agents(raw_agents: list[Any], problems: list[str]) -> list[PlannedAgent]:
    agents: list[PlannedAgent] = []
    names: set[str] = set()
    for index, item in enumerate(raw_agents):
        where = f"agents[{index}]"
        if not isinstance(item, Mapping):
            problems.append(f"{where} must be an object")
            continue
        name = str(item.get("name") or "").strip()
        role = str(item.get("role") or "").strip()
        if not name:
            problems.append(f"{where} is missing name")
        if not role:
            problems.append(f"{where} is missing role")
        if name and name in names:
            problems.append(f"{where} duplicates agent name {name!r}")
        if not name or not role:
            continue
        names.add(name)
        capabilities = item.get("capabilities") or []
        if not isinstance(capabilities, list):
            problems.append(f"{where}.capabilities must be an array")
            capabilities = []
        agents.append(
            PlannedAgent(
                local_id=str(item.get("id") or name),
                name=name,
                role=role,
                capabilities=tuple(str(value) for value in capabilities),
            ),
        )
    return agents


def _parse_tasks(raw_tasks: list[Any], problems: list[str]) -> list[PlannedTask]:
    tasks: list[PlannedTask] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_tasks):
        where = f"tasks[{index}]"
        if not isinstance(item, Mapping):
            problems.append(f"{where} must be an object")
            continue
        local_id = str(item.get("id") or "").strip()
        title = str(item.get("title") or "").strip()
        if not local_id:
            problems.append(f"{where} is missing id")
        elif local_id in seen:
            problems.append(f"{where} duplicates task id {local_id!r}")
        if not title:
            problems.append(f"{where} is missing title")

        task_type = _task_type(item.get("type", item.get("task_type")), where, problems)
        priority = _priority(item.get("priority"), where, problems)
        duration = _duration(
            _pick(item, "estimated_duration", "estimatedDuration"),
            f"{where}.estimatedDuration",
            problems,
        )
        dependencies = item.get("dependencies") or []
        if not isinstance(dependencies, list):
            problems.append(f"{where}.dependencies must be an array")
            dependencies = []
        task_input = item.get("input")
        if task_input is not None and not isinstance(task_input, Mapping):
            problems.append(f"{where}.input must be an object")
            task_input = None

        if not local_id or local_id in seen or not title:
            continue
        seen.add(local_id)
        tasks.append(
            PlannedTask(
                local_id=local_id,
                title=title,
                description=str(item.get("description") or ""),
                task_type=task_type or TaskType.CUSTOM,
                priority=priority or TaskPriority.MEDIUM,
                dependencies=tuple(dict.fromkeys(str(dep) for dep in dependencies)),
                estimated_duration=duration if duration is not None else 1.0,
                input=dict(task_input) if task_input is not None else None,
                assigned_agent_role=_pick(item, "assigned_agent_role", "assignedAgentRole"),
            ),
        )
    return tasks


def _merge_top_level_dependencies(
    raw_dependencies: Any,
    tasks: list[PlannedTask],
    problems: list[str],
) -> None:
    if raw_dependencies is None:
        return
    if not isinstance(raw_dependencies, list):
        problems.append("dependencies must be an array")
        return
    by_id = {task.local_id: task for task in tasks}
    for index, entry in enumerate(raw_dependencies):
        where = f"dependencies[{index}]"
        if not isinstance(entry, Mapping):
            problems.append(f"{where} must be an object")
            continue
        task_id = _pick(entry, "task_id", "taskId")
        depends_on = _pick(entry, "depends_on", "dependsOn") or []
        if not task_id:
            problems.append(f"{where} is missing taskId")
            continue
        if not isinstance(depends_on, list):
            problems.append(f"{where}.dependsOn must be an array")
            continue
        task = by_id.get(str(task_id))
        if task is None:
            problems.append(f"{where} references unknown task {task_id!r}")
            continue
        merged = dict.fromkeys([*task.dependencies, *(str(dep) for dep in depends_on)])
        task.dependencies = tuple(merged)


def _check_references(tasks: list[PlannedTask], problems: list[str]) -> None:
    known = {task.local_id for task in tasks}
    for task in tasks:
        for dep in task.dependencies:
            if dep == task.local_id:
                problems.append(f"task {task.local_id!r} depends on itself")
            elif dep not in known:
                problems.append(f"task {task.local_id!r} depends on unknown task {dep!r}")


def _check_cycles(tasks: list[PlannedTask], problems: list[str]) -> None:
    plan = ExecutionPlan(tasks=tasks, agents=[])
    ordered = {task.local_id for task in plan.ordered_tasks()}
    stuck = [task.local_id for task in tasks if task.local_id not in ordered]
    if stuck:
        problems.append(f"circular dependency among tasks: {', '.join(sorted(stuck))}")


def _task_type(raw: Any, where: str, problems: list[str]) -> TaskType | None:
    if raw is None:
        return TaskType.CUSTOM
    value = str(raw).strip().lower()
    if value in TASK_TYPE_ALIASES:
        return TASK_TYPE_ALIASES[value]
    try:
        task_type = TaskType(value)
    except ValueError:
        problems.append(f"{where} has unknown type {raw!r}")
        return None
    if task_type in INTERNAL_TASK_TYPES:
        problems.append(f"{where} may not use reserved type {value!r}")
        return None
    return task_type


def _priority(raw: Any, where: str, problems: list[str]) -> TaskPriority | None:
    if raw is None:
        return TaskPriority.MEDIUM
    try:
        return TaskPriority(str(raw).strip().lower())
    except ValueError:
        problems.append(f"{where} has unknown priority {raw!r}")
        return None


def _pick(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def _optional_string(raw: Any, where: str, problems: list[str]) -> str | None:
    if raw is None or isinstance(raw, str):
        return raw
    problems.append(f"{where} must be a string")
    return None


def _string_list(raw: Any, where: str, problems: list[str]) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        problems.append(f"{where} must be an array")
        return []
    return [str(item) for item in raw]


def _duration(raw: Any, where: str, problems: list[str]) -> float | None:
    """Minutes as a finite non-negative number; ``None`` when absent."""

    if raw is None:
        return None
    if isinstance(raw, bool):
        problems.append(f"{where} must be a number")
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        problems.append(f"{where} must be a number")
        return None
    if not math.isfinite(value):
        problems.append(f"{where} must be a finite number")
        return None
    if value < 0:
        problems.append(f"{where} must be >= 0")
        return None
    return value
