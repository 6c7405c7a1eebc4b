"""Controllers for mission/task/agent CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mission_hq.config import Settings
from mission_hq.orchestrator.audit import AuditDecision
from mission_hq.orchestrator.coordinator import OrchestrationCoordinator
from mission_hq.orchestrator.models import (
    AgentCreate,
    AgentView,
    MissionCreate,
    MissionView,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskType,
    TaskView,
)
from mission_hq.orchestrator.repository import OrchestratorRepository


@dataclass(slots=True)
class MissionCreateCommand:
    """CLI input for mission creation."""

    db_path: Path | None
    title: str
    description: str
    objective: str
    priority: str


@dataclass(slots=True)
class MissionRefCommand:
    """CLI input for commands addressing one mission."""

    db_path: Path | None
    mission_id: str


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for direct task creation."""

    db_path: Path | None
    mission_id: str
    title: str
    description: str
    task_type: str
    priority: str
    dependencies: tuple[str, ...]
    assigned_to: str | None
    required_role: str | None
    max_retries: int | None
    estimated_duration: float


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    mission_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for commands addressing one task."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskClaimCommand:
    db_path: Path | None
    agent_id: str
    mission_id: str | None


@dataclass(slots=True)
class TaskCompleteCommand:
    db_path: Path | None
    task_id: str
    output_json: str | None


@dataclass(slots=True)
class TaskFailCommand:
    db_path: Path | None
    task_id: str
    error: str
    agent_id: str | None


@dataclass(slots=True)
class TaskAuditCommand:
    """CLI input for an operator audit decision."""

    db_path: Path | None
    task_id: str
    decision: str
    reason: str
    suggested_agent_role: str | None
    refined_description: str | None
    question_for_human: str | None


@dataclass(slots=True)
class TaskDependencyCommand:
    db_path: Path | None
    task_id: str
    depends_on: str


@dataclass(slots=True)
class TaskAnswerCommand:
    db_path: Path | None
    human_task_id: str
    response: str


@dataclass(slots=True)
class PlanApplyCommand:
    """CLI input for materializing a lead-agent plan file."""

    db_path: Path | None
    lead_task_id: str
    plan_path: Path


@dataclass(slots=True)
class AgentCreateCommand:
    db_path: Path | None
    name: str
    role: str
    capabilities: tuple[str, ...]


@dataclass(slots=True)
class AgentListCommand:
    db_path: Path | None
    role: str | None


class MissionCliController:
    """CLI controller for mission orchestration commands."""

    def create_mission(self, command: MissionCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            mission = coordinator.create_mission(
                MissionCreate(
                    title=command.title,
                    description=command.description,
                    objective=command.objective,
                    priority=TaskPriority(command.priority),
                ),
            )
        return [f"Mission created: {mission.mission_id}", *_mission_lines(mission)]

    def start_mission(self, command: MissionRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            started = coordinator.start_mission(command.mission_id)
        return [
            f"Mission started: {started.mission.mission_id}",
            f"Squad lead: {started.lead.name} ({started.lead.agent_id})",
            f"Analysis task: {started.analysis_task.task_id}",
        ]

    def pause_mission(self, command: MissionRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            mission = coordinator.pause_mission(command.mission_id)
        return [f"Mission paused: {mission.mission_id}"]

    def resume_mission(self, command: MissionRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            mission = coordinator.resume_mission(command.mission_id)
        return [f"Mission resumed: {mission.mission_id}"]

    def show_mission(self, command: MissionRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            mission = coordinator.get_mission(command.mission_id)
            proceed = coordinator.mission_graph(command.mission_id).can_proceed()
            tasks = coordinator.repository.find_by_mission(command.mission_id)
        lines = _mission_lines(mission)
        lines.append(f"Can proceed: {'yes' if proceed.can_proceed else 'no'} ({proceed.message})")
        lines.append(f"Tasks: {len(tasks)}")
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def mission_log(self, command: MissionRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            entries = coordinator.mission_log(command.mission_id)
        lines = [f"Log entries: {len(entries)}"]
        for entry in entries:
            details = json.dumps(entry.details, ensure_ascii=False, sort_keys=True)
            lines.append(f"  {entry.timestamp.isoformat()} {entry.action} {details}")
        return lines

    def mission_dag(self, command: MissionRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            graph = coordinator.mission_graph(command.mission_id)
        view = graph.dag_view()
        lines = [
            f"Nodes: {len(view.nodes)} edges: {len(view.edges)} levels: {view.levels}",
            f"Cycles: {len(view.cycles)}",
        ]
        lines.extend(f"  cycle {' -> '.join(cycle)}" for cycle in view.cycles)
        for node in sorted(view.nodes, key=lambda item: (item.level is None, item.level or 0)):
            level = "-" if node.level is None else str(node.level)
            ready = "ready" if node.can_execute else (node.blocking_reason or "-")
            lines.append(f"  L{level} {node.task_id} [{node.status.value}] {node.title} :: {ready}")
        if not view.has_cycles:
            path = graph.critical_path()
            lines.append(
                f"Critical path ({path.total_duration:g} min): {' -> '.join(path.task_ids) or '-'}",
            )
        return lines

    def check_completion(self, command: MissionRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            completed = coordinator.check_completion(command.mission_id)
            mission = coordinator.get_mission(command.mission_id)
        if completed:
            return [f"Mission completed: {mission.mission_id}"]
        return [f"Mission {mission.mission_id} status: {mission.status.value}"]

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            task = coordinator.create_task(
                TaskCreate(
                    mission_id=command.mission_id,
                    title=command.title,
                    description=command.description,
                    task_type=_parse_enum(TaskType, command.task_type, "task type"),
                    priority=_parse_enum(TaskPriority, command.priority, "priority"),
                    assigned_to=command.assigned_to,
                    required_role=command.required_role,
                    dependencies=command.dependencies,
                    max_retries=command.max_retries,
                    estimated_duration=command.estimated_duration,
                ),
            )
        return [f"Task created: {task.task_id}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_enum(TaskStatus, command.status, "status") if command.status else None
        with _coordinator(settings) as coordinator:
            tasks = coordinator.repository.list_tasks(
                mission_id=command.mission_id,
                status=status,
                limit=command.limit,
            )
        return [f"Tasks: {len(tasks)}", *(f"  {_task_line(task)}" for task in tasks)]

    def inspect_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            details = coordinator.get_task_details(command.task_id)

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Mission: {task.mission_id}",
            f"Title: {task.title}",
            f"Type: {task.task_type.value}",
            f"Status: {task.status.value}",
            f"Assigned to: {task.assigned_to or '-'}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Under audit: {task.auditor_review_id or '-'}",
            f"Human task: {task.human_task_id or '-'}",
            f"Dependencies: {', '.join(task.dependencies) or '-'}",
            f"Error: {task.error or '-'}",
            f"Retry history: {len(task.retry_history)}",
        ]
        lines.extend(
            f"  #{attempt.attempt} {attempt.timestamp.isoformat()} "
            f"agent={attempt.agent_id or '-'} {attempt.error}"
            for attempt in task.retry_history
        )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            status_from = event.status_from.value if event.status_from else "-"
            status_to = event.status_to.value if event.status_to else "-"
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} {status_from}->{status_to}",
            )
        return lines

    def claim_task(self, command: TaskClaimCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            task = coordinator.claim_next_task(command.agent_id, command.mission_id)
        if task is None:
            return ["No executable task."]
        return [f"Task claimed: {task.task_id}", f"  {_task_line(task)}"]

    def complete_task(self, command: TaskCompleteCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        output = _parse_json_object(command.output_json, "--output")
        with _coordinator(settings) as coordinator:
            outcome = coordinator.complete_task(command.task_id, output)
        if not outcome.succeeded:
            return [
                f"Task {command.task_id} output rejected: {outcome.task.error}",
                f"Status: {outcome.task.status.value}",
            ]
        lines = [f"Task completed: {command.task_id}"]
        if outcome.plan_summary is not None:
            summary = outcome.plan_summary
            lines.append(
                f"Plan applied: agents={len(summary.agents_created)} "
                f"tasks={len(summary.tasks_created)} failures={len(summary.failures)}",
            )
        if outcome.audit_outcome is not None:
            lines.append(f"Audit decision: {outcome.audit_outcome.message}")
        if outcome.mission_completed:
            lines.append(f"Mission completed: {outcome.task.mission_id}")
        return lines

    def fail_task(self, command: TaskFailCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            outcome = coordinator.fail_task(command.task_id, command.error, command.agent_id)
        task = outcome.task
        lines = [
            f"Task failed: {task.task_id}",
            f"Status: {task.status.value}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Needs audit: {'yes' if outcome.needs_audit else 'no'}",
        ]
        if outcome.audit_task is not None:
            lines.append(f"Audit task: {outcome.audit_task.task_id}")
        return lines

    def retry_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            coordinator.retry_task(command.task_id)
        return [f"Task re-queued: {command.task_id}"]

    def audit_task(self, command: TaskAuditCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        decision = AuditDecision.from_payload(
            {
                "decision": command.decision,
                "reason": command.reason,
                "suggested_agent_role": command.suggested_agent_role,
                "refined_description": command.refined_description,
                "question_for_human": command.question_for_human,
            },
        )
        with _coordinator(settings) as coordinator:
            outcome = coordinator.apply_audit_decision(command.task_id, decision)
        lines = [f"Decision {outcome.decision.value}: {outcome.message}"]
        if outcome.human_task is not None:
            lines.append(f"Human task: {outcome.human_task.task_id}")
        return lines

    def add_dependency(self, command: TaskDependencyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            coordinator.add_dependency(command.task_id, command.depends_on)
        return [f"Task {command.task_id} depends on {command.depends_on}"]

    def remove_dependency(self, command: TaskDependencyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            coordinator.remove_dependency(command.task_id, command.depends_on)
        return [f"Dependency removed: {command.task_id} -/-> {command.depends_on}"]

    def answer_human(self, command: TaskAnswerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            outcome = coordinator.answer_human(command.human_task_id, command.response)
        lines = [f"Human task answered: {command.human_task_id}"]
        if outcome.resumed_task is not None:
            lines.append(f"Task resumed: {outcome.resumed_task.task_id}")
        return lines

    def apply_plan(self, command: PlanApplyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        raw = command.plan_path.read_text(encoding="utf-8")
        with _coordinator(settings) as coordinator:
            summary = coordinator.process_plan(command.lead_task_id, raw)
        lines = [
            f"Agents created: {len(summary.agents_created)} reused: {len(summary.agents_reused)}",
            f"Tasks created: {len(summary.tasks_created)}",
        ]
        lines.extend(f"  {local} -> {task_id}" for local, task_id in summary.tasks_created.items())
        if summary.failures:
            lines.append(f"Failures: {len(summary.failures)}")
            lines.extend(f"  {json.dumps(item, sort_keys=True)}" for item in summary.failures)
        return lines

    def create_agent(self, command: AgentCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            agent = coordinator.create_agent(
                AgentCreate(name=command.name, role=command.role, capabilities=command.capabilities),
            )
        return [f"Agent created: {agent.agent_id}", f"  {_agent_line(agent)}"]

    def list_agents(self, command: AgentListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            agents = coordinator.repository.list_agents(role=command.role)
        return [f"Agents: {len(agents)}", *(f"  {_agent_line(agent)}" for agent in agents)]


def _mission_lines(mission: MissionView) -> list[str]:
    return [
        f"Mission: {mission.mission_id}",
        f"Title: {mission.title}",
        f"Status: {mission.status.value}",
        f"Priority: {mission.priority.value}",
        f"Squad lead: {mission.squad_lead_id or '-'}",
        f"Awaiting human: {mission.awaiting_human_task_id or '-'}",
    ]


def _task_line(task: TaskView) -> str:
    audit = f" audit={task.auditor_review_id}" if task.auditor_review_id else ""
    return (
        f"{task.task_id} type={task.task_type.value} status={task.status.value} "
        f"priority={task.priority.value} retries={task.retry_count}/{task.max_retries} "
        f"assigned={task.assigned_to or '-'}{audit} title={task.title}"
    )


def _agent_line(agent: AgentView) -> str:
    rate = "-" if agent.success_rate is None else f"{agent.success_rate:g}%"
    return (
        f"{agent.agent_id} name={agent.name} role={agent.role} status={agent.status.value} "
        f"done={agent.tasks_completed} failed={agent.tasks_failed} success={rate}"
    )


def _parse_enum(enum_type: Any, raw: str, label: str) -> Any:
    try:
        return enum_type(raw.strip().lower())
    except ValueError as error:
        allowed = ", ".join(item.value for item in enum_type)
        raise ValueError(f"Unsupported {label}: {raw!r}. Expected one of {allowed}.") from error


def _parse_json_object(raw: str | None, label: str) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"{label} must be valid JSON: {error.msg}") from error
    if not isinstance(parsed, dict):
        raise ValueError(f"{label} must be a JSON object")
    return parsed


@contextmanager
def _coordinator(settings: Settings) -> Iterator[OrchestrationCoordinator]:
    settings.validate()
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        default_max_retries=settings.orchestration.default_max_retries,
    )
    repository.init_schema()
    try:
        yield OrchestrationCoordinator(repository, settings.orchestration)
    finally:
        repository.close()
