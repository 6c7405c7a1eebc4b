"""Request bodies and camelCase response payloads for the HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from mission_hq.orchestrator.audit import AuditOutcome
from mission_hq.orchestrator.coordinator import CompletionOutcome, FailureOutcome, PlanSummary
from mission_hq.orchestrator.graph import (
    BlockedTask,
    CriticalPath,
    DagView,
    DependencyStats,
    ProceedStatus,
)
from mission_hq.orchestrator.models import (
    AgentView,
    MissionView,
    OrchestrationLogEntry,
    TaskDetails,
    TaskPriority,
    TaskType,
    TaskView,
)


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class MissionCreateRequest(_Request):
    title: str = Field(min_length=1)
    description: str = ""
    objective: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM


class AgentCreateRequest(_Request):
    name: str = Field(min_length=1)
    role: str = Field(min_length=1)
    capabilities: list[str] = Field(default_factory=list)
    is_reusable: bool = Field(default=True, alias="isReusable")


class TaskCreateRequest(_Request):
    mission_id: str = Field(alias="missionId")
    title: str = Field(min_length=1)
    description: str = ""
    task_type: TaskType = Field(default=TaskType.CUSTOM, alias="type")
    priority: TaskPriority = TaskPriority.MEDIUM
    assigned_to: str | None = Field(default=None, alias="assignedTo")
    required_role: str | None = Field(default=None, alias="requiredRole")
    dependencies: list[str] = Field(default_factory=list)
    max_retries: int | None = Field(default=None, ge=0, alias="maxRetries")
    estimated_duration: float = Field(default=1.0, ge=0, allow_inf_nan=False, alias="estimatedDuration")
    input: dict[str, Any] | None = None


class StartTaskRequest(_Request):
    agent_id: str | None = Field(default=None, alias="agentId")


class CompleteTaskRequest(_Request):
    output: dict[str, Any] | None = None


class FailTaskRequest(_Request):
    error: str = Field(min_length=1)
    agent_id: str | None = Field(default=None, alias="agentId")


class AuditDecisionRequest(_Request):
    """Decision kind stays a plain string so unknown kinds map to a domain error."""

    decision: str
    reason: str = ""
    suggested_agent_role: str | None = Field(default=None, alias="suggestedAgentRole")
    refined_description: str | None = Field(default=None, alias="refinedDescription")
    question_for_human: str | None = Field(default=None, alias="questionForHuman")


class DependencyRequest(_Request):
    depends_on_task_id: str = Field(alias="dependsOnTaskId")


class HumanResponseRequest(_Request):
    response: Any


class ProcessPlanRequest(_Request):
    plan: dict[str, Any] | str


def task_payload(task: TaskView) -> dict[str, Any]:
    return {
        "id": task.task_id,
        "missionId": task.mission_id,
        "title": task.title,
        "description": task.description,
        "type": task.task_type.value,
        "status": task.status.value,
        "priority": task.priority.value,
        "assignedTo": task.assigned_to,
        "requiredRole": task.required_role,
        "dependencies": list(task.dependencies),
        "retryCount": task.retry_count,
        "maxRetries": task.max_retries,
        "retryHistory": [
            {
                "attempt": attempt.attempt,
                "error": attempt.error,
                "timestamp": attempt.timestamp.isoformat(),
                "agentId": attempt.agent_id,
            }
            for attempt in task.retry_history
        ],
        "auditorReviewId": task.auditor_review_id,
        "humanTaskId": task.human_task_id,
        "estimatedDuration": task.estimated_duration,
        "input": task.input,
        "output": task.output,
        "error": task.error,
        "version": task.version,
        "startedAt": _iso(task.started_at),
        "completedAt": _iso(task.completed_at),
        "createdAt": task.created_at.isoformat(),
        "updatedAt": task.updated_at.isoformat(),
    }


def task_details_payload(details: TaskDetails) -> dict[str, Any]:
    return {
        "task": task_payload(details.task),
        "events": [
            {
                "id": event.event_id,
                "type": event.event_type,
                "statusFrom": event.status_from.value if event.status_from else None,
                "statusTo": event.status_to.value if event.status_to else None,
                "details": event.details,
                "createdAt": event.created_at.isoformat(),
            }
            for event in details.events
        ],
    }


def mission_payload(mission: MissionView) -> dict[str, Any]:
    return {
        "id": mission.mission_id,
        "title": mission.title,
        "description": mission.description,
        "objective": mission.objective,
        "status": mission.status.value,
        "priority": mission.priority.value,
        "squadLeadId": mission.squad_lead_id,
        "initialAnalysisTaskId": mission.initial_analysis_task_id,
        "awaitingHumanTaskId": mission.awaiting_human_task_id,
        "version": mission.version,
        "startedAt": _iso(mission.started_at),
        "completedAt": _iso(mission.completed_at),
        "createdAt": mission.created_at.isoformat(),
        "updatedAt": mission.updated_at.isoformat(),
    }


def agent_payload(agent: AgentView) -> dict[str, Any]:
    return {
        "id": agent.agent_id,
        "name": agent.name,
        "role": agent.role,
        "status": agent.status.value,
        "capabilities": list(agent.capabilities),
        "isReusable": agent.is_reusable,
        "currentMissionId": agent.current_mission_id,
        "missionHistory": list(agent.mission_history),
        "totalMissionsCompleted": agent.total_missions_completed,
        "lastMissionCompletedAt": _iso(agent.last_mission_completed_at),
        "performanceMetrics": {
            "tasksCompleted": agent.tasks_completed,
            "tasksFailed": agent.tasks_failed,
            "successRate": agent.success_rate,
            "totalDurationMs": agent.total_duration_ms,
            "averageDurationMs": agent.average_duration_ms,
        },
        "createdAt": agent.created_at.isoformat(),
        "updatedAt": agent.updated_at.isoformat(),
    }


def log_payload(entries: list[OrchestrationLogEntry]) -> list[dict[str, Any]]:
    return [
        {"timestamp": entry.timestamp.isoformat(), "action": entry.action, "details": entry.details}
        for entry in entries
    ]


def failure_payload(outcome: FailureOutcome) -> dict[str, Any]:
    task = outcome.task
    return {
        "status": task.status.value,
        "retryCount": task.retry_count,
        "maxRetries": task.max_retries,
        "needsAudit": outcome.needs_audit,
        "retried": outcome.retried,
        "auditTaskId": outcome.audit_task.task_id if outcome.audit_task else None,
        "task": task_payload(task),
    }


def audit_payload(outcome: AuditOutcome) -> dict[str, Any]:
    return {
        "decision": outcome.decision.value,
        "message": outcome.message,
        "task": task_payload(outcome.task),
        "humanTask": task_payload(outcome.human_task) if outcome.human_task else None,
        "assignedAgentId": outcome.assigned_agent.agent_id if outcome.assigned_agent else None,
    }


def plan_summary_payload(summary: PlanSummary) -> dict[str, Any]:
    return {
        "missionId": summary.mission_id,
        "leadTaskId": summary.lead_task_id,
        "agentsCreated": summary.agents_created,
        "agentsReused": summary.agents_reused,
        "tasksCreated": summary.tasks_created,
        "failures": summary.failures,
        "partial": summary.partial,
    }


def completion_payload(outcome: CompletionOutcome) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "succeeded": outcome.succeeded,
        "task": task_payload(outcome.task),
        "missionCompleted": outcome.mission_completed,
    }
    if outcome.plan_summary is not None:
        payload["plan"] = plan_summary_payload(outcome.plan_summary)
    if outcome.audit_outcome is not None:
        payload["audit"] = audit_payload(outcome.audit_outcome)
    if outcome.resumed_task is not None:
        payload["resumedTask"] = task_payload(outcome.resumed_task)
    if outcome.failure is not None:
        payload["failure"] = failure_payload(outcome.failure)
    return payload


def dag_payload(view: DagView) -> dict[str, Any]:
    return {
        "nodes": [
            {
                "id": node.task_id,
                "title": node.title,
                "status": node.status.value,
                "dependencies": list(node.dependencies),
                "level": node.level,
                "canExecute": node.can_execute,
                "blockingReason": node.blocking_reason,
            }
            for node in view.nodes
        ],
        "edges": [
            {"from": edge.source, "to": edge.target, "status": edge.status} for edge in view.edges
        ],
        "levels": view.levels,
        "hasCycles": view.has_cycles,
        "cycles": view.cycles,
    }


def blocked_payload(blocked: list[BlockedTask]) -> list[dict[str, Any]]:
    return [
        {
            "task": task_payload(item.task),
            "reason": item.reason,
            "blockingTasks": [
                {
                    "id": dep.task_id,
                    "status": dep.status.value if dep.status else None,
                    "title": dep.title,
                }
                for dep in item.blocking
            ],
        }
        for item in blocked
    ]


def critical_path_payload(path: CriticalPath) -> dict[str, Any]:
    return {"path": path.task_ids, "totalDuration": path.total_duration}


def stats_payload(stats: DependencyStats) -> dict[str, Any]:
    return {
        "totalTasks": stats.total_tasks,
        "tasksWithDependencies": stats.tasks_with_dependencies,
        "averageDependencies": stats.average_dependencies,
        "maxDependencies": stats.max_dependencies,
        "parallelismPotential": stats.parallelism_potential,
        "currentBlocking": stats.current_blocking,
    }


def proceed_payload(status: ProceedStatus) -> dict[str, Any]:
    return {
        "canProceed": status.can_proceed,
        "executableTasks": status.executable_tasks,
        "blockedTasks": status.blocked_tasks,
        "message": status.message,
    }


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None
