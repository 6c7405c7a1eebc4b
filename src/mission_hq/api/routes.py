"""Mission, task and agent routes.

Handlers are thin: they translate request bodies into coordinator calls and
coordinator results into camelCase payloads. Domain errors propagate to the
application-level exception handler.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response, status

from mission_hq.api.schemas import (
    AgentCreateRequest,
    AuditDecisionRequest,
    CompleteTaskRequest,
    DependencyRequest,
    FailTaskRequest,
    HumanResponseRequest,
    MissionCreateRequest,
    ProcessPlanRequest,
    StartTaskRequest,
    TaskCreateRequest,
    agent_payload,
    audit_payload,
    blocked_payload,
    completion_payload,
    critical_path_payload,
    dag_payload,
    failure_payload,
    log_payload,
    mission_payload,
    plan_summary_payload,
    proceed_payload,
    stats_payload,
    task_details_payload,
    task_payload,
)
from mission_hq.orchestrator.coordinator import OrchestrationCoordinator
from mission_hq.orchestrator.models import AgentCreate, MissionCreate, TaskCreate

logger = logging.getLogger(__name__)

router = APIRouter()


def get_coordinator(request: Request) -> OrchestrationCoordinator:
    return request.app.state.coordinator


# Missions


@router.post("/missions", status_code=status.HTTP_201_CREATED, tags=["missions"])
def create_mission(
    body: MissionCreateRequest,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    mission = coordinator.create_mission(
        MissionCreate(
            title=body.title,
            description=body.description,
            objective=body.objective,
            priority=body.priority,
        ),
    )
    return {"mission": mission_payload(mission)}


@router.get("/missions/{mission_id}", tags=["missions"])
def get_mission(
    mission_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return {"mission": mission_payload(coordinator.get_mission(mission_id))}


@router.post("/missions/{mission_id}/start", tags=["missions"])
def start_mission(
    mission_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    started = coordinator.start_mission(mission_id)
    return {
        "mission": mission_payload(started.mission),
        "squadLead": agent_payload(started.lead),
        "analysisTask": task_payload(started.analysis_task),
    }


@router.post("/missions/{mission_id}/pause", tags=["missions"])
def pause_mission(
    mission_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return {"mission": mission_payload(coordinator.pause_mission(mission_id))}


@router.post("/missions/{mission_id}/resume", tags=["missions"])
def resume_mission(
    mission_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return {"mission": mission_payload(coordinator.resume_mission(mission_id))}


@router.post("/missions/{mission_id}/check-completion", tags=["missions"])
def check_completion(
    mission_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    completed = coordinator.check_completion(mission_id)
    return {"completed": completed, "mission": mission_payload(coordinator.get_mission(mission_id))}


@router.get("/missions/{mission_id}/dag", tags=["missions"])
def mission_dag(
    mission_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return dag_payload(coordinator.mission_graph(mission_id).dag_view())


@router.get("/missions/{mission_id}/executable", tags=["missions"])
def executable_tasks(
    mission_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    graph = coordinator.mission_graph(mission_id)
    return {
        "tasks": [task_payload(task) for task in graph.executable()],
        **proceed_payload(graph.can_proceed()),
    }


@router.get("/missions/{mission_id}/blocked", tags=["missions"])
def blocked_tasks(
    mission_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return {"blocked": blocked_payload(coordinator.mission_graph(mission_id).blocked())}


@router.get("/missions/{mission_id}/critical-path", tags=["missions"])
def critical_path(
    mission_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return critical_path_payload(coordinator.mission_graph(mission_id).critical_path())


@router.get("/missions/{mission_id}/stats", tags=["missions"])
def dependency_stats(
    mission_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return stats_payload(coordinator.mission_graph(mission_id).stats())


@router.get("/missions/{mission_id}/log", tags=["missions"])
def mission_log(
    mission_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return {"log": log_payload(coordinator.mission_log(mission_id))}


# Tasks


@router.post("/tasks", status_code=status.HTTP_201_CREATED, tags=["tasks"])
def create_task(
    body: TaskCreateRequest,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    task = coordinator.create_task(
        TaskCreate(
            mission_id=body.mission_id,
            title=body.title,
            description=body.description,
            task_type=body.task_type,
            priority=body.priority,
            assigned_to=body.assigned_to,
            required_role=body.required_role,
            dependencies=tuple(dict.fromkeys(body.dependencies)),
            max_retries=body.max_retries,
            estimated_duration=body.estimated_duration,
            input=body.input,
        ),
    )
    return {"task": task_payload(task)}


@router.get("/tasks/{task_id}", tags=["tasks"])
def get_task(
    task_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return task_details_payload(coordinator.get_task_details(task_id))


@router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["tasks"])
def delete_task(
    task_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> Response:
    coordinator.delete_task(task_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/tasks/{task_id}/start", tags=["tasks"])
def start_task(
    task_id: str,
    body: StartTaskRequest | None = None,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    agent_id = body.agent_id if body is not None else None
    return {"task": task_payload(coordinator.start_task(task_id, agent_id))}


@router.post("/tasks/{task_id}/complete", tags=["tasks"])
def complete_task(
    task_id: str,
    body: CompleteTaskRequest | None = None,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    output = body.output if body is not None else None
    return completion_payload(coordinator.complete_task(task_id, output))


@router.post("/tasks/{task_id}/fail", tags=["tasks"])
def fail_task(
    task_id: str,
    body: FailTaskRequest,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return failure_payload(coordinator.fail_task(task_id, body.error, body.agent_id))


@router.post("/tasks/{task_id}/retry", tags=["tasks"])
def retry_task(
    task_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return {"task": task_payload(coordinator.retry_task(task_id))}


@router.post("/tasks/{task_id}/auditor-decision", tags=["tasks"])
def auditor_decision(
    task_id: str,
    body: AuditDecisionRequest,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    outcome = coordinator.apply_audit_decision(task_id, body.model_dump())
    logger.info("Operator decision %s applied to task %s", outcome.decision.value, task_id)
    return audit_payload(outcome)


@router.post("/tasks/{task_id}/dependencies", tags=["tasks"])
def add_dependency(
    task_id: str,
    body: DependencyRequest,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return {"task": task_payload(coordinator.add_dependency(task_id, body.depends_on_task_id))}


@router.delete("/tasks/{task_id}/dependencies/{dep_id}", tags=["tasks"])
def remove_dependency(
    task_id: str,
    dep_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return {"task": task_payload(coordinator.remove_dependency(task_id, dep_id))}


@router.post("/tasks/{task_id}/process-plan", tags=["tasks"])
def process_plan(
    task_id: str,
    body: ProcessPlanRequest,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return plan_summary_payload(coordinator.process_plan(task_id, body.plan))


@router.post("/tasks/{task_id}/human-response", tags=["tasks"])
def human_response(
    task_id: str,
    body: HumanResponseRequest,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return completion_payload(coordinator.answer_human(task_id, body.response))


# Agents


@router.post("/agents", status_code=status.HTTP_201_CREATED, tags=["agents"])
def create_agent(
    body: AgentCreateRequest,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    agent = coordinator.create_agent(
        AgentCreate(
            name=body.name,
            role=body.role,
            capabilities=tuple(body.capabilities),
            is_reusable=body.is_reusable,
        ),
    )
    return {"agent": agent_payload(agent)}


@router.get("/agents/{agent_id}", tags=["agents"])
def get_agent(
    agent_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return {"agent": agent_payload(coordinator.get_agent(agent_id))}


@router.get("/agents/{agent_id}/next-task", tags=["agents"], response_model=None)
def next_task(
    agent_id: str,
    mission_id: str | None = Query(default=None, alias="missionId"),
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
) -> dict[str, Any] | Response:
    task = coordinator.claim_next_task(agent_id, mission_id)
    if task is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return {"task": task_payload(task)}
