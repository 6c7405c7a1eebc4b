from __future__ import annotations

import threading

import allure
import pytest

from mission_hq.orchestrator.coordinator import OrchestrationCoordinator, is_terminal
from mission_hq.orchestrator.errors import (
    AgentNameTaken,
    CircularDependencyError,
    InvalidDependency,
    InvalidMissionState,
    InvalidPlan,
    TaskNotFound,
)
from mission_hq.orchestrator.models import (
    AgentCreate,
    AgentStatus,
    MissionCreate,
    MissionStatus,
    MissionView,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskType,
)
from mission_hq.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Mission Orchestration"),
    allure.feature("Coordinator"),
]

_PLAN = {
    "summary": "Research then write.",
    "complexity": "low",
    "agents": [
        {"name": "Scout", "role": "researcher", "capabilities": ["web_search"]},
        {"name": "Quill", "role": "writer"},
    ],
    "tasks": [
        {"id": "research", "title": "Research vendors", "type": "search"},
        {
            "id": "write",
            "title": "Write brief",
            "type": "generation",
            "dependencies": ["research"],
            "assignedAgentRole": "writer",
        },
    ],
}


def _task(coordinator: OrchestrationCoordinator, mission: MissionView, title: str, **overrides):
    return coordinator.create_task(
        TaskCreate(mission_id=mission.mission_id, title=title, **overrides),
    )


def _log_actions(coordinator: OrchestrationCoordinator, mission_id: str) -> list[str]:
    return [entry.action for entry in coordinator.mission_log(mission_id)]


def test_start_mission_creates_lead_and_analysis_task(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    started = coordinator.start_mission(mission.mission_id)

    assert started.mission.status is MissionStatus.ACTIVE
    assert started.mission.squad_lead_id == started.lead.agent_id
    assert started.mission.initial_analysis_task_id == started.analysis_task.task_id
    assert started.lead.role == "squad_lead"
    assert started.lead.status is AgentStatus.ACTIVE
    analysis = started.analysis_task
    assert analysis.task_type is TaskType.PLAN_ANALYSIS
    assert analysis.priority is TaskPriority.HIGH
    assert analysis.assigned_to == started.lead.agent_id
    assert analysis.title == "Analyze Mission and Create Execution Plan"
    assert _log_actions(coordinator, mission.mission_id) == [
        "mission_created",
        "mission_started",
        "analysis_task_created",
    ]

    with pytest.raises(InvalidMissionState):
        coordinator.start_mission(mission.mission_id)


def test_idle_lead_is_reused_for_next_mission(coordinator: OrchestrationCoordinator) -> None:
    lead = coordinator.create_agent(AgentCreate(name="Lead One", role="squad_lead"))
    mission = coordinator.create_mission(MissionCreate(title="Reuse"))

    started = coordinator.start_mission(mission.mission_id)

    assert started.lead.agent_id == lead.agent_id
    assert started.lead.current_mission_id == mission.mission_id


def test_plan_analysis_completion_materializes_plan(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    started = coordinator.start_mission(mission.mission_id)
    claimed = coordinator.claim_next_task(started.lead.agent_id)
    assert claimed is not None
    assert claimed.task_id == started.analysis_task.task_id

    outcome = coordinator.complete_task(claimed.task_id, {"plan": _PLAN})

    assert outcome.succeeded
    summary = outcome.plan_summary
    assert summary is not None
    assert not summary.partial
    assert set(summary.tasks_created) == {"research", "write"}
    assert len(summary.agents_created) == 2
    write = coordinator.get_task(summary.tasks_created["write"])
    research_id = summary.tasks_created["research"]
    assert write.dependencies == (research_id,)
    writer = coordinator.repository.get_agent_by_name("Quill")
    assert writer is not None
    assert write.assigned_to == writer.agent_id
    assert "plan_processed" in _log_actions(coordinator, mission.mission_id)
    assert coordinator.get_agent(started.lead.agent_id).status is AgentStatus.IDLE


def test_invalid_plan_output_fails_analysis_task(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    started = coordinator.start_mission(mission.mission_id)
    coordinator.start_task(started.analysis_task.task_id, started.lead.agent_id)

    outcome = coordinator.complete_task(started.analysis_task.task_id, {"plan": {"tasks": []}})

    assert not outcome.succeeded
    assert outcome.failure is not None
    assert outcome.failure.retried
    current = coordinator.get_task(started.analysis_task.task_id)
    assert current.status is TaskStatus.PENDING
    assert current.retry_count == 1
    assert "tasks must be a non-empty array" in (current.error or "")


def test_plan_with_malformed_metadata_fails_analysis_task(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    started = coordinator.start_mission(mission.mission_id)
    coordinator.start_task(started.analysis_task.task_id, started.lead.agent_id)

    outcome = coordinator.complete_task(
        started.analysis_task.task_id,
        {"plan": {**_PLAN, "recommendations": 5, "riskFactors": 3}},
    )

    assert not outcome.succeeded
    current = coordinator.get_task(started.analysis_task.task_id)
    assert current.status is TaskStatus.PENDING
    assert current.retry_count == 1
    assert "recommendations must be an array" in (current.error or "")
    assert coordinator.repository.get_agent_by_name("Quill") is None


def test_process_plan_with_empty_tasks_creates_nothing(
    coordinator: OrchestrationCoordinator,
    repository: OrchestratorRepository,
    mission: MissionView,
) -> None:
    lead_task = _task(coordinator, mission, "Plan", task_type=TaskType.PLAN_ANALYSIS)
    agents_before = len(repository.list_agents())
    tasks_before = len(repository.find_by_mission(mission.mission_id))

    with pytest.raises(InvalidPlan):
        coordinator.process_plan(lead_task.task_id, {**_PLAN, "tasks": []})

    assert len(repository.list_agents()) == agents_before
    assert len(repository.find_by_mission(mission.mission_id)) == tasks_before


def test_plan_reuses_agents_by_name_and_rejects_role_clash(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    scout = coordinator.create_agent(AgentCreate(name="Scout", role="researcher"))
    coordinator.create_agent(AgentCreate(name="Quill", role="editor"))
    lead_task = _task(coordinator, mission, "Plan", task_type=TaskType.PLAN_ANALYSIS)

    summary = coordinator.process_plan(lead_task.task_id, _PLAN)

    assert summary.agents_reused == [scout.agent_id]
    assert summary.agents_created == []
    assert summary.partial
    assert summary.failures[0]["agent"] == "Quill"
    write = coordinator.get_task(summary.tasks_created["write"])
    assert write.assigned_to is None
    assert write.required_role == "writer"

    with pytest.raises(AgentNameTaken):
        coordinator.create_agent(AgentCreate(name="Scout", role="researcher"))


def test_claim_respects_dependencies_and_priority(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    worker = coordinator.create_agent(AgentCreate(name="Worker", role="researcher"))
    first = _task(coordinator, mission, "First")
    second = _task(coordinator, mission, "Second", dependencies=(first.task_id,))
    urgent = _task(coordinator, mission, "Urgent", priority=TaskPriority.HIGH)

    claimed = coordinator.claim_next_task(worker.agent_id)
    assert claimed is not None
    assert claimed.task_id == urgent.task_id
    assert coordinator.get_agent(worker.agent_id).status is AgentStatus.BUSY
    coordinator.complete_task(urgent.task_id)

    claimed = coordinator.claim_next_task(worker.agent_id)
    assert claimed is not None
    assert claimed.task_id == first.task_id
    assert coordinator.claim_next_task(worker.agent_id) is None

    coordinator.complete_task(first.task_id)
    claimed = coordinator.claim_next_task(worker.agent_id)
    assert claimed is not None
    assert claimed.task_id == second.task_id
    agent = coordinator.get_agent(worker.agent_id)
    assert agent.tasks_completed == 2
    assert agent.success_rate == 100.0


def test_role_and_assignment_filter_claims(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    writer = coordinator.create_agent(AgentCreate(name="Quill", role="writer"))
    researcher = coordinator.create_agent(AgentCreate(name="Scout", role="researcher"))
    _task(coordinator, mission, "Pinned", assigned_to=writer.agent_id)
    _task(coordinator, mission, "Writers only", required_role="writer")

    assert coordinator.claim_next_task(researcher.agent_id) is None
    assert coordinator.claim_next_task(writer.agent_id) is not None


def test_two_workers_racing_for_one_task(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    task = _task(coordinator, mission, "Contested")
    agents = [
        coordinator.create_agent(AgentCreate(name=f"Racer {index}", role="researcher"))
        for index in range(2)
    ]
    barrier = threading.Barrier(len(agents))
    results: dict[str, object] = {}
    errors: list[Exception] = []

    def _claim(agent_id: str) -> None:
        try:
            barrier.wait(timeout=5)
            results[agent_id] = coordinator.claim_next_task(agent_id)
        except Exception as error:  # noqa: BLE001
            errors.append(error)

    threads = [threading.Thread(target=_claim, args=(agent.agent_id,)) for agent in agents]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    winners = [agent_id for agent_id, claimed in results.items() if claimed is not None]
    assert len(winners) == 1
    current = coordinator.get_task(task.task_id)
    assert current.status is TaskStatus.IN_PROGRESS
    assert current.assigned_to == winners[0]
    details = coordinator.get_task_details(task.task_id)
    assert [event.event_type for event in details.events].count("claimed") == 1


def test_paused_mission_is_not_dispatched(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    worker = coordinator.create_agent(AgentCreate(name="Worker", role="researcher"))
    task = _task(coordinator, mission, "Waiting")
    coordinator.start_mission(mission.mission_id)
    coordinator.pause_mission(mission.mission_id)

    assert coordinator.claim_next_task(worker.agent_id, mission.mission_id) is None
    with pytest.raises(InvalidMissionState):
        coordinator.start_task(task.task_id)

    coordinator.resume_mission(mission.mission_id)
    claimed = coordinator.claim_next_task(worker.agent_id, mission.mission_id)
    assert claimed is not None
    actions = _log_actions(coordinator, mission.mission_id)
    assert "mission_paused" in actions
    assert "mission_resumed" in actions


def test_dependency_edges_are_validated(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    a = _task(coordinator, mission, "A")
    b = _task(coordinator, mission, "B", dependencies=(a.task_id,))
    c = _task(coordinator, mission, "C", dependencies=(b.task_id,))
    other_mission = coordinator.create_mission(MissionCreate(title="Elsewhere"))
    foreign = _task(coordinator, other_mission, "Foreign")

    with pytest.raises(CircularDependencyError) as raised:
        coordinator.add_dependency(a.task_id, c.task_id)
    cycle = raised.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {a.task_id, b.task_id, c.task_id}
    assert raised.value.to_payload()["cycle"] == cycle
    assert coordinator.get_task(a.task_id).dependencies == ()

    with pytest.raises(InvalidDependency):
        coordinator.add_dependency(a.task_id, a.task_id)
    with pytest.raises(InvalidDependency):
        coordinator.add_dependency(a.task_id, foreign.task_id)
    with pytest.raises(TaskNotFound):
        coordinator.add_dependency(a.task_id, "missing")

    updated = coordinator.add_dependency(c.task_id, a.task_id)
    assert updated.dependencies == (b.task_id, a.task_id)
    removed = coordinator.remove_dependency(c.task_id, b.task_id)
    assert removed.dependencies == (a.task_id,)


def test_deleting_task_unblocks_dependents(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    a = _task(coordinator, mission, "A")
    b = _task(coordinator, mission, "B", dependencies=(a.task_id,))

    coordinator.delete_task(a.task_id)

    assert coordinator.get_task(b.task_id).dependencies == ()
    with pytest.raises(TaskNotFound):
        coordinator.get_task(a.task_id)
    assert coordinator.mission_graph(mission.mission_id).is_executable(b.task_id)


def test_mission_completes_once_and_releases_lead(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    started = coordinator.start_mission(mission.mission_id)
    coordinator.start_task(started.analysis_task.task_id)
    outcome = coordinator.complete_task(
        started.analysis_task.task_id,
        {"plan": {**_PLAN, "tasks": _PLAN["tasks"][:1]}},
    )
    research_id = outcome.plan_summary.tasks_created["research"]
    assert not outcome.mission_completed

    coordinator.start_task(research_id)
    finished = coordinator.complete_task(research_id, {"vendors": ["a", "b"]})
    assert finished.mission_completed

    completed = coordinator.get_mission(mission.mission_id)
    assert completed.status is MissionStatus.COMPLETED
    assert completed.completed_at is not None
    assert coordinator.check_completion(mission.mission_id) is False
    assert _log_actions(coordinator, mission.mission_id).count("mission_completed") == 1

    lead = coordinator.get_agent(started.lead.agent_id)
    assert lead.current_mission_id is None
    assert lead.status is AgentStatus.IDLE
    assert lead.mission_history == (mission.mission_id,)
    assert lead.total_missions_completed == 1


def test_terminal_definition(make_task_view) -> None:
    assert is_terminal(make_task_view("done", status=TaskStatus.COMPLETED))
    assert not is_terminal(make_task_view("retrying", status=TaskStatus.FAILED, retry_count=1))
    assert not is_terminal(
        make_task_view("auditable", status=TaskStatus.FAILED, retry_count=3, max_retries=3),
    )
    assert is_terminal(
        make_task_view(
            "dead-audit",
            status=TaskStatus.FAILED,
            task_type=TaskType.AUDIT_REVIEW,
            retry_count=3,
            max_retries=3,
        ),
    )
    assert not is_terminal(make_task_view("pending"))


def test_broker_receives_lifecycle_events(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    task = _task(coordinator, mission, "Observed")
    seen: list[tuple[str, str]] = []
    subscription = coordinator.broker.subscribe(
        lambda event: seen.append((event.event_type, event.payload["status"])),
        task_id=task.task_id,
    )

    coordinator.start_task(task.task_id)
    coordinator.complete_task(task.task_id)

    assert seen == [
        ("task.status_changed", "in_progress"),
        ("task.status_changed", "completed"),
    ]
    assert coordinator.broker.unsubscribe(subscription)
