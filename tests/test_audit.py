from __future__ import annotations

import allure
import pytest

from mission_hq.config import OrchestrationSettings
from mission_hq.orchestrator.audit import AuditDecision
from mission_hq.orchestrator.coordinator import OrchestrationCoordinator
from mission_hq.orchestrator.errors import (
    InvalidAuditDecision,
    InvalidStateTransition,
    NoEligibleAgent,
    UnknownAuditDecision,
)
from mission_hq.orchestrator.models import (
    AgentCreate,
    AgentStatus,
    AuditDecisionKind,
    MissionView,
    TaskCreate,
    TaskStatus,
    TaskType,
    TaskView,
)
from mission_hq.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Audit Decisions"),
]


def _exhausted_task(coordinator: OrchestrationCoordinator, mission: MissionView) -> TaskView:
    """A task that used its single retry and now sits under an audit task."""

    task = coordinator.create_task(
        TaskCreate(
            mission_id=mission.mission_id,
            title="Summarize vendor pricing",
            description="Original description",
            task_type=TaskType.ANALYSIS,
            max_retries=1,
        ),
    )
    coordinator.start_task(task.task_id)
    outcome = coordinator.fail_task(task.task_id, "model refused")
    assert outcome.audit_task is not None
    return coordinator.get_task(task.task_id)


def test_retry_decision_extends_budget(coordinator: OrchestrationCoordinator, mission: MissionView) -> None:
    parked = _exhausted_task(coordinator, mission)
    audit_task_id = parked.auditor_review_id
    assert audit_task_id is not None

    outcome = coordinator.apply_audit_decision(
        parked.task_id,
        {"decision": "retry", "reason": "transient provider outage"},
    )

    assert outcome.decision is AuditDecisionKind.RETRY
    assert outcome.task.status is TaskStatus.PENDING
    assert outcome.task.retry_count == 0
    assert outcome.task.max_retries == 2
    assert outcome.task.auditor_review_id is None
    closed = coordinator.get_task(audit_task_id)
    assert closed.status is TaskStatus.COMPLETED
    assert closed.output == {"decision": "retry", "reason": "transient provider outage"}


def test_refine_decision_rewrites_description(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    parked = _exhausted_task(coordinator, mission)

    outcome = coordinator.apply_audit_decision(
        parked.task_id,
        AuditDecision(
            decision=AuditDecisionKind.REFINE,
            reason="scope too wide",
            refined_description="Summarize pricing for the top three vendors only",
        ),
    )

    assert outcome.task.description == "Summarize pricing for the top three vendors only"
    assert outcome.task.status is TaskStatus.PENDING
    assert outcome.task.auditor_review_id is None
    assert coordinator.mission_graph(mission.mission_id).is_executable(parked.task_id)


def test_escalate_human_creates_linked_question(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    parked = _exhausted_task(coordinator, mission)

    outcome = coordinator.apply_audit_decision(
        parked.task_id,
        {
            "decision": "escalate_human",
            "reason": "needs budget owner",
            "questionForHuman": "Which currency should prices use?",
        },
    )

    human = outcome.human_task
    assert human is not None
    assert human.task_type is TaskType.HUMAN_INPUT
    assert human.input is not None
    assert human.input["originalTaskId"] == parked.task_id
    assert human.input["question"] == "Which currency should prices use?"
    assert outcome.task.status is TaskStatus.AWAITING_HUMAN_RESPONSE
    assert outcome.task.human_task_id == human.task_id
    assert coordinator.get_mission(mission.mission_id).awaiting_human_task_id == human.task_id

    answered = coordinator.answer_human(human.task_id, "EUR")
    assert answered.task.status is TaskStatus.COMPLETED
    resumed = answered.resumed_task
    assert resumed is not None
    assert resumed.task_id == parked.task_id
    assert resumed.status is TaskStatus.PENDING
    assert resumed.human_task_id is None
    assert resumed.input is not None
    assert resumed.input["humanResponse"] == "EUR"
    assert coordinator.get_mission(mission.mission_id).awaiting_human_task_id is None


def test_reassign_picks_agent_of_suggested_role(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    parked = _exhausted_task(coordinator, mission)
    analyst = coordinator.create_agent(AgentCreate(name="Ada", role="analyst"))
    coordinator.create_agent(AgentCreate(name="Rex", role="researcher"))

    outcome = coordinator.apply_audit_decision(
        parked.task_id,
        {"decision": "reassign", "reason": "wrong skills", "suggestedAgentRole": "analyst"},
    )

    assert outcome.assigned_agent is not None
    assert outcome.assigned_agent.agent_id == analyst.agent_id
    assert outcome.task.assigned_to == analyst.agent_id
    assert outcome.task.required_role == "analyst"
    assert outcome.task.retry_count == 0
    assert outcome.task.status is TaskStatus.PENDING


def test_reassign_without_candidates_leaves_task_parked(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    parked = _exhausted_task(coordinator, mission)

    with pytest.raises(NoEligibleAgent):
        coordinator.apply_audit_decision(
            parked.task_id,
            {"decision": "reassign", "suggestedAgentRole": "translator"},
        )

    unchanged = coordinator.get_task(parked.task_id)
    assert unchanged.auditor_review_id == parked.auditor_review_id
    assert unchanged.version == parked.version


def test_unknown_and_incomplete_decisions_are_rejected(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    parked = _exhausted_task(coordinator, mission)

    with pytest.raises(UnknownAuditDecision):
        coordinator.apply_audit_decision(parked.task_id, {"decision": "delete"})
    with pytest.raises(InvalidAuditDecision, match="refined_description"):
        coordinator.apply_audit_decision(parked.task_id, {"decision": "refine"})
    with pytest.raises(InvalidAuditDecision, match="question_for_human"):
        coordinator.apply_audit_decision(parked.task_id, {"decision": "escalate_human"})


def test_decision_on_task_with_retries_left_is_rejected(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    task = coordinator.create_task(TaskCreate(mission_id=mission.mission_id, title="Fresh task"))

    with pytest.raises(InvalidStateTransition):
        coordinator.apply_audit_decision(task.task_id, {"decision": "retry"})


def test_auditor_completing_review_applies_its_decision(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    auditor = coordinator.create_agent(AgentCreate(name="Quinn", role="auditor"))
    parked = _exhausted_task(coordinator, mission)
    audit_task = coordinator.get_task(parked.auditor_review_id or "")
    assert audit_task.assigned_to == auditor.agent_id

    claimed = coordinator.claim_next_task(auditor.agent_id)
    assert claimed is not None
    assert claimed.task_id == audit_task.task_id

    outcome = coordinator.complete_task(
        audit_task.task_id,
        {
            "decision": "refine",
            "reason": "ambiguous",
            "refinedDescription": "Use list prices from vendor sites",
        },
    )

    assert outcome.succeeded
    assert outcome.audit_outcome is not None
    assert outcome.audit_outcome.decision is AuditDecisionKind.REFINE
    refined = coordinator.get_task(parked.task_id)
    assert refined.description == "Use list prices from vendor sites"
    assert refined.auditor_review_id is None
    assert coordinator.get_agent(auditor.agent_id).tasks_completed == 1


def test_unusable_auditor_output_fails_the_audit_task(
    repository: OrchestratorRepository,
    mission: MissionView,
) -> None:
    coordinator = OrchestrationCoordinator(repository, OrchestrationSettings(auto_retry=False))
    parked = _exhausted_task(coordinator, mission)
    audit_task_id = parked.auditor_review_id or ""
    coordinator.start_task(audit_task_id)

    outcome = coordinator.complete_task(audit_task_id, {"decision": "shrug"})

    assert not outcome.succeeded
    assert outcome.task.status is TaskStatus.FAILED
    assert "Unknown audit decision" in (outcome.task.error or "")
    assert coordinator.get_task(parked.task_id).auditor_review_id == audit_task_id


def test_operator_decision_releases_auditor_holding_the_review(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    auditor = coordinator.create_agent(AgentCreate(name="Quinn", role="auditor"))
    parked = _exhausted_task(coordinator, mission)
    claimed = coordinator.claim_next_task(auditor.agent_id)
    assert claimed is not None
    assert claimed.task_id == parked.auditor_review_id
    assert coordinator.get_agent(auditor.agent_id).status is AgentStatus.BUSY

    coordinator.apply_audit_decision(parked.task_id, {"decision": "retry", "reason": "operator override"})

    assert coordinator.get_task(claimed.task_id).status is TaskStatus.COMPLETED
    released = coordinator.get_agent(auditor.agent_id)
    assert released.status is AgentStatus.IDLE
    assert released.tasks_completed == 1
    selected = coordinator.scorer.select_best("auditor", mission.mission_id)
    assert selected is not None
    assert selected.agent_id == auditor.agent_id
