from __future__ import annotations

import allure
import pytest

from mission_hq.config import OrchestrationSettings
from mission_hq.orchestrator.coordinator import OrchestrationCoordinator
from mission_hq.orchestrator.errors import InvalidStateTransition, MaxRetriesExceeded
from mission_hq.orchestrator.models import MissionView, TaskCreate, TaskStatus, TaskType, TaskView
from mission_hq.orchestrator.repository import OrchestratorRepository
from mission_hq.orchestrator.retry import RetryManager, can_escalate, needs_audit, needs_retry

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Retry & Audit Escalation"),
]


def _task(coordinator: OrchestrationCoordinator, mission: MissionView, **overrides) -> TaskView:
    return coordinator.create_task(
        TaskCreate(mission_id=mission.mission_id, title="Fetch vendor list", **overrides),
    )


def test_failures_accumulate_numbered_history(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    task = _task(coordinator, mission, max_retries=5)

    for number in range(1, 4):
        coordinator.start_task(task.task_id)
        outcome = coordinator.fail_task(task.task_id, f"timeout #{number}", agent_id="worker-7")
        assert outcome.retried

    current = coordinator.get_task(task.task_id)
    assert current.retry_count == 3
    assert [attempt.attempt for attempt in current.retry_history] == [1, 2, 3]
    assert [attempt.error for attempt in current.retry_history] == [
        "timeout #1",
        "timeout #2",
        "timeout #3",
    ]
    assert {attempt.agent_id for attempt in current.retry_history} == {"worker-7"}
    assert current.status is TaskStatus.PENDING
    assert current.error == "timeout #3"


def test_third_failure_needs_audit_and_blocks_manual_retry(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    task = _task(coordinator, mission, max_retries=3)

    flags = []
    for number in range(1, 4):
        coordinator.start_task(task.task_id)
        flags.append(coordinator.fail_task(task.task_id, f"boom {number}").needs_audit)
    assert flags == [False, False, True]

    parked = coordinator.get_task(task.task_id)
    assert parked.status is TaskStatus.PENDING
    assert parked.auditor_review_id is not None
    audit_task = coordinator.get_task(parked.auditor_review_id)
    assert audit_task.task_type is TaskType.AUDIT_REVIEW
    assert audit_task.required_role == "auditor"
    assert audit_task.input is not None
    assert audit_task.input["failedTaskId"] == task.task_id
    assert len(audit_task.input["retryHistory"]) == 3

    with pytest.raises(MaxRetriesExceeded) as raised:
        coordinator.retry_task(task.task_id)
    assert raised.value.needs_audit
    assert raised.value.to_payload()["needsAudit"] is True
    assert raised.value.http_status == 400


def test_manual_retry_without_auto_retry(repository: OrchestratorRepository, mission: MissionView) -> None:
    coordinator = OrchestrationCoordinator(
        repository,
        OrchestrationSettings(auto_retry=False, auto_audit=False),
    )
    task = _task(coordinator, mission, max_retries=2)

    coordinator.start_task(task.task_id)
    outcome = coordinator.fail_task(task.task_id, "flaky upstream")
    assert not outcome.retried
    assert outcome.task.status is TaskStatus.FAILED
    assert needs_retry(outcome.task)

    retried = coordinator.retry_task(task.task_id)
    assert retried.status is TaskStatus.PENDING
    assert retried.retry_count == 1

    coordinator.start_task(task.task_id)
    exhausted = coordinator.fail_task(task.task_id, "flaky upstream").task
    assert exhausted.status is TaskStatus.FAILED
    assert needs_audit(exhausted)
    with pytest.raises(MaxRetriesExceeded):
        coordinator.retry_task(task.task_id)

    audit_task = coordinator.request_audit(task.task_id)
    assert coordinator.get_task(task.task_id).auditor_review_id == audit_task.task_id


def test_request_audit_rejects_task_with_retries_left(
    repository: OrchestratorRepository,
    mission: MissionView,
) -> None:
    coordinator = OrchestrationCoordinator(repository, OrchestrationSettings(auto_retry=False))
    task = _task(coordinator, mission, max_retries=3)
    coordinator.start_task(task.task_id)
    coordinator.fail_task(task.task_id, "first try")

    with pytest.raises(InvalidStateTransition, match="retries remaining"):
        coordinator.request_audit(task.task_id)


def test_fail_requires_in_progress_task(coordinator: OrchestrationCoordinator, mission: MissionView) -> None:
    task = _task(coordinator, mission)

    with pytest.raises(InvalidStateTransition):
        coordinator.fail_task(task.task_id, "never started")
    assert coordinator.get_task(task.task_id).retry_count == 0


def test_retry_manager_records_failure_events(
    repository: OrchestratorRepository,
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    manager = RetryManager(repository)
    task = _task(coordinator, mission, max_retries=1)
    coordinator.start_task(task.task_id)

    failed = manager.record_failure(task.task_id, "disk full")
    assert manager.needs_audit(failed)
    assert not manager.needs_retry(failed)

    details = repository.get_task_details(task.task_id)
    assert details is not None
    failed_events = [event for event in details.events if event.event_type == "failed"]
    assert len(failed_events) == 1
    assert failed_events[0].status_from is TaskStatus.IN_PROGRESS
    assert failed_events[0].status_to is TaskStatus.FAILED
    assert failed_events[0].details["attempt"] == 1


def test_audit_and_human_tasks_never_escalate(make_task_view) -> None:
    assert can_escalate(make_task_view("a", task_type=TaskType.SEARCH))
    assert not can_escalate(make_task_view("b", task_type=TaskType.AUDIT_REVIEW))
    assert not can_escalate(make_task_view("c", task_type=TaskType.HUMAN_INPUT))
