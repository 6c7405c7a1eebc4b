"""Task lifecycle transitions keyed on the derived task phase."""

from __future__ import annotations

from enum import Enum

from mission_hq.orchestrator.errors import InvalidStateTransition
from mission_hq.orchestrator.models import TaskStatus, TaskView


class TaskPhase(str, Enum):
    """Lifecycle phase derived from the persisted status and audit link.

    A pending task with an ``auditor_review_id`` is parked, not dispatchable,
    so it gets a phase of its own.
    """

    PENDING = "pending"
    PENDING_UNDER_AUDIT = "pending_under_audit"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_HUMAN_RESPONSE = "awaiting_human_response"


class TaskTransition(str, Enum):
    CLAIM = "claim"
    SUCCEED = "succeed"
    FAIL = "fail"
    RETRY = "retry"
    REQUEST_AUDIT = "request_audit"
    RESOLVE_AUDIT = "resolve_audit"
    ESCALATE_HUMAN = "escalate_human"
    HUMAN_ANSWER = "human_answer"


TRANSITIONS: dict[tuple[TaskPhase, TaskTransition], TaskStatus] = {
    (TaskPhase.PENDING, TaskTransition.CLAIM): TaskStatus.IN_PROGRESS,
    (TaskPhase.IN_PROGRESS, TaskTransition.SUCCEED): TaskStatus.COMPLETED,
    (TaskPhase.IN_PROGRESS, TaskTransition.FAIL): TaskStatus.FAILED,
    (TaskPhase.FAILED, TaskTransition.RETRY): TaskStatus.PENDING,
    (TaskPhase.FAILED, TaskTransition.REQUEST_AUDIT): TaskStatus.PENDING,
    (TaskPhase.PENDING_UNDER_AUDIT, TaskTransition.RESOLVE_AUDIT): TaskStatus.PENDING,
    (TaskPhase.PENDING_UNDER_AUDIT, TaskTransition.ESCALATE_HUMAN): (
        TaskStatus.AWAITING_HUMAN_RESPONSE
    ),
    # Operator decisions on an exhausted task that never got an audit task.
    (TaskPhase.FAILED, TaskTransition.RESOLVE_AUDIT): TaskStatus.PENDING,
    (TaskPhase.FAILED, TaskTransition.ESCALATE_HUMAN): TaskStatus.AWAITING_HUMAN_RESPONSE,
    (TaskPhase.AWAITING_HUMAN_RESPONSE, TaskTransition.HUMAN_ANSWER): TaskStatus.PENDING,
}


def phase_of(task: TaskView) -> TaskPhase:
    if task.status is TaskStatus.PENDING and task.auditor_review_id:
        return TaskPhase.PENDING_UNDER_AUDIT
    return TaskPhase(task.status.value)


def check_transition(
    task: TaskView,
    transition: TaskTransition,
    *,
    dependencies_met: bool = True,
) -> TaskStatus:
    """Return the status ``transition`` leads to, or raise ``InvalidStateTransition``."""

    phase = phase_of(task)
    target = TRANSITIONS.get((phase, transition))
    if target is None:
        raise InvalidStateTransition(
            task_id=task.task_id,
            current=phase.value,
            event=transition.value,
        )
    if transition is TaskTransition.CLAIM and not dependencies_met:
        raise InvalidStateTransition(
            task_id=task.task_id,
            current=phase.value,
            event=transition.value,
            reason="dependencies are not completed",
        )
    if transition is TaskTransition.REQUEST_AUDIT and task.retry_count < task.max_retries:
        raise InvalidStateTransition(
            task_id=task.task_id,
            current=phase.value,
            event=transition.value,
            reason=f"retries remaining ({task.retry_count}/{task.max_retries})",
        )
    if (
        phase is TaskPhase.FAILED
        and transition in {TaskTransition.RESOLVE_AUDIT, TaskTransition.ESCALATE_HUMAN}
        and task.retry_count < task.max_retries
    ):
        raise InvalidStateTransition(
            task_id=task.task_id,
            current=phase.value,
            event=transition.value,
            reason="audit decisions apply once automatic retries are exhausted",
        )
    return target
