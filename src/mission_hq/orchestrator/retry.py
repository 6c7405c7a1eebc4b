"""Failed-attempt bookkeeping and the retry vs. audit escalation decision."""

from __future__ import annotations

import logging

from mission_hq.orchestrator.errors import MaxRetriesExceeded
from mission_hq.orchestrator.models import (
    NON_AUDITABLE_TASK_TYPES,
    RetryAttempt,
    TaskChange,
    TaskStatus,
    TaskView,
)
from mission_hq.orchestrator.repository import OrchestratorRepository
from mission_hq.orchestrator.state_machine import (
    TaskPhase,
    TaskTransition,
    check_transition,
    phase_of,
)
from mission_hq.storage.common import utc_now

logger = logging.getLogger(__name__)


def needs_retry(task: TaskView) -> bool:
    return (
        task.status is TaskStatus.FAILED
        and task.retry_count < task.max_retries
        and not task.auditor_review_id
    )


def needs_audit(task: TaskView) -> bool:
    return (
        task.status is TaskStatus.FAILED
        and task.retry_count >= task.max_retries
        and not task.auditor_review_id
    )


def can_escalate(task: TaskView) -> bool:
    """Whether an exhausted task may still go through the audit path."""

    return task.task_type not in NON_AUDITABLE_TASK_TYPES


class RetryManager:
    """Records failures and moves failed tasks back to ``pending`` or into audit."""

    needs_retry = staticmethod(needs_retry)
    needs_audit = staticmethod(needs_audit)

    def __init__(self, repository: OrchestratorRepository) -> None:
        self.repository = repository

    def record_failure(self, task_id: str, error: str, agent_id: str | None = None) -> TaskView:
        """Append one attempt to the retry history and mark the task failed."""

        def change(task: TaskView) -> TaskChange:
            check_transition(task, TaskTransition.FAIL)
            attempt = RetryAttempt(
                attempt=task.retry_count + 1,
                error=error,
                timestamp=utc_now(),
                agent_id=agent_id or task.assigned_to,
            )
            return TaskChange(
                values={
                    "status": TaskStatus.FAILED,
                    "retry_count": task.retry_count + 1,
                    "retry_history": [*task.retry_history, attempt],
                    "error": error,
                    "completed_at": attempt.timestamp,
                },
                event_type="failed",
                details={"attempt": attempt.attempt, "error": error, "agent_id": attempt.agent_id},
            )

        failed = self.repository.modify_task(task_id, change)
        logger.info(
            "Task %s failed (attempt %s/%s): %s",
            task_id,
            failed.retry_count,
            failed.max_retries,
            error,
        )
        return failed

    def retry(self, task_id: str) -> TaskView:
        """Return a failed task to ``pending`` while it still has retries left."""

        def change(task: TaskView) -> TaskChange:
            phase = phase_of(task)
            if phase is TaskPhase.PENDING_UNDER_AUDIT or (
                phase is TaskPhase.FAILED and not needs_retry(task)
            ):
                raise MaxRetriesExceeded(
                    task_id=task.task_id,
                    retry_count=task.retry_count,
                    max_retries=task.max_retries,
                    auditor_review_id=task.auditor_review_id,
                )
            check_transition(task, TaskTransition.RETRY)
            return TaskChange(
                values={"status": TaskStatus.PENDING, "started_at": None, "completed_at": None},
                event_type="retried",
                details={"retry_count": task.retry_count, "max_retries": task.max_retries},
            )

        retried = self.repository.modify_task(task_id, change)
        logger.info("Task %s re-queued (%s/%s)", task_id, retried.retry_count, retried.max_retries)
        return retried

    def request_audit(self, task_id: str, audit_task_id: str) -> TaskView:
        """Park an exhausted task under the given audit task."""

        def change(task: TaskView) -> TaskChange:
            check_transition(task, TaskTransition.REQUEST_AUDIT)
            return TaskChange(
                values={"status": TaskStatus.PENDING, "auditor_review_id": audit_task_id},
                event_type="audit_requested",
                details={"audit_task_id": audit_task_id, "retry_count": task.retry_count},
            )

        parked = self.repository.modify_task(task_id, change)
        logger.info("Task %s parked under audit task %s", task_id, audit_task_id)
        return parked
