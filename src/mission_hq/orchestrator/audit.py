"""Audit decisions that resolve a task whose automatic retries are exhausted."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from mission_hq.orchestrator.errors import (
    InvalidAuditDecision,
    NoEligibleAgent,
    TaskNotFound,
    UnknownAuditDecision,
)
from mission_hq.orchestrator.models import (
    AgentView,
    AuditDecisionKind,
    TaskChange,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskType,
    TaskView,
)
from mission_hq.orchestrator.repository import OrchestratorRepository
from mission_hq.orchestrator.scoring import AgentScorer
from mission_hq.orchestrator.state_machine import TaskTransition, check_transition

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AuditDecision:
    decision: AuditDecisionKind
    reason: str = ""
    suggested_agent_role: str | None = None
    refined_description: str | None = None
    question_for_human: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> AuditDecision:
        """Build a decision from an API body or auditor output (camelCase or snake_case)."""

        raw = payload.get("decision")
        try:
            kind = AuditDecisionKind(str(raw).strip().lower())
        except ValueError as error:
            raise UnknownAuditDecision(raw) from error
        decision = cls(
            decision=kind,
            reason=str(payload.get("reason") or ""),
            suggested_agent_role=_pick(payload, "suggested_agent_role", "suggestedAgentRole"),
            refined_description=_pick(payload, "refined_description", "refinedDescription"),
            question_for_human=_pick(payload, "question_for_human", "questionForHuman"),
        )
        decision.validate()
        return decision

    def validate(self) -> None:
        if self.decision is AuditDecisionKind.REFINE and not self.refined_description:
            raise InvalidAuditDecision(
                "refine requires refined_description",
                decision=self.decision.value,
            )
        if self.decision is AuditDecisionKind.ESCALATE_HUMAN and not self.question_for_human:
            raise InvalidAuditDecision(
                "escalate_human requires question_for_human",
                decision=self.decision.value,
            )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"decision": self.decision.value, "reason": self.reason}
        if self.suggested_agent_role:
            payload["suggestedAgentRole"] = self.suggested_agent_role
        if self.refined_description:
            payload["refinedDescription"] = self.refined_description
        if self.question_for_human:
            payload["questionForHuman"] = self.question_for_human
        return payload


@dataclass(slots=True)
class AuditOutcome:
    decision: AuditDecisionKind
    message: str
    task: TaskView
    audit_task_id: str | None = None
    human_task: TaskView | None = None
    assigned_agent: AgentView | None = None


class AuditDecisionProcessor:
    """Applies one audit decision to the audited task as a single guarded update."""

    def __init__(self, repository: OrchestratorRepository, scorer: AgentScorer) -> None:
        self.repository = repository
        self.scorer = scorer
        self._handlers = {
            AuditDecisionKind.REASSIGN: self._reassign,
            AuditDecisionKind.REFINE: self._refine,
            AuditDecisionKind.ESCALATE_HUMAN: self._escalate_human,
            AuditDecisionKind.RETRY: self._retry,
        }

    def apply(self, task_id: str, decision: AuditDecision) -> AuditOutcome:
        decision.validate()
        handler = self._handlers.get(decision.decision)
        if handler is None:
            raise UnknownAuditDecision(decision.decision)
        outcome = handler(task_id, decision)
        logger.info(
            "Audit decision %s applied to task %s: %s",
            decision.decision.value,
            task_id,
            decision.reason or "-",
        )
        return outcome

    def _reassign(self, task_id: str, decision: AuditDecision) -> AuditOutcome:
        task = self._require(task_id)
        check_transition(task, TaskTransition.RESOLVE_AUDIT)
        role = decision.suggested_agent_role or task.required_role
        agent = self.scorer.select_best(role, task.mission_id)
        if agent is None:
            raise NoEligibleAgent(role=role, mission_id=task.mission_id)

        def change(current: TaskView) -> TaskChange:
            check_transition(current, TaskTransition.RESOLVE_AUDIT)
            return TaskChange(
                values={
                    "status": TaskStatus.PENDING,
                    "assigned_to": agent.agent_id,
                    "required_role": role,
                    "retry_count": 0,
                    "auditor_review_id": None,
                    "started_at": None,
                    "completed_at": None,
                },
                event_type="audit_reassigned",
                details={**decision.to_payload(), "agent_id": agent.agent_id},
            )

        audit_task_id = task.auditor_review_id
        updated = self.repository.modify_task(task_id, change)
        return AuditOutcome(
            decision=decision.decision,
            message=f"Task reassigned to {agent.name} ({agent.role})",
            task=updated,
            audit_task_id=audit_task_id,
            assigned_agent=agent,
        )

    def _refine(self, task_id: str, decision: AuditDecision) -> AuditOutcome:
        audit_task_id = self._require(task_id).auditor_review_id

        def change(current: TaskView) -> TaskChange:
            check_transition(current, TaskTransition.RESOLVE_AUDIT)
            return TaskChange(
                values={
                    "status": TaskStatus.PENDING,
                    "description": decision.refined_description,
                    "retry_count": 0,
                    "auditor_review_id": None,
                    "started_at": None,
                    "completed_at": None,
                },
                event_type="audit_refined",
                details=decision.to_payload(),
            )

        updated = self.repository.modify_task(task_id, change)
        return AuditOutcome(
            decision=decision.decision,
            message="Task description refined and re-queued",
            task=updated,
            audit_task_id=audit_task_id,
        )

    def _retry(self, task_id: str, decision: AuditDecision) -> AuditOutcome:
        audit_task_id = self._require(task_id).auditor_review_id

        def change(current: TaskView) -> TaskChange:
            check_transition(current, TaskTransition.RESOLVE_AUDIT)
            return TaskChange(
                values={
                    "status": TaskStatus.PENDING,
                    "retry_count": 0,
                    "max_retries": current.max_retries + 1,
                    "auditor_review_id": None,
                    "started_at": None,
                    "completed_at": None,
                },
                event_type="audit_retry",
                details={**decision.to_payload(), "max_retries": current.max_retries + 1},
            )

        updated = self.repository.modify_task(task_id, change)
        return AuditOutcome(
            decision=decision.decision,
            message=f"Retry budget reset (max retries {updated.max_retries})",
            task=updated,
            audit_task_id=audit_task_id,
        )

    def _escalate_human(self, task_id: str, decision: AuditDecision) -> AuditOutcome:
        task = self._require(task_id)
        check_transition(task, TaskTransition.ESCALATE_HUMAN)
        human_task = self.repository.create_task(
            TaskCreate(
                mission_id=task.mission_id,
                title=f"Human input needed: {task.title}",
                description=decision.question_for_human or "",
                task_type=TaskType.HUMAN_INPUT,
                priority=TaskPriority.HIGH,
                input={
                    "question": decision.question_for_human,
                    "originalTaskId": task.task_id,
                    "reason": decision.reason,
                },
            ),
        )

        def change(current: TaskView) -> TaskChange:
            check_transition(current, TaskTransition.ESCALATE_HUMAN)
            return TaskChange(
                values={
                    "status": TaskStatus.AWAITING_HUMAN_RESPONSE,
                    "human_task_id": human_task.task_id,
                    "auditor_review_id": None,
                },
                event_type="escalated_to_human",
                details={**decision.to_payload(), "human_task_id": human_task.task_id},
            )

        try:
            updated = self.repository.modify_task(task_id, change)
        except Exception:
            self.repository.delete_task(human_task.task_id)
            raise
        return AuditOutcome(
            decision=decision.decision,
            message="Escalated to a human operator",
            task=updated,
            audit_task_id=task.auditor_review_id,
            human_task=human_task,
        )

    def _require(self, task_id: str) -> TaskView:
        task = self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task


def _pick(payload: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None
