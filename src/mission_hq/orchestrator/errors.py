"""Error taxonomy for the orchestration engine.

Every error is recoverable at the request boundary: it carries the HTTP
status the API reports and a structured payload with enough detail for the
caller to pick the next action.
"""

from __future__ import annotations

from typing import Any


class OrchestrationError(Exception):
    """Base class for domain errors reported as 4xx responses."""

    http_status = 400
    code = "orchestration_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.details}


class InvalidStateTransition(OrchestrationError):
    http_status = 409
    code = "invalid_state_transition"

    def __init__(self, *, task_id: str, current: str, event: str, reason: str | None = None) -> None:
        message = f"Task {task_id} cannot '{event}' from phase '{current}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, taskId=task_id, current=current, event=event, reason=reason)
        self.task_id = task_id
        self.current = current
        self.event = event
        self.reason = reason


class InvalidMissionState(OrchestrationError):
    http_status = 409
    code = "invalid_mission_state"

    def __init__(self, *, mission_id: str, current: str, action: str) -> None:
        super().__init__(
            f"Mission {mission_id} cannot '{action}' while '{current}'",
            missionId=mission_id,
            current=current,
            action=action,
        )


class AgentNameTaken(OrchestrationError):
    http_status = 409
    code = "agent_name_taken"

    def __init__(self, name: str) -> None:
        super().__init__(f"Agent name already in use: {name}", name=name)


class MaxRetriesExceeded(OrchestrationError):
    code = "max_retries_exceeded"

    def __init__(
        self,
        *,
        task_id: str,
        retry_count: int,
        max_retries: int,
        auditor_review_id: str | None = None,
    ) -> None:
        if auditor_review_id:
            message = f"Task {task_id} is under audit review {auditor_review_id}"
        else:
            message = (
                f"Task {task_id} exhausted automatic retries ({retry_count}/{max_retries}); "
                "an audit decision is required"
            )
        super().__init__(
            message,
            needsAudit=True,
            retryCount=retry_count,
            maxRetries=max_retries,
            auditorReviewId=auditor_review_id,
        )
        self.task_id = task_id
        self.needs_audit = True
        self.auditor_review_id = auditor_review_id


class CircularDependencyError(OrchestrationError):
    http_status = 409
    code = "circular_dependency"

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Circular dependency: {' -> '.join(cycle)}", cycle=cycle)
        self.cycle = cycle


class InvalidDependency(OrchestrationError):
    code = "invalid_dependency"


class InvalidPlan(OrchestrationError):
    code = "invalid_plan"

    def __init__(self, problems: list[str]) -> None:
        super().__init__(f"Invalid plan: {'; '.join(problems)}", problems=problems)
        self.problems = problems


class NoEligibleAgent(OrchestrationError):
    http_status = 409
    code = "no_eligible_agent"

    def __init__(self, *, role: str | None, mission_id: str | None = None) -> None:
        super().__init__(
            f"No eligible agent for role {role or '<any>'}",
            role=role,
            missionId=mission_id,
        )
        self.role = role


class UnknownAuditDecision(OrchestrationError):
    code = "unknown_audit_decision"

    def __init__(self, decision: object) -> None:
        super().__init__(f"Unknown audit decision: {decision!r}", decision=decision)
        self.decision = decision


class InvalidAuditDecision(OrchestrationError):
    code = "invalid_audit_decision"


class ConcurrentUpdateError(OrchestrationError):
    http_status = 409
    code = "concurrent_update"

    def __init__(self, *, entity: str, entity_id: str) -> None:
        super().__init__(
            f"{entity} {entity_id} changed concurrently; please retry",
            entity=entity,
            entityId=entity_id,
        )


class NotFoundError(OrchestrationError):
    http_status = 404
    code = "not_found"
    entity = "Entity"

    def __init__(self, entity_id: str) -> None:
        super().__init__(f"{self.entity} not found: {entity_id}", id=entity_id)
        self.entity_id = entity_id


class TaskNotFound(NotFoundError):
    code = "task_not_found"
    entity = "Task"


class MissionNotFound(NotFoundError):
    code = "mission_not_found"
    entity = "Mission"


class AgentNotFound(NotFoundError):
    code = "agent_not_found"
    entity = "Agent"
