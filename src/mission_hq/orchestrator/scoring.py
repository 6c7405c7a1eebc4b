"""Agent selection by weighted score, plus per-task metric bookkeeping."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from mission_hq.orchestrator.models import AgentStatus, AgentView, TaskType
from mission_hq.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)

# Preferred role per task kind when the task itself names none.
TASK_TYPE_ROLES: dict[TaskType, str] = {
    TaskType.SEARCH: "researcher",
    TaskType.ANALYSIS: "analyst",
    TaskType.GENERATION: "writer",
    TaskType.EXECUTION: "developer",
    TaskType.PLAN_ANALYSIS: "squad_lead",
    TaskType.AGENT_CREATION: "squad_lead",
    TaskType.COORDINATION: "squad_lead",
    TaskType.AUDIT_REVIEW: "auditor",
}

SELECTABLE_STATUSES = (AgentStatus.IDLE, AgentStatus.ACTIVE)


@dataclass(slots=True)
class AgentScore:
    agent: AgentView
    total: int
    role_match: int
    availability: int
    success_rate: int
    workload: int
    reasons: list[str] = field(default_factory=list)


class AgentScorer:
    """Scores idle/active reusable agents for a role and mission (0-100)."""

    def __init__(self, repository: OrchestratorRepository, *, lead_role: str = "squad_lead") -> None:
        self.repository = repository
        self.lead_role = lead_role

    def rank(
        self,
        *,
        role: str | None = None,
        task_type: TaskType | None = None,
        mission_id: str | None = None,
        capabilities: Sequence[str] = (),
        exclude: Sequence[str] = (),
    ) -> list[AgentScore]:
        """Score every eligible agent, best first; ties break on name.

        With ``role`` set only agents of that role are eligible. Otherwise the
        role preferred for ``task_type`` earns the role bonus.
        """

        agents = [
            agent
            for agent in self.repository.list_agents(role=role, statuses=SELECTABLE_STATUSES)
            if agent.is_reusable and agent.agent_id not in exclude
        ]
        preferred = role or (TASK_TYPE_ROLES.get(task_type) if task_type else None)
        open_tasks = self.repository.open_task_counts(agent.agent_id for agent in agents)
        scores = [
            self.score(
                agent,
                preferred_role=preferred,
                mission_id=mission_id,
                capabilities=capabilities,
                open_tasks=open_tasks.get(agent.agent_id, 0),
            )
            for agent in agents
        ]
        scores.sort(key=lambda item: (-item.total, item.agent.name))
        return scores

    def select_best(
        self,
        role: str | None,
        mission_id: str | None = None,
        *,
        exclude: Sequence[str] = (),
    ) -> AgentView | None:
        ranked = self.rank(role=role, mission_id=mission_id, exclude=exclude)
        if not ranked:
            logger.info("No eligible agent for role %s", role or "<any>")
            return None
        best = ranked[0]
        logger.debug("Selected agent %s (score %s) for role %s", best.agent.name, best.total, role)
        return best.agent

    def score(
        self,
        agent: AgentView,
        *,
        preferred_role: str | None,
        mission_id: str | None,
        capabilities: Sequence[str] = (),
        open_tasks: int = 0,
    ) -> AgentScore:
        reasons: list[str] = []
        role_match = self._role_match(agent, preferred_role, capabilities, reasons)
        availability = self._availability(agent, mission_id, reasons)
        success_rate = self._success_rate(agent, reasons)
        workload = -min(10, open_tasks * 5)
        if open_tasks:
            reasons.append(f"{open_tasks} open task(s)")
        total = role_match + availability + success_rate + workload
        return AgentScore(
            agent=agent,
            total=max(0, min(100, total)),
            role_match=role_match,
            availability=availability,
            success_rate=success_rate,
            workload=workload,
            reasons=reasons,
        )

    def _role_match(
        self,
        agent: AgentView,
        preferred_role: str | None,
        capabilities: Sequence[str],
        reasons: list[str],
    ) -> int:
        score = 0
        if preferred_role and agent.role == preferred_role:
            score += 30
            reasons.append(f"role {agent.role} matches")
        elif agent.role == self.lead_role:
            score += 10
            reasons.append("squad lead fallback")

        capability_points = 0
        if capabilities:
            owned = [item.lower() for item in agent.capabilities]
            matched = [
                wanted for wanted in capabilities if any(wanted.lower() in item for item in owned)
            ]
            capability_points += round(len(matched) / len(capabilities) * 10)
        if agent.capabilities:
            capability_points += min(10, len(agent.capabilities) * 2)
        return min(40, score + min(10, capability_points))

    @staticmethod
    def _availability(agent: AgentView, mission_id: str | None, reasons: list[str]) -> int:
        score = 0
        if agent.status is AgentStatus.IDLE:
            score += 20
        elif agent.status is AgentStatus.ACTIVE:
            score += 10
        if not agent.current_mission_id:
            score += 10
        elif mission_id and agent.current_mission_id == mission_id:
            score -= 5
            reasons.append("already on this mission")
        return max(0, min(30, score))

    @staticmethod
    def _success_rate(agent: AgentView, reasons: list[str]) -> int:
        rate = agent.success_rate if agent.success_rate is not None else 100.0
        score = round(rate / 100 * 10)
        completed = agent.tasks_completed
        if completed >= 10:
            score += 10
        elif completed >= 5:
            score += 7
        elif completed >= 1:
            score += 4
        else:
            reasons.append("no completed tasks yet")
        return min(20, score)


def metrics_after_task(agent: AgentView, *, succeeded: bool, duration_ms: int) -> dict[str, Any]:
    """Agent counter values after one finished task."""

    completed = agent.tasks_completed + (1 if succeeded else 0)
    failed = agent.tasks_failed + (0 if succeeded else 1)
    total_duration = agent.total_duration_ms + max(0, duration_ms)
    finished = completed + failed
    return {
        "tasks_completed": completed,
        "tasks_failed": failed,
        "total_duration_ms": total_duration,
        "average_duration_ms": round(total_duration / finished) if finished else 0,
        "success_rate": float(round(completed / finished * 100)) if finished else None,
    }
