"""Mission orchestration: lead selection, plan materialization, dispatch and completion."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from mission_hq.config import OrchestrationSettings
from mission_hq.orchestrator.audit import AuditDecision, AuditDecisionProcessor, AuditOutcome
from mission_hq.orchestrator.errors import (
    AgentNameTaken,
    AgentNotFound,
    CircularDependencyError,
    ConcurrentUpdateError,
    InvalidDependency,
    InvalidMissionState,
    InvalidPlan,
    InvalidStateTransition,
    MissionNotFound,
    OrchestrationError,
    TaskNotFound,
)
from mission_hq.orchestrator.events import (
    MISSION_COMPLETED,
    TASK_CREATED,
    TASK_DELETED,
    TASK_STATUS_CHANGED,
    OrchestrationEvent,
    TaskEventBroker,
)
from mission_hq.orchestrator.graph import DependencyGraph
from mission_hq.orchestrator.models import (
    AgentCreate,
    AgentStatus,
    AgentView,
    MissionCreate,
    MissionStatus,
    MissionView,
    OrchestrationLogEntry,
    TaskChange,
    TaskCreate,
    TaskDetails,
    TaskPriority,
    TaskStatus,
    TaskType,
    TaskView,
)
from mission_hq.orchestrator.plan import ExecutionPlan, parse_plan
from mission_hq.orchestrator.repository import OrchestratorRepository
from mission_hq.orchestrator.retry import RetryManager, can_escalate, needs_audit, needs_retry
from mission_hq.orchestrator.scoring import AgentScorer, metrics_after_task
from mission_hq.orchestrator.state_machine import TaskTransition, check_transition
from mission_hq.storage.common import utc_now

logger = logging.getLogger(__name__)

# Per-item plan failures that are logged and skipped rather than aborting the batch.
PLAN_ITEM_ERRORS = (OrchestrationError, SQLAlchemyError, ValueError)


@dataclass(slots=True)
class MissionStart:
    mission: MissionView
    lead: AgentView
    analysis_task: TaskView


@dataclass(slots=True)
class PlanSummary:
    mission_id: str
    lead_task_id: str
    agents_created: list[str] = field(default_factory=list)
    agents_reused: list[str] = field(default_factory=list)
    tasks_created: dict[str, str] = field(default_factory=dict)
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failures)


@dataclass(slots=True)
class FailureOutcome:
    task: TaskView
    needs_audit: bool
    retried: bool = False
    audit_task: TaskView | None = None


@dataclass(slots=True)
class CompletionOutcome:
    task: TaskView
    succeeded: bool = True
    plan_summary: PlanSummary | None = None
    audit_outcome: AuditOutcome | None = None
    resumed_task: TaskView | None = None
    failure: FailureOutcome | None = None
    mission_completed: bool = False


class OrchestrationCoordinator:
    """Drives missions from plan to completion on top of the task store."""

    def __init__(
        self,
        repository: OrchestratorRepository,
        settings: OrchestrationSettings | None = None,
        *,
        broker: TaskEventBroker | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or OrchestrationSettings()
        self.broker = broker or TaskEventBroker()
        self.scorer = AgentScorer(repository, lead_role=self.settings.lead_role)
        self.retries = RetryManager(repository)
        self.audits = AuditDecisionProcessor(repository, self.scorer)

    # Missions

    def create_mission(self, payload: MissionCreate) -> MissionView:
        mission = self.repository.create_mission(payload)
        logger.info("Mission %s created: %s", mission.mission_id, mission.title)
        return mission

    def get_mission(self, mission_id: str) -> MissionView:
        mission = self.repository.get_mission(mission_id)
        if mission is None:
            raise MissionNotFound(mission_id)
        return mission

    def list_missions(self, *, status: MissionStatus | None = None, limit: int = 50) -> list[MissionView]:
        return self.repository.list_missions(status=status, limit=limit)

    def mission_log(self, mission_id: str) -> list[OrchestrationLogEntry]:
        self.get_mission(mission_id)
        return self.repository.list_log(mission_id)

    def start_mission(self, mission_id: str) -> MissionStart:
        """Attach a squad lead and queue the plan-analysis task."""

        mission = self.get_mission(mission_id)
        if mission.status is not MissionStatus.DRAFT:
            raise InvalidMissionState(
                mission_id=mission_id,
                current=mission.status.value,
                action="start",
            )
        lead = self._select_lead(mission_id)
        started = self.repository.update_mission_if(
            mission_id,
            expected={"status": MissionStatus.DRAFT},
            values={
                "status": MissionStatus.ACTIVE,
                "squad_lead_id": lead.agent_id,
                "started_at": utc_now(),
            },
            log_action="mission_started",
            log_details={"squadLeadId": lead.agent_id, "squadLeadName": lead.name},
        )
        if started is None:
            self._release_agent(lead.agent_id)
            raise ConcurrentUpdateError(entity="Mission", entity_id=mission_id)

        analysis = self.repository.create_task(
            TaskCreate(
                mission_id=mission_id,
                title="Analyze Mission and Create Execution Plan",
                description=(
                    "Analyze the following mission and create a detailed execution plan.\n\n"
                    f"Mission: {mission.title}\n"
                    f"Description: {mission.description}\n"
                    f"Objective: {mission.objective}\n"
                    f"Priority: {mission.priority.value}\n\n"
                    "Respond with a JSON plan containing tasks, agents and dependencies."
                ),
                task_type=TaskType.PLAN_ANALYSIS,
                priority=TaskPriority.HIGH,
                assigned_to=lead.agent_id,
                required_role=self.settings.lead_role,
                max_retries=self.settings.default_max_retries,
                input={
                    "missionId": mission_id,
                    "title": mission.title,
                    "description": mission.description,
                    "objective": mission.objective,
                    "priority": mission.priority.value,
                },
            ),
        )
        started = self.repository.update_mission_if(
            mission_id,
            expected={},
            values={"initial_analysis_task_id": analysis.task_id},
            log_action="analysis_task_created",
            log_details={"taskId": analysis.task_id, "assignedTo": lead.agent_id},
        ) or self.get_mission(mission_id)
        self._publish(TASK_CREATED, analysis)
        logger.info("Mission %s started with lead %s", mission_id, lead.name)
        return MissionStart(mission=started, lead=lead, analysis_task=analysis)

    def pause_mission(self, mission_id: str) -> MissionView:
        return self._switch_mission(
            mission_id,
            source=MissionStatus.ACTIVE,
            target=MissionStatus.PAUSED,
            action="pause",
        )

    def resume_mission(self, mission_id: str) -> MissionView:
        return self._switch_mission(
            mission_id,
            source=MissionStatus.PAUSED,
            target=MissionStatus.ACTIVE,
            action="resume",
        )

    def check_completion(self, mission_id: str) -> bool:
        """Complete the mission once every task is terminal. Idempotent."""

        mission = self.get_mission(mission_id)
        if mission.status is MissionStatus.COMPLETED:
            return False
        tasks = self.repository.find_by_mission(mission_id)
        if not tasks or not all(is_terminal(task) for task in tasks):
            return False

        completed_count = sum(1 for task in tasks if task.status is TaskStatus.COMPLETED)
        completed = self.repository.update_mission_if(
            mission_id,
            expected={"status": mission.status},
            values={
                "status": MissionStatus.COMPLETED,
                "completed_at": utc_now(),
                "awaiting_human_task_id": None,
            },
            log_action="mission_completed",
            log_details={
                "totalTasks": len(tasks),
                "completedTasks": completed_count,
                "failedTasks": len(tasks) - completed_count,
            },
        )
        if completed is None:
            return False
        if completed.squad_lead_id:
            self._release_lead(completed.squad_lead_id, mission_id)
        self.broker.publish(
            OrchestrationEvent(
                event_type=MISSION_COMPLETED,
                mission_id=mission_id,
                payload={"totalTasks": len(tasks), "completedTasks": completed_count},
            ),
        )
        logger.info("Mission %s completed (%s/%s tasks)", mission_id, completed_count, len(tasks))
        return True

    # Agents

    def create_agent(self, payload: AgentCreate) -> AgentView:
        if self.repository.get_agent_by_name(payload.name) is not None:
            raise AgentNameTaken(payload.name)
        agent = self.repository.create_agent(payload)
        logger.info("Agent %s created with role %s", agent.name, agent.role)
        return agent

    def get_agent(self, agent_id: str) -> AgentView:
        agent = self.repository.get_agent(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)
        return agent

    # Tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        self.get_mission(payload.mission_id)
        for dep_id in payload.dependencies:
            dep = self.repository.get_task(dep_id)
            if dep is None:
                raise TaskNotFound(dep_id)
            if dep.mission_id != payload.mission_id:
                raise InvalidDependency(
                    f"Dependency {dep_id} belongs to another mission",
                    taskId=payload.task_id,
                    dependsOnTaskId=dep_id,
                )
        if payload.max_retries is None:
            payload.max_retries = self.settings.default_max_retries
        task = self.repository.create_task(payload)
        self.repository.append_log(
            task.mission_id,
            "task_created",
            {"taskId": task.task_id, "title": task.title, "type": task.task_type.value},
        )
        self._publish(TASK_CREATED, task)
        return task

    def get_task(self, task_id: str) -> TaskView:
        task = self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def get_task_details(self, task_id: str) -> TaskDetails:
        details = self.repository.get_task_details(task_id)
        if details is None:
            raise TaskNotFound(task_id)
        return details

    def delete_task(self, task_id: str) -> None:
        task = self.get_task(task_id)
        if not self.repository.delete_task(task_id):
            raise TaskNotFound(task_id)
        self.repository.append_log(task.mission_id, "task_deleted", {"taskId": task_id})
        self.broker.publish(
            OrchestrationEvent(event_type=TASK_DELETED, mission_id=task.mission_id, task_id=task_id),
        )

    def mission_graph(self, mission_id: str) -> DependencyGraph:
        """Dependency graph over one snapshot of the mission's tasks."""

        self.get_mission(mission_id)
        return DependencyGraph(self.repository.find_by_mission(mission_id))

    def add_dependency(self, task_id: str, depends_on: str) -> TaskView:
        task = self.get_task(task_id)
        if depends_on == task_id:
            raise InvalidDependency(
                "A task cannot depend on itself",
                taskId=task_id,
                dependsOnTaskId=depends_on,
            )
        dependency = self.get_task(depends_on)
        if dependency.mission_id != task.mission_id:
            raise InvalidDependency(
                "Dependencies must belong to the same mission",
                taskId=task_id,
                dependsOnTaskId=depends_on,
            )
        if depends_on in task.dependencies:
            return task
        cycle = DependencyGraph(self.repository.find_by_mission(task.mission_id)).would_create_cycle(
            task_id,
            depends_on,
        )
        if cycle is not None:
            raise CircularDependencyError(cycle)

        def change(current: TaskView) -> TaskChange:
            return TaskChange(
                values={"dependencies": [*current.dependencies, depends_on]},
                event_type="dependency_added",
                details={"depends_on": depends_on},
            )

        updated = self.repository.modify_task(task_id, change)
        logger.info("Task %s now depends on %s", task_id, depends_on)
        return updated

    def remove_dependency(self, task_id: str, depends_on: str) -> TaskView:
        task = self.get_task(task_id)
        if depends_on not in task.dependencies:
            return task

        def change(current: TaskView) -> TaskChange:
            return TaskChange(
                values={"dependencies": [dep for dep in current.dependencies if dep != depends_on]},
                event_type="dependency_removed",
                details={"depends_on": depends_on},
            )

        return self.repository.modify_task(task_id, change)

    def claim_next_task(self, agent_id: str, mission_id: str | None = None) -> TaskView | None:
        """Atomically claim the highest-priority executable task for an agent."""

        agent = self.get_agent(agent_id)
        graphs: dict[str, DependencyGraph] = {}
        candidates = self.repository.claim_candidates(
            agent_id=agent_id,
            role=agent.role,
            mission_id=mission_id,
        )
        for candidate in candidates:
            graph = graphs.get(candidate.mission_id)
            if graph is None:
                graph = DependencyGraph(self.repository.find_by_mission(candidate.mission_id))
                graphs[candidate.mission_id] = graph
            if not graph.is_executable(candidate.task_id):
                continue
            claimed = self._claim(candidate, agent_id)
            if claimed is None:
                logger.debug("Lost claim race for task %s", candidate.task_id)
                continue
            return claimed
        return None

    def start_task(self, task_id: str, agent_id: str | None = None) -> TaskView:
        """Claim one specific task."""

        task = self.get_task(task_id)
        mission = self.get_mission(task.mission_id)
        if mission.status in {MissionStatus.PAUSED, MissionStatus.COMPLETED}:
            raise InvalidMissionState(
                mission_id=mission.mission_id,
                current=mission.status.value,
                action="dispatch",
            )
        graph = DependencyGraph(self.repository.find_by_mission(task.mission_id))
        check_transition(task, TaskTransition.CLAIM, dependencies_met=graph.dependencies_met(task_id))
        if agent_id is not None:
            self.get_agent(agent_id)
            if task.assigned_to and task.assigned_to != agent_id:
                raise InvalidStateTransition(
                    task_id=task_id,
                    current=task.status.value,
                    event=TaskTransition.CLAIM.value,
                    reason=f"assigned to {task.assigned_to}",
                )
        claimed = self._claim(task, agent_id or task.assigned_to)
        if claimed is None:
            raise ConcurrentUpdateError(entity="Task", entity_id=task_id)
        return claimed

    def complete_task(self, task_id: str, output: Mapping[str, Any] | None = None) -> CompletionOutcome:
        """Finish an in-progress task and run the follow-up for its kind."""

        task = self.get_task(task_id)
        check_transition(task, TaskTransition.SUCCEED)
        handler = COMPLETION_HANDLERS[task.task_type]
        outcome = handler(self, task, dict(output or {}))
        outcome.mission_completed = self.check_completion(task.mission_id)
        return outcome

    def fail_task(self, task_id: str, error: str, agent_id: str | None = None) -> FailureOutcome:
        """Record a failed attempt, then re-queue or escalate per policy."""

        before = self.get_task(task_id)
        failed = self.retries.record_failure(task_id, error, agent_id)
        self._record_agent_result(before, succeeded=False)
        self._publish(TASK_STATUS_CHANGED, failed, error=error)
        outcome = FailureOutcome(task=failed, needs_audit=needs_audit(failed))

        if self.settings.auto_retry and needs_retry(failed):
            outcome.task = self.retries.retry(task_id)
            outcome.retried = True
            self._publish(TASK_STATUS_CHANGED, outcome.task, reason="auto_retry")
        elif outcome.needs_audit and can_escalate(failed) and self.settings.auto_audit:
            outcome.audit_task = self._open_audit(failed)
            outcome.task = self.get_task(task_id)
        self.check_completion(failed.mission_id)
        return outcome

    def retry_task(self, task_id: str) -> TaskView:
        retried = self.retries.retry(task_id)
        self._publish(TASK_STATUS_CHANGED, retried, reason="manual_retry")
        return retried

    def request_audit(self, task_id: str) -> TaskView:
        """Escalate an exhausted task to audit on demand."""

        task = self.get_task(task_id)
        check_transition(task, TaskTransition.REQUEST_AUDIT)
        if not can_escalate(task):
            raise InvalidStateTransition(
                task_id=task_id,
                current=task.status.value,
                event=TaskTransition.REQUEST_AUDIT.value,
                reason=f"{task.task_type.value} tasks are not audited",
            )
        return self._open_audit(task)

    def apply_audit_decision(
        self,
        task_id: str,
        decision: AuditDecision | Mapping[str, Any],
    ) -> AuditOutcome:
        """Resolve an audited (or exhausted) task on behalf of an operator."""

        if not isinstance(decision, AuditDecision):
            decision = AuditDecision.from_payload(decision)
        outcome = self.audits.apply(task_id, decision)
        if outcome.audit_task_id:
            self._close_audit_task(outcome.audit_task_id, decision)
        self._after_audit(outcome, decision)
        return outcome

    def answer_human(self, human_task_id: str, response: Any) -> CompletionOutcome:
        """Record a human answer and return the escalated task to the queue."""

        human = self.get_task(human_task_id)
        if human.task_type is not TaskType.HUMAN_INPUT:
            raise InvalidStateTransition(
                task_id=human_task_id,
                current=human.status.value,
                event=TaskTransition.HUMAN_ANSWER.value,
                reason="not a human input task",
            )
        if human.status is TaskStatus.PENDING:
            self._claim(human, None)
        return self.complete_task(human_task_id, {"response": response})

    def process_plan(
        self,
        lead_task_id: str,
        plan: ExecutionPlan | Mapping[str, Any] | str,
    ) -> PlanSummary:
        """Materialize a validated plan's agents and tasks in the lead task's mission."""

        lead_task = self.get_task(lead_task_id)
        mission = self.get_mission(lead_task.mission_id)
        parsed = plan if isinstance(plan, ExecutionPlan) else parse_plan(plan)
        mission_id = mission.mission_id
        summary = PlanSummary(mission_id=mission_id, lead_task_id=lead_task_id)
        self.repository.append_log(
            mission_id,
            "plan_received",
            {
                "complexity": parsed.complexity,
                "summary": parsed.summary,
                "taskCount": len(parsed.tasks),
                "agentCount": len(parsed.agents),
            },
        )

        role_agents: dict[str, str] = {}
        for planned_agent in parsed.agents:
            try:
                agent, created = self._ensure_plan_agent(
                    planned_agent.name,
                    planned_agent.role,
                    planned_agent.capabilities,
                    mission_id,
                )
            except PLAN_ITEM_ERRORS as error:
                logger.warning("Plan agent %s not created: %s", planned_agent.name, error)
                summary.failures.append({"agent": planned_agent.name, "error": str(error)})
                self.repository.append_log(
                    mission_id,
                    "agent_creation_failed",
                    {"name": planned_agent.name, "role": planned_agent.role, "error": str(error)},
                )
                continue
            role_agents.setdefault(agent.role, agent.agent_id)
            (summary.agents_created if created else summary.agents_reused).append(agent.agent_id)
            self.repository.append_log(
                mission_id,
                "agent_created" if created else "agent_reused",
                {"agentId": agent.agent_id, "name": agent.name, "role": agent.role},
            )

        for planned in parsed.ordered_tasks():
            missing = [dep for dep in planned.dependencies if dep not in summary.tasks_created]
            if missing:
                error = f"dependencies not created: {', '.join(missing)}"
                summary.failures.append({"task": planned.local_id, "error": error})
                self.repository.append_log(
                    mission_id,
                    "task_creation_failed",
                    {"localId": planned.local_id, "title": planned.title, "error": error},
                )
                continue
            try:
                task = self.repository.create_task(
                    TaskCreate(
                        mission_id=mission_id,
                        title=planned.title,
                        description=planned.description,
                        task_type=planned.task_type,
                        priority=planned.priority,
                        assigned_to=role_agents.get(planned.assigned_agent_role or ""),
                        required_role=planned.assigned_agent_role,
                        dependencies=tuple(summary.tasks_created[dep] for dep in planned.dependencies),
                        max_retries=self.settings.default_max_retries,
                        estimated_duration=planned.estimated_duration,
                        input=planned.input,
                    ),
                )
            except PLAN_ITEM_ERRORS as error:
                logger.warning("Plan task %s not created: %s", planned.local_id, error)
                summary.failures.append({"task": planned.local_id, "error": str(error)})
                self.repository.append_log(
                    mission_id,
                    "task_creation_failed",
                    {"localId": planned.local_id, "title": planned.title, "error": str(error)},
                )
                continue
            summary.tasks_created[planned.local_id] = task.task_id
            self.repository.append_log(
                mission_id,
                "task_created",
                {
                    "taskId": task.task_id,
                    "localId": planned.local_id,
                    "title": task.title,
                    "type": task.task_type.value,
                },
            )
            self._publish(TASK_CREATED, task)

        if mission.status is MissionStatus.DRAFT and summary.tasks_created:
            self.repository.update_mission_if(
                mission_id,
                expected={"status": MissionStatus.DRAFT},
                values={"status": MissionStatus.ACTIVE, "started_at": utc_now()},
                log_action="mission_activated",
            )
        self.repository.append_log(
            mission_id,
            "plan_processed",
            {
                "leadTaskId": lead_task_id,
                "agentsCreated": len(summary.agents_created),
                "agentsReused": len(summary.agents_reused),
                "tasksCreated": len(summary.tasks_created),
                "failures": len(summary.failures),
            },
        )
        logger.info(
            "Plan from task %s: %s agents created, %s tasks created, %s failures",
            lead_task_id,
            len(summary.agents_created),
            len(summary.tasks_created),
            len(summary.failures),
        )
        return summary

    # Completion follow-ups

    def _complete_plain(self, task: TaskView, output: dict[str, Any]) -> CompletionOutcome:
        return CompletionOutcome(task=self._finish(task, output))

    def _complete_plan_analysis(self, task: TaskView, output: dict[str, Any]) -> CompletionOutcome:
        try:
            plan = parse_plan(output.get("plan"))
        except InvalidPlan as error:
            failure = self.fail_task(task.task_id, str(error))
            return CompletionOutcome(task=failure.task, succeeded=False, failure=failure)
        done = self._finish(task, output)
        return CompletionOutcome(task=done, plan_summary=self.process_plan(task.task_id, plan))

    def _complete_audit_review(self, task: TaskView, output: dict[str, Any]) -> CompletionOutcome:
        audited_id = (task.input or {}).get("failedTaskId")
        try:
            if not audited_id:
                raise InvalidStateTransition(
                    task_id=task.task_id,
                    current=task.status.value,
                    event=TaskTransition.SUCCEED.value,
                    reason="audit task does not reference a failed task",
                )
            decision = AuditDecision.from_payload(output)
            outcome = self.audits.apply(str(audited_id), decision)
        except OrchestrationError as error:
            failure = self.fail_task(task.task_id, str(error))
            return CompletionOutcome(task=failure.task, succeeded=False, failure=failure)
        done = self._finish(task, output)
        self._after_audit(outcome, decision)
        return CompletionOutcome(task=done, audit_outcome=outcome)

    def _complete_human_input(self, task: TaskView, output: dict[str, Any]) -> CompletionOutcome:
        done = self._finish(task, output)
        parent = self.repository.find_task_by_human_task(task.task_id)
        if parent is None:
            logger.warning("Human task %s answered but no task is waiting on it", task.task_id)
            return CompletionOutcome(task=done)
        response = output.get("response", output)

        def change(current: TaskView) -> TaskChange:
            check_transition(current, TaskTransition.HUMAN_ANSWER)
            return TaskChange(
                values={
                    "status": TaskStatus.PENDING,
                    "human_task_id": None,
                    "retry_count": 0,
                    "input": {**(current.input or {}), "humanResponse": response},
                    "started_at": None,
                    "completed_at": None,
                },
                event_type="human_answered",
                details={"human_task_id": task.task_id},
            )

        resumed = self.repository.modify_task(parent.task_id, change)
        self.repository.update_mission_if(
            parent.mission_id,
            expected={"awaiting_human_task_id": task.task_id},
            values={"awaiting_human_task_id": None},
        )
        self.repository.append_log(
            parent.mission_id,
            "human_response_received",
            {"taskId": parent.task_id, "humanTaskId": task.task_id},
        )
        self._publish(TASK_STATUS_CHANGED, resumed, reason="human_answered")
        return CompletionOutcome(task=done, resumed_task=resumed)

    # Internals

    def _claim(self, task: TaskView, agent_id: str | None) -> TaskView | None:
        claimed = self.repository.update_task_if(
            task.task_id,
            expected={
                "status": TaskStatus.PENDING,
                "auditor_review_id": None,
                "assigned_to": task.assigned_to,
            },
            values={
                "status": TaskStatus.IN_PROGRESS,
                "assigned_to": agent_id,
                "started_at": utc_now(),
                "completed_at": None,
            },
            event_type="claimed",
            details={"agent_id": agent_id},
        )
        if claimed is None:
            return None
        if agent_id is not None:
            self.repository.modify_agent(
                agent_id,
                lambda agent: {
                    "status": AgentStatus.BUSY,
                    "current_mission_id": agent.current_mission_id or claimed.mission_id,
                },
            )
        self._publish(TASK_STATUS_CHANGED, claimed, agent_id=agent_id)
        logger.info("Task %s claimed by %s", claimed.task_id, agent_id or "<operator>")
        return claimed

    def _finish(self, task: TaskView, output: dict[str, Any]) -> TaskView:
        done = self.repository.update_task_if(
            task.task_id,
            expected={"status": TaskStatus.IN_PROGRESS, "version": task.version},
            values={"status": TaskStatus.COMPLETED, "output": output, "completed_at": utc_now()},
            event_type="succeeded",
            details={"output_keys": sorted(output)},
        )
        if done is None:
            raise ConcurrentUpdateError(entity="Task", entity_id=task.task_id)
        self._record_agent_result(task, succeeded=True)
        self._publish(TASK_STATUS_CHANGED, done)
        logger.info("Task %s completed", task.task_id)
        return done

    def _open_audit(self, failed: TaskView) -> TaskView:
        """Create the audit-review task, then park the failed task under it."""

        auditor = self.scorer.select_best(self.settings.auditor_role, failed.mission_id)
        audit_task = self.repository.create_task(
            TaskCreate(
                mission_id=failed.mission_id,
                title=f"Audit failed task: {failed.title}",
                description=(
                    f"Task '{failed.title}' failed {failed.retry_count} times. "
                    "Review the retry history and decide: reassign, refine, "
                    "escalate_human or retry."
                ),
                task_type=TaskType.AUDIT_REVIEW,
                priority=TaskPriority.HIGH,
                assigned_to=auditor.agent_id if auditor else None,
                required_role=self.settings.auditor_role,
                max_retries=self.settings.default_max_retries,
                input={
                    "failedTaskId": failed.task_id,
                    "failedTaskType": failed.task_type.value,
                    "failedTaskTitle": failed.title,
                    "assignedTo": failed.assigned_to,
                    "error": failed.error,
                    "retryHistory": [
                        {
                            "attempt": attempt.attempt,
                            "error": attempt.error,
                            "timestamp": attempt.timestamp.isoformat(),
                            "agentId": attempt.agent_id,
                        }
                        for attempt in failed.retry_history
                    ],
                },
            ),
        )
        try:
            parked = self.retries.request_audit(failed.task_id, audit_task.task_id)
        except OrchestrationError:
            self.repository.delete_task(audit_task.task_id)
            raise
        self.repository.append_log(
            failed.mission_id,
            "audit_requested",
            {
                "taskId": failed.task_id,
                "auditTaskId": audit_task.task_id,
                "auditorId": auditor.agent_id if auditor else None,
            },
        )
        self._publish(TASK_CREATED, audit_task)
        self._publish(TASK_STATUS_CHANGED, parked, reason="audit_requested")
        return audit_task

    def _close_audit_task(self, audit_task_id: str, decision: AuditDecision) -> None:
        audit_task = self.repository.get_task(audit_task_id)
        if audit_task is None or audit_task.status is TaskStatus.COMPLETED:
            return
        if audit_task.status is TaskStatus.PENDING:
            audit_task = self.repository.update_task_if(
                audit_task_id,
                expected={"status": TaskStatus.PENDING, "version": audit_task.version},
                values={"status": TaskStatus.IN_PROGRESS, "started_at": utc_now()},
                event_type="claimed",
                details={"agent_id": None, "reason": "operator_decision"},
            )
        if audit_task is None or audit_task.status is not TaskStatus.IN_PROGRESS:
            logger.warning("Audit task %s could not be closed after operator decision", audit_task_id)
            return
        closed = self.repository.update_task_if(
            audit_task_id,
            expected={"status": TaskStatus.IN_PROGRESS, "version": audit_task.version},
            values={
                "status": TaskStatus.COMPLETED,
                "output": decision.to_payload(),
                "completed_at": utc_now(),
            },
            event_type="succeeded",
            details={"decision": decision.decision.value, "reason": "operator_decision"},
        )
        if closed is not None:
            self._record_agent_result(closed, succeeded=True)
            self._publish(TASK_STATUS_CHANGED, closed)

    def _after_audit(self, outcome: AuditOutcome, decision: AuditDecision) -> None:
        task = outcome.task
        self.repository.append_log(
            task.mission_id,
            "audit_decision_applied",
            {"taskId": task.task_id, **decision.to_payload()},
        )
        if outcome.human_task is not None:
            self.repository.update_mission_if(
                task.mission_id,
                expected={},
                values={"awaiting_human_task_id": outcome.human_task.task_id},
                log_action="human_input_requested",
                log_details={
                    "taskId": task.task_id,
                    "humanTaskId": outcome.human_task.task_id,
                    "question": decision.question_for_human,
                },
            )
            self._publish(TASK_CREATED, outcome.human_task)
        self._publish(TASK_STATUS_CHANGED, task, decision=decision.decision.value)

    def _record_agent_result(self, task: TaskView, *, succeeded: bool) -> None:
        if not task.assigned_to:
            return
        duration_ms = 0
        if task.started_at is not None:
            duration_ms = int((utc_now() - task.started_at).total_seconds() * 1000)

        def change(agent: AgentView) -> dict[str, Any]:
            values = metrics_after_task(agent, succeeded=succeeded, duration_ms=duration_ms)
            if agent.status is AgentStatus.BUSY:
                values["status"] = AgentStatus.IDLE
            return values

        try:
            self.repository.modify_agent(task.assigned_to, change)
        except AgentNotFound:
            logger.warning("Task %s assigned to unknown agent %s", task.task_id, task.assigned_to)

    def _select_lead(self, mission_id: str) -> AgentView:
        """Reuse an idle lead without a mission, or create a fresh one."""

        for lead in self.repository.list_agents(
            role=self.settings.lead_role,
            statuses=(AgentStatus.IDLE,),
        ):
            if not lead.is_reusable or lead.current_mission_id:
                continue
            assigned = self.repository.update_agent_if(
                lead.agent_id,
                expected={"status": AgentStatus.IDLE, "current_mission_id": None},
                values={"status": AgentStatus.ACTIVE, "current_mission_id": mission_id},
            )
            if assigned is not None:
                logger.info("Reusing squad lead %s for mission %s", assigned.name, mission_id)
                return assigned

        lead = self.repository.create_agent(
            AgentCreate(
                name=f"Squad Lead {mission_id[:8]}-{utc_now():%Y%m%d%H%M%S%f}",
                role=self.settings.lead_role,
                status=AgentStatus.ACTIVE,
                capabilities=("planning", "coordination", "agent_creation"),
                current_mission_id=mission_id,
            ),
        )
        logger.info("Created squad lead %s for mission %s", lead.name, mission_id)
        return lead

    def _release_lead(self, lead_id: str, mission_id: str) -> None:
        def change(agent: AgentView) -> dict[str, Any]:
            history = list(agent.mission_history)
            if mission_id not in history:
                history.append(mission_id)
            return {
                "mission_history": history,
                "total_missions_completed": len(history),
                "last_mission_completed_at": utc_now(),
                "current_mission_id": None,
                "status": AgentStatus.IDLE,
            }

        try:
            lead = self.repository.modify_agent(lead_id, change)
        except AgentNotFound:
            logger.warning("Squad lead %s not found when releasing mission %s", lead_id, mission_id)
            return
        self.repository.append_log(
            mission_id,
            "squad_lead_released",
            {"agentId": lead.agent_id, "totalMissionsCompleted": lead.total_missions_completed},
        )

    def _release_agent(self, agent_id: str) -> None:
        self.repository.modify_agent(
            agent_id,
            lambda _: {"status": AgentStatus.IDLE, "current_mission_id": None},
        )

    def _ensure_plan_agent(
        self,
        name: str,
        role: str,
        capabilities: tuple[str, ...],
        mission_id: str,
    ) -> tuple[AgentView, bool]:
        existing = self.repository.get_agent_by_name(name)
        if existing is not None:
            if existing.role != role:
                raise AgentNameTaken(name)
            if existing.status is AgentStatus.IDLE and not existing.current_mission_id:
                existing = (
                    self.repository.update_agent_if(
                        existing.agent_id,
                        expected={"status": AgentStatus.IDLE, "current_mission_id": None},
                        values={"current_mission_id": mission_id},
                    )
                    or existing
                )
            return existing, False
        created = self.repository.create_agent(
            AgentCreate(
                name=name,
                role=role,
                status=AgentStatus.IDLE,
                capabilities=capabilities,
                current_mission_id=mission_id,
            ),
        )
        return created, True

    def _switch_mission(
        self,
        mission_id: str,
        *,
        source: MissionStatus,
        target: MissionStatus,
        action: str,
    ) -> MissionView:
        mission = self.get_mission(mission_id)
        if mission.status is not source:
            raise InvalidMissionState(mission_id=mission_id, current=mission.status.value, action=action)
        switched = self.repository.update_mission_if(
            mission_id,
            expected={"status": source},
            values={"status": target},
            log_action=f"mission_{action}d",
        )
        if switched is None:
            raise ConcurrentUpdateError(entity="Mission", entity_id=mission_id)
        logger.info("Mission %s %s", mission_id, target.value)
        return switched

    def _publish(self, event_type: str, task: TaskView, **payload: Any) -> None:
        self.broker.publish(
            OrchestrationEvent(
                event_type=event_type,
                mission_id=task.mission_id,
                task_id=task.task_id,
                payload={"status": task.status.value, **payload},
            ),
        )


def is_terminal(task: TaskView) -> bool:
    """Completed, or failed with no retry, audit or human path left."""

    if task.status is TaskStatus.COMPLETED:
        return True
    if task.status is not TaskStatus.FAILED:
        return False
    if task.auditor_review_id or task.human_task_id or needs_retry(task):
        return False
    return not (needs_audit(task) and can_escalate(task))


CompletionHandler = Callable[[OrchestrationCoordinator, TaskView, dict[str, Any]], CompletionOutcome]

COMPLETION_HANDLERS: dict[TaskType, CompletionHandler] = {
    TaskType.SEARCH: OrchestrationCoordinator._complete_plain,
    TaskType.ANALYSIS: OrchestrationCoordinator._complete_plain,
    TaskType.GENERATION: OrchestrationCoordinator._complete_plain,
    TaskType.EXECUTION: OrchestrationCoordinator._complete_plain,
    TaskType.CUSTOM: OrchestrationCoordinator._complete_plain,
    TaskType.AGENT_CREATION: OrchestrationCoordinator._complete_plain,
    TaskType.COORDINATION: OrchestrationCoordinator._complete_plain,
    TaskType.PLAN_ANALYSIS: OrchestrationCoordinator._complete_plan_analysis,
    TaskType.AUDIT_REVIEW: OrchestrationCoordinator._complete_audit_review,
    TaskType.HUMAN_INPUT: OrchestrationCoordinator._complete_human_input,
}

_unhandled = set(TaskType) - set(COMPLETION_HANDLERS)
if _unhandled:
    raise RuntimeError(f"No completion handler for task types: {sorted(t.value for t in _unhandled)}")
