"""Persistent store for missions, agents and tasks."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, case, func, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, SQLModel, col, select

from mission_hq.orchestrator.errors import AgentNotFound, ConcurrentUpdateError, TaskNotFound
from mission_hq.orchestrator.models import (
    AgentCreate,
    AgentStatus,
    AgentView,
    MissionCreate,
    MissionStatus,
    MissionView,
    OrchestrationLogEntry,
    RetryAttempt,
    TaskChange,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskPriority,
    TaskStatus,
    TaskType,
    TaskView,
)
from mission_hq.storage.alembic_runner import upgrade_head
from mission_hq.storage.common import (
    build_sqlite_engine,
    dump_json,
    from_iso,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from mission_hq.storage.sqlmodel_models import Agent, Mission, MissionLogEntry, Task, TaskEvent

logger = logging.getLogger(__name__)

# Logical field name -> JSON text column.
_JSON_COLUMNS = {
    "dependencies": "dependencies_json",
    "retry_history": "retry_history_json",
    "input": "input_json",
    "output": "output_json",
    "capabilities": "capabilities_json",
    "mission_history": "mission_history_json",
}

_PRIORITY_ORDER = case(
    {priority.value: priority.rank for priority in TaskPriority},
    value=col(Task.priority),
    else_=len(TaskPriority),
)


class OrchestratorRepository:
    """Mission/agent/task persistence facade backed by SQLModel + SQLite.

    Every mutation of an existing row is a single conditional ``UPDATE``:
    callers pass the column values they expect to find and get ``None`` back
    when another writer got there first.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        default_max_retries: int = 3,
    ) -> None:
        self.db_path = db_path
        self.default_max_retries = default_max_retries
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # Missions

    def create_mission(self, payload: MissionCreate) -> MissionView:
        now = utc_now()
        mission_id = payload.mission_id or str(uuid4())
        with Session(self.engine) as session:
            row = Mission(
                mission_id=mission_id,
                title=payload.title,
                description=payload.description,
                objective=payload.objective,
                status=payload.status.value,
                priority=payload.priority.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_log_entry(
                session=session,
                mission_id=mission_id,
                action="mission_created",
                details={"title": payload.title, "status": payload.status.value},
            )
            session.commit()
            session.refresh(row)
            return _to_mission_view(row)

    def get_mission(self, mission_id: str) -> MissionView | None:
        with Session(self.engine) as session:
            row = session.get(Mission, mission_id)
            return _to_mission_view(row) if row is not None else None

    def list_missions(
        self,
        *,
        status: MissionStatus | None = None,
        limit: int = 50,
    ) -> list[MissionView]:
        with Session(self.engine) as session:
            statement = select(Mission).order_by(col(Mission.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Mission.status == status.value)
            rows = session.exec(statement).all()
        return [_to_mission_view(row) for row in rows]

    def update_mission_if(
        self,
        mission_id: str,
        *,
        expected: Mapping[str, Any],
        values: Mapping[str, Any],
        log_action: str | None = None,
        log_details: dict[str, Any] | None = None,
    ) -> MissionView | None:
        """Apply ``values`` only when the stored row still matches ``expected``."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Mission)
                .where(
                    col(Mission.mission_id) == mission_id,
                    *_expected_clauses(Mission, expected),
                )
                .values(
                    **_column_values(values),
                    version=col(Mission.version) + 1,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            if log_action is not None:
                self._add_log_entry(
                    session=session,
                    mission_id=mission_id,
                    action=log_action,
                    details=log_details or {},
                )
            row = session.exec(select(Mission).where(Mission.mission_id == mission_id)).one()
            view = _to_mission_view(row)
            session.commit()
            return view

    def append_log(self, mission_id: str, action: str, details: dict[str, Any]) -> None:
        """Append one entry to the mission orchestration log."""

        with Session(self.engine) as session:
            self._add_log_entry(
                session=session,
                mission_id=mission_id,
                action=action,
                details=details,
            )
            session.commit()

    def list_log(self, mission_id: str) -> list[OrchestrationLogEntry]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(MissionLogEntry)
                .where(MissionLogEntry.mission_id == mission_id)
                .order_by(col(MissionLogEntry.created_at).asc(), col(MissionLogEntry.id).asc()),
            ).all()
        return [
            OrchestrationLogEntry(
                timestamp=to_utc_aware_datetime(row.created_at),
                action=row.action,
                details=_details(row.details_json),
            )
            for row in rows
        ]

    # Agents

    def create_agent(self, payload: AgentCreate) -> AgentView:
        now = utc_now()
        with Session(self.engine) as session:
            row = Agent(
                agent_id=payload.agent_id or str(uuid4()),
                name=payload.name,
                role=payload.role,
                status=payload.status.value,
                capabilities_json=dump_json(list(payload.capabilities)),
                is_reusable=payload.is_reusable,
                current_mission_id=payload.current_mission_id,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_agent_view(row)

    def get_agent(self, agent_id: str) -> AgentView | None:
        with Session(self.engine) as session:
            row = session.get(Agent, agent_id)
            return _to_agent_view(row) if row is not None else None

    def get_agent_by_name(self, name: str) -> AgentView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Agent).where(Agent.name == name)).one_or_none()
            return _to_agent_view(row) if row is not None else None

    def list_agents(
        self,
        *,
        role: str | None = None,
        statuses: Iterable[AgentStatus] | None = None,
    ) -> list[AgentView]:
        with Session(self.engine) as session:
            statement = select(Agent).order_by(col(Agent.name).asc())
            if role is not None:
                statement = statement.where(Agent.role == role)
            if statuses is not None:
                statement = statement.where(
                    col(Agent.status).in_([status.value for status in statuses]),
                )
            rows = session.exec(statement).all()
        return [_to_agent_view(row) for row in rows]

    def update_agent_if(
        self,
        agent_id: str,
        *,
        expected: Mapping[str, Any],
        values: Mapping[str, Any],
    ) -> AgentView | None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Agent)
                .where(col(Agent.agent_id) == agent_id, *_expected_clauses(Agent, expected))
                .values(
                    **_column_values(values),
                    version=col(Agent.version) + 1,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            row = session.exec(select(Agent).where(Agent.agent_id == agent_id)).one()
            view = _to_agent_view(row)
            session.commit()
            return view

    def modify_agent(
        self,
        agent_id: str,
        change: Callable[[AgentView], Mapping[str, Any]],
        *,
        attempts: int = 5,
    ) -> AgentView:
        """Read-modify-write an agent, retrying when its version moved underneath."""

        for _ in range(attempts):
            current = self.get_agent(agent_id)
            if current is None:
                raise AgentNotFound(agent_id)
            updated = self.update_agent_if(
                agent_id,
                expected={"version": current.version},
                values=change(current),
            )
            if updated is not None:
                return updated
            logger.debug("Agent %s changed concurrently, retrying update", agent_id)
        raise ConcurrentUpdateError(entity="Agent", entity_id=agent_id)

    def open_task_counts(self, agent_ids: Iterable[str]) -> dict[str, int]:
        """Count pending and in-progress tasks assigned to each agent."""

        ids = list(agent_ids)
        if not ids:
            return {}
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.assigned_to, func.count())
                .where(
                    col(Task.assigned_to).in_(ids),
                    col(Task.status).in_(
                        [TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value],
                    ),
                )
                .group_by(Task.assigned_to),
            ).all()
        counts = {agent_id: 0 for agent_id in ids}
        for assigned_to, count in rows:
            if assigned_to is not None:
                counts[assigned_to] = int(count)
        return counts

    # Tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        max_retries = (
            payload.max_retries if payload.max_retries is not None else self.default_max_retries
        )
        with Session(self.engine) as session:
            row = Task(
                task_id=task_id,
                mission_id=payload.mission_id,
                title=payload.title,
                description=payload.description,
                task_type=payload.task_type.value,
                status=TaskStatus.PENDING.value,
                priority=payload.priority.value,
                assigned_to=payload.assigned_to,
                required_role=payload.required_role,
                dependencies_json=dump_json(list(payload.dependencies)),
                max_retries=max_retries,
                estimated_duration=payload.estimated_duration,
                input_json=dump_json(payload.input) if payload.input is not None else None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "task_type": payload.task_type.value,
                    "assigned_to": payload.assigned_to,
                    "dependencies": list(payload.dependencies),
                    "max_retries": max_retries,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def find_by_mission(
        self,
        mission_id: str,
        statuses: Iterable[TaskStatus] | None = None,
    ) -> list[TaskView]:
        """Load every task of a mission in creation order."""

        with Session(self.engine) as session:
            statement = (
                select(Task)
                .where(Task.mission_id == mission_id)
                .order_by(col(Task.created_at).asc(), col(Task.task_id).asc())
            )
            if statuses is not None:
                statement = statement.where(
                    col(Task.status).in_([status.value for status in statuses]),
                )
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_tasks(
        self,
        *,
        mission_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by mission and status."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.created_at).desc()).limit(limit)
            if mission_id is not None:
                statement = statement.where(Task.mission_id == mission_id)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def find_task_by_human_task(self, human_task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Task).where(Task.human_task_id == human_task_id),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def find_task_by_audit(self, audit_task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Task).where(Task.auditor_review_id == audit_task_id),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def claim_candidates(
        self,
        *,
        agent_id: str,
        role: str,
        mission_id: str | None = None,
    ) -> list[TaskView]:
        """Dispatchable pending tasks for an agent, in claim order.

        Dependency satisfaction is not checked here; the caller filters the
        candidates through the mission graph.
        """

        with Session(self.engine) as session:
            statement = (
                select(Task)
                .join(Mission, col(Mission.mission_id) == col(Task.mission_id))
                .where(
                    Task.status == TaskStatus.PENDING.value,
                    col(Task.auditor_review_id).is_(None),
                    Task.task_type != TaskType.HUMAN_INPUT.value,
                    col(Mission.status).notin_(
                        [MissionStatus.PAUSED.value, MissionStatus.COMPLETED.value],
                    ),
                    or_(
                        col(Task.assigned_to) == agent_id,
                        and_(
                            col(Task.assigned_to).is_(None),
                            or_(col(Task.required_role).is_(None), col(Task.required_role) == role),
                        ),
                    ),
                )
                .order_by(_PRIORITY_ORDER, col(Task.created_at).asc(), col(Task.task_id).asc())
            )
            if mission_id is not None:
                statement = statement.where(Task.mission_id == mission_id)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def update_task_if(
        self,
        task_id: str,
        *,
        expected: Mapping[str, Any],
        values: Mapping[str, Any],
        event_type: str,
        details: dict[str, Any] | None = None,
    ) -> TaskView | None:
        """Conditionally update one task and record the event.

        ``expected`` maps logical field names to the values the row must still
        hold; ``None`` means the column must be NULL. Returns the updated task,
        or ``None`` when the row no longer matches.
        """

        status_from = _status_or_none(expected.get("status"))
        status_to = _status_or_none(values.get("status")) or status_from
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(col(Task.task_id) == task_id, *_expected_clauses(Task, expected))
                .values(
                    **_column_values(values),
                    version=col(Task.version) + 1,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details or {},
            )
            row = session.exec(select(Task).where(Task.task_id == task_id)).one()
            view = _to_task_view(row)
            session.commit()
            return view

    def modify_task(
        self,
        task_id: str,
        change: Callable[[TaskView], TaskChange],
        *,
        attempts: int = 5,
    ) -> TaskView:
        """Read-modify-write a task guarded by its version.

        ``change`` validates the current task (raising a domain error to
        abort) and returns the values to write; it is re-run on a fresh read
        whenever another writer won the race.
        """

        for _ in range(attempts):
            current = self.get_task(task_id)
            if current is None:
                raise TaskNotFound(task_id)
            planned = change(current)
            updated = self.update_task_if(
                task_id,
                expected={"version": current.version, "status": current.status},
                values=planned.values,
                event_type=planned.event_type,
                details=planned.details,
            )
            if updated is not None:
                return updated
            logger.debug("Task %s changed concurrently, retrying %s", task_id, planned.event_type)
        raise ConcurrentUpdateError(entity="Task", entity_id=task_id)

    def delete_task(self, task_id: str) -> bool:
        """Delete a task and drop it from the dependency lists of its dependents."""

        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                return False
            dependents = session.exec(
                select(Task).where(
                    Task.mission_id == row.mission_id,
                    col(Task.dependencies_json).contains(f'"{task_id}"'),
                ),
            ).all()
            for dependent in dependents:
                remaining = [
                    dep for dep in load_json(dependent.dependencies_json, []) if dep != task_id
                ]
                dependent.dependencies_json = dump_json(remaining)
                dependent.version += 1
                dependent.updated_at = to_db_datetime(utc_now())
                session.add(dependent)
                self._add_event(
                    session=session,
                    task_id=dependent.task_id,
                    event_type="dependency_removed",
                    status_from=TaskStatus(dependent.status),
                    status_to=TaskStatus(dependent.status),
                    details={"depends_on": task_id, "reason": "dependency_deleted"},
                )
            session.exec(sa_delete(Task).where(col(Task.task_id) == task_id))
            session.commit()
        return True

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.get(Task, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()
            view = _to_task_view(task)

        events = [
            TaskEventView(
                event_id=row.id or 0,
                task_id=row.task_id,
                event_type=row.event_type,
                status_from=_status_or_none(row.status_from),
                status_to=_status_or_none(row.status_to),
                created_at=to_utc_aware_datetime(row.created_at),
                details=_details(row.details_json),
            )
            for row in event_rows
        ]
        return TaskDetails(task=view, events=events)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, Any],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )

    def _add_log_entry(
        self,
        *,
        session: Session,
        mission_id: str,
        action: str,
        details: dict[str, Any],
    ) -> None:
        session.add(
            MissionLogEntry(
                mission_id=mission_id,
                action=action,
                details_json=dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )


def _expected_clauses(model: type[SQLModel], expected: Mapping[str, Any]) -> list[Any]:
    clauses = []
    for name, value in expected.items():
        column = col(getattr(model, _JSON_COLUMNS.get(name, name)))
        if value is None:
            clauses.append(column.is_(None))
        else:
            clauses.append(column == _encode_value(name, value))
    return clauses


def _column_values(values: Mapping[str, Any]) -> dict[str, Any]:
    return {_JSON_COLUMNS.get(name, name): _encode_value(name, value) for name, value in values.items()}


def _encode_value(name: str, value: Any) -> Any:
    if name in _JSON_COLUMNS:
        if value is None:
            return None
        if name == "retry_history":
            return dump_json([asdict(attempt) for attempt in value])
        if isinstance(value, tuple | list):
            return dump_json(list(value))
        return dump_json(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_db_datetime(value)
    return value


def _status_or_none(value: Any) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value)


def _details(raw: str | None) -> dict[str, Any]:
    parsed = load_json(raw, {})
    return parsed if isinstance(parsed, dict) else {}


def _to_retry_history(raw: str) -> list[RetryAttempt]:
    return [
        RetryAttempt(
            attempt=int(item["attempt"]),
            error=str(item["error"]),
            timestamp=from_iso(item["timestamp"]),
            agent_id=item.get("agent_id"),
        )
        for item in load_json(raw, [])
    ]


def _to_mission_view(row: Mission) -> MissionView:
    return MissionView(
        mission_id=row.mission_id,
        title=row.title,
        description=row.description,
        objective=row.objective,
        status=MissionStatus(row.status),
        priority=TaskPriority(row.priority),
        squad_lead_id=row.squad_lead_id,
        initial_analysis_task_id=row.initial_analysis_task_id,
        awaiting_human_task_id=row.awaiting_human_task_id,
        version=row.version,
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_agent_view(row: Agent) -> AgentView:
    return AgentView(
        agent_id=row.agent_id,
        name=row.name,
        role=row.role,
        status=AgentStatus(row.status),
        capabilities=tuple(load_json(row.capabilities_json, [])),
        is_reusable=row.is_reusable,
        current_mission_id=row.current_mission_id,
        mission_history=tuple(load_json(row.mission_history_json, [])),
        total_missions_completed=row.total_missions_completed,
        last_mission_completed_at=optional_utc(row.last_mission_completed_at),
        tasks_completed=row.tasks_completed,
        tasks_failed=row.tasks_failed,
        success_rate=row.success_rate,
        total_duration_ms=row.total_duration_ms,
        average_duration_ms=row.average_duration_ms,
        version=row.version,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        mission_id=row.mission_id,
        title=row.title,
        description=row.description,
        task_type=TaskType(row.task_type),
        status=TaskStatus(row.status),
        priority=TaskPriority(row.priority),
        assigned_to=row.assigned_to,
        required_role=row.required_role,
        dependencies=tuple(load_json(row.dependencies_json, [])),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        retry_history=_to_retry_history(row.retry_history_json),
        auditor_review_id=row.auditor_review_id,
        human_task_id=row.human_task_id,
        estimated_duration=row.estimated_duration,
        input=load_json(row.input_json, None),
        output=load_json(row.output_json, None),
        error=row.error,
        version=row.version,
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
