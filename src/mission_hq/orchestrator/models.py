"""Domain models for missions, agents and the task lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Persisted task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_HUMAN_RESPONSE = "awaiting_human_response"


class TaskType(str, Enum):
    """Closed set of task kinds."""

    SEARCH = "search"
    ANALYSIS = "analysis"
    GENERATION = "generation"
    EXECUTION = "execution"
    CUSTOM = "custom"
    PLAN_ANALYSIS = "plan_analysis"
    AGENT_CREATION = "agent_creation"
    COORDINATION = "coordination"
    HUMAN_INPUT = "human_input"
    AUDIT_REVIEW = "audit_review"


# Kinds that never escalate to an audit of their own.
NON_AUDITABLE_TASK_TYPES = frozenset({TaskType.AUDIT_REVIEW, TaskType.HUMAN_INPUT})


class TaskPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 0, "medium": 1, "low": 2}[self.value]


class MissionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class AgentStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    ACTIVE = "active"
    INACTIVE = "inactive"
    OFFLINE = "offline"


class AuditDecisionKind(str, Enum):
    """Recovery actions available once automatic retries are exhausted."""

    REASSIGN = "reassign"
    REFINE = "refine"
    ESCALATE_HUMAN = "escalate_human"
    RETRY = "retry"


@dataclass(slots=True)
class RetryAttempt:
    """One recorded failed attempt."""

    attempt: int
    error: str
    timestamp: datetime
    agent_id: str | None = None


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    mission_id: str
    title: str
    description: str = ""
    task_type: TaskType = TaskType.CUSTOM
    priority: TaskPriority = TaskPriority.MEDIUM
    assigned_to: str | None = None
    required_role: str | None = None
    dependencies: tuple[str, ...] = ()
    max_retries: int | None = None
    estimated_duration: float = 1.0
    input: dict[str, Any] | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task document."""

    task_id: str
    mission_id: str
    title: str
    description: str
    task_type: TaskType
    status: TaskStatus
    priority: TaskPriority
    assigned_to: str | None
    required_role: str | None
    dependencies: tuple[str, ...]
    retry_count: int
    max_retries: int
    retry_history: list[RetryAttempt]
    auditor_review_id: str | None
    human_task_id: str | None
    estimated_duration: float
    input: dict[str, Any] | None
    output: dict[str, Any] | None
    error: str | None
    version: int
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def under_audit(self) -> bool:
        return bool(self.auditor_review_id)


@dataclass(slots=True)
class TaskChange:
    """Field values to write plus the event recorded for the write."""

    values: dict[str, Any]
    event_type: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for the audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class MissionCreate:
    """Input payload for creating a mission."""

    title: str
    description: str = ""
    objective: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    status: MissionStatus = MissionStatus.DRAFT
    mission_id: str | None = None


@dataclass(slots=True)
class MissionView:
    mission_id: str
    title: str
    description: str
    objective: str
    status: MissionStatus
    priority: TaskPriority
    squad_lead_id: str | None
    initial_analysis_task_id: str | None
    awaiting_human_task_id: str | None
    version: int
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class OrchestrationLogEntry:
    """Append-only mission log entry."""

    timestamp: datetime
    action: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentCreate:
    """Input payload for creating an agent."""

    name: str
    role: str
    status: AgentStatus = AgentStatus.IDLE
    capabilities: tuple[str, ...] = ()
    current_mission_id: str | None = None
    is_reusable: bool = True
    agent_id: str | None = None


@dataclass(slots=True)
class AgentView:
    agent_id: str
    name: str
    role: str
    status: AgentStatus
    capabilities: tuple[str, ...]
    is_reusable: bool
    current_mission_id: str | None
    mission_history: tuple[str, ...]
    total_missions_completed: int
    last_mission_completed_at: datetime | None
    tasks_completed: int
    tasks_failed: int
    success_rate: float | None
    total_duration_ms: int
    average_duration_ms: int
    version: int
    created_at: datetime
    updated_at: datetime
