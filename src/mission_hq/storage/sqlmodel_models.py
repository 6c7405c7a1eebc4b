"""SQLModel ORM tables for missions, agents and tasks."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Mission(SQLModel, table=True):
    __tablename__ = "missions"  # type: ignore[bad-override]

    mission_id: str = Field(primary_key=True)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    objective: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    status: str = Field(index=True)
    priority: str = Field(default="medium")
    squad_lead_id: str | None = Field(default=None, index=True)
    initial_analysis_task_id: str | None = None
    awaiting_human_task_id: str | None = None
    version: int = Field(default=1)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MissionLogEntry(SQLModel, table=True):
    __tablename__ = "mission_log_entries"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_mission_log_entries_mission_time", "mission_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    mission_id: str = Field(
        sa_column=Column(
            ForeignKey("missions.mission_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    action: str = Field(index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Agent(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]

    agent_id: str = Field(primary_key=True)
    name: str = Field(unique=True, index=True)
    role: str = Field(index=True)
    status: str = Field(index=True)
    capabilities_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    is_reusable: bool = Field(default=True)
    current_mission_id: str | None = Field(default=None, index=True)
    mission_history_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    total_missions_completed: int = 0
    last_mission_completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    tasks_completed: int = 0
    tasks_failed: int = 0
    success_rate: float | None = None
    total_duration_ms: int = 0
    average_duration_ms: int = 0
    version: int = Field(default=1)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_mission_status", "mission_id", "status"),
        Index("idx_tasks_dispatch", "status", "auditor_review_id", "assigned_to"),
    )

    task_id: str = Field(primary_key=True)
    mission_id: str = Field(
        sa_column=Column(
            ForeignKey("missions.mission_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    task_type: str = Field(index=True)
    status: str = Field(index=True)
    priority: str = Field(default="medium")
    assigned_to: str | None = Field(default=None, index=True)
    required_role: str | None = None
    dependencies_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    retry_count: int = 0
    max_retries: int = 3
    retry_history_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    auditor_review_id: str | None = Field(default=None, index=True)
    human_task_id: str | None = None
    estimated_duration: float = 1.0
    input_json: str | None = Field(default=None, sa_column=Column(Text))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    version: int = Field(default=1)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
