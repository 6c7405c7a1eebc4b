"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from mission_hq.config import OrchestrationSettings
from mission_hq.orchestrator.coordinator import OrchestrationCoordinator
from mission_hq.orchestrator.events import TaskEventBroker
from mission_hq.orchestrator.models import (
    MissionCreate,
    MissionView,
    TaskPriority,
    TaskStatus,
    TaskType,
    TaskView,
)
from mission_hq.orchestrator.repository import OrchestratorRepository

_BASE_TIME = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "mission-hq.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def broker() -> TaskEventBroker:
    return TaskEventBroker()


@pytest.fixture()
def coordinator(
    repository: OrchestratorRepository,
    broker: TaskEventBroker,
) -> OrchestrationCoordinator:
    return OrchestrationCoordinator(repository, OrchestrationSettings(), broker=broker)


@pytest.fixture()
def mission(coordinator: OrchestrationCoordinator) -> MissionView:
    return coordinator.create_mission(
        MissionCreate(
            title="Market scan",
            description="Survey vendors for the Q4 tooling budget.",
            objective="Shortlist three vendors.",
        ),
    )


@pytest.fixture()
def make_task_view() -> Callable[..., TaskView]:
    """Build in-memory task views for graph and state-machine tests."""

    counter = {"value": 0}

    def _make(task_id: str, *dependencies: str, **overrides: Any) -> TaskView:
        counter["value"] += 1
        created = _BASE_TIME + timedelta(seconds=counter["value"])
        fields: dict[str, Any] = {
            "task_id": task_id,
            "mission_id": "mission-1",
            "title": f"Task {task_id}",
            "description": "",
            "task_type": TaskType.CUSTOM,
            "status": TaskStatus.PENDING,
            "priority": TaskPriority.MEDIUM,
            "assigned_to": None,
            "required_role": None,
            "dependencies": tuple(dependencies),
            "retry_count": 0,
            "max_retries": 3,
            "retry_history": [],
            "auditor_review_id": None,
            "human_task_id": None,
            "estimated_duration": 1.0,
            "input": None,
            "output": None,
            "error": None,
            "version": 1,
            "started_at": None,
            "completed_at": None,
            "created_at": created,
            "updated_at": created,
        }
        fields.update(overrides)
        return TaskView(**fields)

    return _make
