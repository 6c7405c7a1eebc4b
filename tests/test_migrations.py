from pathlib import Path

import allure
from sqlalchemy import text

from mission_hq.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).all()
        assert [str(row[0]) for row in version] == ["20261018_0001"]

        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('missions', 'mission_log_entries', 'agents', 'tasks', 'task_events')
                ORDER BY name
                """,
            ),
        ).all()
    assert [str(row[0]) for row in tables] == [
        "agents",
        "mission_log_entries",
        "missions",
        "task_events",
        "tasks",
    ]
    repository.close()
