"""CLI entrypoint for mission-hq."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from mission_hq import __version__
from mission_hq.config import Settings
from mission_hq.orchestrator.controllers import (
    AgentCreateCommand,
    AgentListCommand,
    MissionCliController,
    MissionCreateCommand,
    MissionRefCommand,
    PlanApplyCommand,
    TaskAnswerCommand,
    TaskAuditCommand,
    TaskClaimCommand,
    TaskCompleteCommand,
    TaskCreateCommand,
    TaskDependencyCommand,
    TaskFailCommand,
    TaskListCommand,
    TaskRefCommand,
)
from mission_hq.orchestrator.errors import OrchestrationError
from mission_hq.orchestrator.models import AuditDecisionKind, TaskPriority, TaskStatus, TaskType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = MissionCliController()

_PRIORITIES = [priority.value for priority in TaskPriority]
_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="mission-hq")
def mission_hq() -> None:
    """Task orchestration for AI agent missions."""

    _configure_logging()


@mission_hq.group()
def mission() -> None:
    """Mission lifecycle commands."""


@mission.command("create")
@_DB_PATH_OPTION
@click.option("--title", required=True, help="Mission title.")
@click.option("--description", default="", help="Mission description.")
@click.option("--objective", default="", help="What done looks like.")
@click.option(
    "--priority",
    type=click.Choice(_PRIORITIES, case_sensitive=False),
    default=TaskPriority.MEDIUM.value,
    show_default=True,
)
def mission_create(
    db_path: Path | None,
    title: str,
    description: str,
    objective: str,
    priority: str,
) -> None:
    """Create a draft mission."""

    _run(
        lambda: CONTROLLER.create_mission(
            MissionCreateCommand(
                db_path=db_path,
                title=title,
                description=description,
                objective=objective,
                priority=priority.lower(),
            ),
        ),
    )


@mission.command("start")
@_DB_PATH_OPTION
@click.option("--mission-id", required=True, help="Mission id.")
def mission_start(db_path: Path | None, mission_id: str) -> None:
    """Attach a squad lead and queue the plan-analysis task."""

    _run(lambda: CONTROLLER.start_mission(MissionRefCommand(db_path=db_path, mission_id=mission_id)))


@mission.command("pause")
@_DB_PATH_OPTION
@click.option("--mission-id", required=True, help="Mission id.")
def mission_pause(db_path: Path | None, mission_id: str) -> None:
    """Stop dispatching the mission's tasks."""

    _run(lambda: CONTROLLER.pause_mission(MissionRefCommand(db_path=db_path, mission_id=mission_id)))


@mission.command("resume")
@_DB_PATH_OPTION
@click.option("--mission-id", required=True, help="Mission id.")
def mission_resume(db_path: Path | None, mission_id: str) -> None:
    """Resume dispatching a paused mission."""

    _run(lambda: CONTROLLER.resume_mission(MissionRefCommand(db_path=db_path, mission_id=mission_id)))


@mission.command("show")
@_DB_PATH_OPTION
@click.option("--mission-id", required=True, help="Mission id.")
def mission_show(db_path: Path | None, mission_id: str) -> None:
    """Show mission state and its tasks."""

    _run(lambda: CONTROLLER.show_mission(MissionRefCommand(db_path=db_path, mission_id=mission_id)))


@mission.command("log")
@_DB_PATH_OPTION
@click.option("--mission-id", required=True, help="Mission id.")
def mission_log(db_path: Path | None, mission_id: str) -> None:
    """Print the mission's orchestration log."""

    _run(lambda: CONTROLLER.mission_log(MissionRefCommand(db_path=db_path, mission_id=mission_id)))


@mission.command("dag")
@_DB_PATH_OPTION
@click.option("--mission-id", required=True, help="Mission id.")
def mission_dag(db_path: Path | None, mission_id: str) -> None:
    """Print the dependency graph with levels and the critical path."""

    _run(lambda: CONTROLLER.mission_dag(MissionRefCommand(db_path=db_path, mission_id=mission_id)))


@mission.command("check")
@_DB_PATH_OPTION
@click.option("--mission-id", required=True, help="Mission id.")
def mission_check(db_path: Path | None, mission_id: str) -> None:
    """Complete the mission if every task is terminal."""

    _run(
        lambda: CONTROLLER.check_completion(MissionRefCommand(db_path=db_path, mission_id=mission_id)),
    )


@mission_hq.group()
def task() -> None:
    """Task commands."""


@task.command("create")
@_DB_PATH_OPTION
@click.option("--mission-id", required=True, help="Mission id.")
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default="", help="Task description.")
@click.option(
    "--type",
    "task_type",
    type=click.Choice([task_type.value for task_type in TaskType], case_sensitive=False),
    default=TaskType.CUSTOM.value,
    show_default=True,
)
@click.option(
    "--priority",
    type=click.Choice(_PRIORITIES, case_sensitive=False),
    default=TaskPriority.MEDIUM.value,
    show_default=True,
)
@click.option(
    "--depends-on",
    "dependencies",
    multiple=True,
    help="Task id this task waits for. Can be repeated.",
)
@click.option("--assigned-to", default=None, help="Agent id to pin the task to.")
@click.option("--required-role", default=None, help="Only agents with this role may claim it.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0, max=100),
    default=None,
    help="Automatic retries before audit. Defaults to MISSION_HQ_DEFAULT_MAX_RETRIES.",
)
@click.option(
    "--estimated-duration",
    type=click.FloatRange(min=0),
    default=1.0,
    show_default=True,
    help="Estimated minutes, used for the critical path.",
)
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    mission_id: str,
    title: str,
    description: str,
    task_type: str,
    priority: str,
    dependencies: tuple[str, ...],
    assigned_to: str | None,
    required_role: str | None,
    max_retries: int | None,
    estimated_duration: float,
) -> None:
    """Create a task directly, outside of a lead-agent plan."""

    _run(
        lambda: CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                mission_id=mission_id,
                title=title,
                description=description,
                task_type=task_type,
                priority=priority,
                dependencies=dependencies,
                assigned_to=assigned_to,
                required_role=required_role,
                max_retries=max_retries,
                estimated_duration=estimated_duration,
            ),
        ),
    )


@task.command("list")
@_DB_PATH_OPTION
@click.option("--mission-id", default=None, help="Optional mission filter.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional task status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
)
def task_list(db_path: Path | None, mission_id: str | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _run(
        lambda: CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, mission_id=mission_id, status=status, limit=limit),
        ),
    )


@task.command("inspect")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def task_inspect(db_path: Path | None, task_id: str) -> None:
    """Show one task with its retry history and event trail."""

    _run(lambda: CONTROLLER.inspect_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@task.command("claim")
@_DB_PATH_OPTION
@click.option("--agent-id", required=True, help="Claiming agent id.")
@click.option("--mission-id", default=None, help="Only claim from this mission.")
def task_claim(db_path: Path | None, agent_id: str, mission_id: str | None) -> None:
    """Claim the next executable task for an agent."""

    _run(
        lambda: CONTROLLER.claim_task(
            TaskClaimCommand(db_path=db_path, agent_id=agent_id, mission_id=mission_id),
        ),
    )


@task.command("complete")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
@click.option("--output", "output_json", default=None, help="Task output as a JSON object.")
def task_complete(db_path: Path | None, task_id: str, output_json: str | None) -> None:
    """Complete an in-progress task."""

    _run(
        lambda: CONTROLLER.complete_task(
            TaskCompleteCommand(db_path=db_path, task_id=task_id, output_json=output_json),
        ),
    )


@task.command("fail")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
@click.option("--error", required=True, help="Failure message.")
@click.option("--agent-id", default=None, help="Agent that attempted the task.")
def task_fail(db_path: Path | None, task_id: str, error: str, agent_id: str | None) -> None:
    """Record a failed attempt."""

    _run(
        lambda: CONTROLLER.fail_task(
            TaskFailCommand(db_path=db_path, task_id=task_id, error=error, agent_id=agent_id),
        ),
    )


@task.command("retry")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def task_retry(db_path: Path | None, task_id: str) -> None:
    """Re-queue a failed task that still has retries left."""

    _run(lambda: CONTROLLER.retry_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@task.command("audit")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Audited task id.")
@click.option(
    "--decision",
    type=click.Choice([kind.value for kind in AuditDecisionKind], case_sensitive=False),
    required=True,
)
@click.option("--reason", default="", help="Why this decision was taken.")
@click.option("--suggested-role", default=None, help="Role to reassign to.")
@click.option("--refined-description", default=None, help="New task description for refine.")
@click.option("--question", default=None, help="Question for escalate_human.")
def task_audit(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    decision: str,
    reason: str,
    suggested_role: str | None,
    refined_description: str | None,
    question: str | None,
) -> None:
    """Apply an audit decision to an exhausted task."""

    _run(
        lambda: CONTROLLER.audit_task(
            TaskAuditCommand(
                db_path=db_path,
                task_id=task_id,
                decision=decision.lower(),
                reason=reason,
                suggested_agent_role=suggested_role,
                refined_description=refined_description,
                question_for_human=question,
            ),
        ),
    )


@task.command("depend")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Dependent task id.")
@click.option("--on", "depends_on", required=True, help="Task id to wait for.")
def task_depend(db_path: Path | None, task_id: str, depends_on: str) -> None:
    """Add a dependency edge, rejecting cycles."""

    _run(
        lambda: CONTROLLER.add_dependency(
            TaskDependencyCommand(db_path=db_path, task_id=task_id, depends_on=depends_on),
        ),
    )


@task.command("undepend")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Dependent task id.")
@click.option("--on", "depends_on", required=True, help="Dependency to drop.")
def task_undepend(db_path: Path | None, task_id: str, depends_on: str) -> None:
    """Remove a dependency edge."""

    _run(
        lambda: CONTROLLER.remove_dependency(
            TaskDependencyCommand(db_path=db_path, task_id=task_id, depends_on=depends_on),
        ),
    )


@task.command("answer")
@_DB_PATH_OPTION
@click.option("--task-id", "human_task_id", required=True, help="Human input task id.")
@click.option("--response", required=True, help="Answer to the escalated question.")
def task_answer(db_path: Path | None, human_task_id: str, response: str) -> None:
    """Answer a human input task and resume the escalated task."""

    _run(
        lambda: CONTROLLER.answer_human(
            TaskAnswerCommand(db_path=db_path, human_task_id=human_task_id, response=response),
        ),
    )


@mission_hq.group()
def plan() -> None:
    """Lead-agent plan commands."""


@plan.command("apply")
@_DB_PATH_OPTION
@click.option("--lead-task-id", required=True, help="Plan-analysis task the plan belongs to.")
@click.option(
    "--file",
    "plan_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON plan file.",
)
def plan_apply(db_path: Path | None, lead_task_id: str, plan_path: Path) -> None:
    """Create the agents and tasks described by a plan file."""

    _run(
        lambda: CONTROLLER.apply_plan(
            PlanApplyCommand(db_path=db_path, lead_task_id=lead_task_id, plan_path=plan_path),
        ),
    )


@mission_hq.group()
def agent() -> None:
    """Agent registry commands."""


@agent.command("create")
@_DB_PATH_OPTION
@click.option("--name", required=True, help="Unique agent name.")
@click.option("--role", required=True, help="Agent role, for example researcher.")
@click.option(
    "--capability",
    "capabilities",
    multiple=True,
    help="Capability tag. Can be repeated.",
)
def agent_create(
    db_path: Path | None,
    name: str,
    role: str,
    capabilities: tuple[str, ...],
) -> None:
    """Register a reusable agent."""

    _run(
        lambda: CONTROLLER.create_agent(
            AgentCreateCommand(db_path=db_path, name=name, role=role, capabilities=capabilities),
        ),
    )


@agent.command("list")
@_DB_PATH_OPTION
@click.option("--role", default=None, help="Optional role filter.")
def agent_list(db_path: Path | None, role: str | None) -> None:
    """List agents with their performance counters."""

    _run(lambda: CONTROLLER.list_agents(AgentListCommand(db_path=db_path, role=role)))


@mission_hq.command("serve")
@_DB_PATH_OPTION
@click.option("--host", default=None, help="Bind host. Defaults to MISSION_HQ_API_HOST.")
@click.option(
    "--port",
    type=click.IntRange(min=1, max=65_535),
    default=None,
    help="Bind port. Defaults to MISSION_HQ_API_PORT.",
)
def serve(db_path: Path | None, host: str | None, port: int | None) -> None:
    """Run the HTTP API."""

    import uvicorn

    from mission_hq.api.app import create_app

    settings = Settings.from_env(db_path=db_path)
    try:
        app = create_app(settings)
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    uvicorn.run(
        app,
        host=host or settings.api.host,
        port=port or settings.api.port,
        log_level=settings.log_level.lower(),
    )


def _configure_logging() -> None:
    try:
        settings = Settings.from_env()
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    logging.basicConfig(
        level=settings.numeric_log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except (OrchestrationError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    mission_hq()
