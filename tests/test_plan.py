from __future__ import annotations

import json

import allure
import pytest

from mission_hq.orchestrator.errors import InvalidPlan
from mission_hq.orchestrator.models import TaskPriority, TaskType
from mission_hq.orchestrator.plan import parse_plan

pytestmark = [
    allure.epic("Mission Planning"),
    allure.feature("Plan Validation"),
]


def _plan(**overrides):
    plan = {
        "summary": "Collect, compare, recommend.",
        "complexity": "medium",
        "estimatedDuration": 90,
        "agents": [
            {"name": "Scout", "role": "researcher", "capabilities": ["web_search"]},
            {"name": "Quill", "role": "writer"},
        ],
        "tasks": [
            {"id": "collect", "title": "Collect vendors", "type": "web_search", "priority": "high"},
            {
                "id": "compare",
                "title": "Compare pricing",
                "type": "data_analysis",
                "dependencies": ["collect"],
                "estimatedDuration": 30,
            },
            {
                "id": "report",
                "title": "Write recommendation",
                "type": "generation",
                "assignedAgentRole": "writer",
            },
        ],
        "dependencies": [{"taskId": "report", "dependsOn": ["compare"]}],
    }
    plan.update(overrides)
    return plan


def test_valid_plan_is_normalized() -> None:
    plan = parse_plan(_plan())

    tasks = {task.local_id: task for task in plan.tasks}
    assert tasks["collect"].task_type is TaskType.SEARCH
    assert tasks["collect"].priority is TaskPriority.HIGH
    assert tasks["compare"].task_type is TaskType.ANALYSIS
    assert tasks["compare"].estimated_duration == 30.0
    assert tasks["report"].dependencies == ("compare",)
    assert tasks["report"].assigned_agent_role == "writer"
    assert [agent.name for agent in plan.agents] == ["Scout", "Quill"]
    assert plan.estimated_duration == 90.0
    assert [task.local_id for task in plan.ordered_tasks()] == ["collect", "compare", "report"]


def test_plan_accepts_json_text_and_snake_case_dependencies() -> None:
    raw = _plan(dependencies=[{"task_id": "report", "depends_on": ["collect"]}])

    plan = parse_plan(json.dumps(raw))

    report = next(task for task in plan.tasks if task.local_id == "report")
    assert report.dependencies == ("collect",)


def test_empty_tasks_are_rejected() -> None:
    with pytest.raises(InvalidPlan) as raised:
        parse_plan(_plan(tasks=[]))

    assert "tasks must be a non-empty array" in raised.value.problems


def test_all_problems_are_reported_together() -> None:
    raw = _plan(
        agents=[{"name": "Scout"}],
        tasks=[
            {"id": "a", "title": "A", "type": "teleport"},
            {"id": "a", "title": "Again"},
            {"id": "b", "title": "B", "dependencies": ["b", "ghost"]},
            {"id": "c", "title": "C", "type": "audit_review"},
        ],
        dependencies=None,
    )

    with pytest.raises(InvalidPlan) as raised:
        parse_plan(raw)

    problems = raised.value.problems
    assert "agents[0] is missing role" in problems
    assert "tasks[0] has unknown type 'teleport'" in problems
    assert "tasks[1] duplicates task id 'a'" in problems
    assert "task 'b' depends on itself" in problems
    assert "task 'b' depends on unknown task 'ghost'" in problems
    assert "tasks[3] may not use reserved type 'audit_review'" in problems


def test_cyclic_plan_is_rejected() -> None:
    raw = _plan(
        tasks=[
            {"id": "a", "title": "A", "dependencies": ["c"]},
            {"id": "b", "title": "B", "dependencies": ["a"]},
            {"id": "c", "title": "C", "dependencies": ["b"]},
        ],
        dependencies=None,
    )

    with pytest.raises(InvalidPlan, match="circular dependency among tasks: a, b, c"):
        parse_plan(raw)


def test_non_object_plan_is_rejected() -> None:
    with pytest.raises(InvalidPlan, match="not valid JSON"):
        parse_plan("{tasks: [")
    with pytest.raises(InvalidPlan, match="must be a JSON object"):
        parse_plan(None)


@pytest.mark.parametrize(
    ("overrides", "problem"),
    [
        ({"recommendations": 5}, "recommendations must be an array"),
        ({"riskFactors": 3}, "riskFactors must be an array"),
        ({"complexity": {"level": "high"}}, "complexity must be a string"),
        ({"summary": ["one", "two"]}, "summary must be a string"),
        ({"estimatedDuration": "soon"}, "estimatedDuration must be a number"),
    ],
)
def test_malformed_plan_metadata_is_a_problem(overrides, problem) -> None:
    with pytest.raises(InvalidPlan) as raised:
        parse_plan(_plan(**overrides))

    assert problem in raised.value.problems


@pytest.mark.parametrize("duration", ["abc", "nan", "inf", -5])
def test_task_duration_must_be_finite_and_non_negative(duration) -> None:
    raw = _plan(
        tasks=[{"id": "collect", "title": "Collect vendors", "estimatedDuration": duration}],
        dependencies=None,
    )

    with pytest.raises(InvalidPlan) as raised:
        parse_plan(raw)

    assert any(problem.startswith("tasks[0].estimatedDuration must be") for problem in raised.value.problems)


def test_plan_metadata_is_kept() -> None:
    plan = parse_plan(_plan(riskFactors=["vendor lock-in"], recommendations=["start small"]))

    assert plan.summary == "Collect, compare, recommend."
    assert plan.complexity == "medium"
    assert plan.risk_factors == ["vendor lock-in"]
    assert plan.recommendations == ["start small"]
