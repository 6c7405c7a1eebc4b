from __future__ import annotations

import allure

from mission_hq.orchestrator.coordinator import OrchestrationCoordinator
from mission_hq.orchestrator.models import AgentCreate, AgentStatus, MissionView, TaskType
from mission_hq.orchestrator.scoring import AgentScorer, metrics_after_task

pytestmark = [
    allure.epic("Mission Orchestration"),
    allure.feature("Agent Scoring"),
]


def test_matching_idle_agent_ranks_first(coordinator: OrchestrationCoordinator) -> None:
    coordinator.create_agent(AgentCreate(name="Busy Bee", role="researcher", status=AgentStatus.BUSY))
    generalist = coordinator.create_agent(AgentCreate(name="Gene", role="writer"))
    specialist = coordinator.create_agent(
        AgentCreate(name="Scout", role="researcher", capabilities=("web_search", "scraping")),
    )

    ranked = coordinator.scorer.rank(task_type=TaskType.SEARCH, capabilities=("web_search",))

    assert [score.agent.agent_id for score in ranked] == [specialist.agent_id, generalist.agent_id]
    best = ranked[0]
    assert best.role_match == 40
    assert best.availability == 30
    assert best.success_rate == 10
    assert best.total == 80
    assert "no completed tasks yet" in best.reasons


def test_role_filter_and_lead_fallback(coordinator: OrchestrationCoordinator) -> None:
    lead = coordinator.create_agent(AgentCreate(name="Lead", role="squad_lead"))
    coordinator.create_agent(AgentCreate(name="Quill", role="writer"))

    assert coordinator.scorer.select_best("auditor") is None

    ranked = coordinator.scorer.rank(task_type=TaskType.ANALYSIS)
    assert ranked[0].agent.agent_id == lead.agent_id
    assert "squad lead fallback" in ranked[0].reasons


def test_agent_on_same_mission_scores_lower(
    coordinator: OrchestrationCoordinator,
    mission: MissionView,
) -> None:
    coordinator.create_agent(
        AgentCreate(name="Ada", role="analyst", current_mission_id=mission.mission_id),
    )
    free = coordinator.create_agent(AgentCreate(name="Bea", role="analyst"))

    best = coordinator.scorer.select_best("analyst", mission.mission_id)

    assert best is not None
    assert best.agent_id == free.agent_id


def test_non_reusable_and_excluded_agents_are_skipped(coordinator: OrchestrationCoordinator) -> None:
    coordinator.create_agent(AgentCreate(name="Once", role="auditor", is_reusable=False))
    first = coordinator.create_agent(AgentCreate(name="Ann", role="auditor"))
    second = coordinator.create_agent(AgentCreate(name="Bob", role="auditor"))

    scorer = AgentScorer(coordinator.repository)

    assert [score.agent.name for score in scorer.rank(role="auditor")] == ["Ann", "Bob"]
    assert scorer.select_best("auditor", exclude=(first.agent_id,)).agent_id == second.agent_id


def test_metrics_after_task(coordinator: OrchestrationCoordinator) -> None:
    agent = coordinator.create_agent(AgentCreate(name="Counter", role="analyst"))

    first = metrics_after_task(agent, succeeded=True, duration_ms=400)
    assert first == {
        "tasks_completed": 1,
        "tasks_failed": 0,
        "total_duration_ms": 400,
        "average_duration_ms": 400,
        "success_rate": 100.0,
    }

    updated = coordinator.repository.modify_agent(agent.agent_id, lambda _: first)
    second = metrics_after_task(updated, succeeded=False, duration_ms=200)
    assert second["tasks_failed"] == 1
    assert second["average_duration_ms"] == 300
    assert second["success_rate"] == 50.0
