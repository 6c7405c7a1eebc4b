from __future__ import annotations

from pathlib import Path

import allure
import pytest

from mission_hq.config import ApiSettings, OrchestrationSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "MISSION_HQ_DB_PATH",
        "MISSION_HQ_DEFAULT_MAX_RETRIES",
        "MISSION_HQ_AUTO_RETRY",
        "MISSION_HQ_AUTO_AUDIT",
        "MISSION_HQ_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".mission_hq.db")
    assert settings.orchestration.default_max_retries == 3
    assert settings.orchestration.auto_retry is True
    assert settings.orchestration.auto_audit is True
    assert settings.log_level == "INFO"
    settings.validate()


def test_from_env_reads_orchestration_policy(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MISSION_HQ_DEFAULT_MAX_RETRIES", "5")
    monkeypatch.setenv("MISSION_HQ_AUTO_RETRY", "off")
    monkeypatch.setenv("MISSION_HQ_AUDITOR_ROLE", " reviewer ")
    monkeypatch.setenv("MISSION_HQ_LOG_LEVEL", "debug")
    monkeypatch.setenv("MISSION_HQ_API_PORT", "9100")

    settings = Settings.from_env(db_path=Path("custom.db"))

    assert settings.db_path == Path("custom.db")
    assert settings.orchestration.default_max_retries == 5
    assert settings.orchestration.auto_retry is False
    assert settings.orchestration.auditor_role == "reviewer"
    assert settings.log_level == "DEBUG"
    assert settings.numeric_log_level == 10
    assert settings.api.port == 9100


def test_from_env_rejects_malformed_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MISSION_HQ_DEFAULT_MAX_RETRIES", "three")
    with pytest.raises(ValueError, match="MISSION_HQ_DEFAULT_MAX_RETRIES"):
        Settings.from_env()

    monkeypatch.delenv("MISSION_HQ_DEFAULT_MAX_RETRIES")
    monkeypatch.setenv("MISSION_HQ_AUTO_AUDIT", "maybe")
    with pytest.raises(ValueError, match="MISSION_HQ_AUTO_AUDIT"):
        Settings.from_env()


def test_validate_rejects_negative_retry_budget() -> None:
    settings = Settings(orchestration=OrchestrationSettings(default_max_retries=-1))

    with pytest.raises(ValueError, match="DEFAULT_MAX_RETRIES"):
        settings.validate()


def test_validate_rejects_empty_roles_and_bad_port() -> None:
    with pytest.raises(ValueError, match="AUDITOR_ROLE"):
        Settings(orchestration=OrchestrationSettings(auditor_role="")).validate()
    with pytest.raises(ValueError, match="API_PORT"):
        Settings(api=ApiSettings(port=0)).validate()


def test_validate_rejects_unknown_log_level() -> None:
    with pytest.raises(ValueError, match="Invalid MISSION_HQ_LOG_LEVEL"):
        Settings(log_level="CHATTY").validate()
