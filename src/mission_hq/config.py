"""Runtime configuration for the orchestration engine and its API."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@dataclass(slots=True)
class OrchestrationSettings:
    """Retry/audit policy and role names used by the coordinator."""

    default_max_retries: int = 3
    auto_retry: bool = True
    auto_audit: bool = True
    auditor_role: str = "auditor"
    lead_role: str = "squad_lead"


@dataclass(slots=True)
class ApiSettings:
    """HTTP surface settings."""

    host: str = "127.0.0.1"
    port: int = 8000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".mission_hq.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    orchestration: OrchestrationSettings = field(default_factory=OrchestrationSettings)
    api: ApiSettings = field(default_factory=ApiSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("MISSION_HQ_DB_PATH", ".mission_hq.db")),
            sqlite_busy_timeout_ms=_env_int("MISSION_HQ_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            log_level=os.getenv("MISSION_HQ_LOG_LEVEL", "INFO").strip().upper(),
            orchestration=OrchestrationSettings(
                default_max_retries=_env_int("MISSION_HQ_DEFAULT_MAX_RETRIES", 3),
                auto_retry=_env_bool("MISSION_HQ_AUTO_RETRY", True),
                auto_audit=_env_bool("MISSION_HQ_AUTO_AUDIT", True),
                auditor_role=os.getenv("MISSION_HQ_AUDITOR_ROLE", "auditor").strip(),
                lead_role=os.getenv("MISSION_HQ_LEAD_ROLE", "squad_lead").strip(),
            ),
            api=ApiSettings(
                host=os.getenv("MISSION_HQ_API_HOST", "127.0.0.1").strip(),
                port=_env_int("MISSION_HQ_API_PORT", 8000),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any value is out of range."""

        if self.orchestration.default_max_retries < 0:
            raise ValueError("MISSION_HQ_DEFAULT_MAX_RETRIES must be >= 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("MISSION_HQ_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not self.orchestration.auditor_role:
            raise ValueError("MISSION_HQ_AUDITOR_ROLE must not be empty.")
        if not self.orchestration.lead_role:
            raise ValueError("MISSION_HQ_LEAD_ROLE must not be empty.")
        if not 0 < self.api.port < 65_536:
            raise ValueError(f"MISSION_HQ_API_PORT out of range: {self.api.port}")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"Invalid MISSION_HQ_LOG_LEVEL: {self.log_level!r}. "
                f"Expected one of {', '.join(LOG_LEVELS)}.",
            )

    @property
    def numeric_log_level(self) -> int:
        return logging.getLevelName(self.log_level)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
