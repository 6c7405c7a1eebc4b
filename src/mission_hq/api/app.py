"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mission_hq import __version__
from mission_hq.api.routes import router
from mission_hq.config import Settings
from mission_hq.orchestrator.coordinator import OrchestrationCoordinator
from mission_hq.orchestrator.errors import OrchestrationError
from mission_hq.orchestrator.events import TaskEventBroker
from mission_hq.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    repository: OrchestratorRepository | None = None,
    broker: TaskEventBroker | None = None,
) -> FastAPI:
    """Build the API around one coordinator.

    A repository passed in stays owned by the caller; otherwise one is opened
    from ``settings`` and closed on shutdown.
    """

    settings = settings or Settings.from_env()
    settings.validate()
    owns_repository = repository is None
    if repository is None:
        repository = OrchestratorRepository(
            db_path=settings.db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            default_max_retries=settings.orchestration.default_max_retries,
        )
        repository.init_schema()
    coordinator = OrchestrationCoordinator(repository, settings.orchestration, broker=broker)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info("Mission HQ API using %s", settings.db_path)
        try:
            yield
        finally:
            if owns_repository:
                repository.close()

    app = FastAPI(title="Mission HQ", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.coordinator = coordinator
    app.add_exception_handler(OrchestrationError, _orchestration_error_handler)
    app.include_router(router)
    return app


async def _orchestration_error_handler(_: Request, error: OrchestrationError) -> JSONResponse:
    logger.info("Request rejected (%s): %s", error.code, error.message)
    return JSONResponse(status_code=error.http_status, content=error.to_payload())
