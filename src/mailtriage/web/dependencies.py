"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan and stored
on app.state for concurrent access by the web routes and scheduled jobs.

Usage:
    from mailtriage.web.dependencies import get_classification_service

    @router.get("/stats")
    async def stats(service: ClassificationService = Depends(get_classification_service)):
        return await service.stats()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from mailtriage.engine.background import BackgroundTaskRunner
    from mailtriage.engine.classification import ClassificationService
    from mailtriage.engine.components import EngineComponents
    from mailtriage.engine.feedback import FeedbackLoop
    from mailtriage.engine.snooze import SnoozeScheduler
    from mailtriage.engine.triage import TriageOrchestrator


def get_components(request: Request) -> EngineComponents:
    """Get the wired engine from app state.

    Raises:
        HTTPException: 503 when startup could not build the engine
    """
    components = getattr(request.app.state, "components", None)
    if components is None:
        raise HTTPException(status_code=503, detail="Triage engine not available")
    return components


def get_orchestrator(request: Request) -> TriageOrchestrator:
    return get_components(request).orchestrator


def get_classification_service(request: Request) -> ClassificationService:
    return get_components(request).classification


def get_feedback_loop(request: Request) -> FeedbackLoop:
    return get_components(request).feedback


def get_snooze_scheduler(request: Request) -> SnoozeScheduler:
    return get_components(request).snoozes


def get_task_runner(request: Request) -> BackgroundTaskRunner:
    return get_components(request).runner
