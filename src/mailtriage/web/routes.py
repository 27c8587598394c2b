"""JSON API routes for the mail triage engine.

All routes live on ``api_router`` (prefix ``/api``) and use FastAPI
dependency injection to reach the engine components on app.state.
Domain errors are mapped to HTTP status codes by the handler registered
in ``create_app``.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from mailtriage.core.domain import SnoozeReason, TriageFolder
from mailtriage.core.errors import NotFoundError
from mailtriage.core.logging import get_logger
from mailtriage.db.store import DatabaseStore
from mailtriage.engine.background import BackgroundTaskRunner, start_background_classification
from mailtriage.engine.classification import ClassificationService
from mailtriage.engine.components import EngineComponents
from mailtriage.engine.feedback import FeedbackLoop
from mailtriage.engine.snooze import SnoozeScheduler
from mailtriage.engine.triage import TriageOrchestrator
from mailtriage.web.dependencies import (
    get_classification_service,
    get_components,
    get_feedback_loop,
    get_orchestrator,
    get_snooze_scheduler,
    get_task_runner,
)

logger = get_logger(__name__)

API_VERSION = "0.1.0"

api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class BackgroundClassifyRequest(BaseModel):
    """Emails to classify in the background; omitted means every unclassified email."""

    email_ids: list[int] | None = None


class AcceptRequest(BaseModel):
    """Accept a suggestion, optionally filing the email elsewhere."""

    folder: TriageFolder | None = None


class CorrectRequest(BaseModel):
    """Record the folder the user actually wanted."""

    folder: TriageFolder
    ai_suggestion: str | None = None


class MoveRequest(BaseModel):
    folder: TriageFolder


class SnoozeRequest(BaseModel):
    until: datetime
    reason: SnoozeReason = "manual"


class BulkRequest(BaseModel):
    email_ids: list[int] = Field(min_length=1, max_length=500)


class BulkMoveRequest(BulkRequest):
    folder: TriageFolder


# ---------------------------------------------------------------------------
# Background classification
# ---------------------------------------------------------------------------


@api_router.post("/classify/background", status_code=202)
async def classify_background(
    body: BackgroundClassifyRequest | None = None,
    components: EngineComponents = Depends(get_components),  # noqa: B008
):
    """Queue a background classification task and return its id."""
    body = body or BackgroundClassifyRequest()
    email_ids = body.email_ids
    if email_ids is None:
        email_ids = await components.store.list_unclassified_email_ids()

    task_id, count = start_background_classification(
        components.runner,
        components.classification,
        components.store,
        components.budget,
        components.config,
        email_ids,
    )
    return {"task_id": task_id, "count": count}


@api_router.get("/tasks/{task_id}")
async def get_task_status(
    task_id: str,
    runner: BackgroundTaskRunner = Depends(get_task_runner),  # noqa: B008
):
    state = runner.get_status(task_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return asdict(state)


@api_router.delete("/tasks/{task_id}")
async def clear_task(
    task_id: str,
    runner: BackgroundTaskRunner = Depends(get_task_runner),  # noqa: B008
):
    runner.clear(task_id)
    return {"status": "cleared", "task_id": task_id}


# ---------------------------------------------------------------------------
# Review queue and state queries
# ---------------------------------------------------------------------------


@api_router.get("/review")
async def review_queue(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    sort_by: Literal["confidence", "date", "sender"] = "confidence",
    account_id: int | None = None,
    service: ClassificationService = Depends(get_classification_service),  # noqa: B008
):
    """Emails awaiting review, lowest confidence first by default."""
    items = await service.pending_review_queue(limit, offset, sort_by, account_id)
    return {
        "items": [asdict(state) for state in items],
        "pending_review": await service.pending_review_count(),
    }


@api_router.get("/failed")
async def failed_classifications(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    account_id: int | None = None,
    service: ClassificationService = Depends(get_classification_service),  # noqa: B008
):
    items = await service.failed_classifications(limit, offset, account_id)
    return {"items": [asdict(state) for state in items]}


@api_router.get("/stats")
async def classification_stats(
    account_id: int | None = None,
    service: ClassificationService = Depends(get_classification_service),  # noqa: B008
):
    return asdict(await service.stats(account_id))


@api_router.get("/state/{email_id}")
async def classification_state(
    email_id: int,
    service: ClassificationService = Depends(get_classification_service),  # noqa: B008
):
    state = await service.get_state(email_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Classification state not found")
    return asdict(state)


# ---------------------------------------------------------------------------
# Single-email actions
# ---------------------------------------------------------------------------


@api_router.post("/emails/{email_id}/accept")
async def accept_email(
    email_id: int,
    body: AcceptRequest | None = None,
    feedback: FeedbackLoop = Depends(get_feedback_loop),  # noqa: B008
):
    """Accept the suggestion, or file the email in ``folder`` instead."""
    body = body or AcceptRequest()
    state = await feedback.accept(email_id, body.folder)
    return {"status": "accepted", "state": asdict(state)}


@api_router.post("/emails/{email_id}/dismiss")
async def dismiss_email(
    email_id: int,
    feedback: FeedbackLoop = Depends(get_feedback_loop),  # noqa: B008
):
    state = await feedback.dismiss(email_id)
    return {"status": "dismissed", "state": asdict(state)}


@api_router.post("/emails/{email_id}/retry")
async def retry_email(
    email_id: int,
    service: ClassificationService = Depends(get_classification_service),  # noqa: B008
):
    """Retry a failed classification. Only emails in the error state qualify."""
    state = await service.retry_classification(email_id)
    return {"status": str(state.status), "state": asdict(state)}


@api_router.post("/emails/{email_id}/reclassify")
async def reclassify_email(
    email_id: int,
    service: ClassificationService = Depends(get_classification_service),  # noqa: B008
):
    return asdict(await service.reclassify_email(email_id))


@api_router.post("/emails/{email_id}/correct")
async def correct_email(
    email_id: int,
    body: CorrectRequest,
    service: ClassificationService = Depends(get_classification_service),  # noqa: B008
    feedback: FeedbackLoop = Depends(get_feedback_loop),  # noqa: B008
):
    """Teach the engine the right folder for this email's sender."""
    ai_suggestion = body.ai_suggestion
    if ai_suggestion is None:
        state = await service.get_state(email_id)
        if state is not None and state.suggested_folder is not None:
            ai_suggestion = str(state.suggested_folder)

    example = await feedback.learn_from_correction(email_id, ai_suggestion, body.folder, "manual")
    return {
        "status": "learned",
        "training_example_id": example.id,
        "was_correction": example.was_correction,
    }


@api_router.post("/emails/{email_id}/move")
async def move_email(
    email_id: int,
    body: MoveRequest,
    orchestrator: TriageOrchestrator = Depends(get_orchestrator),  # noqa: B008
):
    await orchestrator.move_to_folder(email_id, body.folder)
    return {"status": "moved", "email_id": email_id, "folder": str(body.folder)}


@api_router.post("/emails/{email_id}/snooze")
async def snooze_email(
    email_id: int,
    body: SnoozeRequest,
    snoozes: SnoozeScheduler = Depends(get_snooze_scheduler),  # noqa: B008
):
    snooze = await snoozes.snooze(email_id, body.until, body.reason)
    return {"status": "snoozed", "snooze": asdict(snooze)}


@api_router.delete("/emails/{email_id}/snooze")
async def unsnooze_email(
    email_id: int,
    snoozes: SnoozeScheduler = Depends(get_snooze_scheduler),  # noqa: B008
):
    if not await snoozes.unsnooze(email_id):
        raise NotFoundError("snooze", email_id)
    return {"status": "unsnoozed", "email_id": email_id}


# ---------------------------------------------------------------------------
# Bulk actions
# ---------------------------------------------------------------------------


@api_router.post("/bulk/accept")
async def bulk_accept(
    body: BulkRequest,
    feedback: FeedbackLoop = Depends(get_feedback_loop),  # noqa: B008
):
    result = await feedback.bulk_accept(body.email_ids)
    return {"accepted": result.succeeded, "failed": result.failed}


@api_router.post("/bulk/dismiss")
async def bulk_dismiss(
    body: BulkRequest,
    feedback: FeedbackLoop = Depends(get_feedback_loop),  # noqa: B008
):
    result = await feedback.bulk_dismiss(body.email_ids)
    return {"dismissed": result.succeeded, "failed": result.failed}


@api_router.post("/bulk/move")
async def bulk_move(
    body: BulkMoveRequest,
    feedback: FeedbackLoop = Depends(get_feedback_loop),  # noqa: B008
):
    result = await feedback.bulk_move_to_folder(body.email_ids, body.folder)
    return {"applied": result.succeeded, "failed": result.failed}


# ---------------------------------------------------------------------------
# Learning insights and health
# ---------------------------------------------------------------------------


@api_router.get("/confused-patterns")
async def confused_patterns(
    limit: int = Query(5, ge=1, le=100),
    feedback: FeedbackLoop = Depends(get_feedback_loop),  # noqa: B008
):
    """Senders and subject templates the engine keeps getting wrong."""
    patterns = await feedback.confused_patterns(limit)
    recent = await feedback.recent_activity()
    return {
        "patterns": [asdict(pattern) for pattern in patterns],
        "recent_activity": [asdict(item) for item in recent],
    }


@api_router.delete("/confused-patterns")
async def clear_confused_patterns(
    feedback: FeedbackLoop = Depends(get_feedback_loop),  # noqa: B008
):
    return {"cleared": await feedback.clear_confused_patterns()}


@api_router.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """Health check endpoint for Docker and monitoring."""
    components: EngineComponents | None = getattr(request.app.state, "components", None)
    if components is None:
        return {"status": "degraded", "engine": False, "version": API_VERSION}

    store: DatabaseStore = components.store
    budget = await components.budget.get_email_budget()
    scheduler = getattr(request.app.state, "scheduler", None)

    return {
        "status": "healthy",
        "engine": True,
        "pending_review": await store.count_pending_review(),
        "budget_used": budget.used,
        "budget_limit": budget.limit,
        "scheduler_running": bool(scheduler and scheduler.running),
        "version": API_VERSION,
    }
