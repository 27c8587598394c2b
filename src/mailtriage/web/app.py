"""FastAPI application for the mail triage engine.

Creates the FastAPI app with:
- Lifespan context manager for engine initialization and scheduler
- Domain error to HTTP status mapping
- The JSON API router

Scheduled work runs via APScheduler's BackgroundScheduler in the same
process as uvicorn. The scheduler thread bridges to the async event loop
via run_coroutine_threadsafe:
- classify_unprocessed every ``triage.interval_minutes``
- process_snoozed_emails every ``triage.snooze_check_minutes``

Usage:
    from mailtriage.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mailtriage.core.errors import (
    BudgetExhaustedError,
    ClassificationError,
    InvalidStateError,
    MoveError,
    NotFoundError,
    TriageError,
)
from mailtriage.core.logging import get_logger

logger = get_logger(__name__)

# Max seconds a scheduled job may hold the scheduler thread
_JOB_TIMEOUT_SECONDS = 600

_ERROR_STATUS: list[tuple[type[TriageError], int]] = [
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (BudgetExhaustedError, 429),
    (MoveError, 502),
    (ClassificationError, 502),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup, clean up on shutdown.

    On startup:
    1. Load config
    2. Initialize database
    3. Wire the engine (classifier, IMAP mover, services)
    4. Start APScheduler

    On shutdown:
    - Stop APScheduler and close the classifier
    """
    from apscheduler.schedulers.background import BackgroundScheduler

    from mailtriage.config import get_config, reload_config_if_changed
    from mailtriage.core.errors import ConfigLoadError, ConfigValidationError
    from mailtriage.db.store import DatabaseStore
    from mailtriage.engine.components import build_components

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        # App still starts so /api/health can report the problem
        app.state.components = None
        app.state.scheduler = None
        yield
        return

    # 2. Initialize database
    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()

    # 3. Wire the engine
    try:
        components = build_components(config, store)
    except Exception as e:
        logger.error("engine_init_failed", error=str(e), error_type=type(e).__name__)
        app.state.components = None
        app.state.scheduler = None
        yield
        return

    app.state.components = components

    # 4. Start APScheduler
    loop = asyncio.get_running_loop()

    def _bridge(name: str, job: Callable[[], Coroutine[Any, Any, object]]) -> Callable[[], None]:
        def _run_sync() -> None:
            """Bridge an async engine job into the sync scheduler thread."""
            try:
                future = asyncio.run_coroutine_threadsafe(job(), loop)
                future.result(timeout=_JOB_TIMEOUT_SECONDS)
            except Exception as e:
                logger.error("scheduled_job_failed", job=name, error=str(e))

        return _run_sync

    async def _classify_cycle() -> None:
        if reload_config_if_changed():
            components.apply_config(get_config())
        result = await components.classification.classify_unprocessed()
        logger.info(
            "scheduled_classification_complete",
            classified=result.classified,
            skipped=result.skipped,
            failed=result.failed,
        )

    async def _snooze_cycle() -> None:
        await components.snoozes.process_snoozed_emails()

    scheduler = BackgroundScheduler()
    scheduler.add_job(
        _bridge("classify_unprocessed", _classify_cycle),
        "interval",
        minutes=config.triage.interval_minutes,
        id="classify_unprocessed",
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now() + timedelta(seconds=60),
    )
    scheduler.add_job(
        _bridge("process_snoozed_emails", _snooze_cycle),
        "interval",
        minutes=config.triage.snooze_check_minutes,
        id="process_snoozed_emails",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(
        "scheduler_started",
        interval_minutes=config.triage.interval_minutes,
        snooze_check_minutes=config.triage.snooze_check_minutes,
    )
    app.state.scheduler = scheduler

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    logger.info("scheduler_stopped")
    await components.aclose()
    await store.checkpoint_wal()


async def triage_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map engine errors onto HTTP status codes."""
    status_code = 500
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break

    log = logger.warning if status_code < 500 else logger.error
    log(
        "api_request_failed",
        path=request.url.path,
        status_code=status_code,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from mailtriage.web.routes import API_VERSION, api_router

    app = FastAPI(
        title="Mail Triage",
        description="Email triage and classification engine API",
        version=API_VERSION,
        lifespan=lifespan,
    )

    app.add_exception_handler(TriageError, triage_error_handler)
    app.include_router(api_router)

    return app
