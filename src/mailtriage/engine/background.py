"""Background task runner for long classification batches.

Tasks run on the event loop via ``asyncio.create_task``; the runner keeps a
strong reference to each task until it finishes and exposes progress as a
``TaskState`` snapshot keyed by task id. State lives in process memory only.

Usage:
    from mailtriage.engine.background import BackgroundTaskRunner, start_background_classification

    runner = BackgroundTaskRunner()
    task_id, count = start_background_classification(
        runner, service, store, budget, config, email_ids
    )
    state = runner.get_status(task_id)
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import replace
from functools import partial
from typing import TYPE_CHECKING

from structlog.contextvars import bound_contextvars

from mailtriage.core.domain import TaskState
from mailtriage.core.logging import get_logger
from mailtriage.engine.budget import sort_by_recency

if TYPE_CHECKING:
    from mailtriage.config_schema import AppConfig
    from mailtriage.core.ports import BudgetSource
    from mailtriage.db.store import DatabaseStore
    from mailtriage.engine.classification import ClassificationService

logger = get_logger(__name__)

ProgressCallback = Callable[[], None]
WorkFn = Callable[[ProgressCallback], Awaitable[object]]

# Default in-flight classifications per provider
PROVIDER_CONCURRENCY = {"ollama": 2, "anthropic": 1}


class BackgroundTaskRunner:
    """Tracks in-process background tasks and their progress.

    Each ``start`` creates its own ``TaskState``; the work it schedules only
    ever updates that object. After ``clear`` the id can be reused while the
    old work finishes without touching the new task's progress.

    Attributes:
        _states: Observable TaskState per task id
        _tasks: Latest asyncio task per task id, for ``wait``
        _live: Strong references to every unfinished task
    """

    def __init__(self) -> None:
        self._states: dict[str, TaskState] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._live: set[asyncio.Task] = set()

    def start(self, task_id: str, total: int, work_fn: WorkFn) -> None:
        """Register a task and schedule ``work_fn(on_progress)`` on the running loop.

        Raises:
            ValueError: A task with this id is still running
        """
        existing = self._states.get(task_id)
        if existing is not None and existing.status == "running":
            raise ValueError(f"Background task {task_id} is already running")

        state = TaskState(status="running", processed=0, total=total)
        self._states[task_id] = state

        def on_progress() -> None:
            if state.status == "running":
                state.processed += 1

        task = asyncio.create_task(self._run(task_id, state, work_fn, on_progress))
        self._tasks[task_id] = task
        self._live.add(task)
        task.add_done_callback(partial(self._forget, task_id))

        logger.info("background_task_started", task_id=task_id, total=total)

    def _forget(self, task_id: str, task: asyncio.Task) -> None:
        self._live.discard(task)
        if self._tasks.get(task_id) is task:
            del self._tasks[task_id]

    async def _run(
        self,
        task_id: str,
        state: TaskState,
        work_fn: WorkFn,
        on_progress: ProgressCallback,
    ) -> None:
        with bound_contextvars(task_id=task_id):
            try:
                await work_fn(on_progress)
            except Exception as e:
                state.status = "failed"
                state.error = str(e) or type(e).__name__
                logger.error(
                    "background_task_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return

            state.status = "completed"
            state.processed = state.total
            logger.info("background_task_completed", total=state.total)

    def get_status(self, task_id: str) -> TaskState | None:
        """Snapshot of a task's progress, or None if unknown."""
        state = self._states.get(task_id)
        return replace(state) if state is not None else None

    def clear(self, task_id: str) -> None:
        """Forget a task's state. Unknown ids are ignored."""
        self._states.pop(task_id, None)

    async def wait(self, task_id: str) -> None:
        """Wait for a task to finish, if it is still running."""
        task = self._tasks.get(task_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)


def resolve_concurrency(config: AppConfig) -> int:
    """Configured concurrency, or the provider default."""
    if config.llm.classification_concurrency is not None:
        return config.llm.classification_concurrency
    return PROVIDER_CONCURRENCY.get(config.llm.provider, 1)


def start_background_classification(
    runner: BackgroundTaskRunner,
    service: ClassificationService,
    store: DatabaseStore,
    budget: BudgetSource,
    config: AppConfig,
    email_ids: list[int],
) -> tuple[str, int]:
    """Classify ``email_ids`` in the background with bounded concurrency.

    The budget is checked per item just before its classification, so up to
    ``concurrency`` calls may be in flight when the limit is reached. Emails
    are admitted most recent first and duplicate ids are classified once.

    Returns:
        (task_id, number of emails queued)
    """
    task_id = str(uuid.uuid4())
    concurrency = resolve_concurrency(config)
    threshold = config.llm.confidence_threshold
    unique_ids = list(dict.fromkeys(email_ids))

    async def work(on_progress: ProgressCallback) -> None:
        emails = await store.get_emails_batch(unique_ids)
        ordered = [email.id for email in sort_by_recency(list(emails.values()))]
        ordered += [email_id for email_id in unique_ids if email_id not in emails]
        semaphore = asyncio.Semaphore(concurrency)

        async def classify_one(email_id: int) -> None:
            async with semaphore:
                with bound_contextvars(email_id=email_id):
                    try:
                        current = await budget.get_email_budget()
                        if not current.allowed:
                            logger.debug("background_item_skipped_budget")
                            return
                        await service.classify_email(email_id, threshold)
                    except Exception as e:
                        logger.error(
                            "background_item_failed",
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                        await service.record_failure(email_id, e)
                    finally:
                        on_progress()

        await asyncio.gather(*(classify_one(email_id) for email_id in ordered))

    runner.start(task_id, len(unique_ids), work)
    logger.info(
        "background_classification_queued",
        task_id=task_id,
        count=len(unique_ids),
        concurrency=concurrency,
    )
    return task_id, len(unique_ids)
