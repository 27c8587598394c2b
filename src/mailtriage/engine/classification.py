"""Classification state recorder and batch classification.

Turns orchestrator verdicts into ClassificationState records:

    unprocessed -> classified | pending_review | error     (pipeline)
    classified | pending_review -> accepted | dismissed    (user review, see feedback.py)
    any -> unprocessed -> ...                              (explicit reclassify)
    error -> ...                                           (explicit retry)

Batch paths (``classify_new_emails``, ``classify_unprocessed``) isolate
failures per email: an exception becomes an ``error`` state and the loop
moves on. Budget exhaustion is reported as skipped, never raised.

Usage:
    from mailtriage.engine.classification import ClassificationService

    service = ClassificationService(store, orchestrator, budget, config)
    result = await service.classify_new_emails([1, 2, 3])
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from structlog.contextvars import bound_contextvars

from mailtriage.core.domain import (
    ACCURACY_RECLASSIFY,
    ClassificationFeedback,
    ClassificationState,
    ClassificationStats,
    ClassificationStatus,
    Priority,
    TriageFolder,
    priority_for_confidence,
)
from mailtriage.core.errors import (
    BudgetExhaustedError,
    DatabaseError,
    InvalidStateError,
    NotFoundError,
)
from mailtriage.core.logging import batch_context, get_logger
from mailtriage.engine.budget import select_within_budget

if TYPE_CHECKING:
    from mailtriage.config_schema import AppConfig
    from mailtriage.core.ports import BudgetSource
    from mailtriage.db.store import DatabaseStore, ReviewSort
    from mailtriage.engine.triage import TriageOrchestrator

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BatchResult:
    """Outcome of one batch classification.

    Attributes:
        classified: Emails that received a verdict
        skipped: Candidates left for later (budget or no longer resolvable)
        triaged: Emails that went through the full triage pipeline
        failed: Emails recorded in the error state
    """

    classified: int = 0
    skipped: int = 0
    triaged: int = 0
    failed: int = 0


@dataclass(frozen=True, slots=True)
class ReclassifyResult:
    """Before/after view of an explicit reclassification."""

    previous_folder: TriageFolder | None
    previous_confidence: float | None
    new_folder: TriageFolder
    new_confidence: float
    reasoning: str


class ClassificationService:
    """Records orchestrator verdicts and runs batch classification.

    Attributes:
        _store: Database store for classification state and feedback
        _orchestrator: Per-email triage pipeline
        _budget: Daily classification budget
        _config: Application configuration (thresholds, cooldown)
    """

    def __init__(
        self,
        store: DatabaseStore,
        orchestrator: TriageOrchestrator,
        budget: BudgetSource,
        config: AppConfig,
    ):
        self._store = store
        self._orchestrator = orchestrator
        self._budget = budget
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        """Apply a hot-reloaded configuration."""
        self._config = config

    @property
    def confidence_threshold(self) -> float:
        return self._config.llm.confidence_threshold

    # -------------------------------------------------------------------------
    # Single email
    # -------------------------------------------------------------------------

    async def classify_email(
        self, email_id: int, threshold: float | None = None
    ) -> ClassificationState:
        """Run the pipeline for one email and record the verdict.

        The orchestrator moves the email at the lower of ``threshold`` and the
        configured move threshold; the recorded status uses ``threshold``.

        Raises:
            Whatever the orchestrator raises; nothing is recorded in that case.
        """
        threshold = self.confidence_threshold if threshold is None else threshold
        move_threshold = min(threshold, self._config.triage.move_threshold)

        result = await self._orchestrator.triage_and_move(email_id, move_threshold)
        state = self._verdict_state(email_id, result.folder, result.confidence, result.reasoning, threshold)
        await self._store.save_classification_state(state)
        return state

    async def record_failure(self, email_id: int, error: BaseException) -> None:
        """Record an ``error`` state with the exception text and no verdict."""
        state = ClassificationState(
            email_id=email_id,
            status=ClassificationStatus.ERROR,
            classified_at=datetime.now(UTC),
            error_message=str(error) or type(error).__name__,
        )
        try:
            await self._store.save_classification_state(state)
        except DatabaseError as e:
            logger.error(
                "record_failure_failed",
                email_id=email_id,
                original_error=str(error),
                error=str(e),
            )

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    async def classify_new_emails(
        self, email_ids: list[int], threshold: float | None = None
    ) -> BatchResult:
        """Classify a batch within the daily budget, most recent first.

        Never raises for a single email: failures become ``error`` states.
        """
        threshold = self.confidence_threshold if threshold is None else threshold

        with batch_context():
            budget = await self._budget.get_email_budget()
            emails = {} if budget.exhausted else await self._store.get_emails_batch(email_ids)
            selection = select_within_budget(email_ids, budget, emails)

            logger.info(
                "classification_batch_start",
                candidates=len(email_ids),
                selected=len(selection.to_classify),
                skipped=selection.skipped,
            )

            classified = 0
            failed = 0
            for email in selection.to_classify:
                with bound_contextvars(email_id=email.id):
                    try:
                        await self.classify_email(email.id, threshold)
                        classified += 1
                    except Exception as e:
                        failed += 1
                        logger.error(
                            "email_classification_failed",
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                        await self.record_failure(email.id, e)

            result = BatchResult(
                classified=classified,
                skipped=selection.skipped,
                triaged=classified,
                failed=failed,
            )
            logger.info(
                "classification_batch_complete",
                classified=result.classified,
                skipped=result.skipped,
                failed=result.failed,
            )
            return result

    async def classify_unprocessed(self) -> BatchResult:
        """Classify emails without a verdict plus dismissed ones past the cooldown.

        ``llm.reclassify_cooldown_days == -1`` never revisits dismissed emails.
        """
        email_ids = await self._store.list_unclassified_email_ids()

        cooldown_days = self._config.llm.reclassify_cooldown_days
        if cooldown_days >= 0:
            cutoff = datetime.now(UTC) - timedelta(days=cooldown_days)
            email_ids += await self._store.list_reclassifiable(cutoff)

        email_ids = list(dict.fromkeys(email_ids))
        if not email_ids:
            return BatchResult()
        return await self.classify_new_emails(email_ids)

    # -------------------------------------------------------------------------
    # Explicit user actions
    # -------------------------------------------------------------------------

    async def retry_classification(self, email_id: int) -> ClassificationState:
        """Re-run the pipeline for an email in the ``error`` state.

        Raises:
            InvalidStateError: The email is not in the error state
        """
        state = await self._store.get_classification_state(email_id)
        if state is None or state.status != ClassificationStatus.ERROR:
            raise InvalidStateError(
                f"Email {email_id} is not in the error state "
                f"(current: {state.status if state else 'none'}); only failed "
                "classifications can be retried"
            )

        try:
            return await self.classify_email(email_id)
        except Exception as e:
            await self.record_failure(email_id, e)
            raise

    async def reclassify_email(self, email_id: int) -> ReclassifyResult:
        """Discard the current verdict and classify the email again.

        Raises:
            NotFoundError: The email does not exist
            BudgetExhaustedError: No classifications left today
        """
        email = await self._store.get_email(email_id)
        if email is None:
            raise NotFoundError("email", email_id)

        budget = await self._budget.get_email_budget()
        if budget.exhausted:
            raise BudgetExhaustedError(
                f"Daily classification budget exhausted ({budget.used}/{budget.limit}). "
                "Try again tomorrow or raise llm.daily_email_limit."
            )

        previous = await self._store.get_classification_state(email_id)
        previous_folder = previous.suggested_folder if previous else None
        previous_confidence = previous.confidence if previous else None

        if previous is not None:
            await self._store.save_classification_state(
                ClassificationState(email_id=email_id, status=ClassificationStatus.UNPROCESSED)
            )

        threshold = self.confidence_threshold
        try:
            result = await self._orchestrator.triage_and_move(email_id, threshold)
        except Exception as e:
            await self.record_failure(email_id, e)
            raise

        await self._store.save_classification_state(
            self._verdict_state(email_id, result.folder, result.confidence, result.reasoning, threshold)
        )

        if previous_folder is not None and previous_folder != result.folder:
            await self._store.log_feedback(
                ClassificationFeedback(
                    email_id=email_id,
                    action="reclassify",
                    original_folder=previous_folder,
                    final_folder=result.folder,
                    accuracy_score=ACCURACY_RECLASSIFY,
                )
            )

        logger.info(
            "email_reclassified",
            email_id=email_id,
            previous_folder=str(previous_folder) if previous_folder else None,
            new_folder=str(result.folder),
            confidence=result.confidence,
        )
        return ReclassifyResult(
            previous_folder=previous_folder,
            previous_confidence=previous_confidence,
            new_folder=result.folder,
            new_confidence=result.confidence,
            reasoning=result.reasoning,
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_state(self, email_id: int) -> ClassificationState | None:
        return await self._store.get_classification_state(email_id)

    async def pending_review_queue(
        self,
        limit: int = 100,
        offset: int = 0,
        sort_by: ReviewSort = "confidence",
        account_id: int | None = None,
    ) -> list[ClassificationState]:
        return await self._store.list_pending_review(limit, offset, sort_by, account_id)

    async def emails_by_priority(
        self,
        priority: Priority,
        limit: int = 100,
        offset: int = 0,
        account_id: int | None = None,
    ) -> list[ClassificationState]:
        return await self._store.list_by_priority(priority, limit, offset, account_id)

    async def failed_classifications(
        self, limit: int = 100, offset: int = 0, account_id: int | None = None
    ) -> list[ClassificationState]:
        return await self._store.list_failed(limit, offset, account_id)

    async def pending_review_count(self) -> int:
        return await self._store.count_pending_review()

    async def stats(self, account_id: int | None = None) -> ClassificationStats:
        """Dashboard counters: per-status counts, today's volume, 30-day accuracy."""
        now = datetime.now(UTC)
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        budget = await self._budget.get_email_budget()

        return ClassificationStats(
            counts=await self._store.count_by_status(account_id),
            classified_today=await self._store.count_classified_since(midnight),
            pending_review=await self._store.count_pending_review(),
            accuracy_30_day=await self._store.get_accuracy_since(now - timedelta(days=30)),
            priority_breakdown=await self._store.get_priority_breakdown(),
            budget_used=budget.used,
            budget_limit=budget.limit,
        )

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _verdict_state(
        email_id: int,
        folder: TriageFolder,
        confidence: float,
        reasoning: str,
        threshold: float,
    ) -> ClassificationState:
        status = (
            ClassificationStatus.CLASSIFIED
            if confidence >= threshold
            else ClassificationStatus.PENDING_REVIEW
        )
        return ClassificationState(
            email_id=email_id,
            status=status,
            confidence=confidence,
            priority=priority_for_confidence(confidence),
            suggested_folder=folder,
            reasoning=reasoning,
            classified_at=datetime.now(UTC),
        )
