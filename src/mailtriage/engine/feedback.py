"""Learning feedback loop.

Converts user review actions into learning signals:
- Accept / accept-with-edit / dismiss feedback with an accuracy score
- Confused patterns (sender domains and subject templates that keep
  getting dismissed), weighted by the dismissed verdict's confidence
- Training examples and sender rules from explicit corrections

Sender rule promotion for a domain corrected to the same folder:

    1st correction  -> confidence 0.80, count 1
    2nd correction  -> confidence 0.85, count 2
    3rd correction  -> confidence 0.90, count 3, auto_apply
    ...             -> +0.05 per correction, capped at 0.95

A correction to a different folder restarts the rule at 0.80 / 1.

Usage:
    from mailtriage.engine.feedback import FeedbackLoop

    loop = FeedbackLoop(store, orchestrator)
    await loop.accept(email_id, TriageFolder.INVOICES)
    result = await loop.bulk_dismiss([1, 2, 3])
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from mailtriage.core.domain import (
    ACCURACY_ACCEPT,
    ACCURACY_ACCEPT_EDIT,
    ACCURACY_DISMISS,
    ClassificationFeedback,
    ClassificationState,
    ClassificationStatus,
    SenderRule,
    TrainingExample,
    extract_domain,
    extract_subject_pattern,
)
from mailtriage.core.errors import InvalidStateError, NotFoundError
from mailtriage.core.logging import get_logger

if TYPE_CHECKING:
    from mailtriage.core.domain import (
        ConfusedPattern,
        Email,
        FeedbackAction,
        TrainingSource,
        TriageFolder,
    )
    from mailtriage.db.store import DatabaseStore
    from mailtriage.engine.triage import TriageOrchestrator

logger = get_logger(__name__)

# Sender rule promotion
SENDER_RULE_INITIAL_CONFIDENCE = 0.8
SENDER_RULE_CONFIDENCE_STEP = 0.05
SENDER_RULE_MAX_CONFIDENCE = 0.95
SENDER_RULE_AUTO_APPLY_COUNT = 3


@dataclass(frozen=True, slots=True)
class BulkResult:
    """Outcome of a bulk review action.

    Attributes:
        succeeded: Items the action was applied to
        failed: Items not in pending_review, missing, or raising
    """

    succeeded: int = 0
    failed: int = 0


class FeedbackLoop:
    """Records review actions and learns from corrections.

    Attributes:
        _store: Database store for state, feedback, patterns and rules
        _orchestrator: Used to move emails when the applied folder differs
    """

    def __init__(self, store: DatabaseStore, orchestrator: TriageOrchestrator):
        self._store = store
        self._orchestrator = orchestrator

    # -------------------------------------------------------------------------
    # Single-item review
    # -------------------------------------------------------------------------

    async def accept(
        self, email_id: int, applied_folder: TriageFolder | None = None
    ) -> ClassificationState:
        """Accept a verdict, optionally filing the email somewhere else.

        The email is moved first; feedback and state are only recorded once
        the move succeeded.

        Args:
            email_id: Email under review
            applied_folder: Folder the user chose (defaults to the suggestion)

        Raises:
            NotFoundError: No email or no classification state
            InvalidStateError: The state carries no suggestion and none was applied
            MoveError: The remote move failed
        """
        email, state = await self._load(email_id)
        folder = applied_folder or state.suggested_folder
        if folder is None:
            raise InvalidStateError(
                f"Email {email_id} has no suggested folder to accept "
                f"(status: {state.status}); pass a folder explicitly"
            )

        is_edit = state.suggested_folder is not None and folder != state.suggested_folder
        return await self._apply_accept(
            email,
            state,
            folder,
            action="accept_edit" if is_edit else "accept",
            accuracy=ACCURACY_ACCEPT_EDIT if is_edit else ACCURACY_ACCEPT,
        )

    async def dismiss(self, email_id: int) -> ClassificationState:
        """Dismiss a verdict and count it against the sender and subject template.

        Raises:
            NotFoundError: No email or no classification state
        """
        email, state = await self._load(email_id)
        now = datetime.now(UTC)

        await self._store.log_feedback(
            ClassificationFeedback(
                email_id=email_id,
                action="dismiss",
                original_folder=state.suggested_folder,
                final_folder=None,
                accuracy_score=ACCURACY_DISMISS,
            )
        )

        dismissed = replace(
            state,
            status=ClassificationStatus.DISMISSED,
            dismissed_at=now,
            reviewed_at=now,
        )
        await self._store.save_classification_state(dismissed)

        confidence = state.confidence if state.confidence is not None else 0.0
        domain = extract_domain(email.from_address)
        await self._store.update_confused_pattern("sender_domain", domain, confidence)

        subject_pattern = extract_subject_pattern(email.subject)
        if subject_pattern:
            await self._store.update_confused_pattern("subject_pattern", subject_pattern, confidence)

        logger.info(
            "classification_dismissed",
            email_id=email_id,
            suggested_folder=str(state.suggested_folder) if state.suggested_folder else None,
            sender_domain=domain,
            subject_pattern=subject_pattern,
        )
        return dismissed

    # -------------------------------------------------------------------------
    # Bulk review (pending_review items only)
    # -------------------------------------------------------------------------

    async def bulk_accept(self, email_ids: list[int]) -> BulkResult:
        """Accept each pending suggestion as-is."""
        succeeded = 0
        failed = 0
        for email_id in email_ids:
            try:
                email, state = await self._load_pending(email_id)
                if email is None or state.suggested_folder is None:
                    failed += 1
                    continue
                await self._apply_accept(
                    email,
                    state,
                    state.suggested_folder,
                    action="accept",
                    accuracy=ACCURACY_ACCEPT,
                )
                succeeded += 1
            except Exception as e:
                failed += 1
                logger.warning("bulk_accept_item_failed", email_id=email_id, error=str(e))

        logger.info("bulk_accept_complete", accepted=succeeded, failed=failed)
        return BulkResult(succeeded=succeeded, failed=failed)

    async def bulk_dismiss(self, email_ids: list[int]) -> BulkResult:
        """Dismiss each pending suggestion."""
        succeeded = 0
        failed = 0
        for email_id in email_ids:
            try:
                email, _ = await self._load_pending(email_id)
                if email is None:
                    failed += 1
                    continue
                await self.dismiss(email_id)
                succeeded += 1
            except Exception as e:
                failed += 1
                logger.warning("bulk_dismiss_item_failed", email_id=email_id, error=str(e))

        logger.info("bulk_dismiss_complete", dismissed=succeeded, failed=failed)
        return BulkResult(succeeded=succeeded, failed=failed)

    async def bulk_move_to_folder(self, email_ids: list[int], folder: TriageFolder) -> BulkResult:
        """File each pending email into ``folder``, recorded as an accept with edit."""
        succeeded = 0
        failed = 0
        for email_id in email_ids:
            try:
                email, state = await self._load_pending(email_id)
                if email is None:
                    failed += 1
                    continue
                await self._apply_accept(
                    email,
                    state,
                    folder,
                    action="accept_edit",
                    accuracy=ACCURACY_ACCEPT_EDIT,
                )
                succeeded += 1
            except Exception as e:
                failed += 1
                logger.warning(
                    "bulk_move_item_failed",
                    email_id=email_id,
                    folder=str(folder),
                    error=str(e),
                )

        logger.info("bulk_move_complete", folder=str(folder), applied=succeeded, failed=failed)
        return BulkResult(succeeded=succeeded, failed=failed)

    # -------------------------------------------------------------------------
    # Corrections
    # -------------------------------------------------------------------------

    async def learn_from_correction(
        self,
        email_id: int,
        ai_suggestion: str | None,
        user_choice: TriageFolder,
        source: TrainingSource = "review_folder",
    ) -> TrainingExample:
        """Store a training example and, for corrections, promote the sender rule.

        Raises:
            NotFoundError: The email does not exist
        """
        email = await self._store.get_email(email_id)
        if email is None:
            raise NotFoundError("email", email_id)

        domain = extract_domain(email.from_address)
        was_correction = ai_suggestion is not None and ai_suggestion != str(user_choice)

        example = await self._store.save_training_example(
            TrainingExample(
                account_id=email.account_id,
                email_id=email.id,
                from_address=email.from_address,
                from_domain=domain,
                subject=email.subject,
                ai_suggestion=ai_suggestion,
                user_choice=user_choice,
                was_correction=was_correction,
                source=source,
            )
        )

        if was_correction and domain != "unknown":
            await self._promote_sender_rule(email, domain, user_choice)

        logger.info(
            "correction_learned",
            email_id=email_id,
            ai_suggestion=ai_suggestion,
            user_choice=str(user_choice),
            was_correction=was_correction,
        )
        return example

    async def _promote_sender_rule(self, email: Email, domain: str, folder: TriageFolder) -> SenderRule:
        existing = await self._store.get_sender_rule(email.account_id, domain)

        if existing is None or existing.target_folder != folder:
            rule = SenderRule(
                account_id=email.account_id,
                pattern=domain,
                target_folder=folder,
                confidence=SENDER_RULE_INITIAL_CONFIDENCE,
                correction_count=1,
                auto_apply=False,
            )
        else:
            count = existing.correction_count + 1
            rule = replace(
                existing,
                confidence=round(
                    min(
                        SENDER_RULE_MAX_CONFIDENCE,
                        existing.confidence + SENDER_RULE_CONFIDENCE_STEP,
                    ),
                    2,
                ),
                correction_count=count,
                auto_apply=count >= SENDER_RULE_AUTO_APPLY_COUNT,
            )

        saved = await self._store.upsert_sender_rule(rule)
        if saved.auto_apply and not (existing and existing.auto_apply):
            logger.info(
                "sender_rule_promoted",
                domain=domain,
                folder=str(folder),
                confidence=saved.confidence,
                correction_count=saved.correction_count,
            )
        return saved

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def confused_patterns(self, limit: int = 5) -> list[ConfusedPattern]:
        return await self._store.list_confused_patterns(limit)

    async def clear_confused_patterns(self) -> int:
        cleared = await self._store.clear_confused_patterns()
        logger.info("confused_patterns_cleared", count=cleared)
        return cleared

    async def recent_activity(self, limit: int = 10) -> list[ClassificationFeedback]:
        return await self._store.list_recent_feedback(limit)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _load(self, email_id: int) -> tuple[Email, ClassificationState]:
        email = await self._store.get_email(email_id)
        if email is None:
            raise NotFoundError("email", email_id)
        state = await self._store.get_classification_state(email_id)
        if state is None:
            raise NotFoundError("classification state", email_id)
        return email, state

    async def _load_pending(
        self, email_id: int
    ) -> tuple[Email | None, ClassificationState | None]:
        """Email and state for a bulk item, or (None, None) unless pending_review."""
        state = await self._store.get_classification_state(email_id)
        if state is None or state.status != ClassificationStatus.PENDING_REVIEW:
            return None, None
        email = await self._store.get_email(email_id)
        if email is None:
            return None, None
        return email, state

    async def _apply_accept(
        self,
        email: Email,
        state: ClassificationState,
        folder: TriageFolder,
        action: FeedbackAction,
        accuracy: float,
    ) -> ClassificationState:
        moved = await self._orchestrator.move_to_path(email, str(folder))

        await self._store.log_feedback(
            ClassificationFeedback(
                email_id=email.id,
                action=action,
                original_folder=state.suggested_folder,
                final_folder=folder,
                accuracy_score=accuracy,
            )
        )

        accepted = replace(
            state,
            status=ClassificationStatus.ACCEPTED,
            reviewed_at=datetime.now(UTC),
        )
        await self._store.save_classification_state(accepted)

        logger.info(
            "classification_accepted",
            email_id=email.id,
            action=action,
            folder=str(folder),
            moved=moved,
        )
        return accepted
