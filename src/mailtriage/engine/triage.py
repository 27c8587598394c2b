"""Per-email triage pipeline.

Pipeline per email:
1. Load the email from the local index
2. Pattern hint (configured rules + heuristics); a promoted sender rule
   replaces the hint when it is more confident
3. Most relevant training examples for this sender
4. LLM classification with the hint and examples
5. Append a triage log entry (source 'llm')
6. If the verdict is confident enough and differs from the current folder,
   move the message remotely, then update the local index

The remote move always happens before the local index update, so a failed
move leaves the index pointing at the email's real location.

Usage:
    from mailtriage.engine.triage import TriageOrchestrator

    orchestrator = TriageOrchestrator(
        store=db_store,
        pattern_matcher=matcher,
        classifier=classifier,
        mover=imap_mover,
        budget=daily_budget,
    )
    result = await orchestrator.triage_and_move(email_id, confidence_threshold=0.7)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from mailtriage.core.domain import (
    PatternMatchResult,
    TriageFolder,
    TriageLogEntry,
    extract_domain,
)
from mailtriage.core.errors import DatabaseError, MoveError, NotFoundError
from mailtriage.core.logging import get_logger

if TYPE_CHECKING:
    from mailtriage.core.domain import Email, TriageResult
    from mailtriage.core.ports import BudgetSource, FolderMover, PatternMatcher, TriageClassifier
    from mailtriage.db.store import DatabaseStore

logger = get_logger(__name__)

# Default confidence at or above which the orchestrator moves an email
DEFAULT_MOVE_THRESHOLD = 0.7

MANUAL_MOVE_REASONING = "Manual move by user"

# Hint used when the pattern matcher itself fails
_FALLBACK_HINT = PatternMatchResult(folder=TriageFolder.INBOX, confidence=0.0)


class TriageOrchestrator:
    """Runs the decision pipeline for one email and files it.

    Attributes:
        _store: Mailbox index, triage log, training examples, sender rules
        _pattern_matcher: Zero-cost hint producer
        _classifier: LLM classifier
        _mover: Remote folder mover
        _budget: Optional budget source; usage is recorded per successful call
        _examples_limit: Training examples passed to the classifier
    """

    def __init__(
        self,
        store: DatabaseStore,
        pattern_matcher: PatternMatcher,
        classifier: TriageClassifier,
        mover: FolderMover,
        budget: BudgetSource | None = None,
        training_examples_limit: int = 10,
    ):
        self._store = store
        self._pattern_matcher = pattern_matcher
        self._classifier = classifier
        self._mover = mover
        self._budget = budget
        self._examples_limit = training_examples_limit

    def update_examples_limit(self, limit: int) -> None:
        """Apply a hot-reloaded training example limit."""
        self._examples_limit = limit

    async def triage_and_move(
        self,
        email_id: int,
        confidence_threshold: float = DEFAULT_MOVE_THRESHOLD,
    ) -> TriageResult:
        """Classify one email and move it if the verdict is confident enough.

        Args:
            email_id: Email to triage
            confidence_threshold: Minimum confidence required to move

        Returns:
            The classifier verdict

        Raises:
            NotFoundError: Email, its folder or its account no longer exists
            ClassificationError: The classifier could not produce a verdict
            MoveError: The remote move failed (local index left untouched)
        """
        email = await self._store.get_email(email_id)
        if email is None:
            raise NotFoundError("email", email_id)

        hint = await self._build_hint(email)
        examples = await self._store.get_relevant_examples(
            email.account_id, email, self._examples_limit
        )

        result = await self._classifier.classify(email, hint, examples)
        await self._record_usage(email.id)

        await self._store.log_triage(
            TriageLogEntry(
                email_id=email.id,
                account_id=email.account_id,
                pattern_hint=hint.folder,
                llm_folder=result.folder,
                llm_confidence=result.confidence,
                pattern_agreed=result.pattern_agreed,
                final_folder=result.folder,
                source="llm",
                reasoning=result.reasoning,
            )
        )

        moved = False
        if result.confidence >= confidence_threshold:
            moved = await self._move(email, result.folder)

        logger.info(
            "email_triaged",
            email_id=email.id,
            folder=str(result.folder),
            confidence=result.confidence,
            pattern_hint=str(hint.folder),
            pattern_agreed=result.pattern_agreed,
            moved=moved,
        )
        return result

    async def move_to_folder(self, email_id: int, folder: TriageFolder) -> None:
        """Manually file an email, recording a user-override log entry.

        Manual moves do not create training examples.

        Raises:
            NotFoundError: Email, its folder or its account no longer exists
            MoveError: The remote move failed
        """
        email = await self._store.get_email(email_id)
        if email is None:
            raise NotFoundError("email", email_id)

        await self._move(email, folder)

        await self._store.log_triage(
            TriageLogEntry(
                email_id=email.id,
                account_id=email.account_id,
                final_folder=folder,
                source="user-override",
                reasoning=MANUAL_MOVE_REASONING,
            )
        )
        logger.info("email_moved_manually", email_id=email.id, folder=str(folder))

    async def move_to_path(self, email: Email, target_path: str) -> bool:
        """Move an email to an arbitrary folder path (remote first, then index).

        Returns:
            True if a move happened, False if the email was already there
        """
        current = await self._store.get_folder(email.folder_id)
        if current is None:
            raise NotFoundError("folder", email.folder_id)
        if current.path == target_path:
            return False

        account = await self._store.get_account(email.account_id)
        if account is None:
            raise NotFoundError("account", email.account_id)

        try:
            await self._mover.move_message(account, email.uid, current.path, target_path)
        except Exception as e:
            logger.error(
                "email_move_failed",
                email_id=email.id,
                from_folder=current.path,
                to_folder=target_path,
                error=str(e),
            )
            raise MoveError(
                f"Failed to move email {email.id} from '{current.path}' to '{target_path}': {e}",
                email_id=email.id,
                target_folder=target_path,
            ) from e

        folder = await self._store.get_or_create_folder(account.id, target_path)
        await self._store.set_email_folder(email.id, folder.id)
        return True

    async def _move(self, email: Email, folder: TriageFolder) -> bool:
        return await self.move_to_path(email, str(folder))

    async def _build_hint(self, email: Email) -> PatternMatchResult:
        try:
            hint = self._pattern_matcher.match(email)
        except Exception as e:
            logger.warning(
                "pattern_match_failed",
                email_id=email.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            hint = _FALLBACK_HINT

        domain = extract_domain(email.from_address)
        rule = await self._store.find_auto_apply_rule(email.account_id, domain)
        if rule is not None and rule.confidence > hint.confidence:
            logger.debug(
                "sender_rule_applied",
                email_id=email.id,
                domain=domain,
                folder=str(rule.target_folder),
            )
            return PatternMatchResult(
                folder=rule.target_folder,
                confidence=rule.confidence,
                tags=(*hint.tags, "sender-rule"),
                snooze_until=hint.snooze_until,
                auto_delete_after=hint.auto_delete_after,
            )
        return hint

    async def _record_usage(self, email_id: int) -> None:
        if self._budget is None:
            return
        try:
            await self._budget.record_usage(email_id)
        except DatabaseError as e:
            # The verdict stands even if usage tracking fails
            logger.warning("budget_usage_record_failed", email_id=email_id, error=str(e))
