"""Snooze scheduler.

Snoozing records where an email lives now; ``process_snoozed_emails`` moves
every due email back there. Run it periodically (``serve`` schedules it
every ``triage.snooze_check_minutes``).

Usage:
    from mailtriage.engine.snooze import SnoozeScheduler

    scheduler = SnoozeScheduler(store, mover)
    await scheduler.snooze(email_id, until=tomorrow, reason="manual")
    returned = await scheduler.process_snoozed_emails()
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from mailtriage.core.domain import EmailSnooze, TriageFolder
from mailtriage.core.errors import NotFoundError
from mailtriage.core.logging import get_logger

if TYPE_CHECKING:
    from mailtriage.core.domain import SnoozeReason
    from mailtriage.core.ports import FolderMover
    from mailtriage.db.store import DatabaseStore

logger = get_logger(__name__)


class SnoozeScheduler:
    """Defers emails and returns them to their original folder when due.

    Attributes:
        _store: Database store for snoozes and the mailbox index
        _mover: Remote folder mover
    """

    def __init__(self, store: DatabaseStore, mover: FolderMover):
        self._store = store
        self._mover = mover

    async def snooze(
        self, email_id: int, until: datetime, reason: SnoozeReason = "manual"
    ) -> EmailSnooze:
        """Snooze an email until ``until``; an existing snooze is replaced.

        Raises:
            NotFoundError: The email does not exist
        """
        email = await self._store.get_email(email_id)
        if email is None:
            raise NotFoundError("email", email_id)

        folder = await self._store.get_folder(email.folder_id)
        original_folder = folder.path if folder else str(TriageFolder.INBOX)

        if until.tzinfo is None:
            until = until.replace(tzinfo=UTC)

        snooze = await self._store.save_snooze(
            EmailSnooze(
                email_id=email_id,
                snooze_until=until,
                original_folder=original_folder,
                reason=reason,
            )
        )
        logger.info(
            "email_snoozed",
            email_id=email_id,
            until=until.isoformat(),
            original_folder=original_folder,
            reason=reason,
        )
        return snooze

    async def unsnooze(self, email_id: int) -> bool:
        """Cancel a snooze without moving the email. Returns False if none existed."""
        removed = await self._store.delete_snooze(email_id)
        if removed:
            logger.info("email_unsnoozed", email_id=email_id)
        return removed

    async def process_snoozed_emails(self, now: datetime | None = None) -> int:
        """Return due emails to their original folders.

        A snooze whose email is gone is dropped. One whose account or current
        folder no longer resolves is kept for a later run. Per-item failures
        are logged and skipped.

        Returns:
            Number of emails moved back
        """
        due = await self._store.list_due_snoozes(now or datetime.now(UTC))
        processed = 0

        for snooze in due:
            try:
                if await self._return_email(snooze):
                    processed += 1
            except Exception as e:
                logger.error(
                    "snooze_return_failed",
                    email_id=snooze.email_id,
                    original_folder=snooze.original_folder,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        if due:
            logger.info("snoozes_processed", due=len(due), returned=processed)
        return processed

    async def _return_email(self, snooze: EmailSnooze) -> bool:
        email = await self._store.get_email(snooze.email_id)
        if email is None:
            await self._store.delete_snooze(snooze.email_id)
            logger.info("snooze_dropped_missing_email", email_id=snooze.email_id)
            return False

        account = await self._store.get_account(email.account_id)
        current = await self._store.get_folder(email.folder_id)
        if account is None or current is None:
            logger.warning(
                "snooze_skipped_unresolved",
                email_id=email.id,
                account_found=account is not None,
                folder_found=current is not None,
            )
            return False

        await self._mover.move_message(account, email.uid, current.path, snooze.original_folder)
        folder = await self._store.get_or_create_folder(account.id, snooze.original_folder)
        await self._store.set_email_folder(email.id, folder.id)
        await self._store.delete_snooze(email.id)

        logger.info(
            "email_unsnoozed_returned",
            email_id=email.id,
            from_folder=current.path,
            to_folder=snooze.original_folder,
        )
        return True
