"""Database store for the mail triage engine.

This module provides the DatabaseStore class that encapsulates every read and
write the engine performs: the local mailbox index, classification state,
review feedback, learning records, snoozes and budget usage. It uses aiosqlite
for async access and maps rows onto the dataclasses in ``mailtriage.core.domain``.

Usage:
    from mailtriage.db.store import DatabaseStore

    store = DatabaseStore("data/mailtriage.db")
    await store.initialize()

    state = await store.get_classification_state(42)
    await store.save_classification_state(state)
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

import aiosqlite

from mailtriage.core.domain import (
    Account,
    ClassificationFeedback,
    ClassificationState,
    ClassificationStatus,
    ConfusedPattern,
    ConfusedPatternType,
    Email,
    EmailSnooze,
    Folder,
    Priority,
    SenderRule,
    TrainingExample,
    TriageFolder,
    TriageLogEntry,
    extract_domain,
)
from mailtriage.core.errors import DatabaseError
from mailtriage.core.logging import get_logger
from mailtriage.db.models import init_database

logger = get_logger(__name__)

# Maximum snippet length (security limit to prevent full email body storage)
MAX_SNIPPET_LENGTH = 1000

ReviewSort = Literal["confidence", "date", "sender"]

_REVIEW_ORDER: dict[str, str] = {
    "confidence": "cs.confidence ASC, e.date DESC, e.from_address ASC, e.id ASC",
    "date": "e.date DESC, cs.confidence ASC, e.from_address ASC, e.id ASC",
    "sender": "e.from_address ASC, e.date DESC, cs.confidence ASC, e.id ASC",
}


def _now() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    """Serialize a datetime as UTC ISO-8601 so string comparison orders correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _folder_or_none(value: str | None) -> TriageFolder | None:
    return TriageFolder(value) if value else None


class DatabaseStore:
    """Async store for all mail triage data.

    Every method opens its own connection; callers never hold one across an
    await on external I/O.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables if needed. Must be called before any other operation."""
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets the PRAGMAs for reliability and performance:
        - busy_timeout: 10s to handle the scheduler and API writing concurrently
        - foreign_keys: ON to enforce referential integrity
        - synchronous: NORMAL (safe with WAL, faster writes)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    async def checkpoint_wal(self) -> None:
        """Run a TRUNCATE WAL checkpoint. Safe to call after every batch."""
        try:
            async with self._db() as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            logger.debug("wal_checkpoint_complete")
        except aiosqlite.Error as e:
            logger.warning("wal_checkpoint_failed", error=str(e))

    # =========================================================================
    # Mailbox Index (accounts, folders, emails)
    # =========================================================================

    async def add_account(
        self,
        email: str,
        imap_host: str | None = None,
        imap_port: int = 993,
        username: str | None = None,
    ) -> Account:
        """Register a mail account, returning the existing row if already known."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO accounts (email, imap_host, imap_port, username)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(email) DO UPDATE SET
                        imap_host = excluded.imap_host,
                        imap_port = excluded.imap_port,
                        username = excluded.username
                    """,
                    (email, imap_host, imap_port, username),
                )
                await db.commit()
                cursor = await db.execute("SELECT * FROM accounts WHERE email = ?", (email,))
                return self._row_to_account(await cursor.fetchone())

        except aiosqlite.Error as e:
            logger.error("add_account_failed", error=str(e))
            raise DatabaseError(f"Failed to add account: {e}") from e

    async def get_account(self, account_id: int) -> Account | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM accounts WHERE id = ?", (account_id,))
                row = await cursor.fetchone()
                return self._row_to_account(row) if row else None

        except aiosqlite.Error as e:
            logger.error("get_account_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to get account {account_id}: {e}") from e

    async def get_folder(self, folder_id: int) -> Folder | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM folders WHERE id = ?", (folder_id,))
                row = await cursor.fetchone()
                return self._row_to_folder(row) if row else None

        except aiosqlite.Error as e:
            logger.error("get_folder_failed", folder_id=folder_id, error=str(e))
            raise DatabaseError(f"Failed to get folder {folder_id}: {e}") from e

    async def get_or_create_folder(self, account_id: int, path: str) -> Folder:
        """Return the folder for (account, path), creating it if missing.

        Args:
            account_id: Owning account
            path: Full folder path (e.g., 'Paper-Trail/Invoices')

        Returns:
            The existing or newly created Folder
        """
        name = path.rsplit("/", 1)[-1]
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO folders (account_id, path, name) VALUES (?, ?, ?)
                    ON CONFLICT(account_id, path) DO NOTHING
                    """,
                    (account_id, path, name),
                )
                await db.commit()
                cursor = await db.execute(
                    "SELECT * FROM folders WHERE account_id = ? AND path = ?",
                    (account_id, path),
                )
                return self._row_to_folder(await cursor.fetchone())

        except aiosqlite.Error as e:
            logger.error("get_or_create_folder_failed", account_id=account_id, path=path, error=str(e))
            raise DatabaseError(f"Failed to get or create folder {path}: {e}") from e

    async def add_email(
        self,
        *,
        account_id: int,
        folder_id: int,
        uid: int,
        subject: str = "",
        from_address: str = "",
        from_name: str | None = None,
        date: datetime | None = None,
        message_id: str | None = None,
        snippet: str | None = None,
    ) -> Email:
        """Insert an email into the local index (the sync layer's write path).

        Returns:
            The stored Email with its assigned id
        """
        if snippet and len(snippet) > MAX_SNIPPET_LENGTH:
            logger.warning("snippet_truncated", uid=uid, original_length=len(snippet))
            snippet = snippet[:MAX_SNIPPET_LENGTH]

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO emails (
                        account_id, folder_id, uid, message_id, subject,
                        from_address, from_name, date, snippet
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        account_id,
                        folder_id,
                        uid,
                        message_id,
                        subject,
                        from_address,
                        from_name,
                        _iso(date),
                        snippet,
                    ),
                )
                await db.commit()
                email_id = cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("add_email_failed", uid=uid, error=str(e))
            raise DatabaseError(f"Failed to add email uid={uid}: {e}") from e

        return Email(
            id=email_id,
            account_id=account_id,
            folder_id=folder_id,
            uid=uid,
            subject=subject,
            from_address=from_address,
            from_name=from_name,
            date=_parse_dt(_iso(date)),
            message_id=message_id,
            snippet=snippet,
        )

    async def get_email(self, email_id: int) -> Email | None:
        """Get an email by ID.

        Returns:
            Email dataclass or None if not found
        """
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM emails WHERE id = ?", (email_id,))
                row = await cursor.fetchone()
                return self._row_to_email(row) if row else None

        except aiosqlite.Error as e:
            logger.error("get_email_failed", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to get email {email_id}: {e}") from e

    async def get_emails_batch(self, email_ids: list[int]) -> dict[int, Email]:
        """Get multiple emails in one query. Missing ids are absent from the result."""
        if not email_ids:
            return {}
        try:
            async with self._db() as db:
                placeholders = ",".join("?" * len(email_ids))
                cursor = await db.execute(
                    f"SELECT * FROM emails WHERE id IN ({placeholders})",
                    list(email_ids),
                )
                rows = await cursor.fetchall()
                return {row["id"]: self._row_to_email(row) for row in rows}

        except aiosqlite.Error as e:
            logger.error("get_emails_batch_failed", count=len(email_ids), error=str(e))
            raise DatabaseError(f"Failed to batch get emails: {e}") from e

    async def set_email_folder(self, email_id: int, folder_id: int) -> None:
        """Point an email at a different folder in the local index."""
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE emails SET folder_id = ? WHERE id = ?",
                    (folder_id, email_id),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("set_email_folder_failed", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to update folder for email {email_id}: {e}") from e

    async def list_unclassified_email_ids(self, account_id: int | None = None) -> list[int]:
        """Ids of emails with no classification state, or still marked unprocessed."""
        sql = """
            SELECT e.id FROM emails e
            LEFT JOIN classification_state cs ON cs.email_id = e.id
            WHERE (cs.email_id IS NULL OR cs.status = 'unprocessed')
        """
        params: list[object] = []
        if account_id is not None:
            sql += " AND e.account_id = ?"
            params.append(account_id)
        sql += " ORDER BY e.date DESC"

        try:
            async with self._db() as db:
                cursor = await db.execute(sql, params)
                return [row["id"] for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("list_unclassified_failed", error=str(e))
            raise DatabaseError(f"Failed to list unclassified emails: {e}") from e

    def _row_to_account(self, row: aiosqlite.Row) -> Account:
        return Account(
            id=row["id"],
            email=row["email"],
            imap_host=row["imap_host"],
            imap_port=row["imap_port"],
            username=row["username"],
        )

    def _row_to_folder(self, row: aiosqlite.Row) -> Folder:
        return Folder(
            id=row["id"],
            account_id=row["account_id"],
            path=row["path"],
            name=row["name"],
        )

    def _row_to_email(self, row: aiosqlite.Row) -> Email:
        return Email(
            id=row["id"],
            account_id=row["account_id"],
            folder_id=row["folder_id"],
            uid=row["uid"],
            subject=row["subject"] or "",
            from_address=row["from_address"] or "",
            from_name=row["from_name"],
            date=_parse_dt(row["date"]),
            message_id=row["message_id"],
            snippet=row["snippet"],
        )

    # =========================================================================
    # Classification State
    # =========================================================================

    async def get_classification_state(self, email_id: int) -> ClassificationState | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM classification_state WHERE email_id = ?", (email_id,)
                )
                row = await cursor.fetchone()
                return self._row_to_state(row) if row else None

        except aiosqlite.Error as e:
            logger.error("get_classification_state_failed", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to get classification state for {email_id}: {e}") from e

    async def save_classification_state(self, state: ClassificationState) -> None:
        """Replace the whole classification record for one email (last write wins).

        Raises:
            DatabaseError: If the operation fails
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO classification_state (
                        email_id, status, confidence, priority, suggested_folder,
                        reasoning, error_message, classified_at, reviewed_at, dismissed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(email_id) DO UPDATE SET
                        status = excluded.status,
                        confidence = excluded.confidence,
                        priority = excluded.priority,
                        suggested_folder = excluded.suggested_folder,
                        reasoning = excluded.reasoning,
                        error_message = excluded.error_message,
                        classified_at = excluded.classified_at,
                        reviewed_at = excluded.reviewed_at,
                        dismissed_at = excluded.dismissed_at
                    """,
                    (
                        state.email_id,
                        str(state.status),
                        state.confidence,
                        str(state.priority) if state.priority else None,
                        str(state.suggested_folder) if state.suggested_folder else None,
                        state.reasoning,
                        state.error_message,
                        _iso(state.classified_at),
                        _iso(state.reviewed_at),
                        _iso(state.dismissed_at),
                    ),
                )
                await db.commit()

                logger.debug(
                    "classification_state_saved",
                    email_id=state.email_id,
                    status=str(state.status),
                )

        except aiosqlite.Error as e:
            logger.error("save_classification_state_failed", email_id=state.email_id, error=str(e))
            raise DatabaseError(
                f"Failed to save classification state for {state.email_id}: {e}"
            ) from e

    async def list_pending_review(
        self,
        limit: int = 100,
        offset: int = 0,
        sort_by: ReviewSort = "confidence",
        account_id: int | None = None,
    ) -> list[ClassificationState]:
        """Review queue: low-confidence items plus auto-classified ones awaiting a look.

        Args:
            sort_by: 'confidence' (lowest first), 'date' (newest first) or 'sender'
        """
        order_by = _REVIEW_ORDER.get(sort_by, _REVIEW_ORDER["date"])
        sql = """
            SELECT cs.* FROM classification_state cs
            JOIN emails e ON cs.email_id = e.id
            WHERE cs.status IN ('pending_review', 'classified')
        """
        params: list[object] = []
        if account_id is not None:
            sql += " AND e.account_id = ?"
            params.append(account_id)
        sql += f" ORDER BY {order_by} LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        try:
            async with self._db() as db:
                cursor = await db.execute(sql, params)
                return [self._row_to_state(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("list_pending_review_failed", error=str(e))
            raise DatabaseError(f"Failed to list review queue: {e}") from e

    async def list_by_priority(
        self,
        priority: Priority,
        limit: int = 100,
        offset: int = 0,
        account_id: int | None = None,
    ) -> list[ClassificationState]:
        """Classified or accepted emails of one priority, newest first."""
        sql = """
            SELECT cs.* FROM classification_state cs
            JOIN emails e ON cs.email_id = e.id
            WHERE cs.priority = ? AND cs.status IN ('classified', 'accepted')
        """
        params: list[object] = [str(priority)]
        if account_id is not None:
            sql += " AND e.account_id = ?"
            params.append(account_id)
        sql += " ORDER BY e.date DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        try:
            async with self._db() as db:
                cursor = await db.execute(sql, params)
                return [self._row_to_state(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("list_by_priority_failed", priority=str(priority), error=str(e))
            raise DatabaseError(f"Failed to list emails by priority: {e}") from e

    async def list_failed(
        self,
        limit: int = 100,
        offset: int = 0,
        account_id: int | None = None,
    ) -> list[ClassificationState]:
        sql = """
            SELECT cs.* FROM classification_state cs
            JOIN emails e ON cs.email_id = e.id
            WHERE cs.status = 'error'
        """
        params: list[object] = []
        if account_id is not None:
            sql += " AND e.account_id = ?"
            params.append(account_id)
        sql += " ORDER BY cs.classified_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        try:
            async with self._db() as db:
                cursor = await db.execute(sql, params)
                return [self._row_to_state(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("list_failed_classifications_failed", error=str(e))
            raise DatabaseError(f"Failed to list failed classifications: {e}") from e

    async def count_by_status(self, account_id: int | None = None) -> dict[str, int]:
        """Count states per status; every status is present, zero-filled."""
        counts = {str(status): 0 for status in ClassificationStatus}
        sql = "SELECT cs.status, COUNT(*) AS count FROM classification_state cs"
        params: list[object] = []
        if account_id is not None:
            sql += " JOIN emails e ON cs.email_id = e.id WHERE e.account_id = ?"
            params.append(account_id)
        sql += " GROUP BY cs.status"

        try:
            async with self._db() as db:
                cursor = await db.execute(sql, params)
                for row in await cursor.fetchall():
                    counts[row["status"]] = row["count"]
                return counts

        except aiosqlite.Error as e:
            logger.error("count_by_status_failed", error=str(e))
            raise DatabaseError(f"Failed to count classification states: {e}") from e

    async def count_pending_review(self) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT COUNT(*) AS count FROM classification_state WHERE status = 'pending_review'"
                )
                row = await cursor.fetchone()
                return row["count"] if row else 0

        except aiosqlite.Error as e:
            logger.error("count_pending_review_failed", error=str(e))
            raise DatabaseError(f"Failed to count pending review: {e}") from e

    async def count_classified_since(self, since: datetime) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT COUNT(*) AS count FROM classification_state WHERE classified_at >= ?",
                    (_iso(since),),
                )
                row = await cursor.fetchone()
                return row["count"] if row else 0

        except aiosqlite.Error as e:
            logger.error("count_classified_since_failed", error=str(e))
            raise DatabaseError(f"Failed to count classified emails: {e}") from e

    async def get_priority_breakdown(self) -> dict[str, int]:
        breakdown = {str(priority): 0 for priority in Priority}
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT priority, COUNT(*) AS count FROM classification_state
                    WHERE priority IS NOT NULL
                    GROUP BY priority
                    """
                )
                for row in await cursor.fetchall():
                    if row["priority"] in breakdown:
                        breakdown[row["priority"]] = row["count"]
                return breakdown

        except aiosqlite.Error as e:
            logger.error("get_priority_breakdown_failed", error=str(e))
            raise DatabaseError(f"Failed to get priority breakdown: {e}") from e

    async def list_reclassifiable(self, dismissed_before: datetime) -> list[int]:
        """Ids of dismissed emails whose dismissal is older than the cutoff."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT email_id FROM classification_state
                    WHERE status = 'dismissed' AND dismissed_at < ?
                    """,
                    (_iso(dismissed_before),),
                )
                return [row["email_id"] for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("list_reclassifiable_failed", error=str(e))
            raise DatabaseError(f"Failed to list reclassifiable emails: {e}") from e

    def _row_to_state(self, row: aiosqlite.Row) -> ClassificationState:
        return ClassificationState(
            email_id=row["email_id"],
            status=ClassificationStatus(row["status"]),
            confidence=row["confidence"],
            priority=Priority(row["priority"]) if row["priority"] else None,
            suggested_folder=_folder_or_none(row["suggested_folder"]),
            reasoning=row["reasoning"],
            classified_at=_parse_dt(row["classified_at"]),
            reviewed_at=_parse_dt(row["reviewed_at"]),
            dismissed_at=_parse_dt(row["dismissed_at"]),
            error_message=row["error_message"],
        )

    # =========================================================================
    # Feedback and Confused Patterns
    # =========================================================================

    async def log_feedback(self, feedback: ClassificationFeedback) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO classification_feedback (
                        email_id, action, original_folder, final_folder,
                        accuracy_score, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        feedback.email_id,
                        feedback.action,
                        str(feedback.original_folder) if feedback.original_folder else None,
                        str(feedback.final_folder) if feedback.final_folder else None,
                        feedback.accuracy_score,
                        _iso(feedback.created_at or _now()),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("log_feedback_failed", email_id=feedback.email_id, error=str(e))
            raise DatabaseError(f"Failed to log feedback for {feedback.email_id}: {e}") from e

    async def list_recent_feedback(self, limit: int = 10) -> list[ClassificationFeedback]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM classification_feedback ORDER BY created_at DESC, id DESC LIMIT ?",
                    (limit,),
                )
                return [
                    ClassificationFeedback(
                        id=row["id"],
                        email_id=row["email_id"],
                        action=row["action"],
                        original_folder=_folder_or_none(row["original_folder"]),
                        final_folder=_folder_or_none(row["final_folder"]),
                        accuracy_score=row["accuracy_score"],
                        created_at=_parse_dt(row["created_at"]),
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            logger.error("list_recent_feedback_failed", error=str(e))
            raise DatabaseError(f"Failed to list feedback: {e}") from e

    async def get_accuracy_since(self, since: datetime) -> float:
        """Mean accuracy score of feedback logged since the cutoff (0.0 if none)."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT AVG(accuracy_score) AS avg FROM classification_feedback WHERE created_at > ?",
                    (_iso(since),),
                )
                row = await cursor.fetchone()
                return row["avg"] if row and row["avg"] is not None else 0.0

        except aiosqlite.Error as e:
            logger.error("get_accuracy_failed", error=str(e))
            raise DatabaseError(f"Failed to compute accuracy: {e}") from e

    async def update_confused_pattern(
        self,
        pattern_type: ConfusedPatternType,
        pattern_value: str,
        confidence: float,
    ) -> None:
        """Count one more dismissal and fold its confidence into the running mean."""
        now = _iso(_now())
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO confused_patterns (
                        pattern_type, pattern_value, dismissal_count, avg_confidence, last_seen
                    ) VALUES (?, ?, 1, ?, ?)
                    ON CONFLICT(pattern_type, pattern_value) DO UPDATE SET
                        avg_confidence =
                            (avg_confidence * dismissal_count + excluded.avg_confidence)
                            / (dismissal_count + 1),
                        dismissal_count = dismissal_count + 1,
                        last_seen = excluded.last_seen
                    """,
                    (pattern_type, pattern_value, confidence, now),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error(
                "update_confused_pattern_failed",
                pattern_type=pattern_type,
                pattern_value=pattern_value,
                error=str(e),
            )
            raise DatabaseError(f"Failed to update confused pattern {pattern_value}: {e}") from e

    async def list_confused_patterns(self, limit: int = 5) -> list[ConfusedPattern]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM confused_patterns ORDER BY dismissal_count DESC, last_seen DESC LIMIT ?",
                    (limit,),
                )
                return [
                    ConfusedPattern(
                        id=row["id"],
                        pattern_type=row["pattern_type"],
                        pattern_value=row["pattern_value"],
                        dismissal_count=row["dismissal_count"],
                        avg_confidence=row["avg_confidence"] or 0.0,
                        last_seen=_parse_dt(row["last_seen"]),
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            logger.error("list_confused_patterns_failed", error=str(e))
            raise DatabaseError(f"Failed to list confused patterns: {e}") from e

    async def clear_confused_patterns(self) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute("DELETE FROM confused_patterns")
                await db.commit()
                return cursor.rowcount

        except aiosqlite.Error as e:
            logger.error("clear_confused_patterns_failed", error=str(e))
            raise DatabaseError(f"Failed to clear confused patterns: {e}") from e

    # =========================================================================
    # Triage Log
    # =========================================================================

    async def log_triage(self, entry: TriageLogEntry) -> None:
        """Append one triage audit record."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO triage_log (
                        email_id, account_id, pattern_hint, llm_folder, llm_confidence,
                        pattern_agreed, final_folder, source, reasoning, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.email_id,
                        entry.account_id,
                        str(entry.pattern_hint) if entry.pattern_hint else None,
                        str(entry.llm_folder) if entry.llm_folder else None,
                        entry.llm_confidence,
                        None if entry.pattern_agreed is None else int(entry.pattern_agreed),
                        str(entry.final_folder),
                        entry.source,
                        entry.reasoning,
                        _iso(entry.created_at or _now()),
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("log_triage_failed", email_id=entry.email_id, error=str(e))
            raise DatabaseError(f"Failed to log triage for {entry.email_id}: {e}") from e

    async def get_triage_log(self, email_id: int) -> list[TriageLogEntry]:
        return await self._select_triage_log(
            "SELECT * FROM triage_log WHERE email_id = ? ORDER BY created_at DESC, id DESC",
            (email_id,),
        )

    async def _select_triage_log(self, sql: str, params: tuple) -> list[TriageLogEntry]:
        try:
            async with self._db() as db:
                cursor = await db.execute(sql, params)
                return [
                    TriageLogEntry(
                        id=row["id"],
                        email_id=row["email_id"],
                        account_id=row["account_id"],
                        pattern_hint=_folder_or_none(row["pattern_hint"]),
                        llm_folder=_folder_or_none(row["llm_folder"]),
                        llm_confidence=row["llm_confidence"],
                        pattern_agreed=None
                        if row["pattern_agreed"] is None
                        else bool(row["pattern_agreed"]),
                        final_folder=TriageFolder(row["final_folder"]),
                        source=row["source"],
                        reasoning=row["reasoning"],
                        created_at=_parse_dt(row["created_at"]),
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            logger.error("select_triage_log_failed", error=str(e))
            raise DatabaseError(f"Failed to read triage log: {e}") from e

    # =========================================================================
    # Training Examples
    # =========================================================================

    async def save_training_example(self, example: TrainingExample) -> TrainingExample:
        """Store a training example.

        Returns:
            The example with its id and created_at filled in
        """
        created_at = example.created_at or _now()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO training_examples (
                        account_id, email_id, from_address, from_domain, subject,
                        ai_suggestion, user_choice, was_correction, source, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        example.account_id,
                        example.email_id,
                        example.from_address,
                        example.from_domain,
                        example.subject,
                        example.ai_suggestion,
                        str(example.user_choice),
                        1 if example.was_correction else 0,
                        example.source,
                        _iso(created_at),
                    ),
                )
                await db.commit()
                example_id = cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("save_training_example_failed", email_id=example.email_id, error=str(e))
            raise DatabaseError(f"Failed to save training example: {e}") from e

        return TrainingExample(
            id=example_id,
            account_id=example.account_id,
            email_id=example.email_id,
            from_address=example.from_address,
            from_domain=example.from_domain,
            subject=example.subject,
            ai_suggestion=example.ai_suggestion,
            user_choice=example.user_choice,
            was_correction=example.was_correction,
            source=example.source,
            created_at=created_at,
        )

    async def get_relevant_examples(
        self, account_id: int, email: Email, limit: int = 10
    ) -> list[TrainingExample]:
        """Training examples ranked by relevance to this email's sender.

        Relevance: same-domain correction (3) > same-domain confirmation (2)
        > other correction (1) > anything else (0); newest first within a rank.
        """
        domain = extract_domain(email.from_address)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT *,
                        CASE
                            WHEN from_domain = ? AND was_correction = 1 THEN 3
                            WHEN from_domain = ? THEN 2
                            WHEN was_correction = 1 THEN 1
                            ELSE 0
                        END AS relevance
                    FROM training_examples
                    WHERE account_id = ?
                    ORDER BY relevance DESC, created_at DESC, id DESC
                    LIMIT ?
                    """,
                    (domain, domain, account_id, limit),
                )
                return [self._row_to_training_example(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("get_relevant_examples_failed", email_id=email.id, error=str(e))
            raise DatabaseError(f"Failed to get training examples: {e}") from e

    def _row_to_training_example(self, row: aiosqlite.Row) -> TrainingExample:
        return TrainingExample(
            id=row["id"],
            account_id=row["account_id"],
            email_id=row["email_id"],
            from_address=row["from_address"],
            from_domain=row["from_domain"],
            subject=row["subject"] or "",
            ai_suggestion=row["ai_suggestion"],
            user_choice=TriageFolder(row["user_choice"]),
            was_correction=bool(row["was_correction"]),
            source=row["source"],
            created_at=_parse_dt(row["created_at"]),
        )

    # =========================================================================
    # Sender Rules
    # =========================================================================

    async def get_sender_rule(
        self, account_id: int, pattern: str, pattern_type: str = "domain"
    ) -> SenderRule | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM sender_rules
                    WHERE account_id = ? AND pattern = ? AND pattern_type = ?
                    """,
                    (account_id, pattern, pattern_type),
                )
                row = await cursor.fetchone()
                return self._row_to_sender_rule(row) if row else None

        except aiosqlite.Error as e:
            logger.error("get_sender_rule_failed", pattern=pattern, error=str(e))
            raise DatabaseError(f"Failed to get sender rule {pattern}: {e}") from e

    async def upsert_sender_rule(self, rule: SenderRule) -> SenderRule:
        """Write a sender rule, replacing any rule for the same (account, pattern, type)."""
        now = _iso(_now())
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO sender_rules (
                        account_id, pattern, pattern_type, target_folder, confidence,
                        correction_count, auto_apply, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(account_id, pattern, pattern_type) DO UPDATE SET
                        target_folder = excluded.target_folder,
                        confidence = excluded.confidence,
                        correction_count = excluded.correction_count,
                        auto_apply = excluded.auto_apply,
                        updated_at = excluded.updated_at
                    """,
                    (
                        rule.account_id,
                        rule.pattern,
                        rule.pattern_type,
                        str(rule.target_folder),
                        rule.confidence,
                        rule.correction_count,
                        1 if rule.auto_apply else 0,
                        now,
                        now,
                    ),
                )
                await db.commit()
                cursor = await db.execute(
                    """
                    SELECT * FROM sender_rules
                    WHERE account_id = ? AND pattern = ? AND pattern_type = ?
                    """,
                    (rule.account_id, rule.pattern, rule.pattern_type),
                )
                return self._row_to_sender_rule(await cursor.fetchone())

        except aiosqlite.Error as e:
            logger.error("upsert_sender_rule_failed", pattern=rule.pattern, error=str(e))
            raise DatabaseError(f"Failed to upsert sender rule {rule.pattern}: {e}") from e

    async def list_sender_rules(self, account_id: int) -> list[SenderRule]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM sender_rules WHERE account_id = ? ORDER BY correction_count DESC",
                    (account_id,),
                )
                return [self._row_to_sender_rule(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("list_sender_rules_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to list sender rules: {e}") from e

    async def find_auto_apply_rule(self, account_id: int, domain: str) -> SenderRule | None:
        """The promoted (auto-apply) domain rule for a sender, if any."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM sender_rules
                    WHERE account_id = ? AND pattern = ? AND pattern_type = 'domain'
                        AND auto_apply = 1
                    """,
                    (account_id, domain),
                )
                row = await cursor.fetchone()
                return self._row_to_sender_rule(row) if row else None

        except aiosqlite.Error as e:
            logger.error("find_auto_apply_rule_failed", domain=domain, error=str(e))
            raise DatabaseError(f"Failed to find sender rule for {domain}: {e}") from e

    def _row_to_sender_rule(self, row: aiosqlite.Row) -> SenderRule:
        return SenderRule(
            id=row["id"],
            account_id=row["account_id"],
            pattern=row["pattern"],
            pattern_type=row["pattern_type"],
            target_folder=TriageFolder(row["target_folder"]),
            confidence=row["confidence"],
            correction_count=row["correction_count"],
            auto_apply=bool(row["auto_apply"]),
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    # =========================================================================
    # Snoozes
    # =========================================================================

    async def save_snooze(self, snooze: EmailSnooze) -> EmailSnooze:
        """Create a snooze; snoozing an already snoozed email replaces it."""
        created_at = snooze.created_at or _now()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO email_snoozes (
                        email_id, snooze_until, original_folder, reason, created_at
                    ) VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(email_id) DO UPDATE SET
                        snooze_until = excluded.snooze_until,
                        original_folder = excluded.original_folder,
                        reason = excluded.reason,
                        created_at = excluded.created_at
                    """,
                    (
                        snooze.email_id,
                        _iso(snooze.snooze_until),
                        snooze.original_folder,
                        snooze.reason,
                        _iso(created_at),
                    ),
                )
                await db.commit()
                cursor = await db.execute(
                    "SELECT * FROM email_snoozes WHERE email_id = ?", (snooze.email_id,)
                )
                return self._row_to_snooze(await cursor.fetchone())

        except aiosqlite.Error as e:
            logger.error("save_snooze_failed", email_id=snooze.email_id, error=str(e))
            raise DatabaseError(f"Failed to snooze email {snooze.email_id}: {e}") from e

    async def get_snooze(self, email_id: int) -> EmailSnooze | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM email_snoozes WHERE email_id = ?", (email_id,)
                )
                row = await cursor.fetchone()
                return self._row_to_snooze(row) if row else None

        except aiosqlite.Error as e:
            logger.error("get_snooze_failed", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to get snooze for {email_id}: {e}") from e

    async def list_due_snoozes(self, now: datetime | None = None) -> list[EmailSnooze]:
        """Snoozes whose time has come, earliest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM email_snoozes WHERE snooze_until <= ? ORDER BY snooze_until ASC",
                    (_iso(now or _now()),),
                )
                return [self._row_to_snooze(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("list_due_snoozes_failed", error=str(e))
            raise DatabaseError(f"Failed to list due snoozes: {e}") from e

    async def delete_snooze(self, email_id: int) -> bool:
        """Remove a snooze. Returns False if the email was not snoozed."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM email_snoozes WHERE email_id = ?", (email_id,)
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("delete_snooze_failed", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to delete snooze for {email_id}: {e}") from e

    def _row_to_snooze(self, row: aiosqlite.Row) -> EmailSnooze:
        return EmailSnooze(
            id=row["id"],
            email_id=row["email_id"],
            snooze_until=_parse_dt(row["snooze_until"]),
            original_folder=row["original_folder"],
            reason=row["reason"],
            created_at=_parse_dt(row["created_at"]),
        )

    # =========================================================================
    # LLM Usage (daily budget)
    # =========================================================================

    async def record_llm_usage(self, email_id: int | None, when: datetime | None = None) -> None:
        when = when or _now()
        try:
            async with self._db() as db:
                await db.execute(
                    "INSERT INTO llm_usage (email_id, usage_date, created_at) VALUES (?, ?, ?)",
                    (email_id, when.astimezone(UTC).date().isoformat(), _iso(when)),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("record_llm_usage_failed", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to record LLM usage: {e}") from e

    async def count_llm_usage(self, day: str | None = None) -> int:
        """Classifier calls recorded on a UTC day (YYYY-MM-DD, default today)."""
        day = day or _now().date().isoformat()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT COUNT(*) AS count FROM llm_usage WHERE usage_date = ?", (day,)
                )
                row = await cursor.fetchone()
                return row["count"] if row else 0

        except aiosqlite.Error as e:
            logger.error("count_llm_usage_failed", day=day, error=str(e))
            raise DatabaseError(f"Failed to count LLM usage: {e}") from e
