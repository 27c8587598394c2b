"""SQLite database schema and initialization for the mail triage engine.

Tables:
- accounts, folders, emails: Local mailbox index (written by the sync layer)
- classification_state: One classification state per email
- classification_feedback: Append-only review signals with accuracy scores
- confused_patterns: Dismissal aggregates per sender domain / subject template
- triage_log: Append-only audit of orchestrator runs and manual moves
- training_examples: User folder choices used as few-shot context
- sender_rules: Learned domain -> folder rules
- email_snoozes: Deferred returns to the original folder
- llm_usage: One row per successful classifier call (daily budget)

Usage:
    from mailtriage.db.models import init_database

    await init_database("data/mailtriage.db")
"""

import stat
from pathlib import Path

import aiosqlite

from mailtriage.core.errors import DatabaseError
from mailtriage.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    imap_host TEXT,
    imap_port INTEGER DEFAULT 993,
    username TEXT
);

CREATE TABLE IF NOT EXISTS folders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    path TEXT NOT NULL,
    name TEXT,
    UNIQUE(account_id, path)
);

CREATE TABLE IF NOT EXISTS emails (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    folder_id INTEGER NOT NULL REFERENCES folders(id),
    uid INTEGER NOT NULL,
    message_id TEXT,
    subject TEXT DEFAULT '',
    from_address TEXT DEFAULT '',
    from_name TEXT,
    date DATETIME,
    snippet TEXT                            -- First 1000 chars of the body
);

CREATE INDEX IF NOT EXISTS idx_emails_account ON emails(account_id);
CREATE INDEX IF NOT EXISTS idx_emails_date ON emails(date DESC);
CREATE INDEX IF NOT EXISTS idx_emails_from ON emails(from_address);

-- One row per email; full-record replacement on every write
CREATE TABLE IF NOT EXISTS classification_state (
    email_id INTEGER PRIMARY KEY REFERENCES emails(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'unprocessed', -- unprocessed, classified, pending_review,
                                                -- accepted, dismissed, error
    confidence REAL,
    priority TEXT,                          -- high, normal, low
    suggested_folder TEXT,
    reasoning TEXT,
    error_message TEXT,
    classified_at DATETIME,
    reviewed_at DATETIME,
    dismissed_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_classification_status ON classification_state(status);
CREATE INDEX IF NOT EXISTS idx_classification_confidence ON classification_state(confidence);

CREATE TABLE IF NOT EXISTS classification_feedback (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_id INTEGER NOT NULL REFERENCES emails(id) ON DELETE CASCADE,
    action TEXT NOT NULL,                   -- accept, accept_edit, dismiss, reclassify
    original_folder TEXT,
    final_folder TEXT,
    accuracy_score REAL,                    -- 1.0 accept, 0.98 accept_edit, 0.5 reclassify, 0.0 dismiss
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_feedback_email ON classification_feedback(email_id);
CREATE INDEX IF NOT EXISTS idx_feedback_created ON classification_feedback(created_at);

CREATE TABLE IF NOT EXISTS confused_patterns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pattern_type TEXT NOT NULL,             -- sender_domain, subject_pattern
    pattern_value TEXT NOT NULL,
    dismissal_count INTEGER NOT NULL DEFAULT 0,
    avg_confidence REAL,
    last_seen DATETIME NOT NULL,
    UNIQUE(pattern_type, pattern_value)
);

CREATE INDEX IF NOT EXISTS idx_confused_patterns_count
    ON confused_patterns(dismissal_count DESC);

CREATE TABLE IF NOT EXISTS triage_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_id INTEGER NOT NULL,
    account_id INTEGER NOT NULL,
    pattern_hint TEXT,
    llm_folder TEXT,
    llm_confidence REAL,
    pattern_agreed INTEGER,                 -- NULL for manual moves
    final_folder TEXT NOT NULL,
    source TEXT NOT NULL,                   -- llm, user-override
    reasoning TEXT,
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_triage_log_email ON triage_log(email_id);
CREATE INDEX IF NOT EXISTS idx_triage_log_created ON triage_log(created_at);

CREATE TABLE IF NOT EXISTS training_examples (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL,
    email_id INTEGER,
    from_address TEXT NOT NULL,
    from_domain TEXT NOT NULL,
    subject TEXT,
    ai_suggestion TEXT,
    user_choice TEXT NOT NULL,
    was_correction INTEGER NOT NULL DEFAULT 0,
    source TEXT NOT NULL,                   -- onboarding, review_folder, manual
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_training_account_domain
    ON training_examples(account_id, from_domain);

CREATE TABLE IF NOT EXISTS sender_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL,
    pattern TEXT NOT NULL,
    pattern_type TEXT NOT NULL DEFAULT 'domain',
    target_folder TEXT NOT NULL,
    confidence REAL NOT NULL,
    correction_count INTEGER NOT NULL DEFAULT 1,
    auto_apply INTEGER NOT NULL DEFAULT 0,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL,
    UNIQUE(account_id, pattern, pattern_type)
);

CREATE TABLE IF NOT EXISTS email_snoozes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_id INTEGER NOT NULL UNIQUE,
    snooze_until DATETIME NOT NULL,
    original_folder TEXT NOT NULL,
    reason TEXT NOT NULL,                   -- shipping, waiting_reply, manual
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_snoozes_until ON email_snoozes(snooze_until);

CREATE TABLE IF NOT EXISTS llm_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_id INTEGER,
    usage_date TEXT NOT NULL,               -- YYYY-MM-DD (UTC)
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_llm_usage_date ON llm_usage(usage_date);
"""

REQUIRED_TABLES = [
    "accounts",
    "folders",
    "emails",
    "classification_state",
    "classification_feedback",
    "confused_patterns",
    "triage_log",
    "training_examples",
    "sender_rules",
    "email_snoozes",
    "llm_usage",
]


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist and restricts it to the
    owner, since it holds message metadata.

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            cursor = await db.execute("PRAGMA journal_mode")
            mode = await cursor.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "wal_mode_not_enabled",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "database_initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Return True if every required table exists."""
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing_tables
    if missing:
        logger.warning("missing_database_tables", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
