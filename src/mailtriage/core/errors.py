"""Custom exception types for the mail triage engine.

Error messages follow one convention:
- What failed (specific operation or component)
- Which record it failed for (email, account, folder)
- Why it failed (the specific condition)
- How to fix it, where that is actionable
"""


class TriageError(Exception):
    """Base exception for all mail triage errors."""

    pass


class ConfigValidationError(TriageError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(TriageError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class NotFoundError(TriageError):
    """Raised when an email, account or folder no longer resolves.

    Fatal to the single operation that raised it; never retried automatically.

    Attributes:
        kind: Record type that was missing ('email', 'account', 'folder', ...)
        record_id: Identifier that failed to resolve
    """

    def __init__(self, kind: str, record_id: object):
        super().__init__(f"{kind.capitalize()} not found: {record_id}")
        self.kind = kind
        self.record_id = record_id


class ClassificationError(TriageError):
    """Raised when the pattern matcher or LLM classifier cannot produce a verdict.

    Recorded as an ``error`` classification state; retryable by the user.

    Attributes:
        email_id: The email that failed classification
    """

    def __init__(self, message: str, email_id: int | None = None):
        super().__init__(message)
        self.email_id = email_id


class MoveError(TriageError):
    """Raised when the remote folder move fails.

    The local folder index is left untouched when this is raised.

    Attributes:
        email_id: The email that could not be moved
        target_folder: Folder path the move was aimed at
    """

    def __init__(self, message: str, email_id: int | None = None, target_folder: str | None = None):
        super().__init__(message)
        self.email_id = email_id
        self.target_folder = target_folder


class BudgetExhaustedError(TriageError):
    """Raised by interactive paths when the daily classification budget is spent.

    Batch paths never raise this; they report budget exhaustion as skipped items.
    """

    pass


class InvalidStateError(TriageError):
    """Raised when a classification state transition is not allowed.

    Example: retrying an email that is not in the ``error`` state.
    """

    pass


class DatabaseError(TriageError):
    """Raised when SQLite operations fail."""

    pass
