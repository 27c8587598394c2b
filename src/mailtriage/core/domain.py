"""Domain types for the triage engine.

Plain dataclasses and closed enums shared by the orchestrator, the state
store and the feedback loop. Nothing in this module performs I/O.

Usage:
    from mailtriage.core.domain import TriageFolder, ClassificationState

    state = ClassificationState(email_id=42, status=ClassificationStatus.PENDING_REVIEW)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Literal

import regex

# Regex timeout (seconds) for subject heuristics
_REGEX_TIMEOUT = 1


class TriageFolder(StrEnum):
    """Folders the triage pipeline may file an email into."""

    INBOX = "INBOX"
    PLANNING = "Planning"
    REVIEW = "Review"
    INVOICES = "Paper-Trail/Invoices"
    ADMIN = "Paper-Trail/Admin"
    TRAVEL = "Paper-Trail/Travel"
    FEED = "Feed"
    SOCIAL = "Social"
    PROMOTIONS = "Promotions"
    ARCHIVE = "Archive"


class ClassificationStatus(StrEnum):
    """Per-email classification state machine."""

    UNPROCESSED = "unprocessed"
    CLASSIFIED = "classified"
    PENDING_REVIEW = "pending_review"
    ACCEPTED = "accepted"
    DISMISSED = "dismissed"
    ERROR = "error"


class Priority(StrEnum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


FeedbackAction = Literal["accept", "accept_edit", "dismiss", "reclassify"]
TriageSource = Literal["llm", "user-override"]
TrainingSource = Literal["onboarding", "review_folder", "manual"]
SnoozeReason = Literal["shipping", "waiting_reply", "manual"]
ConfusedPatternType = Literal["sender_domain", "subject_pattern"]
TaskStatus = Literal["running", "completed", "failed"]

# Accuracy scores logged with each feedback action
ACCURACY_ACCEPT = 1.0
ACCURACY_ACCEPT_EDIT = 0.98
ACCURACY_DISMISS = 0.0
ACCURACY_RECLASSIFY = 0.5


# ---------------------------------------------------------------------------
# Mailbox index records
# ---------------------------------------------------------------------------


@dataclass
class Account:
    """Mail account the engine files messages for."""

    id: int
    email: str
    imap_host: str | None = None
    imap_port: int = 993
    username: str | None = None


@dataclass
class Folder:
    """Folder in the local mailbox index."""

    id: int
    account_id: int
    path: str
    name: str | None = None


@dataclass
class Email:
    """Email record from the local mailbox index."""

    id: int
    account_id: int
    folder_id: int
    uid: int
    subject: str = ""
    from_address: str = ""
    from_name: str | None = None
    date: datetime | None = None
    message_id: str | None = None
    snippet: str | None = None


# ---------------------------------------------------------------------------
# Classification state and learning records
# ---------------------------------------------------------------------------


@dataclass
class ClassificationState:
    """Classification state for one email.

    Written as a whole record; never partially patched.
    """

    email_id: int
    status: ClassificationStatus = ClassificationStatus.UNPROCESSED
    confidence: float | None = None
    priority: Priority | None = None
    suggested_folder: TriageFolder | None = None
    reasoning: str | None = None
    classified_at: datetime | None = None
    reviewed_at: datetime | None = None
    dismissed_at: datetime | None = None
    error_message: str | None = None

    def __post_init__(self) -> None:
        if self.confidence is not None and self.suggested_folder is None:
            raise ValueError(
                f"Classification state for email {self.email_id} has a confidence "
                "but no suggested folder"
            )


@dataclass(frozen=True)
class ClassificationFeedback:
    """One user review signal and its accuracy score."""

    email_id: int
    action: FeedbackAction
    accuracy_score: float
    original_folder: TriageFolder | None = None
    final_folder: TriageFolder | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class ConfusedPattern:
    """Aggregate dismissal statistics for a sender domain or subject template."""

    pattern_type: ConfusedPatternType
    pattern_value: str
    dismissal_count: int
    avg_confidence: float
    last_seen: datetime | None = None
    id: int | None = None


@dataclass(frozen=True)
class TriageLogEntry:
    """Audit record of one orchestrator run or manual move."""

    email_id: int
    account_id: int
    final_folder: TriageFolder
    source: TriageSource
    pattern_hint: TriageFolder | None = None
    llm_folder: TriageFolder | None = None
    llm_confidence: float | None = None
    pattern_agreed: bool | None = None
    reasoning: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class TrainingExample:
    """User choice for one email, used as few-shot context."""

    account_id: int
    email_id: int
    from_address: str
    from_domain: str
    subject: str
    ai_suggestion: str | None
    user_choice: TriageFolder
    was_correction: bool
    source: TrainingSource = "review_folder"
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class SenderRule:
    """Learned domain -> folder mapping.

    Attributes:
        confidence: 0.8 on creation, +0.05 per repeat correction, capped at 0.95
        correction_count: Same-folder corrections seen for this domain
        auto_apply: Enabled once correction_count reaches 3
    """

    account_id: int
    pattern: str
    target_folder: TriageFolder
    confidence: float = 0.8
    correction_count: int = 1
    auto_apply: bool = False
    pattern_type: Literal["domain"] = "domain"
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class EmailSnooze:
    """Deferred return of an email to its original folder."""

    email_id: int
    snooze_until: datetime
    original_folder: str
    reason: SnoozeReason
    id: int | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Pipeline values
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PatternMatchResult:
    """Zero-cost folder hint produced before the LLM call.

    Attributes:
        auto_delete_after: Minutes after which the email may be deleted
    """

    folder: TriageFolder
    confidence: float
    tags: tuple[str, ...] = ()
    snooze_until: datetime | None = None
    auto_delete_after: int | None = None


@dataclass(frozen=True, slots=True)
class TriageResult:
    """Classifier verdict for one email."""

    folder: TriageFolder
    confidence: float
    reasoning: str
    pattern_agreed: bool
    pattern_hint: TriageFolder | None = None
    tags: tuple[str, ...] = ()
    snooze_until: datetime | None = None
    auto_delete_after: int | None = None


@dataclass(frozen=True, slots=True)
class EmailBudget:
    """Classification budget for the current period. ``limit == 0`` is unlimited."""

    used: int
    limit: int
    allowed: bool

    @property
    def exhausted(self) -> bool:
        return self.limit > 0 and self.used >= self.limit

    @property
    def remaining(self) -> int | None:
        """Remaining classifications, or None when unlimited."""
        if self.limit <= 0:
            return None
        return max(0, self.limit - self.used)


@dataclass
class TaskState:
    """Progress of one background task."""

    status: TaskStatus
    processed: int
    total: int
    error: str | None = None


@dataclass
class ClassificationStats:
    """Dashboard counters for the review queue."""

    counts: dict[str, int] = field(default_factory=dict)
    classified_today: int = 0
    pending_review: int = 0
    accuracy_30_day: float = 0.0
    priority_breakdown: dict[str, int] = field(default_factory=dict)
    budget_used: int = 0
    budget_limit: int = 0


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def extract_domain(address: str) -> str:
    """Return the lower-cased domain of an email address, or 'unknown'."""
    _, sep, domain = address.partition("@")
    domain = domain.strip().rstrip(">").lower()
    return domain if sep and domain else "unknown"


def priority_for_confidence(confidence: float) -> Priority:
    if confidence >= 0.9:
        return Priority.HIGH
    if confidence >= 0.7:
        return Priority.NORMAL
    return Priority.LOW


# Ordered: prefix templates are checked before the looser periodic match
_SUBJECT_TEMPLATES: list[tuple[str, str]] = [
    (r"^\s*(?:re\s*:\s*){2,}", "RE: RE: RE:*"),
    (r"^\s*(?:fwd?\s*:\s*){2,}", "FW: FW: FW:*"),
    (r"^\s*\[[^\]]+\]", "[list]*"),
    (r"^\s*digest\s*:", "digest:*"),
    (r"^\s*newsletter\b", "newsletter*"),
    (r"\b(?:daily|weekly|monthly)\s+(?:report|digest|newsletter|summary|update)s?\b", "periodic digest"),
]


def extract_subject_pattern(subject: str | None) -> str | None:
    """Detect a recognizable subject template for confused-pattern tracking.

    Examples:
        'RE: RE: Meeting'         -> 'RE: RE: RE:*'
        '[dev-team] Weekly sync'  -> '[list]*'
        'Monthly Newsletter'      -> 'periodic digest'
        'Hello from Alice'        -> None
    """
    if not subject:
        return None
    for pattern, template in _SUBJECT_TEMPLATES:
        try:
            if regex.search(pattern, subject, regex.IGNORECASE, timeout=_REGEX_TIMEOUT):
                return template
        except TimeoutError:
            return None
    return None
