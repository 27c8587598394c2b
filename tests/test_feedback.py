"""Tests for the learning feedback loop.

Tests accept / accept-with-edit / dismiss feedback, confused pattern
tracking, bulk review actions, training examples and sender rule promotion.
"""

from unittest.mock import MagicMock

import pytest

from conftest import EmailFactory
from mailtriage.core.domain import (
    Account,
    ClassificationState,
    ClassificationStatus,
    Email,
    TriageFolder,
)
from mailtriage.core.errors import InvalidStateError, MoveError, NotFoundError
from mailtriage.db.store import DatabaseStore
from mailtriage.engine.feedback import FeedbackLoop
from mailtriage.engine.triage import TriageOrchestrator

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def loop(
    store: DatabaseStore,
    mock_matcher: MagicMock,
    mock_classifier: MagicMock,
    mock_mover: MagicMock,
) -> FeedbackLoop:
    """Create a FeedbackLoop whose orchestrator moves through the mock mover."""
    orchestrator = TriageOrchestrator(
        store=store,
        pattern_matcher=mock_matcher,
        classifier=mock_classifier,
        mover=mock_mover,
    )
    return FeedbackLoop(store, orchestrator)


async def _pending(
    store: DatabaseStore,
    email: Email,
    folder: TriageFolder = TriageFolder.FEED,
    confidence: float = 0.6,
    status: ClassificationStatus = ClassificationStatus.PENDING_REVIEW,
) -> None:
    await store.save_classification_state(
        ClassificationState(
            email_id=email.id,
            status=status,
            confidence=confidence,
            suggested_folder=folder,
        )
    )


async def _folder_path(store: DatabaseStore, email_id: int) -> str:
    email = await store.get_email(email_id)
    return (await store.get_folder(email.folder_id)).path


# ---------------------------------------------------------------------------
# Tests: accept
# ---------------------------------------------------------------------------


async def test_accept_suggestion(
    loop: FeedbackLoop, store: DatabaseStore, make_email: EmailFactory
):
    email = await make_email()
    await _pending(store, email)

    state = await loop.accept(email.id)

    assert state.status == ClassificationStatus.ACCEPTED
    assert state.reviewed_at is not None
    assert await _folder_path(store, email.id) == "Feed"
    feedback = await store.list_recent_feedback()
    assert feedback[0].action == "accept"
    assert feedback[0].accuracy_score == 1.0
    assert feedback[0].final_folder == TriageFolder.FEED


async def test_accept_with_different_folder_is_edit(
    loop: FeedbackLoop, store: DatabaseStore, make_email: EmailFactory
):
    email = await make_email()
    await _pending(store, email)

    await loop.accept(email.id, TriageFolder.INVOICES)

    assert await _folder_path(store, email.id) == "Paper-Trail/Invoices"
    feedback = (await store.list_recent_feedback())[0]
    assert feedback.action == "accept_edit"
    assert feedback.accuracy_score == 0.98
    assert feedback.original_folder == TriageFolder.FEED
    assert feedback.final_folder == TriageFolder.INVOICES


async def test_accept_move_failure_records_nothing(
    loop: FeedbackLoop,
    store: DatabaseStore,
    make_email: EmailFactory,
    mock_mover: MagicMock,
):
    """Test that a failed move leaves state and feedback untouched."""
    email = await make_email()
    await _pending(store, email)
    mock_mover.move_message.side_effect = OSError("IMAP down")

    with pytest.raises(MoveError):
        await loop.accept(email.id)

    state = await store.get_classification_state(email.id)
    assert state.status == ClassificationStatus.PENDING_REVIEW
    assert await store.list_recent_feedback() == []


async def test_accept_without_state_raises(loop: FeedbackLoop, make_email: EmailFactory):
    email = await make_email()

    with pytest.raises(NotFoundError):
        await loop.accept(email.id)


async def test_accept_error_state_needs_folder(
    loop: FeedbackLoop, store: DatabaseStore, make_email: EmailFactory
):
    email = await make_email()
    await store.save_classification_state(
        ClassificationState(email_id=email.id, status=ClassificationStatus.ERROR)
    )

    with pytest.raises(InvalidStateError):
        await loop.accept(email.id)

    state = await loop.accept(email.id, TriageFolder.ARCHIVE)
    assert state.status == ClassificationStatus.ACCEPTED
    assert (await store.list_recent_feedback())[0].action == "accept"


# ---------------------------------------------------------------------------
# Tests: dismiss and confused patterns
# ---------------------------------------------------------------------------


async def test_dismiss_records_feedback_and_patterns(
    loop: FeedbackLoop, store: DatabaseStore, make_email: EmailFactory, mock_mover: MagicMock
):
    email = await make_email(subject="[ops] Daily report", from_address="bot@alerts.example.com")
    await _pending(store, email, confidence=0.6)

    state = await loop.dismiss(email.id)

    assert state.status == ClassificationStatus.DISMISSED
    assert state.dismissed_at is not None
    assert state.suggested_folder == TriageFolder.FEED
    mock_mover.move_message.assert_not_awaited()

    feedback = (await store.list_recent_feedback())[0]
    assert feedback.action == "dismiss"
    assert feedback.accuracy_score == 0.0

    patterns = {p.pattern_value: p for p in await loop.confused_patterns()}
    assert patterns["alerts.example.com"].pattern_type == "sender_domain"
    assert patterns["[list]*"].pattern_type == "subject_pattern"
    assert patterns["alerts.example.com"].avg_confidence == pytest.approx(0.6)


async def test_repeated_dismissals_average_confidence(
    loop: FeedbackLoop, store: DatabaseStore, make_email: EmailFactory
):
    first = await make_email(subject="Hello", from_address="a@noisy.com")
    second = await make_email(subject="Hello again", from_address="b@noisy.com")
    await _pending(store, first, confidence=0.8)
    await _pending(store, second, confidence=0.4)

    await loop.dismiss(first.id)
    await loop.dismiss(second.id)

    patterns = await loop.confused_patterns()
    assert len(patterns) == 1
    assert patterns[0].dismissal_count == 2
    assert patterns[0].avg_confidence == pytest.approx(0.6)

    assert await loop.clear_confused_patterns() == 1
    assert await loop.confused_patterns() == []


# ---------------------------------------------------------------------------
# Tests: bulk actions
# ---------------------------------------------------------------------------


async def test_bulk_accept_only_pending_items(
    loop: FeedbackLoop, store: DatabaseStore, make_email: EmailFactory
):
    pending = await make_email()
    classified = await make_email()
    await _pending(store, pending)
    await _pending(store, classified, status=ClassificationStatus.CLASSIFIED)

    result = await loop.bulk_accept([pending.id, classified.id, 9999])

    assert result.succeeded == 1
    assert result.failed == 2
    assert (await store.get_classification_state(pending.id)).status == (
        ClassificationStatus.ACCEPTED
    )
    assert (await store.get_classification_state(classified.id)).status == (
        ClassificationStatus.CLASSIFIED
    )


async def test_bulk_dismiss(loop: FeedbackLoop, store: DatabaseStore, make_email: EmailFactory):
    emails = [await make_email() for _ in range(3)]
    for email in emails:
        await _pending(store, email)

    result = await loop.bulk_dismiss([e.id for e in emails])

    assert result.succeeded == 3
    assert result.failed == 0
    patterns = await loop.confused_patterns()
    assert patterns[0].dismissal_count == 3


async def test_bulk_move_counts_move_failures(
    loop: FeedbackLoop,
    store: DatabaseStore,
    make_email: EmailFactory,
    mock_mover: MagicMock,
):
    ok = await make_email()
    broken = await make_email()
    await _pending(store, ok)
    await _pending(store, broken)

    async def move(account, uid, from_path, to_path):
        if uid == broken.uid:
            raise OSError("mailbox locked")

    mock_mover.move_message.side_effect = move

    result = await loop.bulk_move_to_folder([ok.id, broken.id], TriageFolder.ARCHIVE)

    assert result.succeeded == 1
    assert result.failed == 1
    assert await _folder_path(store, ok.id) == "Archive"
    assert await _folder_path(store, broken.id) == "INBOX"
    feedback = await store.list_recent_feedback()
    assert [f.action for f in feedback] == ["accept_edit"]


# ---------------------------------------------------------------------------
# Tests: corrections and sender rules
# ---------------------------------------------------------------------------


async def test_confirmation_is_not_a_correction(
    loop: FeedbackLoop, store: DatabaseStore, account: Account, make_email: EmailFactory
):
    email = await make_email(from_address="ann@vendor.com")

    example = await loop.learn_from_correction(email.id, "Paper-Trail/Invoices", TriageFolder.INVOICES)

    assert example.was_correction is False
    assert example.from_domain == "vendor.com"
    assert await store.list_sender_rules(account.id) == []


async def test_three_corrections_promote_sender_rule(
    loop: FeedbackLoop, store: DatabaseStore, account: Account, make_email: EmailFactory
):
    """Test that the third same-folder correction enables auto-apply at 0.9."""
    expected = [(0.8, 1, False), (0.85, 2, False), (0.9, 3, True)]
    for confidence, count, auto_apply in expected:
        email = await make_email(from_address="billing@vendor.com")
        example = await loop.learn_from_correction(email.id, "Feed", TriageFolder.INVOICES)
        assert example.was_correction is True

        rule = await store.get_sender_rule(account.id, "vendor.com")
        assert rule.confidence == pytest.approx(confidence)
        assert rule.correction_count == count
        assert rule.auto_apply is auto_apply


async def test_sender_rule_confidence_is_capped(
    loop: FeedbackLoop, store: DatabaseStore, account: Account, make_email: EmailFactory
):
    for _ in range(6):
        email = await make_email(from_address="billing@vendor.com")
        await loop.learn_from_correction(email.id, "Feed", TriageFolder.INVOICES)

    rule = await store.get_sender_rule(account.id, "vendor.com")
    assert rule.confidence == pytest.approx(0.95)
    assert rule.correction_count == 6


async def test_correction_to_other_folder_resets_rule(
    loop: FeedbackLoop, store: DatabaseStore, account: Account, make_email: EmailFactory
):
    for _ in range(3):
        email = await make_email(from_address="billing@vendor.com")
        await loop.learn_from_correction(email.id, "Feed", TriageFolder.INVOICES)

    email = await make_email(from_address="billing@vendor.com")
    await loop.learn_from_correction(email.id, "Feed", TriageFolder.ADMIN)

    rule = await store.get_sender_rule(account.id, "vendor.com")
    assert rule.target_folder == TriageFolder.ADMIN
    assert rule.confidence == pytest.approx(0.8)
    assert rule.correction_count == 1
    assert rule.auto_apply is False


async def test_unknown_domain_creates_no_rule(
    loop: FeedbackLoop, store: DatabaseStore, account: Account, make_email: EmailFactory
):
    email = await make_email(from_address="undisclosed-recipients")

    example = await loop.learn_from_correction(email.id, "Feed", TriageFolder.ARCHIVE)

    assert example.was_correction is True
    assert await store.list_sender_rules(account.id) == []


async def test_correction_for_missing_email(loop: FeedbackLoop):
    with pytest.raises(NotFoundError):
        await loop.learn_from_correction(9999, "Feed", TriageFolder.ARCHIVE)


async def test_recent_activity_newest_first(
    loop: FeedbackLoop, store: DatabaseStore, make_email: EmailFactory
):
    first = await make_email()
    second = await make_email()
    await _pending(store, first)
    await _pending(store, second)

    await loop.accept(first.id)
    await loop.dismiss(second.id)

    activity = await loop.recent_activity(limit=5)
    assert [(a.email_id, a.action) for a in activity] == [
        (second.id, "dismiss"),
        (first.id, "accept"),
    ]
