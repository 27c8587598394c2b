"""Tests for the database layer.

Covers schema creation, the mailbox index, classification state upserts
and queries, feedback and confused patterns, training examples, sender
rules, snoozes and LLM usage counting.
"""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from conftest import EmailFactory
from mailtriage.core.domain import (
    Account,
    ClassificationFeedback,
    ClassificationState,
    ClassificationStatus,
    EmailSnooze,
    Folder,
    Priority,
    SenderRule,
    TrainingExample,
    TriageFolder,
)
from mailtriage.core.errors import DatabaseError
from mailtriage.db.models import REQUIRED_TABLES, verify_schema
from mailtriage.db.store import DatabaseStore

# ---------------------------------------------------------------------------
# Tests: Schema
# ---------------------------------------------------------------------------


async def test_initialize_creates_all_tables(store: DatabaseStore):
    assert await verify_schema(store.db_path) is True
    assert "classification_state" in REQUIRED_TABLES
    assert "llm_usage" in REQUIRED_TABLES


async def test_verify_schema_on_empty_database(data_dir: Path):
    """Test that an uninitialized database fails verification."""
    empty = data_dir / "empty.db"
    empty.touch()
    assert await verify_schema(empty) is False


# ---------------------------------------------------------------------------
# Tests: Mailbox index
# ---------------------------------------------------------------------------


async def test_add_account_is_idempotent(store: DatabaseStore, account: Account):
    again = await store.add_account("me@example.com", imap_host="imap.example.com")
    assert again.id == account.id


async def test_get_or_create_folder_reuses_existing(
    store: DatabaseStore, account: Account, inbox: Folder
):
    invoices = await store.get_or_create_folder(account.id, "Paper-Trail/Invoices")
    assert invoices.name == "Invoices"
    assert invoices.id != inbox.id

    again = await store.get_or_create_folder(account.id, "Paper-Trail/Invoices")
    assert again.id == invoices.id


async def test_add_and_get_email(store: DatabaseStore, make_email: EmailFactory):
    email = await make_email(subject="Hello", from_address="bob@corp.com")

    loaded = await store.get_email(email.id)
    assert loaded is not None
    assert loaded.subject == "Hello"
    assert loaded.from_address == "bob@corp.com"
    assert loaded.date is not None and loaded.date.tzinfo is not None


async def test_get_emails_batch_omits_missing(store: DatabaseStore, make_email: EmailFactory):
    first = await make_email()
    second = await make_email()

    emails = await store.get_emails_batch([first.id, second.id, 9999])
    assert set(emails) == {first.id, second.id}


async def test_set_email_folder(
    store: DatabaseStore, account: Account, make_email: EmailFactory
):
    email = await make_email()
    feed = await store.get_or_create_folder(account.id, "Feed")

    await store.set_email_folder(email.id, feed.id)

    loaded = await store.get_email(email.id)
    assert loaded.folder_id == feed.id


async def test_list_unclassified_includes_unprocessed_state(
    store: DatabaseStore, make_email: EmailFactory
):
    fresh = await make_email()
    reset = await make_email()
    done = await make_email()
    await store.save_classification_state(
        ClassificationState(email_id=reset.id, status=ClassificationStatus.UNPROCESSED)
    )
    await store.save_classification_state(
        ClassificationState(
            email_id=done.id,
            status=ClassificationStatus.CLASSIFIED,
            confidence=0.9,
            suggested_folder=TriageFolder.FEED,
        )
    )

    ids = await store.list_unclassified_email_ids()
    assert set(ids) == {fresh.id, reset.id}


# ---------------------------------------------------------------------------
# Tests: Classification state
# ---------------------------------------------------------------------------


async def test_save_classification_state_is_full_upsert(
    store: DatabaseStore, make_email: EmailFactory
):
    """Test that a second save replaces every field, clearing stale ones."""
    email = await make_email()
    await store.save_classification_state(
        ClassificationState(
            email_id=email.id,
            status=ClassificationStatus.PENDING_REVIEW,
            confidence=0.6,
            priority=Priority.LOW,
            suggested_folder=TriageFolder.FEED,
            reasoning="Looks like a newsletter",
            classified_at=datetime.now(UTC),
        )
    )
    await store.save_classification_state(
        ClassificationState(
            email_id=email.id,
            status=ClassificationStatus.ERROR,
            classified_at=datetime.now(UTC),
            error_message="LLM timeout",
        )
    )

    state = await store.get_classification_state(email.id)
    assert state.status == ClassificationStatus.ERROR
    assert state.confidence is None
    assert state.suggested_folder is None
    assert state.reasoning is None
    assert state.error_message == "LLM timeout"


async def test_get_classification_state_missing(store: DatabaseStore):
    assert await store.get_classification_state(12345) is None


async def test_save_state_for_unknown_email_raises(store: DatabaseStore):
    with pytest.raises(DatabaseError):
        await store.save_classification_state(
            ClassificationState(email_id=424242, status=ClassificationStatus.ERROR)
        )


async def test_count_by_status_is_zero_filled(store: DatabaseStore, make_email: EmailFactory):
    email = await make_email()
    await store.save_classification_state(
        ClassificationState(email_id=email.id, status=ClassificationStatus.ERROR)
    )

    counts = await store.count_by_status()
    assert counts["error"] == 1
    assert counts["accepted"] == 0
    assert set(counts) == {status.value for status in ClassificationStatus}


async def test_review_queue_sorted_by_confidence(
    store: DatabaseStore, make_email: EmailFactory
):
    high = await make_email()
    low = await make_email()
    for email, confidence, status in (
        (high, 0.92, ClassificationStatus.CLASSIFIED),
        (low, 0.4, ClassificationStatus.PENDING_REVIEW),
    ):
        await store.save_classification_state(
            ClassificationState(
                email_id=email.id,
                status=status,
                confidence=confidence,
                suggested_folder=TriageFolder.FEED,
            )
        )

    queue = await store.list_pending_review(sort_by="confidence")
    assert [s.email_id for s in queue] == [low.id, high.id]
    assert await store.count_pending_review() == 1


async def test_review_queue_ties_break_on_date_then_sender(
    store: DatabaseStore, make_email: EmailFactory
):
    same_day = datetime(2026, 3, 5, 9, 0, tzinfo=UTC)
    older = await make_email(from_address="aa@x.com", date=same_day - timedelta(days=1))
    zed = await make_email(from_address="zed@x.com", date=same_day)
    bob = await make_email(from_address="bob@x.com", date=same_day)
    for email in (older, zed, bob):
        await store.save_classification_state(
            ClassificationState(
                email_id=email.id,
                status=ClassificationStatus.PENDING_REVIEW,
                confidence=0.5,
                suggested_folder=TriageFolder.FEED,
            )
        )

    queue = await store.list_pending_review(sort_by="confidence")

    assert [s.email_id for s in queue] == [bob.id, zed.id, older.id]


async def test_list_reclassifiable_respects_cutoff(
    store: DatabaseStore, make_email: EmailFactory
):
    now = datetime.now(UTC)
    old = await make_email()
    recent = await make_email()
    for email, dismissed_at in ((old, now - timedelta(days=10)), (recent, now - timedelta(days=1))):
        await store.save_classification_state(
            ClassificationState(
                email_id=email.id,
                status=ClassificationStatus.DISMISSED,
                confidence=0.5,
                suggested_folder=TriageFolder.FEED,
                dismissed_at=dismissed_at,
            )
        )

    ids = await store.list_reclassifiable(now - timedelta(days=7))
    assert ids == [old.id]


async def test_priority_breakdown(store: DatabaseStore, make_email: EmailFactory):
    email = await make_email()
    await store.save_classification_state(
        ClassificationState(
            email_id=email.id,
            status=ClassificationStatus.CLASSIFIED,
            confidence=0.95,
            priority=Priority.HIGH,
            suggested_folder=TriageFolder.INVOICES,
        )
    )

    breakdown = await store.get_priority_breakdown()
    assert breakdown == {"high": 1, "normal": 0, "low": 0}


# ---------------------------------------------------------------------------
# Tests: Feedback and confused patterns
# ---------------------------------------------------------------------------


async def test_accuracy_is_mean_of_feedback(store: DatabaseStore, make_email: EmailFactory):
    email = await make_email()
    await store.log_feedback(
        ClassificationFeedback(email_id=email.id, action="accept", accuracy_score=1.0)
    )
    await store.log_feedback(
        ClassificationFeedback(email_id=email.id, action="dismiss", accuracy_score=0.0)
    )

    accuracy = await store.get_accuracy_since(datetime.now(UTC) - timedelta(days=30))
    assert accuracy == pytest.approx(0.5)

    recent = await store.list_recent_feedback(limit=1)
    assert recent[0].action == "dismiss"


async def test_accuracy_without_feedback_is_zero(store: DatabaseStore):
    assert await store.get_accuracy_since(datetime.now(UTC) - timedelta(days=30)) == 0.0


async def test_confused_pattern_running_mean(store: DatabaseStore):
    await store.update_confused_pattern("sender_domain", "news.example.com", 0.9)
    await store.update_confused_pattern("sender_domain", "news.example.com", 0.5)
    await store.update_confused_pattern("subject_pattern", "[list]*", 0.7)

    patterns = await store.list_confused_patterns()
    top = patterns[0]
    assert top.pattern_value == "news.example.com"
    assert top.dismissal_count == 2
    assert top.avg_confidence == pytest.approx(0.7)

    assert await store.clear_confused_patterns() == 2
    assert await store.list_confused_patterns() == []


# ---------------------------------------------------------------------------
# Tests: Training examples and sender rules
# ---------------------------------------------------------------------------


async def test_relevant_examples_rank_same_domain_corrections_first(
    store: DatabaseStore, account: Account, make_email: EmailFactory
):
    target = await make_email(from_address="carol@vendor.com")

    def example(domain: str, correction: bool) -> TrainingExample:
        return TrainingExample(
            account_id=account.id,
            email_id=target.id,
            from_address=f"x@{domain}",
            from_domain=domain,
            subject="s",
            ai_suggestion="Feed",
            user_choice=TriageFolder.INVOICES,
            was_correction=correction,
        )

    await store.save_training_example(example("other.com", False))
    await store.save_training_example(example("other.com", True))
    await store.save_training_example(example("vendor.com", False))
    saved = await store.save_training_example(example("vendor.com", True))
    assert saved.id is not None

    ranked = await store.get_relevant_examples(account.id, target, limit=4)
    assert [(e.from_domain, e.was_correction) for e in ranked] == [
        ("vendor.com", True),
        ("vendor.com", False),
        ("other.com", True),
        ("other.com", False),
    ]


async def test_sender_rule_upsert_and_auto_apply_lookup(store: DatabaseStore, account: Account):
    await store.upsert_sender_rule(
        SenderRule(account_id=account.id, pattern="vendor.com", target_folder=TriageFolder.INVOICES)
    )
    assert await store.find_auto_apply_rule(account.id, "vendor.com") is None

    updated = await store.upsert_sender_rule(
        SenderRule(
            account_id=account.id,
            pattern="vendor.com",
            target_folder=TriageFolder.INVOICES,
            confidence=0.9,
            correction_count=3,
            auto_apply=True,
        )
    )
    assert updated.correction_count == 3

    rule = await store.find_auto_apply_rule(account.id, "vendor.com")
    assert rule is not None
    assert rule.target_folder == TriageFolder.INVOICES
    assert len(await store.list_sender_rules(account.id)) == 1


# ---------------------------------------------------------------------------
# Tests: Snoozes and LLM usage
# ---------------------------------------------------------------------------


async def test_snooze_replaces_existing(store: DatabaseStore, make_email: EmailFactory):
    email = await make_email()
    now = datetime.now(UTC)

    await store.save_snooze(
        EmailSnooze(
            email_id=email.id,
            snooze_until=now + timedelta(days=1),
            original_folder="INBOX",
            reason="manual",
        )
    )
    await store.save_snooze(
        EmailSnooze(
            email_id=email.id,
            snooze_until=now - timedelta(minutes=1),
            original_folder="Planning",
            reason="shipping",
        )
    )

    due = await store.list_due_snoozes(now)
    assert len(due) == 1
    assert due[0].original_folder == "Planning"
    assert due[0].reason == "shipping"

    assert await store.delete_snooze(email.id) is True
    assert await store.delete_snooze(email.id) is False


async def test_llm_usage_counted_per_day(store: DatabaseStore, make_email: EmailFactory):
    email = await make_email()
    today = datetime.now(UTC)
    yesterday = today - timedelta(days=1)

    await store.record_llm_usage(email.id, today)
    await store.record_llm_usage(email.id, today)
    await store.record_llm_usage(email.id, yesterday)

    assert await store.count_llm_usage() == 2
    assert await store.count_llm_usage(yesterday.date().isoformat()) == 1
