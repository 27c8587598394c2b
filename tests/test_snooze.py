"""Tests for the snooze scheduler."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from conftest import EmailFactory
from mailtriage.core.domain import Account, EmailSnooze, Folder
from mailtriage.core.errors import NotFoundError
from mailtriage.db.store import DatabaseStore
from mailtriage.engine.snooze import SnoozeScheduler

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def scheduler(store: DatabaseStore, mock_mover: MagicMock) -> SnoozeScheduler:
    return SnoozeScheduler(store, mock_mover)


async def _park(store: DatabaseStore, account: Account, email_id: int, path: str) -> Folder:
    """Move an email to another folder in the local index only."""
    folder = await store.get_or_create_folder(account.id, path)
    await store.set_email_folder(email_id, folder.id)
    return folder


# ---------------------------------------------------------------------------
# Tests: snooze / unsnooze
# ---------------------------------------------------------------------------


async def test_snooze_records_current_folder(
    scheduler: SnoozeScheduler, store: DatabaseStore, make_email: EmailFactory
):
    email = await make_email()
    until = datetime.now(UTC) + timedelta(days=1)

    snooze = await scheduler.snooze(email.id, until, reason="waiting_reply")

    assert snooze.original_folder == "INBOX"
    assert snooze.reason == "waiting_reply"
    stored = await store.get_snooze(email.id)
    assert stored.snooze_until == until


async def test_snooze_naive_time_is_utc(
    scheduler: SnoozeScheduler, make_email: EmailFactory
):
    email = await make_email()

    snooze = await scheduler.snooze(email.id, datetime(2030, 1, 1, 8, 0))

    assert snooze.snooze_until == datetime(2030, 1, 1, 8, 0, tzinfo=UTC)


async def test_resnooze_replaces_existing(
    scheduler: SnoozeScheduler,
    store: DatabaseStore,
    account: Account,
    make_email: EmailFactory,
):
    email = await make_email()
    await scheduler.snooze(email.id, datetime.now(UTC) + timedelta(days=1))
    await _park(store, account, email.id, "Planning")

    snooze = await scheduler.snooze(email.id, datetime.now(UTC) + timedelta(days=3), "shipping")

    assert snooze.original_folder == "Planning"
    assert snooze.reason == "shipping"


async def test_snooze_missing_email(scheduler: SnoozeScheduler):
    with pytest.raises(NotFoundError):
        await scheduler.snooze(9999, datetime.now(UTC))


async def test_unsnooze(scheduler: SnoozeScheduler, store: DatabaseStore, make_email: EmailFactory):
    email = await make_email()
    await scheduler.snooze(email.id, datetime.now(UTC) + timedelta(hours=1))

    assert await scheduler.unsnooze(email.id) is True
    assert await scheduler.unsnooze(email.id) is False
    assert await store.get_snooze(email.id) is None


# ---------------------------------------------------------------------------
# Tests: process_snoozed_emails
# ---------------------------------------------------------------------------


async def test_due_email_returns_to_original_folder(
    scheduler: SnoozeScheduler,
    store: DatabaseStore,
    account: Account,
    inbox: Folder,
    make_email: EmailFactory,
    mock_mover: MagicMock,
):
    email = await make_email()
    now = datetime.now(UTC)
    await scheduler.snooze(email.id, now - timedelta(minutes=5))
    await _park(store, account, email.id, "Review")

    returned = await scheduler.process_snoozed_emails(now)

    assert returned == 1
    mock_mover.move_message.assert_awaited_once()
    _, uid, from_path, to_path = mock_mover.move_message.await_args.args
    assert (uid, from_path, to_path) == (email.uid, "Review", "INBOX")
    assert (await store.get_email(email.id)).folder_id == inbox.id
    assert await store.get_snooze(email.id) is None


async def test_future_snooze_is_left_alone(
    scheduler: SnoozeScheduler,
    store: DatabaseStore,
    make_email: EmailFactory,
    mock_mover: MagicMock,
):
    email = await make_email()
    await scheduler.snooze(email.id, datetime.now(UTC) + timedelta(days=1))

    assert await scheduler.process_snoozed_emails() == 0
    mock_mover.move_message.assert_not_awaited()
    assert await store.get_snooze(email.id) is not None


async def test_snooze_for_deleted_email_is_dropped(
    scheduler: SnoozeScheduler, store: DatabaseStore, mock_mover: MagicMock
):
    now = datetime.now(UTC)
    await store.save_snooze(
        EmailSnooze(
            email_id=31337,
            snooze_until=now - timedelta(hours=1),
            original_folder="INBOX",
            reason="manual",
        )
    )

    assert await scheduler.process_snoozed_emails(now) == 0
    mock_mover.move_message.assert_not_awaited()
    assert await store.get_snooze(31337) is None


async def test_move_failure_keeps_snooze_and_continues(
    scheduler: SnoozeScheduler,
    store: DatabaseStore,
    account: Account,
    make_email: EmailFactory,
    mock_mover: MagicMock,
):
    """Test that one failed return is logged and the rest are still processed."""
    broken = await make_email()
    ok = await make_email()
    now = datetime.now(UTC)
    for email in (broken, ok):
        await scheduler.snooze(email.id, now - timedelta(minutes=1))
        await _park(store, account, email.id, "Feed")

    async def move(acct, uid, from_path, to_path):
        if uid == broken.uid:
            raise OSError("connection reset")

    mock_mover.move_message.side_effect = move

    assert await scheduler.process_snoozed_emails(now) == 1
    assert await store.get_snooze(broken.id) is not None
    assert await store.get_snooze(ok.id) is None
