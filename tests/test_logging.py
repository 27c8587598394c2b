"""Tests for log context binding."""

from structlog.contextvars import bound_contextvars, get_contextvars, merge_contextvars

from mailtriage.core.logging import batch_context, current_batch_id


def test_batch_context_binds_and_unbinds():
    assert current_batch_id() is None

    with batch_context() as batch_id:
        assert current_batch_id() == batch_id
        assert len(batch_id) == 12

    assert current_batch_id() is None


def test_nested_batch_keeps_outer_id():
    with batch_context() as outer:
        with batch_context() as inner:
            assert inner == outer
        assert current_batch_id() == outer

    assert "batch_id" not in get_contextvars()


def test_bound_context_is_merged_into_entries():
    with batch_context() as batch_id, bound_contextvars(email_id=7):
        event = merge_contextvars(None, "info", {"event": "email_triaged"})

    assert event == {"event": "email_triaged", "batch_id": batch_id, "email_id": 7}
