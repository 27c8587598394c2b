"""Daily classification budget.

``select_within_budget`` decides which candidates a batch may classify now:
the most recent resolvable emails, up to the remaining allowance. Everything
else is reported as skipped, never raised.

``DailyEmailBudget`` is the BudgetSource backed by the ``llm_usage`` table.

Usage:
    from mailtriage.engine.budget import DailyEmailBudget, select_within_budget

    budget = await DailyEmailBudget(store, limit=200).get_email_budget()
    selection = select_within_budget(email_ids, budget, await store.get_emails_batch(email_ids))
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from mailtriage.core.domain import Email, EmailBudget
from mailtriage.core.logging import get_logger

if TYPE_CHECKING:
    from mailtriage.db.store import DatabaseStore

logger = get_logger(__name__)

_OLDEST = datetime.min.replace(tzinfo=UTC)


@dataclass(frozen=True, slots=True)
class BudgetSelection:
    """Outcome of the budget gate.

    Attributes:
        to_classify: Emails to classify now, most recent first
        skipped: Candidates not classified (over budget or no longer resolvable)
    """

    to_classify: list[Email] = field(default_factory=list)
    skipped: int = 0


def _recency_key(email: Email) -> datetime:
    if email.date is None:
        return _OLDEST
    if email.date.tzinfo is None:
        return email.date.replace(tzinfo=UTC)
    return email.date


def sort_by_recency(emails: list[Email]) -> list[Email]:
    """Most recent first; emails without a date go last."""
    return sorted(emails, key=_recency_key, reverse=True)


def select_within_budget(
    email_ids: list[int],
    budget: EmailBudget,
    emails: Mapping[int, Email],
) -> BudgetSelection:
    """Pick the subset of candidates a batch may classify.

    Guarantees ``len(to_classify) + skipped == len(email_ids)`` and that no
    more than the remaining allowance is selected.

    Args:
        email_ids: Candidate ids, in any order
        budget: Current usage and limit (``limit == 0`` is unlimited)
        emails: Resolved email records keyed by id; absent ids count as skipped
    """
    if budget.exhausted:
        logger.info(
            "budget_exhausted",
            used=budget.used,
            limit=budget.limit,
            skipped=len(email_ids),
        )
        return BudgetSelection(to_classify=[], skipped=len(email_ids))

    resolved = [emails[email_id] for email_id in email_ids if email_id in emails]
    ordered = sort_by_recency(resolved)

    remaining = budget.remaining
    to_classify = ordered if remaining is None else ordered[:remaining]
    skipped = len(email_ids) - len(to_classify)

    if skipped:
        logger.info(
            "budget_selection",
            candidates=len(email_ids),
            unresolved=len(email_ids) - len(resolved),
            selected=len(to_classify),
            skipped=skipped,
        )
    return BudgetSelection(to_classify=to_classify, skipped=skipped)


class DailyEmailBudget:
    """BudgetSource counting successful classifier calls per UTC day.

    Attributes:
        _store: Database store holding the llm_usage table
        _limit: Emails per day (0 = unlimited)
    """

    def __init__(self, store: DatabaseStore, limit: int):
        self._store = store
        self._limit = limit

    def update_limit(self, limit: int) -> None:
        """Apply a hot-reloaded limit."""
        self._limit = limit

    async def get_email_budget(self) -> EmailBudget:
        used = await self._store.count_llm_usage()
        allowed = self._limit <= 0 or used < self._limit
        return EmailBudget(used=used, limit=self._limit, allowed=allowed)

    async def record_usage(self, email_id: int) -> None:
        await self._store.record_llm_usage(email_id)
