"""Capabilities the engine consumes but does not implement.

Concrete adapters live in ``mailtriage.classifier``, ``mailtriage.engine.budget``
and ``mailtriage.mail``; tests substitute mocks.
"""

from __future__ import annotations

from typing import Protocol

from mailtriage.core.domain import (
    Account,
    Email,
    EmailBudget,
    PatternMatchResult,
    TrainingExample,
    TriageResult,
)


class PatternMatcher(Protocol):
    """Zero-cost local rules. Synchronous and pure."""

    def match(self, email: Email) -> PatternMatchResult: ...


class TriageClassifier(Protocol):
    """LLM classification. May raise ClassificationError per item."""

    async def classify(
        self,
        email: Email,
        pattern_hint: PatternMatchResult,
        examples: list[TrainingExample],
    ) -> TriageResult: ...


class BudgetSource(Protocol):
    """Daily classification allowance. ``limit == 0`` means unlimited."""

    async def get_email_budget(self) -> EmailBudget: ...

    async def record_usage(self, email_id: int) -> None: ...


class FolderMover(Protocol):
    """Remote mailbox move. May raise."""

    async def move_message(
        self,
        account: Account,
        uid: int,
        from_path: str,
        to_path: str,
    ) -> None: ...
