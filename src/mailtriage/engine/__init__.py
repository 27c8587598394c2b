"""Triage and classification engines.

This package provides the processing engines:
- Budget gate and daily budget source
- Triage orchestrator (per-email decision pipeline)
- Classification state recorder and batch classification
- Learning feedback loop
- Background task runner
- Snooze scheduler
"""

from mailtriage.engine.background import (
    BackgroundTaskRunner,
    resolve_concurrency,
    start_background_classification,
)
from mailtriage.engine.budget import (
    BudgetSelection,
    DailyEmailBudget,
    select_within_budget,
    sort_by_recency,
)
from mailtriage.engine.classification import (
    BatchResult,
    ClassificationService,
    ReclassifyResult,
)
from mailtriage.engine.feedback import BulkResult, FeedbackLoop
from mailtriage.engine.snooze import SnoozeScheduler
from mailtriage.engine.triage import DEFAULT_MOVE_THRESHOLD, TriageOrchestrator

__all__ = [
    # Budget
    "BudgetSelection",
    "DailyEmailBudget",
    "select_within_budget",
    "sort_by_recency",
    # Triage
    "DEFAULT_MOVE_THRESHOLD",
    "TriageOrchestrator",
    # Classification
    "BatchResult",
    "ClassificationService",
    "ReclassifyResult",
    # Feedback
    "BulkResult",
    "FeedbackLoop",
    # Background
    "BackgroundTaskRunner",
    "resolve_concurrency",
    "start_background_classification",
    # Snooze
    "SnoozeScheduler",
]
