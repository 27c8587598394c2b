"""Engine wiring shared by the CLI and the web app.

Builds the full component graph from an AppConfig and a DatabaseStore:
pattern matcher, classifier, IMAP mover, daily budget, orchestrator,
classification service, feedback loop, snooze scheduler and the
background task runner.

Usage:
    from mailtriage.engine.components import build_components

    components = build_components(config, store)
    result = await components.classification.classify_unprocessed()
    await components.aclose()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from mailtriage.classifier.pattern_matcher import RulePatternMatcher
from mailtriage.classifier.triage_classifier import create_classifier
from mailtriage.core.logging import get_logger
from mailtriage.engine.background import BackgroundTaskRunner
from mailtriage.engine.budget import DailyEmailBudget
from mailtriage.engine.classification import ClassificationService
from mailtriage.engine.feedback import FeedbackLoop
from mailtriage.engine.snooze import SnoozeScheduler
from mailtriage.engine.triage import TriageOrchestrator
from mailtriage.mail.imap import ImapFolderMover

if TYPE_CHECKING:
    from mailtriage.config_schema import AppConfig
    from mailtriage.core.ports import FolderMover, TriageClassifier
    from mailtriage.db.store import DatabaseStore

logger = get_logger(__name__)


@dataclass
class EngineComponents:
    """Everything a front end needs to drive the engine."""

    config: AppConfig
    store: DatabaseStore
    matcher: RulePatternMatcher
    classifier: TriageClassifier
    mover: FolderMover
    budget: DailyEmailBudget
    orchestrator: TriageOrchestrator
    classification: ClassificationService
    feedback: FeedbackLoop
    snoozes: SnoozeScheduler
    runner: BackgroundTaskRunner = field(default_factory=BackgroundTaskRunner)

    def apply_config(self, config: AppConfig) -> None:
        """Push a hot-reloaded config into the long-lived components."""
        self.config = config
        self.classification.update_config(config)
        self.budget.update_limit(config.llm.daily_email_limit)
        self.matcher.update_rules(config.pattern_rules)
        self.orchestrator.update_examples_limit(config.triage.training_examples_limit)
        logger.info(
            "engine_config_applied",
            confidence_threshold=config.llm.confidence_threshold,
            daily_email_limit=config.llm.daily_email_limit,
            pattern_rules=len(config.pattern_rules),
            training_examples_limit=config.triage.training_examples_limit,
        )

    async def aclose(self) -> None:
        close = getattr(self.classifier, "aclose", None)
        if close is not None:
            await close()


def build_components(
    config: AppConfig,
    store: DatabaseStore,
    classifier: TriageClassifier | None = None,
    mover: FolderMover | None = None,
) -> EngineComponents:
    """Wire the engine. ``classifier`` and ``mover`` may be injected for tests."""
    matcher = RulePatternMatcher(config.pattern_rules)
    classifier = classifier or create_classifier(config.llm)
    mover = mover or ImapFolderMover(config.imap)
    budget = DailyEmailBudget(store, config.llm.daily_email_limit)

    orchestrator = TriageOrchestrator(
        store=store,
        pattern_matcher=matcher,
        classifier=classifier,
        mover=mover,
        budget=budget,
        training_examples_limit=config.triage.training_examples_limit,
    )

    components = EngineComponents(
        config=config,
        store=store,
        matcher=matcher,
        classifier=classifier,
        mover=mover,
        budget=budget,
        orchestrator=orchestrator,
        classification=ClassificationService(store, orchestrator, budget, config),
        feedback=FeedbackLoop(store, orchestrator),
        snoozes=SnoozeScheduler(store, mover),
    )
    logger.debug(
        "engine_components_built",
        provider=config.llm.provider,
        model=config.llm.model,
        pattern_rules=len(config.pattern_rules),
    )
    return components
