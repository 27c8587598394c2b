"""Tests for engine wiring and config hot-reload."""

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import EmailFactory
from mailtriage.config_schema import AppConfig
from mailtriage.core.domain import TriageFolder
from mailtriage.db.store import DatabaseStore
from mailtriage.engine.components import build_components


async def test_apply_config_reaches_matcher_and_orchestrator(
    store: DatabaseStore,
    sample_config: AppConfig,
    sample_config_dict: dict[str, Any],
    mock_classifier: MagicMock,
    mock_mover: MagicMock,
    make_email: EmailFactory,
    monkeypatch: pytest.MonkeyPatch,
):
    """Test that edited pattern rules and example limits apply without a restart."""
    components = build_components(
        sample_config, store, classifier=mock_classifier, mover=mock_mover
    )
    examples = AsyncMock(return_value=[])
    monkeypatch.setattr(store, "get_relevant_examples", examples)
    email = await make_email(subject="Quarterly planning")

    await components.orchestrator.triage_and_move(email.id)
    _, hint, _ = mock_classifier.classify.await_args.args
    assert hint.folder == TriageFolder.INBOX
    assert examples.await_args.args[2] == 10

    sample_config_dict["pattern_rules"] = [
        {"name": "Plans", "match": {"subjects": ["quarterly"]}, "folder": "Paper-Trail/Invoices"}
    ]
    sample_config_dict["triage"]["training_examples_limit"] = 3
    components.apply_config(AppConfig(**sample_config_dict))

    await components.orchestrator.triage_and_move(email.id)
    _, hint, _ = mock_classifier.classify.await_args.args
    assert hint.folder == TriageFolder.INVOICES
    assert hint.tags == ("rule:Plans",)
    assert examples.await_args.args[2] == 3
