"""Pytest fixtures and configuration for mail triage tests.

Provides common fixtures for configuration, database, a seeded mailbox,
and mocked engine ports.
"""

import os
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Generator
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailtriage.config import reset_config
from mailtriage.config_schema import AppConfig
from mailtriage.core.domain import (
    Account,
    Email,
    EmailBudget,
    Folder,
    PatternMatchResult,
    TriageFolder,
    TriageResult,
)
from mailtriage.db.store import DatabaseStore

BASE_DATE = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

EmailFactory = Callable[..., Awaitable[Email]]


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

llm:
  provider: ollama
  model: "mistral:7b"
  daily_email_limit: 100
  confidence_threshold: 0.85

triage:
  move_threshold: 0.7
  interval_minutes: 15

pattern_rules: []
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "llm": {
            "provider": "ollama",
            "model": "mistral:7b",
            "daily_email_limit": 100,
            "confidence_threshold": 0.85,
            "reclassify_cooldown_days": 7,
        },
        "triage": {
            "move_threshold": 0.7,
            "training_examples_limit": 10,
            "interval_minutes": 15,
        },
        "pattern_rules": [],
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the MAILTRIAGE_CONFIG_PATH environment variable."""
    old_value = os.environ.get("MAILTRIAGE_CONFIG_PATH")
    os.environ["MAILTRIAGE_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["MAILTRIAGE_CONFIG_PATH"]
    else:
        os.environ["MAILTRIAGE_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


# ---------------------------------------------------------------------------
# Database and mailbox
# ---------------------------------------------------------------------------


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Return an initialized DatabaseStore."""
    s = DatabaseStore(data_dir / "test_mailtriage.db")
    await s.initialize()
    return s


@pytest.fixture
async def account(store: DatabaseStore) -> Account:
    """Return a registered mail account."""
    return await store.add_account("me@example.com", imap_host="imap.example.com")


@pytest.fixture
async def inbox(store: DatabaseStore, account: Account) -> Folder:
    """Return the account's INBOX folder."""
    return await store.get_or_create_folder(account.id, "INBOX")


@pytest.fixture
def make_email(store: DatabaseStore, account: Account, inbox: Folder) -> EmailFactory:
    """Return a factory inserting emails into the INBOX.

    Each call gets a fresh UID and, unless given, a date one hour after
    the previous email.
    """
    counter = {"uid": 0}

    async def _make(
        subject: str = "Quarterly planning",
        from_address: str = "alice@partner.com",
        date: datetime | None = None,
        folder_id: int | None = None,
    ) -> Email:
        counter["uid"] += 1
        uid = counter["uid"]
        return await store.add_email(
            account_id=account.id,
            folder_id=folder_id or inbox.id,
            uid=uid,
            subject=subject,
            from_address=from_address,
            date=date or BASE_DATE + timedelta(hours=uid),
            snippet=f"Body of message {uid}",
        )

    return _make


# ---------------------------------------------------------------------------
# Engine ports
# ---------------------------------------------------------------------------


def make_triage_result(
    folder: TriageFolder = TriageFolder.PLANNING,
    confidence: float = 0.9,
    reasoning: str = "Project planning thread",
    pattern_agreed: bool = False,
) -> TriageResult:
    """Create a TriageResult for testing."""
    return TriageResult(
        folder=folder,
        confidence=confidence,
        reasoning=reasoning,
        pattern_agreed=pattern_agreed,
        pattern_hint=TriageFolder.INBOX,
    )


@pytest.fixture
def mock_matcher() -> MagicMock:
    """Return a PatternMatcher that always hints INBOX."""
    matcher = MagicMock()
    matcher.match = MagicMock(
        return_value=PatternMatchResult(folder=TriageFolder.INBOX, confidence=0.3)
    )
    return matcher


@pytest.fixture
def mock_classifier() -> MagicMock:
    """Return a TriageClassifier filing everything in Planning at 0.9."""
    classifier = MagicMock()
    classifier.classify = AsyncMock(return_value=make_triage_result())
    return classifier


@pytest.fixture
def mock_mover() -> MagicMock:
    """Return a FolderMover whose moves always succeed."""
    mover = MagicMock()
    mover.move_message = AsyncMock(return_value=None)
    return mover


class StaticBudget:
    """BudgetSource with a fixed usage count; records usage in memory."""

    def __init__(self, used: int = 0, limit: int = 0):
        self.used = used
        self.limit = limit
        self.recorded: list[int] = []

    async def get_email_budget(self) -> EmailBudget:
        allowed = self.limit <= 0 or self.used < self.limit
        return EmailBudget(used=self.used, limit=self.limit, allowed=allowed)

    async def record_usage(self, email_id: int) -> None:
        self.recorded.append(email_id)
        self.used += 1
