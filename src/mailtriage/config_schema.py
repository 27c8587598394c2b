"""Pydantic configuration schema for the mail triage engine.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from mailtriage.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from mailtriage.core.domain import TriageFolder

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class LLMConfig(BaseModel):
    """LLM provider and classification budget configuration."""

    provider: Literal["anthropic", "ollama"] = Field(
        default="ollama",
        description="Classifier backend: 'anthropic' (API) or 'ollama' (local server)",
    )
    model: str = Field(
        default="mistral:7b",
        description="Model identifier passed to the provider",
    )
    daily_email_limit: int = Field(
        default=200,
        ge=0,
        description="Emails that may be classified per day (0 = unlimited)",
    )
    confidence_threshold: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Confidence at or above which a verdict is recorded as classified",
    )
    reclassify_cooldown_days: int = Field(
        default=7,
        ge=-1,
        description="Days before a dismissed email is classified again (-1 = never)",
    )
    classification_concurrency: int | None = Field(
        default=None,
        ge=1,
        le=16,
        description="Background classifications in flight (default: ollama 2, anthropic 1)",
    )
    ollama_server_url: str = Field(
        default="http://localhost:11434",
        description="Base URL of the Ollama server",
    )
    max_tokens: int = Field(
        default=1024,
        ge=64,
        le=8192,
        description="Maximum tokens in a classifier response",
    )
    timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="HTTP timeout for a single classifier call",
    )

    @field_validator("ollama_server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        """Ensure the Ollama URL has an http(s) scheme."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Ollama server URL must start with http:// or https://")
        return v.rstrip("/")


class TriageConfig(BaseModel):
    """Triage engine configuration."""

    move_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Highest confidence the orchestrator requires before moving an email",
    )
    training_examples_limit: int = Field(
        default=10,
        ge=0,
        le=50,
        description="Few-shot training examples passed to the classifier",
    )
    interval_minutes: int = Field(
        default=15,
        ge=1,
        le=1440,
        description="How often the server classifies unprocessed mail (minutes)",
    )
    snooze_check_minutes: int = Field(
        default=5,
        ge=1,
        le=1440,
        description="How often the server returns due snoozes (minutes)",
    )


class PatternRuleMatch(BaseModel):
    """Pattern matching criteria for a configured rule."""

    senders: list[str] = Field(
        default_factory=list,
        description="Sender patterns (supports wildcards)",
    )
    subjects: list[str] = Field(
        default_factory=list,
        description="Subject substrings (case-insensitive)",
    )


class PatternRuleConfig(BaseModel):
    """Configured pattern rule, evaluated before the built-in heuristics."""

    name: str = Field(description="Rule display name")
    match: PatternRuleMatch = Field(description="Matching criteria")
    folder: TriageFolder = Field(description="Folder hint produced on match")
    confidence: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Confidence attached to the hint",
    )


class DatabaseConfig(BaseModel):
    """SQLite database location."""

    path: str = Field(
        default="data/mailtriage.db",
        description="Path to the SQLite database file",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure the database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class ImapConfig(BaseModel):
    """IMAP connection settings for remote folder moves."""

    ssl: bool = Field(default=True, description="Connect with implicit TLS")
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Socket timeout for IMAP operations",
    )


class AppConfig(BaseModel):
    """Root configuration schema for the mail triage engine.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    llm: LLMConfig = Field(default_factory=LLMConfig)
    triage: TriageConfig = Field(default_factory=TriageConfig)
    pattern_rules: list[PatternRuleConfig] = Field(
        default_factory=list,
        description="Configured pattern rules",
    )
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    imap: ImapConfig = Field(default_factory=ImapConfig)
