"""LLM triage classifiers.

Two providers implement the TriageClassifier port:
- AnthropicTriageClassifier: forced tool use (``triage_email``) for structured output
- OllamaTriageClassifier: local Ollama server in JSON mode over httpx

Error handling strategy:
- Transient errors (429, 5xx, network): handled by the SDK / reported at once
- Logical errors (missing fields, unknown folder): app-level retry up to 3 attempts
- After that: ClassificationError, which the batch loop records as an error state

Usage:
    from mailtriage.classifier.triage_classifier import create_classifier

    classifier = create_classifier(config)
    result = await classifier.classify(email, hint, examples)
"""

from __future__ import annotations

import json
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import anthropic
import httpx

from mailtriage.classifier.prompts import (
    JSON_RESPONSE_INSTRUCTIONS,
    TRIAGE_EMAIL_TOOL,
    TRIAGE_SYSTEM_PROMPT,
    build_user_message,
)
from mailtriage.core.domain import TriageFolder, TriageResult
from mailtriage.core.errors import ClassificationError
from mailtriage.core.logging import get_logger

if TYPE_CHECKING:
    from mailtriage.config_schema import LLMConfig
    from mailtriage.core.domain import Email, PatternMatchResult, TrainingExample

logger = get_logger(__name__)

# Max attempts for responses that arrive but fail validation
MAX_CLASSIFICATION_ATTEMPTS = 3

_REQUIRED_FIELDS = ("folder", "confidence", "pattern_agreed", "reasoning")


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class AnthropicTriageClassifier:
    """Classifies emails with Claude using a forced ``triage_email`` tool call.

    Attributes:
        _client: Async Anthropic client (configured with max_retries=3)
        _config: LLM section of the application config
    """

    def __init__(self, client: anthropic.AsyncAnthropic, config: LLMConfig):
        self._client = client
        self._config = config

    async def classify(
        self,
        email: Email,
        pattern_hint: PatternMatchResult,
        examples: list[TrainingExample],
    ) -> TriageResult:
        """Classify one email.

        Raises:
            ClassificationError: On API failure or after repeated invalid responses
        """
        messages = [{"role": "user", "content": build_user_message(email, pattern_hint, examples)}]

        last_error: str | None = None
        for attempt in range(1, MAX_CLASSIFICATION_ATTEMPTS + 1):
            start_time = time.monotonic()
            try:
                response = await self._client.messages.create(
                    model=self._config.model,
                    max_tokens=self._config.max_tokens,
                    system=TRIAGE_SYSTEM_PROMPT,
                    messages=messages,
                    tools=[TRIAGE_EMAIL_TOOL],
                    tool_choice={"type": "tool", "name": "triage_email"},
                )
            except anthropic.RateLimitError as e:
                last_error = f"Rate limited after SDK retries: {e}"
                logger.error("classification_rate_limited", email_id=email.id, error=str(e))
                break
            except anthropic.APIConnectionError as e:
                last_error = f"API connection error after SDK retries: {e}"
                logger.error("classification_connection_error", email_id=email.id, error=str(e))
                break
            except anthropic.APIStatusError as e:
                last_error = f"API status error {e.status_code}: {e.message}"
                logger.error(
                    "classification_api_error",
                    email_id=email.id,
                    status_code=e.status_code,
                    error=str(e),
                )
                break

            duration_ms = int((time.monotonic() - start_time) * 1000)
            tool_call = _extract_tool_call(response)
            if tool_call is None:
                last_error = "No tool call in response (unexpected with forced tool_choice)"
                logger.warning("classification_no_tool_call", email_id=email.id, attempt=attempt)
                continue

            validation_error = _validate_response(tool_call)
            if validation_error:
                last_error = validation_error
                logger.warning(
                    "classification_invalid_response",
                    email_id=email.id,
                    attempt=attempt,
                    error=validation_error,
                )
                continue

            logger.debug(
                "classification_complete",
                email_id=email.id,
                provider="anthropic",
                duration_ms=duration_ms,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            )
            return _build_result(tool_call, pattern_hint)

        raise ClassificationError(
            f"Classification failed for email {email.id}. Last error: {last_error}",
            email_id=email.id,
        )


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


class OllamaTriageClassifier:
    """Classifies emails with a local Ollama model in JSON mode.

    Attributes:
        _client: httpx client pointed at the Ollama server
        _config: LLM section of the application config
    """

    def __init__(self, config: LLMConfig, client: httpx.AsyncClient | None = None):
        self._config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.ollama_server_url,
            timeout=config.timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def classify(
        self,
        email: Email,
        pattern_hint: PatternMatchResult,
        examples: list[TrainingExample],
    ) -> TriageResult:
        payload = {
            "model": self._config.model,
            "messages": [
                {"role": "system", "content": TRIAGE_SYSTEM_PROMPT + JSON_RESPONSE_INSTRUCTIONS},
                {"role": "user", "content": build_user_message(email, pattern_hint, examples)},
            ],
            "stream": False,
            "format": "json",
            "options": {"temperature": 0.2, "num_predict": self._config.max_tokens},
        }

        last_error: str | None = None
        for attempt in range(1, MAX_CLASSIFICATION_ATTEMPTS + 1):
            try:
                response = await self._client.post("/api/chat", json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                last_error = f"Ollama returned HTTP {e.response.status_code}"
                logger.error(
                    "classification_api_error",
                    email_id=email.id,
                    status_code=e.response.status_code,
                )
                break
            except httpx.HTTPError as e:
                last_error = f"Ollama request failed: {e}"
                logger.error("classification_connection_error", email_id=email.id, error=str(e))
                break

            try:
                content = response.json().get("message", {}).get("content", "")
                data = json.loads(content)
            except (json.JSONDecodeError, AttributeError, TypeError):
                last_error = "Response was not valid JSON"
                logger.warning("classification_invalid_json", email_id=email.id, attempt=attempt)
                continue

            validation_error = _validate_response(data)
            if validation_error:
                last_error = validation_error
                logger.warning(
                    "classification_invalid_response",
                    email_id=email.id,
                    attempt=attempt,
                    error=validation_error,
                )
                continue

            return _build_result(data, pattern_hint)

        raise ClassificationError(
            f"Classification failed for email {email.id}. Last error: {last_error}",
            email_id=email.id,
        )


def create_classifier(config: LLMConfig) -> AnthropicTriageClassifier | OllamaTriageClassifier:
    """Build the classifier for the configured provider.

    The Anthropic client reads ANTHROPIC_API_KEY from the environment.
    """
    if config.provider == "anthropic":
        client = anthropic.AsyncAnthropic(max_retries=3, timeout=config.timeout_seconds)
        return AnthropicTriageClassifier(client, config)
    return OllamaTriageClassifier(config)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _extract_tool_call(response: anthropic.types.Message) -> dict[str, Any] | None:
    for block in response.content:
        if block.type == "tool_use" and block.name == "triage_email":
            return block.input
    return None


def _validate_response(data: Any) -> str | None:
    """Return an error message if the model output is unusable, else None."""
    if not isinstance(data, dict):
        return f"Expected a JSON object, got {type(data).__name__}"

    missing = [f for f in _REQUIRED_FIELDS if f not in data]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"

    try:
        TriageFolder(data["folder"])
    except ValueError:
        return f"Invalid folder: '{data['folder']}'"

    confidence = data["confidence"]
    if (
        isinstance(confidence, bool)
        or not isinstance(confidence, int | float)
        or not 0.0 <= confidence <= 1.0
    ):
        return f"Invalid confidence: {confidence}. Must be a number between 0.0 and 1.0"

    if not isinstance(data["reasoning"], str):
        return "Reasoning must be a string"

    return None


def _parse_snooze(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _build_result(data: dict[str, Any], pattern_hint: PatternMatchResult) -> TriageResult:
    tags = data.get("tags") or []
    auto_delete = data.get("auto_delete_minutes")
    return TriageResult(
        folder=TriageFolder(data["folder"]),
        confidence=float(data["confidence"]),
        reasoning=data["reasoning"],
        pattern_agreed=bool(data["pattern_agreed"]),
        pattern_hint=pattern_hint.folder,
        tags=tuple(str(t) for t in tags if isinstance(t, str)),
        snooze_until=_parse_snooze(data.get("snooze_until")),
        auto_delete_after=auto_delete
        if isinstance(auto_delete, int) and not isinstance(auto_delete, bool)
        else None,
    )
