"""Email classification components.

- Pattern matcher producing zero-cost folder hints
- LLM triage classifiers (Anthropic tool use, Ollama JSON mode)
- Prompt text and tool definition
"""

from mailtriage.classifier.pattern_matcher import DEFAULT_HINT, RulePatternMatcher
from mailtriage.classifier.prompts import TRIAGE_EMAIL_TOOL, build_user_message
from mailtriage.classifier.triage_classifier import (
    AnthropicTriageClassifier,
    OllamaTriageClassifier,
    create_classifier,
)

__all__ = [
    # Pattern matching
    "DEFAULT_HINT",
    "RulePatternMatcher",
    # Prompts
    "TRIAGE_EMAIL_TOOL",
    "build_user_message",
    # Classifiers
    "AnthropicTriageClassifier",
    "OllamaTriageClassifier",
    "create_classifier",
]
