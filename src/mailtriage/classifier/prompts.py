"""Prompt text and tool definition for LLM triage.

The system prompt is static: it describes the folder set and the special
routing rules. The user message is assembled per email and carries the
pattern hint, the user's training examples and the email headers.

Usage:
    from mailtriage.classifier.prompts import TRIAGE_SYSTEM_PROMPT, build_user_message

    message = build_user_message(email, hint, examples)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from mailtriage.core.domain import TriageFolder

if TYPE_CHECKING:
    from mailtriage.core.domain import Email, PatternMatchResult, TrainingExample

# Characters of body snippet included in the prompt
SNIPPET_PROMPT_LIMIT = 500

TRIAGE_SYSTEM_PROMPT = """You are an email triage assistant. Classify each email into ONE folder.

FOLDERS (the user can drag emails between these to correct you):
- INBOX: Urgent, actionable, important, requires response today
- Planning: Medium-term, "when you have time", no hard deadline
- Paper-Trail/Invoices: Receipts, invoices, payment confirmations
- Paper-Trail/Admin: Contracts, account info, legal, support tickets
- Paper-Trail/Travel: Flight/hotel bookings, itineraries
- Feed: Newsletters, curated content the user wants to read
- Social: Social media notifications (NOT direct messages)
- Promotions: Marketing, sales, discounts
- Archive: Done, no action needed, keep for reference

If your confidence is below 0.7 the email goes to Review for the user to triage.
Be honest about your confidence; uncertain classifications help the user.

USER CORRECTIONS: when the user moves an email to a different folder, the
correction is stored as training data. Give USER PREFERENCES in the message
precedence over general rules.

SPECIAL RULES:
- Direct messages from social platforms -> INBOX (human conversation)
- CC'd with no action required -> Planning
- 2FA/security codes -> INBOX (set auto_delete_minutes)
- Shipping updates -> INBOX (set snooze_until to the expected delivery date)"""

# Folders the model may choose (Review is where the engine parks low confidence)
CLASSIFIABLE_FOLDERS = [f.value for f in TriageFolder if f is not TriageFolder.REVIEW]

TRIAGE_EMAIL_TOOL: dict[str, Any] = {
    "name": "triage_email",
    "description": "File an email into exactly one triage folder",
    "input_schema": {
        "type": "object",
        "properties": {
            "folder": {"type": "string", "enum": CLASSIFIABLE_FOLDERS},
            "tags": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Short labels describing the email (e.g., 'invoice', '2fa')",
            },
            "confidence": {
                "type": "number",
                "minimum": 0.0,
                "maximum": 1.0,
            },
            "snooze_until": {
                "type": ["string", "null"],
                "description": "ISO-8601 datetime to resurface the email, or null",
            },
            "auto_delete_minutes": {
                "type": ["integer", "null"],
                "description": "Minutes after which the email may be deleted, or null",
            },
            "pattern_agreed": {
                "type": "boolean",
                "description": "Whether you agree with the pattern matching hint",
            },
            "reasoning": {
                "type": "string",
                "description": "One sentence explaining the classification",
            },
        },
        "required": ["folder", "confidence", "pattern_agreed", "reasoning"],
    },
}

# Appended to the system prompt for providers without tool use
JSON_RESPONSE_INSTRUCTIONS = """

Respond with JSON only:
{
  "folder": "...",
  "tags": ["..."],
  "confidence": 0.0-1.0,
  "snooze_until": "ISO date or null",
  "auto_delete_minutes": number or null,
  "pattern_agreed": true/false,
  "reasoning": "brief explanation"
}"""


def build_user_message(
    email: Email,
    pattern_hint: PatternMatchResult,
    examples: list[TrainingExample],
) -> str:
    """Assemble the per-email message: hint, user preferences, then headers."""
    tags = ", ".join(pattern_hint.tags) or "none"
    sections = [
        "PATTERN MATCHING HINT:\n"
        f"Our pattern matcher suggests: {pattern_hint.folder} "
        f"(confidence: {pattern_hint.confidence:.2f})\n"
        f"Detected patterns: {tags}\n\n"
        "Validate or override this suggestion based on the email content.\n"
        "- If the pattern seems correct, confirm it with your reasoning\n"
        "- If the pattern missed context (spam disguised as invoice, etc.), override it\n"
        "- You are the final authority"
    ]

    if examples:
        lines = ["USER PREFERENCES (from training):"]
        for ex in examples:
            if ex.was_correction:
                lines.append(
                    f"- {ex.from_domain}: AI suggested {ex.ai_suggestion}, "
                    f"user corrected to {ex.user_choice}"
                )
            else:
                lines.append(f"- {ex.from_domain}: {ex.user_choice} (confirmed)")
        sections.append("\n".join(lines))

    sender = f"{email.from_name} <{email.from_address}>" if email.from_name else email.from_address
    email_lines = [
        "EMAIL:",
        f"From: {sender}",
        f"Subject: {email.subject}",
    ]
    if email.date:
        email_lines.append(f"Date: {email.date.isoformat()}")
    if email.snippet:
        email_lines.append("")
        email_lines.append(email.snippet[:SNIPPET_PROMPT_LIMIT])
    sections.append("\n".join(email_lines))

    return "\n\n".join(sections)
