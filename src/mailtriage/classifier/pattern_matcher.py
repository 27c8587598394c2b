"""Zero-cost pattern matching that produces a folder hint before the LLM call.

Configured rules from config.yaml (`pattern_rules`) are evaluated first, in
order. Sender patterns use fnmatch (glob-style: *@domain.com) and subject
patterns use case-insensitive substring search; when a rule specifies both,
both must match.

If no configured rule matches, built-in heuristics run against the subject
and sender: 2FA codes, social and developer platforms, shipping, invoices,
travel, admin, newsletters and promotions. Heuristics use the `regex`
library with a timeout so a pathological subject cannot stall the batch.

Usage:
    from mailtriage.classifier.pattern_matcher import RulePatternMatcher

    matcher = RulePatternMatcher(config.pattern_rules)
    hint = matcher.match(email)
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from fnmatch import fnmatch
from typing import TYPE_CHECKING

import regex

from mailtriage.core.domain import PatternMatchResult, TriageFolder, extract_domain
from mailtriage.core.logging import get_logger

if TYPE_CHECKING:
    from mailtriage.config_schema import PatternRuleConfig
    from mailtriage.core.domain import Email

logger = get_logger(__name__)

# Regex timeout (seconds) per heuristic
_REGEX_TIMEOUT = 1

DEFAULT_HINT = PatternMatchResult(folder=TriageFolder.INBOX, confidence=0.3)

SOCIAL_DOMAINS = (
    "facebook.com",
    "facebookmail.com",
    "instagram.com",
    "linkedin.com",
    "twitter.com",
    "x.com",
    "reddit.com",
    "tiktok.com",
    "pinterest.com",
    "mastodon.social",
)

DEV_DOMAINS = (
    "github.com",
    "gitlab.com",
    "bitbucket.org",
    "atlassian.net",
    "vercel.com",
    "netlify.com",
    "sentry.io",
    "circleci.com",
)

_TWO_FA = regex.compile(
    r"\b(?:verification|security|login|one[- ]time|2fa|two[- ]factor)\s+(?:code|pin|passcode)\b"
    r"|\byour\s+code\s+is\b|\botp\b",
    regex.IGNORECASE,
)
_SOCIAL_DM = regex.compile(
    r"\b(?:sent\s+you\s+a\s+(?:message|dm)|new\s+message\s+from|direct\s+message|messaged\s+you)\b",
    regex.IGNORECASE,
)
_SHIPPING = regex.compile(
    r"\b(?:shipped|shipping\s+(?:update|confirmation)|out\s+for\s+delivery|delivered"
    r"|tracking\s+(?:number|info)|your\s+(?:order|package)\s+(?:is|has))\b",
    regex.IGNORECASE,
)
_INVOICE = regex.compile(
    r"\b(?:invoice|receipt|payment\s+(?:received|confirmation)|order\s+confirmation"
    r"|billing\s+statement|your\s+bill)\b",
    regex.IGNORECASE,
)
_TRAVEL = regex.compile(
    r"\b(?:flight|boarding\s+pass|itinerary|hotel\s+(?:booking|reservation)|check[- ]in"
    r"|e-?ticket|booking\s+confirmation)\b",
    regex.IGNORECASE,
)
_ADMIN = regex.compile(
    r"\b(?:contract|terms\s+of\s+service|privacy\s+policy|account\s+(?:update|information)"
    r"|support\s+ticket|ticket\s+#?\d+|agreement)\b",
    regex.IGNORECASE,
)
_NEWSLETTER = regex.compile(
    r"\b(?:newsletter|digest|weekly\s+roundup|issue\s+#?\d+|unsubscribe)\b"
    r"|@(?:substack\.com|beehiiv\.com|mailchimp\.com)",
    regex.IGNORECASE,
)
_PROMO = regex.compile(
    r"\b(?:\d{1,2}%\s+off|sale|discount|promo(?:tion)?|coupon|deal|limited\s+time"
    r"|free\s+shipping|special\s+offer)\b",
    regex.IGNORECASE,
)

# 30 days / 7 days, in minutes
_DEV_AUTO_DELETE = 30 * 24 * 60
_PROMO_AUTO_DELETE = 7 * 24 * 60


class RulePatternMatcher:
    """Pattern matcher combining configured rules and built-in heuristics.

    Never raises: a heuristic that times out is treated as a non-match.
    """

    def __init__(self, rules: list[PatternRuleConfig] | None = None):
        self._rules = rules or []

    def update_rules(self, rules: list[PatternRuleConfig]) -> None:
        """Apply hot-reloaded configured rules."""
        self._rules = rules

    def match(self, email: Email) -> PatternMatchResult:
        """Produce a folder hint for one email.

        Returns:
            The first configured rule match, else the first heuristic match,
            else an INBOX hint with confidence 0.3
        """
        configured = self._match_configured(email)
        if configured is not None:
            return configured
        return self._match_builtin(email)

    def _match_configured(self, email: Email) -> PatternMatchResult | None:
        sender_lower = email.from_address.lower()
        subject_lower = email.subject.lower()

        for rule in self._rules:
            has_senders = bool(rule.match.senders)
            has_subjects = bool(rule.match.subjects)
            if not has_senders and not has_subjects:
                continue

            sender_matched = _match_senders(sender_lower, rule.match.senders)
            subject_matched = _match_subjects(subject_lower, rule.match.subjects)

            if has_senders and has_subjects:
                matched = sender_matched and subject_matched
            else:
                matched = sender_matched or subject_matched

            if matched:
                logger.debug(
                    "pattern_rule_matched",
                    rule=rule.name,
                    sender_domain=extract_domain(email.from_address),
                    folder=str(rule.folder),
                )
                return PatternMatchResult(
                    folder=rule.folder,
                    confidence=rule.confidence,
                    tags=(f"rule:{rule.name}",),
                )
        return None

    def _match_builtin(self, email: Email) -> PatternMatchResult:
        text = f"{email.subject} {email.from_address}"
        domain = extract_domain(email.from_address)

        if _search(_TWO_FA, text):
            return PatternMatchResult(
                folder=TriageFolder.INBOX, confidence=0.95, tags=("2fa",), auto_delete_after=15
            )

        if _domain_in(domain, SOCIAL_DOMAINS):
            if _search(_SOCIAL_DM, text):
                return PatternMatchResult(
                    folder=TriageFolder.INBOX, confidence=0.9, tags=("social-dm",)
                )
            return PatternMatchResult(folder=TriageFolder.SOCIAL, confidence=0.85, tags=("social",))

        if _domain_in(domain, DEV_DOMAINS):
            return PatternMatchResult(
                folder=TriageFolder.INBOX,
                confidence=0.8,
                tags=("dev",),
                auto_delete_after=_DEV_AUTO_DELETE,
            )

        if _search(_SHIPPING, text):
            return PatternMatchResult(
                folder=TriageFolder.INBOX,
                confidence=0.85,
                tags=("shipping",),
                snooze_until=datetime.now(UTC) + timedelta(days=3),
            )

        if _search(_INVOICE, text):
            return PatternMatchResult(
                folder=TriageFolder.INVOICES, confidence=0.85, tags=("invoice",)
            )

        if _search(_TRAVEL, text):
            return PatternMatchResult(folder=TriageFolder.TRAVEL, confidence=0.85, tags=("travel",))

        if _search(_ADMIN, text):
            return PatternMatchResult(folder=TriageFolder.ADMIN, confidence=0.75, tags=("admin",))

        if _search(_NEWSLETTER, text):
            return PatternMatchResult(
                folder=TriageFolder.FEED, confidence=0.85, tags=("newsletter",)
            )

        if _search(_PROMO, text):
            return PatternMatchResult(
                folder=TriageFolder.PROMOTIONS,
                confidence=0.8,
                tags=("promo",),
                auto_delete_after=_PROMO_AUTO_DELETE,
            )

        return DEFAULT_HINT


def _search(pattern: regex.Pattern, text: str) -> bool:
    try:
        return pattern.search(text, timeout=_REGEX_TIMEOUT) is not None
    except TimeoutError:
        logger.warning("pattern_heuristic_timeout", pattern=pattern.pattern[:40])
        return False


def _domain_in(domain: str, known: tuple[str, ...]) -> bool:
    return any(domain == d or domain.endswith(f".{d}") for d in known)


def _match_senders(sender_lower: str, patterns: list[str]) -> bool:
    return any(fnmatch(sender_lower, pattern.lower()) for pattern in patterns)


def _match_subjects(subject_lower: str, keywords: list[str]) -> bool:
    return any(keyword.lower() in subject_lower for keyword in keywords)
