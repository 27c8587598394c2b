"""Tests for the zero-cost pattern matcher."""

import pytest

from mailtriage.classifier.pattern_matcher import DEFAULT_HINT, RulePatternMatcher
from mailtriage.config_schema import PatternRuleConfig, PatternRuleMatch
from mailtriage.core.domain import Email, TriageFolder


def _email(subject: str = "Hello", from_address: str = "alice@partner.com") -> Email:
    return Email(
        id=1,
        account_id=1,
        folder_id=1,
        uid=1,
        subject=subject,
        from_address=from_address,
    )


def _rule(
    name: str,
    folder: TriageFolder,
    senders: list[str] | None = None,
    subjects: list[str] | None = None,
    confidence: float = 0.95,
) -> PatternRuleConfig:
    return PatternRuleConfig(
        name=name,
        match=PatternRuleMatch(senders=senders or [], subjects=subjects or []),
        folder=folder,
        confidence=confidence,
    )


# ---------------------------------------------------------------------------
# Tests: configured rules
# ---------------------------------------------------------------------------


def test_configured_sender_rule_wins_over_heuristics():
    matcher = RulePatternMatcher([_rule("Vendor", TriageFolder.ADMIN, senders=["*@vendor.com"])])

    hint = matcher.match(_email(subject="Your invoice", from_address="billing@Vendor.com"))

    assert hint.folder == TriageFolder.ADMIN
    assert hint.confidence == 0.95
    assert hint.tags == ("rule:Vendor",)


def test_rule_with_senders_and_subjects_requires_both():
    matcher = RulePatternMatcher(
        [
            _rule(
                "Invoices",
                TriageFolder.INVOICES,
                senders=["*@billing.example.com"],
                subjects=["invoice"],
            )
        ]
    )

    assert matcher.match(_email("Invoice 42", "ap@billing.example.com")).tags == ("rule:Invoices",)
    assert matcher.match(_email("Lunch?", "ap@billing.example.com")).tags != ("rule:Invoices",)


def test_rules_evaluated_in_order():
    matcher = RulePatternMatcher(
        [
            _rule("First", TriageFolder.PLANNING, subjects=["roadmap"]),
            _rule("Second", TriageFolder.ARCHIVE, subjects=["roadmap"]),
        ]
    )

    assert matcher.match(_email("Roadmap review")).folder == TriageFolder.PLANNING


def test_empty_rule_is_ignored():
    matcher = RulePatternMatcher([_rule("Empty", TriageFolder.ARCHIVE)])
    assert matcher.match(_email()) == DEFAULT_HINT


# ---------------------------------------------------------------------------
# Tests: built-in heuristics
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("subject", "sender", "folder", "tag"),
    [
        ("Your verification code", "no-reply@bank.com", TriageFolder.INBOX, "2fa"),
        ("Ann sent you a message", "notify@linkedin.com", TriageFolder.INBOX, "social-dm"),
        ("You have new followers", "notify@instagram.com", TriageFolder.SOCIAL, "social"),
        ("[repo] CI failed", "notifications@github.com", TriageFolder.INBOX, "dev"),
        ("Your order has shipped", "orders@shop.com", TriageFolder.INBOX, "shipping"),
        ("Invoice INV-2031", "ap@supplier.com", TriageFolder.INVOICES, "invoice"),
        ("Your boarding pass", "trips@airline.com", TriageFolder.TRAVEL, "travel"),
        ("Updated terms of service", "legal@saas.com", TriageFolder.ADMIN, "admin"),
        ("The weekly roundup", "hello@news.com", TriageFolder.FEED, "newsletter"),
        ("40% off everything", "deals@store.com", TriageFolder.PROMOTIONS, "promo"),
    ],
)
def test_builtin_heuristics(subject: str, sender: str, folder: TriageFolder, tag: str):
    hint = RulePatternMatcher().match(_email(subject, sender))

    assert hint.folder == folder
    assert tag in hint.tags


def test_two_factor_code_auto_deletes():
    hint = RulePatternMatcher().match(_email("Your login code", "security@bank.com"))
    assert hint.auto_delete_after == 15


def test_shipping_hint_carries_snooze():
    hint = RulePatternMatcher().match(_email("Out for delivery today", "track@carrier.com"))
    assert hint.snooze_until is not None


def test_no_match_returns_default_hint():
    hint = RulePatternMatcher().match(_email("Coffee next week?", "friend@home.org"))

    assert hint.folder == TriageFolder.INBOX
    assert hint.confidence == 0.3
