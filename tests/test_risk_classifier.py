"""Tests for the RiskClassifier."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.core.governance.config import RiskClassificationConfig, load_governance_config
from src.core.governance.models import AgentContext, RiskFactor, RiskTier, StaticRisk
from src.core.governance.payloads import MessagePayload, PricingPayload, QueryPayload
from src.core.governance.risk_classifier import RiskClassifier


CONFIG_PATH = os.path.join(os.path.dirname(__file__), "..", "config", "governance.yaml")


@pytest.fixture
def config():
    cfg = load_governance_config(CONFIG_PATH).risk_classification
    return cfg.model_copy(update={
        "competitor_terms": ["acme corp"],
        "internal_domains": ["example.com"],
    })


@pytest.fixture
def classifier(config):
    return RiskClassifier(config)


@pytest.fixture
def veteran():
    """An agent that has used every action before."""
    return AgentContext(used_actions=frozenset({
        "search_contacts", "create_contact", "send_bulk_email", "list_products",
    }))


# ── Static risk ─────────────────────────────────────────────────

def test_unknown_action_defaults_to_write(classifier):
    assert classifier.static_risk("launch_rocket") == StaticRisk.WRITE
    result = classifier.classify("launch_rocket", {})
    assert result.static_risk == StaticRisk.WRITE
    assert result.tier == RiskTier.MEDIUM


def test_destructive_is_always_high(classifier, veteran):
    result = classifier.classify("send_bulk_email", MessagePayload(body="hello"), veteran)
    assert result.tier == RiskTier.HIGH
    assert result.factors == ()


def test_write_without_factors_is_medium(classifier, veteran):
    payload = MessagePayload(recipients=["a@example.com"], body="Welcome aboard")
    result = classifier.classify("create_contact", payload, veteran)
    assert result.tier == RiskTier.MEDIUM


def test_write_with_one_factor_is_high(classifier, veteran):
    payload = MessagePayload(body="Our new pricing starts next week")
    result = classifier.classify("create_contact", payload, veteran)
    assert RiskFactor.PRICING_MENTION in result.factors
    assert result.tier == RiskTier.HIGH


def test_read_only_with_one_factor_is_low(classifier, veteran):
    result = classifier.classify("search_contacts", QueryPayload(query="refund requests"), veteran)
    assert result.factor_names == ["pricing_mention"]
    assert result.tier == RiskTier.LOW


def test_read_only_with_two_factors_is_medium(classifier, veteran):
    payload = QueryPayload(query="customers who mentioned acme corp discount")
    result = classifier.classify("search_contacts", payload, veteran)
    assert set(result.factors) == {RiskFactor.PRICING_MENTION, RiskFactor.COMPETITOR_MENTION}
    assert result.tier == RiskTier.MEDIUM


# ── Detectors ───────────────────────────────────────────────────

def test_competitor_names_from_agent_context(classifier):
    context = AgentContext(used_actions=frozenset({"search_contacts"}), competitor_names=("Globex",))
    result = classifier.classify("search_contacts", QueryPayload(query="switching from globex"), context)
    assert RiskFactor.COMPETITOR_MENTION in result.factors


def test_negative_sentiment(classifier, veteran):
    result = classifier.classify("search_contacts", QueryPayload(query="this is unacceptable"), veteran)
    assert RiskFactor.NEGATIVE_SENTIMENT in result.factors


def test_internal_links_are_not_external(classifier, veteran):
    payload = MessagePayload(body="See https://help.example.com/faq and www.example.com")
    result = classifier.classify("create_contact", payload, veteran)
    assert RiskFactor.EXTERNAL_URL not in result.factors


def test_external_link_detected(classifier, veteran):
    payload = MessagePayload(links=["https://evil.test/login"])
    result = classifier.classify("create_contact", payload, veteran)
    assert RiskFactor.EXTERNAL_URL in result.factors


def test_bulk_recipients_threshold(classifier, veteran):
    few = MessagePayload(recipients=[f"u{i}@example.com" for i in range(9)])
    many = MessagePayload(recipients=[f"u{i}@example.com" for i in range(10)])
    assert RiskFactor.BULK_RECIPIENTS not in classifier.classify("create_contact", few, veteran).factors
    assert RiskFactor.BULK_RECIPIENTS in classifier.classify("create_contact", many, veteran).factors


def test_first_time_use(classifier):
    fresh = AgentContext()
    result = classifier.classify("list_products", QueryPayload(query="shoes"), fresh)
    assert result.factors == (RiskFactor.FIRST_TIME_USE,)
    assert result.tier == RiskTier.LOW


def test_first_time_use_skipped_without_context(classifier):
    result = classifier.classify("list_products", QueryPayload(query="shoes"))
    assert result.factors == ()


def test_pricing_payload_always_mentions_pricing(classifier, veteran):
    result = classifier.classify("set_product_price", PricingPayload(product="Widget", amount=9.5), veteran)
    assert RiskFactor.PRICING_MENTION in result.factors
    assert result.tier == RiskTier.HIGH


def test_raw_dict_payload_is_classified(classifier, veteran):
    raw = {"kind": "message", "recipients": ["a@example.com"], "body": "50% off today"}
    result = classifier.classify("create_contact", raw, veteran)
    assert RiskFactor.PRICING_MENTION in result.factors


# ── Totality ────────────────────────────────────────────────────

class _Unprintable:
    def __str__(self):
        raise RuntimeError("no")


def test_never_raises_on_garbage(classifier):
    for payload in (None, 42, "text", ["a", 1], {"kind": "message", "recipients": 5},
                    {"nested": {"deep": [1, 2, {"x": None}]}}, _Unprintable()):
        result = classifier.classify("search_contacts", payload, AgentContext())
        assert result.tier in set(RiskTier)


def test_internal_error_degrades_to_write(classifier, monkeypatch):
    def boom(text, terms):
        raise RuntimeError("detector crashed")

    monkeypatch.setattr(classifier, "_mentions", boom)
    result = classifier.classify("search_contacts", QueryPayload(query="x"), AgentContext())
    assert result.static_risk == StaticRisk.WRITE
    assert result.tier in (RiskTier.MEDIUM, RiskTier.HIGH)


# ── Monotonicity ────────────────────────────────────────────────

@pytest.mark.parametrize("action", ["search_contacts", "create_contact", "send_bulk_email", "unknown"])
def test_adding_factors_never_lowers_tier(classifier, veteran, action):
    texts = [
        "hello there",
        "hello there, 20% off",
        "hello there, 20% off, acme corp is worse",
        "hello there, 20% off, acme corp is terrible https://evil.test",
    ]
    ranks = [
        classifier.classify(action, MessagePayload(body=t), veteran).tier.rank
        for t in texts
    ]
    assert ranks == sorted(ranks)


def test_tier_table_is_monotone_in_factor_count():
    for static in StaticRisk:
        tiers = [RiskClassifier._resolve_tier(static, n).rank for n in range(6)]
        assert tiers == sorted(tiers)


def test_default_config_without_yaml():
    classifier = RiskClassifier(RiskClassificationConfig())
    assert classifier.static_risk("process_payment") == StaticRisk.DESTRUCTIVE
    assert "search_contacts" in classifier.known_actions
