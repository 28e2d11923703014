"""Tests for the AutonomyPolicy decision table."""

import itertools
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.core.governance.autonomy_policy import AutonomyPolicy
from src.core.governance.config import RiskClassificationConfig
from src.core.governance.models import (
    Agent,
    AgentContext,
    ApprovalMode,
    AutonomyLevel,
    Organization,
    PolicyOutcome,
    RiskAssessment,
    RiskTier,
    StaticRisk,
)
from src.core.governance.payloads import RecordPayload
from src.core.governance.risk_classifier import RiskClassifier


def _agent(level=AutonomyLevel.SUPERVISED, block=(), allow=()):
    return Agent(
        id="agent-1",
        organization_id="org-1",
        autonomy_level=level,
        block_list=frozenset(block),
        allow_list=frozenset(allow),
    )


def _org(mode=ApprovalMode.DANGEROUS):
    return Organization(id="org-1", slug="acme", approval_mode=mode)


def _risk(tier=RiskTier.MEDIUM, static=StaticRisk.WRITE):
    return RiskAssessment(tier=tier, static_risk=static)


@pytest.fixture
def policy():
    return AutonomyPolicy()


# ── Precedence ──────────────────────────────────────────────────

def test_draft_only_blocks_writes(policy):
    d = policy.decide(_agent(AutonomyLevel.DRAFT_ONLY, allow=["create_contact"]),
                      _org(ApprovalMode.NONE), "create_contact", _risk())
    assert d.decision == PolicyOutcome.BLOCK


def test_draft_only_may_read(policy):
    d = policy.decide(_agent(AutonomyLevel.DRAFT_ONLY), _org(),
                      "search_contacts", _risk(RiskTier.LOW, StaticRisk.READ_ONLY))
    assert d.decision == PolicyOutcome.EXECUTE


def test_draft_only_read_still_honors_block_list(policy):
    d = policy.decide(_agent(AutonomyLevel.DRAFT_ONLY, block=["search_contacts"]), _org(),
                      "search_contacts", _risk(RiskTier.LOW, StaticRisk.READ_ONLY))
    assert d.decision == PolicyOutcome.QUEUE


def test_block_list_queues_even_for_autonomous(policy):
    d = policy.decide(_agent(AutonomyLevel.AUTONOMOUS, block=["create_contact"]),
                      _org(ApprovalMode.NONE), "create_contact", _risk(RiskTier.LOW))
    assert d.decision == PolicyOutcome.QUEUE


def test_allow_list_beats_org_mode_all(policy):
    d = policy.decide(_agent(allow=["send_invoice"]), _org(ApprovalMode.ALL),
                      "send_invoice", _risk(RiskTier.HIGH, StaticRisk.DESTRUCTIVE))
    assert d.decision == PolicyOutcome.EXECUTE


def test_org_mode_all_queues_autonomous(policy):
    d = policy.decide(_agent(AutonomyLevel.AUTONOMOUS), _org(ApprovalMode.ALL),
                      "search_contacts", _risk(RiskTier.LOW, StaticRisk.READ_ONLY))
    assert d.decision == PolicyOutcome.QUEUE


def test_org_mode_none_executes_supervised(policy):
    d = policy.decide(_agent(AutonomyLevel.SUPERVISED), _org(ApprovalMode.NONE),
                      "send_bulk_email", _risk(RiskTier.HIGH, StaticRisk.DESTRUCTIVE))
    assert d.decision == PolicyOutcome.EXECUTE


def test_supervised_queues(policy):
    d = policy.decide(_agent(AutonomyLevel.SUPERVISED), _org(),
                      "search_contacts", _risk(RiskTier.LOW, StaticRisk.READ_ONLY))
    assert d.decision == PolicyOutcome.QUEUE


@pytest.mark.parametrize("tier,expected", [
    (RiskTier.LOW, PolicyOutcome.EXECUTE),
    (RiskTier.MEDIUM, PolicyOutcome.QUEUE),
    (RiskTier.HIGH, PolicyOutcome.QUEUE),
])
def test_semi_autonomous_executes_only_low(policy, tier, expected):
    static = StaticRisk.READ_ONLY if tier == RiskTier.LOW else StaticRisk.WRITE
    d = policy.decide(_agent(AutonomyLevel.SEMI_AUTONOMOUS), _org(),
                      "some_action", _risk(tier, static))
    assert d.decision == expected


def test_autonomous_executes_high_risk_writes(policy):
    d = policy.decide(_agent(AutonomyLevel.AUTONOMOUS), _org(),
                      "create_contact", _risk(RiskTier.HIGH, StaticRisk.WRITE))
    assert d.decision == PolicyOutcome.EXECUTE


def test_autonomous_dangerous_destructive_queues(policy):
    d = policy.decide(_agent(AutonomyLevel.AUTONOMOUS), _org(ApprovalMode.DANGEROUS),
                      "send_bulk_email", _risk(RiskTier.HIGH, StaticRisk.DESTRUCTIVE))
    assert d.decision == PolicyOutcome.QUEUE
    assert "destructive" in d.reason


# ── Invariants ──────────────────────────────────────────────────

def test_block_list_beats_allow_list_everywhere(policy):
    """An action on both lists always queues, except where draft_only blocks first."""
    for level, mode, tier, static in itertools.product(
        AutonomyLevel, ApprovalMode, RiskTier, StaticRisk
    ):
        agent = _agent(level, block=["act"], allow=["act"])
        d = policy.decide(agent, _org(mode), "act", _risk(tier, static))
        if level == AutonomyLevel.DRAFT_ONLY and static != StaticRisk.READ_ONLY:
            assert d.decision == PolicyOutcome.BLOCK
        else:
            assert d.decision == PolicyOutcome.QUEUE, (level, mode, tier, static)


def test_every_combination_decides(policy):
    for level, mode, tier, static in itertools.product(
        AutonomyLevel, ApprovalMode, RiskTier, StaticRisk
    ):
        d = policy.decide(_agent(level), _org(mode), "act", _risk(tier, static))
        assert d.decision in set(PolicyOutcome)
        assert d.reason


# ── Scenarios with the real classifier ──────────────────────────

@pytest.fixture
def classifier():
    return RiskClassifier(RiskClassificationConfig())


def test_semi_autonomous_create_contact_queues(policy, classifier):
    context = AgentContext(used_actions=frozenset({"create_contact"}))
    assessment = classifier.classify(
        "create_contact", RecordPayload(object_type="contact", attributes={"name": "Ada"}), context
    )
    assert assessment.tier == RiskTier.MEDIUM
    d = policy.decide(_agent(AutonomyLevel.SEMI_AUTONOMOUS), _org(), "create_contact", assessment)
    assert d.decision == PolicyOutcome.QUEUE


def test_autonomous_dangerous_bulk_email_queues_without_allow_entry(policy, classifier):
    assessment = classifier.classify("send_bulk_email", {"kind": "message", "body": "hi"})
    assert assessment.static_risk == StaticRisk.DESTRUCTIVE
    d = policy.decide(_agent(AutonomyLevel.AUTONOMOUS), _org(ApprovalMode.DANGEROUS),
                      "send_bulk_email", assessment)
    assert d.decision == PolicyOutcome.QUEUE
