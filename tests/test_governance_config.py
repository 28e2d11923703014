"""Tests for the governance config loader."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.core.governance.config import (
    GovernanceConfig,
    LedgerConfig,
    NotificationConfig,
    RiskClassificationConfig,
    SelfModificationConfig,
    load_governance_config,
)
from src.core.governance.models import StaticRisk


# Path to the real config file
CONFIG_PATH = os.path.join(os.path.dirname(__file__), "..", "config", "governance.yaml")


def test_load_real_config():
    """load_governance_config() loads the real config/governance.yaml successfully."""
    config = load_governance_config(CONFIG_PATH)
    assert isinstance(config, GovernanceConfig)
    assert config.version == "1.0"


def test_real_config_matches_defaults():
    """The shipped YAML restates the built-in defaults."""
    assert load_governance_config(CONFIG_PATH) == GovernanceConfig()


def test_static_risk_parsed_as_enum():
    config = load_governance_config(CONFIG_PATH)
    assert config.risk_classification.static_risk["search_contacts"] == StaticRisk.READ_ONLY
    assert config.risk_classification.static_risk["send_invoice"] == StaticRisk.DESTRUCTIVE


def test_ttls():
    config = load_governance_config(CONFIG_PATH)
    assert config.ledger.action_ttl_hours == 24
    assert config.ledger.self_modification_ttl_hours == 72


def test_missing_file_returns_defaults(tmp_path):
    config = load_governance_config(str(tmp_path / "nope.yaml"))
    assert config == GovernanceConfig()


def test_empty_file_returns_defaults(tmp_path):
    path = tmp_path / "governance.yaml"
    path.write_text("")
    assert load_governance_config(str(path)) == GovernanceConfig()


def test_invalid_file_returns_defaults(tmp_path, caplog):
    path = tmp_path / "governance.yaml"
    path.write_text("ledger:\n  action_ttl_hours: -1\n")
    assert load_governance_config(str(path)) == GovernanceConfig()
    assert "Failed to load governance config" in caplog.text


def test_partial_file_keeps_other_defaults(tmp_path):
    path = tmp_path / "governance.yaml"
    path.write_text("self_modification:\n  max_proposals_per_window: 7\n")
    config = load_governance_config(str(path))
    assert config.self_modification.max_proposals_per_window == 7
    assert config.self_modification.max_pending_proposals == 5
    assert config.ledger == LedgerConfig()


def test_env_var_locates_config(tmp_path, env_override):
    path = tmp_path / "custom.yaml"
    path.write_text("ledger:\n  action_ttl_hours: 6\n")
    env_override(GOVERNANCE_CONFIG=str(path))
    assert load_governance_config().ledger.action_ttl_hours == 6


def test_bulk_threshold_rejects_one():
    with pytest.raises(Exception):
        RiskClassificationConfig(bulk_recipient_threshold=1)


def test_ttl_rejects_zero():
    with pytest.raises(Exception):
        LedgerConfig(action_ttl_hours=0)


def test_proposal_limit_rejects_zero():
    with pytest.raises(Exception):
        SelfModificationConfig(max_pending_proposals=0)


def test_queue_depth_rejects_zero():
    with pytest.raises(Exception):
        NotificationConfig(queue_max_depth=0)


def test_proposal_pacing_defaults():
    config = load_governance_config(CONFIG_PATH).self_modification
    assert config.max_proposals_per_week == 10
    assert config.rejection_cooldown_hours == 24
    assert config.proposal_cooldown_hours == 4


def test_cooldown_rejects_negative():
    with pytest.raises(Exception):
        SelfModificationConfig(proposal_cooldown_hours=-1)
