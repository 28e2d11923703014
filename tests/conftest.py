"""
Governance Test Configuration
Provides shared fixtures: isolated databases, a configured engine, a small
organization hierarchy, and fake executor / notifier collaborators.
"""
import os
import sys
from types import SimpleNamespace

import pytest

# Ensure project root is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.core.governance.config import GovernanceConfig, RiskClassificationConfig
from src.core.governance.engine import GovernanceEngine
from src.core.governance.models import (
    AgentRole,
    AutonomyLevel,
    ExecutionResult,
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class FakeExecutor:
    """Records every call. Set fail=True to report failure, raises=... to throw."""

    def __init__(self):
        self.calls = []
        self.fail = False
        self.raises = None

    def execute_action(self, action, payload):
        self.calls.append((action, payload))
        if self.raises is not None:
            raise self.raises
        if self.fail:
            return ExecutionResult(success=False, error="executor said no")
        return ExecutionResult(success=True, data={"action": action})


class FakeNotifier:
    def __init__(self):
        self.records = []
        self.fail = False

    def notify_approval_created(self, record):
        if self.fail:
            raise RuntimeError("smtp down")
        self.records.append(record)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def tmp_data_dir(tmp_path):
    """Provide an isolated temporary data directory for a test."""
    data_dir = tmp_path / "governance_data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def env_override(monkeypatch):
    """Factory fixture to set env vars scoped to a single test.

    Usage:
        def test_something(env_override):
            env_override(GOVERNANCE_API_TOKEN="test-token")
    """
    def _set(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key, value)
    return _set


@pytest.fixture
def db_path(tmp_data_dir):
    return tmp_data_dir / "governance.db"


@pytest.fixture
def governance_config():
    return GovernanceConfig(
        risk_classification=RiskClassificationConfig(
            competitor_terms=["acme corp"],
            internal_domains=["example.com"],
        ),
    )


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


@pytest.fixture
def engine(db_path, governance_config, fake_executor, fake_notifier):
    eng = GovernanceEngine(
        db_path,
        config=governance_config,
        executor=fake_executor,
        notifier=fake_notifier,
    )
    yield eng
    eng.close()


@pytest.fixture
def hierarchy(engine):
    """platform → agency → client → sub-client, plus one agent per layer."""
    platform = engine.create_organization("platform", name="Platform")
    agency = engine.create_organization("agency", name="Agency")
    client = engine.create_organization("client", name="Client", parent_id=agency.id)
    sub_client = engine.create_organization("sub-client", parent_id=client.id)

    platform_agent = engine.create_agent(
        platform.id, name="system", role=AgentRole.PLATFORM_SYSTEM,
        autonomy_level=AutonomyLevel.AUTONOMOUS, protected=True,
    )
    agency_agent = engine.create_agent(
        agency.id, name="agency-coordinator", role=AgentRole.COORDINATOR,
        autonomy_level=AutonomyLevel.SUPERVISED,
    )
    client_agent = engine.create_agent(
        client.id, name="client-coordinator", role=AgentRole.COORDINATOR,
        autonomy_level=AutonomyLevel.SEMI_AUTONOMOUS,
    )
    sub_client_agent = engine.create_agent(
        sub_client.id, name="sub-coordinator", role=AgentRole.COORDINATOR,
    )
    customer_agent = engine.create_agent(
        client.id, name="front-desk", role=AgentRole.CUSTOMER_FACING,
        autonomy_level=AutonomyLevel.SUPERVISED,
        soul={"faqs": ["We open at 9am"], "tone": "friendly"},
    )
    return SimpleNamespace(
        platform=platform,
        agency=agency,
        client=client,
        sub_client=sub_client,
        platform_agent=platform_agent,
        agency_agent=agency_agent,
        client_agent=client_agent,
        sub_client_agent=sub_client_agent,
        customer_agent=customer_agent,
    )
