"""
Tests for the Governance API (/api/governance/*).

Uses FastAPI TestClient against a real engine on a temporary database.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.core import governance_api
from src.core.governance_api import init_governance_api, router
from src.core.governance.payloads import RecordPayload


CONTACT = RecordPayload(object_type="contact", attributes={"name": "Ada"})
TOKEN = "owner-secret"


# ── Fixtures ──────────────────────────────────────────────────────

@pytest.fixture
def client(engine, monkeypatch):
    monkeypatch.delenv("GOVERNANCE_API_TOKEN", raising=False)
    app = FastAPI()
    app.include_router(router)
    init_governance_api(engine)
    yield TestClient(app)
    init_governance_api(None)


@pytest.fixture
def queued(engine, hierarchy):
    decision = engine.submit_action(hierarchy.client_agent.id, "create_contact", CONTACT)
    return decision.approval_id


# ── Approvals ─────────────────────────────────────────────────────

class TestApprovals:
    def test_pending_lists_queued(self, client, queued, hierarchy):
        resp = client.get("/api/governance/approvals/pending",
                          params={"approver_organization_id": hierarchy.client.id})
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        assert data["approvals"][0]["id"] == queued
        assert data["approvals"][0]["status"] == "proposed"

    def test_get_unknown_is_404(self, client):
        resp = client.get("/api/governance/approvals/nope")
        assert resp.status_code == 404
        assert resp.json()["status"] == 404

    def test_approve_runs_action(self, client, queued, fake_executor):
        resp = client.post(f"/api/governance/approvals/{queued}/approve",
                           json={"resolver": "owner", "channel": "web"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["applied"] is True
        assert data["status"] == "approved"
        assert data["execution"]["success"] is True
        assert len(fake_executor.calls) == 1

        record = client.get(f"/api/governance/approvals/{queued}").json()
        assert record["status"] == "succeeded"
        assert record["channel"] == "web"

    def test_second_approve_is_noop(self, client, queued, fake_executor):
        client.post(f"/api/governance/approvals/{queued}/approve")
        resp = client.post(f"/api/governance/approvals/{queued}/approve")
        assert resp.status_code == 200
        assert resp.json()["applied"] is False
        assert resp.json()["reason"] == "not_pending"
        assert len(fake_executor.calls) == 1

    def test_reject_ignores_always_allow(self, client, queued, engine, hierarchy):
        resp = client.post(f"/api/governance/approvals/{queued}/reject",
                           json={"always_allow": True})
        assert resp.json()["status"] == "rejected"
        agent = engine.directory.get_agent(hierarchy.client_agent.id)
        assert "create_contact" not in agent.allow_list

    def test_approve_unknown_is_404(self, client):
        assert client.post("/api/governance/approvals/nope/approve").status_code == 404

    def test_edit_applies_payload(self, client, queued, fake_executor):
        edited = {"kind": "record", "object_type": "contact", "attributes": {"name": "Grace"}}
        resp = client.post(f"/api/governance/approvals/{queued}/edit", json={"payload": edited})
        assert resp.status_code == 200
        assert fake_executor.calls[0][1].attributes == {"name": "Grace"}

    def test_edit_invalid_payload_is_422(self, client, queued):
        resp = client.post(f"/api/governance/approvals/{queued}/edit",
                           json={"payload": {"kind": "record", "attributes": "nope"}})
        assert resp.status_code == 422

    def test_sweep(self, client):
        resp = client.post("/api/governance/approvals/sweep")
        assert resp.status_code == 200
        assert resp.json() == {"expired": [], "total": 0}


# ── Auth ──────────────────────────────────────────────────────────

class TestAuth:
    def test_mutation_requires_token_when_configured(self, client, queued, env_override):
        env_override(GOVERNANCE_API_TOKEN=TOKEN)
        assert client.post(f"/api/governance/approvals/{queued}/approve").status_code == 401
        bad = client.post(f"/api/governance/approvals/{queued}/approve",
                          headers={"Authorization": "Bearer wrong"})
        assert bad.status_code == 401

    def test_valid_token_accepted(self, client, queued, env_override):
        env_override(GOVERNANCE_API_TOKEN=TOKEN)
        resp = client.post(f"/api/governance/approvals/{queued}/approve",
                           headers={"Authorization": f"Bearer {TOKEN}"})
        assert resp.status_code == 200

    def test_reads_do_not_require_token(self, client, env_override):
        env_override(GOVERNANCE_API_TOKEN=TOKEN)
        assert client.get("/api/governance/approvals/pending").status_code == 200


def test_not_initialised_is_503():
    app = FastAPI()
    app.include_router(router)
    init_governance_api(None)
    client = TestClient(app)
    assert governance_api._engine is None
    assert client.get("/api/governance/approvals/pending").status_code == 503


# ── Agents & organizations ────────────────────────────────────────

class TestAgents:
    def test_history(self, client, queued, hierarchy):
        resp = client.get(f"/api/governance/agents/{hierarchy.client_agent.id}/history")
        assert resp.status_code == 200
        assert resp.json()["history"][0]["id"] == queued

    def test_history_unknown_agent(self, client):
        assert client.get("/api/governance/agents/ghost/history").status_code == 404

    def test_soul_history_and_rollback(self, client, engine, hierarchy):
        agent = hierarchy.customer_agent
        proposal = engine.governor.propose(agent.id, "faqs", "add", "Parking is free")
        engine.resolve(proposal.approval_id, "approve", "owner")

        versions = client.get(f"/api/governance/agents/{agent.id}/soul/history").json()
        assert [v["version"] for v in versions["versions"]] == [2, 1]

        resp = client.post(f"/api/governance/agents/{agent.id}/soul/rollback",
                           json={"version": 1})
        assert resp.status_code == 200
        body = resp.json()
        assert body["version"]["version"] == 3
        assert body["version"]["restored_version"] == 1
        assert body["version"]["soul"] == agent.soul

    def test_rollback_unknown_version(self, client, hierarchy):
        resp = client.post(
            f"/api/governance/agents/{hierarchy.customer_agent.id}/soul/rollback",
            json={"version": 42},
        )
        assert resp.status_code == 404


def test_inbox(client, engine, hierarchy):
    message = engine.router.escalate(hierarchy.customer_agent, "Refund request")
    resp = client.get(f"/api/governance/organizations/{hierarchy.client.id}/inbox",
                      params={"status": "pending"})
    assert resp.status_code == 200
    assert [m["id"] for m in resp.json()["messages"]] == [message.id]
    empty = client.get(f"/api/governance/organizations/{hierarchy.client.id}/inbox",
                       params={"status": "resolved"})
    assert empty.json()["total"] == 0
