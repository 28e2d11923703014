"""
Governance API — /api/governance/*

Human resolution and admin endpoints over the GovernanceEngine.

Endpoints:
    GET  /approvals/pending                 — pending records (filter by agent / org / approver)
    GET  /approvals/{id}                    — one record
    POST /approvals/{id}/approve            — approve (optionally always-allow)
    POST /approvals/{id}/reject             — reject
    POST /approvals/{id}/edit               — approve with an edited payload
    POST /approvals/sweep                   — expire overdue records
    GET  /agents/{id}/history               — approval history for an agent
    GET  /agents/{id}/soul/history          — soul version history
    POST /agents/{id}/soul/rollback         — restore a soul version as a new version
    GET  /organizations/{id}/inbox          — escalations / delegations / insights

All mutation endpoints require the owner Bearer token (GOVERNANCE_API_TOKEN).
"""

from __future__ import annotations

import hmac
import logging
import os
from typing import Any, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.core.governance.errors import (
    InvalidPayload,
    UnknownAgent,
    UnknownApproval,
    UnknownVersion,
)
from src.core.governance.models import ResolutionOutcome
from src.core.layers.models import MessageStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/governance", tags=["governance"])

_engine = None


def init_governance_api(engine) -> None:
    """Wire the GovernanceEngine instance."""
    global _engine
    _engine = engine
    logger.info("Governance API initialised (engine=%s)", engine is not None)


def _safe_error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "status": status_code})


def _verify_owner(request: Request) -> bool:
    """Check that the request comes from the owner (Bearer token)."""
    api_token = os.environ.get("GOVERNANCE_API_TOKEN", "")
    if not api_token:
        logger.warning(
            "SECURITY: Governance API running in dev mode — no authentication token configured. "
            "Set GOVERNANCE_API_TOKEN for production."
        )
        return True
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return hmac.compare_digest(auth_header[7:], api_token)
    return False


# ── Request bodies ───────────────────────────────────────────────

class ResolveRequest(BaseModel):
    resolver: str = "owner"
    channel: str = "api"
    always_allow: bool = False


class EditRequest(BaseModel):
    payload: dict[str, Any]
    resolver: str = "owner"
    channel: str = "api"
    always_allow: bool = False


class RollbackRequest(BaseModel):
    version: int
    requested_by: str = "owner"


def _resolution_response(resolution) -> dict:
    transition = resolution.transition
    body: dict = {
        "id": transition.approval_id,
        "applied": transition.applied,
        "status": transition.status.value,
        "reason": transition.reason,
    }
    if resolution.execution is not None:
        body["execution"] = {
            "success": resolution.execution.success,
            "data": resolution.execution.data,
            "error": resolution.execution.error,
        }
    return body


# ── Approvals ────────────────────────────────────────────────────

@router.get("/approvals/pending")
async def pending_approvals(
    agent_id: Optional[str] = Query(None),
    organization_id: Optional[str] = Query(None),
    approver_organization_id: Optional[str] = Query(None),
):
    """Pending approval records, oldest first."""
    if _engine is None:
        return _safe_error(503, "Governance engine not initialised")
    try:
        records = _engine.list_pending(
            agent_id=agent_id,
            organization_id=organization_id,
            approver_organization_id=approver_organization_id,
        )
        return {"approvals": [r.to_dict() for r in records], "total": len(records)}
    except Exception as exc:
        logger.error("pending_approvals error: %s", exc)
        return _safe_error(500, "Failed to get approvals")


@router.get("/approvals/{approval_id}")
async def get_approval(approval_id: str):
    if _engine is None:
        return _safe_error(503, "Governance engine not initialised")
    try:
        return _engine.get_approval(approval_id).to_dict()
    except UnknownApproval:
        return _safe_error(404, f"Approval {approval_id} not found")
    except Exception as exc:
        logger.error("get_approval error: %s", exc)
        return _safe_error(500, "Failed to get approval")


async def _resolve(approval_id: str, outcome: ResolutionOutcome, request: Request, body: ResolveRequest):
    if not _verify_owner(request):
        return _safe_error(401, "Unauthorized")
    if _engine is None:
        return _safe_error(503, "Governance engine not initialised")
    try:
        resolution = _engine.resolve(
            approval_id,
            outcome,
            resolver=body.resolver,
            channel=body.channel,
            always_allow=body.always_allow,
        )
        return _resolution_response(resolution)
    except UnknownApproval:
        return _safe_error(404, f"Approval {approval_id} not found")
    except Exception as exc:
        logger.error("resolve %s error: %s", outcome.value, exc)
        return _safe_error(500, "Failed to resolve approval")


@router.post("/approvals/{approval_id}/approve")
async def approve_item(approval_id: str, request: Request, body: Optional[ResolveRequest] = None):
    """Approve a pending record and run it."""
    return await _resolve(approval_id, ResolutionOutcome.APPROVE, request, body or ResolveRequest())


@router.post("/approvals/{approval_id}/reject")
async def reject_item(approval_id: str, request: Request, body: Optional[ResolveRequest] = None):
    """Reject a pending record."""
    body = body or ResolveRequest()
    body.always_allow = False
    return await _resolve(approval_id, ResolutionOutcome.REJECT, request, body)


@router.post("/approvals/{approval_id}/edit")
async def edit_item(approval_id: str, request: Request, body: EditRequest):
    """Approve a pending record with an edited payload."""
    if not _verify_owner(request):
        return _safe_error(401, "Unauthorized")
    if _engine is None:
        return _safe_error(503, "Governance engine not initialised")
    try:
        resolution = _engine.resolve(
            approval_id,
            ResolutionOutcome.APPROVE,
            resolver=body.resolver,
            channel=body.channel,
            edited_payload=body.payload,
            always_allow=body.always_allow,
        )
        return _resolution_response(resolution)
    except UnknownApproval:
        return _safe_error(404, f"Approval {approval_id} not found")
    except InvalidPayload as exc:
        return _safe_error(422, str(exc))
    except Exception as exc:
        logger.error("edit_item error: %s", exc)
        return _safe_error(500, "Failed to edit approval")


@router.post("/approvals/sweep")
async def sweep_approvals(request: Request):
    """Expire every overdue pending record."""
    if not _verify_owner(request):
        return _safe_error(401, "Unauthorized")
    if _engine is None:
        return _safe_error(503, "Governance engine not initialised")
    try:
        expired = _engine.expire_sweep()
        return {"expired": expired, "total": len(expired)}
    except Exception as exc:
        logger.error("sweep_approvals error: %s", exc)
        return _safe_error(500, "Failed to sweep approvals")


# ── Agents ───────────────────────────────────────────────────────

@router.get("/agents/{agent_id}/history")
async def agent_history(agent_id: str, limit: int = Query(50, ge=1, le=500)):
    if _engine is None:
        return _safe_error(503, "Governance engine not initialised")
    try:
        records = _engine.get_history(agent_id, limit=limit)
        return {"history": [r.to_dict() for r in records], "total": len(records)}
    except UnknownAgent:
        return _safe_error(404, f"Agent {agent_id} not found")
    except Exception as exc:
        logger.error("agent_history error: %s", exc)
        return _safe_error(500, "Failed to get history")


@router.get("/agents/{agent_id}/soul/history")
async def soul_history(agent_id: str, limit: int = Query(20, ge=1, le=200)):
    if _engine is None:
        return _safe_error(503, "Governance engine not initialised")
    try:
        versions = _engine.version_history(agent_id, limit=limit)
        return {"versions": [v.to_dict() for v in versions], "total": len(versions)}
    except UnknownAgent:
        return _safe_error(404, f"Agent {agent_id} not found")
    except Exception as exc:
        logger.error("soul_history error: %s", exc)
        return _safe_error(500, "Failed to get soul history")


@router.post("/agents/{agent_id}/soul/rollback")
async def soul_rollback(agent_id: str, request: Request, body: RollbackRequest):
    """Restore a previous soul version as a new version."""
    if not _verify_owner(request):
        return _safe_error(401, "Unauthorized")
    if _engine is None:
        return _safe_error(503, "Governance engine not initialised")
    try:
        version = _engine.rollback(agent_id, body.version, requested_by=body.requested_by)
        return {"status": "rolled_back", "version": version.to_dict()}
    except UnknownAgent:
        return _safe_error(404, f"Agent {agent_id} not found")
    except UnknownVersion:
        return _safe_error(404, f"Version {body.version} not found for agent {agent_id}")
    except Exception as exc:
        logger.error("soul_rollback error: %s", exc)
        return _safe_error(500, "Failed to roll back soul")


# ── Organizations ────────────────────────────────────────────────

@router.get("/organizations/{organization_id}/inbox")
async def organization_inbox(
    organization_id: str,
    status: Optional[MessageStatus] = Query(None),
    limit: int = Query(100, ge=1, le=500),
):
    """Escalations, delegations and insights addressed to an organization."""
    if _engine is None:
        return _safe_error(503, "Governance engine not initialised")
    try:
        messages = _engine.router.inbox(organization_id, status=status, limit=limit)
        return {"messages": [m.to_dict() for m in messages], "total": len(messages)}
    except Exception as exc:
        logger.error("organization_inbox error: %s", exc)
        return _safe_error(500, "Failed to get inbox")
