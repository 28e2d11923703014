"""
Self-Modification Governor — soul evolution proposals.

An agent may propose a change to one field of its own soul. Proposals pass a
series of pre-flight gates and, if they clear them, become approval records
of kind self_modification (72h TTL). They always queue for a human. When a
record is approved, the ledger runs it through apply(), which writes a new
soul version.

Gates, in order (first failure wins):
    agent_inactive     the agent (or its organization) has been deactivated
    protected_agent    the agent is a protected platform agent
    protected_field    the field is on the protected list
    too_many_pending   the agent already has max_pending_proposals open
    rate_limited       max_proposals_per_window created in the trailing window
    weekly_limit       max_proposals_per_week created in the trailing 7 days
    rejection_cooldown a proposal was rejected within rejection_cooldown_hours
    proposal_cooldown  the last proposal is younger than proposal_cooldown_hours
                       (owner-directed proposals skip the four pacing gates)
    similar_rejected   same field + operation with an overlapping value was
                       rejected within duplicate_window_days

Gated proposals are a normal result, not an error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from pydantic import ValidationError

from src.core import event_bus as events
from src.core.event_bus import EventBus
from src.core.governance.approval_ledger import ApprovalLedger
from src.core.governance.approval_store import ApprovalStore
from src.core.governance.config import SelfModificationConfig
from src.core.governance.directory import AgentDirectory
from src.core.governance.errors import ConcurrentModification, InvalidPayload, UnknownVersion
from src.core.governance.models import (
    Agent,
    ApprovalKind,
    ApprovalRecord,
    ApprovalStatus,
    ExecutionResult,
    Organization,
    RiskAssessment,
    RiskTier,
    StaticRisk,
    ensure_utc,
    from_iso,
    to_iso,
    utc_now,
)
from src.core.governance.payloads import SoulChangePayload
from src.core.soul.mutations import apply_change, values_overlap
from src.core.soul.versions import ChangeType, SoulVersion, SoulVersionStore

logger = logging.getLogger(__name__)

SELF_MODIFICATION_ACTION = "soul_change"

GATE_AGENT_INACTIVE = "agent_inactive"
GATE_PROTECTED_AGENT = "protected_agent"
GATE_PROTECTED_FIELD = "protected_field"
GATE_TOO_MANY_PENDING = "too_many_pending"
GATE_RATE_LIMITED = "rate_limited"
GATE_WEEKLY_LIMIT = "weekly_limit"
GATE_REJECTION_COOLDOWN = "rejection_cooldown"
GATE_PROPOSAL_COOLDOWN = "proposal_cooldown"
GATE_SIMILAR_REJECTED = "similar_rejected"

_REJECTED_SCAN_LIMIT = 500


@dataclass(frozen=True)
class ProposalResult:
    """Outcome of propose(): created with an approval id, or gated with a reason."""
    created: bool
    approval_id: Optional[str] = None
    reason: str = ""
    record: Optional[ApprovalRecord] = None

    @property
    def gated(self) -> bool:
        return not self.created


class SelfModificationGovernor:
    """Gates, queues, applies and rolls back soul changes."""

    def __init__(
        self,
        directory: AgentDirectory,
        ledger: ApprovalLedger,
        approvals: ApprovalStore,
        versions: SoulVersionStore,
        bus: Optional[EventBus] = None,
        config: Optional[SelfModificationConfig] = None,
        approver_resolver: Optional[Callable[[Agent], Organization]] = None,
    ):
        self._directory = directory
        self._ledger = ledger
        self._approvals = approvals
        self._versions = versions
        self._bus = bus
        self._config = config or SelfModificationConfig()
        self._approver_resolver = approver_resolver

    # ── Proposals ────────────────────────────────────────────────

    def propose(
        self,
        agent_id: str,
        field: str,
        operation: str,
        proposed_value: str,
        justification: str = "",
        evidence: Optional[List[str]] = None,
        previous_value: Optional[str] = None,
        trigger: str = "reflection",
        session_id: str = "",
        now: Optional[datetime] = None,
    ) -> ProposalResult:
        agent = self._directory.get_agent(agent_id)
        try:
            change = SoulChangePayload(
                field=field,
                operation=operation,
                proposed_value=proposed_value,
                previous_value=previous_value,
                justification=justification,
                evidence=list(evidence or []),
                trigger=trigger,
            )
        except ValidationError as exc:
            raise InvalidPayload(f"Invalid soul change proposal: {exc}") from exc

        now = ensure_utc(now or utc_now())
        reason = self._check_gates(agent, change, now)
        if reason is not None:
            logger.warning("Soul proposal by agent %s on %s gated: %s",
                           agent.id, change.field, reason)
            if self._bus is not None:
                self._bus.emit(
                    events.PROPOSAL_GATED,
                    agent_id=agent.id, field=change.field,
                    operation=change.operation, reason=reason,
                )
            return ProposalResult(created=False, reason=reason)

        approver = self._approver_resolver(agent) if self._approver_resolver else None
        assessment = RiskAssessment(
            tier=RiskTier.MEDIUM if change.operation == "add" else RiskTier.HIGH,
            static_risk=StaticRisk.WRITE,
        )
        record = self._ledger.create(
            ApprovalKind.SELF_MODIFICATION,
            SELF_MODIFICATION_ACTION,
            change,
            agent,
            assessment,
            approver_organization_id=approver.id if approver else "",
            session_id=session_id,
            reason=f"{change.operation} {change.field} ({change.trigger})",
            now=now,
        )
        return ProposalResult(created=True, approval_id=record.id, record=record)

    def _check_gates(
        self, agent: Agent, change: SoulChangePayload, now: datetime
    ) -> Optional[str]:
        cfg = self._config
        if not agent.active:
            return GATE_AGENT_INACTIVE
        if agent.protected:
            return GATE_PROTECTED_AGENT

        root_field = change.field.split(".", 1)[0]
        if change.field in cfg.protected_fields or root_field in cfg.protected_fields:
            return GATE_PROTECTED_FIELD

        pending = self._approvals.count(
            agent.id, kind=ApprovalKind.SELF_MODIFICATION, status=ApprovalStatus.PROPOSED
        )
        if pending >= cfg.max_pending_proposals:
            return GATE_TOO_MANY_PENDING

        rejected = self._approvals.history(
            agent.id,
            limit=_REJECTED_SCAN_LIMIT,
            kind=ApprovalKind.SELF_MODIFICATION,
            status=ApprovalStatus.REJECTED,
        )

        owner_directed = change.trigger == "owner_directed"
        if not (owner_directed and cfg.owner_directed_bypasses_rate_limit):
            reason = self._check_pacing(agent.id, rejected, now)
            if reason is not None:
                return reason

        if self._similar_rejected(rejected, change, now):
            return GATE_SIMILAR_REJECTED
        return None

    def _check_pacing(
        self, agent_id: str, rejected: List[ApprovalRecord], now: datetime
    ) -> Optional[str]:
        cfg = self._config
        kind = ApprovalKind.SELF_MODIFICATION
        recent = self._approvals.count(
            agent_id, kind=kind, since=to_iso(now - timedelta(hours=cfg.rate_window_hours))
        )
        if recent >= cfg.max_proposals_per_window:
            return GATE_RATE_LIMITED

        weekly = self._approvals.count(
            agent_id, kind=kind, since=to_iso(now - timedelta(days=7))
        )
        if weekly >= cfg.max_proposals_per_week:
            return GATE_WEEKLY_LIMIT

        rejection_times = [from_iso(r.resolved_at or r.created_at) for r in rejected]
        if rejection_times:
            if now - max(rejection_times) < timedelta(hours=cfg.rejection_cooldown_hours):
                return GATE_REJECTION_COOLDOWN

        latest = self._approvals.history(agent_id, limit=1, kind=kind)
        if latest:
            if now - from_iso(latest[0].created_at) < timedelta(hours=cfg.proposal_cooldown_hours):
                return GATE_PROPOSAL_COOLDOWN
        return None

    def _similar_rejected(
        self, rejected: List[ApprovalRecord], change: SoulChangePayload, now: datetime
    ) -> bool:
        cutoff = now - timedelta(days=self._config.duplicate_window_days)
        for record in rejected:
            rejected_at = from_iso(record.resolved_at or record.created_at)
            if rejected_at < cutoff:
                continue
            payload = record.payload
            if payload.get("field") != change.field:
                continue
            if payload.get("operation") != change.operation:
                continue
            if values_overlap(payload.get("proposed_value"), change.proposed_value):
                return True
        return False

    # ── Application ──────────────────────────────────────────────

    def apply(self, record: ApprovalRecord) -> ExecutionResult:
        """Apply an approved proposal. Used as the ledger's executor."""
        change = SoulChangePayload.model_validate(record.payload)
        changed_by = record.resolver or "owner"

        for attempt in range(1, self._config.write_retries + 1):
            agent = self._directory.get_agent(record.agent_id)
            new_soul = apply_change(
                agent.soul, change.field, change.operation,
                change.proposed_value, change.previous_value,
            )
            if new_soul == agent.soul:
                logger.info("Proposal %s left agent %s soul unchanged", record.id, agent.id)
                return ExecutionResult(
                    success=True, data={"changed": False, "version": agent.soul_version}
                )
            version = self._versions.commit(
                agent, new_soul, ChangeType.PROPOSAL_APPLIED, changed_by,
                proposal_id=record.id,
            )
            if version is not None:
                self._emit_version(version)
                return ExecutionResult(
                    success=True, data={"changed": True, "version": version.version}
                )
            logger.warning("Agent %s soul write lost a race (attempt %d)", agent.id, attempt)

        raise ConcurrentModification(
            f"Agent {record.agent_id} soul changed concurrently "
            f"{self._config.write_retries} times"
        )

    # ── History ──────────────────────────────────────────────────

    def record_initial(self, agent: Agent) -> None:
        self._versions.record_initial(agent)

    def rollback(
        self,
        agent_id: str,
        target_version: int,
        requested_by: str = "owner",
    ) -> SoulVersion:
        """Restore the soul of target_version as a new version."""
        self._directory.get_agent(agent_id)
        snapshot = self._versions.get(agent_id, target_version)
        if snapshot is None:
            raise UnknownVersion(f"Agent {agent_id} has no soul version {target_version}")

        for attempt in range(1, self._config.write_retries + 1):
            agent = self._directory.get_agent(agent_id)
            version = self._versions.commit(
                agent, snapshot.soul, ChangeType.ROLLBACK, requested_by,
                restored_version=target_version,
            )
            if version is not None:
                logger.info("Agent %s rolled back to v%d as v%d",
                            agent_id, target_version, version.version)
                self._emit_version(version)
                return version
            logger.warning("Agent %s rollback lost a race (attempt %d)", agent_id, attempt)

        raise ConcurrentModification(
            f"Agent {agent_id} soul changed concurrently {self._config.write_retries} times"
        )

    def version_history(self, agent_id: str, limit: int = 20) -> List[SoulVersion]:
        self._directory.get_agent(agent_id)
        return self._versions.history(agent_id, limit=limit)

    def _emit_version(self, version: SoulVersion) -> None:
        if self._bus is not None:
            self._bus.emit(
                events.SOUL_VERSION_CREATED,
                agent_id=version.agent_id, version=version.version,
                change_type=version.change_type.value,
                proposal_id=version.proposal_id,
            )
