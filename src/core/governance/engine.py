"""
Governance Engine — the single entry point for agent actions.

    submit_action(agent_id, action, payload, session_id)
        → layer check → payload validation → risk classification
        → autonomy policy → Executed | Queued | Blocked

    resolve(approval_id, outcome, resolver, channel, edited_payload, always_allow)
        → ledger transition → run the approved record exactly once

The engine wires the stores, the ledger, the layer router, the
self-modification governor and the notification worker over one SQLite
database file and one event bus.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional, Protocol

from pydantic import ValidationError

from src.core.event_bus import EventBus
from src.core.layers.router import LayerRouter
from src.core.layers.store import LayerMessageStore
from src.core.soul.evolution import SelfModificationGovernor
from src.core.soul.versions import SoulVersion, SoulVersionStore

from .approval_ledger import ApprovalLedger
from .approval_store import ApprovalStore
from .autonomy_policy import AutonomyPolicy
from .config import GovernanceConfig, load_governance_config
from .directory import AgentDirectory
from .errors import PolicyViolation
from .models import (
    Agent,
    AgentContext,
    AgentRole,
    ApprovalKind,
    ApprovalMode,
    ApprovalRecord,
    ApprovalStatus,
    AutonomyLevel,
    Blocked,
    Decision,
    Executed,
    ExecutionResult,
    Organization,
    PolicyOutcome,
    Queued,
    ResolutionOutcome,
    TransitionResult,
)
from .notifier import LoggingNotifier, NotificationWorker, Notifier
from .payloads import PayloadModel, SoulChangePayload, coerce_payload, parse_payload
from .risk_classifier import RiskClassifier

logger = logging.getLogger(__name__)


class ActionExecutor(Protocol):
    """Runs a concrete business action. Expected to be idempotent or to report failure."""

    def execute_action(self, action: str, payload: PayloadModel) -> ExecutionResult:
        ...


class UnconfiguredExecutor:
    """Placeholder executor that refuses to run anything."""

    def execute_action(self, action: str, payload: PayloadModel) -> ExecutionResult:
        logger.error("No action executor configured, cannot run %s", action)
        return ExecutionResult(success=False, error="no executor configured")


@dataclass(frozen=True)
class Resolution:
    """Outcome of a human resolution: the transition and, if it ran, the execution."""
    transition: TransitionResult
    execution: Optional[ExecutionResult] = None

    @property
    def applied(self) -> bool:
        return self.transition.applied


class GovernanceEngine:
    """Facade over the governance components."""

    def __init__(
        self,
        db_path: Path | str,
        config: Optional[GovernanceConfig] = None,
        executor: Optional[ActionExecutor] = None,
        notifier: Optional[Notifier] = None,
        bus: Optional[EventBus] = None,
    ):
        self.config = config or load_governance_config()
        self.bus = bus or EventBus()
        self._executor = executor or UnconfiguredExecutor()

        self.directory = AgentDirectory(
            db_path, write_retries=self.config.ledger.allow_list_write_retries
        )
        self.approvals = ApprovalStore(db_path)
        self.versions = SoulVersionStore(db_path)
        self.messages = LayerMessageStore(db_path)

        self.classifier = RiskClassifier(self.config.risk_classification)
        self.policy = AutonomyPolicy()
        self.ledger = ApprovalLedger(
            self.approvals, self.directory, self.bus, self.config.ledger
        )
        self.router = LayerRouter(
            self.directory, self.messages, self.classifier, self.bus, self.config.layers
        )
        self.governor = SelfModificationGovernor(
            self.directory,
            self.ledger,
            self.approvals,
            self.versions,
            bus=self.bus,
            config=self.config.self_modification,
            approver_resolver=self.router.approver_organization,
        )
        self.notifications = NotificationWorker(
            notifier or LoggingNotifier(), self.bus, self.config.notifications
        )

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        self.notifications.start()

    def stop(self) -> None:
        self.notifications.stop()

    def close(self) -> None:
        for store in (self.directory, self.approvals, self.versions, self.messages):
            store.close()

    # ── Directory ────────────────────────────────────────────────

    def create_organization(
        self,
        slug: str,
        name: str = "",
        parent_id: Optional[str] = None,
        approval_mode: ApprovalMode = ApprovalMode.DANGEROUS,
    ) -> Organization:
        return self.directory.create_organization(
            slug, name=name, parent_id=parent_id, approval_mode=approval_mode
        )

    def create_agent(
        self,
        organization_id: str,
        name: str = "",
        role: AgentRole = AgentRole.CUSTOMER_FACING,
        autonomy_level: AutonomyLevel = AutonomyLevel.SUPERVISED,
        block_list: Iterable[str] = (),
        allow_list: Iterable[str] = (),
        soul: Optional[dict] = None,
        protected: bool = False,
    ) -> Agent:
        agent = self.directory.create_agent(
            organization_id,
            name=name,
            role=role,
            autonomy_level=autonomy_level,
            block_list=block_list,
            allow_list=allow_list,
            soul=soul,
            protected=protected,
        )
        self.governor.record_initial(agent)
        return agent

    def deactivate_organization(self, organization_id: str) -> int:
        count = self.directory.deactivate_organization(organization_id)
        self.router.on_organization_deactivated(organization_id)
        return count

    # ── Actions ──────────────────────────────────────────────────

    def submit_action(
        self,
        agent_id: str,
        action: str,
        payload: Any = None,
        session_id: str = "",
        now: Optional[datetime] = None,
    ) -> Decision:
        """Decide and, when allowed, run one candidate action.

        Raises UnknownAgent for an agent that does not exist. Everything the
        agent is not allowed to do comes back as Blocked.
        """
        agent = self.directory.get_agent(agent_id)
        if not agent.active:
            logger.warning("Inactive agent %s attempted %s", agent_id, action)
            return Blocked("agent is inactive")

        try:
            self.router.check_action(agent, action)
        except PolicyViolation as exc:
            logger.warning("Agent %s blocked from %s: %s", agent_id, action, exc)
            return Blocked(str(exc))

        try:
            typed = parse_payload(payload)
        except ValidationError as exc:
            logger.warning("Agent %s sent invalid payload for %s: %d errors",
                           agent_id, action, exc.error_count())
            return Blocked(f"invalid_payload: {exc.error_count()} validation errors")
        if isinstance(typed, SoulChangePayload):
            return Blocked("soul changes must be proposed through self-modification")

        org = self.directory.get_organization(agent.organization_id)
        assessment = self.classifier.classify(action, typed, self._context_for(agent))
        decision = self.policy.decide(agent, org, action, assessment)

        if decision.decision == PolicyOutcome.BLOCK:
            logger.info("Agent %s %s blocked: %s", agent_id, action, decision.reason)
            return Blocked(decision.reason)

        if decision.decision == PolicyOutcome.QUEUE:
            approver = self.router.approver_organization(agent)
            record = self.ledger.create(
                ApprovalKind.ACTION,
                action,
                typed,
                agent,
                assessment,
                approver_organization_id=approver.id,
                session_id=session_id,
                reason=decision.reason,
                now=now,
            )
            return Queued(record.id, assessment.tier, decision.reason)

        return Executed(self._run(agent.id, action, typed), decision.reason)

    def _context_for(self, agent: Agent) -> AgentContext:
        competitors = agent.soul.get("competitors", [])
        if not isinstance(competitors, list):
            competitors = []
        return AgentContext(
            used_actions=self.directory.used_actions(agent.id),
            competitor_names=tuple(str(c) for c in competitors),
        )

    def _run(self, agent_id: str, action: str, payload: PayloadModel) -> ExecutionResult:
        try:
            result = self._executor.execute_action(action, payload)
        except Exception as exc:
            logger.error("Executor raised for %s by agent %s: %s", action, agent_id, exc)
            return ExecutionResult(success=False, error=str(exc) or type(exc).__name__)
        if result.success:
            self.directory.record_action_use(agent_id, action)
        else:
            logger.error("Action %s by agent %s failed: %s", action, agent_id, result.error)
        return result

    def _execute_record(self, record: ApprovalRecord) -> ExecutionResult:
        result = self._executor.execute_action(record.action, coerce_payload(record.payload))
        if result.success:
            self.directory.record_action_use(record.agent_id, record.action)
        return result

    # ── Resolution ───────────────────────────────────────────────

    def resolve(
        self,
        approval_id: str,
        outcome: ResolutionOutcome,
        resolver: str,
        channel: str = "",
        edited_payload: Any = None,
        always_allow: bool = False,
        now: Optional[datetime] = None,
    ) -> Resolution:
        """Resolve a pending record and run it if approved. Idempotent."""
        outcome = ResolutionOutcome(outcome)
        if edited_payload is not None and outcome == ResolutionOutcome.APPROVE:
            transition = self.ledger.resolve_with_edit(
                approval_id, edited_payload, resolver, channel,
                always_allow=always_allow, now=now,
            )
        else:
            transition = self.ledger.resolve(
                approval_id, outcome, resolver, channel,
                always_allow=always_allow, now=now,
            )

        if not transition.applied or transition.status != ApprovalStatus.APPROVED:
            return Resolution(transition)

        record = self.ledger.get(approval_id)
        if record.kind == ApprovalKind.SELF_MODIFICATION:
            execution = self.ledger.execute(approval_id, self.governor.apply, now=now)
        else:
            execution = self.ledger.execute(approval_id, self._execute_record, now=now)
        return Resolution(transition, execution)

    # ── Admin ────────────────────────────────────────────────────

    def get_approval(self, approval_id: str) -> ApprovalRecord:
        return self.ledger.get(approval_id)

    def list_pending(
        self,
        agent_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        approver_organization_id: Optional[str] = None,
    ) -> List[ApprovalRecord]:
        return self.ledger.list_pending(
            agent_id=agent_id,
            organization_id=organization_id,
            approver_organization_id=approver_organization_id,
        )

    def get_history(self, agent_id: str, limit: int = 50) -> List[ApprovalRecord]:
        self.directory.get_agent(agent_id)
        return self.ledger.get_history(agent_id, limit=limit)

    def expire_sweep(self, now: Optional[datetime] = None) -> List[str]:
        return self.ledger.expire_sweep(now)

    def rollback(self, agent_id: str, target_version: int, requested_by: str = "owner") -> SoulVersion:
        return self.governor.rollback(agent_id, target_version, requested_by)

    def version_history(self, agent_id: str, limit: int = 20) -> List[SoulVersion]:
        return self.governor.version_history(agent_id, limit=limit)
