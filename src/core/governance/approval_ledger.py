"""
Approval Ledger — state machine for queued actions and proposals.

    proposed ──approve──▶ approved ──▶ executing ──▶ succeeded | failed
        │
        ├──reject──▶ rejected
        └──expire──▶ expired

Every transition is a compare-and-transition on the current status, so a
human approval and the expiry sweep racing on the same record cannot both
win. Losing a race is not an error: the caller gets a TransitionResult with
applied=False and the record's current status.

Events emitted on the bus:
    approval_created           after a record is persisted
    approval_resolved          after approve / reject / edit applied
    approval_expired           for each record the sweep (or a late resolve) expired
    approval_discarded         after reject or expire, for the originating session
    approval_executed          after the executor succeeded
    approval_execution_failed  after the executor failed or raised
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from pydantic import ValidationError

from src.core import event_bus as events
from src.core.event_bus import EventBus

from .approval_store import ApprovalStore
from .config import LedgerConfig
from .directory import AgentDirectory
from .errors import GovernanceError, InvalidPayload, UnknownApproval
from .models import (
    Agent,
    ApprovalKind,
    ApprovalRecord,
    ApprovalStatus,
    ExecutionResult,
    ResolutionOutcome,
    RiskAssessment,
    SYSTEM_EXPIRED,
    TransitionResult,
    ensure_utc,
    from_iso,
    to_iso,
    utc_now,
)
from .payloads import PayloadModel, SoulChangePayload, dump_payload, parse_payload

logger = logging.getLogger(__name__)

# Called with the approved record; returns the outcome of running it.
RecordExecutor = Callable[[ApprovalRecord], Any]


class ApprovalLedger:
    """Owns the lifecycle and expiry of approval records."""

    def __init__(
        self,
        store: ApprovalStore,
        directory: AgentDirectory,
        bus: EventBus,
        config: Optional[LedgerConfig] = None,
    ):
        self._store = store
        self._directory = directory
        self._bus = bus
        self._config = config or LedgerConfig()

    # ── Creation ─────────────────────────────────────────────────

    def ttl_for(self, kind: ApprovalKind) -> timedelta:
        if kind == ApprovalKind.SELF_MODIFICATION:
            return timedelta(hours=self._config.self_modification_ttl_hours)
        return timedelta(hours=self._config.action_ttl_hours)

    def create(
        self,
        kind: ApprovalKind,
        action: str,
        payload: PayloadModel,
        agent: Agent,
        assessment: RiskAssessment,
        approver_organization_id: str = "",
        session_id: str = "",
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> ApprovalRecord:
        """Persist a new proposed record and announce it."""
        created = ensure_utc(now or utc_now())
        record = ApprovalRecord(
            id=str(uuid.uuid4()),
            kind=ApprovalKind(kind),
            action=action,
            payload=dump_payload(payload),
            agent_id=agent.id,
            organization_id=agent.organization_id,
            session_id=session_id,
            approver_organization_id=approver_organization_id or agent.organization_id,
            risk_tier=assessment.tier,
            risk_factors=assessment.factor_names,
            status=ApprovalStatus.PROPOSED,
            created_at=to_iso(created),
            expires_at=to_iso(created + self.ttl_for(kind)),
            reason=reason,
        )
        self._store.insert(record)
        logger.info(
            "Approval %s created: %s %s for agent %s (tier=%s, expires %s)",
            record.id, record.kind.value, action, agent.id,
            record.risk_tier.value, record.expires_at,
        )
        self._bus.emit(events.APPROVAL_CREATED, approval_id=record.id, record=record)
        return record

    # ── Queries ──────────────────────────────────────────────────

    def get(self, approval_id: str) -> ApprovalRecord:
        record = self._store.get(approval_id)
        if record is None:
            raise UnknownApproval(f"Approval {approval_id} not found")
        return record

    def list_pending(
        self,
        agent_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        approver_organization_id: Optional[str] = None,
        kind: Optional[ApprovalKind] = None,
    ) -> List[ApprovalRecord]:
        return self._store.list_pending(
            agent_id=agent_id,
            organization_id=organization_id,
            approver_organization_id=approver_organization_id,
            kind=kind,
        )

    def get_history(self, agent_id: str, limit: int = 50) -> List[ApprovalRecord]:
        return self._store.history(agent_id, limit=limit)

    # ── Resolution ───────────────────────────────────────────────

    def resolve(
        self,
        approval_id: str,
        outcome: ResolutionOutcome,
        resolver: str,
        channel: str = "",
        always_allow: bool = False,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Approve or reject a proposed record. Idempotent.

        A record past its expiry is expired instead of resolved.
        always_allow on an applied approval adds the action to the agent's
        allow list. A failed allow-list write is logged and leaves the
        approval in place for execution.
        """
        outcome = ResolutionOutcome(outcome)
        record = self.get(approval_id)
        late = self._check_resolvable(record, now)
        if late is not None:
            return late

        resolved_at = to_iso(now or utc_now())
        if outcome == ResolutionOutcome.APPROVE:
            target = ApprovalStatus.APPROVED
        else:
            target = ApprovalStatus.REJECTED

        applied = self._store.transition(
            approval_id,
            [ApprovalStatus.PROPOSED],
            target,
            resolved_at=resolved_at,
            resolver=resolver,
            channel=channel,
            always_allow=always_allow and target == ApprovalStatus.APPROVED,
        )
        if not applied:
            return self._lost_race(approval_id)

        logger.info("Approval %s %s by %s via %s",
                    approval_id, target.value, resolver, channel or "-")

        if target == ApprovalStatus.APPROVED and always_allow:
            self._grant_always_allow(record)

        self._bus.emit(
            events.APPROVAL_RESOLVED,
            approval_id=approval_id, status=target.value, resolver=resolver,
            channel=channel, agent_id=record.agent_id,
        )
        if target == ApprovalStatus.REJECTED:
            self._emit_discarded(record, target)
        return TransitionResult(True, approval_id, target)

    def resolve_with_edit(
        self,
        approval_id: str,
        new_payload: Any,
        resolver: str,
        channel: str = "",
        always_allow: bool = False,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Approve with a replaced payload, keeping the original on the record.

        Raises InvalidPayload if new_payload does not validate, if it is not
        a soul change for a self-modification record, or if it is a soul
        change for an action record.
        """
        record = self.get(approval_id)
        try:
            typed = parse_payload(new_payload)
        except ValidationError as exc:
            raise InvalidPayload(f"Edited payload for {approval_id} is invalid: {exc}") from exc
        if record.kind == ApprovalKind.SELF_MODIFICATION and not isinstance(typed, SoulChangePayload):
            raise InvalidPayload(f"Approval {approval_id} requires a soul_change payload")
        if record.kind == ApprovalKind.ACTION and isinstance(typed, SoulChangePayload):
            raise InvalidPayload(f"Approval {approval_id} cannot run a soul_change payload")

        late = self._check_resolvable(record, now)
        if late is not None:
            return late

        applied = self._store.transition(
            approval_id,
            [ApprovalStatus.PROPOSED],
            ApprovalStatus.APPROVED,
            resolved_at=to_iso(now or utc_now()),
            resolver=resolver,
            channel=channel,
            payload=dump_payload(typed),
            original_payload=record.payload,
            always_allow=always_allow,
        )
        if not applied:
            return self._lost_race(approval_id)

        logger.info("Approval %s approved with edits by %s", approval_id, resolver)
        if always_allow:
            self._grant_always_allow(record)
        self._bus.emit(
            events.APPROVAL_RESOLVED,
            approval_id=approval_id, status=ApprovalStatus.APPROVED.value,
            resolver=resolver, channel=channel, agent_id=record.agent_id, edited=True,
        )
        return TransitionResult(True, approval_id, ApprovalStatus.APPROVED)

    def expire_sweep(self, now: Optional[datetime] = None) -> List[str]:
        """Expire every proposed record whose expiry has passed.

        Returns the IDs this sweep expired. Records resolved concurrently
        are skipped.
        """
        now = ensure_utc(now or utc_now())
        expired: List[str] = []
        for approval_id in self._store.due_for_expiry(to_iso(now)):
            if self._expire(approval_id, now):
                expired.append(approval_id)
        if expired:
            logger.info("Expired %d approvals", len(expired))
        return expired

    # ── Execution ────────────────────────────────────────────────

    def execute(
        self,
        approval_id: str,
        executor: RecordExecutor,
        now: Optional[datetime] = None,
    ) -> Optional[ExecutionResult]:
        """Run an approved record exactly once.

        Returns None if the record is not (or no longer) approved. Executor
        failures and exceptions mark the record failed and are never retried.
        """
        record = self.get(approval_id)
        started = to_iso(now or utc_now())
        if not self._store.transition(
            approval_id, [ApprovalStatus.APPROVED], ApprovalStatus.EXECUTING,
            executed_at=started,
        ):
            current = self.get(approval_id)
            logger.warning("Approval %s not executable (status=%s)",
                           approval_id, current.status.value)
            return None

        record.status = ApprovalStatus.EXECUTING
        record.executed_at = started
        try:
            outcome = executor(record)
            if isinstance(outcome, ExecutionResult):
                result = outcome
            else:
                result = ExecutionResult(success=True, data=outcome)
        except Exception as exc:
            logger.error("Executor raised for approval %s (%s): %s",
                         approval_id, record.action, exc)
            result = ExecutionResult(success=False, error=str(exc) or type(exc).__name__)

        if result.success:
            self._store.transition(
                approval_id, [ApprovalStatus.EXECUTING], ApprovalStatus.SUCCEEDED,
                execution_result=result.data,
            )
            logger.info("Approval %s executed (%s)", approval_id, record.action)
            self._bus.emit(
                events.APPROVAL_EXECUTED,
                approval_id=approval_id, agent_id=record.agent_id,
                action=record.action, session_id=record.session_id,
            )
        else:
            self._store.transition(
                approval_id, [ApprovalStatus.EXECUTING], ApprovalStatus.FAILED,
                execution_result=result.data, execution_error=result.error,
            )
            logger.error("Approval %s execution failed (%s): %s",
                         approval_id, record.action, result.error)
            self._bus.emit(
                events.APPROVAL_EXECUTION_FAILED,
                approval_id=approval_id, agent_id=record.agent_id,
                action=record.action, session_id=record.session_id,
                error=result.error,
            )
        return result

    def annotate_result(self, approval_id: str, result: Any) -> bool:
        """Attach a result to a terminal record. Returns False if not terminal."""
        self.get(approval_id)
        return self._store.annotate_result(approval_id, result)

    # ── Internals ────────────────────────────────────────────────

    def _check_resolvable(
        self, record: ApprovalRecord, now: Optional[datetime]
    ) -> Optional[TransitionResult]:
        """Return a no-op result if the record cannot be resolved, else None."""
        if record.status != ApprovalStatus.PROPOSED:
            return TransitionResult(False, record.id, record.status, "not_pending")
        now = ensure_utc(now or utc_now())
        if now >= from_iso(record.expires_at):
            if self._expire(record.id, now):
                return TransitionResult(False, record.id, ApprovalStatus.EXPIRED, "expired")
            return self._lost_race(record.id)
        return None

    def _expire(self, approval_id: str, now: datetime) -> bool:
        applied = self._store.transition(
            approval_id,
            [ApprovalStatus.PROPOSED],
            ApprovalStatus.EXPIRED,
            resolved_at=to_iso(now),
            resolver=SYSTEM_EXPIRED,
            reason="expired",
        )
        if applied:
            record = self.get(approval_id)
            logger.info("Approval %s expired", approval_id)
            self._bus.emit(
                events.APPROVAL_EXPIRED,
                approval_id=approval_id, agent_id=record.agent_id,
            )
            self._emit_discarded(record, ApprovalStatus.EXPIRED)
        return applied

    def _lost_race(self, approval_id: str) -> TransitionResult:
        current = self.get(approval_id)
        logger.warning("Approval %s already %s, resolution ignored",
                       approval_id, current.status.value)
        return TransitionResult(False, approval_id, current.status, "not_pending")

    def _grant_always_allow(self, record: ApprovalRecord) -> None:
        if record.kind != ApprovalKind.ACTION:
            return
        try:
            added = self._directory.add_to_allow_list(record.agent_id, record.action)
        except (GovernanceError, sqlite3.Error) as exc:
            logger.error("Could not add %s to agent %s allow list after approving %s: %s",
                         record.action, record.agent_id, record.id, exc)
            return
        if added:
            logger.info("Agent %s now always allowed to %s", record.agent_id, record.action)

    def _emit_discarded(self, record: ApprovalRecord, status: ApprovalStatus) -> None:
        self._bus.emit(
            events.APPROVAL_DISCARDED,
            approval_id=record.id, agent_id=record.agent_id,
            session_id=record.session_id, action=record.action,
            status=status.value,
        )
