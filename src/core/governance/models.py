"""
Governance Data Models

Core data types for risk classification, autonomy decisions, approval
records and the organization/agent directory. These models have zero
external dependencies beyond stdlib.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


# ── Time helpers ─────────────────────────────────────────────────

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize a datetime as fixed-width UTC ISO-8601 (sortable as text)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ── Risk Enums ───────────────────────────────────────────────────

class RiskTier(str, Enum):
    """Risk classification of a candidate action."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {RiskTier.LOW: 0, RiskTier.MEDIUM: 1, RiskTier.HIGH: 2}


class StaticRisk(str, Enum):
    """Fixed risk of an action identity, independent of its payload."""
    READ_ONLY = "read_only"
    WRITE = "write"
    DESTRUCTIVE = "destructive"


class RiskFactor(str, Enum):
    """Content risk factors detected in a payload."""
    PRICING_MENTION = "pricing_mention"
    COMPETITOR_MENTION = "competitor_mention"
    NEGATIVE_SENTIMENT = "negative_sentiment"
    EXTERNAL_URL = "external_url"
    BULK_RECIPIENTS = "bulk_recipients"
    FIRST_TIME_USE = "first_time_use"


# ── Policy Enums ─────────────────────────────────────────────────

class AutonomyLevel(str, Enum):
    DRAFT_ONLY = "draft_only"
    SUPERVISED = "supervised"
    SEMI_AUTONOMOUS = "semi_autonomous"
    AUTONOMOUS = "autonomous"


class ApprovalMode(str, Enum):
    """Org-wide override of per-agent approval behavior."""
    ALL = "all"
    DANGEROUS = "dangerous"
    NONE = "none"


class AgentRole(str, Enum):
    PLATFORM_SYSTEM = "platform_system"
    COORDINATOR = "coordinator"
    CUSTOMER_FACING = "customer_facing"


class PolicyOutcome(str, Enum):
    EXECUTE = "execute"
    QUEUE = "queue"
    BLOCK = "block"


# ── Approval Enums ───────────────────────────────────────────────

class ApprovalKind(str, Enum):
    ACTION = "action"
    SELF_MODIFICATION = "self_modification"


class ApprovalStatus(str, Enum):
    """Lifecycle of an approval record.

    proposed → approved | rejected | expired
    approved → executing → succeeded | failed
    """
    PROPOSED = "proposed"
    APPROVED = "approved"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ApprovalStatus.REJECTED,
    ApprovalStatus.EXPIRED,
    ApprovalStatus.SUCCEEDED,
    ApprovalStatus.FAILED,
})


class ResolutionOutcome(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


SYSTEM_EXPIRED = "system_expired"


# ── Directory ────────────────────────────────────────────────────

@dataclass
class Organization:
    """A node in the tenant hierarchy. parent_id is None for top-level orgs."""
    id: str
    slug: str
    name: str = ""
    parent_id: Optional[str] = None
    approval_mode: ApprovalMode = ApprovalMode.DANGEROUS
    active: bool = True
    created_at: str = ""

    @property
    def is_top_level(self) -> bool:
        return self.parent_id is None


@dataclass
class Agent:
    """An autonomous actor bound to exactly one organization."""
    id: str
    organization_id: str
    name: str = ""
    role: AgentRole = AgentRole.CUSTOMER_FACING
    autonomy_level: AutonomyLevel = AutonomyLevel.SUPERVISED
    block_list: frozenset = frozenset()
    allow_list: frozenset = frozenset()
    soul: dict = field(default_factory=dict)
    soul_version: int = 1
    row_version: int = 1
    protected: bool = False
    active: bool = True
    created_at: str = ""

    def blocks(self, action: str) -> bool:
        return action in self.block_list

    def allows(self, action: str) -> bool:
        return action in self.allow_list


# ── Risk Classification ──────────────────────────────────────────

@dataclass(frozen=True)
class AgentContext:
    """History the classifier needs about the proposing agent."""
    used_actions: frozenset = frozenset()
    competitor_names: tuple = ()


@dataclass(frozen=True)
class RiskAssessment:
    tier: RiskTier
    static_risk: StaticRisk
    factors: tuple = ()

    @property
    def factor_names(self) -> list[str]:
        return [f.value for f in self.factors]


@dataclass(frozen=True)
class PolicyDecision:
    decision: PolicyOutcome
    reason: str


# ── Approval Records ─────────────────────────────────────────────

@dataclass
class ApprovalRecord:
    """Durable unit of governance for one queued action or proposal."""
    id: str
    kind: ApprovalKind
    action: str
    payload: dict
    agent_id: str
    organization_id: str
    session_id: str = ""
    approver_organization_id: str = ""
    risk_tier: RiskTier = RiskTier.MEDIUM
    risk_factors: list = field(default_factory=list)
    status: ApprovalStatus = ApprovalStatus.PROPOSED
    created_at: str = ""
    expires_at: str = ""
    resolved_at: Optional[str] = None
    resolver: Optional[str] = None
    channel: Optional[str] = None
    always_allow: bool = False
    original_payload: Optional[dict] = None
    executed_at: Optional[str] = None
    execution_result: Any = None
    execution_error: Optional[str] = None
    reason: str = ""

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PROPOSED

    @property
    def was_edited(self) -> bool:
        return self.original_payload is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "action": self.action,
            "payload": self.payload,
            "agent_id": self.agent_id,
            "organization_id": self.organization_id,
            "session_id": self.session_id,
            "approver_organization_id": self.approver_organization_id,
            "risk_tier": self.risk_tier.value,
            "risk_factors": list(self.risk_factors),
            "status": self.status.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "resolved_at": self.resolved_at,
            "resolver": self.resolver,
            "channel": self.channel,
            "always_allow": self.always_allow,
            "original_payload": self.original_payload,
            "executed_at": self.executed_at,
            "execution_result": self.execution_result,
            "execution_error": self.execution_error,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a conditional state transition.

    applied=False is a normal result for races (double taps, duplicate
    webhooks, expiry firing first) and is never raised.
    """
    applied: bool
    approval_id: str
    status: ApprovalStatus
    reason: str = ""


# ── Execution ────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    data: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class Executed:
    result: ExecutionResult
    reason: str = ""


@dataclass(frozen=True)
class Queued:
    approval_id: str
    tier: RiskTier
    reason: str = ""


@dataclass(frozen=True)
class Blocked:
    reason: str


Decision = Union[Executed, Queued, Blocked]
