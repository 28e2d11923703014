"""
Layer hierarchy data models.

Layers:
    1  platform     — operator of the whole system
    2  agency       — top-level organization
    3  client       — sub-organization at any depth
    4  customer     — customer-facing agents talking to end users

Layer messages (escalations, delegations, insights) only route information.
They never gate execution.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional


class Layer(IntEnum):
    PLATFORM = 1
    AGENCY = 2
    CLIENT = 3
    CUSTOMER = 4


class MessageKind(str, Enum):
    ESCALATION = "escalation"
    DELEGATION = "delegation"
    INSIGHT = "insight"


class MessageStatus(str, Enum):
    """pending → acknowledged → resolved | dismissed"""
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class LayerMessage:
    """A cross-organization escalation, delegation or insight."""
    id: str
    kind: MessageKind
    source_agent_id: str
    source_organization_id: str
    source_layer: Layer
    target_organization_id: Optional[str]
    target_layer: Layer
    payload: dict = field(default_factory=dict)
    status: MessageStatus = MessageStatus.PENDING
    created_at: str = ""
    acknowledged_at: Optional[str] = None
    closed_at: Optional[str] = None
    target_inactive: bool = False

    @property
    def targets_platform(self) -> bool:
        return self.target_organization_id is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "source_agent_id": self.source_agent_id,
            "source_organization_id": self.source_organization_id,
            "source_layer": int(self.source_layer),
            "target_organization_id": self.target_organization_id,
            "target_layer": int(self.target_layer),
            "payload": self.payload,
            "status": self.status.value,
            "created_at": self.created_at,
            "acknowledged_at": self.acknowledged_at,
            "closed_at": self.closed_at,
            "target_inactive": self.target_inactive,
        }


@dataclass(frozen=True)
class MessageTransition:
    """Outcome of a message status change. applied=False is a no-op, not an error."""
    applied: bool
    message_id: str
    status: Optional[MessageStatus]
    reason: str = ""
