"""
Layer Router

Places every agent in one of four layers, filters the actions each layer may
use, routes escalations / delegations / insights between organizations, and
picks the organization that should approve an agent's queued actions.

Layer assignment:
    platform_system role, or an org listed in platform_org_slugs → 1
    customer_facing                                             → 4
    coordinator of a top-level org                              → 2
    coordinator of a sub-org at any depth                       → 3

Tool availability:
    layer 1  everything
    layer 2  everything except platform-only actions
    layer 3  everything except platform-only and agency-only actions
    layer 4  read-only actions plus the configured customer-safe writes
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable, List, Optional

from src.core import event_bus as events
from src.core.event_bus import EventBus
from src.core.governance.config import LayerConfig
from src.core.governance.directory import AgentDirectory
from src.core.governance.errors import PolicyViolation
from src.core.governance.models import Agent, AgentRole, Organization, to_iso, utc_now
from src.core.governance.risk_classifier import RiskClassifier
from src.core.layers.models import (
    Layer,
    LayerMessage,
    MessageKind,
    MessageStatus,
    MessageTransition,
    Severity,
)
from src.core.layers.store import LayerMessageStore

logger = logging.getLogger(__name__)


class LayerRouter:
    """Advisory routing across the organization hierarchy."""

    def __init__(
        self,
        directory: AgentDirectory,
        store: LayerMessageStore,
        classifier: RiskClassifier,
        bus: Optional[EventBus] = None,
        config: Optional[LayerConfig] = None,
    ):
        self._directory = directory
        self._store = store
        self._classifier = classifier
        self._bus = bus
        self._config = config or LayerConfig()
        self._platform_slugs = frozenset(self._config.platform_org_slugs)
        self._customer_safe = frozenset(self._config.customer_safe_writes)
        self._platform_only = frozenset(self._config.platform_only_actions)
        self._agency_only = frozenset(self._config.agency_only_actions)

    # ── Layer assignment ─────────────────────────────────────────

    def determine_layer(self, agent: Agent) -> Layer:
        if agent.role == AgentRole.PLATFORM_SYSTEM:
            return Layer.PLATFORM
        org = self._directory.get_organization(agent.organization_id)
        if org.slug in self._platform_slugs:
            return Layer.PLATFORM
        if agent.role == AgentRole.CUSTOMER_FACING:
            return Layer.CUSTOMER
        return Layer.AGENCY if org.is_top_level else Layer.CLIENT

    def organization_layer(self, org: Organization) -> Layer:
        """The layer a human reviewer in this org operates at."""
        if org.slug in self._platform_slugs:
            return Layer.PLATFORM
        return Layer.AGENCY if org.is_top_level else Layer.CLIENT

    # ── Tool filtering ───────────────────────────────────────────

    def filter_tools(self, agent: Agent, actions: Iterable[str]) -> List[str]:
        """Return the subset of actions the agent's layer may use, in order."""
        layer = self.determine_layer(agent)
        return [a for a in actions if self._allowed_for_layer(layer, a)]

    def check_action(self, agent: Agent, action: str) -> Layer:
        """Raise PolicyViolation if the agent's layer may not use action."""
        layer = self.determine_layer(agent)
        if not self._allowed_for_layer(layer, action):
            raise PolicyViolation(
                f"{action} is not available to layer {int(layer)} agents",
                action=action,
                layer=int(layer),
            )
        return layer

    def _allowed_for_layer(self, layer: Layer, action: str) -> bool:
        if layer == Layer.PLATFORM:
            return True
        if action in self._platform_only:
            return False
        if layer == Layer.AGENCY:
            return True
        if action in self._agency_only:
            return False
        if layer == Layer.CLIENT:
            return True
        return self._classifier.is_read_only(action) or action in self._customer_safe

    # ── Approver targeting ───────────────────────────────────────

    def approver_organization(self, agent: Agent) -> Organization:
        """Nearest active organization, starting at the agent's own."""
        org = self._directory.get_organization(agent.organization_id)
        if org.active:
            return org
        for ancestor in self._directory.ancestors(org.id):
            if ancestor.active:
                logger.info("Agent %s org %s inactive, approvals routed to %s",
                            agent.id, org.slug, ancestor.slug)
                return ancestor
        logger.warning("No active organization above %s, approvals stay with it", org.slug)
        return org

    # ── Messages ─────────────────────────────────────────────────

    def escalate(
        self,
        agent: Agent,
        summary: str,
        severity: Severity = Severity.MEDIUM,
        context: Optional[dict] = None,
    ) -> LayerMessage:
        """Escalate upward. Layer 4 goes to its own org, layer 3 to the parent org."""
        layer = self.determine_layer(agent)
        org = self._directory.get_organization(agent.organization_id)

        if layer == Layer.CUSTOMER:
            target = org
        elif layer == Layer.CLIENT:
            target = self._directory.get_organization(org.parent_id)
        else:
            raise PolicyViolation(
                f"Layer {int(layer)} agents cannot escalate", action="escalate", layer=int(layer)
            )

        message = self._send(
            MessageKind.ESCALATION, agent, org, layer, target,
            {"summary": summary, "severity": Severity(severity).value, "context": context or {}},
        )
        if message.target_inactive:
            logger.warning("Escalation %s targets inactive organization %s",
                           message.id, target.slug)
        return message

    def delegate(
        self,
        agent: Agent,
        target_org_slug: str,
        instruction: str,
        context: Optional[dict] = None,
    ) -> LayerMessage:
        """Delegate from an agency coordinator to one of its direct client orgs."""
        layer = self.determine_layer(agent)
        if layer != Layer.AGENCY:
            raise PolicyViolation(
                f"Layer {int(layer)} agents cannot delegate", action="delegate", layer=int(layer)
            )
        org = self._directory.get_organization(agent.organization_id)
        target = self._directory.get_organization_by_slug(target_org_slug)
        if target.parent_id != org.id:
            raise PolicyViolation(
                f"{target_org_slug} is not a direct sub-organization of {org.slug}",
                action="delegate",
                layer=int(layer),
            )
        return self._send(
            MessageKind.DELEGATION, agent, org, layer, target,
            {"instruction": instruction, "context": context or {}},
        )

    def share_insight(
        self,
        agent: Agent,
        insight: str,
        category: str = "",
    ) -> Optional[LayerMessage]:
        """Send an upward notice to the parent org (or the platform). Never raises."""
        try:
            layer = self.determine_layer(agent)
            org = self._directory.get_organization(agent.organization_id)
            target = self._directory.find_organization(org.parent_id)
            return self._send(
                MessageKind.INSIGHT, agent, org, layer, target,
                {"insight": insight, "category": category},
            )
        except Exception as exc:
            logger.warning("Failed to share insight from agent %s: %s", agent.id, exc)
            return None

    def acknowledge(self, message_id: str) -> MessageTransition:
        return self._transition(
            message_id, [MessageStatus.PENDING], MessageStatus.ACKNOWLEDGED, "acknowledged_at"
        )

    def resolve_message(self, message_id: str) -> MessageTransition:
        return self._transition(
            message_id, [MessageStatus.ACKNOWLEDGED], MessageStatus.RESOLVED, "closed_at"
        )

    def dismiss(self, message_id: str) -> MessageTransition:
        return self._transition(
            message_id, [MessageStatus.ACKNOWLEDGED], MessageStatus.DISMISSED, "closed_at"
        )

    def get_message(self, message_id: str) -> Optional[LayerMessage]:
        return self._store.get(message_id)

    def inbox(
        self,
        organization_id: Optional[str],
        status: Optional[MessageStatus] = None,
        kind: Optional[MessageKind] = None,
        limit: int = 100,
    ) -> List[LayerMessage]:
        """Messages addressed to an org. organization_id=None is the platform inbox."""
        return self._store.inbox(organization_id, status=status, kind=kind, limit=limit)

    def on_organization_deactivated(self, organization_id: str) -> int:
        """Flag open messages addressed to a deactivated org. They stay pending."""
        count = self._store.flag_target_inactive(organization_id)
        if count:
            logger.warning("%d open messages target deactivated organization %s",
                           count, organization_id)
        return count

    # ── Internals ────────────────────────────────────────────────

    def _send(
        self,
        kind: MessageKind,
        agent: Agent,
        source_org: Organization,
        source_layer: Layer,
        target: Optional[Organization],
        payload: dict,
    ) -> LayerMessage:
        message = LayerMessage(
            id=str(uuid.uuid4()),
            kind=kind,
            source_agent_id=agent.id,
            source_organization_id=source_org.id,
            source_layer=source_layer,
            target_organization_id=target.id if target else None,
            target_layer=self.organization_layer(target) if target else Layer.PLATFORM,
            payload=payload,
            status=MessageStatus.PENDING,
            created_at=to_iso(utc_now()),
            target_inactive=bool(target and not target.active),
        )
        self._store.insert(message)
        logger.info("%s %s: %s (layer %d) → %s (layer %d)",
                    kind.value.capitalize(), message.id, source_org.slug, int(source_layer),
                    target.slug if target else "platform", int(message.target_layer))
        if self._bus is not None:
            self._bus.emit(events.LAYER_MESSAGE_CREATED, message=message.to_dict())
        return message

    def _transition(
        self,
        message_id: str,
        from_statuses: List[MessageStatus],
        to_status: MessageStatus,
        timestamp_column: str,
    ) -> MessageTransition:
        applied = self._store.transition(
            message_id, from_statuses, to_status, timestamp_column, to_iso(utc_now())
        )
        if applied:
            logger.info("Layer message %s %s", message_id, to_status.value)
            return MessageTransition(True, message_id, to_status)
        current = self._store.get(message_id)
        if current is None:
            return MessageTransition(False, message_id, None, "not_found")
        return MessageTransition(False, message_id, current.status, "invalid_transition")
