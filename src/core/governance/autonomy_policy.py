"""
Autonomy Policy

Maps (agent autonomy, org approval mode, block/allow lists, risk assessment)
to execute / queue / block. Rules are evaluated in strict precedence order;
the first match wins.

    1. draft_only + not read-only         → block
    2. action on the block list           → queue   (block list beats allow list)
    3. action on the allow list           → execute
    4. org approval mode "all"            → queue
    5. org approval mode "none"           → execute
    6. supervised                         → queue
    7. semi_autonomous                    → execute iff tier low
                                            (queue destructive under "dangerous")
    8. autonomous                         → execute unless destructive under "dangerous"
    9. fallthrough (draft_only read-only) → execute
"""

from __future__ import annotations

import logging

from .models import (
    Agent,
    ApprovalMode,
    AutonomyLevel,
    Organization,
    PolicyDecision,
    PolicyOutcome,
    RiskAssessment,
    RiskTier,
    StaticRisk,
)

logger = logging.getLogger(__name__)


def _execute(reason: str) -> PolicyDecision:
    return PolicyDecision(PolicyOutcome.EXECUTE, reason)


def _queue(reason: str) -> PolicyDecision:
    return PolicyDecision(PolicyOutcome.QUEUE, reason)


def _block(reason: str) -> PolicyDecision:
    return PolicyDecision(PolicyOutcome.BLOCK, reason)


class AutonomyPolicy:
    """Stateless decision table. Safe to share across threads."""

    def decide(
        self,
        agent: Agent,
        org: Organization,
        action: str,
        assessment: RiskAssessment,
    ) -> PolicyDecision:
        decision = self._decide(agent, org, action, assessment)
        logger.debug(
            "Policy %s for %s by agent %s (autonomy=%s, mode=%s, tier=%s): %s",
            decision.decision.value, action, agent.id, agent.autonomy_level.value,
            org.approval_mode.value, assessment.tier.value, decision.reason,
        )
        return decision

    def _decide(
        self,
        agent: Agent,
        org: Organization,
        action: str,
        assessment: RiskAssessment,
    ) -> PolicyDecision:
        level = agent.autonomy_level
        mode = org.approval_mode
        destructive = assessment.static_risk == StaticRisk.DESTRUCTIVE

        if level == AutonomyLevel.DRAFT_ONLY and assessment.static_risk != StaticRisk.READ_ONLY:
            return _block("draft_only agents may only perform read-only actions")

        if agent.blocks(action):
            return _queue(f"{action} is on the agent's block list")

        if agent.allows(action):
            return _execute(f"{action} is on the agent's allow list")

        if mode == ApprovalMode.ALL:
            return _queue("organization requires approval for all actions")

        if mode == ApprovalMode.NONE:
            return _execute("organization approval mode is none")

        if level == AutonomyLevel.SUPERVISED:
            return _queue("supervised agents require approval")

        if level == AutonomyLevel.SEMI_AUTONOMOUS:
            if mode == ApprovalMode.DANGEROUS and destructive:
                return _queue(f"{action} is destructive")
            if assessment.tier == RiskTier.LOW:
                return _execute("low-risk action")
            return _queue(f"{assessment.tier.value}-risk action requires approval")

        if level == AutonomyLevel.AUTONOMOUS:
            if mode == ApprovalMode.DANGEROUS and destructive:
                return _queue(f"{action} is destructive")
            return _execute("autonomous agent")

        return _execute("read-only action")
