"""
Governance errors.

Only contract violations are raised. Expected races (double resolution,
expiry vs. approval), rate limits and duplicate proposals are returned as
typed results by the ledger and the governor instead.
"""

from __future__ import annotations


class GovernanceError(Exception):
    """Base class for all governance engine errors."""


class UnknownOrganization(GovernanceError):
    """Raised when an organization id or slug does not exist."""


class UnknownAgent(GovernanceError):
    """Raised when an agent id does not exist."""


class UnknownApproval(GovernanceError):
    """Raised when an approval id does not exist."""


class UnknownVersion(GovernanceError):
    """Raised when a soul version is not in an agent's history."""


class InvalidPayload(GovernanceError):
    """Raised when an edited payload fails validation."""


class PolicyViolation(GovernanceError):
    """Raised when an agent's layer forbids the requested action."""

    def __init__(self, message: str, action: str = "", layer: int = 0):
        super().__init__(message)
        self.action = action
        self.layer = layer


class ConcurrentModification(GovernanceError):
    """Raised when an optimistic write keeps losing to concurrent writers."""


class InvalidSoulChange(GovernanceError):
    """Raised when a soul change cannot be applied to the current soul."""
