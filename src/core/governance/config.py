"""
Governance Configuration Loader

Loads and validates governance.yaml using Pydantic v2.
Provides sensible defaults when config file is missing.

The classifier, layer router, ledger and self-modification governor each
receive their own section at construction time; nothing reads module-level
registries.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import yaml
from pydantic import BaseModel, field_validator

from .models import StaticRisk

logger = logging.getLogger(__name__)


# ── Defaults ─────────────────────────────────────────────────────

DEFAULT_STATIC_RISK: dict[str, StaticRisk] = {
    # read-only
    "search_contacts": StaticRisk.READ_ONLY,
    "list_events": StaticRisk.READ_ONLY,
    "list_forms": StaticRisk.READ_ONLY,
    "get_form_responses": StaticRisk.READ_ONLY,
    "list_products": StaticRisk.READ_ONLY,
    "list_tickets": StaticRisk.READ_ONLY,
    "list_workflows": StaticRisk.READ_ONLY,
    "search_media": StaticRisk.READ_ONLY,
    "check_oauth_connection": StaticRisk.READ_ONLY,
    "check_availability": StaticRisk.READ_ONLY,
    # write
    "create_contact": StaticRisk.WRITE,
    "update_contact": StaticRisk.WRITE,
    "tag_contacts": StaticRisk.WRITE,
    "create_event": StaticRisk.WRITE,
    "update_event": StaticRisk.WRITE,
    "register_attendee": StaticRisk.WRITE,
    "create_form": StaticRisk.WRITE,
    "create_ticket": StaticRisk.WRITE,
    "update_ticket_status": StaticRisk.WRITE,
    "create_booking": StaticRisk.WRITE,
    "create_product": StaticRisk.WRITE,
    "create_template": StaticRisk.WRITE,
    "create_page": StaticRisk.WRITE,
    "create_invoice": StaticRisk.WRITE,
    "send_email_from_template": StaticRisk.WRITE,
    "publish_page": StaticRisk.WRITE,
    "publish_form": StaticRisk.WRITE,
    "set_product_price": StaticRisk.WRITE,
    "update_organization_settings": StaticRisk.WRITE,
    "configure_ai_models": StaticRisk.WRITE,
    "create_sub_organization": StaticRisk.WRITE,
    # destructive
    "send_bulk_email": StaticRisk.DESTRUCTIVE,
    "send_bulk_crm_email": StaticRisk.DESTRUCTIVE,
    "send_invoice": StaticRisk.DESTRUCTIVE,
    "process_payment": StaticRisk.DESTRUCTIVE,
    "deactivate_product": StaticRisk.DESTRUCTIVE,
    "delete_contact": StaticRisk.DESTRUCTIVE,
    "publish_all": StaticRisk.DESTRUCTIVE,
    "sync_contacts": StaticRisk.DESTRUCTIVE,
}

DEFAULT_PRICING_TERMS = [
    "price", "pricing", "discount", "refund", "invoice", "payment",
    "coupon", "% off", "free trial", "$", "€", "£", "cost", "fee",
]

DEFAULT_NEGATIVE_TERMS = [
    "unacceptable", "terrible", "worst", "furious", "angry", "complaint",
    "lawsuit", "lawyer", "cancel my", "never again", "disappointed",
    "scam", "fraud", "useless",
]


# ── Config Models ────────────────────────────────────────────────

class RiskClassificationConfig(BaseModel):
    """Static risk map and content-risk detector vocabulary."""
    static_risk: dict[str, StaticRisk] = dict(DEFAULT_STATIC_RISK)
    pricing_terms: list[str] = list(DEFAULT_PRICING_TERMS)
    competitor_terms: list[str] = []
    negative_terms: list[str] = list(DEFAULT_NEGATIVE_TERMS)
    internal_domains: list[str] = []
    bulk_recipient_threshold: int = 10

    @field_validator("bulk_recipient_threshold")
    @classmethod
    def validate_bulk_threshold(cls, v: int) -> int:
        if v < 2 or v > 100000:
            raise ValueError(f"bulk_recipient_threshold must be 2-100000, got {v}")
        return v


class LedgerConfig(BaseModel):
    """Approval record lifetimes and write behavior."""
    action_ttl_hours: float = 24
    self_modification_ttl_hours: float = 72
    allow_list_write_retries: int = 5

    @field_validator("action_ttl_hours", "self_modification_ttl_hours")
    @classmethod
    def validate_ttl(cls, v: float) -> float:
        if v <= 0 or v > 24 * 90:
            raise ValueError(f"TTL must be within (0, 2160] hours, got {v}")
        return v

    @field_validator("allow_list_write_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 1 or v > 50:
            raise ValueError(f"allow_list_write_retries must be 1-50, got {v}")
        return v


class LayerConfig(BaseModel):
    """Layer-specific tool availability."""
    platform_org_slugs: list[str] = ["platform"]
    customer_safe_writes: list[str] = [
        "create_contact",
        "create_booking",
        "register_attendee",
        "create_ticket",
    ]
    platform_only_actions: list[str] = [
        "configure_ai_models",
        "update_platform_settings",
        "manage_organizations",
    ]
    agency_only_actions: list[str] = [
        "create_sub_organization",
        "update_organization_settings",
        "delegate_to_client",
    ]


class SelfModificationConfig(BaseModel):
    """Pre-flight gates for soul proposals."""
    max_proposals_per_window: int = 3
    rate_window_hours: float = 24
    duplicate_window_days: float = 30
    max_proposals_per_week: int = 10
    rejection_cooldown_hours: float = 24
    proposal_cooldown_hours: float = 4
    max_pending_proposals: int = 5
    protected_fields: list[str] = ["neverDo", "blockedTopics", "escalationTriggers"]
    owner_directed_bypasses_rate_limit: bool = True
    write_retries: int = 5

    @field_validator("max_proposals_per_window", "max_proposals_per_week", "max_pending_proposals")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1 or v > 1000:
            raise ValueError(f"limit must be 1-1000, got {v}")
        return v

    @field_validator("rejection_cooldown_hours", "proposal_cooldown_hours")
    @classmethod
    def validate_cooldown(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"cooldown must be >= 0 hours, got {v}")
        return v


class NotificationConfig(BaseModel):
    queue_max_depth: int = 1000
    drain_timeout_seconds: int = 30

    @field_validator("queue_max_depth")
    @classmethod
    def validate_queue_max_depth(cls, v: int) -> int:
        if v < 1 or v > 100000:
            raise ValueError(f"queue_max_depth must be 1-100000, got {v}")
        return v


class GovernanceConfig(BaseModel):
    """Top-level governance configuration."""
    version: str = "1.0"
    risk_classification: RiskClassificationConfig = RiskClassificationConfig()
    ledger: LedgerConfig = LedgerConfig()
    layers: LayerConfig = LayerConfig()
    self_modification: SelfModificationConfig = SelfModificationConfig()
    notifications: NotificationConfig = NotificationConfig()


# ── Loader ───────────────────────────────────────────────────────

def load_governance_config(config_path: Optional[str] = None) -> GovernanceConfig:
    """Load governance config from YAML.

    Args:
        config_path: Path to governance.yaml. If None, checks GOVERNANCE_CONFIG
            and then the standard locations.

    Returns:
        Parsed GovernanceConfig. Returns defaults if file is missing or invalid.
    """
    if config_path is None:
        candidates = [
            os.environ.get("GOVERNANCE_CONFIG", ""),
            "config/governance.yaml",
            os.path.join(os.path.dirname(__file__), "../../../config/governance.yaml"),
        ]
        for candidate in candidates:
            if candidate and os.path.exists(candidate):
                config_path = candidate
                break

    if config_path is None or not os.path.exists(config_path):
        logger.warning("Governance config not found, using defaults")
        return GovernanceConfig()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        if raw is None:
            logger.warning("Governance config is empty, using defaults")
            return GovernanceConfig()

        return GovernanceConfig.model_validate(raw)
    except Exception as e:
        logger.error("Failed to load governance config: %s", e)
        return GovernanceConfig()
