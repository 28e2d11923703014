"""
Agent Autonomy & Approval Governance

This module owns the decision for every action an agent wants to take:
- Risk classification (risk_classifier.py)
- Autonomy policy (autonomy_policy.py)
- Approval ledger and its store (approval_ledger.py, approval_store.py)
- Organizations, agents and action usage (directory.py)
- Typed action payloads (payloads.py)
- Notification worker (notifier.py)
- Engine facade (engine.py)
- Configuration (config.py)

Layer routing lives in src.core.layers and soul evolution in src.core.soul.
"""

__version__ = "0.1.0"
