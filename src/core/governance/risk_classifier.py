"""
Risk Classifier

Scores a candidate action into a risk tier (low / medium / high) from the
static risk of its action identity plus content risk factors detected in
its payload.

Tier table:
    destructive              → high
    write + ≥1 factor        → high
    write + 0 factors        → medium
    read_only + ≥2 factors   → medium
    otherwise                → low

classify() is pure and total: it never raises. Unknown actions are treated
as writes, and any failure while inspecting the payload degrades to the
write path with whatever factors were found before the failure.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional
from urllib.parse import urlparse

from .config import RiskClassificationConfig
from .models import AgentContext, RiskAssessment, RiskFactor, RiskTier, StaticRisk
from .payloads import PayloadModel, coerce_payload

logger = logging.getLogger(__name__)

_URL_RE = re.compile(r"(?:https?://|www\.)[^\s<>\"')\]]+", re.IGNORECASE)


class RiskClassifier:
    """Classifies candidate actions into risk tiers.

    Classification algorithm:
    1. Look up action in the static risk map → read_only / write / destructive
       (unknown = write)
    2. Normalize the payload into lower-cased text and a recipient count
    3. Run each content detector against the normalized view
    4. Resolve the tier from static risk and the number of factors
    """

    def __init__(self, config: RiskClassificationConfig):
        self._config = config
        self._static: dict[str, StaticRisk] = dict(config.static_risk)
        self._pricing = [t.lower() for t in config.pricing_terms if t]
        self._competitors = [t.lower() for t in config.competitor_terms if t]
        self._negative = [t.lower() for t in config.negative_terms if t]
        self._internal = [d.lower().lstrip(".") for d in config.internal_domains if d]

    def static_risk(self, action: str) -> StaticRisk:
        return self._static.get(action, StaticRisk.WRITE)

    def is_read_only(self, action: str) -> bool:
        return self.static_risk(action) == StaticRisk.READ_ONLY

    @property
    def known_actions(self) -> list[str]:
        return sorted(self._static.keys())

    def classify(
        self,
        action: str,
        payload: Any = None,
        context: Optional[AgentContext] = None,
    ) -> RiskAssessment:
        """Classify an action into a risk tier.

        Args:
            action: The action identity (e.g. "send_bulk_email")
            payload: A typed payload, or a raw dict to be coerced
            context: The proposing agent's history (used actions,
                competitor names). None skips the first-time-use check.

        Returns:
            RiskAssessment with tier, static risk and contributing factors
        """
        static = self._static.get(action, StaticRisk.WRITE)
        factors: list[RiskFactor] = []

        try:
            text, recipients = self._normalize(payload)

            if self._mentions(text, self._pricing):
                factors.append(RiskFactor.PRICING_MENTION)

            competitors = list(self._competitors)
            if context is not None:
                competitors.extend(n.lower() for n in context.competitor_names if n)
            if self._mentions(text, competitors):
                factors.append(RiskFactor.COMPETITOR_MENTION)

            if self._mentions(text, self._negative):
                factors.append(RiskFactor.NEGATIVE_SENTIMENT)

            if self._has_external_url(text):
                factors.append(RiskFactor.EXTERNAL_URL)

            if recipients >= self._config.bulk_recipient_threshold:
                factors.append(RiskFactor.BULK_RECIPIENTS)

            if context is not None and action not in context.used_actions:
                factors.append(RiskFactor.FIRST_TIME_USE)
        except Exception as e:
            logger.warning("Risk detection failed for %s, treating as write: %s", action, e)
            if static == StaticRisk.READ_ONLY:
                static = StaticRisk.WRITE

        return RiskAssessment(
            tier=self._resolve_tier(static, len(factors)),
            static_risk=static,
            factors=tuple(factors),
        )

    # ── Internals ────────────────────────────────────────────────

    @staticmethod
    def _resolve_tier(static: StaticRisk, factor_count: int) -> RiskTier:
        if static == StaticRisk.DESTRUCTIVE:
            return RiskTier.HIGH
        if static == StaticRisk.WRITE:
            return RiskTier.HIGH if factor_count >= 1 else RiskTier.MEDIUM
        if factor_count >= 2:
            return RiskTier.MEDIUM
        return RiskTier.LOW

    @staticmethod
    def _normalize(payload: Any) -> tuple[str, int]:
        """Reduce any payload to (lower-cased text, recipient count)."""
        try:
            typed = payload if isinstance(payload, PayloadModel) else coerce_payload(payload)
            return typed.normalized_text(), typed.recipient_count()
        except Exception as e:
            logger.debug("Payload normalization failed, using string form: %s", e)
            return str(payload).lower(), 0

    @staticmethod
    def _mentions(text: str, terms: list[str]) -> bool:
        for term in terms:
            if term.isalnum():
                if re.search(r"\b" + re.escape(term) + r"\b", text):
                    return True
            elif term in text:
                return True
        return False

    def _has_external_url(self, text: str) -> bool:
        for match in _URL_RE.findall(text):
            url = match if "://" in match else "http://" + match
            host = (urlparse(url).hostname or "").lower()
            if not host:
                continue
            if not any(host == d or host.endswith("." + d) for d in self._internal):
                return True
        return False
