"""
Typed action payloads.

Every candidate action carries one of a closed set of payload variants,
discriminated on ``kind``. Raw payloads from the inference loop are
validated here at the boundary; everything downstream (risk detection,
approval records, executors) sees a typed model.

Variants expose a normalized view for risk detection:
    normalized_text() → lower-cased text of every human-readable field
    recipient_count() → number of addressed recipients (0 if not a message)
"""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

logger = logging.getLogger(__name__)


def _join(*parts: Any) -> str:
    return " ".join(str(p) for p in parts if p not in (None, "")).lower()


class PayloadModel(BaseModel):
    def normalized_text(self) -> str:
        return ""

    def recipient_count(self) -> int:
        return 0


class MessagePayload(PayloadModel):
    """Outbound email/SMS/chat message to one or more recipients."""
    kind: Literal["message"] = "message"
    recipients: List[str] = Field(default_factory=list)
    subject: str = ""
    body: str = ""
    links: List[str] = Field(default_factory=list)

    def normalized_text(self) -> str:
        return _join(self.subject, self.body, *self.links)

    def recipient_count(self) -> int:
        return len(set(self.recipients))


class RecordPayload(PayloadModel):
    """Create/update of a CRM-style record (contact, ticket, booking...)."""
    kind: Literal["record"] = "record"
    object_type: str = ""
    record_id: Optional[str] = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    def normalized_text(self) -> str:
        return _join(self.object_type, *(f"{k} {v}" for k, v in sorted(self.attributes.items())))


class ContentPayload(PayloadModel):
    """Published content: pages, posts, templates."""
    kind: Literal["content"] = "content"
    title: str = ""
    body: str = ""
    links: List[str] = Field(default_factory=list)

    def normalized_text(self) -> str:
        return _join(self.title, self.body, *self.links)


class PricingPayload(PayloadModel):
    """Price changes, invoices and payments."""
    kind: Literal["pricing"] = "pricing"
    product: str = ""
    amount: Optional[float] = None
    currency: str = ""
    note: str = ""

    def normalized_text(self) -> str:
        return _join("price", self.product, self.amount, self.currency, self.note)


class QueryPayload(PayloadModel):
    """Read-only lookups."""
    kind: Literal["query"] = "query"
    query: str = ""
    filters: dict[str, Any] = Field(default_factory=dict)

    def normalized_text(self) -> str:
        return _join(self.query, *(f"{k} {v}" for k, v in sorted(self.filters.items())))


class SoulChangePayload(PayloadModel):
    """A self-modification proposal against one field of an agent's soul."""
    kind: Literal["soul_change"] = "soul_change"
    field: str
    operation: Literal["add", "modify", "remove"]
    previous_value: Optional[str] = None
    proposed_value: str
    justification: str = ""
    evidence: List[str] = Field(default_factory=list)
    trigger: Literal["conversation", "reflection", "owner_directed", "alignment"] = "reflection"

    @field_validator("field")
    @classmethod
    def field_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("field must not be empty")
        return v.strip()

    def normalized_text(self) -> str:
        return _join(self.field, self.previous_value, self.proposed_value, self.justification)


class GenericPayload(PayloadModel):
    """Fallback bag for payloads that fit no other variant."""
    kind: Literal["generic"] = "generic"
    data: dict[str, Any] = Field(default_factory=dict)

    def normalized_text(self) -> str:
        return json.dumps(self.data, sort_keys=True, default=str).lower()

    def recipient_count(self) -> int:
        recipients = self.data.get("recipients")
        if isinstance(recipients, (list, tuple, set)):
            return len(recipients)
        return 0


ActionPayload = Annotated[
    Union[
        MessagePayload,
        RecordPayload,
        ContentPayload,
        PricingPayload,
        QueryPayload,
        SoulChangePayload,
        GenericPayload,
    ],
    Field(discriminator="kind"),
]

_adapter: TypeAdapter = TypeAdapter(ActionPayload)


def parse_payload(raw: Any) -> PayloadModel:
    """Validate a raw payload into its typed variant.

    Dicts without a ``kind`` are wrapped as GenericPayload. Raises
    pydantic.ValidationError for a declared kind with invalid fields.
    """
    if isinstance(raw, PayloadModel):
        return raw
    if raw is None:
        return GenericPayload()
    if isinstance(raw, dict):
        if "kind" not in raw:
            return GenericPayload(data=raw)
        return _adapter.validate_python(raw)
    return GenericPayload(data={"value": raw})


def coerce_payload(raw: Any) -> PayloadModel:
    """Like parse_payload, but never raises: invalid payloads become generic."""
    try:
        return parse_payload(raw)
    except ValidationError as exc:
        logger.warning("Payload failed validation, treating as generic: %s", exc.error_count())
        data = raw if isinstance(raw, dict) else {"value": raw}
        return GenericPayload(data=data)


def dump_payload(payload: PayloadModel) -> dict:
    return payload.model_dump(mode="json")
