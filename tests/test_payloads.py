"""Tests for typed action payloads."""

import os
import sys

import pytest
from pydantic import ValidationError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.core.governance.payloads import (
    GenericPayload,
    MessagePayload,
    PricingPayload,
    SoulChangePayload,
    coerce_payload,
    dump_payload,
    parse_payload,
)


def test_kind_selects_variant():
    payload = parse_payload({"kind": "message", "recipients": ["a@x.io"], "body": "Hi"})
    assert isinstance(payload, MessagePayload)
    assert payload.recipients == ["a@x.io"]


def test_dict_without_kind_is_generic():
    payload = parse_payload({"foo": "bar"})
    assert isinstance(payload, GenericPayload)
    assert payload.data == {"foo": "bar"}


def test_none_and_scalars_are_generic():
    assert parse_payload(None) == GenericPayload()
    assert parse_payload("hello").data == {"value": "hello"}


def test_typed_payload_passes_through():
    payload = MessagePayload(body="x")
    assert parse_payload(payload) is payload


def test_invalid_fields_raise():
    with pytest.raises(ValidationError):
        parse_payload({"kind": "message", "recipients": 5})
    with pytest.raises(ValidationError):
        parse_payload({"kind": "no_such_kind"})


def test_coerce_never_raises():
    payload = coerce_payload({"kind": "message", "recipients": 5})
    assert isinstance(payload, GenericPayload)
    assert payload.data["recipients"] == 5


def test_recipient_count_deduplicates():
    assert MessagePayload(recipients=["a", "b", "a"]).recipient_count() == 2
    assert GenericPayload(data={"recipients": ["a", "b"]}).recipient_count() == 2
    assert PricingPayload().recipient_count() == 0


def test_normalized_text_is_lower_case():
    text = MessagePayload(subject="Big NEWS", body="Visit", links=["https://X.io"]).normalized_text()
    assert text == "big news visit https://x.io"


def test_pricing_text_always_mentions_price():
    assert "price" in PricingPayload(product="Widget").normalized_text()


def test_soul_change_validation():
    change = SoulChangePayload(field=" faqs ", operation="add", proposed_value="x")
    assert change.field == "faqs"
    assert change.trigger == "reflection"
    with pytest.raises(ValidationError):
        SoulChangePayload(field="  ", operation="add", proposed_value="x")
    with pytest.raises(ValidationError):
        SoulChangePayload(field="faqs", operation="replace", proposed_value="x")


def test_dump_round_trips_kind():
    dumped = dump_payload(MessagePayload(body="hi"))
    assert dumped["kind"] == "message"
    assert parse_payload(dumped) == MessagePayload(body="hi")
