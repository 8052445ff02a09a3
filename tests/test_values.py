from __future__ import annotations

from datetime import date
from uuid import UUID

import pytest

from entity_block_store.models.template import PropertyDefinition
from entity_block_store.schema.values import PropertyValueError, check_value, decode_value, encode_value


def _definition(value_type: str) -> PropertyDefinition:
    return PropertyDefinition(id=1, template_id=1, key="Field", type=value_type)


@pytest.mark.parametrize(
    ("value_type", "value"),
    [
        ("number", 3),
        ("number", 2.5),
        ("integer", 4),
        ("boolean", False),
        ("array", ["a"]),
        ("object", {"a": 1}),
        ("text", {"anything": True}),
        ("rich-text", 12),
    ],
)
def test_accepted_values(value_type, value):
    check_value(_definition(value_type), value)


@pytest.mark.parametrize(
    ("value_type", "value"),
    [("number", "3"), ("number", True), ("integer", 1.5), ("boolean", "yes"), ("array", "a,b"), ("object", [])],
)
def test_rejected_values(value_type, value):
    with pytest.raises(PropertyValueError) as excinfo:
        check_value(_definition(value_type), value)

    assert excinfo.value.key == "Field"


def test_encoding_preserves_types():
    assert decode_value(encode_value("0")) == "0"
    assert decode_value(encode_value(0)) == 0
    assert decode_value(encode_value(["ünïcode"])) == ["ünïcode"]
    assert encode_value(date(2024, 5, 1)) == '"2024-05-01"'
    assert encode_value(UUID(int=1)) == '"00000000-0000-0000-0000-000000000001"'


def test_unsupported_values_are_refused():
    with pytest.raises(TypeError):
        encode_value(object())


def test_unserializable_values_fail_the_type_check():
    with pytest.raises(PropertyValueError):
        check_value(_definition("text"), object())
