"""
Tests for payload schema validation and the message type registry
"""
import pytest

from parley.errors import ErrorCode, ValidationError
from parley.protocol.message_types import MessageTypeRegistry, check_application_type
from parley.protocol.validation import JsonSchemaValidator, validate_against

CALC_SCHEMA = {
    "type": "object",
    "required": ["x", "y"],
    "properties": {
        "x": {"type": "number", "minimum": 0},
        "y": {"type": "number", "maximum": 100},
        "op": {"type": "string", "enum": ["add", "sub"]},
    },
    "additionalProperties": False,
}


def test_valid_payload_has_no_errors():
    assert validate_against(CALC_SCHEMA, {"x": 1, "y": 2, "op": "add"}) == []


def test_all_violations_are_reported():
    errors = validate_against(CALC_SCHEMA, {"x": -1, "y": "two", "op": "mul", "extra": 1})
    assert len(errors) == 4
    assert any("payload.x" in e and "minimum" in e for e in errors)
    assert any("payload.y" in e and "expected number" in e for e in errors)
    assert any("payload.op" in e for e in errors)
    assert any("unexpected field 'extra'" in e for e in errors)


def test_wrong_top_level_type_short_circuits():
    assert validate_against(CALC_SCHEMA, [1, 2]) == ["payload: expected object, got array"]


def test_booleans_are_not_numbers():
    assert validate_against({"type": "number"}, True) == ["payload: expected number, got boolean"]
    assert validate_against({"type": "integer"}, 3) == []
    assert validate_against({"type": "integer"}, 3.5) != []


def test_arrays_and_strings():
    schema = {"type": "array", "minItems": 1, "maxItems": 2, "items": {"type": "string", "pattern": "^a"}}
    assert validate_against(schema, ["ab"]) == []
    assert validate_against(schema, []) == ["payload: expected at least 1 items, got 0"]
    errors = validate_against(schema, ["ab", "b", "ac"])
    assert "payload: expected at most 2 items, got 3" in errors
    assert any(e.startswith("payload[1]") for e in errors)

    lengths = {"type": "string", "minLength": 2, "maxLength": 3}
    assert validate_against(lengths, "a") != []
    assert validate_against(lengths, "abcd") != []


def test_union_types():
    assert validate_against({"type": ["string", "null"]}, None) == []
    assert validate_against({"type": ["string", "null"]}, 1) == ["payload: expected string | null, got number"]


def test_validator_uses_lookup_and_local_schemas():
    registry = MessageTypeRegistry()
    registry.register("calc", schema=CALC_SCHEMA)
    validator = JsonSchemaValidator(registry.schema_for)
    assert validator.validate("calc", {"x": 1}) == ["payload: missing required field 'y'"]
    assert validator.validate("anything", 123) == []

    validator.add_schema("anything", {"type": "string"})
    assert validator.validate("anything", 123) != []


def test_registry_register_and_unregister():
    registry = MessageTypeRegistry()
    spec = registry.register("calc", timeout_seconds=2.0, retries=1)
    assert "calc" in registry
    assert registry.get("calc") is spec
    assert registry.schema_for("calc") is None
    assert registry.names() == ["calc"]
    assert registry.unregister("calc")
    assert not registry.unregister("calc")
    assert len(registry) == 0


def test_registry_rejects_bad_defaults():
    registry = MessageTypeRegistry()
    with pytest.raises(ValueError):
        registry.register("calc", timeout_seconds=0)
    with pytest.raises(ValueError):
        registry.register("calc", retries=-1)
    with pytest.raises(ValueError):
        registry.register("calc", schema=["not", "a", "dict"])


@pytest.mark.parametrize("message_type, code", [
    ("__parley_heartbeat_ping", ErrorCode.VALIDATION_RESERVED_TYPE),
    ("system:anything", ErrorCode.VALIDATION_RESERVED_TYPE),
    ("", ErrorCode.VALIDATION_TYPE_MISMATCH),
    (None, ErrorCode.VALIDATION_TYPE_MISMATCH),
])
def test_reserved_and_empty_types(message_type, code):
    with pytest.raises(ValidationError) as excinfo:
        check_application_type(message_type)
    assert excinfo.value.code is code
