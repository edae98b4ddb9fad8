"""
Payload schema validation.

`SchemaValidator` is the capability the engine calls before sending and after
receiving application messages. `JsonSchemaValidator` is the default: it knows
the schema registered for each message type (see `MessageTypeRegistry`) and
checks payloads against a JSON-Schema subset:

  • type             "string" | "number" | "integer" | "boolean" | "object" | "array" | "null"
                     or a list of those
  • enum             list of allowed values
  • required         list of keys that must be present (objects)
  • properties       per-key sub-schemas (objects)
  • additionalProperties   False rejects unknown keys (objects)
  • items            sub-schema applied to every element (arrays)
  • minItems / maxItems
  • minimum / maximum            (numbers)
  • minLength / maxLength / pattern   (strings)

Nesting deeper than MAX_DEPTH is reported as an error rather than recursed.
"""
#pylint:disable=line-too-long
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional
import re

MAX_DEPTH = 50

_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "integer": lambda v: (isinstance(v, int) and not isinstance(v, bool)) or (isinstance(v, float) and v.is_integer()),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
    "null": lambda v: v is None,
}


class SchemaValidator(ABC):

    @abstractmethod
    def validate(self, message_type: str, payload: Any) -> list[str]:
        """Return a list of human-readable errors; empty means valid."""


def _describe(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


#pylint:disable=too-many-branches, too-many-statements
def validate_against(schema: dict[str, Any], value: Any, path: str = "payload", depth: int = 0) -> list[str]:
    """
    Walk `value` alongside `schema` and collect every violation.
    Paths are reported as payload.a.b[2].
    """
    if depth > MAX_DEPTH:
        return [f"{path}: nesting exceeds maximum depth of {MAX_DEPTH}"]
    if not isinstance(schema, dict):
        return []

    errors: list[str] = []

    expected = schema.get("type")
    if expected is not None:
        allowed = expected if isinstance(expected, list) else [expected]
        if not any(_TYPE_CHECKS.get(t, lambda v: False)(value) for t in allowed):
            errors.append(f"{path}: expected {' | '.join(allowed)}, got {_describe(value)}")
            # Type is wrong; the remaining keywords would only add noise
            return errors

    if "enum" in schema and value not in schema["enum"]:
        errors.append(f"{path}: value {value!r} is not one of {schema['enum']!r}")

    if isinstance(value, dict):
        for key in schema.get("required", []):
            if key not in value:
                errors.append(f"{path}: missing required field {key!r}")
        properties = schema.get("properties", {})
        for key, sub_schema in properties.items():
            if key in value:
                errors.extend(validate_against(sub_schema, value[key], f"{path}.{key}", depth + 1))
        if schema.get("additionalProperties") is False:
            for key in value:
                if key not in properties:
                    errors.append(f"{path}: unexpected field {key!r}")

    elif isinstance(value, list):
        if "minItems" in schema and len(value) < schema["minItems"]:
            errors.append(f"{path}: expected at least {schema['minItems']} items, got {len(value)}")
        if "maxItems" in schema and len(value) > schema["maxItems"]:
            errors.append(f"{path}: expected at most {schema['maxItems']} items, got {len(value)}")
        if isinstance((items := schema.get("items")), dict):
            for i, element in enumerate(value):
                errors.extend(validate_against(items, element, f"{path}[{i}]", depth + 1))

    elif isinstance(value, str):
        if "minLength" in schema and len(value) < schema["minLength"]:
            errors.append(f"{path}: length {len(value)} is below minLength {schema['minLength']}")
        if "maxLength" in schema and len(value) > schema["maxLength"]:
            errors.append(f"{path}: length {len(value)} is above maxLength {schema['maxLength']}")
        if "pattern" in schema:
            try:
                if re.search(schema["pattern"], value) is None:
                    errors.append(f"{path}: does not match pattern {schema['pattern']!r}")
            except re.error as e:
                errors.append(f"{path}: invalid pattern {schema['pattern']!r} ({e})")

    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        if "minimum" in schema and value < schema["minimum"]:
            errors.append(f"{path}: {value} is below minimum {schema['minimum']}")
        if "maximum" in schema and value > schema["maximum"]:
            errors.append(f"{path}: {value} is above maximum {schema['maximum']}")

    return errors


class JsonSchemaValidator(SchemaValidator):
    """
    Validates payloads against the schema registered for their message type.
    Types without a schema always pass.
    """

    def __init__(self, schema_lookup: Optional[Callable[[str], Optional[dict[str, Any]]]] = None):
        self._schema_lookup = schema_lookup
        self._schemas: dict[str, dict[str, Any]] = {}

    def bind(self, schema_lookup: Callable[[str], Optional[dict[str, Any]]]) -> None:
        self._schema_lookup = schema_lookup

    def add_schema(self, message_type: str, schema: dict[str, Any]) -> None:
        self._schemas[message_type] = schema

    def schema_for(self, message_type: str) -> Optional[dict[str, Any]]:
        if message_type in self._schemas:
            return self._schemas[message_type]
        if self._schema_lookup is not None:
            return self._schema_lookup(message_type)
        return None

    def validate(self, message_type: str, payload: Any) -> list[str]:
        schema = self.schema_for(message_type)
        if schema is None:
            return []
        return validate_against(schema, payload)


__all__ = [
    "MAX_DEPTH",
    "SchemaValidator",
    "JsonSchemaValidator",
    "validate_against",
]
