from dataclasses import dataclass
from typing import Any, Optional

from parley.errors import ErrorCode, ValidationError
from parley.protocol.envelope import RESERVED_PREFIX

# Prefixes application code may not use for message types
RESERVED_TYPE_PREFIXES = (RESERVED_PREFIX, "system:")


def check_application_type(message_type: Any) -> str:
    """Raise ValidationError unless `message_type` is a usable application type name."""
    if not isinstance(message_type, str) or not message_type.strip():
        raise ValidationError(
            f"Message type must be a non-empty string, got {message_type!r}",
            code=ErrorCode.VALIDATION_TYPE_MISMATCH,
        )
    for prefix in RESERVED_TYPE_PREFIXES:
        if message_type.startswith(prefix):
            raise ValidationError(
                f"Message type {message_type!r} uses the reserved prefix {prefix!r}",
                code=ErrorCode.VALIDATION_RESERVED_TYPE,
            )
    return message_type


@dataclass(slots=True)
class MessageTypeSpec:
    name: str
    schema: Optional[dict[str, Any]] = None
    timeout_seconds: Optional[float] = None
    retries: Optional[int] = None

    def __post_init__(self):
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"timeout for {self.name!r} must be a number > 0")
        if self.retries is not None and self.retries < 0:
            raise ValueError(f"retries for {self.name!r} must be an integer ≥ 0")
        if self.schema is not None and not isinstance(self.schema, dict):
            raise ValueError(f"schema for {self.name!r} must be a dict")


class MessageTypeRegistry:
    """
    Catalogue of application message types.

    Registration is optional: unregistered types can still be sent and
    handled, they simply carry no schema and use the engine's default
    timeout and retries.
    """

    def __init__(self):
        self._types: dict[str, MessageTypeSpec] = {}

    def register(
        self,
        message_type: str,
        schema: Optional[dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None,
        retries: Optional[int] = None,
    ) -> MessageTypeSpec:
        check_application_type(message_type)
        spec = MessageTypeSpec(message_type, schema, timeout_seconds, retries)
        self._types[message_type] = spec
        return spec

    def unregister(self, message_type: str) -> bool:
        return self._types.pop(message_type, None) is not None

    def get(self, message_type: str) -> Optional[MessageTypeSpec]:
        return self._types.get(message_type)

    def schema_for(self, message_type: str) -> Optional[dict[str, Any]]:
        spec = self._types.get(message_type)
        return spec.schema if spec is not None else None

    def __contains__(self, message_type: object) -> bool:
        return message_type in self._types

    def __len__(self) -> int:
        return len(self._types)

    def names(self) -> list[str]:
        return list(self._types)
