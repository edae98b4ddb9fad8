"""
Envelope codec: builds outbound envelopes and validates inbound ones.

The wire form is a plain JSON-compatible dict:

    {
      "_parley": "__parley__",        # marker distinguishing our traffic
      "_v": "1.0.0",                  # protocol version, major must match
      "_id": "<uuid hex>",
      "_type": "<message type>",
      "_origin": "<sender origin>",
      "_timestamp": 1712345678901,    # ms since epoch
      "_expectsResponse": true,
      "payload": ...,
      "_correlationId": "<id>",       # responses and control replies only
      "_target": "<target id>",       # optional
      "_error": {"code", "message", "details"}   # failed responses only
    }

The codec never looks inside `payload`.
"""
#pylint:disable=line-too-long
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Optional
import time
import uuid

from parley.errors import ErrorCode, ProtocolError

# Current protocol version. Peers interoperate when the major component matches.
PROTOCOL_VERSION = "1.0.0"

PARLEY_MARKER = "__parley__"

# Control types live in this namespace; application types may not use it.
RESERVED_PREFIX = "__parley_"

# Wire keys
K_MARKER = "_parley"
K_VERSION = "_v"
K_ID = "_id"
K_TYPE = "_type"
K_ORIGIN = "_origin"
K_TIMESTAMP = "_timestamp"
K_EXPECTS_RESPONSE = "_expectsResponse"
K_CORRELATION_ID = "_correlationId"
K_TARGET = "_target"
K_ERROR = "_error"
K_PAYLOAD = "payload"


class ControlType(str, Enum):
    HANDSHAKE_INIT = "__parley_handshake_init"
    HANDSHAKE_ACK = "__parley_handshake_ack"
    PING = "__parley_heartbeat_ping"
    PONG = "__parley_heartbeat_pong"
    DISCONNECT = "__parley_disconnect"
    DISCONNECT_ACK = "__parley_disconnect_ack"


_CONTROL_TYPES = {c.value for c in ControlType}

# Control envelopes that answer another control envelope
_CONTROL_REPLIES = {
    ControlType.HANDSHAKE_ACK.value,
    ControlType.PONG.value,
    ControlType.DISCONNECT_ACK.value,
}


class EnvelopeKind(Enum):
    CONTROL = auto()
    REQUEST = auto()
    RESPONSE = auto()


def is_reserved_type(message_type: str) -> bool:
    return isinstance(message_type, str) and message_type.startswith(RESERVED_PREFIX)


def current_millis() -> int:
    return int(time.time() * 1000)


def new_envelope_id() -> str:
    return uuid.uuid4().hex


def major_version(version: str) -> int:
    """Return the major component of a semver string, or raise ValueError."""
    head = version.split(".", 1)[0]
    if not head.isdigit():
        raise ValueError(f"Not a semantic version: {version!r}")
    return int(head)


@dataclass(frozen=True)
class Envelope:
    id: str
    type: str
    origin: str
    timestamp: int
    payload: Any = None
    expects_response: bool = False
    correlation_id: Optional[str] = None
    target_id: Optional[str] = None
    error: Optional[dict[str, Any]] = None
    protocol_version: str = field(default=PROTOCOL_VERSION)

    @property
    def kind(self) -> EnvelopeKind:
        if self.type in _CONTROL_TYPES:
            return EnvelopeKind.CONTROL
        if self.correlation_id is not None:
            return EnvelopeKind.RESPONSE
        return EnvelopeKind.REQUEST

    @property
    def is_control(self) -> bool:
        return self.kind is EnvelopeKind.CONTROL

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            K_MARKER: PARLEY_MARKER,
            K_VERSION: self.protocol_version,
            K_ID: self.id,
            K_TYPE: self.type,
            K_ORIGIN: self.origin,
            K_TIMESTAMP: self.timestamp,
            K_EXPECTS_RESPONSE: self.expects_response,
            K_PAYLOAD: self.payload,
        }
        if self.correlation_id is not None:
            wire[K_CORRELATION_ID] = self.correlation_id
        if self.target_id is not None:
            wire[K_TARGET] = self.target_id
        if self.error is not None:
            wire[K_ERROR] = self.error
        return wire


def build_envelope(
    message_type: str,
    origin: str,
    payload: Any = None,
    *,
    expects_response: bool = False,
    correlation_id: Optional[str] = None,
    target_id: Optional[str] = None,
    error: Optional[dict[str, Any]] = None,
    now_ms: Optional[int] = None,
) -> Envelope:
    """
    Build an outbound envelope, assigning a fresh id, the current timestamp
    and the protocol version.

    Responses (non-reserved type with a correlation id) never expect a
    response themselves, and only responses may carry an `error`.
    """
    if correlation_id is not None and not is_reserved_type(message_type) and expects_response:
        raise ValueError("A response envelope cannot expect a response")
    if error is not None and (correlation_id is None or is_reserved_type(message_type)):
        raise ValueError("Only application responses may carry an error")
    return Envelope(
        id=new_envelope_id(),
        type=message_type,
        origin=origin,
        timestamp=now_ms if now_ms is not None else current_millis(),
        payload=payload,
        expects_response=expects_response,
        correlation_id=correlation_id,
        target_id=target_id,
        error=error,
    )


def build_response(request: Envelope, origin: str, payload: Any = None,
                   error: Optional[dict[str, Any]] = None) -> Envelope:
    return build_envelope(
        request.type,
        origin,
        payload,
        correlation_id=request.id,
        target_id=None,
        error=error,
    )


def build_control(control: ControlType, origin: str, payload: Any = None,
                  correlation_id: Optional[str] = None,
                  target_id: Optional[str] = None) -> Envelope:
    return build_envelope(
        control.value,
        origin,
        payload,
        correlation_id=correlation_id,
        target_id=target_id,
    )


def _require(data: dict, key: str, kinds: tuple[type, ...], what: str) -> Any:
    if key not in data:
        raise ProtocolError(f"Envelope is missing required field {key!r}",
                            code=ErrorCode.VALIDATION_REQUIRED_FIELD_MISSING,
                            details={"field": key})
    value = data[key]
    # bool is an int subclass; never accept it where a number is expected
    if not isinstance(value, kinds) or (isinstance(value, bool) and bool not in kinds):
        raise ProtocolError(f"Envelope field {key!r} must be {what}, got {type(value).__name__}",
                            code=ErrorCode.VALIDATION_TYPE_MISMATCH,
                            details={"field": key})
    return value


#pylint:disable=too-many-branches, too-many-locals
def decode_envelope(
    data: Any,
    *,
    max_age_ms: Optional[int] = None,
    now_ms: Optional[int] = None,
) -> Envelope:
    """
    Validate a raw inbound object and return the decoded `Envelope`.

    Raises `ProtocolError` when:
      • the object is not a dict or lacks the parley marker
      • a required field is missing or has the wrong kind
      • the major protocol version differs from ours
      • the timestamp is not a positive integer, or is older than `max_age_ms`
      • the type is in the reserved namespace but is not a known control type
      • a response expects a response, or a non-response carries an error
    """
    if not isinstance(data, dict):
        raise ProtocolError(f"Envelope must be an object, got {type(data).__name__}")
    if data.get(K_MARKER) != PARLEY_MARKER:
        raise ProtocolError("Not a parley envelope (marker missing)")

    version = _require(data, K_VERSION, (str,), "a version string")
    try:
        remote_major = major_version(version)
    except ValueError as e:
        raise ProtocolError(str(e), code=ErrorCode.SECURITY_VERSION_MISMATCH) from e
    if remote_major != major_version(PROTOCOL_VERSION):
        raise ProtocolError(
            f"Incompatible protocol version {version} (local {PROTOCOL_VERSION})",
            code=ErrorCode.SECURITY_VERSION_MISMATCH,
            details={"remote": version, "local": PROTOCOL_VERSION},
        )

    envelope_id = _require(data, K_ID, (str,), "a string")
    message_type = _require(data, K_TYPE, (str,), "a string")
    origin = _require(data, K_ORIGIN, (str,), "a string")
    timestamp = _require(data, K_TIMESTAMP, (int, float), "a number")
    expects_response = _require(data, K_EXPECTS_RESPONSE, (bool,), "a boolean")

    if not envelope_id:
        raise ProtocolError("Envelope id must not be empty", code=ErrorCode.VALIDATION_TYPE_MISMATCH)
    if not message_type:
        raise ProtocolError("Envelope type must not be empty", code=ErrorCode.VALIDATION_TYPE_MISMATCH)
    if isinstance(timestamp, float) and not timestamp.is_integer():
        raise ProtocolError("Envelope timestamp must be an integer", code=ErrorCode.VALIDATION_TYPE_MISMATCH)
    timestamp = int(timestamp)
    if timestamp <= 0:
        raise ProtocolError("Envelope timestamp must be positive", code=ErrorCode.VALIDATION_TYPE_MISMATCH)

    if max_age_ms is not None:
        now = now_ms if now_ms is not None else current_millis()
        if now - timestamp > max_age_ms:
            raise ProtocolError(
                f"Stale envelope ({now - timestamp} ms old, limit {max_age_ms} ms)",
                code=ErrorCode.SECURITY_STALE_ENVELOPE,
                details={"age_ms": now - timestamp},
            )

    correlation_id = data.get(K_CORRELATION_ID)
    if correlation_id is not None and not isinstance(correlation_id, str):
        raise ProtocolError("Envelope correlation id must be a string", code=ErrorCode.VALIDATION_TYPE_MISMATCH)

    target_id = data.get(K_TARGET)
    if target_id is not None and not isinstance(target_id, str):
        raise ProtocolError("Envelope target must be a string", code=ErrorCode.VALIDATION_TYPE_MISMATCH)

    if is_reserved_type(message_type):
        if message_type not in _CONTROL_TYPES:
            raise ProtocolError(f"Unknown control type {message_type!r}",
                                code=ErrorCode.VALIDATION_UNREGISTERED_TYPE)
        if message_type in _CONTROL_REPLIES and correlation_id is None:
            raise ProtocolError(f"Control reply {message_type!r} lacks a correlation id",
                                code=ErrorCode.VALIDATION_REQUIRED_FIELD_MISSING)
    elif correlation_id is not None and expects_response:
        raise ProtocolError("A response envelope cannot expect a response")

    error = data.get(K_ERROR)
    if error is not None:
        if correlation_id is None or is_reserved_type(message_type):
            raise ProtocolError("Only application responses may carry an error")
        if not isinstance(error, dict) or not isinstance(error.get("code"), str) or not isinstance(error.get("message"), str):
            raise ProtocolError("Envelope error must have string 'code' and 'message'",
                                code=ErrorCode.VALIDATION_TYPE_MISMATCH)

    return Envelope(
        id=envelope_id,
        type=message_type,
        origin=origin,
        timestamp=timestamp,
        payload=data.get(K_PAYLOAD),
        expects_response=expects_response,
        correlation_id=correlation_id,
        target_id=target_id,
        error=error,
        protocol_version=version,
    )


__all__ = [
    "PROTOCOL_VERSION",
    "PARLEY_MARKER",
    "RESERVED_PREFIX",
    "ControlType",
    "EnvelopeKind",
    "Envelope",
    "is_reserved_type",
    "current_millis",
    "new_envelope_id",
    "major_version",
    "build_envelope",
    "build_response",
    "build_control",
    "decode_envelope",
]
