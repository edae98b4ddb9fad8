"""
Error codes and the exception taxonomy raised by the engine.

Every exception carries a machine-readable `code` (an `ErrorCode`), a
human-readable message, optional `details`, and the wall-clock time (ms) at
which it was created. `to_dict()` yields the shape used on the wire for
failed application responses: {"code", "message", "details"}.
"""
from enum import Enum
from typing import Any, Optional
import time


class ErrorCode(str, Enum):
    # Validation
    VALIDATION_SCHEMA_MISMATCH = "ERR_VALIDATION_SCHEMA_MISMATCH"
    VALIDATION_REQUIRED_FIELD_MISSING = "ERR_VALIDATION_REQUIRED_FIELD_MISSING"
    VALIDATION_TYPE_MISMATCH = "ERR_VALIDATION_TYPE_MISMATCH"
    VALIDATION_UNREGISTERED_TYPE = "ERR_VALIDATION_UNREGISTERED_TYPE"
    VALIDATION_INVALID_PROTOCOL = "ERR_VALIDATION_INVALID_PROTOCOL"
    VALIDATION_PAYLOAD_TOO_LARGE = "ERR_VALIDATION_PAYLOAD_TOO_LARGE"
    VALIDATION_RESERVED_TYPE = "ERR_VALIDATION_RESERVED_TYPE"

    # Timeouts
    TIMEOUT_NO_RESPONSE = "ERR_TIMEOUT_NO_RESPONSE"
    TIMEOUT_HANDSHAKE = "ERR_TIMEOUT_HANDSHAKE"
    TIMEOUT_RETRIES_EXHAUSTED = "ERR_TIMEOUT_RETRIES_EXHAUSTED"

    # Targets
    TARGET_NOT_FOUND = "ERR_TARGET_NOT_FOUND"
    TARGET_NOT_CONNECTED = "ERR_TARGET_NOT_CONNECTED"
    TARGET_DUPLICATE_ID = "ERR_TARGET_DUPLICATE_ID"

    # Security
    SECURITY_ORIGIN_MISMATCH = "ERR_SECURITY_ORIGIN_MISMATCH"
    SECURITY_VERSION_MISMATCH = "ERR_SECURITY_VERSION_MISMATCH"
    SECURITY_STALE_ENVELOPE = "ERR_SECURITY_STALE_ENVELOPE"
    SECURITY_RATE_LIMITED = "ERR_SECURITY_RATE_LIMITED"

    # Connection
    CONNECTION_CLOSED = "ERR_CONNECTION_CLOSED"
    CONNECTION_FAILED = "ERR_CONNECTION_FAILED"
    CONNECTION_HANDSHAKE_FAILED = "ERR_CONNECTION_HANDSHAKE_FAILED"
    CONNECTION_NOT_READY = "ERR_CONNECTION_NOT_READY"
    CONNECTION_LOST = "ERR_CONNECTION_LOST"
    CONNECTION_ILLEGAL_TRANSITION = "ERR_CONNECTION_ILLEGAL_TRANSITION"

    # Application handlers (remote side)
    NO_HANDLER = "ERR_NO_HANDLER"
    HANDLER_ERROR = "ERR_HANDLER_ERROR"

    # Engine
    ENGINE_CLOSED = "ERR_ENGINE_CLOSED"
    TRANSPORT_SEND_FAILED = "ERR_TRANSPORT_SEND_FAILED"


class ParleyError(Exception):
    """Base class of every error raised by parley."""

    default_code: ErrorCode = ErrorCode.CONNECTION_FAILED

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode | str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code if code is not None else self.default_code
        self.details = details or {}
        self.timestamp = int(time.time() * 1000)

    def to_dict(self) -> dict[str, Any]:
        code = self.code.value if isinstance(self.code, ErrorCode) else str(self.code)
        return {"code": code, "message": self.message, "details": self.details}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!s}, message={self.message!r})"


class ProtocolError(ParleyError):
    """Raised by the codec for malformed, stale or foreign envelopes. Never leaves the engine."""
    default_code = ErrorCode.VALIDATION_INVALID_PROTOCOL


class HandshakeError(ParleyError):
    """Raised to the caller of `connect` when the handshake fails or times out."""
    default_code = ErrorCode.CONNECTION_HANDSHAKE_FAILED


class ConnectionLostError(ParleyError):
    """Raised to every pending call of a target whose connection was torn down."""
    default_code = ErrorCode.CONNECTION_LOST

    def __init__(self, message: str, reason: str, code: Optional[ErrorCode | str] = None,
                 details: Optional[dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("reason", reason)
        super().__init__(message, code=code, details=details)
        self.reason = reason


class RequestTimeoutError(ParleyError):
    """Raised when a request's retries are exhausted without a response."""
    default_code = ErrorCode.TIMEOUT_RETRIES_EXHAUSTED

    def __init__(self, message: str, attempts: int, timeout: float,
                 code: Optional[ErrorCode | str] = None, details: Optional[dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("attempts", attempts)
        details.setdefault("timeout", timeout)
        super().__init__(message, code=code, details=details)
        self.attempts = attempts
        self.timeout = timeout


class TargetNotFoundError(ParleyError):
    """Raised when an operation names an unknown target, or one that is not connected."""
    default_code = ErrorCode.TARGET_NOT_FOUND


class DuplicateTargetError(ParleyError):
    """Raised when registering a target id that is already registered."""
    default_code = ErrorCode.TARGET_DUPLICATE_ID


class IllegalTransitionError(ParleyError):
    """Raised when a connection state change is not in the transition table."""
    default_code = ErrorCode.CONNECTION_ILLEGAL_TRANSITION


class ValidationError(ParleyError):
    """Raised when an outbound payload or message type is rejected before sending."""
    default_code = ErrorCode.VALIDATION_SCHEMA_MISMATCH

    def __init__(self, message: str, errors: Optional[list[str]] = None,
                 code: Optional[ErrorCode | str] = None, details: Optional[dict[str, Any]] = None):
        details = dict(details or {})
        if errors:
            details.setdefault("errors", list(errors))
        super().__init__(message, code=code, details=details)
        self.errors = list(errors or [])


class RemoteError(ParleyError):
    """Raised when the remote handler answered with a failure."""
    default_code = ErrorCode.HANDLER_ERROR

    @classmethod
    def from_wire(cls, error: dict[str, Any]) -> "RemoteError":
        return cls(
            str(error.get("message", "Remote handler failed")),
            code=error.get("code", ErrorCode.HANDLER_ERROR),
            details=error.get("details") if isinstance(error.get("details"), dict) else None,
        )


class TransportError(ParleyError):
    """Raised by transports when an envelope cannot be handed over."""
    default_code = ErrorCode.TRANSPORT_SEND_FAILED


class RateLimitError(ParleyError):
    """Raised when an outbound message exceeds the configured rate."""
    default_code = ErrorCode.SECURITY_RATE_LIMITED


class EngineClosedError(ParleyError):
    """Raised by every public operation after `shutdown()`."""
    default_code = ErrorCode.ENGINE_CLOSED


__all__ = [
    "ErrorCode",
    "ParleyError",
    "ProtocolError",
    "HandshakeError",
    "ConnectionLostError",
    "RequestTimeoutError",
    "TargetNotFoundError",
    "DuplicateTargetError",
    "IllegalTransitionError",
    "ValidationError",
    "RemoteError",
    "TransportError",
    "RateLimitError",
    "EngineClosedError",
]
