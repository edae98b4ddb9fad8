"""
Request/response router.

A request is an envelope with `expects_response=True` plus a PendingRequest
keyed by the envelope id. Exactly one of three outcomes settles the caller:

  • a response correlated to the current attempt's id  -> payload (or RemoteError)
  • the deadline passes                                 -> retry under a fresh id,
                                                           or RequestTimeoutError
  • the connection is torn down                         -> ConnectionLostError

Retries supersede ids: the old id leaves the pending table before the new
attempt is sent, so a late response to it matches nothing and is dropped.
"""
#pylint:disable=line-too-long
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
import asyncio

from parley.errors import (
    ErrorCode,
    ParleyError,
    RateLimitError,
    RemoteError,
    RequestTimeoutError,
    TargetNotFoundError,
    TransportError,
    ValidationError,
)
from parley.events import DisconnectReason, EventBus, MessageEvent, RequestTimedOut, SystemEvent
from parley.engine.registry import ConnectionRegistry
from parley.engine.timers import TimerArena
from parley.logger import get_logger, Logger
from parley.protocol.envelope import Envelope, build_envelope
from parley.protocol.message_types import MessageTypeRegistry, check_application_type
from parley.protocol.validation import SchemaValidator
from parley.security import SecurityGate
from parley.utils.json_handlers import json_size
from parley.utils.request_configs import RateLimitConfig, RequestConfig

SendFn = Callable[[str, Envelope], None]

RATE_WINDOW_SECONDS = 1.0


def _timer_key(request_id: str) -> str:
    return f"request:{request_id}"


@dataclass(slots=True)
class PendingRequest:
    request_id: str
    target_id: str
    message_type: str
    payload: Any
    future: asyncio.Future
    timeout: float
    retries_remaining: int
    deadline: float = 0.0
    attempt: int = 0
    sent_at: float = field(default=0.0)


class RequestRouter:

    def __init__(
        self,
        registry: ConnectionRegistry,
        timers: TimerArena,
        events: EventBus,
        send: SendFn,
        *,
        origin: str,
        request_config: RequestConfig,
        rate_limit: RateLimitConfig,
        max_failures: int,
        security: SecurityGate,
        validator: SchemaValidator,
        message_types: MessageTypeRegistry,
        escalate: Callable[[str, DisconnectReason], bool],
        logger: Optional[Logger] = None,
    ):
        self.registry = registry
        self.timers = timers
        self.events = events
        self._send = send
        self.origin = origin
        self.request_config = request_config
        self.rate_limit = rate_limit
        self.max_failures = max_failures
        self.security = security
        self.validator = validator
        self.message_types = message_types
        self._escalate = escalate
        self.logger: Logger = logger if logger is not None else get_logger("parley.router")

        self._pending: dict[str, PendingRequest] = {}
        self._rate_windows: dict[str, deque[float]] = {}

    # ----[ Safety Checks ]----

    def _check_rate(self, target_id: str) -> None:
        if not self.rate_limit.enabled:
            return
        now = asyncio.get_running_loop().time()
        window = self._rate_windows.setdefault(target_id, deque())
        while window and window[0] <= now - RATE_WINDOW_SECONDS:
            window.popleft()
        if len(window) >= self.rate_limit.messages_per_second:
            raise RateLimitError(
                f"Rate limit exceeded for '{target_id}': {self.rate_limit.messages_per_second} messages per second",
                details={"target_id": target_id, "limit": self.rate_limit.messages_per_second},
            )
        window.append(now)

    def check_payload(self, message_type: str, payload: Any) -> Any:
        """Sanitize, size-check and schema-check an outbound payload. Returns the sanitized copy."""
        clean = self.security.sanitize(payload)
        try:
            size = json_size(clean)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Payload for '{message_type}' is not serializable: {e}",
                                  code=ErrorCode.VALIDATION_TYPE_MISMATCH) from e
        if size > self.request_config.max_payload_bytes:
            raise ValidationError(
                f"Payload for '{message_type}' is {size} bytes (limit {self.request_config.max_payload_bytes})",
                code=ErrorCode.VALIDATION_PAYLOAD_TOO_LARGE,
                details={"size": size, "limit": self.request_config.max_payload_bytes},
            )
        errors = self.validator.validate(message_type, clean)
        if errors:
            raise ValidationError(f"Payload for '{message_type}' does not match its schema", errors=errors)
        return clean

    def _prepare(self, target_id: str, message_type: str, payload: Any) -> Any:
        check_application_type(message_type)
        self.registry.require_connected(target_id)
        self._check_rate(target_id)
        return self.check_payload(message_type, payload)

    # ----[ Transmission ]----

    def transmit(self, target_id: str, envelope: Envelope) -> None:
        """
        Hand `envelope` to the transport, keeping the send-failure counter.
        Re-raises TransportError after counting; reaching `max_failures` escalates.
        """
        try:
            self._send(target_id, envelope)
        except TransportError as e:
            if target_id not in self.registry:
                raise
            failures = self.registry.record_send_failure(target_id)
            self.logger.warning(f"Send to '{target_id}' failed ({failures}/{self.max_failures}): {e.message}")
            if failures >= self.max_failures:
                self._escalate(target_id, DisconnectReason.SEND_FAILURE)
            raise
        self.registry.record_send_success(target_id)
        self.events.emit(
            SystemEvent.MESSAGE_SENT,
            MessageEvent(target_id, envelope.type, envelope.id, envelope.correlation_id),
        )

    def _send_attempt(self, pending: PendingRequest) -> None:
        envelope = build_envelope(
            pending.message_type,
            self.origin,
            pending.payload,
            expects_response=True,
            target_id=pending.target_id,
        )
        loop = asyncio.get_running_loop()
        pending.request_id = envelope.id
        pending.attempt += 1
        pending.sent_at = loop.time()
        pending.deadline = pending.sent_at + pending.timeout
        self._pending[envelope.id] = pending
        self.timers.schedule(pending.target_id, _timer_key(envelope.id), pending.timeout, self._on_deadline, envelope.id)
        self.logger.debug(
            f"Request {envelope.id} '{pending.message_type}' -> '{pending.target_id}' (attempt {pending.attempt})"
        )
        try:
            self.transmit(pending.target_id, envelope)
        except TransportError:
            # The deadline decides what happens to this attempt
            pass

    # ----[ Public operations ]----

    async def request(
        self,
        target_id: str,
        message_type: str,
        payload: Any = None,
        *,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
    ) -> Any:
        clean = self._prepare(target_id, message_type, payload)

        spec = self.message_types.get(message_type)
        if timeout is None:
            timeout = spec.timeout_seconds if spec is not None and spec.timeout_seconds is not None else self.request_config.timeout_seconds
        if retries is None:
            retries = spec.retries if spec is not None and spec.retries is not None else self.request_config.retries
        if timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {timeout}")
        if retries < 0:
            raise ValueError(f"retries must be ≥ 0, got {retries}")

        pending = PendingRequest(
            request_id="",
            target_id=target_id,
            message_type=message_type,
            payload=clean,
            future=asyncio.get_running_loop().create_future(),
            timeout=timeout,
            retries_remaining=retries,
        )
        self._send_attempt(pending)
        try:
            return await pending.future
        except asyncio.CancelledError:
            self._discard(pending)
            raise

    def send(self, target_id: str, message_type: str, payload: Any = None) -> str:
        """Fire-and-forget. Returns the envelope id once the transport accepted it."""
        clean = self._prepare(target_id, message_type, payload)
        envelope = build_envelope(message_type, self.origin, clean, expects_response=False, target_id=target_id)
        self.transmit(target_id, envelope)
        return envelope.id

    def broadcast(self, message_type: str, payload: Any = None) -> list[str]:
        """Fire-and-forget to every CONNECTED target. Returns the targets reached."""
        check_application_type(message_type)
        reached = []
        for target_id in self.registry.connected():
            try:
                self.send(target_id, message_type, payload)
            except (TransportError, RateLimitError, TargetNotFoundError) as e:
                self.logger.warning(f"Broadcast '{message_type}' to '{target_id}' failed: {e.message}")
                continue
            reached.append(target_id)
        return reached

    # ----[ Settlement ]----

    def _discard(self, pending: PendingRequest) -> None:
        if self._pending.get(pending.request_id) is pending:
            del self._pending[pending.request_id]
        self.timers.cancel(pending.target_id, _timer_key(pending.request_id))

    def _on_deadline(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return

        if pending.retries_remaining > 0 and pending.target_id in self.registry.connected():
            pending.retries_remaining -= 1
            self.logger.info(
                f"Request {request_id} '{pending.message_type}' to '{pending.target_id}' timed out; "
                f"retrying ({pending.retries_remaining} retries left)"
            )
            self._send_attempt(pending)
            return

        code = ErrorCode.TIMEOUT_NO_RESPONSE if pending.attempt == 1 else ErrorCode.TIMEOUT_RETRIES_EXHAUSTED
        self.logger.warning(
            f"Request '{pending.message_type}' to '{pending.target_id}' got no response after {pending.attempt} attempt(s)"
        )
        self.events.emit(
            SystemEvent.TIMEOUT,
            RequestTimedOut(pending.target_id, pending.message_type, request_id, pending.attempt, pending.timeout),
        )
        pending.future.set_exception(RequestTimeoutError(
            f"No response to '{pending.message_type}' from '{pending.target_id}' after {pending.attempt} attempt(s) of {pending.timeout}s",
            attempts=pending.attempt,
            timeout=pending.timeout,
            code=code,
            details={"target_id": pending.target_id, "message_type": pending.message_type},
        ))

    def handle_response(self, target_id: str, envelope: Envelope) -> bool:
        """Settle the request `envelope` answers. Unmatched responses are traced and dropped."""
        request_id = envelope.correlation_id
        pending = self._pending.get(request_id)
        if pending is None:
            self.logger.debug(f"Dropping response to {request_id} from '{target_id}': no pending request (superseded, expired or unknown)")
            return False
        if pending.target_id != target_id:
            self.logger.debug(f"Dropping response to {request_id} from '{target_id}': request was sent to '{pending.target_id}'")
            return False

        self._discard(pending)
        self.events.emit(
            SystemEvent.RESPONSE_RECEIVED,
            MessageEvent(target_id, envelope.type, envelope.id, request_id),
        )
        if pending.future.done():
            return False
        if envelope.error is not None:
            pending.future.set_exception(RemoteError.from_wire(envelope.error))
        else:
            pending.future.set_result(envelope.payload)
        return True

    def fail_target(self, target_id: str, error: ParleyError) -> int:
        count = 0
        for pending in [p for p in self._pending.values() if p.target_id == target_id]:
            self._discard(pending)
            if not pending.future.done():
                pending.future.set_exception(error)
                count += 1
        self._rate_windows.pop(target_id, None)
        return count

    def fail_all(self, error: ParleyError) -> int:
        count = 0
        for target_id in {p.target_id for p in self._pending.values()}:
            count += self.fail_target(target_id, error)
        self._rate_windows.clear()
        return count

    def pending_count(self, target_id: Optional[str] = None) -> int:
        if target_id is None:
            return len(self._pending)
        return sum(1 for p in self._pending.values() if p.target_id == target_id)
