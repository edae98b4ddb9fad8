#pylint:disable=line-too-long
from dataclasses import dataclass
from typing import (
    Optional,
    Callable,
    Awaitable,
    Any,
    )
import asyncio
import inspect
import warnings

from parley.errors import (
    ConnectionLostError,
    EngineClosedError,
    ErrorCode,
    HandshakeError,
    ParleyError,
    ProtocolError,
    TransportError,
    ValidationError,
    )
from parley.events import (
    Connected,
    ConnectionLost,
    Disconnected,
    DisconnectReason,
    ErrorEvent,
    EventBus,
    MessageEvent,
    SystemEvent,
    )
from parley.engine.registry import ConnectionRecord, ConnectionRegistry, ConnectionState
from parley.engine.timers import TimerArena
from parley.engine.handshake import HandshakeCoordinator
from parley.engine.heartbeat import HeartbeatMonitor
from parley.engine.disconnect import DisconnectCoordinator
from parley.engine.router import RequestRouter
from parley.logger import get_logger, configure_logger, Logger
from parley.protocol._deprecation import deprecated, DESTROY_DEPRECATION
from parley.protocol.envelope import (
    PARLEY_MARKER,
    K_MARKER,
    K_ORIGIN,
    ControlType,
    Envelope,
    EnvelopeKind,
    build_response,
    decode_envelope,
    )
from parley.protocol.message_types import MessageTypeRegistry, MessageTypeSpec, check_application_type
from parley.protocol.validation import SchemaValidator, JsonSchemaValidator
from parley.security import SecurityGate, DefaultSecurityGate
from parley.transport.base import Transport
from parley.utils.engine_configs import EngineConfig


@dataclass(frozen=True)
class MessageMetadata:
    """What an application handler may want to know beyond the payload."""
    target_id: str
    message_type: str
    message_id: str
    origin: str
    timestamp: int
    expects_response: bool


Handler = Callable[..., Awaitable[Any]]


class ProtocolEngine:
    """
    Connection lifecycle and message exchange with named targets over one
    best-effort `Transport`.

    The engine is the only component that talks to the transport. Inbound
    envelopes pass the security gate (origin), then the codec, then are
    dispatched to the handshake, heartbeat, disconnect or request/response
    machinery, or to the application handler registered for their type.
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[EngineConfig] = None,
        *,
        security: Optional[SecurityGate] = None,
        validator: Optional[SchemaValidator] = None,
        events: Optional[EventBus] = None,
        name: Optional[str] = None,
        ):

        self.config = config if config is not None else EngineConfig()
        self.instance_id = self.config.instance_id
        self.origin = self.config.origin

        # Give a name to the engine; component loggers hang below it
        self.name = name if isinstance(name, str) else self.instance_id
        self.logger: Logger = get_logger(self.name)
        if self.config.logger:
            configure_logger(self.logger, self.config.logger)

        self.transport = transport
        self.events = events if events is not None else EventBus(logger=get_logger(f"{self.name}.events"))
        self.security = security if security is not None else DefaultSecurityGate(self.config.allowed_origins)
        self.message_types = MessageTypeRegistry()
        self.validator = validator if validator is not None else JsonSchemaValidator(self.message_types.schema_for)

        self.timers = TimerArena(logger=get_logger(f"{self.name}.timers"))
        self.registry = ConnectionRegistry(self.events, logger=get_logger(f"{self.name}.registry"))

        self.heartbeat = HeartbeatMonitor(
            self.registry,
            self.timers,
            self.events,
            self._send,
            config=self.config.heartbeat,
            instance_id=self.instance_id,
            origin=self.origin,
            is_reachable=self.transport.is_reachable,
            on_lost=self._on_connection_lost,
            logger=get_logger(f"{self.name}.heartbeat"),
        )
        self.router = RequestRouter(
            self.registry,
            self.timers,
            self.events,
            self._send,
            origin=self.origin,
            request_config=self.config.request,
            rate_limit=self.config.rate_limit,
            max_failures=self.config.heartbeat.max_failures,
            security=self.security,
            validator=self.validator,
            message_types=self.message_types,
            escalate=self.heartbeat.escalate,
            logger=get_logger(f"{self.name}.router"),
        )
        self.handshake = HandshakeCoordinator(
            self.registry,
            self.timers,
            self.events,
            self._send,
            instance_id=self.instance_id,
            origin=self.origin,
            timeout_seconds=self.config.request.handshake_timeout_seconds,
            accept_unregistered=self.config.accept_unregistered,
            on_connected=self._on_connected,
            logger=get_logger(f"{self.name}.handshake"),
        )
        self.disconnects = DisconnectCoordinator(
            self.registry,
            self.timers,
            self._send,
            instance_id=self.instance_id,
            origin=self.origin,
            timeout_seconds=self.config.request.disconnect_timeout_seconds,
            stop_heartbeat=self.heartbeat.stop,
            abort_handshake=self._abort_handshake,
            release=self._release,
            logger=get_logger(f"{self.name}.disconnect"),
        )

        # Application handlers: message type -> (handler, takes metadata)
        self._handlers: dict[str, tuple[Handler, bool]] = {}
        self._handler_tasks: set[asyncio.Task] = set()

        self._closed = False
        self._unsubscribe_transport = self.transport.on_receive(self._on_envelope)

    # ==== HELPERS ====

    def _ensure_open(self) -> None:
        if self._closed:
            raise EngineClosedError(f"Engine '{self.name}' has been shut down")

    def _send(self, target_id: str, envelope: Envelope) -> None:
        try:
            self.transport.send(target_id, envelope.to_wire())
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"Transport failed sending to '{target_id}': {e!r}") from e
        self.logger.debug(f"-> '{target_id}' {envelope.type} {envelope.id}")

    def _on_connected(self, target_id: str) -> None:
        record = self.registry.require(target_id)
        self.heartbeat.start(target_id)
        self.events.emit(SystemEvent.CONNECTED, Connected(target_id, record.origin))

    def _on_connection_lost(self, target_id: str, reason: DisconnectReason) -> None:
        error = ConnectionLostError(f"Connection to '{target_id}' lost ({reason.value})", reason=reason.value)
        self.router.fail_target(target_id, error)
        self.events.emit(SystemEvent.CONNECTION_LOST, ConnectionLost(target_id, reason.value))

    def _release(self, target_id: str, reason: DisconnectReason) -> None:
        error = ConnectionLostError(f"Disconnected from '{target_id}' ({reason.value})", reason=reason.value,
                                    code=ErrorCode.CONNECTION_CLOSED)
        self.router.fail_target(target_id, error)
        self.events.emit(SystemEvent.DISCONNECTED, Disconnected(target_id, reason.value))

    def _abort_handshake(self, target_id: str, reason: DisconnectReason) -> None:
        self.handshake.fail(
            target_id,
            HandshakeError(f"Handshake with '{target_id}' aborted ({reason.value})", details={"target_id": target_id}),
            reason,
        )

    # ==== TARGETS ====

    def register_target(self, target_id: str, origin: str = "") -> ConnectionRecord:
        self._ensure_open()
        return self.registry.register(target_id, origin)

    def unregister_target(self, target_id: str) -> None:
        """Tear the target down without the graceful exchange and forget it."""
        self._ensure_open()
        record = self.registry.require(target_id)
        reason = DisconnectReason.UNREGISTERED

        was_disconnected = record.state is ConnectionState.DISCONNECTED
        self.handshake.fail(
            target_id,
            HandshakeError(f"Target '{target_id}' was unregistered", code=ErrorCode.CONNECTION_CLOSED),
            reason,
        )
        self.disconnects.abort(target_id, reason)
        self.heartbeat.stop(target_id)
        self.timers.cancel_target(target_id)
        if record.state is not ConnectionState.DISCONNECTED:
            self.registry.transition(target_id, ConnectionState.DISCONNECTED, reason=reason.value)
        self.router.fail_target(
            target_id,
            ConnectionLostError(f"Target '{target_id}' was unregistered", reason=reason.value, code=ErrorCode.CONNECTION_CLOSED),
        )
        self.registry.unregister(target_id)
        if not was_disconnected:
            self.events.emit(SystemEvent.DISCONNECTED, Disconnected(target_id, reason.value))

    def get_record(self, target_id: str) -> Optional[ConnectionRecord]:
        return self.registry.get(target_id)

    def get_state(self, target_id: str) -> Optional[ConnectionState]:
        record = self.registry.get(target_id)
        return record.state if record is not None else None

    def is_connected(self, target_id: str) -> bool:
        record = self.registry.get(target_id)
        return record is not None and record.state is ConnectionState.CONNECTED

    def connected_targets(self) -> list[str]:
        return self.registry.connected()

    # ==== LIFECYCLE ====

    async def connect(self, target_id: str) -> None:
        self._ensure_open()
        await self.handshake.connect(target_id)

    async def disconnect(self, target_id: str) -> Optional[DisconnectReason]:
        self._ensure_open()
        return await self.disconnects.disconnect(target_id)

    # ==== MESSAGING ====

    async def request(
        self,
        target_id: str,
        message_type: str,
        payload: Any = None,
        *,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        expects_response: bool = True,
        ) -> Any:
        """
        Send `payload` as `message_type` to `target_id`.

        With `expects_response` (the default) wait for the correlated response,
        retrying `retries` times on timeout. Otherwise return None as soon as the
        transport accepted the envelope.
        """
        self._ensure_open()
        if not expects_response:
            self.router.send(target_id, message_type, payload)
            return None
        return await self.router.request(target_id, message_type, payload, timeout=timeout, retries=retries)

    def send(self, target_id: str, message_type: str, payload: Any = None) -> str:
        self._ensure_open()
        return self.router.send(target_id, message_type, payload)

    def broadcast(self, message_type: str, payload: Any = None) -> list[str]:
        self._ensure_open()
        return self.router.broadcast(message_type, payload)

    def register_message_type(
        self,
        message_type: str,
        schema: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        ) -> MessageTypeSpec:
        self._ensure_open()
        if message_type in self.message_types:
            self.logger.warning(f"Message type '{message_type}' already registered. Overwriting.")
        return self.message_types.register(message_type, schema, timeout, retries)

    # ==== HANDLER REGISTRATION ====

    def on(self, message_type: str, fn: Handler) -> Callable[[], None]:
        """Register `async def fn(payload[, metadata])` for `message_type`. Returns an unsubscribe function."""

        # ----[ Safety Checks ]----

        self._ensure_open()
        check_application_type(message_type)

        if not inspect.iscoroutinefunction(fn):
            raise TypeError(f"@handle handler '{getattr(fn, '__name__', fn)}' must be async")

        positional = [
            p for p in inspect.signature(fn).parameters.values()
            if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
        ]
        if len(positional) not in (1, 2):
            raise TypeError(f"@handle '{fn.__name__}' must accept (payload) or (payload, metadata)")

        # ----[ Registration ]----

        if message_type in self._handlers:
            self.logger.warning(f"Handler for '{message_type}' already exists. Overwriting.")
        entry = (fn, len(positional) == 2)
        self._handlers[message_type] = entry

        def unsubscribe() -> None:
            if self._handlers.get(message_type) is entry:
                del self._handlers[message_type]

        return unsubscribe

    def handle(self, message_type: str):
        def decorator(fn: Handler) -> Handler:
            self.on(message_type, fn)
            return fn
        return decorator

    def subscribe(self, event: SystemEvent | str, listener: Callable[[Any], Any]) -> Callable[[], None]:
        return self.events.on(event, listener)

    # ==== INBOUND ====

    def _on_envelope(self, source_id: str, wire: Any) -> None:
        if self._closed:
            return

        # ----[ Security gate ]----
        if not isinstance(wire, dict) or wire.get(K_MARKER) != PARLEY_MARKER:
            self.logger.debug(f"Ignoring non-parley traffic from '{source_id}'")
            return
        origin = wire.get(K_ORIGIN)
        if not isinstance(origin, str) or not self.security.is_origin_allowed(origin):
            self.logger.warning(f"Dropped envelope from '{source_id}': origin {origin!r} is not allowed")
            return

        # ----[ Codec ]----
        try:
            envelope = decode_envelope(wire, max_age_ms=self.config.request.max_envelope_age_ms)
        except ProtocolError as e:
            self.logger.warning(f"Dropped invalid envelope from '{source_id}': {e.message}")
            return

        self.logger.debug(f"<- '{source_id}' {envelope.type} {envelope.id}")
        self.registry.record_activity(source_id)

        # ----[ Dispatch ]----
        try:
            self._dispatch(source_id, envelope)
        except ParleyError as e:
            self.logger.error(f"Failed to process {envelope.type} from '{source_id}': {e.message}")
            self.events.emit(SystemEvent.ERROR, ErrorEvent(e, source_id, envelope.type))

    def _dispatch(self, source_id: str, envelope: Envelope) -> None:
        kind = envelope.kind
        if kind is EnvelopeKind.CONTROL:
            control = ControlType(envelope.type)
            if control is ControlType.HANDSHAKE_INIT:
                self.handshake.handle_init(source_id, envelope)
            elif control is ControlType.HANDSHAKE_ACK:
                self.handshake.handle_ack(source_id, envelope)
            elif control is ControlType.PING:
                self.heartbeat.handle_ping(source_id, envelope)
            elif control is ControlType.PONG:
                self.heartbeat.handle_pong(source_id, envelope)
            elif control is ControlType.DISCONNECT:
                self.disconnects.handle_disconnect(source_id, envelope)
            elif control is ControlType.DISCONNECT_ACK:
                self.disconnects.handle_ack(source_id, envelope)
            return

        if source_id not in self.registry:
            self.logger.warning(f"Dropped {envelope.type} from unregistered target '{source_id}'")
            return

        if kind is EnvelopeKind.RESPONSE:
            self.router.handle_response(source_id, envelope)
            return

        self._handle_request(source_id, envelope)

    def _handle_request(self, source_id: str, envelope: Envelope) -> None:
        if not self.is_connected(source_id):
            self.logger.warning(f"Dropped {envelope.type} from '{source_id}': not connected")
            return

        self.events.emit(SystemEvent.MESSAGE_RECEIVED, MessageEvent(source_id, envelope.type, envelope.id))

        errors = self.validator.validate(envelope.type, envelope.payload)
        if errors:
            self.logger.warning(f"Inbound {envelope.type} from '{source_id}' does not match its schema: {errors}")
            if envelope.expects_response:
                error = ValidationError(f"Payload for '{envelope.type}' does not match its schema", errors=errors)
                self._respond(source_id, envelope, error=error.to_dict())
            return

        entry = self._handlers.get(envelope.type)
        if entry is None:
            self.logger.debug(f"No handler for '{envelope.type}' from '{source_id}'")
            if envelope.expects_response:
                self._respond(source_id, envelope, error={
                    "code": ErrorCode.NO_HANDLER.value,
                    "message": f"No handler registered for message type '{envelope.type}'",
                    "details": {"message_type": envelope.type},
                })
            return

        task = asyncio.get_running_loop().create_task(self._run_handler(source_id, envelope, *entry))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _run_handler(self, source_id: str, envelope: Envelope, fn: Handler, takes_metadata: bool) -> None:
        metadata = MessageMetadata(
            target_id=source_id,
            message_type=envelope.type,
            message_id=envelope.id,
            origin=envelope.origin,
            timestamp=envelope.timestamp,
            expects_response=envelope.expects_response,
        )
        try:
            if takes_metadata:
                result = await fn(envelope.payload, metadata)
            else:
                result = await fn(envelope.payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Handler '{fn.__name__}' for '{envelope.type}' raised: {e!r}", exc_info=True)
            self.events.emit(SystemEvent.ERROR, ErrorEvent(e, source_id, envelope.type))
            if envelope.expects_response:
                self._respond(source_id, envelope, error={
                    "code": ErrorCode.HANDLER_ERROR.value,
                    "message": str(e) or type(e).__name__,
                    "details": {"message_type": envelope.type, "exception": type(e).__name__},
                })
            return

        if envelope.expects_response:
            self._respond(source_id, envelope, payload=self.security.sanitize(result))

    def _respond(self, target_id: str, request: Envelope, payload: Any = None,
                 error: Optional[dict[str, Any]] = None) -> None:
        if self._closed or not self.is_connected(target_id):
            self.logger.debug(f"Response to {request.id} for '{target_id}' dropped: not connected")
            return
        response = build_response(request, self.origin, payload, error=error)
        try:
            self.router.transmit(target_id, response)
        except TransportError as e:
            self.logger.warning(f"Could not send response to {request.id} to '{target_id}': {e.message}")
            return
        self.events.emit(SystemEvent.RESPONSE_SENT, MessageEvent(target_id, request.type, response.id, request.id))

    # ==== SHUTDOWN ====

    def shutdown(self) -> None:
        """
        Stop everything in one synchronous step: cancel every timer, fail every
        pending request and connect with ConnectionLostError("shutdown"), finish
        in-flight disconnects, move every record to DISCONNECTED without the
        graceful exchange, then forget the records.
        """
        if self._closed:
            return
        self._closed = True
        reason = DisconnectReason.SHUTDOWN
        error = ConnectionLostError(f"Engine '{self.name}' shut down", reason=reason.value, code=ErrorCode.CONNECTION_CLOSED)

        self.heartbeat.stop_all()
        self.handshake.fail_all(error)
        self.disconnects.abort_all(reason)
        self.router.fail_all(error)
        self.timers.cancel_all()

        for task in list(self._handler_tasks):
            task.cancel()
        self._handler_tasks.clear()

        for record in self.registry:
            if record.state is not ConnectionState.DISCONNECTED:
                self.registry.transition(record.target_id, ConnectionState.DISCONNECTED, reason=reason.value)
        self.registry.clear()

        self._unsubscribe_transport()
        self.logger.info(f"Engine '{self.name}' shut down")

    @property
    def closed(self) -> bool:
        return self._closed

    @deprecated("ProtocolEngine.destroy() is deprecated. Use ProtocolEngine.shutdown() instead.")
    def destroy(self) -> None:
        warnings.warn(DESTROY_DEPRECATION, category=DeprecationWarning, stacklevel=2)
        self.shutdown()
