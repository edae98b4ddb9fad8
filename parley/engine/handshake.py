"""
Handshake coordinator: the init/ack exchange that turns a registered target
into a CONNECTED one.

Initiator: DISCONNECTED -> CONNECTING, send handshake-init, wait for the
handshake-ack correlated to it. The deadline lives in the timer arena under
"handshake". Concurrent `connect` calls for one target share one attempt.

Responder: answer every init with an ack and go straight to CONNECTED.
Origin checks happen before dispatch, so an init from a disallowed origin
never reaches this class and the initiator simply times out.
"""
#pylint:disable=line-too-long
from typing import Callable, Optional
import asyncio

from parley.errors import ErrorCode, HandshakeError, ParleyError, TransportError
from parley.events import DisconnectReason, EventBus, HandshakeEvent, SystemEvent
from parley.engine.registry import ConnectionRegistry, ConnectionState
from parley.engine.timers import TimerArena
from parley.logger import get_logger, Logger
from parley.protocol.envelope import PROTOCOL_VERSION, ControlType, Envelope, build_control

SendFn = Callable[[str, Envelope], None]

TIMER_KEY = "handshake"


class HandshakeCoordinator:

    def __init__(
        self,
        registry: ConnectionRegistry,
        timers: TimerArena,
        events: EventBus,
        send: SendFn,
        *,
        instance_id: str,
        origin: str,
        timeout_seconds: float,
        accept_unregistered: bool = True,
        on_connected: Optional[Callable[[str], None]] = None,
        logger: Optional[Logger] = None,
    ):
        self.registry = registry
        self.timers = timers
        self.events = events
        self._send = send
        self.instance_id = instance_id
        self.origin = origin
        self.timeout_seconds = timeout_seconds
        self.accept_unregistered = accept_unregistered
        self._on_connected = on_connected
        self.logger: Logger = logger if logger is not None else get_logger("parley.handshake")

        # target id -> (id of our handshake-init, future shared by every caller)
        self._inflight: dict[str, tuple[str, asyncio.Future]] = {}

    def _hello(self) -> dict:
        return {"senderId": self.instance_id, "protocolVersion": PROTOCOL_VERSION}

    def in_flight(self, target_id: str) -> bool:
        return target_id in self._inflight

    # ==== INITIATOR ====

    async def connect(self, target_id: str) -> None:
        record = self.registry.require(target_id)

        if target_id in self._inflight:
            await asyncio.shield(self._inflight[target_id][1])
            return

        if record.state is ConnectionState.CONNECTED:
            return
        if record.state is not ConnectionState.DISCONNECTED:
            raise HandshakeError(
                f"Cannot connect to '{target_id}' while {record.state.value}",
                code=ErrorCode.CONNECTION_NOT_READY,
                details={"target_id": target_id, "state": record.state.value},
            )

        # The record is CONNECTING before the init leaves
        self.registry.transition(target_id, ConnectionState.CONNECTING, reason="handshake_init")
        envelope = build_control(ControlType.HANDSHAKE_INIT, self.origin, self._hello(), target_id=target_id)
        future = asyncio.get_running_loop().create_future()
        self._inflight[target_id] = (envelope.id, future)
        self.events.emit(SystemEvent.HANDSHAKE_STARTED, HandshakeEvent(target_id, envelope.id))
        self.logger.debug(f"Handshake init {envelope.id} -> '{target_id}'")

        try:
            self._send(target_id, envelope)
        except TransportError as e:
            self.fail(
                target_id,
                HandshakeError(f"Could not send handshake to '{target_id}': {e.message}",
                               details={"target_id": target_id}),
                DisconnectReason.HANDSHAKE_FAILED,
            )
        else:
            self.timers.schedule(target_id, TIMER_KEY, self.timeout_seconds, self._on_timeout, target_id, envelope.id)

        await asyncio.shield(future)

    def _on_timeout(self, target_id: str, init_id: str) -> None:
        entry = self._inflight.get(target_id)
        if entry is None or entry[0] != init_id:
            return
        self.logger.warning(f"Handshake with '{target_id}' timed out after {self.timeout_seconds}s")
        self.fail(
            target_id,
            HandshakeError(
                f"Handshake with '{target_id}' timed out after {self.timeout_seconds}s",
                code=ErrorCode.TIMEOUT_HANDSHAKE,
                details={"target_id": target_id, "timeout": self.timeout_seconds},
            ),
            DisconnectReason.HANDSHAKE_TIMEOUT,
        )

    def handle_ack(self, target_id: str, envelope: Envelope) -> None:
        entry = self._inflight.get(target_id)
        if entry is None or entry[0] != envelope.correlation_id:
            self.logger.debug(f"Ignoring handshake ack from '{target_id}' (no matching handshake in flight)")
            return
        _, future = self._inflight.pop(target_id)
        self.timers.cancel(target_id, TIMER_KEY)

        self.registry.set_origin(target_id, envelope.origin)
        self.registry.transition(target_id, ConnectionState.CONNECTED, reason="handshake_ack")
        if not future.done():
            future.set_result(None)
        self.events.emit(SystemEvent.HANDSHAKE_COMPLETED, HandshakeEvent(target_id, envelope.correlation_id))
        if self._on_connected is not None:
            self._on_connected(target_id)

    def fail(self, target_id: str, error: ParleyError, reason: DisconnectReason, transition: bool = True) -> bool:
        """
        End the in-flight attempt for `target_id` with `error`.
        With `transition`, a CONNECTING record goes back to DISCONNECTED.
        """
        entry = self._inflight.pop(target_id, None)
        self.timers.cancel(target_id, TIMER_KEY)
        if entry is None:
            return False
        record = self.registry.get(target_id)
        if transition and record is not None and record.state is ConnectionState.CONNECTING:
            self.registry.transition(target_id, ConnectionState.DISCONNECTED, reason=reason.value)
        _, future = entry
        if not future.done():
            future.set_exception(error)
        self.events.emit(SystemEvent.HANDSHAKE_FAILED, HandshakeEvent(target_id, entry[0], error))
        return True

    def fail_all(self, error: ParleyError) -> None:
        """Fail every in-flight attempt without touching records (shutdown)."""
        for target_id in list(self._inflight):
            _, future = self._inflight.pop(target_id)
            self.timers.cancel(target_id, TIMER_KEY)
            if not future.done():
                future.set_exception(error)

    # ==== RESPONDER ====

    def handle_init(self, target_id: str, envelope: Envelope) -> None:
        record = self.registry.get(target_id)
        if record is None:
            if not self.accept_unregistered:
                self.logger.warning(f"Handshake from unregistered target '{target_id}' dropped")
                return
            record = self.registry.register(target_id, origin=envelope.origin)

        if record.state is ConnectionState.DISCONNECTING:
            self.logger.warning(f"Handshake from '{target_id}' dropped: disconnect in progress")
            return

        ack = build_control(ControlType.HANDSHAKE_ACK, self.origin, self._hello(), correlation_id=envelope.id)
        try:
            self._send(target_id, ack)
        except TransportError as e:
            self.logger.warning(f"Could not acknowledge handshake from '{target_id}': {e.message}")
            return

        if record.state is ConnectionState.DISCONNECTED:
            self.registry.set_origin(target_id, envelope.origin)
            self.registry.transition(target_id, ConnectionState.CONNECTING, reason="handshake_received")
            self.registry.transition(target_id, ConnectionState.CONNECTED, reason="handshake_received")
            if self._on_connected is not None:
                self._on_connected(target_id)
        elif record.state is ConnectionState.CONNECTED:
            self.logger.debug(f"Re-acknowledged handshake from already connected '{target_id}'")
        else:
            # Both sides connecting: ours completes when the peer acks our own init
            self.logger.debug(f"Acknowledged handshake from '{target_id}' while our own handshake is in flight")
