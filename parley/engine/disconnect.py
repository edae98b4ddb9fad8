"""
Two-phase graceful disconnect.

Local: CONNECTED -> DISCONNECTING, heartbeat stopped, disconnect sent; then
wait up to `timeout_seconds` for the correlated disconnect-ack. Acked or not,
the target ends DISCONNECTED and `release` frees its pending work. The wait
is bounded, so `disconnect()` always returns.

Remote: a disconnect is always acknowledged, then torn down locally.
"""
#pylint:disable=line-too-long
from typing import Callable, Optional
import asyncio

from parley.errors import TransportError
from parley.events import DisconnectReason
from parley.engine.registry import ConnectionRegistry, ConnectionState
from parley.engine.timers import TimerArena
from parley.logger import get_logger, Logger
from parley.protocol.envelope import ControlType, Envelope, build_control, current_millis

SendFn = Callable[[str, Envelope], None]

TIMER_KEY = "disconnect"


class DisconnectCoordinator:

    def __init__(
        self,
        registry: ConnectionRegistry,
        timers: TimerArena,
        send: SendFn,
        *,
        instance_id: str,
        origin: str,
        timeout_seconds: float,
        stop_heartbeat: Callable[[str], None],
        abort_handshake: Callable[[str, DisconnectReason], None],
        release: Callable[[str, DisconnectReason], None],
        logger: Optional[Logger] = None,
    ):
        self.registry = registry
        self.timers = timers
        self._send = send
        self.instance_id = instance_id
        self.origin = origin
        self.timeout_seconds = timeout_seconds
        self._stop_heartbeat = stop_heartbeat
        self._abort_handshake = abort_handshake
        self._release = release
        self.logger: Logger = logger if logger is not None else get_logger("parley.disconnect")

        # target id -> (id of our disconnect envelope, future resolved with the DisconnectReason)
        self._inflight: dict[str, tuple[str, asyncio.Future]] = {}

    def in_flight(self, target_id: str) -> bool:
        return target_id in self._inflight

    async def disconnect(self, target_id: str) -> Optional[DisconnectReason]:
        record = self.registry.require(target_id)

        if target_id in self._inflight:
            return await asyncio.shield(self._inflight[target_id][1])

        if record.state is ConnectionState.DISCONNECTED:
            return None
        if record.state is ConnectionState.CONNECTING:
            self._abort_handshake(target_id, DisconnectReason.HANDSHAKE_ABORTED)
            return DisconnectReason.HANDSHAKE_ABORTED

        # ==== PHASE 1: announce ====
        self.registry.transition(target_id, ConnectionState.DISCONNECTING, reason="local_disconnect")
        self._stop_heartbeat(target_id)

        envelope = build_control(
            ControlType.DISCONNECT,
            self.origin,
            {"senderId": self.instance_id, "reason": "local", "timestamp": current_millis()},
            target_id=target_id,
        )
        future = asyncio.get_running_loop().create_future()
        self._inflight[target_id] = (envelope.id, future)

        try:
            self._send(target_id, envelope)
        except TransportError as e:
            self.logger.warning(f"Could not send disconnect to '{target_id}': {e.message}. Closing locally.")
            self._complete(target_id, DisconnectReason.TIMED_OUT_LOCALLY)
        else:
            # ==== PHASE 2: bounded wait for the ack ====
            self.timers.schedule(target_id, TIMER_KEY, self.timeout_seconds, self._on_timeout, target_id, envelope.id)

        return await asyncio.shield(future)

    def _on_timeout(self, target_id: str, envelope_id: str) -> None:
        entry = self._inflight.get(target_id)
        if entry is None or entry[0] != envelope_id:
            return
        self.logger.info(f"No disconnect ack from '{target_id}' within {self.timeout_seconds}s. Closing locally.")
        self._complete(target_id, DisconnectReason.TIMED_OUT_LOCALLY)

    def _complete(self, target_id: str, reason: DisconnectReason) -> None:
        entry = self._inflight.pop(target_id, None)
        self.timers.cancel(target_id, TIMER_KEY)
        self._stop_heartbeat(target_id)
        record = self.registry.get(target_id)
        if record is not None and record.state is not ConnectionState.DISCONNECTED:
            self.registry.transition(target_id, ConnectionState.DISCONNECTED, reason=reason.value)
        self._release(target_id, reason)
        if entry is not None and not entry[1].done():
            entry[1].set_result(reason)

    def handle_ack(self, target_id: str, envelope: Envelope) -> None:
        entry = self._inflight.get(target_id)
        if entry is None or entry[0] != envelope.correlation_id:
            self.logger.debug(f"Ignoring disconnect ack from '{target_id}' (no matching disconnect in flight)")
            return
        self._complete(target_id, DisconnectReason.ACKNOWLEDGED)

    def handle_disconnect(self, target_id: str, envelope: Envelope) -> None:
        record = self.registry.get(target_id)
        if record is None:
            self.logger.debug(f"Ignoring disconnect from unknown target '{target_id}'")
            return

        ack = build_control(
            ControlType.DISCONNECT_ACK,
            self.origin,
            {"senderId": self.instance_id, "acknowledged": True},
            correlation_id=envelope.id,
        )
        try:
            self._send(target_id, ack)
        except TransportError as e:
            self.logger.warning(f"Could not acknowledge disconnect from '{target_id}': {e.message}")

        if target_id in self._inflight:
            # Both sides disconnecting at once
            self._complete(target_id, DisconnectReason.REMOTE_INITIATED)
        elif record.state is ConnectionState.CONNECTED:
            self._complete(target_id, DisconnectReason.REMOTE_INITIATED)
        elif record.state is ConnectionState.CONNECTING:
            self._abort_handshake(target_id, DisconnectReason.REMOTE_INITIATED)

    def abort(self, target_id: str, reason: DisconnectReason) -> bool:
        """Resolve an in-flight disconnect with `reason` without touching the record."""
        entry = self._inflight.pop(target_id, None)
        self.timers.cancel(target_id, TIMER_KEY)
        if entry is None:
            return False
        if not entry[1].done():
            entry[1].set_result(reason)
        return True

    def abort_all(self, reason: DisconnectReason) -> None:
        for target_id in list(self._inflight):
            self.abort(target_id, reason)
