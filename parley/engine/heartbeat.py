"""
Heartbeat monitor: liveness probing of CONNECTED targets.

One probe cycle per target, driven by the "heartbeat" timer in the arena:
the first tick comes `initial_delay_seconds` after connecting, the next ones
every `interval_seconds`. On each tick a still-pending ping counts as a miss
(no new ping is sent); otherwise a fresh ping goes out. A pong correlated to
the pending ping clears it and resets the miss counter.

`max_missed` misses, or `max_failures` consecutive send failures, escalate:
the target goes straight to DISCONNECTED and `on_lost` is called once.
"""
#pylint:disable=line-too-long
from dataclasses import dataclass
from typing import Callable, Optional
import asyncio

from parley.errors import TransportError
from parley.events import DisconnectReason, EventBus, HeartbeatMissed, SystemEvent
from parley.engine.registry import ConnectionRegistry, ConnectionState
from parley.engine.timers import TimerArena
from parley.logger import get_logger, Logger
from parley.protocol.envelope import ControlType, Envelope, build_control, current_millis
from parley.utils.heartbeat_configs import HeartbeatConfig

SendFn = Callable[[str, Envelope], None]

TIMER_KEY = "heartbeat"


@dataclass(slots=True)
class HeartbeatState:
    pending: bool = False
    ping_id: Optional[str] = None
    ping_sent_at: Optional[float] = None


class HeartbeatMonitor:

    def __init__(
        self,
        registry: ConnectionRegistry,
        timers: TimerArena,
        events: EventBus,
        send: SendFn,
        *,
        config: HeartbeatConfig,
        instance_id: str,
        origin: str,
        is_reachable: Callable[[str], bool],
        on_lost: Callable[[str, DisconnectReason], None],
        logger: Optional[Logger] = None,
    ):
        self.registry = registry
        self.timers = timers
        self.events = events
        self._send = send
        self.config = config
        self.instance_id = instance_id
        self.origin = origin
        self._is_reachable = is_reachable
        self._on_lost = on_lost
        self.logger: Logger = logger if logger is not None else get_logger("parley.heartbeat")
        self._states: dict[str, HeartbeatState] = {}

    def start(self, target_id: str) -> None:
        if not self.config.enabled:
            return
        self._states[target_id] = HeartbeatState()
        self.timers.schedule(target_id, TIMER_KEY, self.config.initial_delay_seconds, self._tick, target_id)
        self.logger.debug(f"Heartbeat started for '{target_id}' every {self.config.interval_seconds}s")

    def stop(self, target_id: str) -> None:
        self.timers.cancel(target_id, TIMER_KEY)
        if self._states.pop(target_id, None) is not None:
            self.logger.debug(f"Heartbeat stopped for '{target_id}'")

    def stop_all(self) -> None:
        for target_id in list(self._states):
            self.stop(target_id)

    def is_running(self, target_id: str) -> bool:
        return target_id in self._states

    def state_of(self, target_id: str) -> Optional[HeartbeatState]:
        return self._states.get(target_id)

    # ----[ Probe cycle ]----

    def _tick(self, target_id: str) -> None:
        state = self._states.get(target_id)
        record = self.registry.get(target_id)
        if state is None or record is None or record.state is not ConnectionState.CONNECTED:
            self.stop(target_id)
            return

        # Keep the cadence regardless of what this tick does
        self.timers.schedule(target_id, TIMER_KEY, self.config.interval_seconds, self._tick, target_id)

        if state.pending:
            self._miss(target_id, f"no pong for ping {state.ping_id}")
            return
        self._ping(target_id, state)

    def _ping(self, target_id: str, state: HeartbeatState) -> None:
        envelope = build_control(
            ControlType.PING,
            self.origin,
            {"senderId": self.instance_id, "timestamp": current_millis()},
            target_id=target_id,
        )
        try:
            if not self._is_reachable(target_id):
                raise TransportError(f"Target '{target_id}' is not reachable")
            self._send(target_id, envelope)
        except TransportError as e:
            state.pending = False
            state.ping_id = None
            if self._miss(target_id, f"ping could not be sent ({e.message})"):
                return
            failures = self.registry.record_send_failure(target_id)
            if failures >= self.config.max_failures:
                self.escalate(target_id, DisconnectReason.SEND_FAILURE)
            return

        self.registry.record_send_success(target_id)
        state.pending = True
        state.ping_id = envelope.id
        state.ping_sent_at = asyncio.get_running_loop().time()

    def _miss(self, target_id: str, why: str) -> bool:
        """Count a miss; return True when it escalated."""
        missed = self.registry.record_missed_heartbeat(target_id)
        self.logger.warning(f"Heartbeat missed for '{target_id}' ({missed}/{self.config.max_missed}): {why}")
        self.events.emit(SystemEvent.HEARTBEAT_MISSED, HeartbeatMissed(target_id, missed, self.config.max_missed))
        if missed >= self.config.max_missed:
            return self.escalate(target_id, DisconnectReason.HEARTBEAT)
        return False

    def handle_pong(self, target_id: str, envelope: Envelope) -> None:
        state = self._states.get(target_id)
        if state is None or not state.pending or envelope.correlation_id != state.ping_id:
            self.logger.debug(f"Ignoring pong from '{target_id}' (no matching ping pending)")
            return
        if state.ping_sent_at is not None:
            latency = asyncio.get_running_loop().time() - state.ping_sent_at
            if latency > self.config.timeout_seconds:
                self.logger.warning(
                    f"Late pong from '{target_id}': {latency * 1000:.0f} ms (timeout {self.config.timeout_seconds * 1000:.0f} ms)"
                )
        state.pending = False
        state.ping_id = None
        state.ping_sent_at = None
        self.registry.record_heartbeat(target_id)

    def handle_ping(self, target_id: str, envelope: Envelope) -> None:
        record = self.registry.get(target_id)
        if record is None or record.state is not ConnectionState.CONNECTED:
            self.logger.debug(f"Ignoring ping from '{target_id}' (not connected)")
            return
        pong = build_control(
            ControlType.PONG,
            self.origin,
            {"senderId": self.instance_id, "timestamp": current_millis(), "receivedPingAt": envelope.timestamp},
            correlation_id=envelope.id,
        )
        try:
            self._send(target_id, pong)
        except TransportError as e:
            self.logger.warning(f"Could not answer ping from '{target_id}': {e.message}")

    # ----[ Escalation ]----

    def escalate(self, target_id: str, reason: DisconnectReason) -> bool:
        """
        Force a CONNECTED target to DISCONNECTED without the graceful exchange.
        Does nothing unless the target is CONNECTED, so it fires once per connection.
        """
        record = self.registry.get(target_id)
        if record is None or record.state is not ConnectionState.CONNECTED:
            return False
        self.stop(target_id)
        self.registry.transition(target_id, ConnectionState.DISCONNECTED, reason=reason.value)
        self.logger.error(f"Connection to '{target_id}' lost ({reason.value})")
        self._on_lost(target_id, reason)
        return True
