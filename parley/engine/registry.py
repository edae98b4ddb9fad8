"""
Connection registry: one record per target and the lifecycle state machine.

    DISCONNECTED ──connect──▶ CONNECTING ──ack──▶ CONNECTED ──disconnect──▶ DISCONNECTING
         ▲                        │                   │                          │
         └──── timeout/abort ─────┘                   └──── escalation ──────────┤
         └──────────────────────────── ack or timeout ───────────────────────────┘

Records are only mutated through this class. Every state change is published
as `SystemEvent.STATE_CHANGED`.
"""
#pylint:disable=line-too-long
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional
import time

from parley.errors import (
    DuplicateTargetError,
    ErrorCode,
    IllegalTransitionError,
    TargetNotFoundError,
)
from parley.events import EventBus, StateChange, SystemEvent
from parley.logger import get_logger, Logger


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


LEGAL_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset({ConnectionState.CONNECTED, ConnectionState.DISCONNECTED}),
    ConnectionState.CONNECTED: frozenset({ConnectionState.DISCONNECTING, ConnectionState.DISCONNECTED}),
    ConnectionState.DISCONNECTING: frozenset({ConnectionState.DISCONNECTED}),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class ConnectionRecord:
    target_id: str
    origin: str = ""
    state: ConnectionState = ConnectionState.DISCONNECTED
    connected_at: Optional[int] = None
    last_activity_at: Optional[int] = None
    last_heartbeat_at: Optional[int] = None
    missed_heartbeats: int = 0
    consecutive_send_failures: int = 0
    registered_at: int = field(default_factory=_now_ms)

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED


class ConnectionRegistry:

    def __init__(self, events: EventBus, logger: Optional[Logger] = None):
        self.events = events
        self.logger: Logger = logger if logger is not None else get_logger("parley.registry")
        self._records: dict[str, ConnectionRecord] = {}

    # ----[ Records ]----

    def register(self, target_id: str, origin: str = "") -> ConnectionRecord:
        if not isinstance(target_id, str) or not target_id:
            raise ValueError(f"Target id must be a non-empty string, got {target_id!r}")
        if target_id in self._records:
            raise DuplicateTargetError(f"Target '{target_id}' is already registered", details={"target_id": target_id})
        record = ConnectionRecord(target_id=target_id, origin=origin)
        self._records[target_id] = record
        self.logger.debug(f"Registered target '{target_id}' (origin={origin!r})")
        return record

    def unregister(self, target_id: str) -> Optional[ConnectionRecord]:
        record = self._records.pop(target_id, None)
        if record is not None:
            self.logger.debug(f"Unregistered target '{target_id}'")
        return record

    def get(self, target_id: str) -> Optional[ConnectionRecord]:
        return self._records.get(target_id)

    def require(self, target_id: str) -> ConnectionRecord:
        record = self._records.get(target_id)
        if record is None:
            raise TargetNotFoundError(f"Target '{target_id}' is not registered", details={"target_id": target_id})
        return record

    def require_connected(self, target_id: str) -> ConnectionRecord:
        record = self.require(target_id)
        if record.state is not ConnectionState.CONNECTED:
            raise TargetNotFoundError(
                f"Target '{target_id}' is not connected (state: {record.state.value})",
                code=ErrorCode.TARGET_NOT_CONNECTED,
                details={"target_id": target_id, "state": record.state.value},
            )
        return record

    def __contains__(self, target_id: object) -> bool:
        return target_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ConnectionRecord]:
        return iter(list(self._records.values()))

    def targets(self) -> list[str]:
        return list(self._records)

    def connected(self) -> list[str]:
        return [r.target_id for r in self._records.values() if r.state is ConnectionState.CONNECTED]

    def clear(self) -> None:
        self._records.clear()

    # ----[ State machine ]----

    def transition(self, target_id: str, new_state: ConnectionState, reason: Optional[str] = None) -> ConnectionRecord:
        record = self.require(target_id)
        previous = record.state
        if new_state not in LEGAL_TRANSITIONS[previous]:
            raise IllegalTransitionError(
                f"Illegal transition for '{target_id}': {previous.value} -> {new_state.value}",
                details={"target_id": target_id, "from": previous.value, "to": new_state.value},
            )
        record.state = new_state
        if new_state is ConnectionState.CONNECTED:
            record.connected_at = _now_ms()
            record.missed_heartbeats = 0
            record.consecutive_send_failures = 0
        elif new_state is ConnectionState.DISCONNECTED:
            record.connected_at = None

        self.logger.info(f"'{target_id}': {previous.value} -> {new_state.value}" + (f" ({reason})" if reason else ""))
        self.events.emit(SystemEvent.STATE_CHANGED, StateChange(target_id, previous, new_state, reason))
        return record

    # ----[ Counters ]----

    def set_origin(self, target_id: str, origin: str) -> None:
        self.require(target_id).origin = origin

    def record_activity(self, target_id: str) -> None:
        if (record := self._records.get(target_id)) is not None:
            record.last_activity_at = _now_ms()

    def record_heartbeat(self, target_id: str) -> None:
        if (record := self._records.get(target_id)) is not None:
            record.last_heartbeat_at = _now_ms()
            record.missed_heartbeats = 0

    def record_missed_heartbeat(self, target_id: str) -> int:
        record = self.require(target_id)
        record.missed_heartbeats += 1
        return record.missed_heartbeats

    def record_send_success(self, target_id: str) -> None:
        if (record := self._records.get(target_id)) is not None:
            record.consecutive_send_failures = 0

    def record_send_failure(self, target_id: str) -> int:
        record = self.require(target_id)
        record.consecutive_send_failures += 1
        return record.consecutive_send_failures
