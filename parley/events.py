"""
System events and the publish/subscribe bus the engine reports them on.

Each engine owns one `EventBus` (passed in or created at construction).
Listeners may be plain callables or `async def` functions; coroutines are
scheduled as tasks on the running loop. A listener that raises is logged and
never disturbs the engine or the other listeners.
"""
#pylint:disable=line-too-long
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union
import asyncio
import inspect
import time

from parley.logger import get_logger, Logger


class SystemEvent(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CONNECTION_LOST = "connection_lost"
    STATE_CHANGED = "connection_state_changed"
    HEARTBEAT_MISSED = "heartbeat_missed"
    HANDSHAKE_STARTED = "handshake_start"
    HANDSHAKE_COMPLETED = "handshake_complete"
    HANDSHAKE_FAILED = "handshake_failed"
    MESSAGE_SENT = "message_sent"
    MESSAGE_RECEIVED = "message_received"
    RESPONSE_SENT = "response_sent"
    RESPONSE_RECEIVED = "response_received"
    TIMEOUT = "timeout"
    ERROR = "error"


class DisconnectReason(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    TIMED_OUT_LOCALLY = "timed_out_locally"
    REMOTE_INITIATED = "remote_initiated"
    HEARTBEAT = "heartbeat"
    SEND_FAILURE = "send_failure"
    SHUTDOWN = "shutdown"
    UNREGISTERED = "unregistered"
    HANDSHAKE_TIMEOUT = "handshake_timeout"
    HANDSHAKE_FAILED = "handshake_failed"
    HANDSHAKE_ABORTED = "handshake_aborted"


def _now() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class StateChange:
    target_id: str
    previous: Any
    current: Any
    reason: Optional[str] = None
    timestamp: int = field(default_factory=_now)


@dataclass(frozen=True)
class Connected:
    target_id: str
    origin: str
    timestamp: int = field(default_factory=_now)


@dataclass(frozen=True)
class Disconnected:
    target_id: str
    reason: str
    timestamp: int = field(default_factory=_now)


@dataclass(frozen=True)
class ConnectionLost:
    target_id: str
    reason: str
    timestamp: int = field(default_factory=_now)


@dataclass(frozen=True)
class HeartbeatMissed:
    target_id: str
    missed: int
    max_missed: int
    timestamp: int = field(default_factory=_now)


@dataclass(frozen=True)
class HandshakeEvent:
    target_id: str
    envelope_id: Optional[str] = None
    error: Optional[BaseException] = None
    timestamp: int = field(default_factory=_now)


@dataclass(frozen=True)
class MessageEvent:
    target_id: str
    message_type: str
    envelope_id: str
    correlation_id: Optional[str] = None
    timestamp: int = field(default_factory=_now)


@dataclass(frozen=True)
class RequestTimedOut:
    target_id: str
    message_type: str
    request_id: str
    attempts: int
    timeout: float
    timestamp: int = field(default_factory=_now)


@dataclass(frozen=True)
class ErrorEvent:
    error: BaseException
    target_id: Optional[str] = None
    context: Optional[str] = None
    timestamp: int = field(default_factory=_now)


EventName = Union[SystemEvent, str]
Listener = Callable[[Any], Any]


@dataclass(slots=True, eq=False)
class _Subscription:
    listener: Listener
    once: bool = False


class EventBus:
    """
    Per-event listener lists. Each subscription is its own entry, so the same
    callable may be registered with `on` for one event and `once` for another.
    """

    DEFAULT_MAX_LISTENERS = 100

    def __init__(self, max_listeners: int = DEFAULT_MAX_LISTENERS, logger: Optional[Logger] = None):
        self.max_listeners = max_listeners
        self.logger: Logger = logger if logger is not None else get_logger("parley.events")
        self._listeners: dict[str, list[_Subscription]] = {}
        self._tasks: set[asyncio.Task] = set()

    @staticmethod
    def _key(event: EventName) -> str:
        return event.value if isinstance(event, SystemEvent) else str(event)

    def _subscribe(self, event: EventName, listener: Listener, once: bool) -> Callable[[], None]:
        if not callable(listener):
            raise TypeError(f"Listener for {event!s} must be callable")
        key = self._key(event)
        subscriptions = self._listeners.setdefault(key, [])
        if len(subscriptions) >= self.max_listeners:
            raise ValueError(
                f"Listener limit reached for '{key}': {self.max_listeners} listeners already registered"
            )
        subscription = _Subscription(listener, once)
        subscriptions.append(subscription)
        return lambda: self._remove(key, subscription)

    def on(self, event: EventName, listener: Listener) -> Callable[[], None]:
        """Subscribe `listener` and return a function that unsubscribes it."""
        return self._subscribe(event, listener, once=False)

    def once(self, event: EventName, listener: Listener) -> Callable[[], None]:
        return self._subscribe(event, listener, once=True)

    def _remove(self, key: str, subscription: _Subscription) -> None:
        subscriptions = self._listeners.get(key, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        if not subscriptions:
            self._listeners.pop(key, None)

    def off(self, event: EventName, listener: Optional[Listener] = None) -> None:
        key = self._key(event)
        if listener is None:
            self._listeners.pop(key, None)
            return
        for subscription in self._listeners.get(key, []):
            if subscription.listener == listener:
                self._remove(key, subscription)
                return

    def listener_count(self, event: EventName) -> int:
        return len(self._listeners.get(self._key(event), []))

    def emit(self, event: EventName, data: Any = None) -> None:
        key = self._key(event)
        # Copy: listeners may unsubscribe while being called
        for subscription in list(self._listeners.get(key, [])):
            # skip entries removed by an earlier listener (or a nested emit)
            if subscription not in self._listeners.get(key, []):
                continue
            if subscription.once:
                self._remove(key, subscription)
            try:
                result = subscription.listener(data)
            except Exception as e:
                self.logger.error(f"Listener for '{key}' raised: {e!r}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._schedule(key, result)

    def _schedule(self, key: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self.logger.warning(f"Async listener for '{key}' dropped: no running event loop")
            return
        task = loop.create_task(awaitable)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finish(key, t))

    def _finish(self, key: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            self.logger.error(f"Async listener for '{key}' raised: {exc!r}")

    def clear(self) -> None:
        self._listeners.clear()


__all__ = [
    "SystemEvent",
    "DisconnectReason",
    "StateChange",
    "Connected",
    "Disconnected",
    "ConnectionLost",
    "HeartbeatMissed",
    "HandshakeEvent",
    "MessageEvent",
    "RequestTimedOut",
    "ErrorEvent",
    "EventBus",
]
