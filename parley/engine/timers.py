"""
Every timer the engine schedules lives here, indexed by target id and a key
("handshake", "heartbeat", "disconnect", "request:<id>"). Tearing a target
down is then one `cancel_target` call, and shutdown is one `cancel_all`.
"""
from typing import Any, Callable, Optional
import asyncio

from parley.logger import get_logger, Logger


class TimerArena:

    def __init__(self, logger: Optional[Logger] = None):
        self.logger: Logger = logger if logger is not None else get_logger("parley.timers")
        self._timers: dict[str, dict[str, asyncio.TimerHandle]] = {}

    def schedule(self, target_id: str, key: str, delay: float, callback: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        """Schedule `callback(*args)` after `delay` seconds, replacing any timer under the same key."""
        self.cancel(target_id, key)
        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay, self._fire, target_id, key, callback, args)
        self._timers.setdefault(target_id, {})[key] = handle
        return handle

    def _fire(self, target_id: str, key: str, callback: Callable[..., Any], args: tuple) -> None:
        timers = self._timers.get(target_id)
        if timers is not None:
            timers.pop(key, None)
            if not timers:
                self._timers.pop(target_id, None)
        try:
            callback(*args)
        except Exception as e:
            self.logger.error(f"Timer '{key}' for '{target_id}' raised: {e!r}", exc_info=True)

    def cancel(self, target_id: str, key: str) -> bool:
        timers = self._timers.get(target_id)
        if timers is None:
            return False
        handle = timers.pop(key, None)
        if not timers:
            self._timers.pop(target_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_target(self, target_id: str) -> int:
        timers = self._timers.pop(target_id, {})
        for handle in timers.values():
            handle.cancel()
        return len(timers)

    def cancel_all(self) -> int:
        count = 0
        for target_id in list(self._timers):
            count += self.cancel_target(target_id)
        return count

    def has(self, target_id: str, key: str) -> bool:
        return key in self._timers.get(target_id, {})

    def active_count(self, target_id: Optional[str] = None) -> int:
        if target_id is not None:
            return len(self._timers.get(target_id, {}))
        return sum(len(timers) for timers in self._timers.values())
