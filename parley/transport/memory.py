"""
In-process transport linking engines that share one event loop.

Envelopes are JSON round-tripped on send (so peers never share objects) and
delivered on a later loop iteration, optionally after `latency` seconds.
Drop filters, forced send failures and severed links make it usable for
exercising the protocol's failure paths.
"""
from typing import Any, Callable, Optional
import asyncio
import json

from parley.errors import TransportError
from parley.logger import get_logger, Logger
from parley.transport.base import Transport, ReceiveCallback

# (target id, wire envelope) -> True to drop
DropFilter = Callable[[str, dict[str, Any]], bool]


class MemoryTransport(Transport):

    def __init__(self, name: str, latency: float = 0.0, logger: Optional[Logger] = None):
        self.name = name
        self.latency = latency
        self.logger: Logger = logger if logger is not None else get_logger(f"{name}.transport")

        # target id -> (peer transport, id under which we appear at the peer)
        self._links: dict[str, tuple["MemoryTransport", str]] = {}
        self._callbacks: list[ReceiveCallback] = []
        self._filters: list[DropFilter] = []
        self._severed: set[str] = set()

        # When True every send raises TransportError
        self.fail_sends = False

        # Envelopes handed over successfully, in order: (target id, wire)
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.dropped: list[tuple[str, dict[str, Any]]] = []

        self._closed = False

    @classmethod
    def pair(cls, a_name: str, b_name: str, latency: float = 0.0) -> tuple["MemoryTransport", "MemoryTransport"]:
        """Two transports that know each other as `b_name` and `a_name` respectively."""
        a = cls(a_name, latency=latency)
        b = cls(b_name, latency=latency)
        a.link(b_name, b, as_id=a_name)
        b.link(a_name, a, as_id=b_name)
        return a, b

    def link(self, target_id: str, peer: "MemoryTransport", as_id: Optional[str] = None) -> None:
        self._links[target_id] = (peer, as_id if as_id is not None else self.name)

    def unlink(self, target_id: str) -> None:
        self._links.pop(target_id, None)

    # ----[ Failure injection ]----

    def add_filter(self, predicate: DropFilter) -> Callable[[], None]:
        self._filters.append(predicate)
        return lambda: self._filters.remove(predicate) if predicate in self._filters else None

    def clear_filters(self) -> None:
        self._filters.clear()

    def sever(self, target_id: str) -> None:
        self._severed.add(target_id)

    def restore(self, target_id: str) -> None:
        self._severed.discard(target_id)

    # ----[ Transport ]----

    def is_reachable(self, target_id: str) -> bool:
        return (
            not self._closed
            and target_id in self._links
            and target_id not in self._severed
        )

    def send(self, target_id: str, envelope: dict[str, Any]) -> None:
        if self._closed:
            raise TransportError(f"Transport '{self.name}' is closed")
        if self.fail_sends:
            raise TransportError(f"Send to '{target_id}' failed (forced)")
        if not self.is_reachable(target_id):
            raise TransportError(f"Target '{target_id}' is not reachable from '{self.name}'")

        try:
            wire = json.loads(json.dumps(envelope))
        except (TypeError, ValueError) as e:
            raise TransportError(f"Envelope for '{target_id}' is not serializable: {e}") from e

        for predicate in list(self._filters):
            if predicate(target_id, wire):
                self.dropped.append((target_id, wire))
                self.logger.debug(f"Dropped envelope {wire.get('_type')} to '{target_id}'")
                return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise TransportError("MemoryTransport.send requires a running event loop") from e

        peer, as_id = self._links[target_id]
        self.sent.append((target_id, wire))
        if self.latency > 0:
            loop.call_later(self.latency, peer._deliver, as_id, wire)
        else:
            loop.call_soon(peer._deliver, as_id, wire)

    def on_receive(self, callback: ReceiveCallback) -> Callable[[], None]:
        self._callbacks.append(callback)
        return lambda: self._callbacks.remove(callback) if callback in self._callbacks else None

    def _deliver(self, source_id: str, wire: dict[str, Any]) -> None:
        if self._closed:
            return
        for callback in list(self._callbacks):
            try:
                callback(source_id, wire)
            except Exception as e:
                self.logger.error(f"Receive callback failed for envelope from '{source_id}': {e!r}", exc_info=True)

    def close(self) -> None:
        self._closed = True
        self._callbacks.clear()

    def sent_types(self, target_id: Optional[str] = None) -> list[str]:
        return [w.get("_type") for t, w in self.sent if target_id is None or t == target_id]
