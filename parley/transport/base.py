from abc import ABC, abstractmethod
from typing import Any, Callable

# (source target id, raw wire envelope)
ReceiveCallback = Callable[[str, dict[str, Any]], None]


class Transport(ABC):
    """
    Best-effort, bidirectional, unordered envelope delivery to named targets.

    `send` either hands the envelope over or raises `TransportError`; handing
    it over says nothing about delivery. Inbound envelopes are reported to
    every callback registered with `on_receive`, tagged with the id of the
    target they came from.
    """

    @abstractmethod
    def send(self, target_id: str, envelope: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def on_receive(self, callback: ReceiveCallback) -> Callable[[], None]:
        """Register `callback` and return a function that unregisters it."""

    @abstractmethod
    def is_reachable(self, target_id: str) -> bool:
        ...

    def close(self) -> None:
        """Release transport resources. Optional."""
        return None
