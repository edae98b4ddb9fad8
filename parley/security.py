"""
Origin gating and payload sanitisation.

`SecurityGate` is the capability the engine consults for every inbound
envelope (`is_origin_allowed`) and every outbound payload (`sanitize`).
`DefaultSecurityGate` compares normalised origins against an exact
allow-list and turns payloads into JSON-safe deep copies.
"""
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional
from urllib.parse import urlsplit
import math

# Keys that enable prototype pollution when a payload reaches a JS peer
DANGEROUS_KEYS = frozenset({"__proto__", "constructor", "prototype"})

_DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}

MAX_SANITIZE_DEPTH = 50


class SecurityGate(ABC):

    @abstractmethod
    def is_origin_allowed(self, origin: str) -> bool:
        ...

    @abstractmethod
    def sanitize(self, payload: Any) -> Any:
        ...


def normalize_origin(origin: str) -> Optional[str]:
    """
    Reduce an origin or URL to scheme://host[:port], lowercase, default port dropped.
    Returns None for values that are not origins. "null" and "*" pass through unchanged.
    """
    if not isinstance(origin, str):
        return None
    origin = origin.strip()
    if origin in ("null", "*"):
        return origin
    parts = urlsplit(origin)
    if not parts.scheme or not parts.hostname:
        return None
    scheme = parts.scheme.lower()
    host = parts.hostname.lower()
    try:
        port = parts.port
    except ValueError:
        return None
    if port is None or _DEFAULT_PORTS.get(scheme) == port:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def sanitize_value(value: Any, depth: int = 0) -> Any:
    """
    Return a JSON-safe deep copy of `value`.

    • dict keys are stringified, dangerous keys are dropped
    • tuples become lists
    • NaN and infinities become None
    • values JSON cannot carry (sets, objects, functions, ...) are dropped
      from containers, and become None at the top level
    """
    if depth > MAX_SANITIZE_DEPTH:
        return None
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, dict):
        clean: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, (str, int, float, bool)) or str(key) in DANGEROUS_KEYS:
                continue
            if _is_portable(item):
                clean[str(key)] = sanitize_value(item, depth + 1)
        return clean
    if isinstance(value, (list, tuple)):
        return [sanitize_value(item, depth + 1) for item in value if _is_portable(item)]
    return None


def _is_portable(value: Any) -> bool:
    return value is None or isinstance(value, (str, bool, int, float, dict, list, tuple))


class DefaultSecurityGate(SecurityGate):
    """
    Exact origin matching after normalisation. An empty allow-list admits nothing;
    "*" in the list admits everything (meant for tests and same-process links).
    """

    def __init__(self, allowed_origins: Optional[Iterable[str]] = None):
        self._allowed: set[str] = set()
        for origin in allowed_origins or []:
            self.allow(origin)

    def allow(self, origin: str) -> None:
        normalized = normalize_origin(origin)
        if normalized is None:
            raise ValueError(f"Invalid origin: {origin!r}")
        self._allowed.add(normalized)

    def revoke(self, origin: str) -> None:
        normalized = normalize_origin(origin)
        if normalized is not None:
            self._allowed.discard(normalized)

    @property
    def allowed_origins(self) -> list[str]:
        return sorted(self._allowed)

    def is_origin_allowed(self, origin: str) -> bool:
        if "*" in self._allowed:
            return True
        normalized = normalize_origin(origin)
        return normalized is not None and normalized in self._allowed

    def sanitize(self, payload: Any) -> Any:
        return sanitize_value(payload)
