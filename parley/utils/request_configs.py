"""
In `engine.py` config["requests"] and config["rate_limit"]
have several logic steps. Isolate that out here
"""
#pylint:disable=line-too-long

from dataclasses import dataclass
from typing import List, Optional

DEFAULT_MAX_PAYLOAD_BYTES = 10 * 1024 * 1024     # 10 MiB


@dataclass(slots=True)
class RequestConfig:
    timeout_seconds: float = 5.0
    retries: int = 0
    handshake_timeout_seconds: float = 5.0
    disconnect_timeout_seconds: float = 1.0
    max_envelope_age_seconds: Optional[float] = None
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES

    def __post_init__(self):
        assert self.timeout_seconds > 0.0,\
            "The provided timeout_seconds must be a float > 0.0"
        assert self.retries >= 0,\
            "The provided retries must be an integer ≥ 0"
        assert self.handshake_timeout_seconds > 0.0,\
            "The provided handshake_timeout_seconds must be a float > 0.0"
        assert self.disconnect_timeout_seconds > 0.0,\
            "The provided disconnect_timeout_seconds must be a float > 0.0"
        assert self.max_envelope_age_seconds is None or self.max_envelope_age_seconds > 0.0,\
            "The provided max_envelope_age_seconds must be None or a float > 0.0"
        assert self.max_payload_bytes >= 1,\
            "The provided max_payload_bytes must be an integer ≥ 1"

    @property
    def max_envelope_age_ms(self) -> Optional[int]:
        if self.max_envelope_age_seconds is None:
            return None
        return int(self.max_envelope_age_seconds * 1000)

    #pylint:disable=too-many-branches
    def merge_in(self, **kwargs) -> List[str]:
        all_problems = []
        for key in ("timeout_seconds", "handshake_timeout_seconds", "disconnect_timeout_seconds"):
            if key in kwargs:
                if not isinstance((z := kwargs[key]), float | int) or isinstance(z, bool):
                    all_problems.append(f"The provided {key} was not an integer or a float. It was {type(z)}")
                elif z <= 0:
                    all_problems.append(f"The provided {key} must be > 0. It was {z}")
                else:
                    setattr(self, key, z)
        if "retries" in kwargs:
            if not isinstance((z := kwargs["retries"]), int) or isinstance(z, bool):
                all_problems.append(f"The provided retries was not an integer. It was {type(z)}")
            elif z < 0:
                all_problems.append(f"The provided retries was negative. It was {z}")
            else:
                self.retries = z
        if "max_envelope_age_seconds" in kwargs:
            if not isinstance((z := kwargs["max_envelope_age_seconds"]), float | int | None) or isinstance(z, bool):
                all_problems.append(f"The provided max_envelope_age_seconds was not an optional number. It was {type(z)}")
            elif z is not None and z <= 0:
                all_problems.append(f"The provided max_envelope_age_seconds must be > 0. It was {z}")
            else:
                self.max_envelope_age_seconds = z
        if "max_payload_bytes" in kwargs:
            if not isinstance((z := kwargs["max_payload_bytes"]), int) or isinstance(z, bool):
                all_problems.append(f"The provided max_payload_bytes was not an integer. It was {type(z)}")
            elif z <= 0:
                all_problems.append("The provided max_payload_bytes must be an integer ≥ 1")
            else:
                self.max_payload_bytes = z
        return all_problems


@dataclass(slots=True)
class RateLimitConfig:
    enabled: bool = False
    messages_per_second: int = 100

    def __post_init__(self):
        if self.messages_per_second <= 0:
            raise ValueError("The provided messages_per_second must be an integer ≥ 1")

    def merge_in(self, **kwargs) -> List[str]:
        all_problems = []
        if "enabled" in kwargs:
            if not isinstance((z := kwargs["enabled"]), bool | None):
                all_problems.append(f"The provided enabled was not an optional bool. It was {type(z)}")
            else:
                self.enabled = bool(z)
        if "messages_per_second" in kwargs:
            if not isinstance((z := kwargs["messages_per_second"]), int) or isinstance(z, bool):
                all_problems.append(f"The provided messages_per_second was not an integer. It was {type(z)}")
            elif z <= 0:
                all_problems.append("The provided messages_per_second must be an integer ≥ 1")
            else:
                self.messages_per_second = z
        return all_problems
